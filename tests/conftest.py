import gzip
import shutil
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from ngs_launcher.config import LauncherConfig
from ngs_launcher.layout import ConcordanceLayout, DemultiplexingLayout


# ---------------------------------------------------------------------------
# VCF content helpers
# ---------------------------------------------------------------------------

NGS_HEADER = (
    "##fileformat=VCFv4.2\n"
    '##GATKCommandLine=<ID=HaplotypeCaller,CommandLine="HaplotypeCaller '
    'intervals=[/apps/data/Agilent/Exoom_v3/human_g1k_v37/captured.bed] '
    'output=out.vcf">\n'
    "#CHROM\tPOS\tID\tREF\tALT\tQUAL\tFILTER\tINFO\tFORMAT\tN1\n"
)

NGS_RECORDS = (
    "1\t100\t.\tA\tG\t50\tPASS\t.\tGT\t0/1\n"
    "1\t200\t.\tAT\tA\t50\tPASS\t.\tGT\t0/1\n"
    "1\t300\t.\tC\tCTT\t50\tPASS\t.\tGT\t1/1\n"
    "2\t400\t.\tG\tT\t50\tPASS\t.\tGT\t1/1\n"
)

ARRAY_VCF = (
    "##fileformat=VCFv4.2\n"
    "#CHROM\tPOS\tID\tREF\tALT\tQUAL\tFILTER\tINFO\tFORMAT\tA1\n"
    "1\t100\trs1\tA\tG\t.\t.\t.\tGT\t0/1\n"
)


def write_ngs_vcf(path: Path, header: str = NGS_HEADER, records: str = NGS_RECORDS) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with gzip.open(path, "wt") as fh:
        fh.write(header + records)
    return path


def write_samplesheet(path: Path, rows=None, header="arrayId\tngsId\tarrayFile\tngsFile\n") -> Path:
    if rows is None:
        rows = [("A1", "N1", "/in/a1.vcf", "/in/n1.vcf.gz")]
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(header + "".join("\t".join(r) + "\n" for r in rows))
    return path


# ---------------------------------------------------------------------------
# Fake external tools
# ---------------------------------------------------------------------------


class FakeTools:
    """Stand-in for subprocess.run that records calls and mimics the tools.

    rsync copies the source when it exists and otherwise writes a small
    array or NGS VCF; sbatch and ``bash submit.sh`` print a job id;
    ``bash generate_template.sh`` creates the run's submit.sh; everything
    else succeeds without output.
    """

    def __init__(self, first_job_id: int = 1000, fail: str | None = None):
        self.calls: list[list[str]] = []
        self.next_job_id = first_job_id
        self.fail = fail

    def commands(self, tool: str) -> list[list[str]]:
        return [c for c in self.calls if c[0] == tool]

    def __call__(self, cmd, **kwargs):
        import subprocess

        self.calls.append(list(cmd))
        result = MagicMock()
        result.stdout = ""
        result.stderr = ""
        result.returncode = 0
        if self.fail == cmd[0]:
            raise subprocess.CalledProcessError(1, cmd, output="", stderr=f"{cmd[0]} failed")
        if cmd[0] == "rsync":
            src, dest = Path(cmd[-2]), Path(cmd[-1])
            if src.exists():
                shutil.copy(src, dest)
            elif dest.name.endswith(".gz"):
                write_ngs_vcf(dest)
            else:
                dest.write_text(ARRAY_VCF)
        elif cmd[0] == "sbatch" or cmd[:2] == ["bash", "submit.sh"]:
            result.stdout = f"Submitted batch job {self.next_job_id}\n"
            self.next_job_id += 1
        elif cmd[:2] == ["bash", "generate_template.sh"]:
            # generate_template.sh <run> <scr_root_dir> <group>
            submit = Path(cmd[3]) / "runs" / cmd[2] / "jobs" / "submit.sh"
            submit.parent.mkdir(parents=True, exist_ok=True)
            submit.write_text("#!/bin/bash\n")
        return result


@pytest.fixture
def fake_tools():
    return FakeTools()


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cfg(tmp_path):
    """Minimal LauncherConfig pointing at a temporary directory tree."""
    return LauncherConfig(
        group="test-group",
        seq_dir=tmp_path / "sequencers",
        scr_root_dir=tmp_path / "scr",
        concordance_dir=tmp_path / "concordance",
        lock_dir=tmp_path / "locks",
        demultiplexing_template=None,
        sentinel_retry_delay=0.0,
    )


@pytest.fixture
def clayout(cfg):
    return ConcordanceLayout.from_config(cfg)


@pytest.fixture
def dlayout(cfg):
    return DemultiplexingLayout.from_config(cfg)


@pytest.fixture
def template_script(tmp_path):
    script = tmp_path / "ebroot" / "generate_template.sh"
    script.parent.mkdir(parents=True)
    script.write_text("#!/bin/bash\n")
    return script


def add_run(cfg, name, completed=True, samplesheet=True, miseq_rta=False):
    """Create a sequencer run directory with optional markers."""
    run_dir = Path(cfg.seq_dir) / name
    run_dir.mkdir(parents=True, exist_ok=True)
    if completed:
        (run_dir / "RunCompletionStatus.xml").touch()
    if miseq_rta:
        (run_dir / "RTAComplete.txt").touch()
    if samplesheet:
        sheet = Path(cfg.scr_root_dir) / "Samplesheets" / f"{name}.csv"
        sheet.parent.mkdir(parents=True, exist_ok=True)
        sheet.write_text("[Header]\n")
    return run_dir
