"""simulate_concordance.py — simulate several days of concordance scans locally.

Creates a fake concordance tree in a temp directory and runs the launcher
once per "day", printing what happens to each sample sheet.  No Slurm or
bioinformatics tools required: external commands are mocked, and jobs are
"finished" by renaming their sentinels the way the generated script does.

Run with:
    python examples/simulate_concordance.py
"""

import gzip
import os
import tempfile
from pathlib import Path
from unittest.mock import patch

from ngs_launcher.config import LauncherConfig
from ngs_launcher.layout import ConcordanceLayout
from ngs_launcher.monitor import unit_status
from ngs_launcher.pipeline import run_concordance
from ngs_launcher.state import State

_JOB_COUNTER = 0

NGS_VCF = (
    "##fileformat=VCFv4.2\n"
    "##GATKCommandLine=<ID=HaplotypeCaller,CommandLine=\"intervals=[/apps/data/kit/v1/captured.bed]\">\n"
    "#CHROM\tPOS\tID\tREF\tALT\tQUAL\tFILTER\tINFO\tFORMAT\tS\n"
    "1\t100\t.\tA\tG\t50\tPASS\t.\tGT\t0/1\n"
)


def next_job_id() -> str:
    global _JOB_COUNTER
    _JOB_COUNTER += 1
    return str(20000 + _JOB_COUNTER)


def mock_tools(cmd, **_kw):
    """Pretend to be rsync, bgzip, tabix, bedtools and sbatch."""
    if cmd[0] == "rsync":
        dest = Path(cmd[-1])
        if dest.name.endswith(".gz"):
            with gzip.open(dest, "wt") as fh:
                fh.write(NGS_VCF)
        else:
            dest.write_text("##fileformat=VCFv4.2\n")
    stdout = f"Submitted batch job {next_job_id()}\n" if cmd[0] == "sbatch" else ""
    return type("R", (), {"stdout": stdout, "stderr": "", "returncode": 0})()


def add_samplesheet(layout: ConcordanceLayout, unit: str, array_id: str, ngs_id: str, ok=True) -> None:
    sheet = layout.samplesheets_dir / f"{unit}.sampleId.txt"
    sheet.parent.mkdir(parents=True, exist_ok=True)
    row = f"{array_id}\t{ngs_id}\t/data/{array_id}.vcf\t/data/{ngs_id}.vcf.gz\n"
    if not ok:
        row = f"{array_id}\n"
    sheet.write_text("arrayId\tngsId\tarrayFile\tngsFile\n" + row)
    print(f"  + sample sheet {sheet.name}")


def finish_job(layout: ConcordanceLayout, unit: str) -> None:
    """What a successful job does at its very end."""
    for store in (layout.unit_store(), layout.artifact_store()):
        os.rename(store.marker(unit, State.STARTED), store.marker(unit, State.FINISHED))
    print(f"  ✓ job for {unit} finished")


def launcher_run(cfg: LauncherConfig, day: int) -> None:
    print(f"\n{'='*60}")
    print(f"  DAY {day}")
    print(f"{'='*60}")

    with patch("subprocess.run", side_effect=mock_tools):
        results = run_concordance(cfg)

    if results.empty:
        print("  → Nothing to do.")
        return
    for _, row in results.iterrows():
        detail = row["job_id"] if row["outcome"] == "submitted" else row["reason"]
        print(f"    {row['unit']:<10} {row['outcome']:<10} {detail}")


# ---------------------------------------------------------------------------
# Simulation
# ---------------------------------------------------------------------------

with tempfile.TemporaryDirectory() as tmp:
    tmp = Path(tmp)
    cfg = LauncherConfig(
        group="demo-group",
        concordance_dir=tmp / "concordance",
        lock_dir=tmp / "logs",
        sentinel_retry_delay=0.0,
    )
    layout = ConcordanceLayout.from_config(cfg)

    # --- Day 1: two new sample sheets, one of them broken ---
    add_samplesheet(layout, "RUN_042", "A042", "N042")
    add_samplesheet(layout, "RUN_050", "A050", "N050", ok=False)
    launcher_run(cfg, day=1)

    # --- Day 2: nothing new; RUN_042 is still running ---
    launcher_run(cfg, day=2)

    # Overnight: RUN_042 finishes, RUN_050 is fixed, RUN_043 arrives
    print("\n  [overnight]")
    finish_job(layout, "RUN_042")
    add_samplesheet(layout, "RUN_050", "A050", "N050")
    add_samplesheet(layout, "RUN_043", "A043", "N043")

    # --- Day 3: RUN_042 skipped as finished, the other two submitted ---
    launcher_run(cfg, day=3)

    print(f"\n{'='*60}")
    print("  FINAL STATE")
    print(f"{'='*60}")
    print(unit_status(cfg, "concordance").to_string(index=False))
