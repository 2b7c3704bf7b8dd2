"""Tests for generate.py — staging, pre-processing and artifact creation."""
import os
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import NGS_HEADER, FakeTools, write_ngs_vcf
from ngs_launcher.errors import ConfigError, PreprocessingError
from ngs_launcher.generate import (
    extract_bed_path,
    filter_snvs,
    generate_concordance,
    generate_demultiplexing,
    resolve_demultiplexing_template,
)
from ngs_launcher.readiness import ConcordancePair
from ngs_launcher.scanner import WorkUnit


@pytest.fixture
def pair(tmp_path):
    return ConcordancePair(
        array_id="A1",
        ngs_id="N1",
        array_path=tmp_path / "in" / "a1.vcf",
        ngs_path=tmp_path / "in" / "n1.vcf.gz",
        samplesheet=tmp_path / "RUN_042.sampleId.txt",
    )


def conc_unit(tmp_path):
    return WorkUnit("RUN_042", tmp_path / "RUN_042.sampleId.txt", "concordance")


# ---------------------------------------------------------------------------
# extract_bed_path
# ---------------------------------------------------------------------------


def test_extract_bed_path(tmp_path):
    vcf = write_ngs_vcf(tmp_path / "n.vcf.gz")
    assert extract_bed_path(vcf, "u") == Path(
        "/apps/data/Agilent/Exoom_v3/human_g1k_v37/captured.merged.bed"
    )


def test_extract_bed_path_missing_entry(tmp_path):
    vcf = write_ngs_vcf(tmp_path / "n.vcf.gz", header="##fileformat=VCFv4.2\n#CHROM\n")
    with pytest.raises(PreprocessingError, match="intervals"):
        extract_bed_path(vcf, "u")


def test_extract_bed_path_not_gzipped(tmp_path):
    vcf = tmp_path / "n.vcf.gz"
    vcf.write_text(NGS_HEADER)
    with pytest.raises(PreprocessingError, match="cannot read"):
        extract_bed_path(vcf, "u")


# ---------------------------------------------------------------------------
# filter_snvs
# ---------------------------------------------------------------------------


def test_filter_snvs_keeps_header_and_snvs(tmp_path):
    src = write_ngs_vcf(tmp_path / "n.vcf.gz")
    dest = tmp_path / "N1.FINAL.vcf"
    assert filter_snvs(src, dest, "u") == 2
    lines = dest.read_text().splitlines()
    records = [l for l in lines if not l.startswith("#")]
    assert [r.split("\t")[1] for r in records] == ["100", "400"]
    assert lines[0] == "##fileformat=VCFv4.2"


def test_filter_snvs_missing_source(tmp_path):
    with pytest.raises(PreprocessingError):
        filter_snvs(tmp_path / "missing.vcf.gz", tmp_path / "out.vcf", "u")


# ---------------------------------------------------------------------------
# generate_concordance
# ---------------------------------------------------------------------------


def test_generate_concordance_writes_artifact(tmp_path, cfg, clayout, pair, fake_tools):
    with patch("subprocess.run", side_effect=fake_tools):
        artifact = generate_concordance(conc_unit(tmp_path), pair, cfg, clayout)

    assert artifact == clayout.jobs_dir / "RUN_042.sh"
    assert artifact.exists()
    assert os.access(artifact, os.X_OK)
    assert "#SBATCH --job-name=Concordance_A1" in artifact.read_text()
    assert not artifact.with_name("RUN_042.sh.tmp").exists()


def test_generate_concordance_steps(tmp_path, cfg, clayout, pair, fake_tools):
    with patch("subprocess.run", side_effect=fake_tools):
        generate_concordance(conc_unit(tmp_path), pair, cfg, clayout)

    rsyncs = fake_tools.commands("rsync")
    assert [c[-1] for c in rsyncs] == [
        str(clayout.array_dir / "A1.FINAL.vcf"),
        str(clayout.ngs_dir / "N1.final.vcf.gz"),
    ]
    assert all("--copy-links" in c for c in rsyncs)

    work_dir = clayout.tmp_dir("RUN_042")
    assert (work_dir / "N1.FINAL.vcf").exists()
    assert fake_tools.commands("tabix") == [
        ["tabix", "-p", "vcf", str(work_dir / "N1.FINAL.vcf.gz")]
    ]
    (intersect,) = fake_tools.commands("bedtools")
    assert intersect[intersect.index("-b") + 1] == (
        "/apps/data/Agilent/Exoom_v3/human_g1k_v37/captured.merged.bed"
    )
    assert (work_dir / "A1.FINAL.ExonFiltered.vcf").exists()


def test_generate_concordance_uses_real_inputs(tmp_path, cfg, clayout, pair, fake_tools):
    write_ngs_vcf(pair.ngs_path, records="5\t10\t.\tC\tT\t50\tPASS\t.\tGT\t0/1\n")
    pair.array_path.write_text("array\n")
    with patch("subprocess.run", side_effect=fake_tools):
        generate_concordance(conc_unit(tmp_path), pair, cfg, clayout)
    assert (clayout.array_dir / "A1.FINAL.vcf").read_text() == "array\n"
    snv = (clayout.tmp_dir("RUN_042") / "N1.FINAL.vcf").read_text()
    assert "5\t10\t" in snv


def test_generate_concordance_idempotent(tmp_path, cfg, clayout, pair, fake_tools):
    artifact = clayout.artifact("RUN_042")
    artifact.parent.mkdir(parents=True)
    artifact.write_text("existing\n")
    with patch("subprocess.run", side_effect=fake_tools):
        assert generate_concordance(conc_unit(tmp_path), pair, cfg, clayout) == artifact
    assert fake_tools.calls == []
    assert artifact.read_text() == "existing\n"


def test_generate_concordance_staging_failure(tmp_path, cfg, clayout, pair):
    tools = FakeTools(fail="rsync")
    with patch("subprocess.run", side_effect=tools):
        with pytest.raises(PreprocessingError, match="rsync") as excinfo:
            generate_concordance(conc_unit(tmp_path), pair, cfg, clayout)
    assert excinfo.value.unit_id == "RUN_042"
    assert not clayout.artifact("RUN_042").exists()


def test_generate_concordance_tool_missing(tmp_path, cfg, clayout, pair, fake_tools):
    def no_bedtools(cmd, **kwargs):
        if cmd[0] == "bedtools":
            raise FileNotFoundError(2, "No such file or directory", "bedtools")
        return fake_tools(cmd, **kwargs)

    with patch("subprocess.run", side_effect=no_bedtools):
        with pytest.raises(PreprocessingError, match="bedtools not found"):
            generate_concordance(conc_unit(tmp_path), pair, cfg, clayout)
    assert not clayout.artifact("RUN_042").exists()


# ---------------------------------------------------------------------------
# Demultiplexing
# ---------------------------------------------------------------------------


def test_resolve_template_from_config(tmp_path, template_script):
    from ngs_launcher.config import LauncherConfig

    cfg = LauncherConfig(group="g", demultiplexing_template=template_script)
    assert resolve_demultiplexing_template(cfg) == template_script


def test_resolve_template_from_environment(cfg, template_script, monkeypatch):
    monkeypatch.setenv("EBROOTNGS_DEMULTIPLEXING", str(template_script.parent))
    assert resolve_demultiplexing_template(cfg) == template_script


def test_resolve_template_unset(cfg, monkeypatch):
    monkeypatch.delenv("EBROOTNGS_DEMULTIPLEXING", raising=False)
    with pytest.raises(ConfigError, match="EBROOTNGS_DEMULTIPLEXING"):
        resolve_demultiplexing_template(cfg)


def test_resolve_template_missing_file(cfg, tmp_path, monkeypatch):
    monkeypatch.setenv("EBROOTNGS_DEMULTIPLEXING", str(tmp_path / "nowhere"))
    with pytest.raises(ConfigError, match="missing"):
        resolve_demultiplexing_template(cfg)


def test_generate_demultiplexing(tmp_path, cfg, dlayout, template_script):
    run = "230101_A00123_0001_AHXXXX"
    sheet = tmp_path / f"{run}.csv"
    sheet.write_text("[Header]\n")
    unit = WorkUnit(run, tmp_path / run, "demultiplexing")
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append((cmd, kwargs))
        dlayout.artifact(run).parent.mkdir(parents=True)
        dlayout.artifact(run).write_text("#!/bin/bash\n")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    with patch("subprocess.run", side_effect=fake_run):
        artifact = generate_demultiplexing(unit, sheet, template_script, cfg, dlayout)

    assert artifact == dlayout.artifact(run)
    gen_dir = dlayout.generated_dir(run)
    assert (gen_dir / f"{run}.csv").exists()
    assert (gen_dir / "generate_template.sh").exists()
    ((cmd, kwargs),) = calls
    assert cmd == ["bash", "generate_template.sh", run, str(cfg.scr_root_dir), "test-group"]
    assert kwargs["cwd"] == gen_dir


def test_generate_demultiplexing_no_artifact(tmp_path, cfg, dlayout, template_script):
    sheet = tmp_path / "R.csv"
    sheet.write_text("x\n")
    unit = WorkUnit("R", tmp_path / "R", "demultiplexing")
    done = subprocess.CompletedProcess([], 0, "", "")
    with patch("subprocess.run", return_value=done):
        with pytest.raises(PreprocessingError, match="did not create"):
            generate_demultiplexing(unit, sheet, template_script, cfg, dlayout)


def test_generate_demultiplexing_generator_fails(tmp_path, cfg, dlayout, template_script):
    sheet = tmp_path / "R.csv"
    sheet.write_text("x\n")
    unit = WorkUnit("R", tmp_path / "R", "demultiplexing")
    err = subprocess.CalledProcessError(3, ["bash"], output="", stderr="bad sheet")
    with patch("subprocess.run", side_effect=err):
        with pytest.raises(PreprocessingError, match="bad sheet"):
            generate_demultiplexing(unit, sheet, template_script, cfg, dlayout)


def test_generate_demultiplexing_skips_existing(tmp_path, cfg, dlayout, template_script):
    artifact = dlayout.artifact("R")
    artifact.parent.mkdir(parents=True)
    artifact.touch()
    unit = WorkUnit("R", tmp_path / "R", "demultiplexing")
    with patch("subprocess.run") as mock_run:
        assert generate_demultiplexing(unit, tmp_path / "R.csv", template_script, cfg, dlayout) == artifact
    mock_run.assert_not_called()
