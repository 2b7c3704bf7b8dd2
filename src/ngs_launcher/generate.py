"""generate.py — materialise the Slurm artifact for a ready work unit.

Generation is idempotent by presence: when the artifact already exists,
nothing is staged, pre-processed or rewritten, even if the unit's inputs have
changed since.  A stale artifact must be removed by hand.

Every failing step raises :class:`~ngs_launcher.errors.PreprocessingError`
for that unit only; the artifact is written last (atomically), so a failed
unit is retried from scratch on the next scan.
"""
from __future__ import annotations

__all__ = [
    "generate_concordance",
    "generate_demultiplexing",
    "resolve_demultiplexing_template",
    "extract_bed_path",
    "filter_snvs",
]

import gzip
import logging
import os
import re
import shutil
import subprocess
from pathlib import Path
from typing import IO

from ngs_launcher.config import LauncherConfig
from ngs_launcher.errors import ConfigError, PreprocessingError
from ngs_launcher.layout import ConcordanceLayout, DemultiplexingLayout
from ngs_launcher.readiness import ConcordancePair
from ngs_launcher.scanner import WorkUnit
from ngs_launcher.templates import render_concordance_script

logger = logging.getLogger(__name__)

# Capture kit descriptor in the NGS VCF header, e.g. intervals=[/apps/.../v1/captured.bed]
_INTERVALS = re.compile(r"intervals=\[([^\]]*\.bed)\]")
_MERGED_BED = "captured.merged.bed"


# ---------------------------------------------------------------------------
# Concordance
# ---------------------------------------------------------------------------


def generate_concordance(
    unit: WorkUnit,
    pair: ConcordancePair,
    config: LauncherConfig,
    layout: ConcordanceLayout | None = None,
) -> Path:
    """Stage inputs, pre-process them and write ``jobs/<unit>.sh``.

    Steps (skipped entirely when the artifact exists):

    1. create ``tmp/<unit>/``;
    2. copy the array and NGS VCFs into ``array/`` and ``ngs/`` with rsync;
    3. read the capture kit from the NGS VCF header and derive its
       ``captured.merged.bed``;
    4. write an SNV-only copy of the NGS VCF, then bgzip and tabix it;
    5. restrict the array VCF to the capture kit with ``bedtools intersect``;
    6. render and write the Slurm script.

    Returns
    -------
    Path
        The artifact path.

    Raises
    ------
    PreprocessingError
        If any step fails.
    """
    layout = layout or ConcordanceLayout.from_config(config)
    uid = unit.unit_id
    artifact = layout.artifact(uid)
    if artifact.exists():
        logger.debug("%s: artifact %s exists; not regenerating.", uid, artifact)
        return artifact

    work_dir = layout.tmp_dir(uid)
    try:
        work_dir.mkdir(parents=True, exist_ok=True)
        layout.array_dir.mkdir(parents=True, exist_ok=True)
        layout.ngs_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise PreprocessingError(uid, f"cannot create working directories: {exc}") from exc

    array_vcf = layout.array_dir / pair.array_vcf
    ngs_vcf = layout.ngs_dir / pair.ngs_vcf
    _stage(pair.array_path, array_vcf, uid)
    _stage(pair.ngs_path, ngs_vcf, uid)

    bed_file = extract_bed_path(ngs_vcf, uid)
    logger.debug("%s: calculating concordance over %s compared to %s", uid, ngs_vcf.name, array_vcf.name)
    logger.debug("%s: using %s to intersect the array vcf file", uid, bed_file)

    snv_vcf = work_dir / f"{pair.ngs_id}.FINAL.vcf"
    filter_snvs(ngs_vcf, snv_vcf, uid)
    snv_gz = snv_vcf.with_name(snv_vcf.name + ".gz")
    with _open_output(snv_gz, uid) as fh:
        _run(["bgzip", "-c", str(snv_vcf)], uid, stdout=fh)
    _run(["tabix", "-p", "vcf", str(snv_gz)], uid)

    exon_filtered = work_dir / f"{pair.array_id}.FINAL.ExonFiltered.vcf"
    with _open_output(exon_filtered, uid) as fh:
        _run(
            ["bedtools", "intersect", "-a", str(array_vcf), "-b", str(bed_file), "-header"],
            uid,
            stdout=fh,
        )

    text = render_concordance_script(uid, pair, config, layout)
    _write_atomic(artifact, text, uid)
    logger.info("%s: generated %s", uid, artifact)
    return artifact


def extract_bed_path(ngs_vcf: Path, unit_id: str) -> Path:
    """Return the merged capture BED named in the header of *ngs_vcf*.

    The header carries ``intervals=[<dir>/<kit>.bed]``; the merged regions
    live next to it as ``<dir>/captured.merged.bed``.

    Raises
    ------
    PreprocessingError
        If the file cannot be read or no header line names a BED file.
    """
    try:
        with gzip.open(ngs_vcf, "rt") as fh:
            for line in fh:
                if not line.startswith("#"):
                    break
                match = _INTERVALS.search(line)
                if match:
                    return Path(match.group(1)).parent / _MERGED_BED
    except (OSError, EOFError, UnicodeDecodeError) as exc:
        raise PreprocessingError(unit_id, f"cannot read {ngs_vcf}: {exc}") from exc
    raise PreprocessingError(unit_id, f"no intervals=[...bed] entry in header of {ngs_vcf}")


def filter_snvs(source: Path, dest: Path, unit_id: str) -> int:
    """Write the header and SNV records of gzipped VCF *source* to *dest*.

    A record is kept when both REF and ALT are a single character; indels
    and multi-allelic ALT fields are dropped.  Returns the number of records
    kept.
    """
    kept = 0
    try:
        with gzip.open(source, "rt") as src, open(dest, "w") as out:
            for line in src:
                if line.startswith("#"):
                    out.write(line)
                    continue
                fields = line.rstrip("\n").split("\t")
                ref = fields[3] if len(fields) > 3 else ""
                alt = fields[4] if len(fields) > 4 else ""
                if len(ref) < 2 and len(alt) < 2:
                    out.write(line)
                    kept += 1
    except (OSError, EOFError, UnicodeDecodeError) as exc:
        raise PreprocessingError(unit_id, f"cannot filter {source}: {exc}") from exc
    logger.debug("%s: kept %d SNV record(s) from %s", unit_id, kept, source.name)
    return kept


# ---------------------------------------------------------------------------
# Demultiplexing
# ---------------------------------------------------------------------------


def resolve_demultiplexing_template(config: LauncherConfig) -> Path:
    """Return the site's ``generate_template.sh``.

    Uses ``config.demultiplexing_template`` or, when unset,
    ``$EBROOTNGS_DEMULTIPLEXING/generate_template.sh``.

    Raises
    ------
    ConfigError
        If neither is available or the file does not exist.
    """
    template = config.demultiplexing_template
    if template is None:
        ebroot = os.environ.get("EBROOTNGS_DEMULTIPLEXING")
        if not ebroot:
            raise ConfigError(
                "demultiplexing_template is not configured and EBROOTNGS_DEMULTIPLEXING is not set"
            )
        template = Path(ebroot) / "generate_template.sh"
    if not Path(template).is_file():
        raise ConfigError(f"Demultiplexing template {template} missing or not accessible.")
    return Path(template)


def generate_demultiplexing(
    unit: WorkUnit,
    samplesheet: Path,
    template: Path,
    config: LauncherConfig,
    layout: DemultiplexingLayout | None = None,
) -> Path:
    """Run the site's template generator for a sequencer run.

    Copies the run's sample sheet and ``generate_template.sh`` into
    ``generatedscripts/<run>/`` and runs
    ``bash generate_template.sh <run> <scr_root_dir> <group>`` there, which
    must produce ``runs/<run>/jobs/submit.sh``.  Skipped when that file
    already exists.

    Raises
    ------
    PreprocessingError
        If copying or the generator fails, or the generator did not produce
        the artifact.
    """
    layout = layout or DemultiplexingLayout.from_config(config)
    uid = unit.unit_id
    artifact = layout.artifact(uid)
    if artifact.exists():
        logger.debug("%s: artifact %s exists; not regenerating.", uid, artifact)
        return artifact

    gen_dir = layout.generated_dir(uid)
    try:
        gen_dir.mkdir(parents=True, exist_ok=True)
        shutil.copy(samplesheet, gen_dir / f"{uid}.csv")
        shutil.copy(template, gen_dir / "generate_template.sh")
    except OSError as exc:
        raise PreprocessingError(uid, f"cannot prepare {gen_dir}: {exc}") from exc

    _run(
        ["bash", "generate_template.sh", uid, str(config.scr_root_dir), config.group],
        uid,
        cwd=gen_dir,
    )
    if not artifact.exists():
        raise PreprocessingError(uid, f"generate_template.sh did not create {artifact}")
    logger.info("%s: generated %s", uid, artifact)
    return artifact


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stage(source: Path, dest: Path, unit_id: str) -> None:
    """Copy *source* to *dest*, dereferencing symlinks."""
    _run(["rsync", "-av", "--copy-links", str(source), str(dest)], unit_id)


def _run(
    cmd: list[str],
    unit_id: str,
    stdout: IO[str] | None = None,
    cwd: Path | None = None,
) -> subprocess.CompletedProcess:
    logger.debug("%s: running %s", unit_id, " ".join(cmd))
    kwargs: dict = {"text": True, "check": True, "cwd": cwd}
    if stdout is None:
        kwargs["capture_output"] = True
    else:
        kwargs["stdout"] = stdout
        kwargs["stderr"] = subprocess.PIPE
    try:
        return subprocess.run(cmd, **kwargs)
    except FileNotFoundError as exc:
        raise PreprocessingError(unit_id, f"{cmd[0]} not found: {exc}") from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        raise PreprocessingError(
            unit_id, f"{' '.join(cmd)} exited with status {exc.returncode}: {stderr}"
        ) from exc


def _open_output(path: Path, unit_id: str) -> IO[str]:
    try:
        return open(path, "w")
    except OSError as exc:
        raise PreprocessingError(unit_id, f"cannot write {path}: {exc}") from exc


def _write_atomic(path: Path, text: str, unit_id: str) -> None:
    tmp = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(text)
        os.chmod(tmp, 0o750)
        os.replace(tmp, path)
    except OSError as exc:
        raise PreprocessingError(unit_id, f"cannot write {path}: {exc}") from exc
