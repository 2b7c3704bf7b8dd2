"""pipeline.py — one discovery pass per workflow.

For every scanned unit, strictly in order: classify → generate → submit →
mark started.  Each unit runs in isolation: a :class:`UnitError` is recorded
as an ``error`` result and, under the default ``on_unit_error="continue"``
policy, the pass moves on to the next unit.  ``on_unit_error="abort"`` stops
the pass at the first failing unit instead.

Typical usage::

    from ngs_launcher.pipeline import run_concordance, failed_units

    results = run_concordance(config, audit=get_logger(config))
    if failed_units(results):
        ...
"""
from __future__ import annotations

__all__ = [
    "UnitResult",
    "RESULT_COLUMNS",
    "process_units",
    "failed_units",
    "handle_concordance",
    "handle_demultiplexing",
    "run_concordance",
    "run_demultiplexing",
]

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable

import pandas as pd

from ngs_launcher.config import LauncherConfig
from ngs_launcher.errors import UnitError
from ngs_launcher.generate import (
    generate_concordance,
    generate_demultiplexing,
    resolve_demultiplexing_template,
)
from ngs_launcher.layout import ConcordanceLayout, DemultiplexingLayout
from ngs_launcher.readiness import Skip, classify, concordance_check, demultiplexing_check
from ngs_launcher.scanner import WorkUnit, scan_run_dirs, scan_samplesheets
from ngs_launcher.submit import build_sbatch_command, submit_unit
from ngs_launcher.trackandtrace import write_overview, write_runtime_start

if TYPE_CHECKING:
    from ngs_launcher.audit import AuditLogger

logger = logging.getLogger(__name__)

RESULT_COLUMNS = ["unit", "workflow", "outcome", "reason", "job_id"]

Handler = Callable[[WorkUnit], "UnitResult"]


@dataclass
class UnitResult:
    """Outcome of processing one unit: submitted, skipped, dry_run or error."""

    unit: str
    workflow: str
    outcome: str
    reason: str = ""
    job_id: str | None = None


def process_units(
    units: Iterable[WorkUnit],
    handler: Handler,
    on_error: str = "continue",
    audit: AuditLogger | None = None,
) -> pd.DataFrame:
    """Run *handler* for every unit with per-unit error capture.

    Returns a DataFrame with one row per unit and columns
    :data:`RESULT_COLUMNS`.

    Raises
    ------
    UnitError
        Only when *on_error* is ``"abort"``, after the failing unit has been
        logged and audited.  Errors that are not :class:`UnitError` are never
        captured here.
    """
    rows = []
    for unit in units:
        try:
            result = handler(unit)
        except UnitError as exc:
            logger.error("%s: %s", unit.unit_id, exc)
            if audit is not None:
                audit.log("error", workflow=unit.workflow, unit=unit.unit_id, detail=str(exc))
            if on_error == "abort":
                raise
            result = UnitResult(unit.unit_id, unit.workflow, "error", str(exc))
        rows.append(asdict(result))

    if not rows:
        return pd.DataFrame(columns=RESULT_COLUMNS)
    return pd.DataFrame(rows, columns=RESULT_COLUMNS)


def failed_units(results: pd.DataFrame) -> list[str]:
    """Return the ids of units whose outcome is ``error``."""
    if results.empty:
        return []
    return results.loc[results["outcome"] == "error", "unit"].tolist()


def _skipped(unit: WorkUnit, decision: Skip, audit: AuditLogger | None) -> UnitResult:
    logger.info("%s: skipping (%s).", unit.unit_id, decision.reason)
    if audit is not None:
        audit.log("skipped", workflow=unit.workflow, unit=unit.unit_id, detail=decision.reason)
    return UnitResult(unit.unit_id, unit.workflow, "skipped", decision.reason)


# ---------------------------------------------------------------------------
# Concordance
# ---------------------------------------------------------------------------


def handle_concordance(
    unit: WorkUnit,
    config: LauncherConfig,
    layout: ConcordanceLayout,
    *,
    dry_run: bool = False,
    audit: AuditLogger | None = None,
) -> UnitResult:
    """Classify, generate and submit one concordance check."""
    unit_store = layout.unit_store()
    decision = classify(unit, unit_store, concordance_check(config))
    if isinstance(decision, Skip):
        return _skipped(unit, decision, audit)

    pair = decision.params
    artifact = layout.artifact(unit.unit_id)
    if dry_run:
        cmd = build_sbatch_command(artifact, config)
        submit_unit(
            unit, artifact, cmd, unit_store, layout.artifact_store(), config,
            dry_run=True, audit=audit,
        )
        return UnitResult(unit.unit_id, unit.workflow, "dry_run", " ".join(cmd))

    artifact = generate_concordance(unit, pair, config, layout)
    job_id = submit_unit(
        unit,
        artifact,
        build_sbatch_command(artifact, config),
        unit_store,
        layout.artifact_store(),
        config,
        audit=audit,
    )
    return UnitResult(unit.unit_id, unit.workflow, "submitted", job_id=job_id)


def run_concordance(
    config: LauncherConfig,
    dry_run: bool = False,
    audit: AuditLogger | None = None,
) -> pd.DataFrame:
    """Scan ``samplesheets/`` and launch concordance checks for ready units."""
    layout = ConcordanceLayout.from_config(config)
    if not dry_run:
        for directory in layout.directories():
            directory.mkdir(parents=True, exist_ok=True)

    def handler(unit: WorkUnit) -> UnitResult:
        return handle_concordance(unit, config, layout, dry_run=dry_run, audit=audit)

    units = scan_samplesheets(layout.samplesheets_dir, config.samplesheet_pattern)
    return process_units(units, handler, on_error=config.on_unit_error, audit=audit)


# ---------------------------------------------------------------------------
# Demultiplexing
# ---------------------------------------------------------------------------


def handle_demultiplexing(
    unit: WorkUnit,
    config: LauncherConfig,
    layout: DemultiplexingLayout,
    template: Path,
    *,
    dry_run: bool = False,
    audit: AuditLogger | None = None,
) -> UnitResult:
    """Classify, generate and submit demultiplexing for one sequencer run."""
    logger.info("Checking %s ...", unit.unit_id)
    unit_store = layout.unit_store()
    decision = classify(unit, unit_store, demultiplexing_check(config))
    if isinstance(decision, Skip):
        return _skipped(unit, decision, audit)

    run = unit.unit_id
    jobs_dir = layout.jobs_dir(run)
    cmd = ["bash", "submit.sh"]
    if dry_run:
        submit_unit(
            unit, layout.artifact(run), cmd, unit_store, layout.artifact_store(), config,
            cwd=jobs_dir, expect_job_id=False, dry_run=True, audit=audit,
        )
        return UnitResult(run, unit.workflow, "dry_run", f"{' '.join(cmd)} in {jobs_dir}")

    logger.info("%s: generating and submitting jobs ...", run)
    artifact = generate_demultiplexing(
        unit, decision.params["samplesheet"], template, config, layout
    )
    job_id = submit_unit(
        unit,
        artifact,
        cmd,
        unit_store,
        layout.artifact_store(),
        config,
        cwd=jobs_dir,
        expect_job_id=False,
        audit=audit,
    )
    try:
        write_runtime_start(layout.runtime_file(run))
        write_overview(layout.trackandtrace_file(run), run, config.group)
    except OSError as exc:
        logger.warning("%s: submitted, but track-and-trace files were not written: %s", run, exc)
    return UnitResult(run, unit.workflow, "submitted", job_id=job_id)


def run_demultiplexing(
    config: LauncherConfig,
    dry_run: bool = False,
    audit: AuditLogger | None = None,
) -> pd.DataFrame:
    """Scan ``seq_dir`` and launch demultiplexing for completed runs.

    Raises
    ------
    ConfigError
        If the site's ``generate_template.sh`` cannot be found; raised
        before any run is touched.
    """
    template = resolve_demultiplexing_template(config)
    layout = DemultiplexingLayout.from_config(config)

    def handler(unit: WorkUnit) -> UnitResult:
        return handle_demultiplexing(unit, config, layout, template, dry_run=dry_run, audit=audit)

    return process_units(
        scan_run_dirs(config.seq_dir), handler, on_error=config.on_unit_error, audit=audit
    )
