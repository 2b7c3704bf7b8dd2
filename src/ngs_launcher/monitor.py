"""monitor.py — read-only status and reconciliation of ambiguous units.

A unit is ``ambiguous`` when its job was submitted but the ``started``
sentinel could not be written.  :func:`reconcile` asks ``sacct`` about the
job id(s) recorded in the ambiguous marker: if Slurm knows the job, the unit
(and its artifact) move to ``started``.  Otherwise the unit stays ambiguous
until an operator clears it explicitly, which makes it eligible for
submission again.

Typical usage::

    from ngs_launcher.monitor import reconcile, unit_status

    print(unit_status(config, "concordance").to_string(index=False))
    reconcile(config, "concordance", audit=get_logger(config))
"""
from __future__ import annotations

__all__ = ["poll_jobs", "unit_status", "reconcile", "recorded_job_ids"]

import logging
import subprocess
from typing import TYPE_CHECKING, Iterable, Iterator

import pandas as pd

from ngs_launcher.config import LauncherConfig
from ngs_launcher.errors import TransitionError
from ngs_launcher.layout import ConcordanceLayout, DemultiplexingLayout
from ngs_launcher.scanner import WorkUnit, scan_run_dirs, scan_samplesheets
from ngs_launcher.state import State, StateStore

if TYPE_CHECKING:
    from ngs_launcher.audit import AuditLogger

logger = logging.getLogger(__name__)

WORKFLOWS = ("concordance", "demultiplexing")


def poll_jobs(job_ids: list[str]) -> dict[str, str]:
    """Return the sacct state of every job in *job_ids* that Slurm knows.

    States are lower-cased without qualifiers (``"cancelled"`` for
    ``CANCELLED by 1234``); job steps are left out.  When sacct cannot be run,
    a warning is logged and an empty mapping returned, so callers treat the
    jobs as unconfirmed.
    """
    if not job_ids:
        return {}

    ids_arg = ",".join(str(j) for j in job_ids)
    try:
        result = subprocess.run(
            ["sacct", "-j", ids_arg, "--format=JobID,State", "--noheader", "--parsable2"],
            capture_output=True,
            text=True,
            check=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError) as exc:
        logger.warning("sacct call failed: %s", exc)
        return {}

    known: dict[str, str] = {}
    for line in result.stdout.splitlines():
        job_id, _, state = line.strip().partition("|")
        if not job_id or "." in job_id or not state.strip():
            continue
        known[job_id] = state.split()[0].rstrip("+").lower()
    return known


def recorded_job_ids(detail: str) -> list[str]:
    """Return the job ids from a marker's ``job_id=`` line."""
    for line in detail.splitlines():
        if line.startswith("job_id="):
            value = line.split("=", 1)[1].strip()
            return [j for j in value.split(",") if j]
    return []


def _units_and_stores(
    config: LauncherConfig, workflow: str
) -> tuple[Iterator[WorkUnit], StateStore, StateStore]:
    if workflow == "concordance":
        layout = ConcordanceLayout.from_config(config)
        units = scan_samplesheets(layout.samplesheets_dir, config.samplesheet_pattern)
        return units, layout.unit_store(), layout.artifact_store()
    if workflow == "demultiplexing":
        layout = DemultiplexingLayout.from_config(config)
        return scan_run_dirs(config.seq_dir), layout.unit_store(), layout.artifact_store()
    raise ValueError(f"Unknown workflow {workflow!r}; expected one of {WORKFLOWS}")


def unit_status(config: LauncherConfig, workflow: str) -> pd.DataFrame:
    """Re-scan *workflow* and return the unit and artifact state of every unit."""
    columns = ["unit", "workflow", "state", "artifact_state"]
    units, unit_store, artifact_store = _units_and_stores(config, workflow)
    rows = [
        {
            "unit": unit.unit_id,
            "workflow": workflow,
            "state": unit_store.get(unit.unit_id).value,
            "artifact_state": artifact_store.get(unit.unit_id).value,
        }
        for unit in units
    ]
    if not rows:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame(rows, columns=columns).sort_values("unit").reset_index(drop=True)


def reconcile(
    config: LauncherConfig,
    workflow: str,
    clear: Iterable[str] = (),
    audit: AuditLogger | None = None,
) -> pd.DataFrame:
    """Resolve ambiguous units of *workflow*.

    Units listed in *clear* go back to ``absent`` (the operator has checked
    that nothing runs for them); this is refused while their artifact is
    marked started.  Other ambiguous units move to ``started`` when sacct
    confirms one of their recorded jobs and stay ambiguous otherwise.

    Returns a DataFrame with columns unit, workflow, old_state, new_state,
    detail, with one row per ambiguous unit.
    """
    columns = ["unit", "workflow", "old_state", "new_state", "detail"]
    clear = set(clear)
    units, unit_store, artifact_store = _units_and_stores(config, workflow)

    rows = []
    for unit in units:
        uid = unit.unit_id
        if unit_store.get(uid) is not State.AMBIGUOUS:
            continue
        new_state, detail = _reconcile_unit(uid, uid in clear, unit_store, artifact_store)
        if new_state is not State.AMBIGUOUS:
            logger.info("%s: ambiguous -> %s (%s)", uid, new_state.value, detail)
            if audit is not None:
                audit.log("reconciled", workflow=workflow, unit=uid, detail=detail,
                          new_state=new_state.value)
        else:
            logger.warning("%s: still ambiguous: %s", uid, detail)
        rows.append({
            "unit": uid,
            "workflow": workflow,
            "old_state": State.AMBIGUOUS.value,
            "new_state": new_state.value,
            "detail": detail,
        })

    if not rows:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame(rows, columns=columns)


def _reconcile_unit(
    uid: str,
    clear: bool,
    unit_store: StateStore,
    artifact_store: StateStore,
) -> tuple[State, str]:
    recorded = unit_store.detail(uid)
    if clear:
        if artifact_store.get(uid) is not State.ABSENT:
            return State.AMBIGUOUS, "artifact is marked started; remove its marker by hand first"
        unit_store.transition(uid, State.AMBIGUOUS, State.ABSENT)
        return State.ABSENT, "cleared by operator"

    job_ids = recorded_job_ids(recorded)
    if not job_ids:
        return State.AMBIGUOUS, "no job id recorded; verify in Slurm and clear by hand"
    known = poll_jobs(job_ids)
    if not known:
        return State.AMBIGUOUS, f"Slurm has no record of job(s) {','.join(job_ids)}"

    if artifact_store.get(uid) is State.ABSENT:
        try:
            artifact_store.transition(uid, State.ABSENT, State.STARTED, recorded)
        except TransitionError as exc:
            logger.warning("%s: artifact marker not written: %s", uid, exc)
    unit_store.transition(uid, State.AMBIGUOUS, State.STARTED, recorded)
    statuses = ", ".join(f"{j}={s}" for j, s in sorted(known.items()))
    return State.STARTED, f"confirmed by sacct: {statuses}"
