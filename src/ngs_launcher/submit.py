from __future__ import annotations

__all__ = ["build_sbatch_command", "submit_job", "submit_unit"]

import logging
import re
import subprocess
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from ngs_launcher.config import LauncherConfig
from ngs_launcher.errors import SubmissionError, TransitionError
from ngs_launcher.scanner import WorkUnit
from ngs_launcher.state import State, StateStore

if TYPE_CHECKING:
    from ngs_launcher.audit import AuditLogger

logger = logging.getLogger(__name__)

# sbatch stdout: "Submitted batch job 12345"
_SUBMITTED = re.compile(r"Submitted batch job (\d+)")


def build_sbatch_command(script: Path, config: LauncherConfig) -> list[str]:
    """Return the sbatch command for a generated script.

    Resources are declared inside the script; ``--partition`` and
    ``--account`` are added only when configured.
    """
    cmd = ["sbatch"]
    if config.slurm_partition:
        cmd.append(f"--partition={config.slurm_partition}")
    if config.slurm_account:
        cmd.append(f"--account={config.slurm_account}")
    cmd.append(str(script))
    return cmd


def submit_job(
    cmd: list[str],
    unit_id: str,
    cwd: Path | None = None,
    expect_job_id: bool = True,
) -> str | None:
    """Run a submission command and return the Slurm job id(s).

    Commands that submit several jobs (e.g. a generated ``submit.sh``)
    return their ids comma-separated.

    Raises
    ------
    SubmissionError
        If the command cannot be run or exits non-zero, or *expect_job_id*
        is set and the output holds no ``Submitted batch job <ID>`` line.
    """
    logger.info("%s: submitting: %s", unit_id, " ".join(cmd))
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True, cwd=cwd)
    except FileNotFoundError as exc:
        raise SubmissionError(unit_id, f"{cmd[0]} not found: {exc}") from exc
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        raise SubmissionError(
            unit_id, f"{' '.join(cmd)} exited with status {exc.returncode}: {stderr}"
        ) from exc

    job_ids = _SUBMITTED.findall(result.stdout or "")
    if not job_ids:
        if expect_job_id:
            raise SubmissionError(
                unit_id,
                f"Unexpected sbatch output: {(result.stdout or '').strip()!r}. "
                "Expected format: 'Submitted batch job <ID>'",
            )
        return None
    return ",".join(job_ids)


def submit_unit(
    unit: WorkUnit,
    artifact: Path,
    cmd: list[str],
    unit_store: StateStore,
    artifact_store: StateStore,
    config: LauncherConfig,
    *,
    cwd: Path | None = None,
    expect_job_id: bool = True,
    dry_run: bool = False,
    audit: AuditLogger | None = None,
) -> str | None:
    """Submit *artifact* once and record the ``started`` sentinels.

    Both the unit and the artifact must be ``absent``.  After a successful
    submission the artifact and unit ``started`` markers are written, each
    with ``config.sentinel_retries`` attempts.  If that still fails, the unit
    is marked ``ambiguous`` so later scans skip it until ``reconcile``
    resolves it, and :class:`SubmissionError` is raised.

    Returns
    -------
    str or None
        The job id(s), or *None* for dry runs and submissions that print no
        job id.

    Raises
    ------
    TransitionError
        If the unit or the artifact is not ``absent``.
    SubmissionError
        If the submission fails (no sentinel is written) or its sentinels
        cannot be recorded.
    """
    uid = unit.unit_id
    for label, store in (("unit", unit_store), ("artifact", artifact_store)):
        state = store.get(uid)
        if state is not State.ABSENT:
            raise TransitionError(uid, f"{label} is {state.value}; refusing to submit {artifact}")

    if dry_run:
        logger.info("[DRY RUN] %s: would submit: %s", uid, " ".join(cmd))
        if audit is not None:
            audit.log("dry_run", workflow=unit.workflow, unit=uid, detail=" ".join(cmd))
        return None

    try:
        job_id = submit_job(cmd, uid, cwd=cwd, expect_job_id=expect_job_id)
    except SubmissionError as exc:
        if audit is not None:
            audit.log("error", workflow=unit.workflow, unit=uid, detail=str(exc))
        raise

    detail = (
        f"job_id={job_id or ''}\n"
        f"submitted_at={datetime.now(tz=timezone.utc).isoformat()}"
    )
    try:
        _with_retry(
            lambda: artifact_store.transition(uid, State.ABSENT, State.STARTED, detail),
            config,
            f"{uid}: artifact started marker",
        )
        _with_retry(
            lambda: unit_store.transition(uid, State.ABSENT, State.STARTED, detail),
            config,
            f"{uid}: unit started marker",
        )
    except (OSError, TransitionError) as exc:
        if audit is not None:
            audit.log("submitted", workflow=unit.workflow, unit=uid, job_id=job_id)
        _mark_ambiguous(unit, unit_store, detail, audit)
        raise SubmissionError(
            uid, f"submitted (job {job_id or 'unknown'}) but could not record it: {exc}"
        ) from exc

    # audited only once both sentinels exist
    if audit is not None:
        audit.log("submitted", workflow=unit.workflow, unit=uid, job_id=job_id)
    logger.info("%s: submitted job %s", uid, job_id or "(no id reported)")
    return job_id


def _with_retry(action: Callable[[], object], config: LauncherConfig, what: str) -> None:
    for attempt in range(1, config.sentinel_retries + 1):
        try:
            action()
            return
        except OSError as exc:
            if attempt == config.sentinel_retries:
                raise
            logger.warning(
                "%s: write failed (attempt %d/%d): %s",
                what, attempt, config.sentinel_retries, exc,
            )
            time.sleep(config.sentinel_retry_delay)


def _mark_ambiguous(
    unit: WorkUnit,
    unit_store: StateStore,
    detail: str,
    audit: AuditLogger | None,
) -> None:
    uid = unit.unit_id
    try:
        unit_store.transition(uid, State.ABSENT, State.AMBIGUOUS, detail)
    except (OSError, TransitionError) as exc:
        logger.critical(
            "%s: submission could not be recorded and no ambiguous marker was written (%s); "
            "check Slurm before the next scan.",
            uid, exc,
        )
        return
    logger.error("%s: marked ambiguous; run reconcile after checking Slurm.", uid)
    if audit is not None:
        audit.log("ambiguous", workflow=unit.workflow, unit=uid, detail=detail)
