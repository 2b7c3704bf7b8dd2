"""audit.py — JSONL audit trail for ngs_launcher.

Each submitted, skipped, failed, ambiguous or reconciled unit is appended as
a single JSON object (one line) to the audit file.  The file is created
(with parent directories) on the first write.

Typical usage::

    from ngs_launcher.audit import get_logger

    audit = get_logger(config)
    audit.log("submitted", workflow="concordance", unit="RUN_042", job_id="12345")
"""
from __future__ import annotations

__all__ = ["AuditLogger", "get_logger", "AUDIT_EVENTS"]

import getpass
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ngs_launcher.config import LauncherConfig

logger = logging.getLogger(__name__)

#: Valid event names for the audit log.
AUDIT_EVENTS = frozenset(
    {"submitted", "skipped", "error", "dry_run", "ambiguous", "reconciled"}
)


class AuditLogger:
    """Appends structured JSON Lines entries to an audit log file.

    Parameters
    ----------
    log_file:
        Path to the JSONL audit file.
    group:
        Group recorded with every entry.
    """

    def __init__(self, log_file: Path, group: str = "") -> None:
        self.log_file = Path(log_file)
        self.group = group

    def log(
        self,
        event: str,
        *,
        workflow: str = "",
        unit: str = "",
        job_id: str | None = None,
        detail: str = "",
        **extra: Any,
    ) -> None:
        """Append a single audit event as a JSON line.

        Raises
        ------
        ValueError
            If *event* is not one of :data:`AUDIT_EVENTS`.
        """
        if event not in AUDIT_EVENTS:
            raise ValueError(f"Unknown audit event {event!r}; expected one of {sorted(AUDIT_EVENTS)}")
        entry: dict[str, Any] = {
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "event": event,
            "group": self.group,
            "user": getpass.getuser(),
            "workflow": workflow,
            "unit": unit,
            "job_id": job_id,
            "detail": detail,
        }
        entry.update(extra)

        # Audit failures never change the outcome of a unit.
        try:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            with self.log_file.open("a") as fh:
                fh.write(json.dumps(entry) + "\n")
        except OSError as exc:
            logger.warning(
                "audit %s for %s not written to %s: %s", event, unit, self.log_file, exc
            )
            return

        logger.debug("audit %s: %s/%s job_id=%s", event, workflow, unit, job_id)


def get_logger(config: LauncherConfig) -> AuditLogger:
    """Return an :class:`AuditLogger` for *config*.

    Uses ``config.log_file`` when set; otherwise
    ``<lock_dir>/ngs_launcher_audit.jsonl``.
    """
    return AuditLogger(config.audit_file(), group=config.group)
