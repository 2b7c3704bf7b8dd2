"""trackandtrace.py — per-run bookkeeping files written when demultiplexing starts.

``run01.demultiplexing.totalRuntime`` records the start time and
``run01.demultiplexing.trackAndTrace_overview.csv`` is the status row picked
up by the track-and-trace database import.
"""
from __future__ import annotations

__all__ = ["OVERVIEW_COLUMNS", "write_runtime_start", "write_overview"]

from datetime import datetime
from pathlib import Path

import pandas as pd

OVERVIEW_COLUMNS = ["run_id", "group", "demultiplexing", "copy_raw_prm", "projects", "startDate"]


def _timestamp(when: datetime | None) -> str:
    when = when or datetime.now().astimezone()
    return when.strftime("%Y-%m-%dT%H:%M:%S%z")


def write_runtime_start(path: Path, when: datetime | None = None) -> None:
    """Overwrite *path* with a ``started: <timestamp>`` line."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"started: {_timestamp(when)}\n")


def write_overview(path: Path, run: str, group: str, when: datetime | None = None) -> pd.DataFrame:
    """Write the one-row overview CSV marking *run* as started and return it."""
    overview = pd.DataFrame(
        [{
            "run_id": run,
            "group": group,
            "demultiplexing": "started",
            "copy_raw_prm": "",
            "projects": "",
            "startDate": _timestamp(when),
        }],
        columns=OVERVIEW_COLUMNS,
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    overview.to_csv(path, index=False)
    return overview
