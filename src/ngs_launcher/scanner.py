from __future__ import annotations

__all__ = ["WorkUnit", "scan", "scan_run_dirs", "scan_samplesheets", "samplesheet_unit_id"]

import fnmatch
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator

SAMPLESHEET_SUFFIX = ".sampleId.txt"


@dataclass(frozen=True)
class WorkUnit:
    """One sequencer run or one sample-sheet-derived concordance check."""

    unit_id: str
    path: Path
    workflow: str


def scan(root: Path, predicate: Callable[[Path], bool], recursive: bool = False) -> Iterator[Path]:
    """Yield entries under *root* accepted by *predicate*.

    Only immediate children are considered unless *recursive* is True.  A
    missing *root* yields nothing.  Order is filesystem enumeration order.
    """
    root = Path(root)
    if not root.is_dir():
        return
    entries = root.rglob("*") if recursive else root.iterdir()
    for entry in entries:
        if predicate(entry):
            yield entry


def scan_run_dirs(seq_dir: Path) -> Iterator[WorkUnit]:
    """Yield a unit for every run directory directly under *seq_dir*."""
    for run_dir in scan(seq_dir, Path.is_dir):
        yield WorkUnit(unit_id=run_dir.name, path=run_dir, workflow="demultiplexing")


def samplesheet_unit_id(path: Path) -> str:
    """Return the concordance check id for a sample sheet file name."""
    name = path.name
    if name.lower().endswith(SAMPLESHEET_SUFFIX.lower()):
        return name[: -len(SAMPLESHEET_SUFFIX)]
    return path.stem


def scan_samplesheets(root: Path, pattern: str = "*sampleId.txt") -> Iterator[WorkUnit]:
    """Recursively yield a unit for every file under *root* matching *pattern*.

    Matching is case-insensitive, like ``find -iname``.
    """
    pattern = pattern.lower()

    def matches(p: Path) -> bool:
        return p.is_file() and fnmatch.fnmatchcase(p.name.lower(), pattern)

    for sheet in scan(root, matches, recursive=True):
        yield WorkUnit(unit_id=samplesheet_unit_id(sheet), path=sheet, workflow="concordance")
