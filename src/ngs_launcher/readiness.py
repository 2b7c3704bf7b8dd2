from __future__ import annotations

__all__ = [
    "Skip",
    "Ready",
    "ConcordancePair",
    "classify",
    "read_sample_sheet",
    "is_run_complete",
    "demultiplexing_check",
    "concordance_check",
]

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Union

import pandas as pd

from ngs_launcher.config import LauncherConfig
from ngs_launcher.errors import SampleSheetError
from ngs_launcher.layout import DemultiplexingLayout
from ngs_launcher.scanner import WorkUnit
from ngs_launcher.state import State, StateStore

logger = logging.getLogger(__name__)

# Instrument field (second "_"-separated part of a run name) of MiSeq runs
MISEQ_NAME = re.compile(r"^M[0-9]+$")

_SAMPLESHEET_COLUMNS = ("array_id", "ngs_id", "array_path", "ngs_path")


@dataclass(frozen=True)
class Skip:
    reason: str


@dataclass(frozen=True)
class Ready:
    params: Any = None


Decision = Union[Skip, Ready]
ReadyCheck = Callable[[WorkUnit], Decision]


@dataclass(frozen=True)
class ConcordancePair:
    """Array and NGS inputs of one concordance check."""

    array_id: str
    ngs_id: str
    array_path: Path
    ngs_path: Path
    samplesheet: Path

    @property
    def array_vcf(self) -> str:
        return f"{self.array_id}.FINAL.vcf"

    @property
    def ngs_vcf(self) -> str:
        return f"{self.ngs_id}.final.vcf.gz"


def classify(unit: WorkUnit, store: StateStore, check: ReadyCheck) -> Decision:
    """Decide whether *unit* should be processed.

    The first matching rule wins:

    1. ``finished`` sentinel → ``Skip("already finished")``
    2. ``started`` sentinel → ``Skip("already in progress")``
    3. ``ambiguous`` marker → ``Skip("submission state ambiguous")``
    4. *check* decides; it returns ``Skip`` when the source is not ready
       and ``Ready`` with the unit's parameters otherwise.

    Unit-scoped errors raised by *check* (e.g. :class:`SampleSheetError`)
    propagate to the caller.
    """
    state = store.get(unit.unit_id)
    if state is State.FINISHED:
        return Skip("already finished")
    if state is State.STARTED:
        return Skip("already in progress")
    if state is State.AMBIGUOUS:
        return Skip("submission state ambiguous; run reconcile")
    return check(unit)


def is_run_complete(run_dir: Path) -> bool:
    """Return True once the sequencer has finished writing *run_dir*.

    ``RunCompletionStatus.xml`` marks completion for all instruments; MiSeq
    runs (instrument field matching ``M<digits>``) may instead only carry
    ``RTAComplete.txt``.
    """
    if (run_dir / "RunCompletionStatus.xml").exists():
        return True
    parts = run_dir.name.split("_")
    sequencer = parts[1] if len(parts) > 1 else ""
    if MISEQ_NAME.match(sequencer) and (run_dir / "RTAComplete.txt").exists():
        logger.debug("MiSeq run detected: %s completed.", run_dir.name)
        return True
    return False


def demultiplexing_check(config: LauncherConfig) -> ReadyCheck:
    """Return the readiness check for sequencer runs.

    A run is ready when its sample sheet ``Samplesheets/<run>.csv`` exists
    under ``scr_root_dir`` and the sequencer has completed the run.
    """
    layout = DemultiplexingLayout.from_config(config)

    def check(unit: WorkUnit) -> Decision:
        samplesheet = layout.samplesheet(unit.unit_id)
        if not samplesheet.is_file():
            return Skip("no sample sheet")
        if not is_run_complete(unit.path):
            return Skip("source not ready")
        return Ready({"samplesheet": samplesheet})

    check.__name__ = "demultiplexing_ready"
    return check


def concordance_check(config: LauncherConfig) -> ReadyCheck:
    """Return the readiness check for concordance sample sheets.

    A prepared sample sheet is the completion marker; a malformed one is a
    fatal error for its unit.
    """

    def check(unit: WorkUnit) -> Decision:
        return Ready(read_sample_sheet(unit.path, unit_id=unit.unit_id))

    check.__name__ = "concordance_ready"
    return check


def read_sample_sheet(path: str | Path, unit_id: str | None = None) -> ConcordancePair:
    """Parse a concordance sample sheet.

    The file is tab-delimited with one header row, which is skipped.  The
    first four columns of the first data row are array sample id, NGS sample
    id, array file location and NGS file location.

    Raises
    ------
    SampleSheetError
        If the file is missing or unreadable, has no data row, or any data
        row has fewer than four non-empty columns.
    """
    path = Path(path)
    unit_id = unit_id or path.name
    try:
        df = pd.read_csv(
            path,
            sep="\t",
            header=None,
            skiprows=1,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
        )
    except FileNotFoundError:
        raise SampleSheetError(unit_id, f"sample sheet {path} does not exist") from None
    except pd.errors.EmptyDataError:
        raise SampleSheetError(unit_id, f"sample sheet {path} has no data rows") from None
    except (OSError, UnicodeDecodeError, pd.errors.ParserError) as exc:
        raise SampleSheetError(unit_id, f"cannot read sample sheet {path}: {exc}") from exc

    if df.empty:
        raise SampleSheetError(unit_id, f"sample sheet {path} has no data rows")
    if df.shape[1] < len(_SAMPLESHEET_COLUMNS):
        raise SampleSheetError(
            unit_id,
            f"sample sheet {path} has {df.shape[1]} column(s); "
            f"expected at least {len(_SAMPLESHEET_COLUMNS)}",
        )
    for lineno, row in enumerate(df.itertuples(index=False), start=2):
        values = list(row)[: len(_SAMPLESHEET_COLUMNS)]
        if any(pd.isna(v) or not str(v).strip() for v in values):
            raise SampleSheetError(
                unit_id, f"sample sheet {path} line {lineno} is missing required column(s)"
            )
    if len(df) > 1:
        logger.warning("%s: sample sheet %s has %d rows; using the first.", unit_id, path, len(df))

    array_id, ngs_id, array_path, ngs_path = (str(v).strip() for v in df.iloc[0, :4])
    return ConcordancePair(
        array_id=array_id,
        ngs_id=ngs_id,
        array_path=Path(array_path),
        ngs_path=Path(ngs_path),
        samplesheet=path,
    )
