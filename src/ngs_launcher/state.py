"""state.py — lifecycle sentinels for work units and submission artifacts.

A unit's state is the presence of marker files next to each other::

    <root>/<name>.started     submitted, job not yet done (or crashed)
    <root>/<name>.finished    the job renamed .started to .finished
    <root>/<name>.ambiguous   submitted, but .started could not be written

where ``<name>`` is the store's template formatted with the unit id.  Nothing
is cached: every :meth:`StateStore.get` re-reads the filesystem.

:class:`MemoryStateStore` implements the same transitions without touching
disk and is used where the state machine is tested in isolation.
"""
from __future__ import annotations

__all__ = ["State", "StateStore", "FileStateStore", "MemoryStateStore", "ALLOWED_TRANSITIONS"]

import logging
import os
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path

from ngs_launcher.errors import TransitionError

logger = logging.getLogger(__name__)


class State(str, Enum):
    ABSENT = "absent"
    STARTED = "started"
    FINISHED = "finished"
    AMBIGUOUS = "ambiguous"


ALLOWED_TRANSITIONS: frozenset[tuple[State, State]] = frozenset(
    {
        (State.ABSENT, State.STARTED),
        (State.STARTED, State.FINISHED),
        (State.ABSENT, State.AMBIGUOUS),
        (State.AMBIGUOUS, State.STARTED),
        (State.AMBIGUOUS, State.ABSENT),
    }
)


class StateStore(ABC):
    """Lifecycle state keyed by unit id."""

    @abstractmethod
    def get(self, unit_id: str) -> State:
        """Return the current state of *unit_id*."""

    def transition(self, unit_id: str, from_state: State, to_state: State, detail: str = "") -> State:
        """Move *unit_id* from *from_state* to *to_state*.

        *detail* is stored with the new marker where the backend supports
        it (e.g. the Slurm job id).

        Raises
        ------
        TransitionError
            If the transition is not allowed or the unit is not currently in
            *from_state*.
        OSError
            If the backing store cannot be written.
        """
        if (from_state, to_state) not in ALLOWED_TRANSITIONS:
            raise TransitionError(
                unit_id, f"transition {from_state.value} -> {to_state.value} is not allowed"
            )
        current = self.get(unit_id)
        if current is not from_state:
            raise TransitionError(
                unit_id,
                f"expected state {from_state.value} but found {current.value}",
            )
        self._apply(unit_id, from_state, to_state, detail)
        logger.debug("%s: %s -> %s", unit_id, from_state.value, to_state.value)
        return to_state

    def detail(self, unit_id: str) -> str:
        """Return the detail stored with the unit's current marker, if any."""
        return ""

    @abstractmethod
    def _apply(self, unit_id: str, from_state: State, to_state: State, detail: str) -> None:
        """Persist a validated transition."""


class FileStateStore(StateStore):
    """Marker-file backed store rooted at *root*.

    Parameters
    ----------
    root:
        Directory holding the markers.
    template:
        Marker basename, formatted with ``unit=<unit id>``; may contain a
        subdirectory (e.g. ``"{unit}/run01.demultiplexing"``).
    """

    def __init__(self, root: str | Path, template: str = "{unit}") -> None:
        self.root = Path(root)
        self.template = template

    def marker(self, unit_id: str, state: State) -> Path:
        """Return the marker path recording *state* for *unit_id*."""
        return self.root / f"{self.template.format(unit=unit_id)}.{state.value}"

    def get(self, unit_id: str) -> State:
        for state in (State.FINISHED, State.STARTED, State.AMBIGUOUS):
            if self.marker(unit_id, state).exists():
                return state
        return State.ABSENT

    def detail(self, unit_id: str) -> str:
        state = self.get(unit_id)
        if state is State.ABSENT:
            return ""
        try:
            return self.marker(unit_id, state).read_text()
        except OSError:
            return ""

    def _apply(self, unit_id: str, from_state: State, to_state: State, detail: str) -> None:
        if from_state is State.ABSENT:
            self._create(unit_id, self.marker(unit_id, to_state), detail)
        elif to_state is State.ABSENT:
            self.marker(unit_id, from_state).unlink()
        else:
            os.rename(self.marker(unit_id, from_state), self.marker(unit_id, to_state))

    def _create(self, unit_id: str, path: Path, detail: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o640)
        except FileExistsError:
            raise TransitionError(unit_id, f"marker {path} appeared concurrently") from None
        with os.fdopen(fd, "w") as fh:
            if detail:
                fh.write(detail.rstrip("\n") + "\n")


class MemoryStateStore(StateStore):
    """In-memory store with the same transition rules as :class:`FileStateStore`."""

    def __init__(self, initial: dict[str, State] | None = None) -> None:
        self._states: dict[str, State] = dict(initial or {})
        self.details: dict[str, str] = {}

    def get(self, unit_id: str) -> State:
        return self._states.get(unit_id, State.ABSENT)

    def detail(self, unit_id: str) -> str:
        return self.details.get(unit_id, "")

    def _apply(self, unit_id: str, from_state: State, to_state: State, detail: str) -> None:
        if to_state is State.ABSENT:
            self._states.pop(unit_id, None)
            self.details.pop(unit_id, None)
        else:
            self._states[unit_id] = to_state
        if detail:
            self.details[unit_id] = detail
