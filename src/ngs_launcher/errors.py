"""Exception hierarchy for ngs_launcher.

Environment and concurrency errors abort the whole invocation before any
work unit is touched.  :class:`UnitError` subclasses are scoped to a single
work unit and are captured per unit by :mod:`ngs_launcher.pipeline`.
"""
from __future__ import annotations

__all__ = [
    "LauncherError",
    "ConfigError",
    "EnvironmentCheckError",
    "LockHeldError",
    "UnitError",
    "SampleSheetError",
    "PreprocessingError",
    "SubmissionError",
    "TransitionError",
]


class LauncherError(Exception):
    """Base class for all ngs_launcher errors."""


class ConfigError(LauncherError):
    """A config file is missing, unreadable, or invalid."""


class EnvironmentCheckError(LauncherError):
    """The process runs under the wrong identity or environment."""


class LockHeldError(LauncherError):
    """Another invocation holds the lock for this group and command."""

    def __init__(self, lock_path, holder: str = "") -> None:
        self.lock_path = lock_path
        self.holder = holder
        msg = f"Lock {lock_path} is held by another process"
        if holder:
            msg += f" ({holder})"
        super().__init__(msg)


class UnitError(LauncherError):
    """An error confined to one work unit."""

    def __init__(self, unit_id: str, message: str) -> None:
        self.unit_id = unit_id
        super().__init__(f"{unit_id}: {message}")


class SampleSheetError(UnitError):
    """The unit's sample sheet is missing, unreadable, or malformed."""


class PreprocessingError(UnitError):
    """A staging or pre-processing step failed while generating the artifact."""


class SubmissionError(UnitError):
    """Submission to Slurm failed or its outcome could not be recorded."""


class TransitionError(UnitError):
    """A lifecycle transition was requested from the wrong state."""
