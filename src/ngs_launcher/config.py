from __future__ import annotations

__all__ = ["LauncherConfig", "load_config", "config_files"]

import socket
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Literal

import yaml

from ngs_launcher.errors import ConfigError

# Fields holding filesystem paths; strings from YAML are converted to Path
# and may contain {group} / {tmp_lfs} placeholders.
_PATH_FIELDS = (
    "seq_dir",
    "scr_root_dir",
    "concordance_dir",
    "lock_dir",
    "demultiplexing_template",
    "log_file",
)


@dataclass
class LauncherConfig:
    """All path conventions and settings in one place."""

    group: str = ""
    tmp_lfs: str = "tmp01"

    # Only this account may run the launcher; None disables the check.
    bot_user: str | None = None

    # Root directories
    seq_dir: Path = field(default_factory=lambda: Path("/groups/{group}/{tmp_lfs}/sequencers"))
    scr_root_dir: Path = field(default_factory=lambda: Path("/groups/{group}/{tmp_lfs}"))
    concordance_dir: Path = field(
        default_factory=lambda: Path("/groups/{group}/{tmp_lfs}/concordance")
    )
    lock_dir: Path = field(default_factory=lambda: Path("/groups/{group}/{tmp_lfs}/logs"))

    # Site-provided generate_template.sh for demultiplexing.  When None,
    # $EBROOTNGS_DEMULTIPLEXING/generate_template.sh is used.
    demultiplexing_template: Path | None = None
    samplesheet_pattern: str = "*sampleId.txt"

    # Environment modules loaded by generated concordance jobs
    htslib_module: str = "HTSlib"
    compare_genotype_calls_module: str = "CompareGenotypeCalls"
    bedtools_module: str = "BEDTools"

    # Slurm resources for generated concordance jobs
    slurm_cpus_per_task: int = 1
    slurm_mem: str = "10gb"
    slurm_time: str = "05:59:00"
    slurm_partition: str | None = None
    slurm_account: str | None = None

    # Sentinel write policy after a successful submission
    sentinel_retries: int = 3
    sentinel_retry_delay: float = 1.0

    # What a unit-scoped failure does to the rest of the scan
    on_unit_error: Literal["continue", "abort"] = "continue"

    # JSONL audit log path. Defaults to <lock_dir>/ngs_launcher_audit.jsonl.
    log_file: Path | None = None

    def __post_init__(self) -> None:
        """Coerce path fields and resolve placeholders.

        Raises
        ------
        ValueError
            If ``on_unit_error`` or ``sentinel_retries`` is out of range, or a
            path uses a placeholder other than ``{group}`` and ``{tmp_lfs}``.
        """
        if self.on_unit_error not in ("continue", "abort"):
            raise ValueError(
                f"on_unit_error must be 'continue' or 'abort', got {self.on_unit_error!r}"
            )
        if self.sentinel_retries < 1:
            raise ValueError(f"sentinel_retries must be >= 1, got {self.sentinel_retries}")
        for name in _PATH_FIELDS:
            value = getattr(self, name)
            if value is None:
                continue
            value = str(value)
            if self.group:
                try:
                    value = value.format(group=self.group, tmp_lfs=self.tmp_lfs)
                except (KeyError, IndexError, ValueError) as exc:
                    raise ValueError(
                        f"{name} {value!r} has an unknown placeholder ({exc}); "
                        "only {group} and {tmp_lfs} are supported"
                    ) from exc
            setattr(self, name, Path(value))

    def lock_file(self, command: str) -> Path:
        """Return the lock path for *command* (one lock per group and command)."""
        return self.lock_dir / f"{command}.lock"

    def audit_file(self) -> Path:
        if self.log_file is not None:
            return self.log_file
        return self.lock_dir / "ngs_launcher_audit.jsonl"

    @classmethod
    def from_yaml(cls, path: str | Path, **overrides) -> "LauncherConfig":
        """Load config from a single YAML file, overriding defaults.

        Raises
        ------
        ConfigError
            If the file is missing, is not valid YAML, or names unknown keys.
        """
        data = _read_yaml(Path(path))
        data.update(overrides)
        return _build(data, source=str(path))


def config_files(config_dir: str | Path, group: str, hostname: str | None = None) -> list[Path]:
    """Return the layered config files in load order (later ones win)."""
    config_dir = Path(config_dir)
    hostname = hostname or socket.gethostname().split(".")[0]
    return [
        config_dir / "sharedConfig.yaml",
        config_dir / f"{hostname}.yaml",
        config_dir / f"{group}.yaml",
    ]


def load_config(
    config_dir: str | Path,
    group: str,
    hostname: str | None = None,
) -> LauncherConfig:
    """Merge the shared, host and group config files for *group*.

    Every file returned by :func:`config_files` must exist; a missing one is
    an environment error.

    Raises
    ------
    ConfigError
        If any file is missing or invalid, or the merged settings are invalid.
    """
    data: dict = {}
    for path in config_files(config_dir, group, hostname):
        data.update(_read_yaml(path))
    data["group"] = group
    return _build(data, source=str(config_dir))


def _read_yaml(path: Path) -> dict:
    if not path.is_file():
        raise ConfigError(f"Config file {path} missing or not accessible.")
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except OSError as exc:
        raise ConfigError(f"Cannot read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
    return data


def _build(data: dict, source: str) -> LauncherConfig:
    known = {f.name for f in fields(LauncherConfig)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"Unknown config key(s) in {source}: {sorted(unknown)}")
    try:
        return LauncherConfig(**data)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid config in {source}: {exc}") from exc
