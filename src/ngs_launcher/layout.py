"""layout.py — where each workflow keeps its inputs, scripts and sentinels.

Concordance (``concordance_dir``)::

    samplesheets/**/<id>.sampleId.txt    input sample sheets
    array/ ngs/                          staged input VCFs
    tmp/<id>/                            per-unit working area
    jobs/<id>.sh[.started|.finished]     generated Slurm script + sentinels
    logs/<id>.started|finished           unit sentinels
    results/                             CompareGenotypeCalls output

Demultiplexing (``scr_root_dir``)::

    Samplesheets/<run>.csv
    generatedscripts/<run>/
    runs/<run>/jobs/submit.sh[.started|.finished]
    logs/<run>/run01.demultiplexing.started|finished
"""
from __future__ import annotations

__all__ = ["ConcordanceLayout", "DemultiplexingLayout"]

from dataclasses import dataclass
from pathlib import Path

from ngs_launcher.config import LauncherConfig
from ngs_launcher.state import FileStateStore


@dataclass(frozen=True)
class ConcordanceLayout:
    root: Path

    @classmethod
    def from_config(cls, config: LauncherConfig) -> "ConcordanceLayout":
        return cls(Path(config.concordance_dir))

    @property
    def samplesheets_dir(self) -> Path:
        return self.root / "samplesheets"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def jobs_dir(self) -> Path:
        return self.root / "jobs"

    @property
    def results_dir(self) -> Path:
        return self.root / "results"

    @property
    def array_dir(self) -> Path:
        return self.root / "array"

    @property
    def ngs_dir(self) -> Path:
        return self.root / "ngs"

    @property
    def java_tmp_dir(self) -> Path:
        return self.root / "temp"

    def tmp_dir(self, unit_id: str) -> Path:
        return self.root / "tmp" / unit_id

    def artifact(self, unit_id: str) -> Path:
        return self.jobs_dir / f"{unit_id}.sh"

    def unit_store(self) -> FileStateStore:
        return FileStateStore(self.logs_dir, "{unit}")

    def artifact_store(self) -> FileStateStore:
        return FileStateStore(self.jobs_dir, "{unit}.sh")

    def directories(self) -> list[Path]:
        """Directories that must exist before units are processed."""
        return [
            self.logs_dir,
            self.jobs_dir,
            self.root / "tmp",
            self.results_dir,
            self.array_dir,
            self.ngs_dir,
            self.java_tmp_dir,
        ]


@dataclass(frozen=True)
class DemultiplexingLayout:
    root: Path

    @classmethod
    def from_config(cls, config: LauncherConfig) -> "DemultiplexingLayout":
        return cls(Path(config.scr_root_dir))

    def samplesheet(self, run: str) -> Path:
        return self.root / "Samplesheets" / f"{run}.csv"

    def logs_dir(self, run: str) -> Path:
        return self.root / "logs" / run

    def generated_dir(self, run: str) -> Path:
        return self.root / "generatedscripts" / run

    def jobs_dir(self, run: str) -> Path:
        return self.root / "runs" / run / "jobs"

    def artifact(self, run: str) -> Path:
        return self.jobs_dir(run) / "submit.sh"

    def runtime_file(self, run: str) -> Path:
        return self.logs_dir(run) / "run01.demultiplexing.totalRuntime"

    def trackandtrace_file(self, run: str) -> Path:
        return self.logs_dir(run) / "run01.demultiplexing.trackAndTrace_overview.csv"

    def unit_store(self) -> FileStateStore:
        return FileStateStore(self.root / "logs", "{unit}/run01.demultiplexing")

    def artifact_store(self) -> FileStateStore:
        return FileStateStore(self.root / "runs", "{unit}/jobs/submit.sh")
