"""Run statistics and progress reports for exports and imports"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any


@dataclass
class CategoryStats:
    total: int = 0
    imported: int = 0
    skipped: int = 0

    def merge(self, other: "CategoryStats") -> None:
        self.total += other.total
        self.imported += other.imported
        self.skipped += other.skipped

    def to_dict(self) -> dict[str, int]:
        return {"total": self.total, "imported": self.imported, "skipped": self.skipped}


@dataclass
class MediaStats:
    total: int = 0
    uploaded: int = 0
    failed: int = 0

    def merge(self, other: "MediaStats") -> None:
        self.total += other.total
        self.uploaded += other.uploaded
        self.failed += other.failed

    def to_dict(self) -> dict[str, int]:
        return {"total": self.total, "uploaded": self.uploaded, "failed": self.failed}


@dataclass
class ImportStats:
    """
    Counters of one import run.

    Each import stage returns its own ImportStats; the orchestrator merges
    them once the stage has settled, so no two batches write the same value.
    """

    notes: CategoryStats = field(default_factory=CategoryStats)
    photos: CategoryStats = field(default_factory=CategoryStats)
    files: CategoryStats = field(default_factory=CategoryStats)
    links: CategoryStats = field(default_factory=CategoryStats)
    tiktoks: CategoryStats = field(default_factory=CategoryStats)
    secrets: CategoryStats = field(default_factory=CategoryStats)
    tags: CategoryStats = field(default_factory=CategoryStats)
    albums: CategoryStats = field(default_factory=CategoryStats)
    folders: CategoryStats = field(default_factory=CategoryStats)
    media: MediaStats = field(default_factory=MediaStats)

    def merge(self, other: "ImportStats") -> "ImportStats":
        for f in fields(self):
            getattr(self, f.name).merge(getattr(other, f.name))
        return self

    @property
    def total_imported(self) -> int:
        return sum(
            getattr(self, f.name).imported for f in fields(self) if f.name != "media"
        )

    def to_dict(self) -> dict[str, dict[str, int]]:
        return {f.name: getattr(self, f.name).to_dict() for f in fields(self)}


class ProgressPhase(str, Enum):
    INIT = "init"
    METADATA = "metadata"
    READING = "reading"
    VALIDATING = "validating"
    DATABASE = "database"
    MEDIA = "media"
    PACKAGING = "packaging"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class Progress:
    phase: ProgressPhase
    percent: int
    message: str
    current: int | None = None
    total: int | None = None
    bytes_processed: int | None = None

    def to_dict(self) -> dict[str, Any]:
        report: dict[str, Any] = {
            "phase": self.phase.value,
            "percent": self.percent,
            "message": self.message,
        }
        for key in ("current", "total", "bytes_processed"):
            value = getattr(self, key)
            if value is not None:
                report[key] = value
        return report


ProgressCallback = Callable[[Progress], None]


class ProgressReporter:
    """
    Forwards progress to the caller's callback.

    Percentages are clamped to [0, 100] and never go down within a run;
    an error report is passed through as is. Nothing is forwarded once the
    run has completed or failed. A failing callback is logged
    and does not break the run.
    """

    def __init__(self, callback: ProgressCallback | None, logger_name: str):
        self._callback: ProgressCallback | None = callback
        self._percent: int = 0
        self._finished: bool = False
        self.logger: logging.Logger = logging.getLogger(logger_name)

    @property
    def finished(self) -> bool:
        return self._finished

    def report(
        self,
        phase: ProgressPhase,
        percent: int,
        message: str,
        current: int | None = None,
        total: int | None = None,
        bytes_processed: int | None = None,
    ) -> None:
        if self.finished:
            # complete or error is always the last report of a run
            self.logger.debug("Ignoring late progress report: %s", message)
            return
        if phase is not ProgressPhase.ERROR:
            percent = max(self._percent, min(100, max(0, percent)))
            self._percent = percent
        if phase in (ProgressPhase.COMPLETE, ProgressPhase.ERROR):
            self._finished = True
        self.logger.debug("[%s %d%%] %s", phase.value, percent, message)
        self._emit(
            Progress(phase, percent, message, current, total, bytes_processed)
        )

    def complete(self, message: str) -> None:
        self.report(ProgressPhase.COMPLETE, 100, message)

    def error(self, message: str) -> None:
        self.report(ProgressPhase.ERROR, 0, message)

    def _emit(self, progress: Progress) -> None:
        if self._callback is None:
            return
        try:
            self._callback(progress)
        except Exception as e:  # pylint: disable=broad-exception-caught
            self.logger.error("Progress callback failed: %s", e)
