"""Options and results of export and import runs"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from phantomvault.models.stats import ImportStats
from phantomvault.utils.batching import BoundedStatus


class ConflictResolution(str, Enum):
    """What to do with an imported tag whose name already exists"""

    SKIP = "skip"
    OVERWRITE = "overwrite"
    DUPLICATE = "duplicate"


@dataclass
class ExportOptions:
    include_media: bool = True
    password: str | None = None
    save_remotely: bool = False
    is_automatic: bool = False


@dataclass
class ImportOptions:
    conflict_resolution: ConflictResolution = ConflictResolution.SKIP
    password: str | None = None


@dataclass
class ExportResult:
    success: bool
    filename: str | None = None
    error: str | None = None
    archive: bytes | None = None
    local_path: Path | None = None
    remote: BoundedStatus | None = None
    media_total: int = 0
    media_failed: int = 0


@dataclass
class ImportResult:
    success: bool
    stats: ImportStats = field(default_factory=ImportStats)
    error: str | None = None
