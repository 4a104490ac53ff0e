"""The models describing archives, vault records and run results"""

__all__ = [
    "Category",
    "VaultRecord",
    "Manifest",
    "ManifestMetadata",
    "ManifestMediaEntry",
    "ManifestTableData",
    "IdRemapTable",
    "ImportStats",
    "Progress",
    "ProgressPhase",
]

from .records import Category, VaultRecord
from .manifest import Manifest, ManifestMetadata, ManifestMediaEntry, ManifestTableData
from .remap import IdRemapTable
from .stats import ImportStats, Progress, ProgressPhase
