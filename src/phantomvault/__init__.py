"""
PhantomVault backup engine.

Exports a whole vault into a single, optionally encrypted .phantomvault
archive and restores it, remapping every identifier on the way in.
"""

from phantomvault.exporter import Exporter
from phantomvault.importer import Importer
from phantomvault.logger import configure_logging
from phantomvault.models.results import (
    ConflictResolution,
    ExportOptions,
    ExportResult,
    ImportOptions,
    ImportResult,
)
from phantomvault.versions import BackupSettings, BackupVersion, BackupVersionManager

__all__ = [
    "BackupSettings",
    "BackupVersion",
    "BackupVersionManager",
    "ConflictResolution",
    "ExportOptions",
    "ExportResult",
    "Exporter",
    "ImportOptions",
    "ImportResult",
    "Importer",
    "configure_logging",
]
