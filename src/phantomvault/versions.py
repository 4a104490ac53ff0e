"""Remote backup versions: ledger, retention, restore and automatic schedule"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from phantomvault.config import settings
from phantomvault.errors import PhantomVaultError, StorageError
from phantomvault.exporter import Exporter
from phantomvault.importer import Importer
from phantomvault.models.results import (
    ExportOptions,
    ExportResult,
    ImportOptions,
    ImportResult,
)
from phantomvault.models.stats import ProgressCallback
from phantomvault.store.base import ObjectStore, RelationalStore

BACKUP_INTERVALS: dict[str, timedelta] = {
    "daily": timedelta(days=1),
    "weekly": timedelta(weeks=1),
    "monthly": timedelta(days=30),
}
DEFAULT_INTERVAL: timedelta = BACKUP_INTERVALS["weekly"]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class BackupVersion(BaseModel):
    """One row of the remote backup ledger"""

    model_config = ConfigDict(extra="ignore")

    id: str | int
    user_id: str
    filename: str
    storage_path: str
    size_bytes: int = 0
    item_counts: dict[str, int] = Field(default_factory=dict)
    includes_media: bool = False
    is_auto_backup: bool = False
    created_at: datetime


class BackupSettings(BaseModel):
    """Per-owner automatic backup preferences"""

    model_config = ConfigDict(extra="ignore")

    user_id: str
    auto_backup_enabled: bool = False
    backup_frequency: str = "weekly"
    include_media: bool = True
    max_versions: int = Field(default=settings.DEFAULT_MAX_VERSIONS, ge=1)
    last_auto_backup: datetime | None = None

    def next_backup_at(self) -> datetime | None:
        """When the next automatic backup is due, None if there is no schedule yet"""
        if not self.auto_backup_enabled or self.last_auto_backup is None:
            return None
        interval = BACKUP_INTERVALS.get(self.backup_frequency, DEFAULT_INTERVAL)
        return _as_utc(self.last_auto_backup) + interval

    def is_backup_due(self, now: datetime) -> bool:
        if not self.auto_backup_enabled:
            return False
        next_backup = self.next_backup_at()
        return next_backup is None or _as_utc(now) >= next_backup


class BackupVersionManager:
    """Handles the backups saved in the remote backups bucket"""

    def __init__(self, db: RelationalStore, storage: ObjectStore):
        self.db: RelationalStore = db
        self.storage: ObjectStore = storage
        self.logger: logging.Logger = logging.getLogger("Versions")

    async def list_versions(self, owner_id: str) -> list[BackupVersion]:
        """Ledger entries of an owner, newest first"""
        rows = await self.db.select(settings.BACKUP_VERSIONS_TABLE, owner_id)
        versions: list[BackupVersion] = []
        for row in rows:
            try:
                versions.append(BackupVersion.model_validate(row))
            except ValidationError as e:
                self.logger.warning("Ignoring invalid backup version %s: %s", row.get("id"), e)
        versions.sort(key=lambda version: _as_utc(version.created_at), reverse=True)
        return versions

    async def get_settings(self, owner_id: str) -> BackupSettings:
        rows = await self.db.select(settings.BACKUP_SETTINGS_TABLE, owner_id)
        if not rows:
            return BackupSettings(user_id=owner_id)
        try:
            return BackupSettings.model_validate(rows[0])
        except ValidationError as e:
            self.logger.error("Invalid backup settings, using defaults: %s", e)
            return BackupSettings(user_id=owner_id)

    async def save_settings(self, backup_settings: BackupSettings) -> None:
        row: dict[str, Any] = backup_settings.model_dump(mode="json")
        row["updated_at"] = datetime.now(timezone.utc).isoformat()
        await self.db.upsert(settings.BACKUP_SETTINGS_TABLE, row, on_conflict="user_id")

    async def find_version(self, owner_id: str, version_id: str | int) -> BackupVersion:
        for version in await self.list_versions(owner_id):
            if version.id == version_id:
                return version
        raise StorageError(f"Backup version {version_id} not found")

    async def delete_version(self, owner_id: str, version_id: str | int) -> None:
        """Remove the backup file first, then its ledger entry"""
        version = await self.find_version(owner_id, version_id)
        await self._delete(version)

    async def _delete(self, version: BackupVersion) -> None:
        await self.storage.remove(settings.BACKUPS_BUCKET, [version.storage_path])
        await self.db.delete(settings.BACKUP_VERSIONS_TABLE, version.id)
        self.logger.debug("Deleted backup version %s", version.filename)

    async def cleanup_old_versions(
        self, owner_id: str, max_versions: int | None = None
    ) -> int:
        """Keep only the newest `max_versions` backups, returns how many were deleted"""
        if max_versions is None:
            max_versions = (await self.get_settings(owner_id)).max_versions
        versions = await self.list_versions(owner_id)

        deleted = 0
        for version in versions[max_versions:]:
            try:
                await self._delete(version)
                deleted += 1
            except StorageError as e:
                # The ledger entry stays, so the next cleanup retries it
                self.logger.error("Could not delete backup %s: %s", version.filename, e)
        if deleted:
            self.logger.info("Deleted %d old backup versions", deleted)
        return deleted

    async def download_version(self, owner_id: str, version_id: str | int) -> bytes:
        version = await self.find_version(owner_id, version_id)
        return await self.storage.download(settings.BACKUPS_BUCKET, version.storage_path)

    async def restore_version(
        self,
        owner_id: str,
        version_id: str | int,
        importer: Importer,
        options: ImportOptions | None = None,
        on_progress: ProgressCallback | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ImportResult:
        """Download a remote backup and import it into the vault"""
        try:
            data = await self.download_version(owner_id, version_id)
        except StorageError as e:
            self.logger.error("Restore of version %s failed: %s", version_id, e)
            return ImportResult(success=False, error=str(e))
        return await importer.import_archive(owner_id, data, options, on_progress, cancel)

    async def run_auto_backup(
        self, owner_id: str, exporter: Exporter, now: datetime | None = None
    ) -> ExportResult | None:
        """
        Create an automatic backup if one is due.

        The backup is only saved remotely, and older versions beyond the
        owner's `max_versions` are deleted afterwards. Returns None when no
        backup was due.
        """
        now = now or datetime.now(timezone.utc)
        try:
            backup_settings = await self.get_settings(owner_id)
        except PhantomVaultError as e:
            self.logger.error("Could not read backup settings: %s", e)
            return None

        if not backup_settings.is_backup_due(now):
            self.logger.debug(
                "No automatic backup due, next at %s", backup_settings.next_backup_at()
            )
            return None

        self.logger.info("Running automatic %s backup", backup_settings.backup_frequency)
        result = await exporter.export(
            owner_id,
            ExportOptions(
                include_media=backup_settings.include_media,
                save_remotely=True,
                is_automatic=True,
            ),
        )
        if result.success:
            _ = await self.cleanup_old_versions(owner_id, backup_settings.max_versions)
        return result
