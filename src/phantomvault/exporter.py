"""Export of a whole vault into a single .phantomvault archive"""

import asyncio
import base64
import io
import json
import logging
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from phantomvault.config import settings
from phantomvault.errors import OperationCancelledError, PhantomVaultError
from phantomvault.models.manifest import (
    EncryptionInfo,
    Manifest,
    ManifestMediaEntry,
    ManifestTableData,
    compute_manifest_checksum,
    create_manifest,
    create_media_entry,
    get_item_counts,
    media_checksum,
    serialize_manifest,
)
from phantomvault.models.records import Category, dump_record, parse_records
from phantomvault.models.results import ExportOptions, ExportResult
from phantomvault.models.stats import ProgressCallback, ProgressPhase, ProgressReporter
from phantomvault.store.base import ObjectStore, RelationalStore
from phantomvault.utils.batching import (
    BoundedStatus,
    batch_items,
    check_cancelled,
    gather_settled,
    run_bounded,
    yield_to_main,
)
from phantomvault.utils.encryption import CryptoPrimitive, SecureEncryption
from phantomvault.utils.files import atomic_write_bytes


@dataclass
class MediaDownload:
    """Media gathered for one archive"""

    entries: list[ManifestMediaEntry] = field(default_factory=list)
    payloads: dict[str, bytes] = field(default_factory=dict)
    total_bytes: int = 0
    total: int = 0
    failed: int = 0


def build_backup_filename(now: datetime, is_automatic: bool = False) -> str:
    """phantomvault-<date>-<time>[-auto].phantomvault, in UTC"""
    now = now.astimezone(timezone.utc)
    suffix = "-auto" if is_automatic else ""
    return (
        f"{settings.PRODUCT_TAG}-{now:%Y-%m-%d}-{now:%H%M}{suffix}"
        f"{settings.ARCHIVE_EXTENSION}"
    )


class Exporter:
    """
    Builds a backup archive of one owner's vault.

    The pipeline reads every record collection, downloads the media in
    bounded parallel batches, packs manifest and media into a ZIP archive,
    optionally encrypts it, and delivers it to a local directory and/or the
    remote backups bucket.
    """

    def __init__(
        self,
        db: RelationalStore,
        storage: ObjectStore,
        crypto: CryptoPrimitive | None = None,
        export_dir: Path | None = None,
    ):
        self.db: RelationalStore = db
        self.storage: ObjectStore = storage
        self.crypto: CryptoPrimitive = crypto or SecureEncryption()
        self.export_dir: Path = export_dir or settings.EXPORT_DIR_PATH
        self.logger: logging.Logger = logging.getLogger("Exporter")

    async def export(
        self,
        owner_id: str,
        options: ExportOptions | None = None,
        on_progress: ProgressCallback | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ExportResult:
        """Run a full export, always ending with a complete or error report"""
        options = options or ExportOptions()
        progress = ProgressReporter(on_progress, "Exporter")
        media = MediaDownload()

        try:
            progress.report(ProgressPhase.INIT, 0, "Starting export")
            check_cancelled(cancel)

            table_data = await self.fetch_table_data(owner_id, progress)
            check_cancelled(cancel)

            manifest = create_manifest(owner_id, table_data, options.include_media)
            if options.include_media:
                media = await self.download_media_files(
                    owner_id, table_data, progress, cancel
                )
                manifest.media = media.entries
            manifest.metadata.checksums.media_count = len(manifest.media)
            manifest.metadata.checksums.total_size_bytes = media.total_bytes
            if options.password:
                manifest.metadata.encryption = EncryptionInfo.from_dict(
                    self.crypto.descriptor()
                )
            manifest.metadata.checksums.manifest = compute_manifest_checksum(manifest)
            check_cancelled(cancel)

            archive = self.create_zip_archive(manifest, media.payloads, progress)
            filename = build_backup_filename(
                datetime.now(timezone.utc), options.is_automatic
            )

            if options.password:
                progress.report(ProgressPhase.PACKAGING, 94, "Encrypting")
                archive = await self.encrypt_archive(archive, options.password)
            check_cancelled(cancel)

            remote: BoundedStatus | None = None
            if options.save_remotely:
                progress.report(ProgressPhase.PACKAGING, 96, "Saving remote copy")
                remote = await self.save_remotely(
                    owner_id, filename, archive, manifest, options.is_automatic
                )

            local_path: Path | None = None
            if not options.is_automatic:
                progress.report(ProgressPhase.PACKAGING, 98, "Writing backup file")
                local_path = await asyncio.to_thread(
                    atomic_write_bytes, archive, self.export_dir / filename
                )
            elif remote is not BoundedStatus.COMPLETED:
                raise PhantomVaultError("Remote backup failed")

            progress.complete("Export complete")
            self.logger.info(
                "Exported %s (%d bytes, %d media, %d media failed)",
                filename,
                len(archive),
                len(manifest.media),
                media.failed,
            )
            return ExportResult(
                success=True,
                filename=filename,
                archive=archive,
                local_path=local_path,
                remote=remote,
                media_total=media.total,
                media_failed=media.failed,
            )
        except OperationCancelledError as e:
            self.logger.info("Export cancelled")
            progress.error(str(e))
            return ExportResult(success=False, error=str(e))
        except Exception as e:  # pylint: disable=broad-exception-caught
            self.logger.exception("Export error: %s", e)
            progress.error(str(e) or "Export failed")
            return ExportResult(success=False, error=str(e) or "Export failed")

    async def fetch_table_data(
        self, owner_id: str, progress: ProgressReporter
    ) -> ManifestTableData:
        """
        Read the twelve collections in parallel.

        A collection that fails to load is exported empty and logged; it
        never aborts the export.
        """
        progress.report(ProgressPhase.METADATA, 5, "Loading database")
        categories = list(Category)
        results = await gather_settled(
            self.db.select(category.value, owner_id) for category in categories
        )

        collections: dict[str, list[dict[str, Any]]] = {}
        for category, result in zip(categories, results):
            if not result.ok:
                self.logger.warning(
                    "Could not fetch %s: %s", category.value, result.error
                )
                collections[category.value] = []
                continue
            records = parse_records(category, result.value)
            collections[category.value] = [
                dump_record(record) for record in records if not record.is_tombstoned
            ]

        progress.report(ProgressPhase.METADATA, 15, "Metadata loaded")
        return ManifestTableData.from_dict(collections)

    async def download_media_files(
        self,
        owner_id: str,
        table_data: ManifestTableData,
        progress: ProgressReporter,
        cancel: asyncio.Event | None = None,
    ) -> MediaDownload:
        """Download photo and file payloads in bounded parallel batches"""
        worklist: list[tuple[str, dict[str, Any]]] = [
            ("photos", row) for row in table_data.photos
        ] + [("files", row) for row in table_data.files]
        total = len(worklist)
        media = MediaDownload(total=total)

        downloadable: list[tuple[str, dict[str, Any]]] = []
        for bucket, row in worklist:
            if row.get("id") is None or not row.get("filename"):
                self.logger.warning("Skipping %s row without id or filename", bucket)
                media.failed += 1
                continue
            downloadable.append((bucket, row))
        if not downloadable:
            return media

        done = media.failed
        batches = batch_items(downloadable, settings.MEDIA_DOWNLOAD_BATCH_SIZE)
        for index, batch in enumerate(batches):
            check_cancelled(cancel)
            progress.report(
                ProgressPhase.MEDIA,
                20 + round(done / total * 45),
                f"Downloading media: {done}/{total}",
                current=done,
                total=total,
                bytes_processed=media.total_bytes,
            )

            results = await gather_settled(
                self._download(bucket, f"{owner_id}/{row['filename']}")
                for bucket, row in batch
            )
            # A batch that settles after an abort is dropped as a whole
            check_cancelled(cancel)

            for (bucket, row), result in zip(batch, results):
                done += 1
                if not result.ok or result.value is None:
                    media.failed += 1
                    self.logger.warning(
                        "Could not download %s/%s: %s",
                        bucket,
                        row["filename"],
                        result.error,
                    )
                    continue
                entry = create_media_entry(
                    str(row["id"]),
                    bucket,
                    row["filename"],
                    len(result.value),
                    media_checksum(result.value),
                )
                if entry.path_in_zip in media.payloads:
                    self.logger.warning("Duplicate media path %s", entry.path_in_zip)
                    continue
                media.entries.append(entry)
                media.payloads[entry.path_in_zip] = result.value
                media.total_bytes += entry.size_bytes

            if index % settings.YIELD_EVERY_BATCHES == 0:
                await yield_to_main()

        if media.failed:
            self.logger.warning("%d media files could not be downloaded", media.failed)
        return media

    async def _download(self, bucket: str, path: str) -> bytes:
        return await asyncio.wait_for(
            self.storage.download(bucket, path), settings.MEDIA_DOWNLOAD_TIMEOUT
        )

    def create_zip_archive(
        self,
        manifest: Manifest,
        payloads: dict[str, bytes],
        progress: ProgressReporter,
    ) -> bytes:
        """Pack the manifest and media payloads into a ZIP archive"""
        progress.report(ProgressPhase.PACKAGING, 70, "Creating archive")
        buffer = io.BytesIO()
        with zipfile.ZipFile(
            buffer,
            "w",
            compression=zipfile.ZIP_DEFLATED,
            compresslevel=settings.COMPRESSION_LEVEL,
        ) as zf:
            zf.writestr(settings.MANIFEST_NAME, serialize_manifest(manifest))
            progress.report(ProgressPhase.PACKAGING, 80, "Compressing")
            for path, data in payloads.items():
                zf.writestr(path, data)

        progress.report(ProgressPhase.PACKAGING, 92, "Archive created")
        return buffer.getvalue()

    async def encrypt_archive(self, archive: bytes, password: str) -> bytes:
        """Wrap the archive in a JSON encryption envelope"""
        encoded = base64.b64encode(archive).decode("ascii")
        envelope = await asyncio.to_thread(self.crypto.encrypt, encoded, password)
        return json.dumps(envelope).encode("utf-8")

    async def save_remotely(
        self,
        owner_id: str,
        filename: str,
        data: bytes,
        manifest: Manifest,
        is_automatic: bool,
    ) -> BoundedStatus:
        """Upload the backup and record it in the ledger, within a deadline"""
        result = await run_bounded(
            self._upload_backup(owner_id, filename, data, manifest, is_automatic),
            settings.REMOTE_UPLOAD_TIMEOUT,
        )
        if result.status is BoundedStatus.ERRORED:
            self.logger.error("Remote backup failed: %s", result.error)
        elif result.status is BoundedStatus.TIMED_OUT:
            self.logger.error("Remote backup timed out")
        return result.status

    async def _upload_backup(
        self,
        owner_id: str,
        filename: str,
        data: bytes,
        manifest: Manifest,
        is_automatic: bool,
    ) -> None:
        storage_path = f"{owner_id}/{filename}"
        await self.storage.upload(
            settings.BACKUPS_BUCKET, storage_path, data, upsert=True
        )

        now = datetime.now(timezone.utc).isoformat()
        try:
            _ = await self.db.insert(
                settings.BACKUP_VERSIONS_TABLE,
                [
                    {
                        "user_id": owner_id,
                        "filename": filename,
                        "storage_path": storage_path,
                        "size_bytes": len(data),
                        "item_counts": get_item_counts(manifest.data),
                        "includes_media": manifest.metadata.includes_media,
                        "is_auto_backup": is_automatic,
                        "created_at": now,
                    }
                ],
            )
        except PhantomVaultError as e:
            # The file itself is uploaded, only the ledger entry is missing
            self.logger.error("Error saving backup version: %s", e)

        if is_automatic:
            try:
                await self.db.upsert(
                    settings.BACKUP_SETTINGS_TABLE,
                    {"user_id": owner_id, "last_auto_backup": now, "updated_at": now},
                    on_conflict="user_id",
                )
            except PhantomVaultError as e:
                self.logger.error("Error updating last automatic backup: %s", e)
