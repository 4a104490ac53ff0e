"""Restore of a vault from a .phantomvault archive or a legacy JSON backup"""

import asyncio
import base64
import binascii
import io
import json
import logging
import zipfile
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import partial
from pathlib import PurePosixPath
from typing import Any, cast

from phantomvault.archive_format import (
    ArchiveFormat,
    ClassifiedArchive,
    classify,
    is_legacy_document,
    is_zip,
)
from phantomvault.config import settings
from phantomvault.errors import (
    ArchiveFormatError,
    OperationCancelledError,
    PasswordRequiredError,
    WrongPasswordError,
)
from phantomvault.models.manifest import (
    MEDIA_BUCKETS,
    Manifest,
    ManifestMediaEntry,
    ManifestTableData,
    media_checksum,
    parse_manifest,
    verify_manifest_text,
)
from phantomvault.models.records import (
    Category,
    RowId,
    Tag,
    VaultRecord,
    dump_record,
    parse_record,
)
from phantomvault.models.remap import IdRemapTable
from phantomvault.models.results import (
    ConflictResolution,
    ImportOptions,
    ImportResult,
)
from phantomvault.models.stats import (
    CategoryStats,
    ImportStats,
    MediaStats,
    ProgressCallback,
    ProgressPhase,
    ProgressReporter,
)
from phantomvault.store.base import ObjectStore, RelationalStore
from phantomvault.utils.batching import (
    batch_items,
    check_cancelled,
    gather_settled,
    yield_to_main,
)
from phantomvault.utils.encryption import (
    CryptoPrimitive,
    SecureEncryption,
    decrypt_old_backup,
)

# Stats counter each category is accounted under
STATS_FIELDS: dict[Category, str] = {
    Category.TAGS: "tags",
    Category.NOTE_FOLDERS: "folders",
    Category.LINK_FOLDERS: "folders",
    Category.TIKTOK_FOLDERS: "folders",
    Category.ALBUMS: "albums",
    Category.FILE_ALBUMS: "albums",
    Category.NOTES: "notes",
    Category.LINKS: "links",
    Category.TIKTOK_VIDEOS: "tiktoks",
    Category.PHOTOS: "photos",
    Category.FILES: "files",
    Category.SECRET_TEXTS: "secrets",
}

# column -> category the column points into
FOREIGN_KEYS: dict[Category, tuple[str, Category]] = {
    Category.NOTES: ("folder_id", Category.NOTE_FOLDERS),
    Category.LINKS: ("folder_id", Category.LINK_FOLDERS),
    Category.TIKTOK_VIDEOS: ("folder_id", Category.TIKTOK_FOLDERS),
    Category.PHOTOS: ("album_id", Category.ALBUMS),
    Category.FILES: ("album_id", Category.FILE_ALBUMS),
}

# Parents always come before their children
IMPORT_ORDER: list[tuple[Category, int, str]] = [
    (Category.TAGS, 20, "Importing tags"),
    (Category.NOTE_FOLDERS, 28, "Importing folders"),
    (Category.LINK_FOLDERS, 28, "Importing folders"),
    (Category.TIKTOK_FOLDERS, 28, "Importing folders"),
    (Category.ALBUMS, 36, "Importing albums"),
    (Category.FILE_ALBUMS, 36, "Importing albums"),
    (Category.NOTES, 44, "Importing notes"),
    (Category.LINKS, 52, "Importing links"),
    (Category.TIKTOK_VIDEOS, 58, "Importing videos"),
    (Category.PHOTOS, 64, "Importing photos"),
    (Category.FILES, 70, "Importing files"),
    (Category.SECRET_TEXTS, 74, "Importing secrets"),
]

# Columns the destination store assigns itself
SERVER_COLUMNS: tuple[str, ...] = ("id", "user_id", "updated_at", "deleted_at")

DEFAULT_SECRET_TITLE = "Imported text"


@dataclass
class OpenedBackup:
    """Everything an import needs, whatever format the backup came in"""

    data: ManifestTableData
    manifest: Manifest | None = None
    payloads: dict[str, bytes] = field(default_factory=dict)
    legacy_media: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_legacy(self) -> bool:
        return self.manifest is None

    @property
    def media(self) -> list[ManifestMediaEntry]:
        return self.manifest.media if self.manifest is not None else []


@dataclass
class InsertOutcome:
    stats: CategoryStats
    id_mapping: dict[RowId, RowId]


def read_zip(data: bytes) -> dict[str, bytes]:
    """Read every member of a ZIP archive into memory"""
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            return {
                info.filename: zf.read(info)
                for info in zf.infolist()
                if not info.is_dir()
            }
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError) as e:
        raise ArchiveFormatError(f"Invalid archive: {e}") from e


def extract_manifest(files: dict[str, bytes]) -> Manifest:
    """Find and validate the manifest of an unpacked archive"""
    raw = files.get(settings.MANIFEST_NAME)
    if raw is None:
        raise ArchiveFormatError("Invalid archive: manifest missing")
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ArchiveFormatError("Invalid archive: manifest is not UTF-8") from e

    manifest = parse_manifest(text)
    if manifest is None:
        raise ArchiveFormatError("Invalid archive: manifest is malformed")

    if not verify_manifest_text(text, manifest):
        logging.getLogger("Importer").warning(
            "Manifest checksum mismatch, the archive may have been edited"
        )
    return manifest


def decode_media_payload(data: str) -> bytes:
    """Decode an inline `data:` URL or a bare base64 string"""
    if data.startswith("data:"):
        _, _, data = data.partition(",")
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid inline media payload: {e}") from e


def _is_plain_filename(filename: str) -> bool:
    """A media filename must stay inside the importing owner's folder"""
    return (
        bool(filename)
        and filename not in (".", "..")
        and "\\" not in filename
        and PurePosixPath(filename).name == filename
    )


def _archive_from_plaintext(plaintext: str) -> bytes | None:
    """Return the archive bytes if the decrypted text is a base64 ZIP"""
    try:
        raw = base64.b64decode(plaintext, validate=True)
    except (binascii.Error, ValueError):
        return None
    return raw if is_zip(raw) else None


class Importer:
    """
    Restores a backup into an owner's vault.

    Relational data is inserted category by category in dependency order,
    regenerating every id and rewriting foreign keys through an
    IdRemapTable; media payloads are uploaded last. Each stage returns its
    own stats, merged into the run's stats once the stage has settled.
    """

    def __init__(
        self,
        db: RelationalStore,
        storage: ObjectStore,
        crypto: CryptoPrimitive | None = None,
    ):
        self.db: RelationalStore = db
        self.storage: ObjectStore = storage
        self.crypto: CryptoPrimitive = crypto or SecureEncryption()
        self.logger: logging.Logger = logging.getLogger("Importer")

    async def import_archive(
        self,
        owner_id: str,
        archive_bytes: bytes,
        options: ImportOptions | None = None,
        on_progress: ProgressCallback | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ImportResult:
        """Run a full import, always ending with a complete or error report"""
        options = options or ImportOptions()
        progress = ProgressReporter(on_progress, "Importer")
        stats = ImportStats()
        remap = IdRemapTable()

        try:
            progress.report(ProgressPhase.INIT, 0, "Starting import")
            progress.report(ProgressPhase.READING, 5, "Reading backup")
            backup = await self.open_backup(archive_bytes, options.password, progress)

            progress.report(ProgressPhase.VALIDATING, 15, "Validating data")
            for category, percent, message in IMPORT_ORDER:
                check_cancelled(cancel)
                progress.report(ProgressPhase.DATABASE, percent, message)
                stage = await self._import_stage(
                    owner_id, category, backup.data.rows(category), options, remap, cancel
                )
                _ = stats.merge(stage)

            check_cancelled(cancel)
            if backup.is_legacy:
                media = await self.upload_legacy_media(
                    owner_id, backup.legacy_media, progress, cancel
                )
            else:
                media = await self.upload_media_files(
                    owner_id, backup.media, backup.payloads, progress, cancel
                )
            _ = stats.merge(ImportStats(media=media))

            progress.complete("Import complete")
            self.logger.info(
                "Imported %d records and %d media files (%d media failed)",
                stats.total_imported,
                stats.media.uploaded,
                stats.media.failed,
            )
            return ImportResult(success=True, stats=stats)
        except OperationCancelledError as e:
            self.logger.info("Import cancelled")
            progress.error(str(e))
            return ImportResult(success=False, stats=stats, error=str(e))
        except (ArchiveFormatError, PasswordRequiredError, WrongPasswordError) as e:
            self.logger.error("Import failed: %s", e)
            progress.error(str(e))
            return ImportResult(success=False, stats=stats, error=str(e))
        except Exception as e:  # pylint: disable=broad-exception-caught
            self.logger.exception("Import error: %s", e)
            progress.error(str(e) or "Import failed")
            return ImportResult(
                success=False, stats=stats, error=str(e) or "Import failed"
            )

    async def open_backup(
        self, data: bytes, password: str | None, progress: ProgressReporter
    ) -> OpenedBackup:
        """Classify the input and turn it into table data plus media"""
        classified = classify(data)
        match classified.kind:
            case ArchiveFormat.CURRENT_ARCHIVE:
                progress.report(ProgressPhase.READING, 10, "Unpacking archive")
                return self._open_archive(classified.raw)
            case ArchiveFormat.ENCRYPTED_CURRENT_ARCHIVE:
                progress.report(ProgressPhase.READING, 10, "Decrypting")
                return await self._open_encrypted(classified, password)
            case ArchiveFormat.LEGACY_ENCRYPTED:
                progress.report(ProgressPhase.READING, 10, "Decrypting")
                return self._open_old_encrypted(classified, password)
            case ArchiveFormat.LEGACY_PLAIN:
                return self._open_legacy(classified.document or {})
            case ArchiveFormat.INVALID:
                raise ArchiveFormatError(classified.reason or "Invalid backup format")

    def _open_archive(self, raw: bytes) -> OpenedBackup:
        files = read_zip(raw)
        manifest = extract_manifest(files)
        payloads = {
            path: data for path, data in files.items() if path != settings.MANIFEST_NAME
        }
        return OpenedBackup(data=manifest.data, manifest=manifest, payloads=payloads)

    async def _open_encrypted(
        self, classified: ClassifiedArchive, password: str | None
    ) -> OpenedBackup:
        if not password:
            raise PasswordRequiredError()
        try:
            plaintext = await asyncio.to_thread(
                self.crypto.decrypt, classified.document or {}, password
            )
        except ValueError as e:
            raise ArchiveFormatError(f"Invalid encrypted backup: {e}") from e
        if plaintext is None:
            raise WrongPasswordError()

        raw = _archive_from_plaintext(plaintext)
        if raw is not None:
            return self._open_archive(raw)

        # Pre-archive backups were also written with this envelope
        return self._open_legacy(self._parse_legacy_text(plaintext))

    def _open_old_encrypted(
        self, classified: ClassifiedArchive, password: str | None
    ) -> OpenedBackup:
        if not password:
            raise PasswordRequiredError()
        try:
            plaintext = decrypt_old_backup(classified.document or {}, password)
        except (KeyError, ValueError) as e:
            raise ArchiveFormatError(f"Invalid encrypted backup: {e}") from e
        if plaintext is None:
            raise WrongPasswordError()
        return self._open_legacy(self._parse_legacy_text(plaintext))

    def _parse_legacy_text(self, text: str) -> dict[str, Any]:
        try:
            document = json.loads(text)
        except json.JSONDecodeError as e:
            raise ArchiveFormatError("Invalid backup format") from e
        if not is_legacy_document(document):
            raise ArchiveFormatError("Invalid backup format")
        return document

    def _open_legacy(self, document: dict[str, Any]) -> OpenedBackup:
        self.logger.info(
            "Importing legacy backup version %s exported at %s",
            document.get("version"),
            document.get("exported_at"),
        )
        media_files = document.get("media_files")
        return OpenedBackup(
            data=ManifestTableData.from_dict(document),
            legacy_media=media_files if isinstance(media_files, list) else [],
        )

    async def _import_stage(
        self,
        owner_id: str,
        category: Category,
        rows: list[dict[str, Any]],
        options: ImportOptions,
        remap: IdRemapTable,
        cancel: asyncio.Event | None,
    ) -> ImportStats:
        """Import one category and fold its new ids into the remap table"""
        if category is Category.TAGS:
            outcome = await self.import_tags(
                owner_id, rows, options.conflict_resolution, cancel
            )
        else:
            outcome = await self.bulk_insert(
                category,
                rows,
                lambda record: self.prepare_row(owner_id, category, record, remap),
                cancel,
            )

        remap.merge(category, outcome.id_mapping)
        stage = ImportStats()
        getattr(stage, STATS_FIELDS[category]).merge(outcome.stats)
        self.logger.debug(
            "%s: %d imported, %d skipped of %d",
            category.value,
            outcome.stats.imported,
            outcome.stats.skipped,
            outcome.stats.total,
        )
        return stage

    def prepare_row(
        self,
        owner_id: str,
        category: Category,
        record: VaultRecord,
        remap: IdRemapTable,
    ) -> dict[str, Any]:
        """Row to insert: owned by `owner_id`, foreign keys pointing at new ids"""
        row = dump_record(record)
        for column in SERVER_COLUMNS:
            _ = row.pop(column, None)
        row["user_id"] = owner_id

        if category in FOREIGN_KEYS:
            column, parent = FOREIGN_KEYS[category]
            if column in row:
                row[column] = remap.resolve(parent, row[column])
        if category is Category.SECRET_TEXTS and not row.get("title"):
            row["title"] = DEFAULT_SECRET_TITLE
        return row

    def _live_records(
        self, category: Category, rows: list[dict[str, Any]]
    ) -> list[VaultRecord]:
        """Valid rows of a collection that are not tombstoned"""
        records: list[VaultRecord] = []
        for row in rows:
            record = parse_record(category, row)
            if record is None:
                continue
            if record.is_tombstoned:
                self.logger.debug("Skipping deleted %s row %s", category.value, record.id)
                continue
            records.append(record)
        return records

    async def bulk_insert(
        self,
        category: Category,
        rows: list[dict[str, Any]],
        prepare: Callable[[VaultRecord], dict[str, Any]],
        cancel: asyncio.Event | None = None,
    ) -> InsertOutcome:
        """
        Insert one collection in chunks.

        Tombstoned and invalid rows are skipped, `prepare` builds the row
        to insert, and a chunk the store rejects counts all of its rows as
        skipped without stopping the others.
        """
        records = self._live_records(category, rows)
        outcome = await self._insert_chunks(
            category.value, [(record.id, prepare(record)) for record in records], cancel
        )
        outcome.stats.total = len(rows)
        outcome.stats.skipped += len(rows) - len(records)
        return outcome

    async def _insert_chunks(
        self,
        table: str,
        prepared: list[tuple[RowId | None, dict[str, Any]]],
        cancel: asyncio.Event | None,
    ) -> InsertOutcome:
        stats = CategoryStats(total=len(prepared))
        id_mapping: dict[RowId, RowId] = {}
        chunks = batch_items(prepared, settings.DB_INSERT_BATCH_SIZE)

        for group in batch_items(chunks, settings.DB_INSERT_CONCURRENCY):
            check_cancelled(cancel)
            results = await gather_settled(
                self.db.insert(table, [row for _, row in chunk]) for chunk in group
            )
            # Rows written by a group that settles after an abort are not counted
            check_cancelled(cancel)

            for chunk, result in zip(group, results):
                if not result.ok or result.value is None:
                    self.logger.warning(
                        "Bulk insert of %d rows into %s failed: %s",
                        len(chunk),
                        table,
                        result.error,
                    )
                    stats.skipped += len(chunk)
                    continue
                new_ids = result.value
                for (old_id, _), new_id in zip(chunk, new_ids):
                    if old_id is not None:
                        id_mapping[old_id] = new_id
                stats.imported += len(new_ids)
                stats.skipped += len(chunk) - len(new_ids)

            await yield_to_main()

        return InsertOutcome(stats=stats, id_mapping=id_mapping)

    async def import_tags(
        self,
        owner_id: str,
        rows: list[dict[str, Any]],
        policy: ConflictResolution,
        cancel: asyncio.Event | None = None,
    ) -> InsertOutcome:
        """Insert tags, resolving name clashes with existing tags by `policy`"""
        records = self._live_records(Category.TAGS, rows)
        stats = CategoryStats(total=len(rows), skipped=len(rows) - len(records))

        existing: dict[str, dict[str, Any]] = {}
        if records:
            try:
                current = await self.db.select(Category.TAGS.value, owner_id)
            except Exception as e:  # pylint: disable=broad-exception-caught
                self.logger.warning("Could not read existing tags: %s", e)
                current = []
            for row in current:
                if isinstance(row.get("name"), str):
                    existing.setdefault(row["name"].lower(), row)

        to_insert: list[tuple[RowId | None, dict[str, Any]]] = []
        to_update: list[tuple[RowId, Tag]] = []
        for record in cast(list[Tag], records):
            clash = existing.get(record.name.lower())
            if clash is None:
                to_insert.append((record.id, self._tag_row(owner_id, record.name, record)))
            elif policy is ConflictResolution.SKIP:
                stats.skipped += 1
            elif policy is ConflictResolution.OVERWRITE:
                to_update.append((clash["id"], record))
            else:
                name = f"{record.name} (Import)"
                to_insert.append((record.id, self._tag_row(owner_id, name, record)))

        if to_update:
            check_cancelled(cancel)
            results = await gather_settled(
                self.db.update(Category.TAGS.value, tag_id, {"color": record.color})
                for tag_id, record in to_update
            )
            check_cancelled(cancel)
            for (tag_id, _), result in zip(to_update, results):
                if result.ok:
                    stats.imported += 1
                else:
                    self.logger.warning("Could not update tag %s: %s", tag_id, result.error)
                    stats.skipped += 1

        inserted = await self._insert_chunks(Category.TAGS.value, to_insert, cancel)
        stats.imported += inserted.stats.imported
        stats.skipped += inserted.stats.skipped
        return InsertOutcome(stats=stats, id_mapping=inserted.id_mapping)

    @staticmethod
    def _tag_row(owner_id: str, name: str, record: Tag) -> dict[str, Any]:
        return {"user_id": owner_id, "name": name, "color": record.color}

    async def upload_media_files(
        self,
        owner_id: str,
        entries: list[ManifestMediaEntry],
        payloads: dict[str, bytes],
        progress: ProgressReporter,
        cancel: asyncio.Event | None = None,
    ) -> MediaStats:
        """Upload every media payload of a current-format archive"""
        return await self._upload_batches(
            [partial(self._upload_entry, owner_id, entry, payloads) for entry in entries],
            progress,
            cancel,
        )

    async def _upload_entry(
        self, owner_id: str, entry: ManifestMediaEntry, payloads: dict[str, bytes]
    ) -> None:
        if entry.bucket not in MEDIA_BUCKETS:
            raise ArchiveFormatError(f"Unknown media bucket {entry.bucket}")
        if not _is_plain_filename(entry.filename):
            raise ArchiveFormatError(f"Unsafe media filename {entry.filename!r}")
        data = payloads.get(entry.path_in_zip)
        if data is None:
            raise ArchiveFormatError(f"Media payload {entry.path_in_zip} missing")
        if entry.checksum and media_checksum(data) != entry.checksum:
            self.logger.warning("Checksum mismatch for %s", entry.path_in_zip)
        await self.storage.upload(
            entry.bucket, f"{owner_id}/{entry.filename}", data, upsert=True
        )

    async def upload_legacy_media(
        self,
        owner_id: str,
        media_files: list[dict[str, Any]],
        progress: ProgressReporter,
        cancel: asyncio.Event | None = None,
    ) -> MediaStats:
        """Upload the inline media of a legacy backup"""
        return await self._upload_batches(
            [partial(self._upload_legacy, owner_id, media) for media in media_files],
            progress,
            cancel,
        )

    async def _upload_legacy(self, owner_id: str, media: Any) -> None:
        if not isinstance(media, dict):
            raise ArchiveFormatError("Invalid legacy media entry")
        bucket = media.get("bucket")
        path = media.get("path")
        payload = media.get("data")
        if bucket not in MEDIA_BUCKETS or not isinstance(path, str):
            raise ArchiveFormatError(f"Invalid legacy media entry {bucket}/{path}")
        if not isinstance(payload, str):
            raise ArchiveFormatError(f"Legacy media {path} has no data")

        filename = PurePosixPath(path).name
        if not _is_plain_filename(filename):
            raise ArchiveFormatError(f"Unsafe legacy media path {path!r}")
        await self.storage.upload(
            bucket, f"{owner_id}/{filename}", decode_media_payload(payload), upsert=True
        )

    async def _upload_batches(
        self,
        uploads: list[Callable[[], Awaitable[None]]],
        progress: ProgressReporter,
        cancel: asyncio.Event | None,
    ) -> MediaStats:
        stats = MediaStats(total=len(uploads))
        processed = 0

        for batch in batch_items(uploads, settings.MEDIA_UPLOAD_BATCH_SIZE):
            check_cancelled(cancel)
            progress.report(
                ProgressPhase.MEDIA,
                75 + round(processed / stats.total * 23),
                f"Uploading media: {processed}/{stats.total}",
                current=processed,
                total=stats.total,
            )
            results = await gather_settled(upload() for upload in batch)
            check_cancelled(cancel)

            for result in results:
                if result.ok:
                    stats.uploaded += 1
                else:
                    self.logger.warning("Media upload failed: %s", result.error)
                    stats.failed += 1
            processed += len(batch)
            await yield_to_main()

        return stats
