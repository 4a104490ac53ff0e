"""Tests for the vault exporter"""

import asyncio
import json
import re
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from unittest.mock import patch

from phantomvault.archive_format import is_zip
from phantomvault.config import Settings
from phantomvault.exporter import Exporter, build_backup_filename
from phantomvault.models.manifest import parse_manifest, verify_manifest_checksum
from phantomvault.models.results import ExportOptions
from phantomvault.models.stats import Progress, ProgressPhase
from phantomvault.store.memory import InMemoryObjectStore, InMemoryRelationalStore
from phantomvault.utils.batching import BoundedStatus
from sample_vault import OWNER, distinct_photos, fast_crypto, read_archive, run, seed_vault


class DeletedRowsStore(InMemoryRelationalStore):
    """A store that hands out soft-deleted rows even when not asked to"""

    async def select(
        self, table: str, owner_id: str, include_deleted: bool = False
    ) -> list[dict[str, Any]]:
        return await super().select(table, owner_id, include_deleted=True)


class TestExporter:
    """Test suite for the Exporter"""

    def setup_method(self):
        self.temp_dir: Path = Path(tempfile.mkdtemp())  # pyright: ignore[reportUninitializedInstanceVariable]
        self.db: InMemoryRelationalStore = InMemoryRelationalStore()  # pyright: ignore[reportUninitializedInstanceVariable]
        self.storage: InMemoryObjectStore = InMemoryObjectStore()  # pyright: ignore[reportUninitializedInstanceVariable]
        self.reports: list[Progress] = []  # pyright: ignore[reportUninitializedInstanceVariable]

    def teardown_method(self):
        if self.temp_dir.exists():
            shutil.rmtree(self.temp_dir)

    def _exporter(self, db: InMemoryRelationalStore | None = None) -> Exporter:
        return Exporter(
            db or self.db, self.storage, crypto=fast_crypto(), export_dir=self.temp_dir
        )

    def test_export_writes_archive(self):
        """An export writes a valid archive holding every collection and the media"""
        seed_vault(self.db, self.storage, distinct_photos(2))

        result = run(self._exporter().export(OWNER, ExportOptions()))

        assert result.success, result.error
        assert result.local_path is not None and result.local_path.exists()
        assert result.local_path.read_bytes() == result.archive
        assert result.remote is None
        assert re.fullmatch(
            r"phantomvault-\d{4}-\d{2}-\d{2}-\d{4}\.phantomvault", result.filename or ""
        )

        assert result.archive is not None and is_zip(result.archive)
        document, payloads = read_archive(result.archive)
        assert len(document["data"]["notes"]) == 3
        assert len(document["data"]["note_folders"]) == 2
        assert document["metadata"]["owner_id"] == OWNER
        assert document["metadata"]["includes_media"] is True
        assert sorted(payloads) == ["media/photos/photo-0.jpg", "media/photos/photo-1.jpg"]
        assert all(len(entry["checksum"]) == 64 for entry in document["media"])

        manifest = parse_manifest(json.dumps(document))
        assert manifest is not None
        assert verify_manifest_checksum(manifest)

    def test_concrete_media_sizes(self):
        """Three photos of 1.5MB, 1.0MB and 2.0MB are all accounted for"""
        photos = [b"a" * 1_500_000, b"b" * 1_000_000, b"c" * 2_000_000]
        seed_vault(self.db, self.storage)
        self.db.seed(
            "photos",
            [
                {"id": f"p-{i}", "user_id": OWNER, "filename": f"big-{i}.jpg"}
                for i in range(3)
            ],
        )
        for i, data in enumerate(photos):
            self.storage.objects[("photos", f"{OWNER}/big-{i}.jpg")] = data

        result = run(self._exporter().export(OWNER, ExportOptions(include_media=True)))

        assert result.success
        document, _ = read_archive(result.archive or b"")
        assert document["metadata"]["checksums"]["media_count"] == 3
        assert document["metadata"]["checksums"]["total_size_bytes"] == 4_500_000

    def test_export_without_media(self):
        seed_vault(self.db, self.storage, distinct_photos(2))

        result = run(self._exporter().export(OWNER, ExportOptions(include_media=False)))

        document, payloads = read_archive(result.archive or b"")
        assert payloads == {}
        assert document["media"] == []
        assert len(document["data"]["photos"]) == 2
        assert document["metadata"]["includes_media"] is False

    def test_partial_media_failure(self):
        """One failed download out of twenty does not fail the export"""
        seed_vault(self.db, self.storage, distinct_photos(20))
        self.storage.fail_downloads.add(("photos", f"{OWNER}/photo-7.jpg"))

        result = run(self._exporter().export(OWNER, ExportOptions()))

        assert result.success
        assert result.media_total == 20
        assert result.media_failed == 1
        document, payloads = read_archive(result.archive or b"")
        assert document["metadata"]["checksums"]["media_count"] == 19
        assert len(payloads) == 19
        assert "media/photos/photo-7.jpg" not in payloads
        # The row itself is still exported
        assert len(document["data"]["photos"]) == 20

    def test_media_row_without_id_is_counted_as_failed(self):
        seed_vault(self.db, self.storage, distinct_photos(2))
        self.db.seed("files", [{"user_id": OWNER, "filename": "orphan.txt"}])
        self.storage.objects[("files", f"{OWNER}/orphan.txt")] = b"orphan"

        result = run(self._exporter().export(OWNER, ExportOptions()))

        assert result.success, result.error
        assert result.media_total == 3
        assert result.media_failed == 1
        document, payloads = read_archive(result.archive or b"")
        assert sorted(payloads) == ["media/photos/photo-0.jpg", "media/photos/photo-1.jpg"]
        assert document["data"]["files"] == [{"user_id": OWNER, "filename": "orphan.txt"}]

    def test_tombstoned_rows_are_excluded(self):
        db = DeletedRowsStore()
        seed_vault(db, self.storage)
        db.seed(
            "notes",
            [{"id": "n-x", "user_id": OWNER, "title": "Gone", "deleted_at": "2024-02-02T10:00:00Z"}],
        )

        result = run(self._exporter(db).export(OWNER, ExportOptions()))

        document, _ = read_archive(result.archive or b"")
        titles = [note["title"] for note in document["data"]["notes"]]
        assert "Gone" not in titles
        assert len(titles) == 3

    def test_other_owners_rows_are_excluded(self):
        seed_vault(self.db, self.storage)
        self.db.seed("notes", [{"id": "n-o", "user_id": "someone-else", "title": "Theirs"}])

        result = run(self._exporter().export(OWNER, ExportOptions()))

        document, _ = read_archive(result.archive or b"")
        assert "Theirs" not in [note["title"] for note in document["data"]["notes"]]

    def test_failed_collection_degrades_to_empty(self):
        db = InMemoryRelationalStore(fail_selects={"links"})
        seed_vault(db, self.storage)

        result = run(self._exporter(db).export(OWNER, ExportOptions()))

        assert result.success
        document, _ = read_archive(result.archive or b"")
        assert document["data"]["links"] == []
        assert len(document["data"]["notes"]) == 3

    def test_progress_is_monotonic_and_ends_complete(self):
        seed_vault(self.db, self.storage, distinct_photos(20))

        result = run(
            self._exporter().export(OWNER, ExportOptions(), on_progress=self.reports.append)
        )

        assert result.success
        percents = [report.percent for report in self.reports]
        assert percents == sorted(percents)
        assert self.reports[0].phase is ProgressPhase.INIT
        assert self.reports[-1].phase is ProgressPhase.COMPLETE
        assert self.reports[-1].percent == 100

        phases: list[ProgressPhase] = []
        for report in self.reports:
            if not phases or phases[-1] is not report.phase:
                phases.append(report.phase)
        assert phases == [
            ProgressPhase.INIT,
            ProgressPhase.METADATA,
            ProgressPhase.MEDIA,
            ProgressPhase.PACKAGING,
            ProgressPhase.COMPLETE,
        ]

    def test_encrypted_export(self):
        seed_vault(self.db, self.storage, distinct_photos(1))

        result = run(self._exporter().export(OWNER, ExportOptions(password="pw")))

        assert result.success
        envelope = json.loads((result.archive or b"").decode("utf-8"))
        assert envelope["encrypted"] is True
        assert envelope["version"] == "2.0"
        assert not is_zip(result.archive or b"")

    def test_remote_save_records_version(self):
        seed_vault(self.db, self.storage, distinct_photos(1))

        result = run(self._exporter().export(OWNER, ExportOptions(save_remotely=True)))

        assert result.success
        assert result.remote is BoundedStatus.COMPLETED
        assert result.local_path is not None
        assert self.storage.objects[("backups", f"{OWNER}/{result.filename}")] == result.archive

        versions = self.db.rows("backup_versions")
        assert len(versions) == 1
        assert versions[0]["filename"] == result.filename
        assert versions[0]["size_bytes"] == len(result.archive or b"")
        assert versions[0]["item_counts"]["notes"] == 3
        assert versions[0]["is_auto_backup"] is False
        assert self.db.rows("backup_settings") == []

    def test_remote_timeout_is_not_fatal(self):
        """A remote save that misses its deadline still leaves the local backup"""
        test_settings = Settings()
        test_settings.REMOTE_UPLOAD_TIMEOUT = 0.05
        self.storage.upload_delay = 0.5
        seed_vault(self.db, self.storage)

        with patch("phantomvault.exporter.settings", test_settings):
            result = run(self._exporter().export(OWNER, ExportOptions(save_remotely=True)))

        assert result.success
        assert result.remote is BoundedStatus.TIMED_OUT
        assert result.local_path is not None and result.local_path.exists()
        assert self.db.rows("backup_versions") == []

    def test_automatic_backup_is_remote_only(self):
        seed_vault(self.db, self.storage)

        result = run(
            self._exporter().export(
                OWNER, ExportOptions(save_remotely=True, is_automatic=True)
            )
        )

        assert result.success
        assert result.local_path is None
        assert list(self.temp_dir.iterdir()) == []
        assert (result.filename or "").endswith("-auto.phantomvault")
        assert self.db.rows("backup_versions")[0]["is_auto_backup"] is True
        assert self.db.rows("backup_settings")[0]["last_auto_backup"]

    def test_automatic_backup_fails_without_remote(self):
        seed_vault(self.db, self.storage)

        exporter = self._exporter()
        with patch("phantomvault.exporter.build_backup_filename", return_value="fixed.phantomvault"):
            self.storage.fail_uploads.add(("backups", f"{OWNER}/fixed.phantomvault"))
            result = run(
                exporter.export(OWNER, ExportOptions(save_remotely=True, is_automatic=True))
            )

        assert not result.success
        assert result.error == "Remote backup failed"

    def test_cancelled_export(self):
        cancel = asyncio.Event()
        cancel.set()
        seed_vault(self.db, self.storage)

        result = run(
            self._exporter().export(
                OWNER, ExportOptions(), on_progress=self.reports.append, cancel=cancel
            )
        )

        assert not result.success
        assert result.error == "cancelled"
        assert self.reports[-1].phase is ProgressPhase.ERROR
        assert list(self.temp_dir.iterdir()) == []


def test_build_backup_filename():
    moment = datetime(2026, 1, 5, 9, 7, tzinfo=timezone.utc)
    assert build_backup_filename(moment) == "phantomvault-2026-01-05-0907.phantomvault"
    assert (
        build_backup_filename(moment, is_automatic=True)
        == "phantomvault-2026-01-05-0907-auto.phantomvault"
    )
