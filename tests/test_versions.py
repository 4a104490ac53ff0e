"""
Tests for the remote backup versions
"""

import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from phantomvault.exporter import Exporter
from phantomvault.importer import Importer
from phantomvault.models.results import ExportOptions
from phantomvault.store.memory import InMemoryObjectStore, InMemoryRelationalStore
from phantomvault.versions import BackupSettings, BackupVersionManager
from sample_vault import OWNER, fast_crypto, run, seed_vault


def _version(index: int, created_at: datetime) -> dict[str, Any]:
    filename = f"phantomvault-{created_at:%Y-%m-%d-%H%M}.phantomvault"
    return {
        "id": f"v-{index}",
        "user_id": OWNER,
        "filename": filename,
        "storage_path": f"{OWNER}/{filename}",
        "size_bytes": 10,
        "item_counts": {"notes": index},
        "includes_media": True,
        "is_auto_backup": False,
        "created_at": created_at.isoformat(),
    }


class TestBackupVersionManager:
    """Test suite for BackupVersionManager"""

    def setup_method(self):
        self.temp_dir: Path = Path(tempfile.mkdtemp())  # pyright: ignore[reportUninitializedInstanceVariable]
        self.db: InMemoryRelationalStore = InMemoryRelationalStore()  # pyright: ignore[reportUninitializedInstanceVariable]
        self.storage: InMemoryObjectStore = InMemoryObjectStore()  # pyright: ignore[reportUninitializedInstanceVariable]
        self.manager: BackupVersionManager = BackupVersionManager(self.db, self.storage)  # pyright: ignore[reportUninitializedInstanceVariable]
        self.exporter: Exporter = Exporter(  # pyright: ignore[reportUninitializedInstanceVariable]
            self.db, self.storage, crypto=fast_crypto(), export_dir=self.temp_dir
        )

    def teardown_method(self):
        if self.temp_dir.exists():
            shutil.rmtree(self.temp_dir)

    def _seed_versions(self, count: int) -> list[dict[str, Any]]:
        base = datetime(2025, 1, 1, tzinfo=timezone.utc)
        rows = [_version(i, base + timedelta(days=i)) for i in range(count)]
        self.db.seed("backup_versions", rows)
        for row in rows:
            self.storage.objects[("backups", row["storage_path"])] = b"backup"
        return rows

    def test_list_versions_newest_first(self):
        _ = self._seed_versions(3)
        self.db.seed("backup_versions", [{"id": "broken", "user_id": OWNER}])

        versions = run(self.manager.list_versions(OWNER))

        assert [v.id for v in versions] == ["v-2", "v-1", "v-0"]
        assert versions[0].item_counts == {"notes": 2}

    def test_cleanup_old_versions(self):
        """Only the newest versions are kept, files and ledger entries alike"""
        rows = self._seed_versions(7)

        deleted = run(self.manager.cleanup_old_versions(OWNER, max_versions=5))

        assert deleted == 2
        remaining = [row["id"] for row in self.db.rows("backup_versions")]
        assert sorted(remaining) == ["v-2", "v-3", "v-4", "v-5", "v-6"]
        assert ("backups", rows[0]["storage_path"]) not in self.storage.objects
        assert ("backups", rows[1]["storage_path"]) not in self.storage.objects
        assert ("backups", rows[6]["storage_path"]) in self.storage.objects

    def test_cleanup_uses_owner_settings(self):
        _ = self._seed_versions(4)
        run(self.manager.save_settings(BackupSettings(user_id=OWNER, max_versions=1)))

        assert run(self.manager.cleanup_old_versions(OWNER)) == 3
        assert [row["id"] for row in self.db.rows("backup_versions")] == ["v-3"]

    def test_cleanup_without_excess_is_noop(self):
        _ = self._seed_versions(2)
        assert run(self.manager.cleanup_old_versions(OWNER, max_versions=5)) == 0
        assert len(self.db.rows("backup_versions")) == 2

    def test_delete_version(self):
        rows = self._seed_versions(2)

        run(self.manager.delete_version(OWNER, "v-0"))

        assert [row["id"] for row in self.db.rows("backup_versions")] == ["v-1"]
        assert ("backups", rows[0]["storage_path"]) not in self.storage.objects

    def test_restore_version(self):
        seed_vault(self.db, self.storage)
        exported = run(self.exporter.export(OWNER, ExportOptions(save_remotely=True)))
        assert exported.success
        version = run(self.manager.list_versions(OWNER))[0]

        importer = Importer(self.db, self.storage, crypto=fast_crypto())
        result = run(self.manager.restore_version(OWNER, version.id, importer))

        assert result.success, result.error
        assert result.stats.notes.imported == 3
        assert len(self.db.rows("notes")) == 6

    def test_restore_unknown_version(self):
        importer = Importer(self.db, self.storage, crypto=fast_crypto())
        result = run(self.manager.restore_version(OWNER, "nope", importer))
        assert not result.success
        assert "not found" in (result.error or "")

    def test_run_auto_backup_when_due(self):
        """A due automatic backup is saved remotely and old versions are pruned"""
        seed_vault(self.db, self.storage)
        _ = self._seed_versions(3)
        now = datetime.now(timezone.utc)
        run(
            self.manager.save_settings(
                BackupSettings(
                    user_id=OWNER,
                    auto_backup_enabled=True,
                    backup_frequency="daily",
                    max_versions=2,
                    last_auto_backup=now - timedelta(days=2),
                )
            )
        )

        result = run(self.manager.run_auto_backup(OWNER, self.exporter, now))

        assert result is not None and result.success
        versions = run(self.manager.list_versions(OWNER))
        assert len(versions) == 2
        assert versions[0].is_auto_backup
        assert versions[0].filename == result.filename
        assert list(self.temp_dir.iterdir()) == []

        backup_settings = run(self.manager.get_settings(OWNER))
        assert backup_settings.last_auto_backup is not None
        assert backup_settings.last_auto_backup > now - timedelta(days=1)
        assert backup_settings.auto_backup_enabled

    def test_run_auto_backup_not_due(self):
        now = datetime.now(timezone.utc)
        run(
            self.manager.save_settings(
                BackupSettings(
                    user_id=OWNER,
                    auto_backup_enabled=True,
                    backup_frequency="weekly",
                    last_auto_backup=now - timedelta(days=2),
                )
            )
        )

        assert run(self.manager.run_auto_backup(OWNER, self.exporter, now)) is None
        assert self.db.rows("backup_versions") == []

    def test_run_auto_backup_disabled(self):
        assert run(self.manager.run_auto_backup(OWNER, self.exporter)) is None


def test_next_backup_at():
    last = datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)
    expected = {
        "daily": datetime(2025, 3, 2, 8, 0, tzinfo=timezone.utc),
        "weekly": datetime(2025, 3, 8, 8, 0, tzinfo=timezone.utc),
        "monthly": datetime(2025, 3, 31, 8, 0, tzinfo=timezone.utc),
        "hourly": datetime(2025, 3, 8, 8, 0, tzinfo=timezone.utc),
    }
    for frequency, next_backup in expected.items():
        backup_settings = BackupSettings(
            user_id=OWNER,
            auto_backup_enabled=True,
            backup_frequency=frequency,
            last_auto_backup=last,
        )
        assert backup_settings.next_backup_at() == next_backup


def test_backup_due():
    last = datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)
    backup_settings = BackupSettings(
        user_id=OWNER, auto_backup_enabled=True, backup_frequency="daily", last_auto_backup=last
    )
    assert not backup_settings.is_backup_due(last + timedelta(hours=23))
    assert backup_settings.is_backup_due(last + timedelta(days=1))

    never_run = BackupSettings(user_id=OWNER, auto_backup_enabled=True)
    assert never_run.next_backup_at() is None
    assert never_run.is_backup_due(last)

    disabled = BackupSettings(user_id=OWNER, last_auto_backup=last)
    assert disabled.next_backup_at() is None
    assert not disabled.is_backup_due(last + timedelta(days=365))


def test_naive_timestamps_are_utc():
    backup_settings = BackupSettings.model_validate(
        {
            "user_id": OWNER,
            "auto_backup_enabled": True,
            "backup_frequency": "daily",
            "last_auto_backup": "2025-03-01T08:00:00",
        }
    )
    assert backup_settings.next_backup_at() == datetime(2025, 3, 2, 8, 0, tzinfo=timezone.utc)
