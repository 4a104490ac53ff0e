"""In-process stores, used by the tests and for dry runs"""

import asyncio
import copy
import secrets
import time
import uuid
from collections.abc import Callable
from typing import Any

from phantomvault.errors import StorageError
from phantomvault.models.records import RowId


class InMemoryRelationalStore:
    """
    Dict-backed table storage.

    Failures can be injected per table for reads (`fail_selects`) and per
    insert call through `fail_insert`, which receives the table and the rows.
    """

    def __init__(
        self,
        fail_selects: set[str] | None = None,
        fail_insert: Callable[[str, list[dict[str, Any]]], bool] | None = None,
    ):
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.fail_selects: set[str] = fail_selects or set()
        self.fail_insert: Callable[[str, list[dict[str, Any]]], bool] | None = (
            fail_insert
        )
        self.insert_calls: list[tuple[str, int]] = []

    def seed(self, table: str, rows: list[dict[str, Any]]) -> None:
        """Add rows as they are, ids included"""
        self.tables.setdefault(table, []).extend(copy.deepcopy(rows))

    def rows(self, table: str) -> list[dict[str, Any]]:
        return self.tables.get(table, [])

    async def select(
        self, table: str, owner_id: str, include_deleted: bool = False
    ) -> list[dict[str, Any]]:
        await asyncio.sleep(0)
        if table in self.fail_selects:
            raise StorageError(f"select on {table} failed")
        return [
            copy.deepcopy(row)
            for row in self.tables.get(table, [])
            if row.get("user_id") == owner_id
            and (include_deleted or row.get("deleted_at") is None)
        ]

    async def insert(self, table: str, rows: list[dict[str, Any]]) -> list[RowId]:
        await asyncio.sleep(0)
        self.insert_calls.append((table, len(rows)))
        if self.fail_insert is not None and self.fail_insert(table, rows):
            raise StorageError(f"insert into {table} failed")
        new_ids: list[RowId] = []
        for row in rows:
            stored = copy.deepcopy(row)
            stored["id"] = uuid.uuid4().hex
            self.tables.setdefault(table, []).append(stored)
            new_ids.append(stored["id"])
        return new_ids

    async def update(self, table: str, row_id: RowId, values: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        for row in self.tables.get(table, []):
            if row.get("id") == row_id:
                row.update(copy.deepcopy(values))
                return
        raise StorageError(f"{table} row {row_id} not found")

    async def delete(self, table: str, row_id: RowId) -> None:
        await asyncio.sleep(0)
        rows = self.tables.get(table, [])
        self.tables[table] = [row for row in rows if row.get("id") != row_id]

    async def upsert(self, table: str, row: dict[str, Any], on_conflict: str) -> None:
        await asyncio.sleep(0)
        for existing in self.tables.get(table, []):
            if existing.get(on_conflict) == row.get(on_conflict):
                existing.update(copy.deepcopy(row))
                return
        stored = copy.deepcopy(row)
        stored.setdefault("id", uuid.uuid4().hex)
        self.tables.setdefault(table, []).append(stored)


class InMemoryObjectStore:
    """Dict-backed bucket storage with injectable per-object failures"""

    def __init__(
        self,
        fail_downloads: set[tuple[str, str]] | None = None,
        fail_uploads: set[tuple[str, str]] | None = None,
        upload_delay: float = 0,
    ):
        self.objects: dict[tuple[str, str], bytes] = {}
        self.fail_downloads: set[tuple[str, str]] = fail_downloads or set()
        self.fail_uploads: set[tuple[str, str]] = fail_uploads or set()
        self.upload_delay: float = upload_delay

    async def download(self, bucket: str, path: str) -> bytes:
        await asyncio.sleep(0)
        if (bucket, path) in self.fail_downloads:
            raise StorageError(f"download of {bucket}/{path} failed")
        try:
            return self.objects[(bucket, path)]
        except KeyError as e:
            raise StorageError(f"{bucket}/{path} not found") from e

    async def upload(
        self, bucket: str, path: str, data: bytes, upsert: bool = True
    ) -> None:
        await asyncio.sleep(self.upload_delay)
        if (bucket, path) in self.fail_uploads:
            raise StorageError(f"upload of {bucket}/{path} failed")
        if not upsert and (bucket, path) in self.objects:
            raise StorageError(f"{bucket}/{path} already exists")
        self.objects[(bucket, path)] = bytes(data)

    async def list_paths(self, bucket: str, prefix: str = "") -> list[str]:
        await asyncio.sleep(0)
        return sorted(
            path for b, path in self.objects if b == bucket and path.startswith(prefix)
        )

    async def remove(self, bucket: str, paths: list[str]) -> None:
        await asyncio.sleep(0)
        for path in paths:
            _ = self.objects.pop((bucket, path), None)

    async def create_signed_url(
        self, bucket: str, path: str, expires_in: int = 3600
    ) -> str:
        if (bucket, path) not in self.objects:
            raise StorageError(f"{bucket}/{path} not found")
        expires = int(time.time()) + expires_in
        return f"memory://{bucket}/{path}?expires={expires}&token={secrets.token_urlsafe(16)}"
