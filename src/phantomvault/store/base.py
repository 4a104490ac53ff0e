"""Interfaces of the stores the backup engine reads from and writes to"""

from typing import Any, Protocol

from phantomvault.models.records import RowId


class RelationalStore(Protocol):
    """
    Row storage scoped by owner.

    Every method raises StorageError when the store rejects the operation.
    `insert` is all-or-nothing and returns the generated ids in row order.
    """

    async def select(
        self, table: str, owner_id: str, include_deleted: bool = False
    ) -> list[dict[str, Any]]: ...

    async def insert(self, table: str, rows: list[dict[str, Any]]) -> list[RowId]: ...

    async def update(self, table: str, row_id: RowId, values: dict[str, Any]) -> None: ...

    async def delete(self, table: str, row_id: RowId) -> None: ...

    async def upsert(
        self, table: str, row: dict[str, Any], on_conflict: str
    ) -> None: ...


class ObjectStore(Protocol):
    """Binary storage organised in buckets; errors raise StorageError"""

    async def download(self, bucket: str, path: str) -> bytes: ...

    async def upload(
        self, bucket: str, path: str, data: bytes, upsert: bool = True
    ) -> None: ...

    async def list_paths(self, bucket: str, prefix: str = "") -> list[str]: ...

    async def remove(self, bucket: str, paths: list[str]) -> None: ...

    async def create_signed_url(
        self, bucket: str, path: str, expires_in: int = 3600
    ) -> str: ...
