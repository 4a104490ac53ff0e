"""Object store backed by a local directory, one sub-directory per bucket"""

import asyncio
import logging
import time
from pathlib import Path
from urllib.parse import quote

from phantomvault.errors import StorageError
from phantomvault.utils.files import atomic_write_bytes


class FileSystemObjectStore:
    """Stores objects as files under `root/<bucket>/<path>`"""

    def __init__(self, root: Path):
        self.root: Path = root
        self.logger: logging.Logger = logging.getLogger("Store")

    def _resolve(self, bucket: str, path: str) -> Path:
        bucket_dir = (self.root / bucket).resolve()
        target = (bucket_dir / path).resolve()
        if not target.is_relative_to(bucket_dir):
            raise StorageError(f"Path escapes bucket {bucket}: {path}")
        return target

    async def download(self, bucket: str, path: str) -> bytes:
        target = self._resolve(bucket, path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except OSError as e:
            raise StorageError(f"download of {bucket}/{path} failed: {e}") from e

    async def upload(
        self, bucket: str, path: str, data: bytes, upsert: bool = True
    ) -> None:
        target = self._resolve(bucket, path)
        if not upsert and target.exists():
            raise StorageError(f"{bucket}/{path} already exists")
        try:
            _ = await asyncio.to_thread(atomic_write_bytes, data, target)
        except OSError as e:
            raise StorageError(f"upload of {bucket}/{path} failed: {e}") from e

    async def list_paths(self, bucket: str, prefix: str = "") -> list[str]:
        bucket_dir = self.root / bucket
        if not bucket_dir.exists():
            return []
        paths = [
            p.relative_to(bucket_dir).as_posix()
            for p in bucket_dir.rglob("*")
            if p.is_file()
        ]
        return sorted(p for p in paths if p.startswith(prefix))

    async def remove(self, bucket: str, paths: list[str]) -> None:
        for path in paths:
            target = self._resolve(bucket, path)
            try:
                target.unlink(missing_ok=True)
            except OSError as e:
                raise StorageError(f"remove of {bucket}/{path} failed: {e}") from e
            self.logger.debug("Removed %s/%s", bucket, path)

    async def create_signed_url(
        self, bucket: str, path: str, expires_in: int = 3600
    ) -> str:
        target = self._resolve(bucket, path)
        if not target.exists():
            raise StorageError(f"{bucket}/{path} not found")
        expires = int(time.time()) + expires_in
        return f"{target.as_uri()}?expires={quote(str(expires))}"
