"""Relational and object stores the backup engine works against"""

from phantomvault.store.base import ObjectStore, RelationalStore
from phantomvault.store.filesystem import FileSystemObjectStore
from phantomvault.store.memory import InMemoryObjectStore, InMemoryRelationalStore

__all__ = [
    "FileSystemObjectStore",
    "InMemoryObjectStore",
    "InMemoryRelationalStore",
    "ObjectStore",
    "RelationalStore",
]
