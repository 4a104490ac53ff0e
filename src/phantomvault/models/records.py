"""Row shapes for the twelve record collections of a vault"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

RowId = str | int
Timestamp = str | datetime


class Category(str, Enum):
    """Record collections, named after their tables and manifest keys"""

    NOTES = "notes"
    PHOTOS = "photos"
    FILES = "files"
    LINKS = "links"
    TIKTOK_VIDEOS = "tiktok_videos"
    SECRET_TEXTS = "secret_texts"
    TAGS = "tags"
    ALBUMS = "albums"
    FILE_ALBUMS = "file_albums"
    NOTE_FOLDERS = "note_folders"
    LINK_FOLDERS = "link_folders"
    TIKTOK_FOLDERS = "tiktok_folders"


class VaultRecord(BaseModel):
    """
    Common columns of every vault row.

    Columns not declared on a model are kept as extra fields so a full
    table dump survives the round trip through the manifest.
    """

    model_config = ConfigDict(extra="allow")

    id: RowId | None = None
    user_id: str | None = None
    created_at: Timestamp | None = None
    updated_at: Timestamp | None = None
    deleted_at: Timestamp | None = None

    @property
    def is_tombstoned(self) -> bool:
        return self.deleted_at is not None


class Tag(VaultRecord):
    name: str
    color: str | None = None


class Folder(VaultRecord):
    name: str
    color: str | None = None
    icon: str | None = None


class Album(VaultRecord):
    name: str
    color: str | None = None
    icon: str | None = None
    is_pinned: bool | None = None


class Note(VaultRecord):
    title: str | None = None
    content: str | None = None
    folder_id: RowId | None = None
    is_favorite: bool | None = None
    is_secure: bool | None = None
    secure_content: str | None = None
    tags: list[str] | None = None


class Link(VaultRecord):
    url: str
    title: str | None = None
    description: str | None = None
    favicon_url: str | None = None
    image_url: str | None = None
    folder_id: RowId | None = None
    is_favorite: bool | None = None
    tags: list[str] | None = None


class TikTokVideo(VaultRecord):
    url: str
    title: str | None = None
    author_name: str | None = None
    thumbnail_url: str | None = None
    video_id: str | None = None
    folder_id: RowId | None = None
    is_favorite: bool | None = None


class Photo(VaultRecord):
    filename: str
    caption: str | None = None
    taken_at: Timestamp | None = None
    album_id: RowId | None = None
    is_favorite: bool | None = None
    tags: list[str] | None = None
    thumbnail_filename: str | None = None


class File(VaultRecord):
    filename: str
    mime_type: str | None = None
    size: int | None = None
    album_id: RowId | None = None
    is_favorite: bool | None = None
    tags: list[str] | None = None


class SecretText(VaultRecord):
    title: str | None = None
    encrypted_content: str | None = None


RECORD_MODELS: dict[Category, type[VaultRecord]] = {
    Category.NOTES: Note,
    Category.PHOTOS: Photo,
    Category.FILES: File,
    Category.LINKS: Link,
    Category.TIKTOK_VIDEOS: TikTokVideo,
    Category.SECRET_TEXTS: SecretText,
    Category.TAGS: Tag,
    Category.ALBUMS: Album,
    Category.FILE_ALBUMS: Album,
    Category.NOTE_FOLDERS: Folder,
    Category.LINK_FOLDERS: Folder,
    Category.TIKTOK_FOLDERS: Folder,
}


def parse_record(category: Category, row: Any) -> VaultRecord | None:
    """Validate a raw row against its category's shape, None if it does not fit"""
    model = RECORD_MODELS[category]
    try:
        return model.model_validate(row)
    except ValidationError as e:
        logging.getLogger("Records").warning(
            "Dropping invalid %s row %s: %s",
            category.value,
            row.get("id") if isinstance(row, dict) else "?",
            e.error_count(),
        )
        return None


def parse_records(category: Category, rows: Any) -> list[VaultRecord]:
    """Validate every row of a collection, dropping the ones that do not fit"""
    if not isinstance(rows, list):
        return []
    records: list[VaultRecord] = []
    for row in rows:
        record = parse_record(category, row)
        if record is not None:
            records.append(record)
    return records


def dump_record(record: VaultRecord) -> dict[str, Any]:
    """Serialize a record back to a plain dict, extra columns included"""
    return record.model_dump(mode="json", exclude_unset=True)
