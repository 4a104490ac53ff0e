"""Archive manifest model for the .phantomvault backup format"""

import hashlib
import json
import logging
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any

from phantomvault.config import settings
from phantomvault.models.records import Category

MEDIA_BUCKETS: tuple[str, ...] = ("photos", "files")


@dataclass
class ManifestChecksums:
    manifest: str = ""
    media_count: int = 0
    total_size_bytes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "manifest": self.manifest,
            "media_count": self.media_count,
            "total_size_bytes": self.total_size_bytes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ManifestChecksums":
        return cls(
            manifest=data.get("manifest", ""),
            media_count=data.get("media_count", 0),
            total_size_bytes=data.get("total_size_bytes", 0),
        )


@dataclass
class EncryptionInfo:
    algorithm: str
    iterations: int

    def to_dict(self) -> dict[str, Any]:
        return {"algorithm": self.algorithm, "iterations": self.iterations}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EncryptionInfo":
        return cls(algorithm=data["algorithm"], iterations=data["iterations"])


@dataclass
class ManifestMetadata:
    """Self-description of an archive"""

    owner_id: str
    version: str = settings.FORMAT_VERSION
    format: str = settings.PRODUCT_TAG
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    includes_media: bool = False
    encryption: EncryptionInfo | None = None
    checksums: ManifestChecksums = field(default_factory=ManifestChecksums)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "format": self.format,
            "created_at": self.created_at,
            "owner_id": self.owner_id,
            "includes_media": self.includes_media,
            "encryption": self.encryption.to_dict() if self.encryption else None,
            "checksums": self.checksums.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ManifestMetadata":
        encryption = data.get("encryption")
        return cls(
            # Archives written before the rename carry "user_id"
            owner_id=data.get("owner_id", data.get("user_id", "")),
            version=data["version"],
            format=data["format"],
            created_at=data["created_at"],
            includes_media=bool(data.get("includes_media", False)),
            encryption=EncryptionInfo.from_dict(encryption) if encryption else None,
            checksums=ManifestChecksums.from_dict(data.get("checksums") or {}),
        )


@dataclass
class ManifestTableData:
    """The twelve record collections, as plain rows"""

    notes: list[dict[str, Any]] = field(default_factory=list)
    photos: list[dict[str, Any]] = field(default_factory=list)
    files: list[dict[str, Any]] = field(default_factory=list)
    links: list[dict[str, Any]] = field(default_factory=list)
    tiktok_videos: list[dict[str, Any]] = field(default_factory=list)
    secret_texts: list[dict[str, Any]] = field(default_factory=list)
    tags: list[dict[str, Any]] = field(default_factory=list)
    albums: list[dict[str, Any]] = field(default_factory=list)
    file_albums: list[dict[str, Any]] = field(default_factory=list)
    note_folders: list[dict[str, Any]] = field(default_factory=list)
    link_folders: list[dict[str, Any]] = field(default_factory=list)
    tiktok_folders: list[dict[str, Any]] = field(default_factory=list)

    def rows(self, category: Category) -> list[dict[str, Any]]:
        return getattr(self, category.value)

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ManifestTableData":
        collections: dict[str, list[dict[str, Any]]] = {}
        for f in fields(cls):
            rows = data.get(f.name)
            collections[f.name] = rows if isinstance(rows, list) else []
        return cls(**collections)


@dataclass
class ManifestMediaEntry:
    """One binary payload stored in the archive"""

    original_id: str
    bucket: str
    filename: str
    path_in_zip: str
    size_bytes: int
    checksum: str | None = None

    def to_dict(self) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "original_id": self.original_id,
            "bucket": self.bucket,
            "filename": self.filename,
            "path_in_zip": self.path_in_zip,
            "size_bytes": self.size_bytes,
        }
        if self.checksum is not None:
            entry["checksum"] = self.checksum
        return entry

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ManifestMediaEntry":
        return cls(
            original_id=str(data["original_id"]),
            bucket=data["bucket"],
            filename=data["filename"],
            path_in_zip=data["path_in_zip"],
            size_bytes=data.get("size_bytes", 0),
            checksum=data.get("checksum"),
        )


@dataclass
class Manifest:
    """Metadata, table data and media index of one archive"""

    metadata: ManifestMetadata
    data: ManifestTableData = field(default_factory=ManifestTableData)
    media: list[ManifestMediaEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "metadata": self.metadata.to_dict(),
            "data": self.data.to_dict(),
            "media": [entry.to_dict() for entry in self.media],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Manifest":
        return cls(
            metadata=ManifestMetadata.from_dict(data["metadata"]),
            data=ManifestTableData.from_dict(data["data"]),
            media=[ManifestMediaEntry.from_dict(e) for e in data.get("media") or []],
        )


def create_manifest(
    owner_id: str, table_data: ManifestTableData, includes_media: bool
) -> Manifest:
    """Create a new manifest; the checksum is filled in once the data is final"""
    return Manifest(
        metadata=ManifestMetadata(owner_id=owner_id, includes_media=includes_media),
        data=table_data,
        media=[],
    )


def validate_manifest(candidate: Any) -> bool:
    """Structural check of a parsed manifest document"""
    if not isinstance(candidate, dict):
        return False
    metadata = candidate.get("metadata")
    if not isinstance(metadata, dict) or not isinstance(candidate.get("data"), dict):
        return False
    if metadata.get("format") != settings.PRODUCT_TAG:
        return False
    return bool(metadata.get("version")) and bool(metadata.get("created_at"))


def serialize_manifest(manifest: Manifest) -> str:
    return json.dumps(manifest.to_dict(), indent=2, ensure_ascii=False)


def parse_manifest(text: str) -> Manifest | None:
    """Parse a manifest from JSON, None when it is unparseable or invalid"""
    logger = logging.getLogger("Manifest")
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        logger.error("Failed to parse manifest: %s", e)
        return None

    if not validate_manifest(parsed):
        logger.error("Invalid manifest structure")
        return None

    try:
        return Manifest.from_dict(parsed)
    except (KeyError, TypeError, ValueError) as e:
        logger.error("Invalid manifest entry: %s", e)
        return None


def generate_checksum(text: str) -> str:
    """Short SHA-256 hex digest of a text, for tamper evidence and display"""
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
    return digest[: settings.CHECKSUM_LENGTH]


def media_checksum(data: bytes) -> str:
    """Full SHA-256 of a media payload"""
    return hashlib.sha256(data).hexdigest()


def compute_manifest_checksum(manifest: Manifest) -> str:
    """Checksum of the manifest with its own checksum field blanked"""
    blank = replace(
        manifest,
        metadata=replace(
            manifest.metadata,
            checksums=replace(manifest.metadata.checksums, manifest=""),
        ),
    )
    return generate_checksum(serialize_manifest(blank))


def verify_manifest_checksum(manifest: Manifest) -> bool:
    stored = manifest.metadata.checksums.manifest
    return bool(stored) and stored == compute_manifest_checksum(manifest)


def stored_text_checksum(text: str, stored: str) -> str:
    """
    Checksum of a manifest exactly as it was archived.

    The stored checksum value is blanked in place, so the text hashed is the
    one the exporter hashed and every other byte counts, whitespace included.
    """
    blanked = text.replace(f'"manifest": "{stored}"', '"manifest": ""', 1)
    return generate_checksum(blanked)


def verify_manifest_text(text: str, manifest: Manifest) -> bool:
    """Check the archived manifest text against its own stored checksum"""
    stored = manifest.metadata.checksums.manifest
    return bool(stored) and stored == stored_text_checksum(text, stored)


def create_media_entry(
    original_id: str,
    bucket: str,
    filename: str,
    size_bytes: int,
    checksum: str | None = None,
) -> ManifestMediaEntry:
    """Create a media entry stored at media/<bucket>/<filename>"""
    if bucket not in MEDIA_BUCKETS:
        raise ValueError(f"Unknown media bucket: {bucket}")
    return ManifestMediaEntry(
        original_id=original_id,
        bucket=bucket,
        filename=filename,
        path_in_zip=f"media/{bucket}/{filename}",
        size_bytes=size_bytes,
        checksum=checksum,
    )


def get_item_counts(data: ManifestTableData) -> dict[str, int]:
    """Per-category item counts, as recorded in the remote backup ledger"""
    return {
        "notes": len(data.notes),
        "photos": len(data.photos),
        "files": len(data.files),
        "links": len(data.links),
        "tiktoks": len(data.tiktok_videos),
        "secrets": len(data.secret_texts),
        "tags": len(data.tags),
        "albums": len(data.albums) + len(data.file_albums),
        "folders": len(data.note_folders)
        + len(data.link_folders)
        + len(data.tiktok_folders),
    }
