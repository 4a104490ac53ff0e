"""Detection of the kind of backup a file contains"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from phantomvault.utils.encryption import (
    is_new_encryption_format,
    is_old_encryption_format,
)

ZIP_MAGIC: bytes = b"PK\x03\x04"
EMPTY_ZIP_MAGIC: bytes = b"PK\x05\x06"


class ArchiveFormat(Enum):
    CURRENT_ARCHIVE = "current_archive"
    ENCRYPTED_CURRENT_ARCHIVE = "encrypted_current_archive"
    LEGACY_PLAIN = "legacy_plain"
    LEGACY_ENCRYPTED = "legacy_encrypted"
    INVALID = "invalid"


@dataclass(frozen=True)
class ClassifiedArchive:
    """
    Result of sniffing a backup file.

    `document` holds the parsed JSON for every JSON-based kind (the envelope
    for encrypted kinds, the backup itself for legacy plain files) and
    `reason` explains an INVALID classification.
    """

    kind: ArchiveFormat
    raw: bytes = b""
    document: dict[str, Any] | None = None
    reason: str | None = None

    @property
    def is_encrypted(self) -> bool:
        return self.kind in (
            ArchiveFormat.ENCRYPTED_CURRENT_ARCHIVE,
            ArchiveFormat.LEGACY_ENCRYPTED,
        )


def is_zip(data: bytes) -> bool:
    return data.startswith(ZIP_MAGIC) or data.startswith(EMPTY_ZIP_MAGIC)


def is_legacy_document(data: Any) -> bool:
    """Pre-archive backups are plain JSON carrying a version and export date"""
    return (
        isinstance(data, dict)
        and bool(data.get("version"))
        and bool(data.get("exported_at"))
    )


def classify(data: bytes) -> ClassifiedArchive:
    """Tell which kind of backup `data` holds, without decrypting anything"""
    logger = logging.getLogger("ArchiveFormat")

    if is_zip(data):
        return ClassifiedArchive(ArchiveFormat.CURRENT_ARCHIVE, raw=data)

    try:
        document = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.debug("Backup is neither an archive nor JSON: %s", e)
        return ClassifiedArchive(
            ArchiveFormat.INVALID, reason="Unrecognised backup format"
        )

    if is_new_encryption_format(document):
        return ClassifiedArchive(
            ArchiveFormat.ENCRYPTED_CURRENT_ARCHIVE, document=document
        )
    if is_old_encryption_format(document):
        return ClassifiedArchive(ArchiveFormat.LEGACY_ENCRYPTED, document=document)
    if is_legacy_document(document):
        return ClassifiedArchive(ArchiveFormat.LEGACY_PLAIN, document=document)

    return ClassifiedArchive(
        ArchiveFormat.INVALID, reason="Invalid backup format: unknown JSON document"
    )
