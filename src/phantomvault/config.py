"""
Contains the configuration options for the PhantomVault backup engine
"""

import json
import logging
import os
from pathlib import Path

from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

USERPROFILE: Path = Path(os.getenv("userprofile", os.getenv("HOME", "")))
DOCUMENTS_FOLDER: Path = (USERPROFILE / "Documents" / "phantomvault").resolve()
BASE_FOLDER: Path = (USERPROFILE / ".phantomvault").resolve()
SETTINGS_FILE_PATH: Path = BASE_FOLDER / "config.json"


class Settings(BaseSettings):
    """Settings class for the backup engine"""

    model_config = SettingsConfigDict(env_prefix="PHANTOMVAULT_")

    DATA_DIR_PATH: Path = BASE_FOLDER / "data"
    EXPORT_DIR_PATH: Path = DOCUMENTS_FOLDER / "backups"
    LOGGING_DIR_PATH: Path = DATA_DIR_PATH / "logging"

    # Archive format
    PRODUCT_TAG: str = "phantomvault"
    FORMAT_VERSION: str = "1.1"
    ARCHIVE_EXTENSION: str = ".phantomvault"
    MANIFEST_NAME: str = "manifest.json"
    CHECKSUM_LENGTH: int = 16
    COMPRESSION_LEVEL: int = 6  # 1 (fast) .. 9 (small)

    # Batching
    MEDIA_DOWNLOAD_BATCH_SIZE: int = 8
    MEDIA_UPLOAD_BATCH_SIZE: int = 5
    DB_INSERT_BATCH_SIZE: int = 50
    DB_INSERT_CONCURRENCY: int = 4  # chunks in flight per category
    YIELD_EVERY_BATCHES: int = 3

    # Timeouts, in seconds
    MEDIA_DOWNLOAD_TIMEOUT: float = 30
    REMOTE_UPLOAD_TIMEOUT: float = 60

    # Object store
    BACKUPS_BUCKET: str = "backups"

    # Remote ledger
    BACKUP_VERSIONS_TABLE: str = "backup_versions"
    BACKUP_SETTINGS_TABLE: str = "backup_settings"
    DEFAULT_MAX_VERSIONS: int = 5

    @classmethod
    def load_from_file(cls, path: Path) -> "Settings":
        """Loads settings from a JSON file."""
        if not path.exists():
            return cls()  # Return default

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return cls(**data)
        except (json.JSONDecodeError, ValidationError) as e:
            logging.getLogger("Config").error("Error loading settings: %s", e)
            return cls()  # Return defaults

    def save_to_file(self, path: Path):
        """Saves settings to JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(path, "w", encoding="utf-8") as f:
                _ = f.write(self.model_dump_json(indent=2))
        except (FileNotFoundError, OSError, IOError) as e:
            logging.getLogger("Config").error("Error saving settings: %s", e)


settings = Settings.load_from_file(Path(SETTINGS_FILE_PATH))
