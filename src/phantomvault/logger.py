"""
Logging setup for applications embedding the backup engine.

The engine only ever logs through named loggers ("Exporter", "Importer",
"Versions", "Encryption", ...) and never configures handlers itself; a host
application calls `configure_logging` once at startup.
"""

import datetime
import logging
from pathlib import Path
from typing_extensions import override

from phantomvault.config import settings


def configure_logging(
    console_level: int = logging.INFO, log_dir: Path | None = None
) -> Path:
    """
    Log everything to a per-run file and `console_level` and up to stderr.

    Returns the path of the log file, named after the product and start time.
    """
    log_dir = log_dir or settings.LOGGING_DIR_PATH
    log_dir.mkdir(parents=True, exist_ok=True)
    now: str = datetime.datetime.now().strftime("%Y-%m-%d-%H-%M")
    log_file = log_dir / f"{settings.PRODUCT_TAG}-{now}.log"

    formatter = logging.Formatter(
        fmt="%(asctime)s - [%(name)s] - %(levelname)s - [%(module)s:%(lineno)d] - %(message)s"
    )

    file_handler = logging.FileHandler(log_file, encoding="UTF-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(ColoredFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    # Event loop chatter drowns the batch logs at DEBUG
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logging.getLogger("Logging").debug("Logging to %s", log_file)
    return log_file


class ColoredFormatter(logging.Formatter):
    """Console formatter coloring records by level"""

    grey: str = "\x1b[38;20m"
    yellow: str = "\x1b[33;20m"
    red: str = "\x1b[31;20m"
    bold_red: str = "\x1b[31;1m"
    reset: str = "\x1b[0m"
    line_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    FORMATS = {
        logging.DEBUG: grey + line_format + reset,
        logging.INFO: grey + line_format + reset,
        logging.WARNING: yellow + line_format + reset,
        logging.ERROR: red + line_format + reset,
        logging.CRITICAL: bold_red + line_format + reset,
    }

    @override
    def format(self, record):
        log_fmt = self.FORMATS.get(record.levelno)
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)
