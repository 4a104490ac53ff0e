"""Utils to write a file safely, writing a temporary file and moving it with rename"""

import logging
import os
import tempfile
from pathlib import Path


def atomic_write_bytes(data: bytes, output_file: Path) -> Path:
    """Write bytes atomically (writing a temporary file and moving using rename)"""
    output_dir = output_file.parent
    output_dir.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(suffix=".tmp", dir=output_dir, delete=False) as f:
        filename = f.name
        logging.getLogger("Files").debug(
            "Writing %d bytes to %s", len(data), output_file
        )
        try:
            _ = f.write(data)
            f.flush()
            os.fsync(f.fileno())
        except (IOError, OSError) as e:
            logging.getLogger("Files").error("Error writing %s: %s", output_file, e)
            f.close()
            os.unlink(filename)
            raise
    os.replace(filename, output_file)
    return output_file
