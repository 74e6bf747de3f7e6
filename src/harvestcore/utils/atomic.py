"""
Atomic file writing utilities.

Checkpoints and discovery output are written to a temporary file in the
target directory, fsynced, then moved into place with ``os.replace`` so a
reader never observes a partially written file.
"""

import json
import os
import shutil
import tempfile
import time
from pathlib import Path
from typing import Any, Dict

import structlog

logger = structlog.get_logger(__name__)

STALE_TEMP_AGE_SECONDS = 3600


def _write_then_replace(target_path: Path, content: str, encoding: str) -> None:
    target_path.parent.mkdir(parents=True, exist_ok=True)
    temp_file_path = None

    try:
        with tempfile.NamedTemporaryFile(
            mode="w",
            dir=target_path.parent,
            prefix=f".{target_path.name}.",
            suffix=".tmp",
            delete=False,
            encoding=encoding,
        ) as temp_file:
            temp_file_path = Path(temp_file.name)
            temp_file.write(content)
            temp_file.flush()
            os.fsync(temp_file.fileno())

        try:
            os.replace(str(temp_file_path), str(target_path))
        except OSError as rename_error:
            # Cross-device or Windows sharing violations
            logger.warning("Atomic rename failed, falling back to move", error=str(rename_error), target=str(target_path))
            shutil.move(str(temp_file_path), str(target_path))

        logger.debug("Atomic write completed", target=str(target_path), size=len(content))

    except Exception as e:
        if isinstance(e, OSError):
            raise
        raise OSError(f"Failed to atomically write {target_path}: {e}") from e

    finally:
        if temp_file_path is not None and temp_file_path.exists():
            try:
                temp_file_path.unlink()
            except OSError as cleanup_error:
                logger.warning("Failed to remove temporary file", temp_file=str(temp_file_path), error=str(cleanup_error))


def atomic_write_json(target_path: Path, data: Dict[str, Any]) -> None:
    """
    Atomically write JSON data to a file.

    Args:
        target_path: Target file path to write to
        data: JSON-serializable mapping

    Raises:
        OSError: If the write or the final rename fails
        ValueError: If data cannot be serialized to JSON
    """
    target_path = Path(target_path)

    # Serialize first so a bad payload never touches the filesystem
    try:
        json_content = json.dumps(data, indent=2, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        logger.error("Failed to serialize data to JSON", error=str(e), target=str(target_path))
        raise ValueError(f"Cannot serialize data to JSON: {e}") from e

    _write_then_replace(target_path, json_content, "utf-8")


def atomic_write_text(target_path: Path, content: str, encoding: str = "utf-8") -> None:
    """
    Atomically write text content to a file.

    Raises:
        OSError: If the write or the final rename fails
    """
    _write_then_replace(Path(target_path), content, encoding)


def remove_stale_temp_files(directory: Path, max_age: float = STALE_TEMP_AGE_SECONDS) -> int:
    """Remove leftover ``.<name>.*.tmp`` files older than ``max_age`` seconds."""
    directory = Path(directory)
    if not directory.is_dir():
        return 0

    removed = 0
    now = time.time()
    for temp_file in directory.glob(".*.tmp"):
        try:
            if temp_file.is_file() and now - temp_file.stat().st_mtime > max_age:
                temp_file.unlink()
                removed += 1
        except OSError as e:
            logger.debug("Could not remove stale temp file", temp_file=str(temp_file), error=str(e))

    if removed:
        logger.debug("Removed stale temp files", directory=str(directory), count=removed)
    return removed
