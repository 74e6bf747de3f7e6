"""
Checkpoint persistence for crawl jobs.

One JSON file per job, named after a job id derived from the job's mode and
arguments, so re-running the same command resumes the same job.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar
from urllib.parse import urlsplit

import structlog
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from harvestcore.errors import StateCorruptionError
from harvestcore.observability import metrics
from harvestcore.state import CHECKPOINT_VERSION, CheckpointState
from harvestcore.utils import atomic_write_json, slugify_job_id
from harvestcore.utils.atomic import remove_stale_temp_files

logger = structlog.get_logger(__name__)

StateT = TypeVar("StateT", bound=CheckpointState)


def _major(version: str) -> str:
    return str(version).split(".", 1)[0]


def derive_job_id(mode: str, args: Dict[str, Any]) -> str:
    """
    Stable identifier for a job.

    ``<mode>-<host or "batch">-<first 16 hex chars of sha256(canonical args)>``.
    The host comes from ``start_url`` when present.
    """
    canonical = json.dumps(args, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]

    host = None
    start_url = args.get("start_url")
    if isinstance(start_url, str):
        try:
            host = urlsplit(start_url).hostname
        except ValueError:
            host = None

    return f"{mode}-{host or 'batch'}-{digest}"


class CheckpointStore:
    """
    Reads and writes job checkpoints under ``state_dir``.

    Writes go through a temp file and ``os.replace``; a reader never sees a
    half-written checkpoint. Unreadable or incompatible files are deleted on
    load and the job starts fresh.
    """

    def __init__(self, state_dir: Path, write_attempts: int = 3):
        self.state_dir = Path(state_dir)
        self.write_attempts = write_attempts
        self.logger = structlog.get_logger(self.__class__.__name__)

    def path_for(self, job_id: str) -> Path:
        return self.state_dir / f"{slugify_job_id(job_id)}.json"

    async def save(self, job_id: str, state: CheckpointState, trigger: str = "periodic") -> Path:
        path = self.path_for(job_id)
        payload = state.to_wire()

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.write_attempts),
            wait=wait_exponential(multiplier=0.1, max=2),
            retry=retry_if_exception_type(OSError),
            reraise=True,
        ):
            with attempt:
                await asyncio.to_thread(atomic_write_json, path, payload)

        metrics.increment("checkpoint_saves", labels={"trigger": trigger})
        self.logger.info("Checkpoint saved", job_id=job_id, path=str(path), trigger=trigger)
        return path

    def _read(self, path: Path, model_cls: Type[StateT]) -> StateT:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StateCorruptionError(f"Checkpoint is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise StateCorruptionError("Checkpoint root is not an object")

        version = str(data.get("version", ""))
        if _major(version) != _major(CHECKPOINT_VERSION):
            raise StateCorruptionError(f"Incompatible checkpoint version {version!r}, expected {CHECKPOINT_VERSION}")

        try:
            return model_cls.model_validate(data)
        except ValidationError as e:
            raise StateCorruptionError(f"Checkpoint failed validation: {e.error_count()} errors") from e

    async def load(self, job_id: str, model_cls: Type[StateT]) -> Optional[StateT]:
        """
        Load the checkpoint for ``job_id``.

        Returns None when there is no checkpoint or when it was corrupt or
        incompatible (in which case the file is removed).
        """
        path = self.path_for(job_id)
        if not path.exists():
            return None

        try:
            state = await asyncio.to_thread(self._read, path, model_cls)
        except StateCorruptionError as e:
            self.logger.warning("Discarding unusable checkpoint", job_id=job_id, path=str(path), reason=str(e))
            self.discard_corrupt(job_id)
            return None

        self.logger.info("Checkpoint loaded", job_id=job_id, path=str(path), saved_at=state.timestamp)
        return state

    def discard_corrupt(self, job_id: str) -> None:
        path = self.path_for(job_id)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            self.logger.error("Failed to remove corrupt checkpoint", path=str(path), error=str(e))

    def delete(self, job_id: str) -> bool:
        """Remove a job's checkpoint. Returns True if a file was removed."""
        path = self.path_for(job_id)
        if not path.exists():
            return False
        path.unlink()
        remove_stale_temp_files(self.state_dir)
        self.logger.info("Checkpoint deleted", job_id=job_id, path=str(path))
        return True
