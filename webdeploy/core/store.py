"""Durable storage for deployment records, keyed by project name."""

import asyncio
import os
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Awaitable, Callable

from webdeploy.config import settings
from webdeploy.models.deployment import DeploymentRecord, ProgressEvent
from webdeploy.utils.logging import get_logger

logger = get_logger("store")

RecordMutator = Callable[[DeploymentRecord], Awaitable[None] | None]

_TICK = timedelta(microseconds=1)


class RecordStore(ABC):
    """Keyed record storage with per-project write serialization.

    ``put`` stamps ``last_updated`` and never lets it go backwards. Writers
    that read before writing hold ``lock(project_name)``; ``update`` and
    ``append_progress`` take it themselves.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, project_name: str) -> asyncio.Lock:
        """Get the write lock for a project."""
        if project_name not in self._locks:
            self._locks[project_name] = asyncio.Lock()
        return self._locks[project_name]

    @abstractmethod
    async def get(self, project_name: str) -> DeploymentRecord | None:
        """Fetch a record with its full progress log."""

    @abstractmethod
    async def list_records(self) -> list[DeploymentRecord]:
        """All records, ordered by project name."""

    @abstractmethod
    async def delete(self, project_name: str) -> bool:
        """Remove a record and its progress log. Returns False if absent."""

    @abstractmethod
    async def _read_last_updated(self, project_name: str) -> datetime | None: ...

    @abstractmethod
    async def _write(self, record: DeploymentRecord) -> None: ...

    @abstractmethod
    async def _last_progress_at(self, project_name: str) -> datetime | None: ...

    @abstractmethod
    async def _append(self, project_name: str, event: ProgressEvent) -> None: ...

    async def put(self, record: DeploymentRecord) -> DeploymentRecord:
        """Store a record, stamping a non-decreasing ``last_updated``."""
        previous = await self._read_last_updated(record.project_name)
        stamp = datetime.utcnow()
        if previous is not None and stamp <= previous:
            stamp = previous + _TICK
        record.last_updated = stamp
        await self._write(record)
        return record

    async def update(
        self, project_name: str, mutator: RecordMutator
    ) -> DeploymentRecord | None:
        """Read-modify-write a record under its lock.

        Returns None without calling ``mutator`` if the record is absent.
        """
        async with self.lock(project_name):
            record = await self.get(project_name)
            if record is None:
                return None
            result = mutator(record)
            if asyncio.iscoroutine(result):
                await result
            return await self.put(record)

    async def append_progress(self, project_name: str, message: str) -> ProgressEvent:
        """Append a progress event with a strictly increasing timestamp."""
        async with self.lock(project_name):
            previous = await self._last_progress_at(project_name)
            stamp = datetime.utcnow()
            if previous is not None and stamp <= previous:
                stamp = previous + _TICK
            event = ProgressEvent(timestamp=stamp, message=message)
            await self._append(project_name, event)
            return event


class InMemoryRecordStore(RecordStore):
    """Process-local store used in development and tests."""

    def __init__(self):
        super().__init__()
        self._records: dict[str, DeploymentRecord] = {}

    async def get(self, project_name: str) -> DeploymentRecord | None:
        record = self._records.get(project_name)
        return record.model_copy(deep=True) if record else None

    async def list_records(self) -> list[DeploymentRecord]:
        return [self._records[name].model_copy(deep=True) for name in sorted(self._records)]

    async def delete(self, project_name: str) -> bool:
        self._locks.pop(project_name, None)
        return self._records.pop(project_name, None) is not None

    async def _read_last_updated(self, project_name: str) -> datetime | None:
        record = self._records.get(project_name)
        return record.last_updated if record else None

    async def _write(self, record: DeploymentRecord) -> None:
        stored = record.model_copy(deep=True)
        existing = self._records.get(record.project_name)
        # The progress log is owned by append_progress
        stored.progress_log = list(existing.progress_log) if existing else []
        self._records[record.project_name] = stored

    async def _last_progress_at(self, project_name: str) -> datetime | None:
        record = self._records.get(project_name)
        if record is None or not record.progress_log:
            return None
        return record.progress_log[-1].timestamp

    async def _append(self, project_name: str, event: ProgressEvent) -> None:
        record = self._records.get(project_name)
        if record is None:
            logger.warning("store.progress_without_record", project=project_name)
            return
        record.progress_log.append(event)

    def clear(self) -> None:
        """Remove all records (primarily for tests)."""
        self._records.clear()
        self._locks.clear()


class FileRecordStore(RecordStore):
    """JSON files on disk.

    Layout per project: ``<project>.json`` holds the record without its
    progress log, ``<project>.progress.jsonl`` holds one event per line.
    Records are written to a temporary file and atomically renamed.
    """

    def __init__(self, directory: str | Path | None = None):
        super().__init__()
        self.directory = Path(directory or settings.record_store_path)
        self.directory.mkdir(parents=True, exist_ok=True)
        logger.debug("store.initialized", directory=str(self.directory))

    def _record_path(self, project_name: str) -> Path:
        return self.directory / f"{project_name}.json"

    def _progress_path(self, project_name: str) -> Path:
        return self.directory / f"{project_name}.progress.jsonl"

    def _load(self, project_name: str) -> DeploymentRecord | None:
        path = self._record_path(project_name)
        if not path.exists():
            return None
        record = DeploymentRecord.model_validate_json(path.read_text(encoding="utf-8"))
        record.progress_log = self._load_progress(project_name)
        return record

    def _load_progress(self, project_name: str) -> list[ProgressEvent]:
        path = self._progress_path(project_name)
        if not path.exists():
            return []
        with open(path, encoding="utf-8") as f:
            return [ProgressEvent.model_validate_json(line) for line in f if line.strip()]

    def _save(self, record: DeploymentRecord) -> None:
        path = self._record_path(record.project_name)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(
            record.model_dump_json(indent=2, exclude={"progress_log"}),
            encoding="utf-8",
        )
        os.replace(tmp_path, path)

    async def get(self, project_name: str) -> DeploymentRecord | None:
        return await asyncio.to_thread(self._load, project_name)

    async def list_records(self) -> list[DeploymentRecord]:
        names = sorted(
            path.name.removesuffix(".json")
            for path in self.directory.glob("*.json")
        )
        records = []
        for name in names:
            record = await self.get(name)
            if record is not None:
                records.append(record)
        return records

    async def delete(self, project_name: str) -> bool:
        record_path = self._record_path(project_name)
        existed = record_path.exists()
        record_path.unlink(missing_ok=True)
        self._progress_path(project_name).unlink(missing_ok=True)
        self._locks.pop(project_name, None)
        return existed

    async def _read_last_updated(self, project_name: str) -> datetime | None:
        path = self._record_path(project_name)
        if not path.exists():
            return None
        record = await asyncio.to_thread(
            DeploymentRecord.model_validate_json, path.read_text(encoding="utf-8")
        )
        return record.last_updated

    async def _write(self, record: DeploymentRecord) -> None:
        await asyncio.to_thread(self._save, record)

    async def _last_progress_at(self, project_name: str) -> datetime | None:
        events = await asyncio.to_thread(self._load_progress, project_name)
        return events[-1].timestamp if events else None

    async def _append(self, project_name: str, event: ProgressEvent) -> None:
        def _write_line() -> None:
            with open(self._progress_path(project_name), "a", encoding="utf-8") as f:
                f.write(event.model_dump_json() + "\n")

        await asyncio.to_thread(_write_line)


# Singleton instance
_record_store: RecordStore | None = None


def get_record_store() -> RecordStore:
    """Get the record store selected by ``RECORD_STORE_BACKEND``."""
    global _record_store
    if _record_store is None:
        if settings.record_store_backend == "memory":
            _record_store = InMemoryRecordStore()
        else:
            _record_store = FileRecordStore()
    return _record_store
