"""
Record store abstraction for the index.

The core only talks to a keyed object collection: get, add, update, delete,
get_all and query_by_index, plus a per-record compare-and-update used by
concurrent writers. Any storage engine can sit behind it.
"""

import asyncio
import copy
import json
import os
from abc import ABC, abstractmethod
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Any, Optional, Iterable, Set

import aiofiles
from loguru import logger


Record = Dict[str, Any]


class RecordExistsError(KeyError):
    """A record with this id is already stored."""


class RecordStore(ABC):
    """Async keyed collection of plain-dict records."""

    @abstractmethod
    async def get(self, record_id: str) -> Optional[Record]:
        ...

    @abstractmethod
    async def add(self, record: Record) -> str:
        ...

    @abstractmethod
    async def update(self, record_id: str, changes: Record) -> bool:
        ...

    @abstractmethod
    async def delete(self, record_id: str) -> bool:
        ...

    @abstractmethod
    async def get_all(self) -> List[Record]:
        ...

    @abstractmethod
    async def query_by_index(self, name: str, value: Any) -> List[Record]:
        ...

    async def compare_and_update(self, record_id: str, expected: Record, changes: Record) -> bool:
        """
        Apply ``changes`` only if every field in ``expected`` still holds.

        The default is correct for engines whose get/update do not yield to
        the event loop in between; engines with real I/O should override it
        with a native conditional write.
        """
        current = await self.get(record_id)
        if current is None:
            return False
        for key, value in expected.items():
            if current.get(key) != value:
                return False
        return await self.update(record_id, changes)

    async def flush(self) -> None:
        """Persist buffered writes (no-op for purely in-memory stores)."""


class InMemoryRecordStore(RecordStore):
    """Dict-backed store with secondary indexes on chosen fields."""

    def __init__(self, indexes: Iterable[str] = ()):
        self._records: Dict[str, Record] = {}
        self._index_names = tuple(indexes)
        self._indexes: Dict[str, Dict[Any, Set[str]]] = {
            name: defaultdict(set) for name in self._index_names
        }

    def __len__(self) -> int:
        return len(self._records)

    def _index_add(self, record: Record) -> None:
        for name in self._index_names:
            if name in record:
                self._indexes[name][record[name]].add(record["id"])

    def _index_remove(self, record: Record) -> None:
        for name in self._index_names:
            if name in record:
                bucket = self._indexes[name].get(record[name])
                if bucket is not None:
                    bucket.discard(record["id"])
                    if not bucket:
                        del self._indexes[name][record[name]]

    async def get(self, record_id: str) -> Optional[Record]:
        record = self._records.get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def add(self, record: Record) -> str:
        record_id = record["id"]
        if record_id in self._records:
            raise RecordExistsError(record_id)
        stored = copy.deepcopy(record)
        self._records[record_id] = stored
        self._index_add(stored)
        self._mark_dirty()
        return record_id

    async def update(self, record_id: str, changes: Record) -> bool:
        current = self._records.get(record_id)
        if current is None:
            return False
        self._index_remove(current)
        current.update(copy.deepcopy(changes))
        current["id"] = record_id
        self._index_add(current)
        self._mark_dirty()
        return True

    async def compare_and_update(self, record_id: str, expected: Record, changes: Record) -> bool:
        current = self._records.get(record_id)
        if current is None:
            return False
        if any(current.get(key) != value for key, value in expected.items()):
            return False
        return await self.update(record_id, changes)

    async def delete(self, record_id: str) -> bool:
        current = self._records.pop(record_id, None)
        if current is None:
            return False
        self._index_remove(current)
        self._mark_dirty()
        return True

    async def get_all(self) -> List[Record]:
        return [copy.deepcopy(r) for r in self._records.values()]

    async def query_by_index(self, name: str, value: Any) -> List[Record]:
        if name in self._indexes:
            ids = self._indexes[name].get(value, ())
            return [copy.deepcopy(self._records[i]) for i in ids]
        return [copy.deepcopy(r) for r in self._records.values() if r.get(name) == value]

    def _mark_dirty(self) -> None:
        pass


class JsonRecordStore(InMemoryRecordStore):
    """
    In-memory store persisted to a single JSON file.

    Writes are buffered; ``flush`` rewrites the file atomically when
    something changed since the last flush.
    """

    def __init__(self, path: Path, indexes: Iterable[str] = ()):
        super().__init__(indexes)
        self.path = Path(path)
        self._dirty = False
        self._flush_lock = asyncio.Lock()

    async def open(self) -> None:
        """Load existing records from disk."""
        if not self.path.exists():
            logger.debug(f"No store file at {self.path}, starting empty")
            return

        async with aiofiles.open(self.path, 'r', encoding='utf-8') as f:
            raw = await f.read()

        try:
            records = json.loads(raw) if raw.strip() else []
        except json.JSONDecodeError as e:
            logger.error(f"Corrupt store file {self.path}: {e}")
            records = []

        for record in records:
            self._records[record["id"]] = record
            self._index_add(record)
        self._dirty = False
        logger.info(f"Loaded {len(records)} records from {self.path}")

    def _mark_dirty(self) -> None:
        self._dirty = True

    async def flush(self) -> None:
        async with self._flush_lock:
            if not self._dirty:
                return
            self._dirty = False
            payload = json.dumps(list(self._records.values()))
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
                await f.write(payload)
                await f.flush()
            os.replace(tmp_path, self.path)
            logger.debug(f"Flushed {len(self._records)} records to {self.path}")
