# storage/json_store.py
# ============================================================================
# DUCK STOREFRONT v1.0 — JSON DOCUMENT TABLES
# ============================================================================
# Keyed JSON document tables, either memory-only or mirrored to one JSON file
# per table. File writes are atomic (temp file + rename) and happen before
# the caller's write returns.
# ============================================================================

import asyncio
import json
import os
import tempfile
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger().bind(component="json_store")


class TableName(Enum):
    """Tables with their file names."""
    ORDERS = "orders.json"
    PRODUCTS = "products.json"
    SETTINGS = "settings.json"

    @property
    def file_name(self) -> str:
        return self.value


class JsonTable:
    """
    Keyed table of JSON documents.

    Handles:
    - In-memory access for reads
    - Whole-table snapshot to disk on every write (when ``path`` is set)
    - Loading the previous snapshot on ``load()``
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._flush_lock = asyncio.Lock()
        self._generation = 0
        self._flushed_generation = 0
        self._snapshots_written = 0
        self._loaded = False

    @classmethod
    def for_table(cls, table: TableName, data_dir: Optional[str]) -> "JsonTable":
        if not data_dir:
            return cls()
        return cls(os.path.join(data_dir, table.file_name))

    @property
    def durable(self) -> bool:
        return self.path is not None

    async def load(self) -> int:
        """Read the snapshot from disk. Returns the number of documents."""
        if self._loaded:
            return len(self._docs)
        if self.path and os.path.exists(self.path):
            docs = await asyncio.get_event_loop().run_in_executor(None, self._read_file)
            self._docs = docs
            logger.info("table_loaded", path=self.path, documents=len(docs))
        self._loaded = True
        return len(self._docs)

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        doc = self._docs.get(key)
        return dict(doc) if doc is not None else None

    def contains(self, key: str) -> bool:
        return key in self._docs

    def values(self) -> List[Dict[str, Any]]:
        return [dict(doc) for doc in self._docs.values()]

    def __len__(self) -> int:
        return len(self._docs)

    async def put(self, key: str, doc: Dict[str, Any]) -> None:
        new_doc = dict(doc)
        previous = self._docs.get(key)
        self._docs[key] = new_doc
        try:
            await self._flush_through(self._bump())
        except Exception:
            # keep memory consistent with what is on disk
            if self._docs.get(key) is new_doc:
                if previous is None:
                    self._docs.pop(key, None)
                else:
                    self._docs[key] = previous
            raise

    async def delete(self, key: str) -> bool:
        previous = self._docs.pop(key, None)
        if previous is None:
            return False
        try:
            await self._flush_through(self._bump())
        except Exception:
            if key not in self._docs:
                self._docs[key] = previous
            raise
        return True

    async def flush(self) -> None:
        await self._flush_through(self._generation)

    @property
    def snapshots_written(self) -> int:
        return self._snapshots_written

    def _bump(self) -> int:
        self._generation += 1
        return self._generation

    async def _flush_through(self, generation: int) -> None:
        """
        Make sure every change up to ``generation`` is on disk.

        Group commit: writers that queue up while a snapshot is being
        written are all covered by the next single snapshot, so concurrent
        updates to different keys share one disk write instead of taking
        turns.
        """
        if not self.path:
            return
        async with self._flush_lock:
            if self._flushed_generation >= generation:
                return
            target = self._generation
            snapshot = json.dumps(self._docs, indent=2, default=str, ensure_ascii=False)
            await asyncio.get_event_loop().run_in_executor(None, self._write_file, snapshot)
            self._flushed_generation = target
            self._snapshots_written += 1

    def _read_file(self) -> Dict[str, Dict[str, Any]]:
        with open(self.path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        if not isinstance(data, dict):
            raise ValueError(f"Corrupt table file: {self.path}")
        return data

    def _write_file(self, snapshot: str) -> None:
        directory = os.path.dirname(self.path) or "."
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(snapshot)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
