"""
DocSpace Flow Hub - Store Persistence

Snapshot sinks for the flow store and the debounced saver that coalesces
bursts of mutations into a single write.

The durability window is explicit: a mutation is durable at most
`delay_ms` after it happened (plus the write itself). A crash inside that
window loses the mutations made in it. `flush()` closes the window
immediately and is called on shutdown.

Sinks:
- JsonFileSnapshotSink: one JSON document on local disk (atomic replace)
- MongoSnapshotSink: one upserted document in a MongoDB collection (motor)
- NullSnapshotSink: persistence disabled
"""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class SnapshotSink(ABC):
    """Durable storage for whole-store snapshots."""

    @abstractmethod
    async def load(self) -> Optional[Dict[str, Any]]:
        """Return the last saved snapshot, or None when nothing was saved yet."""
        pass

    @abstractmethod
    async def save(self, snapshot: Dict[str, Any]) -> None:
        """Persist a snapshot, replacing the previous one."""
        pass

    def describe(self) -> str:
        return self.__class__.__name__


class NullSnapshotSink(SnapshotSink):
    """Sink used when persistence is turned off."""

    async def load(self) -> Optional[Dict[str, Any]]:
        return None

    async def save(self, snapshot: Dict[str, Any]) -> None:
        return None


class JsonFileSnapshotSink(SnapshotSink):
    """Snapshot stored as a pretty-printed JSON file."""

    def __init__(self, path: str):
        self.path = Path(path).resolve()

    def describe(self) -> str:
        return f"json:{self.path}"

    def _read(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        raw = self.path.read_text(encoding="utf-8")
        if not raw.strip():
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Ignoring unreadable store snapshot %s: %s", self.path, str(e))
            return None
        return data if isinstance(data, dict) else None

    def _write(self, snapshot: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(snapshot, indent=2, default=str), encoding="utf-8")
        os.replace(tmp_path, self.path)

    async def load(self) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._read)

    async def save(self, snapshot: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._write, snapshot)


class MongoSnapshotSink(SnapshotSink):
    """
    Snapshot stored as a single document in MongoDB.

    `db` is a motor AsyncIOMotorDatabase (or anything exposing the same
    find_one / replace_one coroutines on `db[collection]`).
    """

    def __init__(self, db, collection_name: str = "store_snapshots", snapshot_id: str = "flow_hub"):
        self.collection = db[collection_name]
        self.snapshot_id = snapshot_id

    def describe(self) -> str:
        return f"mongo:{self.collection.name}/{self.snapshot_id}"

    async def load(self) -> Optional[Dict[str, Any]]:
        doc = await self.collection.find_one({"_id": self.snapshot_id})
        if not doc:
            return None
        doc.pop("_id", None)
        return doc

    async def save(self, snapshot: Dict[str, Any]) -> None:
        await self.collection.replace_one(
            {"_id": self.snapshot_id},
            {**snapshot, "_id": self.snapshot_id},
            upsert=True,
        )


class DebouncedSaver:
    """
    Coalesces save requests: the first schedule() after a write starts a
    timer; every schedule() before it fires is absorbed. The snapshot is taken
    when the timer fires, so the last state wins.
    """

    def __init__(
        self,
        sink: SnapshotSink,
        snapshot_fn: Callable[[], Dict[str, Any]],
        delay_ms: int = 200,
    ):
        self.sink = sink
        self.delay = max(0, delay_ms) / 1000.0
        self._snapshot_fn = snapshot_fn
        self._task: Optional[asyncio.Task] = None
        self._dirty = False
        self.save_count = 0
        # Held for the whole sink write; a thread-backed save cannot be cancelled
        self._write_lock = asyncio.Lock()

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self) -> None:
        """Request a save. Without a running event loop only the dirty flag is set."""
        if isinstance(self.sink, NullSnapshotSink):
            return
        self._dirty = True
        if self.pending:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._task = loop.create_task(self._save_later())

    async def _save_later(self) -> None:
        while True:
            await asyncio.sleep(self.delay)
            try:
                async with self._write_lock:
                    await self._write()
            except Exception:
                logger.exception("Store snapshot save failed (%s)", self.sink.describe())
                return
            # Mutations made while the write was in flight need another round
            if not self._dirty:
                return

    async def _write(self) -> None:
        self._dirty = False
        snapshot = self._snapshot_fn()
        saved = False
        try:
            await self.sink.save(snapshot)
            saved = True
        finally:
            if not saved:
                self._dirty = True
        self.save_count += 1
        logger.debug(
            "Store snapshot saved (%s): %d flows",
            self.sink.describe(), len(snapshot.get("flows") or []),
        )

    async def flush(self) -> None:
        """
        Write immediately if anything is unsaved. A pending timer is cancelled;
        a save already in flight is awaited, never cancelled.
        """
        if self.pending:
            if self._write_lock.locked():
                await self._task
            else:
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
        self._task = None
        if self._dirty:
            async with self._write_lock:
                await self._write()


def create_snapshot_sink(backend: str, path: str = None, db=None) -> SnapshotSink:
    """Build the sink selected by STORE_BACKEND."""
    backend = (backend or "json").lower()
    if backend in ("off", "false", "none"):
        return NullSnapshotSink()
    if backend == "mongo":
        if db is None:
            raise ValueError("A database handle is required for the mongo store backend")
        return MongoSnapshotSink(db)
    if backend == "json":
        return JsonFileSnapshotSink(path or "data/store.json")
    raise ValueError(f"Unknown store backend: {backend}")
