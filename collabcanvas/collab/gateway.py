from __future__ import annotations

"""
Document store gateways.

The engine only relies on whole-document reads and replaces plus a change
feed.  There is no transaction or partial-update primitive: callers that need
read-modify-write semantics perform both halves themselves and accept that the
last writer wins.
"""

import asyncio
import copy
import inspect
import json
import logging
import os
import tempfile
import threading
from collections import defaultdict
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, Union

LOGGER = logging.getLogger(__name__)

DEFAULT_COLLECTION = "canvas"

Document = Dict[str, Any]
DocumentCallback = Callable[[Optional[Document]], Union[None, Awaitable[None]]]
Unsubscribe = Callable[[], None]


class PersistenceGateway(Protocol):
    async def get_document(
        self, doc_id: str, *, collection: str = DEFAULT_COLLECTION
    ) -> Optional[Document]: ...

    async def replace_document(
        self, doc_id: str, document: Document, *, collection: str = DEFAULT_COLLECTION
    ) -> None: ...

    async def delete_document(
        self, doc_id: str, *, collection: str = DEFAULT_COLLECTION
    ) -> None: ...

    def subscribe(
        self,
        doc_id: str,
        callback: DocumentCallback,
        *,
        collection: str = DEFAULT_COLLECTION,
    ) -> Unsubscribe: ...


class _SubscriberMixin:
    """Change feed shared by the bundled gateways."""

    def _init_subscribers(self) -> None:
        self._subscribers: Dict[Tuple[str, str], List[DocumentCallback]] = defaultdict(list)

    def subscribe(
        self,
        doc_id: str,
        callback: DocumentCallback,
        *,
        collection: str = DEFAULT_COLLECTION,
    ) -> Unsubscribe:
        key = (collection, doc_id)
        self._subscribers[key].append(callback)

        def _unsubscribe() -> None:
            callbacks = self._subscribers.get(key)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)

        return _unsubscribe

    def subscriber_count(self, doc_id: str, *, collection: str = DEFAULT_COLLECTION) -> int:
        return len(self._subscribers.get((collection, doc_id), ()))

    async def _notify(self, collection: str, doc_id: str, document: Optional[Document]) -> None:
        for callback in list(self._subscribers.get((collection, doc_id), ())):
            payload = copy.deepcopy(document)
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                LOGGER.warning(
                    "Document subscriber failed for %s/%s: %s", collection, doc_id, exc
                )


class MemoryDocumentStore(_SubscriberMixin):
    """
    In-process document store shared by every client of one server.

    Reads and writes yield to the event loop so concurrent read-modify-write
    cycles interleave the way they would against a remote store.
    """

    def __init__(self, *, latency: float = 0.0) -> None:
        self.latency = max(0.0, float(latency))
        self._documents: Dict[Tuple[str, str], Document] = {}
        self._pending_failures: List[BaseException] = []
        self.reads = 0
        self.writes = 0
        self._init_subscribers()

    async def _round_trip(self) -> None:
        await asyncio.sleep(self.latency)

    def fail_next_writes(self, count: int = 1, exc: Optional[BaseException] = None) -> None:
        """Make the next ``count`` writes raise ``exc`` (testing aid)."""
        for _ in range(max(0, count)):
            self._pending_failures.append(exc or ConnectionError("simulated write failure"))

    async def get_document(
        self, doc_id: str, *, collection: str = DEFAULT_COLLECTION
    ) -> Optional[Document]:
        await self._round_trip()
        self.reads += 1
        document = self._documents.get((collection, doc_id))
        return copy.deepcopy(document) if document is not None else None

    async def replace_document(
        self, doc_id: str, document: Document, *, collection: str = DEFAULT_COLLECTION
    ) -> None:
        await self._round_trip()
        if self._pending_failures:
            raise self._pending_failures.pop(0)
        stored = copy.deepcopy(document)
        self._documents[(collection, doc_id)] = stored
        self.writes += 1
        await self._notify(collection, doc_id, stored)

    async def delete_document(
        self, doc_id: str, *, collection: str = DEFAULT_COLLECTION
    ) -> None:
        await self._round_trip()
        if self._pending_failures:
            raise self._pending_failures.pop(0)
        existed = self._documents.pop((collection, doc_id), None)
        if existed is not None:
            self.writes += 1
            await self._notify(collection, doc_id, None)

    def document_ids(self, collection: str = DEFAULT_COLLECTION) -> List[str]:
        return sorted(doc_id for coll, doc_id in self._documents if coll == collection)


class JsonDocumentStore(_SubscriberMixin):
    """
    One JSON file per document under ``root/<collection>/<doc_id>.json``.

    Disk IO runs in worker threads; a per-document lock keeps a single
    process from interleaving partial writes.  The change feed only covers
    writers inside this process.
    """

    def __init__(self, root: Union[str, os.PathLike[str]]) -> None:
        self.root = Path(root)
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._guard = threading.Lock()
        self._init_subscribers()

    def _path(self, collection: str, doc_id: str) -> Path:
        safe_id = doc_id.replace("/", "_").replace("\\", "_")
        return self.root / collection / f"{safe_id}.json"

    def _lock(self, collection: str, doc_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault((collection, doc_id), threading.Lock())

    def _read(self, collection: str, doc_id: str) -> Optional[Document]:
        path = self._path(collection, doc_id)
        with self._lock(collection, doc_id):
            if not path.exists():
                return None
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                LOGGER.warning("Corrupt document ignored: %s", path)
                return None
        return data if isinstance(data, dict) else None

    def _write(self, collection: str, doc_id: str, document: Document) -> None:
        path = self._path(collection, doc_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        text = json.dumps(document, ensure_ascii=False, indent=2)
        with self._lock(collection, doc_id):
            fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(text)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise

    def _delete(self, collection: str, doc_id: str) -> bool:
        path = self._path(collection, doc_id)
        with self._lock(collection, doc_id):
            if not path.exists():
                return False
            path.unlink()
            return True

    async def get_document(
        self, doc_id: str, *, collection: str = DEFAULT_COLLECTION
    ) -> Optional[Document]:
        return await asyncio.to_thread(self._read, collection, doc_id)

    async def replace_document(
        self, doc_id: str, document: Document, *, collection: str = DEFAULT_COLLECTION
    ) -> None:
        stored = copy.deepcopy(document)
        await asyncio.to_thread(self._write, collection, doc_id, stored)
        await self._notify(collection, doc_id, stored)

    async def delete_document(
        self, doc_id: str, *, collection: str = DEFAULT_COLLECTION
    ) -> None:
        removed = await asyncio.to_thread(self._delete, collection, doc_id)
        if removed:
            await self._notify(collection, doc_id, None)


__all__ = [
    "DEFAULT_COLLECTION",
    "PersistenceGateway",
    "MemoryDocumentStore",
    "JsonDocumentStore",
]
