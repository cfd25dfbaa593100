"""Parallel insertion of document batches into one destination collection."""

from __future__ import annotations

import itertools
import logging
import queue
import threading
from typing import Any, Callable, Sequence

from bson.raw_bson import RawBSONDocument

from .dbpool import NS, MongoConn
from .util import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)

_id_lock = threading.Lock()
_coll_executor_ids = itertools.count()
_doc_executor_ids = itertools.count()


class DocSyncError(RuntimeError):
    """Copying documents to the destination failed."""


def generate_coll_executor_id() -> int:
    """Return the next collection executor id, starting at 0."""
    with _id_lock:
        return next(_coll_executor_ids)


def generate_doc_executor_id() -> int:
    """Return the next document executor id, starting at 0."""
    with _id_lock:
        return next(_doc_executor_ids)


def _default_connect(url: str) -> MongoConn:
    return MongoConn(url, True, True)


def _as_raw(doc: bytes | RawBSONDocument) -> RawBSONDocument:
    return doc if isinstance(doc, RawBSONDocument) else RawBSONDocument(doc)


class DocExecutor:
    """Inserts the batches taken from a queue; stops writing after the first error."""

    def __init__(self, executor_id: int, collection: Any) -> None:
        self.id = executor_id
        self.collection = collection
        self.error: Exception | None = None

    def run(self, batches: queue.Queue) -> None:
        """Consume batches until a ``None`` item arrives."""
        while True:
            docs = batches.get()
            try:
                if docs is None:
                    return
                if self.error is None:
                    self._do_sync(docs)
            finally:
                batches.task_done()

    def _do_sync(self, docs: Sequence[bytes | RawBSONDocument]) -> None:
        try:
            self.collection.insert_many([_as_raw(doc) for doc in docs])
        except Exception as exc:  # recorded and reported by the owning executor
            name = getattr(self.collection, "full_name", "")
            self.error = DocSyncError(
                f"Insert {len(docs)} docs into ns {name} of dest mongo failed. {exc}"
            )


class CollectionExecutor:
    """Spreads document batches over several inserting threads."""

    def __init__(
        self,
        executor_id: int,
        mongo_url: str,
        ns: NS,
        parallel: int,
        connect: Callable[[str], Any] | None = None,
    ) -> None:
        self.id = executor_id
        self.mongo_url = mongo_url
        self.ns = ns
        self.parallel = parallel
        self._connect = connect or _default_connect
        self.executors: list[DocExecutor] = []
        self._threads: list[threading.Thread] = []
        self._batches: queue.Queue | None = None
        self._conn: Any = None

    def start(self) -> None:
        """Connect to the destination and start the inserting threads."""
        if self.parallel < 1:
            raise ValueError(f"document parallel should be positive, got {self.parallel}")
        self._conn = self._connect(self.mongo_url)
        collection = self._conn.client[self.ns.database][self.ns.collection]
        self._batches = queue.Queue(maxsize=self.parallel)
        for _ in range(self.parallel):
            executor = DocExecutor(generate_doc_executor_id(), collection)
            thread = threading.Thread(
                target=executor.run,
                args=(self._batches,),
                name=f"doc-executor-{executor.id}",
                daemon=True,
            )
            thread.start()
            self.executors.append(executor)
            self._threads.append(thread)

    def sync(self, docs: Sequence[bytes | RawBSONDocument]) -> None:
        """Queue a batch of raw documents; empty batches are ignored."""
        if not docs:
            return
        if self._batches is None:
            raise RuntimeError("collection executor is not started")
        self._batches.put(list(docs))

    def wait(self) -> None:
        """Wait until every queued batch is written, then stop the threads."""
        if self._batches is None:
            raise RuntimeError("collection executor is not started")
        self._batches.join()
        for _ in self._threads:
            self._batches.put(None)
        for thread in self._threads:
            thread.join()
        self._threads = []
        self._batches = None
        if self._conn is not None:
            self._conn.close()
            self._conn = None

        for executor in self.executors:
            if executor.error is not None:
                raise DocSyncError(
                    f"sync ns {self.ns} failed. {executor.error}"
                ) from executor.error