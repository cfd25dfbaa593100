"""Tailing reader of a MongoDB oplog, fed by a background fetcher thread."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable

import bson
from bson import Timestamp
from bson.codec_options import CodecOptions
from bson.raw_bson import RawBSONDocument
from pymongo import CursorType
from pymongo.errors import PyMongoError

from .dbpool import OPLOG_NS, MongoConn
from .dboperation import get_newest_timestamp, get_oldest_timestamp
from .filters import GenericOplog, PartialLog
from .util import LOGGER_NAME

QUERY_TS = "ts"
QUERY_GID = "g"
QUERY_OP_GT = "$gt"
LOCAL_DB = "local"

TAIL_TIMEOUT_MS = 7000
OPLOG_BATCH_SIZE = 8192

COLLECTION_CAPPED = "CollectionScan died due to position in capped"
COLLECTION_CAPPED_LOW_VERSION = "UnknownError"

_PUT_POLL_SECONDS = 0.1
_RAW_OPTIONS = CodecOptions(document_class=RawBSONDocument)

logger = logging.getLogger(LOGGER_NAME)


class ReaderTimeoutError(TimeoutError):
    """No oplog arrived within the reader's buffer time."""

    def __init__(self, message: str = "read next log timeout, It shouldn't be happen") -> None:
        super().__init__(message)


class CollectionCappedError(RuntimeError):
    """The read position fell off the capped oplog collection."""

    def __init__(self, message: str = "collection capped error") -> None:
        super().__init__(message)


def is_collection_capped_error(message: str) -> bool:
    return COLLECTION_CAPPED in message or COLLECTION_CAPPED_LOW_VERSION in message


def _default_connect(url: str) -> MongoConn:
    return MongoConn(url, False, True)


def _safe_timestamp(reader: Callable[[Any], int], client: Any) -> int:
    try:
        return reader(client)
    except (PyMongoError, LookupError, TypeError):
        return 0


class OplogReader:
    """Reads oplog entries newer than the query timestamp from one source."""

    def __init__(
        self,
        src: str,
        buffer_time: float = 1,
        connect: Callable[[str], Any] | None = None,
    ) -> None:
        self.src = src
        self.buffer_time = buffer_time
        self._connect = connect or _default_connect
        self._query_ts: int | None = None
        self._gid: str | None = None
        self._queue: queue.Queue[tuple[bytes | None, Exception | None]] = queue.Queue(maxsize=1)
        self._fetcher_lock = threading.Lock()
        self._fetcher: threading.Thread | None = None
        self._stop = threading.Event()
        self._conn: Any = None
        self._cursor: Any = None
        self._first_read = True

    @property
    def query(self) -> dict[str, Any]:
        """The filter used on the oplog collection."""
        result: dict[str, Any] = {}
        if self._query_ts is not None:
            ts = self._query_ts
            result[QUERY_TS] = {QUERY_OP_GT: Timestamp(ts >> 32, ts & 0xFFFFFFFF)}
        if self._gid is not None:
            result[QUERY_GID] = self._gid
        return result

    def set_query_timestamp_on_empty(self, ts: int) -> None:
        """Set the start timestamp unless one is set already."""
        if self._query_ts is None:
            self.update_query_timestamp(ts)

    def update_query_timestamp(self, ts: int) -> None:
        self._query_ts = ts

    def next(self) -> bytes:
        """Return the next oplog entry as raw BSON."""
        try:
            raw, error = self._queue.get(timeout=self.buffer_time)
        except queue.Empty:
            raise ReaderTimeoutError() from None
        if error is not None:
            raise error
        assert raw is not None
        return raw

    def next_oplog(self) -> GenericOplog:
        """Return the next oplog entry with its parsed fields."""
        raw = self.next()
        return GenericOplog(raw=raw, parsed=PartialLog.from_document(bson.decode(raw)))

    def start_fetcher(self) -> None:
        """Start the background fetcher once."""
        if self._fetcher is not None:
            return
        with self._fetcher_lock:
            if self._fetcher is None:
                self._stop.clear()
                self._fetcher = threading.Thread(
                    target=self._fetch_loop, name=f"oplog-fetcher-{self.src}", daemon=True
                )
                self._fetcher.start()

    def stop(self) -> None:
        """Stop the fetcher and close the connection."""
        self._stop.set()
        with self._fetcher_lock:
            fetcher, self._fetcher = self._fetcher, None
        if fetcher is not None:
            fetcher.join()
        self._release_cursor()
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _emit(self, item: tuple[bytes | None, Exception | None]) -> None:
        while not self._stop.is_set():
            try:
                self._queue.put(item, timeout=_PUT_POLL_SECONDS)
                return
            except queue.Full:
                continue

    def _fetch_loop(self) -> None:
        while not self._stop.is_set():
            self._emit(self._fetch_one())

    def _fetch_one(self) -> tuple[bytes | None, Exception | None]:
        try:
            self._ensure_network()
        except (OSError, RuntimeError, ValueError, PyMongoError) as exc:
            return None, exc

        try:
            document = next(self._cursor)
        except StopIteration:
            if not getattr(self._cursor, "alive", False):
                self._release_cursor()
            return None, ReaderTimeoutError()
        except PyMongoError as exc:
            self._release_cursor()
            if is_collection_capped_error(str(exc)):
                logger.error("oplog collection capped may happen: %s", exc)
                return None, CollectionCappedError()
            return None, RuntimeError(f"get next oplog failed. release oplogsIterator, {exc}")
        return document.raw, None

    def _ensure_network(self) -> None:
        if self._cursor is not None:
            return
        if self._conn is None or not self._conn.is_good():
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            try:
                self._conn = self._connect(self.src)
            except PyMongoError as exc:
                raise ConnectionError(
                    f"reconnect mongo instance [{self.src}] error. {exc}"
                ) from exc

        if self._query_ts is None:
            raise ValueError("oplog query timestamp is not set")
        query_ts = self._query_ts
        client = self._conn.client

        if self._first_read:
            newest = _safe_timestamp(get_newest_timestamp, client)
            if newest < query_ts:
                logger.warning(
                    "current starting point[%d] is bigger than the newest timestamp[%d]",
                    query_ts,
                    newest,
                )

        oldest = _safe_timestamp(get_oldest_timestamp, client)
        if oldest > query_ts and not self._first_read:
            raise CollectionCappedError()
        self._first_read = False

        collection = client[LOCAL_DB][OPLOG_NS].with_options(codec_options=_RAW_OPTIONS)
        cursor = collection.find(
            self.query,
            cursor_type=CursorType.TAILABLE_AWAIT,
            oplog_replay=True,
            batch_size=OPLOG_BATCH_SIZE,
        )
        self._cursor = cursor.max_await_time_ms(TAIL_TIMEOUT_MS)

    def _release_cursor(self) -> None:
        cursor, self._cursor = self._cursor, None
        close = getattr(cursor, "close", None)
        if close is not None:
            close()


class GidOplogReader(OplogReader):
    """Oplog reader restricted to entries of one global id."""

    def set_query_gid(self, gid: str) -> None:
        self._gid = gid