import bson
import pytest
from bson import Timestamp
from bson.raw_bson import RawBSONDocument
from pymongo.errors import PyMongoError

from oplogsync.oplog_reader import (
    CollectionCappedError,
    GidOplogReader,
    OplogReader,
    ReaderTimeoutError,
    is_collection_capped_error,
)


class FakeCursor:
    def __init__(self, docs):
        self._docs = [RawBSONDocument(bson.encode(d)) for d in docs]

    @property
    def alive(self):
        return bool(self._docs)

    def max_await_time_ms(self, value):
        return self

    def __iter__(self):
        return self

    def __next__(self):
        if not self._docs:
            raise StopIteration
        return self._docs.pop(0)

    def close(self):
        self._docs = []


class FakeOplog:
    def __init__(self, docs):
        self.docs = docs
        self.queries = []

    def with_options(self, **kwargs):
        return self

    def find_one(self, query, sort=None):
        if not self.docs:
            return None
        return self.docs[-1] if sort else self.docs[0]

    def find(self, query, **kwargs):
        self.queries.append(query)
        docs = self.docs if len(self.queries) == 1 else []
        return FakeCursor(docs)


class FakeClient:
    def __init__(self, oplog):
        self.oplog = oplog

    def __getitem__(self, name):
        return {"oplog.rs": self.oplog}


class FakeConn:
    def __init__(self, oplog):
        self.client = FakeClient(oplog)
        self.closed = False

    def is_good(self):
        return True

    def close(self):
        self.closed = True


DOCS = [
    {"ts": Timestamp(10, 1), "op": "i", "ns": "a.b", "o": {"_id": 1}},
    {"ts": Timestamp(10, 2), "op": "u", "ns": "a.b", "o": {"_id": 1}},
]


@pytest.mark.parametrize(
    "message, expected",
    [
        ("CollectionScan died due to position in capped collection", True),
        ("UnknownError: something", True),
        ("network timeout", False),
    ],
)
def test_is_collection_capped_error(message, expected):
    assert is_collection_capped_error(message) is expected


def test_set_on_empty_keeps_first_value():
    reader = OplogReader("mongodb://localhost")
    reader.set_query_timestamp_on_empty(1 << 32)
    reader.set_query_timestamp_on_empty(5 << 32)
    assert reader.query == {"ts": {"$gt": Timestamp(1, 0)}}


def test_update_overrides_timestamp():
    reader = OplogReader("mongodb://localhost")
    reader.set_query_timestamp_on_empty(1 << 32)
    reader.update_query_timestamp((7 << 32) | 3)
    assert reader.query == {"ts": {"$gt": Timestamp(7, 3)}}


def test_gid_in_query():
    reader = GidOplogReader("mongodb://localhost")
    reader.set_query_gid("gid-one")
    reader.update_query_timestamp(1 << 32)
    assert reader.query["g"] == "gid-one"


def test_next_times_out_without_fetcher():
    reader = OplogReader("mongodb://localhost", buffer_time=0.05)
    with pytest.raises(ReaderTimeoutError):
        reader.next()


def test_reads_entries_then_reports_capped():
    oplog = FakeOplog(DOCS)
    conn = FakeConn(oplog)
    reader = OplogReader("mongodb://localhost", buffer_time=2, connect=lambda url: conn)
    reader.set_query_timestamp_on_empty(1 << 32)
    reader.start_fetcher()
    try:
        first = reader.next_oplog()
        second = reader.next()
        with pytest.raises(ReaderTimeoutError):
            reader.next()
        with pytest.raises(CollectionCappedError):
            reader.next()
    finally:
        reader.stop()
    assert first.parsed.namespace == "a.b"
    assert first.parsed.operation == "i"
    assert first.parsed.timestamp == (10 << 32) | 1
    assert bson.decode(second)["op"] == "u"
    assert oplog.queries[0] == {"ts": {"$gt": Timestamp(1, 0)}}
    assert conn.closed is True


def test_gid_query_reaches_collection():
    oplog = FakeOplog(DOCS)
    reader = GidOplogReader("mongodb://localhost", buffer_time=2, connect=lambda url: FakeConn(oplog))
    reader.set_query_gid("gid-one")
    reader.set_query_timestamp_on_empty(1 << 32)
    reader.start_fetcher()
    try:
        reader.next()
    finally:
        reader.stop()
    assert oplog.queries[0]["g"] == "gid-one"


def test_connection_failure_is_reported():
    def refuse(url):
        raise PyMongoError("refused")

    reader = OplogReader("mongodb://localhost", buffer_time=2, connect=refuse)
    reader.set_query_timestamp_on_empty(1 << 32)
    reader.start_fetcher()
    try:
        with pytest.raises(ConnectionError, match="reconnect mongo instance"):
            reader.next()
    finally:
        reader.stop()


def test_missing_query_timestamp_is_reported():
    reader = OplogReader("mongodb://localhost", buffer_time=2, connect=lambda url: FakeConn(FakeOplog(DOCS)))
    reader.start_fetcher()
    try:
        with pytest.raises(ValueError):
            reader.next()
    finally:
        reader.stop()