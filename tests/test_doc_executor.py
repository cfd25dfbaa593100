import queue

import bson
import pytest
from pymongo.errors import OperationFailure

from oplogsync.dbpool import NS
from oplogsync.doc_executor import (
    CollectionExecutor,
    DocExecutor,
    DocSyncError,
    generate_coll_executor_id,
    generate_doc_executor_id,
)


class FakeCollection:
    def __init__(self, fail=False):
        self.fail = fail
        self.inserted = []
        self.full_name = "db.coll"

    def insert_many(self, docs):
        if self.fail:
            raise OperationFailure("boom")
        self.inserted.extend(bson.decode(doc.raw) for doc in docs)


class FakeDatabase:
    def __init__(self, collection):
        self.collection = collection

    def __getitem__(self, name):
        return self.collection


class FakeClient:
    def __init__(self, collection):
        self.collection = collection

    def __getitem__(self, name):
        return FakeDatabase(self.collection)


class FakeConn:
    def __init__(self, collection):
        self.client = FakeClient(collection)
        self.closed = False

    def close(self):
        self.closed = True


def _docs(*ids):
    return [bson.encode({"_id": i}) for i in ids]


def test_coll_executor_ids_increase_by_one():
    first = generate_coll_executor_id()
    second = generate_coll_executor_id()
    assert second == first + 1


def test_doc_executor_ids_increase_by_one():
    first = generate_doc_executor_id()
    second = generate_doc_executor_id()
    assert second == first + 1


def test_collection_executor_inserts_all_batches_and_closes():
    collection = FakeCollection()
    conn = FakeConn(collection)
    executor = CollectionExecutor(1, "mongodb://localhost", NS("db", "coll"), 3,
                                  connect=lambda url: conn)
    executor.start()
    executor.sync(_docs(1, 2))
    executor.sync(_docs(3))
    executor.sync(_docs(4, 5, 6))
    executor.wait()
    assert sorted(doc["_id"] for doc in collection.inserted) == [1, 2, 3, 4, 5, 6]
    assert conn.closed is True
    assert len(executor.executors) == 3


def test_empty_batch_is_ignored():
    collection = FakeCollection()
    conn = FakeConn(collection)
    executor = CollectionExecutor(2, "mongodb://localhost", NS("db", "coll"), 1,
                                  connect=lambda url: conn)
    executor.start()
    executor.sync([])
    executor.wait()
    assert collection.inserted == []
    assert len(executor.executors) == 1
    assert all(doc_executor.error is None for doc_executor in executor.executors)


def test_insert_failure_is_reported_on_wait():
    collection = FakeCollection(fail=True)
    conn = FakeConn(collection)
    executor = CollectionExecutor(3, "mongodb://localhost", NS("db", "coll"), 2,
                                  connect=lambda url: conn)
    executor.start()
    executor.sync(_docs(1))
    with pytest.raises(DocSyncError, match="sync ns"):
        executor.wait()
    assert conn.closed is True


def test_sync_before_start_raises():
    executor = CollectionExecutor(4, "mongodb://localhost", NS("db", "coll"), 1,
                                  connect=lambda url: FakeConn(FakeCollection()))
    with pytest.raises(RuntimeError):
        executor.sync(_docs(1))


def test_start_with_no_parallelism_raises():
    executor = CollectionExecutor(5, "mongodb://localhost", NS("db", "coll"), 0,
                                  connect=lambda url: FakeConn(FakeCollection()))
    with pytest.raises(ValueError):
        executor.start()


def test_doc_executor_run_consumes_until_sentinel():
    collection = FakeCollection()
    batches = queue.Queue()
    batches.put(_docs(7, 8))
    batches.put(None)
    executor = DocExecutor(9, collection)
    executor.run(batches)
    assert [doc["_id"] for doc in collection.inserted] == [7, 8]
    assert executor.error is None
    assert batches.unfinished_tasks == 0


def test_doc_executor_skips_after_error():
    collection = FakeCollection(fail=True)
    batches = queue.Queue()
    batches.put(_docs(1))
    batches.put(_docs(2))
    batches.put(None)
    executor = DocExecutor(10, collection)
    executor.run(batches)
    assert isinstance(executor.error, DocSyncError)
    assert "db.coll" in str(executor.error)