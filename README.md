# oplogsync

`oplogsync` is a library of building blocks for replicating MongoDB data from
a source deployment to a destination. It reads configuration, tails the
source `local.oplog.rs` in a background thread, filters oplog entries and
namespaces, renames databases and collections, stores replication
checkpoints in MongoDB or behind an HTTP endpoint, inserts document batches
in parallel, and keeps replication counters.

## Installation

```
pip install oplogsync
```

For running the test suite:

```
pip install "oplogsync[test]"
pytest
```

## Modules

- `oplogsync.config` – `Configuration`, a dataclass of all collector
  options. `Configuration.from_mapping(values)` builds it from
  configuration-file keys such as `mongo_urls`, `worker` or
  `context.start_position`; unknown keys are ignored. List options accept a
  `;`-separated string, and `context.start_position` accepts a date of the
  form `2006-01-02T15:04:05Z` (UTC) or unix seconds.
  `is_shard_cluster()` is true when more than one URL is configured.
- `oplogsync.filters` – `PartialLog` and `GenericOplog` (the parsed and raw
  forms of an oplog entry), the filters `GidFilter`, `AutologousFilter`,
  `NoopFilter`, `DDLFilter`, `MigrateFilter`, `NamespaceFilter`, the chains
  `OplogFilterChain` and `DocFilterChain`, `convert_to_rule` and
  `new_doc_filter_list`.
- `oplogsync.transform` – `NamespaceTransform` and `DBTransform` for
  renaming on the way to the destination, `transform_dbref` for rewriting
  DBRef values, and `TransformRuleError` for malformed rules.
- `oplogsync.dbpool` – `NS`, a `database.collection` pair, and `MongoConn`,
  a pinged `MongoClient` wrapper (usable as a context manager) with
  `is_good`, `acquire_replica_set_name`, `has_oplog_ns` and
  `has_unique_index`.
- `oplogsync.dboperation` – `MongoSource`, `TimestampNode`, server version
  helpers (`get_db_version`, `compare_version`, `get_and_compare_version`),
  oplog bounds (`get_newest_timestamp`, `get_oldest_timestamp`, their
  `_by_url` variants and `get_all_timestamp`), `apply_ops_filter`, and DBRef
  ordering (`adjust_dbref`, `has_dbref`, `sort_dbref`).
- `oplogsync.oplog_reader` – `OplogReader` and `GidOplogReader`, with
  `ReaderTimeoutError`, `CollectionCappedError` and
  `is_collection_capped_error`.
- `oplogsync.ckpt` – `CheckpointManager` over a `MongoCheckpoint` or
  `HttpApiCheckpoint` store, `CheckpointContext` and `CheckpointError`.
- `oplogsync.doc_executor` – `CollectionExecutor` and `DocExecutor` for
  inserting raw BSON batches from several threads, `DocSyncError`, and the
  id generators `generate_coll_executor_id` / `generate_doc_executor_id`.
- `oplogsync.metric` – `ReplicationMetric` counters with a background
  reporter (`start`/`stop` or a `with` block), `ReplicationStatus`,
  `TableOps`, `MetricDelta`, `Subscribe` flags and `format_traffic`.
- `oplogsync.util` – `RunStatus` and `run_status_message`, logging setup
  (`initial_logger`, `parse_log_level`), `extract_mongo_timestamp`,
  `timestamp_to_string`, `ElapsedTask`, `OpsCounter`, `has_duplicated`,
  `maybe_random`, `mkdirs`, and pid lock files (`write_pid`,
  `write_pid_by_id`).

Timestamps are MongoDB timestamps held as 64-bit integers: the upper 32
bits are seconds, so `extract_mongo_timestamp(ts)` returns `ts >> 32`.

## Examples

Configuration:

```python
from oplogsync.config import Configuration

options = Configuration.from_mapping({
    "mongo_urls": "mongodb://localhost:27017;mongodb://localhost:27018",
    "worker": "2",
    "context.start_position": "2020-01-01T00:00:00Z",
})
options.mongo_urls          # ['mongodb://localhost:27017', 'mongodb://localhost:27018']
options.is_shard_cluster()  # True
```

Renaming namespaces:

```python
from oplogsync.transform import NamespaceTransform, DBTransform

trans = NamespaceTransform(["fromDB1:toDB1", "fromDB2.fromCol2:toDB2.toCol2"])
trans.transform("fromDB1.fromCol1")   # "toDB1.fromCol1"
trans.transform("fromDB2.fromCol2")   # "toDB2.toCol2"
trans.transform("fromDB2")            # "fromDB2"

DBTransform(["fromDB1:toDB1", "fromDB1.fromCol1:toDB2.toCol2"]).transform("fromDB1")
# ["toDB1", "toDB2"]
```

Filtering oplog entries:

```python
from oplogsync.filters import (
    AutologousFilter, DDLFilter, NamespaceFilter, NoopFilter,
    OplogFilterChain, PartialLog,
)

ns_filter = NamespaceFilter(["gogo.test1", "gogo.test2"], [])
ns_filter.filter(PartialLog(namespace="gogo.test1", operation="i"))  # False: kept
ns_filter.filter(PartialLog(namespace="other.coll", operation="i"))  # True: dropped

chain = OplogFilterChain([AutologousFilter(), NoopFilter()])
chain.iterate_filter(PartialLog(namespace="admin.users", operation="i"))  # True
DDLFilter().filter(PartialLog(namespace="a.$cmd", operation="c"))         # True
```

Ordering DBRef keys:

```python
from oplogsync.dboperation import adjust_dbref

doc = {"user": {"$db": "shop", "$id": 7, "$ref": "users"}}
adjust_dbref(doc, True)
list(doc["user"].keys())   # ['$ref', '$id', '$db']
```

Tailing an oplog:

```python
from oplogsync.oplog_reader import OplogReader, ReaderTimeoutError

reader = OplogReader("mongodb://localhost:27017", buffer_time=1)
reader.set_query_timestamp_on_empty(start_ts)
reader.start_fetcher()
try:
    entry = reader.next_oplog()   # GenericOplog with .raw and .parsed
except ReaderTimeoutError:
    pass
finally:
    reader.stop()
```

Checkpoints:

```python
from oplogsync.ckpt import CheckpointManager

manager = CheckpointManager("rs0", 0, options)  # context.storage "database" or "api"
context = manager.get()        # raises CheckpointError when storage is unreachable
manager.update(context.timestamp + 1)
```

Parallel inserts:

```python
from oplogsync.dbpool import NS
from oplogsync.doc_executor import CollectionExecutor

executor = CollectionExecutor(0, "mongodb://localhost:27017", NS("db", "coll"), parallel=4)
executor.start()
executor.sync(raw_bson_documents)
executor.wait()                # raises DocSyncError if any insert failed
```

## What the package does not do

`oplogsync` is a library only; it has no command to run and no HTTP API.
It provides the pieces listed above but not the pipeline that joins them:
there is no batching of parsed entries into worker queues, no worker that
sends batches to a destination and tracks acknowledgements, no calculation
of a checkpoint from worker acknowledgements, no run-time switches such as
pause, and no orchestration of a full document copy (listing namespaces,
reading collections, dropping destination collections, syncing shard
settings and indexes). Callers assemble those steps themselves from
`OplogReader`, the filters, `NamespaceTransform`, `CheckpointManager` and
`CollectionExecutor`.