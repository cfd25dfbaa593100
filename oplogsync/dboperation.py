"""MongoDB helpers: server version, oplog timestamps and DBRef ordering."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, MutableMapping

from bson import Timestamp
from bson.son import SON

from .dbpool import OPLOG_NS, MongoConn
from .util import LOGGER_NAME

QUERY_TS = "ts"
LOCAL_DB = "local"

DBREF_REF = "$ref"
DBREF_ID = "$id"
DBREF_DB = "$db"

MAX_INT64 = 2**63 - 1

logger = logging.getLogger(LOGGER_NAME)


@dataclass
class MongoSource:
    """One source deployment to replicate from."""

    url: str
    replica_name: str = ""
    gid: str = ""


@dataclass
class TimestampNode:
    """The oldest and newest oplog timestamps of one replica set."""

    oldest: int
    newest: int


def _to_int64(ts: Any) -> int:
    if isinstance(ts, Timestamp):
        return (ts.time << 32) | ts.inc
    if isinstance(ts, int) and not isinstance(ts, bool):
        return ts
    raise TypeError(f"oplog timestamp has unexpected type: {ts!r}")


def get_db_version(client: Any) -> str:
    """Return the server version string, such as ``"3.0.1"``."""
    result = client["admin"].command("buildInfo")
    if "version" not in result:
        raise LookupError("version not found")
    version = result["version"]
    if not isinstance(version, str):
        raise TypeError(f"version type assertion error[{version!r}]")
    return version


def compare_version(version: str, threshold: str) -> bool:
    """Whether ``version`` is at least ``threshold`` on its major and minor parts.

    Versions with fewer than two parts never compare as new enough.
    """
    version_parts = version.split(".")
    threshold_parts = threshold.split(".")
    if len(version_parts) < 2 or len(threshold_parts) < 2:
        return False
    for mine, theirs in zip(version_parts[:2], threshold_parts[:2]):
        try:
            mine_value, theirs_value = int(mine), int(theirs)
        except ValueError:
            raise ValueError(f"cannot compare version {version!r} with {threshold!r}") from None
        if mine_value > theirs_value:
            return True
        if mine_value < theirs_value:
            return False
    return True


def get_and_compare_version(client: Any, threshold: str) -> bool:
    """Whether the server behind ``client`` is at least ``threshold``."""
    return compare_version(get_db_version(client), threshold)


def apply_ops_filter(key: str) -> bool:
    """Whether a key must be dropped from applyOps commands."""
    return key.strip() == DBREF_DB


def _oplog_timestamp(client: Any, newest: bool) -> int:
    collection = client[LOCAL_DB][OPLOG_NS]
    if newest:
        document = collection.find_one({}, sort=[("$natural", -1)])
    else:
        document = collection.find_one({})
    if document is None:
        raise LookupError("not found")
    return _to_int64(document[QUERY_TS])


def get_newest_timestamp(client: Any) -> int:
    """Timestamp of the newest oplog entry, as a 64-bit integer."""
    return _oplog_timestamp(client, newest=True)


def get_oldest_timestamp(client: Any) -> int:
    """Timestamp of the oldest oplog entry, as a 64-bit integer."""
    return _oplog_timestamp(client, newest=False)


def get_newest_timestamp_by_url(url: str) -> int:
    with MongoConn(url, False, True) as conn:
        return get_newest_timestamp(conn.client)


def get_oldest_timestamp_by_url(url: str) -> int:
    with MongoConn(url, False, True) as conn:
        return get_oldest_timestamp(conn.client)


def get_all_timestamp(
    sources: Iterable[MongoSource],
) -> tuple[dict[str, TimestampNode], int, int]:
    """Collect oplog bounds of every source.

    Returns the map by replica set name, the biggest newest timestamp and the
    smallest newest timestamp.
    """
    smallest = MAX_INT64
    biggest = 0
    ts_map: dict[str, TimestampNode] = {}
    for source in sources:
        newest = get_newest_timestamp_by_url(source.url)
        oldest = get_oldest_timestamp_by_url(source.url)
        ts_map[source.replica_name] = TimestampNode(oldest=oldest, newest=newest)
        biggest = max(biggest, newest)
        smallest = min(smallest, newest)
    return ts_map, biggest, smallest


def has_dbref(obj: Any) -> bool:
    """Whether a sub-document holds both ``$ref`` and ``$id``."""
    return isinstance(obj, MutableMapping) and DBREF_REF in obj and DBREF_ID in obj


def sort_dbref(obj: MutableMapping[str, Any]) -> SON:
    """Return an ordered copy with ``$ref``, ``$id``, ``$db`` first, then the rest."""
    output = SON([(DBREF_REF, obj.get(DBREF_REF))])
    if DBREF_ID in obj:
        output[DBREF_ID] = obj[DBREF_ID]
    if DBREF_DB in obj:
        output[DBREF_DB] = obj[DBREF_DB]
    for key, value in obj.items():
        if key not in (DBREF_REF, DBREF_ID, DBREF_DB):
            output[key] = value
    return output


def _reorder_dbrefs(document: MutableMapping[str, Any]) -> None:
    for key, value in list(document.items()):
        if isinstance(value, MutableMapping):
            _reorder_dbrefs(value)
            if has_dbref(value):
                document[key] = sort_dbref(value)


def adjust_dbref(document: MutableMapping[str, Any], dbref: bool) -> MutableMapping[str, Any]:
    """Put DBRef keys in canonical order throughout ``document`` when ``dbref`` is set.

    The document is changed in place and returned.
    """
    if dbref:
        _reorder_dbrefs(document)
    return document