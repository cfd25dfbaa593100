import pytest
from bson import Timestamp
from bson.son import SON

from oplogsync.dboperation import (
    MAX_INT64,
    MongoSource,
    adjust_dbref,
    apply_ops_filter,
    compare_version,
    get_all_timestamp,
    get_and_compare_version,
    get_db_version,
    get_newest_timestamp,
    get_oldest_timestamp,
    has_dbref,
    sort_dbref,
)


class _FakeAdmin:
    def __init__(self, reply):
        self.reply = reply

    def command(self, name):
        assert name == "buildInfo"
        return self.reply


class _FakeOplog:
    def __init__(self, docs):
        self.docs = docs

    def find_one(self, query=None, sort=None):
        if not self.docs:
            return None
        if sort == [("$natural", -1)]:
            return self.docs[-1]
        return self.docs[0]


def _oplog_client(docs):
    return {"local": {"oplog.rs": _FakeOplog(docs)}}


def test_adjust_dbref_plain_document():
    document = {"a": 1}
    output = adjust_dbref(document, True)
    assert output == {"a": 1}
    assert output is document


def test_adjust_dbref_empty_document():
    assert adjust_dbref({}, True) == {}


def test_adjust_dbref_disabled_keeps_order():
    document = {"a": {"$db": "xxx", "$id": "1234", "$ref": "a.b"}}
    output = adjust_dbref(document, False)
    assert list(output["a"].keys()) == ["$db", "$id", "$ref"]


def test_adjust_dbref_single():
    document = {"a": {"$db": "xxx", "$id": 1234, "$ref": "a.b"}}
    output = adjust_dbref(document, True)
    assert list(output["a"].items()) == [("$ref", "a.b"), ("$id", 1234), ("$db", "xxx")]


def test_adjust_dbref_nested():
    document = {
        "a": {"$db": "xxx", "$id": 1234, "$ref": "a.b"},
        "b": {
            "c": {"$id": 5678, "$db": "yyy", "$ref": "c.d"},
            "d": "hello-world",
            "e": {"$id": 910, "$db": "zzz", "$ref": "e.f"},
            "f": 1,
        },
    }
    output = adjust_dbref(document, True)
    assert list(output["a"].items()) == [("$ref", "a.b"), ("$id", 1234), ("$db", "xxx")]
    assert output["b"]["d"] == "hello-world"
    assert output["b"]["f"] == 1
    assert list(output["b"]["c"].items()) == [("$ref", "c.d"), ("$id", 5678), ("$db", "yyy")]
    assert list(output["b"]["e"].items()) == [("$ref", "e.f"), ("$id", 910), ("$db", "zzz")]


def test_adjust_dbref_inside_ordered_document():
    document = {
        "p": SON(
            [
                ("x", {"$id": 10, "$db": "zzz", "$ref": "www", "others": "aaa", "fuck": "hello"}),
                ("y", {"$id": 20, "$db": "po", "$ref": "po2", "others": "bbb", "fuck": "world"}),
            ]
        )
    }
    output = adjust_dbref(document, True)
    assert list(output["p"].keys())[0] == "x"
    assert list(output["p"]["x"].items()) == [
        ("$ref", "www"),
        ("$id", 10),
        ("$db", "zzz"),
        ("others", "aaa"),
        ("fuck", "hello"),
    ]


def test_adjust_dbref_oplog_object():
    entry = {
        "ts": 1560588963,
        "t": 8,
        "op": "u",
        "ns": "test.zzz",
        "o2": {"_id": "5d04b02c27d5888ce0224fc8"},
        "o": {
            "_id": "5d04b02c27d5888ce0224fc8",
            "b": 7,
            "user": {"$ref": "xxx", "$id": "40b6d79e507b2c613615f15d"},
        },
    }
    output = adjust_dbref(entry["o"], True)
    assert list(output["user"].items()) == [("$ref", "xxx"), ("$id", "40b6d79e507b2c613615f15d")]


def test_has_dbref_requires_ref_and_id():
    assert has_dbref({"$ref": "a", "$id": 1})
    assert not has_dbref({"$ref": "a"})
    assert not has_dbref({"$id": 1})


def test_sort_dbref_keeps_all_keys():
    source = {"z": 1, "$db": "d", "$id": 2, "$ref": "r"}
    result = sort_dbref(source)
    assert list(result.keys()) == ["$ref", "$id", "$db", "z"]
    assert dict(result) == source


def test_apply_ops_filter():
    assert apply_ops_filter("$db")
    assert apply_ops_filter("  $db ")
    assert not apply_ops_filter("$ref")


@pytest.mark.parametrize(
    "version, threshold, expected",
    [
        ("3.0.1", "3.0", True),
        ("4.2.0", "3.6", True),
        ("3.4.1", "3.6", False),
        ("3.6", "3.6.5", True),
        ("3", "3.0", False),
    ],
)
def test_compare_version(version, threshold, expected):
    assert compare_version(version, threshold) is expected


def test_compare_version_rejects_non_numeric():
    with pytest.raises(ValueError):
        compare_version("a.b", "3.0")


def test_get_db_version_and_compare():
    client = {"admin": _FakeAdmin({"version": "4.0.3"})}
    assert get_db_version(client) == "4.0.3"
    assert get_and_compare_version(client, "3.6") is True


def test_get_db_version_missing():
    with pytest.raises(LookupError):
        get_db_version({"admin": _FakeAdmin({})})


def test_get_db_version_wrong_type():
    with pytest.raises(TypeError):
        get_db_version({"admin": _FakeAdmin({"version": 4})})


def test_oplog_timestamps():
    client = _oplog_client([{"ts": Timestamp(10, 1)}, {"ts": Timestamp(20, 3)}])
    assert get_oldest_timestamp(client) == (10 << 32) | 1
    assert get_newest_timestamp(client) == (20 << 32) | 3


def test_oplog_timestamps_empty_oplog():
    with pytest.raises(LookupError):
        get_newest_timestamp(_oplog_client([]))


def test_get_all_timestamp_without_sources():
    ts_map, biggest, smallest = get_all_timestamp([])
    assert ts_map == {}
    assert biggest == 0
    assert smallest == MAX_INT64


def test_mongo_source_defaults():
    source = MongoSource(url="mongodb://localhost:27017")
    assert (source.replica_name, source.gid) == ("", "")