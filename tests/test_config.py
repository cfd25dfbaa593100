import pytest

from oplogsync.config import Configuration


def test_defaults():
    config = Configuration()
    assert config.mongo_urls == []
    assert config.worker_num == 0
    assert config.is_shard_cluster() is False


def test_from_mapping_converts_types():
    config = Configuration.from_mapping(
        {
            "mongo_urls": "mongodb://a:1;mongodb://b:2",
            "collector.id": "collector",
            "worker": "8",
            "log_buffer": "true",
            "replayer.dml_only": False,
            "tunnel.address": ["mongodb://c:3"],
            "checkpoint.interval": 5000,
        }
    )
    assert config.mongo_urls == ["mongodb://a:1", "mongodb://b:2"]
    assert config.collector_id == "collector"
    assert config.worker_num == 8
    assert config.log_buffer is True
    assert config.replayer_dml_only is False
    assert config.tunnel_address == ["mongodb://c:3"]
    assert config.checkpoint_interval == 5000
    assert config.is_shard_cluster() is True


def test_single_source_is_not_shard_cluster():
    config = Configuration.from_mapping({"mongo_urls": "mongodb://a:1"})
    assert config.is_shard_cluster() is False


def test_date_option():
    config = Configuration.from_mapping({"context.start_position": "1970-01-01T00:00:10Z"})
    assert config.context_start_position == 10


def test_date_option_rejects_bad_format():
    with pytest.raises(ValueError):
        Configuration.from_mapping({"context.start_position": "yesterday"})


def test_bad_bool_and_int():
    with pytest.raises(ValueError):
        Configuration.from_mapping({"dbref": "maybe"})
    with pytest.raises(ValueError):
        Configuration.from_mapping({"worker": "many"})


def test_unknown_keys_are_ignored():
    config = Configuration.from_mapping({"unknown.key": "x", "sync_mode": "oplog"})
    assert config.sync_mode == "oplog"
    assert config == Configuration(sync_mode="oplog")