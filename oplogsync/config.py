"""Collector configuration."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Mapping

DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
LIST_SEPARATOR = ";"

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off", ""}


def _opt(key: str, kind: str, default: Any = None) -> Any:
    metadata = {"key": key, "kind": kind}
    if kind == "list":
        return field(default_factory=list, metadata=metadata)
    return field(default=default, metadata=metadata)


def _to_list(key: str, value: Any) -> list[str]:
    if isinstance(value, str):
        return [item.strip() for item in value.split(LIST_SEPARATOR) if item.strip()]
    try:
        return [str(item) for item in value]
    except TypeError:
        raise ValueError(f"option {key} should be a list, got {value!r}") from None


def _to_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in _TRUE | _FALSE:
        return value.strip().lower() in _TRUE
    raise ValueError(f"option {key} should be a boolean, got {value!r}")


def _to_int(key: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"option {key} should be an integer, got {value!r}")
    try:
        return int(value.strip() if isinstance(value, str) else value)
    except (TypeError, ValueError):
        raise ValueError(f"option {key} should be an integer, got {value!r}") from None


def _to_date(key: str, value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            moment = datetime.strptime(value.strip(), DATE_FORMAT)
        except ValueError:
            raise ValueError(f"option {key} should be a date like {DATE_FORMAT}") from None
        return int(moment.replace(tzinfo=timezone.utc).timestamp())
    raise ValueError(f"option {key} should be a date, got {value!r}")


_CONVERTERS = {
    "list": _to_list,
    "bool": _to_bool,
    "int": _to_int,
    "date": _to_date,
    "str": lambda key, value: str(value),
}


@dataclass
class Configuration:
    """All collector options, each bound to its key in the configuration file."""

    mongo_urls: list[str] = _opt("mongo_urls", "list")
    collector_id: str = _opt("collector.id", "str", "")
    checkpoint_interval: int = _opt("checkpoint.interval", "int", 0)
    http_listen_port: int = _opt("http_profile", "int", 0)
    system_profile: int = _opt("system_profile", "int", 0)
    log_level: str = _opt("log_level", "str", "")
    log_file_name: str = _opt("log_file", "str", "")
    log_buffer: bool = _opt("log_buffer", "bool", False)
    oplog_gids: str = _opt("oplog.gids", "str", "")
    shard_key: str = _opt("shard_key", "str", "")
    syncer_reader_buffer_time: int = _opt("syncer.reader.buffer_time", "int", 0)
    worker_num: int = _opt("worker", "int", 0)
    worker_oplog_compressor: str = _opt("worker.oplog_compressor", "str", "")
    worker_batch_queue_size: int = _opt("worker.batch_queue_size", "int", 0)
    adaptive_batching_max_size: int = _opt("adaptive.batching_max_size", "int", 0)
    fetcher_buffer_capacity: int = _opt("fetcher.buffer_capacity", "int", 0)
    tunnel: str = _opt("tunnel", "str", "")
    tunnel_address: list[str] = _opt("tunnel.address", "list")
    master_quorum: bool = _opt("master_quorum", "bool", False)
    context_storage: str = _opt("context.storage", "str", "")
    context_storage_url: str = _opt("context.storage.url", "str", "")
    context_address: str = _opt("context.address", "str", "")
    context_start_position: int = _opt("context.start_position", "date", 0)
    filter_namespace_black: list[str] = _opt("filter.namespace.black", "list")
    filter_namespace_white: list[str] = _opt("filter.namespace.white", "list")
    sync_mode: str = _opt("sync_mode", "str", "")
    transform_namespace: list[str] = _opt("transform.namespace", "list")
    dbref: bool = _opt("dbref", "bool", False)

    replayer_dml_only: bool = _opt("replayer.dml_only", "bool", False)
    replayer_executor: int = _opt("replayer.executor", "int", 0)
    replayer_executor_upsert: bool = _opt("replayer.executor.upsert", "bool", False)
    replayer_executor_insert_on_dup_update: bool = _opt(
        "replayer.executor.insert_on_dup_update", "bool", False
    )
    replayer_collision_enable: bool = _opt("replayer.collision_detection", "bool", False)
    replayer_conflict_write_to: str = _opt("replayer.conflict_write_to", "str", "")
    replayer_durable: bool = _opt("replayer.durable", "bool", False)

    replayer_collection_drop: bool = _opt("replayer.collection_drop", "bool", False)
    replayer_collection_parallel: int = _opt("replayer.collection_parallel", "int", 0)
    replayer_document_parallel: int = _opt("replayer.document_parallel", "int", 0)
    replayer_document_batch_size: int = _opt("replayer.document_batch_size", "int", 0)

    def is_shard_cluster(self) -> bool:
        return len(self.mongo_urls) > 1

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> Configuration:
        """Build from configuration-file keys; keys the collector does not know are ignored."""
        by_key = {f.metadata["key"]: f for f in fields(cls)}
        arguments: dict[str, Any] = {}
        for key, value in values.items():
            option = by_key.get(key.strip())
            if option is None:
                continue
            convert = _CONVERTERS[option.metadata["kind"]]
            arguments[option.name] = convert(option.metadata["key"], value)
        return cls(**arguments)