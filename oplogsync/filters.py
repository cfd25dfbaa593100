"""Oplog and namespace filters."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping

from bson import Timestamp

from .util import APP_CONFLICT_DATABASE, APP_DATABASE

NS_SHOULD_BE_IGNORE = (
    "admin.",
    "local.",
    "config.",
    APP_DATABASE + ".",
    APP_CONFLICT_DATABASE + ".",
)


@dataclass
class PartialLog:
    """The oplog fields the collector looks at."""

    timestamp: int = 0
    operation: str = ""
    gid: str = ""
    namespace: str = ""
    from_migrate: bool = False
    object: dict = field(default_factory=dict)
    query: dict = field(default_factory=dict)

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> PartialLog:
        """Build from a decoded oplog entry; timestamps become 64-bit integers."""
        ts = document.get("ts", 0)
        if isinstance(ts, Timestamp):
            ts = (ts.time << 32) | ts.inc
        return cls(
            timestamp=int(ts),
            operation=document.get("op", ""),
            gid=document.get("g", ""),
            namespace=document.get("ns", ""),
            from_migrate=bool(document.get("fromMigrate", False)),
            object=dict(document.get("o") or {}),
            query=dict(document.get("o2") or {}),
        )


@dataclass
class GenericOplog:
    """An oplog entry as raw BSON together with its parsed fields."""

    raw: bytes
    parsed: PartialLog


@dataclass
class GidFilter:
    """Drops entries whose global id differs from the configured one."""

    gid: str = ""

    def filter(self, log: PartialLog) -> bool:
        return bool(self.gid) and log.gid != self.gid


class AutologousFilter:
    """Drops system namespaces and the collector's own databases."""

    def filter(self, log: PartialLog) -> bool:
        return self.filter_ns(log.namespace)

    def filter_ns(self, namespace: str) -> bool:
        return namespace.startswith(NS_SHOULD_BE_IGNORE)


class NoopFilter:
    def filter(self, log: PartialLog) -> bool:
        return log.operation == "n"


class DDLFilter:
    def filter(self, log: PartialLog) -> bool:
        return log.operation == "c" or log.namespace.endswith("system.indexes")


class MigrateFilter:
    def filter(self, log: PartialLog) -> bool:
        return log.from_migrate


def convert_to_rule(names: list[str]) -> str:
    """Build a regex matching each name exactly or as a dotted prefix."""
    if not names:
        return ""
    exact = "|".join(names).replace(".", "\\.")
    prefixed = "|".join(name + "." for name in names).replace(".", "\\.")
    return f"^({exact})$|^({prefixed}).*$"


class NamespaceFilter:
    """White-list or black-list filtering of namespaces."""

    def __init__(self, white: list[str] | None, black: list[str] | None) -> None:
        self.white_rule = convert_to_rule(list(white or []))
        self.black_rule = convert_to_rule(list(black or []))
        self._white = re.compile(self.white_rule) if self.white_rule else None
        self._black = re.compile(self.black_rule) if self.black_rule else None

    def filter(self, log: PartialLog) -> bool:
        return self.filter_ns(log.namespace)

    def filter_ns(self, namespace: str) -> bool:
        if self._white is not None and not self._white.search(namespace):
            return True
        if self._black is not None and self._black.search(namespace):
            return True
        return False


class OplogFilterChain(list):
    """Filters applied to oplog entries; an entry is dropped if any filter says so."""

    def iterate_filter(self, log: PartialLog) -> bool:
        return any(item.filter(log) for item in self)


class DocFilterChain(list):
    """Filters applied to namespaces during document sync."""

    def iterate_filter(self, namespace: str) -> bool:
        return any(item.filter_ns(namespace) for item in self)


def new_doc_filter_list(white: list[str] | None, black: list[str] | None) -> DocFilterChain:
    chain = DocFilterChain([AutologousFilter()])
    if white or black:
        chain.append(NamespaceFilter(white, black))
    return chain