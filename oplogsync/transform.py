"""Renaming of namespaces and databases while replicating."""

from __future__ import annotations

import re
from typing import Any, Mapping


class TransformRuleError(ValueError):
    """A transform rule is malformed."""


def _split_rule(rule: str) -> tuple[str, str]:
    pair = rule.split(":", 1)
    if len(pair) != 2 or len(pair[0].split(".", 1)) != len(pair[1].split(".", 1)):
        raise TransformRuleError(f"transform rule {rule} is illegal")
    return pair[0], pair[1]


class NamespaceTransform:
    """Maps ``db`` or ``db.collection`` prefixes onto new names; first rule wins."""

    def __init__(self, rules: list[str]) -> None:
        self._rules: list[tuple[re.Pattern[str], str]] = []
        for rule in rules:
            source, target = _split_rule(rule)
            escaped = source.replace(".", "\\.")
            pattern = re.compile(f"^{escaped}$|^{escaped}(\\..*)$")
            self._rules.append((pattern, target))

    def transform(self, namespace: str) -> str:
        for pattern, target in self._rules:
            match = pattern.search(namespace)
            if match:
                return target + (match.group(1) or "")
        return namespace


class DBTransform:
    """Maps a source database onto every target database named for it."""

    def __init__(self, rules: list[str]) -> None:
        self._rules: dict[str, list[str]] = {}
        for rule in rules:
            source, target = _split_rule(rule)
            from_db = source.split(".", 1)[0]
            to_db = target.split(".", 1)[0]
            self._rules.setdefault(from_db, []).append(to_db)

    def transform(self, db: str) -> list[str]:
        return list(self._rules.get(db, [db]))


def transform_dbref(
    document: Mapping[str, Any], db: str, ns_transform: NamespaceTransform
) -> dict[str, Any]:
    """Rewrite DBRef sub-documents so they point at the transformed namespace.

    A DBRef is recognised by ``$ref`` being its first key; ``$db`` is read from
    the third position and written back there, or appended when there are only
    two keys.
    """
    items = list(document.items())
    if items and items[0][0] == "$ref":
        collection = items[0][1]
        if len(items) > 2 and items[2][0] == "$db":
            db = items[2][1]
        target = ns_transform.transform(f"{db}.{collection}")
        target_db, sep, target_collection = target.partition(".")
        if not sep:
            raise TransformRuleError(f"transformed namespace {target} has no collection")
        items[0] = (items[0][0], target_collection)
        if len(items) > 2:
            items[2] = (items[2][0], target_db)
        else:
            items.append(("$db", target_db))
        return dict(items)

    return {
        key: transform_dbref(value, db, ns_transform) if isinstance(value, Mapping) else value
        for key, value in items
    }