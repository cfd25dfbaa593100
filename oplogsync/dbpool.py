"""Namespaces and MongoDB connections."""

from __future__ import annotations

import logging
from typing import NamedTuple

from pymongo import MongoClient
from pymongo.errors import PyMongoError

from .util import LOGGER_NAME

OPLOG_NS = "oplog.rs"
POOL_LIMIT = 256
SOCKET_TIMEOUT_MS = 10 * 60 * 1000

logger = logging.getLogger(LOGGER_NAME)


class NS(NamedTuple):
    """A ``database.collection`` pair."""

    database: str
    collection: str

    def __str__(self) -> str:
        return f"{self.database}.{self.collection}"

    @classmethod
    def parse(cls, namespace: str) -> NS:
        database, sep, collection = namespace.partition(".")
        if not sep:
            raise ValueError(f"namespace {namespace!r} has no collection part")
        return cls(database, collection)


class MongoConn:
    """A verified client connection to one MongoDB deployment."""

    def __init__(self, url: str, primary_required: bool, timeout: bool) -> None:
        self.url = url
        try:
            self.client = MongoClient(
                url,
                maxPoolSize=POOL_LIMIT,
                socketTimeoutMS=SOCKET_TIMEOUT_MS if timeout else None,
                readPreference="primary" if primary_required else "secondaryPreferred",
            )
        except PyMongoError as exc:
            logger.critical("Connect to %s failed. %s", url, exc)
            raise
        try:
            self.client["admin"].command("ping")
        except PyMongoError as exc:
            logger.critical("Verify ping command to %s failed. %s", url, exc)
            self.client.close()
            raise
        logger.info("New session to %s successfully", url)

    def __enter__(self) -> MongoConn:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        logger.info("Close session with %s", self.url)
        self.client.close()

    def is_good(self) -> bool:
        try:
            self.client["admin"].command("ping")
        except PyMongoError:
            return False
        return True

    def acquire_replica_set_name(self) -> str:
        """Return the replica set name, or an empty string when it is unknown."""
        try:
            status = self.client["admin"].command("replSetGetStatus")
        except PyMongoError as exc:
            logger.warning("Replica set name not found in system.replset, %s", exc)
            return ""
        name = status.get("set", "") if status else ""
        return name if isinstance(name, str) else ""

    def has_oplog_ns(self) -> bool:
        try:
            return OPLOG_NS in self.client["local"].list_collection_names()
        except PyMongoError:
            return False

    def has_unique_index(self) -> bool:
        """Whether any user collection carries a unique index."""
        try:
            databases = self.client.list_database_names()
        except PyMongoError as exc:
            logger.critical("Couldn't get databases from remote server %s", exc)
            return False

        namespaces: list[NS] = []
        for db in databases:
            if db in ("admin", "local"):
                continue
            try:
                collections = self.client[db].list_collection_names()
            except PyMongoError:
                collections = []
            namespaces.extend(NS(db, c) for c in collections if c != "system.profile")

        for ns in namespaces:
            try:
                indexes = self.client[ns.database][ns.collection].index_information()
            except PyMongoError:
                continue
            for name, spec in indexes.items():
                if spec.get("unique"):
                    logger.info("Found unique index %s on %s in auto shard mode", name, ns)
                    return True
        return False