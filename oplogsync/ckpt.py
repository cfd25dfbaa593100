"""Checkpoint storage: a MongoDB collection or an HTTP endpoint."""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from bson import Timestamp
from pymongo import WriteConcern
from pymongo.errors import PyMongoError

from .config import Configuration
from .dbpool import MongoConn
from .util import APP_DATABASE, LOGGER_NAME, extract_mongo_timestamp

STORAGE_TYPE_API = "api"
STORAGE_TYPE_DB = "database"
CHECKPOINT_DEFAULT_DATABASE = APP_DATABASE
CHECKPOINT_ADMIN_DATABASE = "admin"
CHECKPOINT_NAME = "name"
MAJORITY_WRITE_CONCERN = "majority"
HTTP_TIMEOUT_SECONDS = 10

logger = logging.getLogger(LOGGER_NAME)


class CheckpointError(Exception):
    """Reading or writing a checkpoint failed."""


def _to_int64(ts: Any) -> int:
    if isinstance(ts, Timestamp):
        return (ts.time << 32) | ts.inc
    return int(ts)


@dataclass
class CheckpointContext:
    """The stored checkpoint of one replica set."""

    name: str
    timestamp: int

    def to_document(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "ckpt": Timestamp(self.timestamp >> 32, self.timestamp & 0xFFFFFFFF),
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> CheckpointContext:
        return cls(name=document.get("name", ""), timestamp=_to_int64(document.get("ckpt", 0)))


class CheckpointOperation(Protocol):
    def get(self) -> CheckpointContext: ...

    def insert(self, context: CheckpointContext) -> None: ...


class MongoCheckpoint:
    """Checkpoints kept in a MongoDB collection, one document per name."""

    def __init__(
        self,
        name: str,
        start_position: int,
        url: str,
        db: str,
        table: str,
        shard_cluster: bool,
    ) -> None:
        self.name = name
        self.start_position = start_position
        self.url = url
        self.db = db
        self.table = table
        self.shard_cluster = shard_cluster
        self._conn: MongoConn | None = None
        self._collection: Any = None

    def _ensure_network(self) -> bool:
        if self._conn is None:
            try:
                self._conn = MongoConn(self.url, True, True)
            except PyMongoError as exc:
                logger.warning("CheckpointOperation manager connect mongo cluster failed. %s", exc)
                return False
            collection = self._conn.client[self.db][self.table]
            if self.shard_cluster:
                # checkpoints written to a config server must reach a majority
                collection = collection.with_options(
                    write_concern=WriteConcern(w=MAJORITY_WRITE_CONCERN)
                )
            self._collection = collection
        return True

    def _close(self) -> None:
        if self._conn is not None:
            self._conn.close()
        self._conn = None
        self._collection = None

    def get(self) -> CheckpointContext:
        """Load the stored checkpoint, or build one from the start position."""
        if not self._ensure_network():
            raise CheckpointError("reload ckpt ensure network failed")
        try:
            document = self._collection.find_one({CHECKPOINT_NAME: self.name})
        except PyMongoError as exc:
            self._close()
            logger.warning("Reload ckpt find context fail. %s", exc)
            raise CheckpointError(f"reload ckpt find context fail: {exc}") from exc
        if document is not None:
            context = CheckpointContext.from_document(document)
            logger.info("Load exist checkpoint. content %s", context)
            return context
        # Timestamp(0, 0) would be stored as the current time, so start at one second
        self.start_position = max(self.start_position, 1)
        context = CheckpointContext(name=self.name, timestamp=self.start_position << 32)
        logger.info("Regenerate checkpoint but won't insert. content %s", context)
        return context

    def insert(self, context: CheckpointContext) -> None:
        if not self._ensure_network():
            raise CheckpointError("record ckpt network failed")
        try:
            self._collection.replace_one(
                {CHECKPOINT_NAME: self.name}, context.to_document(), upsert=True
            )
        except PyMongoError as exc:
            logger.warning("Record checkpoint %s upsert error %s", context, exc)
            self._close()
            raise CheckpointError(f"record checkpoint upsert error: {exc}") from exc
        logger.info("Record new checkpoint success [%d]", extract_mongo_timestamp(context.timestamp))


class HttpApiCheckpoint:
    """Checkpoints read with GET and written with a JSON POST to one URL."""

    def __init__(self, name: str, start_position: int, url: str) -> None:
        self.name = name
        self.start_position = start_position
        self.url = url

    def get(self) -> CheckpointContext:
        try:
            with urllib.request.urlopen(self.url, timeout=HTTP_TIMEOUT_SECONDS) as response:
                stream = response.read()
        except (urllib.error.URLError, OSError) as exc:
            logger.warning("Http api ckpt request failed, %s", exc)
            raise CheckpointError(f"http api ckpt request failed: {exc}") from exc
        try:
            value = json.loads(stream)
        except ValueError as exc:
            raise CheckpointError(f"http api ckpt reply is not json: {exc}") from exc
        if not isinstance(value, dict):
            raise CheckpointError("http api ckpt reply is not an object")
        try:
            timestamp = int(value.get("ckpt") or 0)
        except (TypeError, ValueError) as exc:
            raise CheckpointError(f"http api ckpt value is invalid: {exc}") from exc
        if timestamp == 0:
            timestamp = self.start_position
        name = value.get("name") or self.name
        return CheckpointContext(name=str(name), timestamp=timestamp)

    def insert(self, context: CheckpointContext) -> None:
        body = json.dumps({"name": context.name, "ckpt": context.timestamp}).encode()
        request = urllib.request.Request(
            self.url, data=body, method="POST", headers={"Content-Type": "application/json"}
        )
        try:
            with urllib.request.urlopen(request, timeout=HTTP_TIMEOUT_SECONDS) as response:
                status = response.status
        except (urllib.error.URLError, OSError) as exc:
            logger.warning("Context api manager write request failed, %s", exc)
            raise CheckpointError(f"context api manager write request failed: {exc}") from exc
        if status != 200:
            logger.warning("Context api manager write request failed, status %d", status)
            raise CheckpointError(f"context api manager write request failed: status {status}")
        logger.info("Record new checkpoint success [%d]", extract_mongo_timestamp(context.timestamp))


class CheckpointManager:
    """Holds the in-memory checkpoint and reads or writes it through a storage."""

    def __init__(self, name: str, start_position: int, options: Configuration) -> None:
        self._ctx: CheckpointContext | None = None
        self._delegate: CheckpointOperation
        if options.context_storage == STORAGE_TYPE_API:
            self._delegate = HttpApiCheckpoint(name, start_position, options.context_address)
        elif options.context_storage == STORAGE_TYPE_DB:
            shard = options.is_shard_cluster()
            self._delegate = MongoCheckpoint(
                name,
                start_position,
                url=options.context_storage_url,
                db=CHECKPOINT_ADMIN_DATABASE if shard else CHECKPOINT_DEFAULT_DATABASE,
                table=options.context_address,
                shard_cluster=shard,
            )
        else:
            raise CheckpointError(f"unknown context storage {options.context_storage!r}")
        self.type = options.context_storage

    def get(self) -> CheckpointContext:
        """Reload from storage; the in-memory value is cleared on failure."""
        try:
            self._ctx = self._delegate.get()
        except CheckpointError:
            self._ctx = None
            raise
        return self._ctx

    def get_in_memory(self) -> CheckpointContext | None:
        return self._ctx

    def update(self, ts: int) -> None:
        if self._ctx is None or not self._ctx.name:
            raise CheckpointError("current ckpt context is empty")
        self._ctx.timestamp = ts
        self._delegate.insert(self._ctx)