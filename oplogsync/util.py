"""Shared helpers: run status codes, logging setup, timestamps and process locks."""

from __future__ import annotations

import enum
import errno
import logging
import logging.handlers
import os
import random
import sys
import time
from datetime import datetime
from typing import Iterable

APP_NAME = "oplogsync"
APP_DATABASE = APP_NAME
APP_CONFLICT_DATABASE = APP_NAME + "_conflict"
GLOBAL_DIAGNOSTIC_PATH = "diagnostic"
LOGGER_NAME = "oplogsync"
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_DIRECTORY = "logs"
LOG_BUFFER_LENGTH = 32
LOG_MAX_BACKUP = 7

OPS_MAX = ord("z") - ord("A")

logger = logging.getLogger(LOGGER_NAME)


class RunStatus(enum.IntEnum):
    """Replication health states; the non-zero ones are failure bits."""

    WORK_GOOD = 0
    GET_READY = 1
    FETCH_BAD = 2
    TUNNEL_SEND_BAD = 4
    TUNNEL_SYNC_BAD = 8
    REPLICA_EXEC_BAD = 16


_STATUS_MESSAGES = {
    RunStatus.WORK_GOOD: "Good",
    RunStatus.GET_READY: "prepare for ready",
    RunStatus.FETCH_BAD: "can't fetch oplog from source MongoDB",
    RunStatus.TUNNEL_SEND_BAD: "collector send oplog to tunnel failed",
    RunStatus.TUNNEL_SYNC_BAD: "receiver fetch from tunnel failed",
    RunStatus.REPLICA_EXEC_BAD: "receiver replica executed failed",
}


def run_status_message(status: int) -> str:
    """Return the human readable description of a run status."""
    try:
        return _STATUS_MESSAGES[RunStatus(status)]
    except ValueError:
        return "unknown"


def parse_log_level(level: str) -> int:
    """Map a level name to a logging level; anything unknown means DEBUG."""
    return {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
    }.get(level.lower(), logging.DEBUG)


def _close_handler(handler: logging.Handler) -> None:
    if isinstance(handler, logging.handlers.MemoryHandler) and handler.target is not None:
        handler.flush()
        handler.target.close()
    handler.close()


def initial_logger(log_file: str, level: str, log_buffer: bool, verbose: bool) -> bool:
    """Configure the package logger; return False if the log folder cannot be made."""
    log_level = parse_log_level(level)
    logger.setLevel(log_level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        _close_handler(handler)

    if verbose:
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(log_level)
        logger.addHandler(console)

    if log_file:
        try:
            os.makedirs(LOG_DIRECTORY, exist_ok=True)
        except OSError:
            return False
        file_handler = logging.handlers.TimedRotatingFileHandler(
            os.path.join(LOG_DIRECTORY, log_file), when="midnight", backupCount=LOG_MAX_BACKUP
        )
        file_handler.setFormatter(
            logging.Formatter(
                "[%(asctime)s] [%(levelname)s] [%(module)s] %(message)s", "%Y/%m/%d %H:%M:%S"
            )
        )
        handler: logging.Handler = file_handler
        if log_buffer:
            handler = logging.handlers.MemoryHandler(
                LOG_BUFFER_LENGTH, flushLevel=logging.ERROR, target=file_handler
            )
        handler.setLevel(log_level)
        logger.addHandler(handler)
    return True


class ElapsedTask:
    """Fires once a time limit (seconds) has passed or a count of calls is reached."""

    def __init__(self, time_limit: int, batch_limit: int) -> None:
        self.time_limit = time_limit
        self.batch_limit = batch_limit
        self._stone = int(time.time())
        self._trigger_times = 0

    def reset(self) -> None:
        self._stone = int(time.time())
        self._trigger_times = 0

    def trigger(self) -> bool:
        self._trigger_times += 1
        if int(time.time()) > self._stone + self.time_limit:
            return True
        return self._trigger_times >= self.batch_limit


class OpsCounter:
    """Counts operations keyed by a single letter between 'A' and 'z'."""

    def __init__(self) -> None:
        self._counter = [0] * (OPS_MAX + 1)

    def add(self, char: str | int, value: int) -> None:
        code = ord(char) if isinstance(char, str) else char
        offset = code - ord("A")
        if 0 <= offset <= OPS_MAX:
            self._counter[offset] += value

    def as_dict(self) -> dict[str, int]:
        return {
            chr(ord("A") + offset): count
            for offset, count in enumerate(self._counter)
            if count
        }


def extract_mongo_timestamp(ts: object) -> int:
    """Return the seconds part of a MongoDB timestamp, or 0 for other values."""
    seconds = getattr(ts, "time", None)
    if isinstance(seconds, int) and not isinstance(ts, int):
        return seconds
    if isinstance(ts, int) and not isinstance(ts, bool):
        return ts >> 32
    return 0


def timestamp_to_string(ts: int) -> str:
    """Format unix seconds in local time."""
    return datetime.fromtimestamp(ts).strftime(TIME_FORMAT)


def has_duplicated(items: Iterable[str]) -> bool:
    seen: set[str] = set()
    for item in items:
        if item in seen:
            return True
        seen.add(item)
    return False


def maybe_random(port: int) -> int:
    """Pick a random port above 1024 when ``port`` is 0, otherwise return it."""
    if port == 0:
        number = random.randrange(10000)
        if number <= 1024:
            number += 1024
        return number
    return port


def mkdirs(*args: str) -> None:
    """Create each directory that does not exist yet (parents must exist)."""
    for directory in args:
        if not os.path.exists(directory):
            os.mkdir(directory, 0o777)


def _read_pid(path: str) -> int | None:
    try:
        with open(path, encoding="ascii") as handle:
            return int(handle.read().strip())
    except (OSError, ValueError):
        return None


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def write_pid(path: str) -> None:
    """Take an exclusive pid lock file at the absolute ``path``."""
    if not os.path.isabs(path):
        raise ValueError(f"lock file path must be absolute: {path}")
    pid = os.getpid()
    while True:
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            owner = _read_pid(path)
            if owner == pid:
                return
            if owner is not None and _pid_alive(owner):
                raise FileExistsError(errno.EEXIST, f"locked by process {owner}", path)
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            continue
        with os.fdopen(fd, "w", encoding="ascii") as handle:
            handle.write(f"{pid}\n")
        return


def write_pid_by_id(identifier: str) -> bool:
    """Lock ``<cwd>/<identifier>.pid``; log and return False on failure."""
    path = os.path.join(os.getcwd(), identifier) + ".pid"
    try:
        write_pid(path)
    except (OSError, ValueError) as exc:
        logger.critical("Process write pid and lock file failed : %s", exc)
        return False
    return True