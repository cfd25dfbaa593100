"""Replication counters with a periodic log report."""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field

from .util import (
    LOGGER_NAME,
    RunStatus,
    extract_mongo_timestamp,
    run_status_message,
    timestamp_to_string,
)

FREQUENT_IN_SECONDS = 5

KB = 1024
MB = 1024 * KB
GB = 1024 * MB
TB = 1024 * GB
PB = 1024 * TB

logger = logging.getLogger(LOGGER_NAME)


class Subscribe(enum.IntFlag):
    """Optional items of the periodic metric report."""

    NONE = 0x0
    CKPT_TIMES = 0x1
    TUNNEL_TRAFFIC = 0x10
    LSN_CKPT = 0x100
    RETRANSMISSION = 0x1000
    TPS = 0x10000
    SUCCESS = 0x100000


def format_traffic(traffic: int) -> str:
    """Render a byte count with the largest unit it strictly exceeds."""
    for unit, name in ((PB, "PB"), (TB, "TB"), (GB, "GB"), (MB, "MB"), (KB, "KB")):
        if traffic > unit:
            return f"{traffic // unit}{name}"
    return f"{traffic}B"


@dataclass
class MetricDelta:
    """A counter that also remembers how much it grew since the last update."""

    value: int = 0
    delta: int = 0
    _previous: int = field(default=0, repr=False)

    def update(self) -> None:
        current = self.value
        self.delta, self._previous = current - self._previous, current


class ReplicationStatus:
    """Thread-safe holder of the current run status."""

    def __init__(self, status: int = RunStatus.WORK_GOOD) -> None:
        self._status = int(status)
        self._lock = threading.Lock()

    @property
    def status(self) -> int:
        return self._status

    def update(self, status: int) -> None:
        with self._lock:
            self._status = int(status)

    def clear(self, status: int) -> None:
        """Reset to WORK_GOOD only if the current status equals ``status``."""
        with self._lock:
            if self._status == status:
                self._status = RunStatus.WORK_GOOD

    def status_string(self) -> str:
        return run_status_message(self._status)

    def is_good(self) -> bool:
        return self._status in (RunStatus.WORK_GOOD, RunStatus.GET_READY)


class TableOps:
    """Per-collection operation counts."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ops: dict[str, int] = {}

    def incr(self, table: str, n: int) -> None:
        with self._lock:
            self._ops[table] = self._ops.get(table, 0) + n

    def copy(self) -> dict[str, int]:
        with self._lock:
            return dict(self._ops)


class ReplicationMetric:
    """Counters of one replication stream, reported every few seconds once started."""

    def __init__(self, name: str, subscribe: int) -> None:
        self.name = name
        self.subscribe = Subscribe(subscribe)

        self.oplog_filter = MetricDelta()
        self.oplog_get = MetricDelta()
        self.oplog_consume = MetricDelta()
        self.oplog_apply = MetricDelta()
        self.oplog_success = MetricDelta()
        self.oplog_fail = MetricDelta()
        self.checkpoint_times = 0
        self.retransmission = 0
        self.tunnel_traffic = 0
        self.lsn = 0
        self.lsn_ack = 0
        self.lsn_checkpoint = 0
        self.oplog_max_size = 0
        self.oplog_avg_size = 0

        self.table_operations = TableOps()
        self.repl_status = ReplicationStatus()

        self._lock = threading.Lock()
        self._ticks = 0
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # lifecycle

    def start(self) -> ReplicationMetric:
        """Start the background reporter; a second call does nothing."""
        if self._thread is not None and self._thread.is_alive():
            return self
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"metric-{self.name}", daemon=True
        )
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def __enter__(self) -> ReplicationMetric:
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _run(self) -> None:
        while not self._stop_event.wait(1.0):
            line = self.tick()
            if line is not None:
                logger.info(line)

    def tick(self) -> str | None:
        """Advance one second; return the report on every fifth tick."""
        with self._lock:
            self._ticks += 1
            self.oplog_success.update()
            due = self._ticks % FREQUENT_IN_SECONDS == 0
        return self.report() if due else None

    def report(self) -> str:
        with self._lock:
            parts = [
                f"[name={self.name}, filter={self.oplog_filter.value}, "
                f"get={self.oplog_get.value}, consume={self.oplog_consume.value}, "
                f"apply={self.oplog_apply.value}, failed_times={self.oplog_fail.value}"
            ]
            if self.subscribe & Subscribe.SUCCESS:
                parts.append(f", success={self.oplog_success.value}")
            if self.subscribe & Subscribe.TPS:
                parts.append(f", tps={self.oplog_success.delta}")
            if self.subscribe & Subscribe.CKPT_TIMES:
                parts.append(f", ckpt_times={self.checkpoint_times}")
            if self.subscribe & Subscribe.RETRANSMISSION:
                parts.append(f", retransimit_times={self.retransmission}")
            if self.subscribe & Subscribe.TUNNEL_TRAFFIC:
                parts.append(f", tunnel_traffic={format_traffic(self.tunnel_traffic)}")
            if self.subscribe & Subscribe.LSN_CKPT:
                seconds = extract_mongo_timestamp(self.lsn_checkpoint)
                parts.append(f", lsn_ckpt={{{seconds},{timestamp_to_string(seconds)}}}")
            ack_seconds = extract_mongo_timestamp(self.lsn_ack)
        parts.append(f", lsn_ack={{{ack_seconds},{timestamp_to_string(ack_seconds)}}}]")
        return "".join(parts)

    def tunnel_traffic_text(self) -> str:
        return format_traffic(self.tunnel_traffic)

    # counters

    def _add(self, delta: MetricDelta, incr: int) -> None:
        with self._lock:
            delta.value += incr

    def add_success(self, incr: int) -> None:
        self._add(self.oplog_success, incr)

    def add_get(self, incr: int) -> None:
        self._add(self.oplog_get, incr)

    def add_filter(self, incr: int) -> None:
        self._add(self.oplog_filter, incr)

    def add_apply(self, incr: int) -> None:
        self._add(self.oplog_apply, incr)

    def add_failed(self, incr: int) -> None:
        self._add(self.oplog_fail, incr)

    def add_consume(self, incr: int) -> None:
        self._add(self.oplog_consume, incr)

    def add_checkpoint(self, number: int) -> None:
        with self._lock:
            self.checkpoint_times += number

    def add_retransmission(self, number: int) -> None:
        with self._lock:
            self.retransmission += number

    def add_tunnel_traffic(self, number: int) -> None:
        with self._lock:
            self.tunnel_traffic += number

    # gauges

    def set_oplog_max(self, size: int) -> None:
        with self._lock:
            self.oplog_max_size = max(self.oplog_max_size, size)

    def set_oplog_avg(self, size: int) -> None:
        with self._lock:
            self.oplog_avg_size = int((self.oplog_avg_size + size) / 2)

    def set_lsn_checkpoint(self, ckpt: int) -> None:
        with self._lock:
            self.lsn_checkpoint = max(self.lsn_checkpoint, ckpt)

    def set_lsn(self, lsn: int) -> None:
        with self._lock:
            self.lsn = max(self.lsn, lsn)

    def set_lsn_ack(self, ack: int) -> None:
        with self._lock:
            self.lsn_ack = max(self.lsn_ack, ack)

    def add_table_ops(self, table: str, n: int) -> None:
        self.table_operations.incr(table, n)

    def table_ops(self) -> dict[str, int]:
        return self.table_operations.copy()