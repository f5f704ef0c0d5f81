"""Metric identifiers, labels and in-memory metric recorders."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Generic, Iterable, Mapping, TypeVar

DEVICE_NAME_LABEL = "device_name"
DIRECTION_LABEL = "direction"
STATE_LABEL = "state"
FS_TYPE_LABEL = "fs_type"
MOUNT_OPTION_LABEL = "mount_option"
FEATURE_LABEL = "os_feature"
VALUE_LABEL = "value"
INTERFACE_NAME_LABEL = "interface_name"
CPU_LABEL = "cpu"
STAGE_LABEL = "stage"


class Aggregation(str, Enum):
    """How recorded measurements combine: replace (gauge) or add up (counter)."""

    LAST_VALUE = "last_value"
    SUM = "sum"


class MetricID(str, Enum):
    CPU_RUNNABLE_TASK_COUNT = "cpu/runnable_task_count"
    CPU_USAGE_TIME = "cpu/usage_time"
    CPU_LOAD_1M = "cpu/load_1m"
    CPU_LOAD_5M = "cpu/load_5m"
    CPU_LOAD_15M = "cpu/load_15m"
    SYSTEM_PROCESSES_TOTAL = "system/processes_total"
    SYSTEM_PROCS_RUNNING = "system/procs_running"
    SYSTEM_PROCS_BLOCKED = "system/procs_blocked"
    SYSTEM_INTERRUPTS_TOTAL = "system/interrupts_total"
    SYSTEM_CPU_STAT = "system/cpu_stat"
    DISK_IO_TIME = "disk/io_time"
    DISK_WEIGHTED_IO = "disk/weighted_io"
    DISK_AVG_QUEUE_LEN = "disk/avg_queue_len"
    DISK_OPS_COUNT = "disk/operation_count"
    DISK_MERGED_OPS_COUNT = "disk/merged_operation_count"
    DISK_OPS_BYTES = "disk/operation_bytes_count"
    DISK_OPS_TIME = "disk/operation_time"
    DISK_BYTES_USED = "disk/bytes_used"
    HOST_UPTIME = "host/uptime"
    MEMORY_BYTES_USED = "memory/bytes_used"
    MEMORY_ANONYMOUS_USED = "memory/anonymous_used"
    MEMORY_PAGE_CACHE_USED = "memory/page_cache_used"
    MEMORY_UNEVICTABLE_USED = "memory/unevictable_used"
    MEMORY_DIRTY_USED = "memory/dirty_used"
    OS_FEATURE = "system/os_feature"
    NET_DEV_RX_BYTES = "net/rx_bytes"
    NET_DEV_RX_PACKETS = "net/rx_packets"
    NET_DEV_RX_ERRORS = "net/rx_errors"
    NET_DEV_RX_DROPPED = "net/rx_dropped"
    NET_DEV_RX_FIFO = "net/rx_fifo"
    NET_DEV_RX_FRAME = "net/rx_frame"
    NET_DEV_RX_COMPRESSED = "net/rx_compressed"
    NET_DEV_RX_MULTICAST = "net/rx_multicast"
    NET_DEV_TX_BYTES = "net/tx_bytes"
    NET_DEV_TX_PACKETS = "net/tx_packets"
    NET_DEV_TX_ERRORS = "net/tx_errors"
    NET_DEV_TX_DROPPED = "net/tx_dropped"
    NET_DEV_TX_FIFO = "net/tx_fifo"
    NET_DEV_TX_COLLISIONS = "net/tx_collisions"
    NET_DEV_TX_CARRIER = "net/tx_carrier"
    NET_DEV_TX_COMPRESSED = "net/tx_compressed"


_V = TypeVar("_V", int, float)


@dataclass(frozen=True)
class MetricRepresentation(Generic[_V]):
    """One time series of a metric: its labels and current value."""

    labels: dict[str, str]
    value: _V


class _Metric(Generic[_V]):
    def __init__(
        self,
        metric_id: MetricID | str,
        view_name: str,
        description: str,
        unit: str,
        aggregation: Aggregation,
        tag_names: Iterable[str],
    ) -> None:
        self.metric_id = metric_id
        self.name = view_name
        self.description = description
        self.unit = unit
        self.aggregation = Aggregation(aggregation)
        self.tag_names = tuple(tag_names)
        self._series: dict[tuple[tuple[str, str], ...], _V] = {}
        self._lock = threading.Lock()

    def _store(self, tags: Mapping[str, str], value: _V) -> None:
        key = tuple((name, tags[name]) for name in self.tag_names if name in tags)
        with self._lock:
            if self.aggregation is Aggregation.SUM and key in self._series:
                self._series[key] += value
            else:
                self._series[key] = value

    def _snapshot(self) -> list[MetricRepresentation[_V]]:
        with self._lock:
            return [
                MetricRepresentation(labels=dict(key), value=value)
                for key, value in self._series.items()
            ]


class Int64Metric(_Metric[int]):
    """A metric holding integer measurements."""

    def record(self, tags: Mapping[str, str], value: int) -> None:
        """Record a measurement under the given tags."""
        self._store(tags, int(value))

    def list_metrics(self) -> list[MetricRepresentation[int]]:
        """Return every recorded series, in order of first recording."""
        return self._snapshot()


class Float64Metric(_Metric[float]):
    """A metric holding floating-point measurements."""

    def record(self, tags: Mapping[str, str], value: float) -> None:
        """Record a measurement under the given tags."""
        self._store(tags, float(value))

    def list_metrics(self) -> list[MetricRepresentation[float]]:
        """Return every recorded series, in order of first recording."""
        return self._snapshot()


def new_int64_metric(
    metric_id, view_name, description, unit, aggregation, tag_names
) -> Int64Metric | None:
    """Create an integer metric, or None when it has no view name (not configured)."""
    if not view_name:
        return None
    return Int64Metric(metric_id, view_name, description, unit, aggregation, tag_names)


def new_float64_metric(
    metric_id, view_name, description, unit, aggregation, tag_names
) -> Float64Metric | None:
    """Create a float metric, or None when it has no view name (not configured)."""
    if not view_name:
        return None
    return Float64Metric(metric_id, view_name, description, unit, aggregation, tag_names)