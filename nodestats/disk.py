"""Disk IO and disk space statistics."""

from __future__ import annotations

import logging
import math
import os
import subprocess
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Sequence

import psutil

from .config import DiskStatsConfig, MetricConfig
from .metrics import (
    DEVICE_NAME_LABEL,
    DIRECTION_LABEL,
    FS_TYPE_LABEL,
    MOUNT_OPTION_LABEL,
    STATE_LABEL,
    Aggregation,
    MetricID,
    new_float64_metric,
    new_int64_metric,
)

log = logging.getLogger(__name__)

_SECTOR_SIZE = 512
_DISKSTATS_PATH = "/proc/diskstats"


@dataclass(frozen=True)
class IOCounters:
    """Cumulative IO counters of one block device; times are in milliseconds."""

    read_count: int = 0
    merged_read_count: int = 0
    write_count: int = 0
    merged_write_count: int = 0
    read_bytes: int = 0
    write_bytes: int = 0
    read_time: int = 0
    write_time: int = 0
    io_time: int = 0
    weighted_io: int = 0


def _parse_diskstats(text: str) -> dict[str, IOCounters]:
    """Parse the kernel's diskstats file; lines with too few fields are skipped."""
    result: dict[str, IOCounters] = {}
    for line in text.splitlines():
        fields = line.split()
        if len(fields) < 14:
            continue
        try:
            (
                reads,
                merged_reads,
                read_sectors,
                read_time,
                writes,
                merged_writes,
                write_sectors,
                write_time,
                _in_progress,
                io_time,
                weighted_io,
            ) = (int(value) for value in fields[3:14])
        except ValueError as exc:
            raise ValueError(f"malformed diskstats line: {line!r}") from exc
        result[fields[2]] = IOCounters(
            read_count=reads,
            merged_read_count=merged_reads,
            write_count=writes,
            merged_write_count=merged_writes,
            read_bytes=read_sectors * _SECTOR_SIZE,
            write_bytes=write_sectors * _SECTOR_SIZE,
            read_time=read_time,
            write_time=write_time,
            io_time=io_time,
            weighted_io=weighted_io,
        )
    return result


def _system_io_counters(devices: Sequence[str]) -> dict[str, IOCounters]:
    if os.path.exists(_DISKSTATS_PATH):
        with open(_DISKSTATS_PATH, encoding="utf-8") as handle:
            stats = _parse_diskstats(handle.read())
    else:
        raw = psutil.disk_io_counters(perdisk=True) or {}
        stats = {
            name: IOCounters(
                read_count=counters.read_count,
                merged_read_count=getattr(counters, "read_merged_count", 0),
                write_count=counters.write_count,
                merged_write_count=getattr(counters, "write_merged_count", 0),
                read_bytes=counters.read_bytes,
                write_bytes=counters.write_bytes,
                read_time=counters.read_time,
                write_time=counters.write_time,
                io_time=getattr(counters, "busy_time", 0),
            )
            for name, counters in raw.items()
        }
    if devices:
        wanted = set(devices)
        stats = {name: counters for name, counters in stats.items() if name in wanted}
    return stats


def list_root_block_devices(timeout: float) -> list[str]:
    """List block devices that are neither slaves nor holders, using lsblk."""
    # -d skips slave/holder devices, -n drops the heading, -o NAME prints names only.
    try:
        completed = subprocess.run(
            ["lsblk", "-d", "-n", "-o", "NAME"],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        stdout = completed.stdout or ""
        if completed.returncode != 0:
            log.error("Error calling lsblk")
    except (OSError, subprocess.SubprocessError):
        log.error("Error calling lsblk")
        stdout = ""
    return stdout.strip().split("\n")


def list_attached_block_devices(partitions: Iterable[Any]) -> list[str]:
    """List the devices of all currently attached partitions."""
    return [partition.device for partition in partitions]


def _display_name(config: DiskStatsConfig, metric_id: MetricID) -> str:
    return config.metrics_configs.get(metric_id.value, MetricConfig()).display_name


_DIRECTIONS = (
    ("read", "read_count", "merged_read_count", "read_bytes", "read_time"),
    ("write", "write_count", "merged_write_count", "write_bytes", "write_time"),
)


class DiskCollector:
    """Records disk IO counters and disk space usage."""

    def __init__(
        self,
        config: DiskStatsConfig,
        *,
        partitions: Callable[[], Sequence[Any]] | None = None,
        io_counters: Callable[[Sequence[str]], Mapping[str, IOCounters]] | None = None,
        disk_usage: Callable[[str], Any] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.config = config
        self._partitions = partitions or (lambda: psutil.disk_partitions(all=False))
        self._io_counters = io_counters or _system_io_counters
        self._disk_usage = disk_usage or psutil.disk_usage
        self._clock = clock or time.time
        self._last: defaultdict[str, dict[str, int]] = defaultdict(dict)
        self.last_sample_time = 0.0

        def name(metric_id: MetricID) -> str:
            return _display_name(config, metric_id)

        device = [DEVICE_NAME_LABEL]
        device_direction = [DEVICE_NAME_LABEL, DIRECTION_LABEL]
        self.io_time = new_int64_metric(
            MetricID.DISK_IO_TIME,
            name(MetricID.DISK_IO_TIME),
            "The IO time spent on the disk, in ms",
            "ms",
            Aggregation.SUM,
            device,
        )
        self.weighted_io = new_int64_metric(
            MetricID.DISK_WEIGHTED_IO,
            name(MetricID.DISK_WEIGHTED_IO),
            "The weighted IO on the disk, in ms",
            "ms",
            Aggregation.SUM,
            device,
        )
        self.avg_queue_len = new_float64_metric(
            MetricID.DISK_AVG_QUEUE_LEN,
            name(MetricID.DISK_AVG_QUEUE_LEN),
            "The average queue length on the disk",
            "1",
            Aggregation.LAST_VALUE,
            device,
        )
        self.ops_count = new_int64_metric(
            MetricID.DISK_OPS_COUNT,
            name(MetricID.DISK_OPS_COUNT),
            "Disk operations count",
            "1",
            Aggregation.SUM,
            device_direction,
        )
        self.merged_ops_count = new_int64_metric(
            MetricID.DISK_MERGED_OPS_COUNT,
            name(MetricID.DISK_MERGED_OPS_COUNT),
            "Disk merged operations count",
            "1",
            Aggregation.SUM,
            device_direction,
        )
        self.ops_bytes = new_int64_metric(
            MetricID.DISK_OPS_BYTES,
            name(MetricID.DISK_OPS_BYTES),
            "Bytes transferred in disk operations",
            "1",
            Aggregation.SUM,
            device_direction,
        )
        self.ops_time = new_int64_metric(
            MetricID.DISK_OPS_TIME,
            name(MetricID.DISK_OPS_TIME),
            "Time spent in disk operations, in ms",
            "ms",
            Aggregation.SUM,
            device_direction,
        )
        self.bytes_used = new_int64_metric(
            MetricID.DISK_BYTES_USED,
            name(MetricID.DISK_BYTES_USED),
            "Disk bytes used, in Bytes",
            "Byte",
            Aggregation.LAST_VALUE,
            [DEVICE_NAME_LABEL, FS_TYPE_LABEL, MOUNT_OPTION_LABEL, STATE_LABEL],
        )

    def record_io_counters(self, counters: Mapping[str, IOCounters], sample_time: float) -> None:
        """Record the increase of every counter since the previous sample."""
        last_io_times = self._last["io_time"]
        last_weighted_ios = self._last["weighted_io"]
        for device, stat in counters.items():
            tags = {DEVICE_NAME_LABEL: device}
            history_exists = device in last_io_times
            last_io_time = last_io_times.get(device, 0)
            last_weighted_io = last_weighted_ios.get(device, 0)
            last_io_times[device] = stat.io_time
            last_weighted_ios[device] = stat.weighted_io

            if self.io_time is not None:
                self.io_time.record(tags, stat.io_time - last_io_time)
            if self.weighted_io is not None:
                self.weighted_io.record(tags, stat.weighted_io - last_weighted_io)
            if history_exists:
                avg_queue_len = 0.0
                delta = stat.weighted_io - last_weighted_io
                if delta:
                    elapsed_ms = (sample_time - self.last_sample_time) * 1000
                    if elapsed_ms:
                        avg_queue_len = delta / elapsed_ms
                    else:
                        avg_queue_len = math.copysign(math.inf, delta)
                if self.avg_queue_len is not None:
                    self.avg_queue_len.record(tags, avg_queue_len)

            for direction, *attributes in _DIRECTIONS:
                tags = {DEVICE_NAME_LABEL: device, DIRECTION_LABEL: direction}
                metrics = (self.ops_count, self.merged_ops_count, self.ops_bytes, self.ops_time)
                for metric, attribute in zip(metrics, attributes):
                    if metric is None:
                        continue
                    value = getattr(stat, attribute)
                    metric.record(tags, value - self._last[attribute].get(device, 0))
                    self._last[attribute][device] = value

    def collect(self) -> None:
        """Take one sample of disk IO and disk space usage."""
        devices: list[str] = []
        if self.config.include_root_blk:
            devices.extend(list_root_block_devices(self.config.lsblk_timeout))

        try:
            partitions = list(self._partitions())
        except (OSError, psutil.Error) as exc:
            log.error("Failed to list disk partitions: %s", exc)
            return

        if self.config.include_all_attached_blk:
            devices.extend(list_attached_block_devices(partitions))

        try:
            counters = self._io_counters(devices)
        except (OSError, ValueError, psutil.Error) as exc:
            log.error("Failed to retrieve disk IO counters: %s", exc)
            return

        sample_time = self._clock()
        try:
            self.record_io_counters(counters, sample_time)
            self._record_usage(partitions)
        finally:
            self.last_sample_time = sample_time

    def _record_usage(self, partitions: Sequence[Any]) -> None:
        if self.bytes_used is None:
            return
        # Report each device once even when it is mounted several times.
        seen: set[str] = set()
        for partition in partitions:
            if partition.device in seen:
                continue
            seen.add(partition.device)
            try:
                usage = self._disk_usage(partition.mountpoint)
            except (OSError, psutil.Error) as exc:
                log.error("Failed to retrieve disk usage for %r: %s", partition.mountpoint, exc)
                continue
            base = {
                DEVICE_NAME_LABEL: partition.device.removeprefix("/dev/"),
                FS_TYPE_LABEL: partition.fstype,
                MOUNT_OPTION_LABEL: partition.opts,
            }
            self.bytes_used.record({**base, STATE_LABEL: "free"}, int(usage.free))
            self.bytes_used.record({**base, STATE_LABEL: "used"}, int(usage.used))