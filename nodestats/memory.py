"""Memory usage statistics."""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, Callable

import psutil

from .config import MemoryStatsConfig, MetricConfig
from .metrics import STATE_LABEL, Aggregation, MetricID, new_int64_metric

log = logging.getLogger(__name__)

_KIB = 1024


def parse_meminfo(text: str) -> dict[str, int]:
    """Parse the kernel's meminfo file into a mapping of field name to value in kB.

    Raises ValueError on a malformed line.
    """
    result: dict[str, int] = {}
    for line in text.splitlines():
        parts = line.split()
        if not parts:
            continue
        if len(parts) < 2:
            raise ValueError(f"malformed meminfo line: {line!r}")
        try:
            value = int(parts[1])
        except ValueError as exc:
            raise ValueError(f"malformed meminfo line: {line!r}") from exc
        result[parts[0].removesuffix(":")] = value
    return result


def _display_name(config: MemoryStatsConfig, metric_id: MetricID) -> str:
    return config.metrics_configs.get(metric_id.value, MetricConfig()).display_name


class MemoryCollector:
    """Records memory usage broken down by state."""

    def __init__(
        self,
        config: MemoryStatsConfig,
        *,
        proc_path: str = "/proc",
        virtual_memory: Callable[[], Any] | None = None,
    ) -> None:
        self.config = config
        self.proc_path = proc_path
        self._virtual_memory = virtual_memory or psutil.virtual_memory
        self._windows = sys.platform == "win32"

        self.bytes_used = new_int64_metric(
            MetricID.MEMORY_BYTES_USED,
            _display_name(config, MetricID.MEMORY_BYTES_USED),
            "Memory usage by each memory state, in Bytes. "
            "Summing values of all states yields the total memory on the node.",
            "Byte",
            Aggregation.LAST_VALUE,
            [STATE_LABEL],
        )
        self.anonymous_used = new_int64_metric(
            MetricID.MEMORY_ANONYMOUS_USED,
            _display_name(config, MetricID.MEMORY_ANONYMOUS_USED),
            "Anonymous memory usage, in Bytes. "
            "Summing values of all states yields the total anonymous memory used.",
            "Byte",
            Aggregation.LAST_VALUE,
            [STATE_LABEL],
        )
        self.page_cache_used = new_int64_metric(
            MetricID.MEMORY_PAGE_CACHE_USED,
            _display_name(config, MetricID.MEMORY_PAGE_CACHE_USED),
            "Page cache memory usage, in Bytes. "
            "Summing values of all states yields the total anonymous memory used.",
            "Byte",
            Aggregation.LAST_VALUE,
            [STATE_LABEL],
        )
        self.unevictable_used = new_int64_metric(
            MetricID.MEMORY_UNEVICTABLE_USED,
            _display_name(config, MetricID.MEMORY_UNEVICTABLE_USED),
            "Unevictable memory usage, in Bytes",
            "Byte",
            Aggregation.LAST_VALUE,
            [],
        )
        self.dirty_used = new_int64_metric(
            MetricID.MEMORY_DIRTY_USED,
            _display_name(config, MetricID.MEMORY_DIRTY_USED),
            "Dirty pages usage, in Bytes. Dirty means the memory is waiting to be "
            "written back to disk, and writeback means the memory is actively being "
            "written back to disk.",
            "Byte",
            Aggregation.LAST_VALUE,
            [STATE_LABEL],
        )

    def collect(self) -> None:
        """Take one sample of every configured memory metric."""
        if self._windows:
            self._collect_virtual_memory()
        else:
            self._collect_meminfo()

    def _collect_virtual_memory(self) -> None:
        try:
            info = self._virtual_memory()
        except (OSError, psutil.Error) as exc:
            log.error("cannot get memory metrics: %s", exc)
            return
        if self.bytes_used is not None:
            self.bytes_used.record({STATE_LABEL: "free"}, int(info.available) * _KIB)
            self.bytes_used.record({STATE_LABEL: "used"}, int(info.used) * _KIB)

    def _collect_meminfo(self) -> None:
        try:
            with open(os.path.join(self.proc_path, "meminfo"), encoding="utf-8") as handle:
                info = parse_meminfo(handle.read())
        except (OSError, ValueError) as exc:
            log.error("Failed to retrieve memory stats: %s", exc)
            return

        def record(metric, state: str | None, key: str) -> None:
            if key in info:
                tags = {} if state is None else {STATE_LABEL: state}
                metric.record(tags, info[key] * _KIB)

        if self.bytes_used is not None:
            for state, key in (
                ("free", "MemFree"),
                ("buffered", "Buffers"),
                ("cached", "Cached"),
                ("slab", "Slab"),
            ):
                record(self.bytes_used, state, key)
            parts = ("MemTotal", "MemFree", "Buffers", "Cached", "Slab")
            if all(key in info for key in parts):
                used = info["MemTotal"] - sum(info[key] for key in parts[1:])
                self.bytes_used.record({STATE_LABEL: "used"}, used * _KIB)

        if self.dirty_used is not None:
            record(self.dirty_used, "dirty", "Dirty")
            record(self.dirty_used, "writeback", "Writeback")

        if self.anonymous_used is not None:
            record(self.anonymous_used, "active", "Active(anon)")
            record(self.anonymous_used, "inactive", "Inactive(anon)")

        if self.page_cache_used is not None:
            record(self.page_cache_used, "active", "Active(file)")
            record(self.page_cache_used, "inactive", "Inactive(file)")

        if self.unevictable_used is not None:
            record(self.unevictable_used, None, "Unevictable")