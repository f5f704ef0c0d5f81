"""CPU load, usage time and kernel scheduler statistics."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable

import psutil

from .config import CPUStatsConfig, MetricConfig
from .metrics import (
    CPU_LABEL,
    STAGE_LABEL,
    STATE_LABEL,
    Aggregation,
    MetricID,
    new_float64_metric,
    new_int64_metric,
)

log = logging.getLogger(__name__)

# Ratio between one second and one USER_HZ clock tick; 100 on nearly every architecture.
CLOCK_TICK = 100.0

_USAGE_STATES = (
    "user",
    "system",
    "idle",
    "nice",
    "iowait",
    "irq",
    "softirq",
    "steal",
    "guest",
    "guest_nice",
)

_CPU_STAGES = (
    ("user", "user"),
    ("nice", "nice"),
    ("system", "system"),
    ("idle", "idle"),
    ("iowait", "iowait"),
    ("iRQ", "irq"),
    ("softIRQ", "softirq"),
    ("steal", "steal"),
    ("guest", "guest"),
    ("guestNice", "guest_nice"),
)


@dataclass(frozen=True)
class CPUTimes:
    """Time one CPU (or all CPUs together) spent in each state, in seconds."""

    user: float = 0.0
    nice: float = 0.0
    system: float = 0.0
    idle: float = 0.0
    iowait: float = 0.0
    irq: float = 0.0
    softirq: float = 0.0
    steal: float = 0.0
    guest: float = 0.0
    guest_nice: float = 0.0


@dataclass
class ProcStat:
    """The parts of the kernel's stat file that the collector uses."""

    cpu_total: CPUTimes = field(default_factory=CPUTimes)
    cpus: list[CPUTimes] = field(default_factory=list)
    boot_time: int = 0
    irq_total: int = 0
    context_switches: int = 0
    process_created: int = 0
    processes_running: int = 0
    processes_blocked: int = 0


def _parse_int(value: str, line: str) -> int:
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"couldn't parse {value!r} in line {line!r}") from exc


def _parse_cpu_times(parts: list[str], line: str) -> CPUTimes:
    try:
        values = [float(part) / CLOCK_TICK for part in parts[1:11]]
    except ValueError as exc:
        raise ValueError(f"couldn't parse cpu line {line!r}") from exc
    return CPUTimes(*values)


_COUNTERS = {
    "btime": "boot_time",
    "intr": "irq_total",
    "ctxt": "context_switches",
    "processes": "process_created",
    "procs_running": "processes_running",
    "procs_blocked": "processes_blocked",
}


def parse_proc_stat(text: str) -> ProcStat:
    """Parse the contents of the kernel's stat file.

    Raises ValueError when a line that is used cannot be parsed.
    """
    stat = ProcStat()
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        key = parts[0]
        if key in _COUNTERS:
            setattr(stat, _COUNTERS[key], _parse_int(parts[1], line))
        elif key == "cpu":
            stat.cpu_total = _parse_cpu_times(parts, line)
        elif key.startswith("cpu"):
            cpu_id = _parse_int(key[3:], line)
            if cpu_id < 0:
                raise ValueError(f"invalid cpu id in line {line!r}")
            missing = cpu_id + 1 - len(stat.cpus)
            if missing > 0:
                stat.cpus.extend(CPUTimes() for _ in range(missing))
            stat.cpus[cpu_id] = _parse_cpu_times(parts, line)
    return stat


def _display_name(config: CPUStatsConfig, metric_id: MetricID) -> str:
    return config.metrics_configs.get(metric_id.value, MetricConfig()).display_name


class CPUCollector:
    """Records CPU load, usage time and scheduler counters."""

    def __init__(
        self,
        config: CPUStatsConfig,
        proc_path: str,
        *,
        cpu_times: Callable[[], Any] | None = None,
        load_average: Callable[[], tuple[float, float, float]] | None = None,
    ) -> None:
        self.config = config
        self.proc_path = proc_path
        self._cpu_times = cpu_times or (lambda: psutil.cpu_times(percpu=False))
        self._load_average = load_average or psutil.getloadavg
        self._supports_proc = sys.platform != "win32"
        self._last_usage_time: dict[str, float] = {}

        def name(metric_id: MetricID) -> str:
            return _display_name(config, metric_id)

        self.runnable_task_count = new_float64_metric(
            MetricID.CPU_RUNNABLE_TASK_COUNT,
            name(MetricID.CPU_RUNNABLE_TASK_COUNT),
            "The average number of runnable tasks in the run-queue during the last minute",
            "1",
            Aggregation.LAST_VALUE,
            [],
        )
        self.usage_time = new_float64_metric(
            MetricID.CPU_USAGE_TIME,
            name(MetricID.CPU_USAGE_TIME),
            "CPU usage, in seconds",
            "s",
            Aggregation.SUM,
            [STATE_LABEL],
        )
        self.load_1m = new_float64_metric(
            MetricID.CPU_LOAD_1M,
            name(MetricID.CPU_LOAD_1M),
            "CPU average load (1m)",
            "1",
            Aggregation.LAST_VALUE,
            [],
        )
        self.load_5m = new_float64_metric(
            MetricID.CPU_LOAD_5M,
            name(MetricID.CPU_LOAD_5M),
            "CPU average load (5m)",
            "1",
            Aggregation.LAST_VALUE,
            [],
        )
        self.load_15m = new_float64_metric(
            MetricID.CPU_LOAD_15M,
            name(MetricID.CPU_LOAD_15M),
            "CPU average load (15m)",
            "1",
            Aggregation.LAST_VALUE,
            [],
        )
        self.processes_total = new_int64_metric(
            MetricID.SYSTEM_PROCESSES_TOTAL,
            name(MetricID.SYSTEM_PROCESSES_TOTAL),
            "Number of forks since boot.",
            "1",
            Aggregation.SUM,
            [],
        )
        self.procs_running = new_int64_metric(
            MetricID.SYSTEM_PROCS_RUNNING,
            name(MetricID.SYSTEM_PROCS_RUNNING),
            "Number of processes currently running.",
            "1",
            Aggregation.LAST_VALUE,
            [],
        )
        self.procs_blocked = new_int64_metric(
            MetricID.SYSTEM_PROCS_BLOCKED,
            name(MetricID.SYSTEM_PROCS_BLOCKED),
            "Number of processes currently blocked.",
            "1",
            Aggregation.LAST_VALUE,
            [],
        )
        self.interrupts_total = new_int64_metric(
            MetricID.SYSTEM_INTERRUPTS_TOTAL,
            name(MetricID.SYSTEM_INTERRUPTS_TOTAL),
            "Total number of interrupts serviced (cumulative).",
            "1",
            Aggregation.SUM,
            [],
        )
        self.cpu_stat = new_float64_metric(
            MetricID.SYSTEM_CPU_STAT,
            name(MetricID.SYSTEM_CPU_STAT),
            "Cumulative time each cpu spent in various stages.",
            "ns",
            Aggregation.SUM,
            [CPU_LABEL, STAGE_LABEL],
        )

    def collect(self) -> None:
        """Take one sample of every configured CPU metric."""
        self._record_load()
        self._record_usage()
        self._record_system_stats()

    def _record_load(self) -> None:
        if not self._supports_proc:
            return
        metrics = (self.runnable_task_count, self.load_1m, self.load_5m, self.load_15m)
        if all(metric is None for metric in metrics):
            return
        try:
            load1, load5, load15 = self._load_average()
        except OSError as exc:
            log.error("Failed to retrieve average CPU load: %s", exc)
            return
        if self.runnable_task_count is not None:
            self.runnable_task_count.record({}, load1)
        if self.load_1m is not None:
            self.load_1m.record({}, load1)
        if self.load_5m is not None:
            self.load_5m.record({}, load5)
        if self.load_15m is not None:
            self.load_15m.record({}, load15)

    def _record_usage(self) -> None:
        if self.usage_time is None:
            return
        try:
            times = self._cpu_times()
        except (OSError, psutil.Error) as exc:
            log.error("Failed to retrieve CPU timers stat: %s", exc)
            return
        for state in _USAGE_STATES:
            current = CLOCK_TICK * getattr(times, state, 0.0)
            self.usage_time.record(
                {STATE_LABEL: state}, current - self._last_usage_time.get(state, 0.0)
            )
            self._last_usage_time[state] = current

    def _record_system_stats(self) -> None:
        if not self._supports_proc:
            return
        metrics = (
            self.cpu_stat,
            self.interrupts_total,
            self.processes_total,
            self.procs_blocked,
            self.procs_running,
        )
        if all(metric is None for metric in metrics):
            return
        try:
            with open(os.path.join(self.proc_path, "stat"), encoding="utf-8") as handle:
                stats = parse_proc_stat(handle.read())
        except (OSError, ValueError) as exc:
            log.error("Failed to retrieve cpu/process stats: %s", exc)
            return

        if self.processes_total is not None:
            self.processes_total.record({}, stats.process_created)
        if self.procs_running is not None:
            self.procs_running.record({}, stats.processes_running)
        if self.procs_blocked is not None:
            self.procs_blocked.record({}, stats.processes_blocked)
        if self.interrupts_total is not None:
            self.interrupts_total.record({}, stats.irq_total)
        if self.cpu_stat is not None:
            for index, cpu in enumerate(stats.cpus):
                for stage, attribute in _CPU_STAGES:
                    self.cpu_stat.record(
                        {CPU_LABEL: f"cpu{index}", STAGE_LABEL: stage},
                        getattr(cpu, attribute),
                    )