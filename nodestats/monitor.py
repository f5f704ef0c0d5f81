"""The system stats monitor and the registry of problem daemons."""

from __future__ import annotations

import json
import logging
import os
import threading

from .config import ConfigError, SystemStatsConfig
from .cpu import CPUCollector
from .disk import DiskCollector
from .host import HostCollector
from .memory import MemoryCollector
from .net import NetCollector
from .osfeature import OSFeatureCollector
from .problem import Monitor, ProblemDaemonHandler

log = logging.getLogger(__name__)

SYSTEM_STATS_MONITOR_NAME = "system-stats-monitor"

_handlers: dict[str, ProblemDaemonHandler] = {}
_handlers_lock = threading.Lock()


def register_problem_daemon(name: str, handler: ProblemDaemonHandler) -> None:
    """Register how to create a type of problem daemon.

    Raises ValueError when the name is already registered.
    """
    with _handlers_lock:
        if name in _handlers:
            raise ValueError(f"problem daemon {name!r} already registered")
        _handlers[name] = handler


def get_problem_daemon_handler(name: str) -> ProblemDaemonHandler:
    """Return the handler registered under name; raise KeyError if there is none."""
    with _handlers_lock:
        try:
            return _handlers[name]
        except KeyError:
            raise KeyError(f"problem daemon {name!r} is not registered") from None


class SystemStatsMonitor(Monitor):
    """Periodically samples every configured collector."""

    def __init__(self, config_path: str) -> None:
        self.config_path = config_path
        with open(config_path, encoding="utf-8") as handle:
            try:
                data = json.load(handle)
            except ValueError as exc:
                raise ConfigError(
                    f"Failed to unmarshal configuration file {config_path!r}: {exc}"
                ) from exc
        self.config = SystemStatsConfig.from_dict(data)
        self.config.apply_configuration()
        self.config.validate()

        config = self.config
        self.cpu_collector = (
            CPUCollector(config.cpu_config, config.proc_path)
            if config.cpu_config.metrics_configs
            else None
        )
        self.disk_collector = (
            DiskCollector(config.disk_config) if config.disk_config.metrics_configs else None
        )
        self.host_collector = (
            HostCollector(config.host_config) if config.host_config.metrics_configs else None
        )
        self.memory_collector = (
            MemoryCollector(config.memory_config) if config.memory_config.metrics_configs else None
        )
        self.os_feature_collector = None
        if config.os_feature_config.metrics_configs:
            # A relative known-modules path is relative to this config file.
            path = config.os_feature_config.known_modules_config_path
            if not os.path.isabs(path):
                config.os_feature_config.known_modules_config_path = os.path.join(
                    os.path.dirname(config_path), path
                )
            self.os_feature_collector = OSFeatureCollector(
                config.os_feature_config, config.proc_path
            )
        self.net_collector = (
            NetCollector(config.net_config, config.proc_path)
            if config.net_config.metrics_configs
            else None
        )

        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None

    def collect_once(self) -> None:
        """Sample every configured collector once."""
        collectors = (
            self.cpu_collector,
            self.disk_collector,
            self.host_collector,
            self.memory_collector,
            self.os_feature_collector,
            self.net_collector,
        )
        for collector in collectors:
            if collector is not None:
                collector.collect()

    def start(self) -> None:
        """Start sampling in the background; the monitor reports metrics only."""
        log.info("Start system stats monitor %s", self.config_path)
        self._stopping.clear()
        self._thread = threading.Thread(
            target=self._monitor_loop, name=SYSTEM_STATS_MONITOR_NAME, daemon=True
        )
        self._thread.start()
        return None

    def _monitor_loop(self) -> None:
        if not self._stopping.is_set():
            self.collect_once()
            while not self._stopping.wait(self.config.invoke_interval):
                self.collect_once()
        log.info("System stats monitor stopped: %s", self.config_path)

    def stop(self) -> None:
        """Stop sampling and wait for the background loop to finish."""
        log.info("Stop system stats monitor %s", self.config_path)
        self._stopping.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    @property
    def running(self) -> bool:
        """Whether the background loop is alive."""
        return self._thread is not None and self._thread.is_alive()


register_problem_daemon(
    SYSTEM_STATS_MONITOR_NAME,
    ProblemDaemonHandler(
        create_problem_daemon_or_die=SystemStatsMonitor,
        cmd_option_description="Set to config file paths.",
    ),
)