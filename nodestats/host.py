"""Host-level information: kernel, OS version and uptime."""

from __future__ import annotations

import logging
import platform
import sys
import time
from typing import Callable

import psutil

from .config import HostStatsConfig, MetricConfig
from .metrics import Aggregation, MetricID, new_int64_metric

log = logging.getLogger(__name__)


def kernel_version() -> str:
    """Return the running kernel's version.

    Raises OSError when it cannot be determined.
    """
    version = platform.version() if sys.platform == "win32" else platform.release()
    if not version:
        raise OSError("kernel version is unavailable")
    return version


def os_version() -> str:
    """Return a short description of the operating system and its version.

    Raises OSError when it cannot be determined.
    """
    if sys.platform == "win32":
        text = " ".join(part for part in ("windows", platform.version()) if part)
    else:
        try:
            release = platform.freedesktop_os_release()
        except OSError:
            release = {}
        text = " ".join(
            part for part in (release.get("ID", ""), release.get("VERSION_ID", "")) if part
        )
        if not text:
            text = " ".join(
                part for part in (platform.system().lower(), platform.release()) if part
            )
    if not text:
        raise OSError("OS version is unavailable")
    return text


def _system_uptime() -> float:
    return time.time() - psutil.boot_time()


class HostCollector:
    """Records the host's uptime, labelled with kernel and OS versions."""

    def __init__(
        self,
        config: HostStatsConfig,
        *,
        uptime: Callable[[], float] | None = None,
    ) -> None:
        self.config = config
        self._uptime_source = uptime or _system_uptime
        self.tags = {
            "kernel_version": kernel_version(),
            "os_version": os_version(),
        }
        metric_id = MetricID.HOST_UPTIME
        self.uptime = new_int64_metric(
            metric_id,
            config.metrics_configs.get(metric_id.value, MetricConfig()).display_name,
            "The uptime of the operating system",
            "second",
            Aggregation.LAST_VALUE,
            ["kernel_version", "os_version"],
        )

    def collect(self) -> None:
        """Take one sample of the host uptime."""
        try:
            seconds = self._uptime_source()
        except (OSError, psutil.Error) as exc:
            log.error("Failed to retrieve uptime of the host: %s", exc)
            return
        if self.uptime is not None:
            self.uptime.record(self.tags, int(seconds))