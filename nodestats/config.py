"""Configuration of the system stats monitor."""

from __future__ import annotations

import os
import re
import sys
from dataclasses import dataclass, field
from typing import Any

DEFAULT_PROC_PATH = "" if sys.platform == "win32" else "/proc"
DEFAULT_KNOWN_MODULES_CONFIG_PATH = "guestosconfig/known-modules.json"

_NANOSECOND = 1
_MICROSECOND = 1_000
_MILLISECOND = 1_000_000
_SECOND = 1_000_000_000
_MINUTE = 60 * _SECOND
_HOUR = 60 * _MINUTE
_MAX_DURATION = 2**63 - 1

_UNITS = {
    "ns": _NANOSECOND,
    "us": _MICROSECOND,
    "\u00b5s": _MICROSECOND,
    "\u03bcs": _MICROSECOND,
    "ms": _MILLISECOND,
    "s": _SECOND,
    "m": _MINUTE,
    "h": _HOUR,
}
_COMPONENT = re.compile(r"(\d*)(?:\.(\d*))?([^\d.]*)")


class ConfigError(ValueError):
    """Raised when a configuration cannot be parsed or is invalid."""


def _parse_nanoseconds(text: str) -> int:
    rest = text
    sign = 1
    if rest[:1] in ("-", "+"):
        sign = -1 if rest[0] == "-" else 1
        rest = rest[1:]
    if rest == "0":
        return 0
    if not rest:
        raise ConfigError(f"invalid duration {text!r}")
    total = 0
    pos = 0
    while pos < len(rest):
        match = _COMPONENT.match(rest, pos)
        whole, frac, unit = match.groups()
        if not whole and not frac:
            raise ConfigError(f"invalid duration {text!r}")
        if not unit:
            raise ConfigError(f"missing unit in duration {text!r}")
        if unit not in _UNITS:
            raise ConfigError(f"unknown unit {unit!r} in duration {text!r}")
        scale = _UNITS[unit]
        value = int(whole or "0") * scale
        if frac:
            value += int(frac) * scale // 10 ** len(frac)
        total += value
        if total > _MAX_DURATION:
            raise ConfigError(f"invalid duration {text!r}")
        pos = match.end()
    return sign * total


def parse_duration(text: str) -> float:
    """Parse a duration such as "1m30s" or "250ms" into seconds."""
    return _parse_nanoseconds(text) / _SECOND


def _format_fraction(value: int, precision: int) -> str:
    whole, rem = divmod(value, 10**precision)
    digits = f"{rem:0{precision}d}".rstrip("0")
    return f"{whole}.{digits}" if digits else str(whole)


def format_duration(seconds: float) -> str:
    """Format a duration in seconds the way "1m0s" or "1.5ms" are written."""
    nanos = round(seconds * _SECOND)
    if nanos == 0:
        return "0s"
    sign = "-" if nanos < 0 else ""
    u = abs(nanos)
    if u < _SECOND:
        if u < _MICROSECOND:
            body = f"{u}ns"
        elif u < _MILLISECOND:
            body = _format_fraction(u, 3) + "\u00b5s"
        else:
            body = _format_fraction(u, 6) + "ms"
        return sign + body
    total_seconds, frac_nanos = divmod(u, _SECOND)
    body = _format_fraction((total_seconds % 60) * _SECOND + frac_nanos, 9) + "s"
    if total_seconds >= 60:
        body = f"{(total_seconds // 60) % 60}m" + body
        hours = total_seconds // 3600
        if hours:
            body = f"{hours}h" + body
    return sign + body


@dataclass
class MetricConfig:
    """Per-metric settings."""

    display_name: str = ""


@dataclass
class CPUStatsConfig:
    metrics_configs: dict[str, MetricConfig] = field(default_factory=dict)


@dataclass
class DiskStatsConfig:
    metrics_configs: dict[str, MetricConfig] = field(default_factory=dict)
    include_root_blk: bool = False
    include_all_attached_blk: bool = False
    lsblk_timeout_string: str = ""
    lsblk_timeout: float = 0.0


@dataclass
class HostStatsConfig:
    metrics_configs: dict[str, MetricConfig] = field(default_factory=dict)


@dataclass
class MemoryStatsConfig:
    metrics_configs: dict[str, MetricConfig] = field(default_factory=dict)


@dataclass
class OSFeatureStatsConfig:
    metrics_configs: dict[str, MetricConfig] = field(default_factory=dict)
    known_modules_config_path: str = ""


@dataclass
class NetStatsConfig:
    metrics_configs: dict[str, MetricConfig] = field(default_factory=dict)
    exclude_interface_regexp: re.Pattern[str] | None = None


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{key!r} must be an object")
    return value


def _field(data: dict[str, Any], key: str, kind: type, default: Any) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, kind):
        raise ConfigError(f"{key!r} must be of type {kind.__name__}")
    return value


def _metrics_configs(data: dict[str, Any]) -> dict[str, MetricConfig]:
    configs = _section(data, "metricsConfigs")
    result = {}
    for name, entry in configs.items():
        if not isinstance(entry, dict):
            raise ConfigError(f"metric config {name!r} must be an object")
        result[name] = MetricConfig(display_name=_field(entry, "displayName", str, ""))
    return result


def _compile_regexp(pattern: str) -> re.Pattern[str] | None:
    if not pattern:
        return None
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ConfigError(f"invalid regexp {pattern!r}: {exc}") from exc


@dataclass
class SystemStatsConfig:
    """Top-level system stats monitor configuration."""

    cpu_config: CPUStatsConfig = field(default_factory=CPUStatsConfig)
    disk_config: DiskStatsConfig = field(default_factory=DiskStatsConfig)
    host_config: HostStatsConfig = field(default_factory=HostStatsConfig)
    memory_config: MemoryStatsConfig = field(default_factory=MemoryStatsConfig)
    os_feature_config: OSFeatureStatsConfig = field(default_factory=OSFeatureStatsConfig)
    net_config: NetStatsConfig = field(default_factory=NetStatsConfig)
    invoke_interval_string: str = ""
    invoke_interval: float = 0.0
    proc_path: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SystemStatsConfig:
        """Build a configuration from its decoded JSON form."""
        if not isinstance(data, dict):
            raise ConfigError("configuration must be an object")
        cpu = _section(data, "cpu")
        disk = _section(data, "disk")
        host = _section(data, "host")
        memory = _section(data, "memory")
        os_feature = _section(data, "osFeature")
        net = _section(data, "net")
        return cls(
            cpu_config=CPUStatsConfig(_metrics_configs(cpu)),
            disk_config=DiskStatsConfig(
                metrics_configs=_metrics_configs(disk),
                include_root_blk=_field(disk, "includeRootBlk", bool, False),
                include_all_attached_blk=_field(disk, "includeAllAttachedBlk", bool, False),
                lsblk_timeout_string=_field(disk, "lsblkTimeout", str, ""),
            ),
            host_config=HostStatsConfig(_metrics_configs(host)),
            memory_config=MemoryStatsConfig(_metrics_configs(memory)),
            os_feature_config=OSFeatureStatsConfig(
                metrics_configs=_metrics_configs(os_feature),
                known_modules_config_path=_field(os_feature, "knownModulesConfigPath", str, ""),
            ),
            net_config=NetStatsConfig(
                metrics_configs=_metrics_configs(net),
                exclude_interface_regexp=_compile_regexp(
                    _field(net, "excludeInterfaceRegexp", str, "")
                ),
            ),
            invoke_interval_string=_field(data, "invokeInterval", str, ""),
            proc_path=_field(data, "procPath", str, ""),
        )

    def apply_configuration(self) -> None:
        """Fill in defaults and parse the duration strings."""
        if not self.invoke_interval_string:
            self.invoke_interval_string = format_duration(60)
        if not self.proc_path:
            self.proc_path = DEFAULT_PROC_PATH
        if not self.disk_config.lsblk_timeout_string:
            self.disk_config.lsblk_timeout_string = format_duration(5)
        if not self.os_feature_config.known_modules_config_path:
            self.os_feature_config.known_modules_config_path = DEFAULT_KNOWN_MODULES_CONFIG_PATH

        try:
            self.invoke_interval = parse_duration(self.invoke_interval_string)
        except ConfigError as exc:
            raise ConfigError(
                f"error in parsing InvokeIntervalString {self.invoke_interval_string!r}: {exc}"
            ) from exc
        try:
            self.disk_config.lsblk_timeout = parse_duration(self.disk_config.lsblk_timeout_string)
        except ConfigError as exc:
            raise ConfigError(
                "error in parsing LsblkTimeoutString "
                f"{self.disk_config.lsblk_timeout_string!r}: {exc}"
            ) from exc

    def _validate_proc_path(self) -> None:
        if sys.platform == "win32":
            return
        try:
            os.stat(self.proc_path)
        except OSError as exc:
            raise ConfigError(f"ProcPath {self.proc_path} check failed: {exc}") from exc

    def validate(self) -> None:
        """Raise ConfigError unless the settings are valid."""
        if self.invoke_interval <= 0:
            raise ConfigError(
                f"InvokeInterval {format_duration(self.invoke_interval)} must be above 0s"
            )
        self._validate_proc_path()
        timeout = self.disk_config.lsblk_timeout
        if timeout <= 0:
            raise ConfigError(f"LsblkTimeout {format_duration(timeout)} must be above 0s")
        if timeout > self.invoke_interval:
            raise ConfigError(
                f"LsblkTimeout {format_duration(timeout)} must be shorter than "
                f"InvokeInterval {format_duration(self.invoke_interval)}"
            )