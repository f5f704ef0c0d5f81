"""Network interface statistics."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Callable, Iterable, Mapping

from .config import ConfigError, NetStatsConfig
from .metrics import INTERFACE_NAME_LABEL, Aggregation, MetricID, new_int64_metric

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class NetDevLine:
    """Counters of one network interface."""

    name: str
    rx_bytes: int = 0
    rx_packets: int = 0
    rx_errors: int = 0
    rx_dropped: int = 0
    rx_fifo: int = 0
    rx_frame: int = 0
    rx_compressed: int = 0
    rx_multicast: int = 0
    tx_bytes: int = 0
    tx_packets: int = 0
    tx_errors: int = 0
    tx_dropped: int = 0
    tx_fifo: int = 0
    tx_collisions: int = 0
    tx_carrier: int = 0
    tx_compressed: int = 0


_COUNTER_FIELDS = tuple(f.name for f in fields(NetDevLine) if f.name != "name")


def parse_net_dev(text: str) -> dict[str, NetDevLine]:
    """Parse the kernel's net/dev file into counters keyed by interface name.

    The two heading lines are skipped. Raises ValueError on a malformed line.
    """
    result: dict[str, NetDevLine] = {}
    for line in text.splitlines()[2:]:
        if not line.strip():
            continue
        name, colon, rest = line.partition(":")
        if not colon:
            raise ValueError(f"invalid net/dev line, missing colon: {line!r}")
        name = name.strip()
        values = rest.split()
        if len(values) < len(_COUNTER_FIELDS):
            raise ValueError(f"invalid net/dev line, too few fields: {line!r}")
        try:
            counters = [int(value) for value in values[: len(_COUNTER_FIELDS)]]
        except ValueError as exc:
            raise ValueError(f"invalid net/dev line: {line!r}") from exc
        result[name] = NetDevLine(name, *counters)
    return result


MetricFactory = Callable[..., Any]


@dataclass(frozen=True)
class _InterfaceStatCollector:
    metric: Any
    exporter: Callable[[NetDevLine], int]


class InterfaceStatRecorder:
    """Records several metrics from the same interface counters."""

    def __init__(self, new_metric: MetricFactory = new_int64_metric) -> None:
        self._new_metric = new_metric
        self.collectors: dict[MetricID, _InterfaceStatCollector] = {}

    def register(
        self,
        metric_id: MetricID,
        view_name: str,
        description: str,
        unit: str,
        aggregation: Aggregation,
        tag_names: Iterable[str],
        exporter: Callable[[NetDevLine], int],
    ) -> None:
        """Create a metric and the function that extracts its value.

        Raises ValueError when the metric is already registered.
        """
        if metric_id in self.collectors:
            raise ValueError(f"metric {MetricID(metric_id).value!r} already registered")
        metric = self._new_metric(
            metric_id, view_name, description, unit, aggregation, list(tag_names)
        )
        self.collectors[metric_id] = _InterfaceStatCollector(metric, exporter)

    def record_with_same_tags(self, stat: NetDevLine, tags: Mapping[str, str]) -> None:
        """Record every registered metric for one interface under the same tags."""
        for metric_id, collector in self.collectors.items():
            if collector.metric is None:
                continue
            measurement = collector.exporter(stat)
            collector.metric.record(tags, measurement)
            log.debug(
                "Metric %r record measurement %d with tags %s",
                MetricID(metric_id).value,
                measurement,
                dict(tags),
            )


def _field_exporter(attribute: str) -> Callable[[NetDevLine], int]:
    return lambda stat: int(getattr(stat, attribute))


_NET_METRICS = (
    (MetricID.NET_DEV_RX_BYTES, "Cumulative count of bytes received.", "Byte", "rx_bytes"),
    (MetricID.NET_DEV_RX_PACKETS, "Cumulative count of packets received.", "1", "rx_packets"),
    (
        MetricID.NET_DEV_RX_ERRORS,
        "Cumulative count of receive errors encountered.",
        "1",
        "rx_errors",
    ),
    (
        MetricID.NET_DEV_RX_DROPPED,
        "Cumulative count of packets dropped while receiving.",
        "1",
        "rx_dropped",
    ),
    (MetricID.NET_DEV_RX_FIFO, "Cumulative count of FIFO buffer errors.", "1", "rx_fifo"),
    (MetricID.NET_DEV_RX_FRAME, "Cumulative count of packet framing errors.", "1", "rx_frame"),
    (
        MetricID.NET_DEV_RX_COMPRESSED,
        "Cumulative count of compressed packets received by the device driver.",
        "1",
        "rx_compressed",
    ),
    (
        MetricID.NET_DEV_RX_MULTICAST,
        "Cumulative count of multicast frames received by the device driver.",
        "1",
        "rx_multicast",
    ),
    (MetricID.NET_DEV_TX_BYTES, "Cumulative count of bytes transmitted.", "Byte", "tx_bytes"),
    (
        MetricID.NET_DEV_TX_PACKETS,
        "Cumulative count of packets transmitted.",
        "1",
        "tx_packets",
    ),
    (
        MetricID.NET_DEV_TX_ERRORS,
        "Cumulative count of transmit errors encountered.",
        "1",
        "tx_errors",
    ),
    (
        MetricID.NET_DEV_TX_DROPPED,
        "Cumulative count of packets dropped while transmitting.",
        "1",
        "tx_dropped",
    ),
    (MetricID.NET_DEV_TX_FIFO, "Cumulative count of FIFO buffer errors.", "1", "tx_fifo"),
    (
        MetricID.NET_DEV_TX_COLLISIONS,
        "Cumulative count of collisions detected on the interface.",
        "1",
        "tx_collisions",
    ),
    (
        MetricID.NET_DEV_TX_CARRIER,
        "Cumulative count of carrier losses detected by the device driver.",
        "1",
        "tx_carrier",
    ),
    (
        MetricID.NET_DEV_TX_COMPRESSED,
        "Cumulative count of compressed packets transmitted by the device driver.",
        "1",
        "tx_compressed",
    ),
)


class NetCollector:
    """Records per-interface network counters."""

    def __init__(
        self,
        config: NetStatsConfig,
        proc_path: str,
        *,
        new_metric: MetricFactory = new_int64_metric,
    ) -> None:
        self.config = config
        self.proc_path = proc_path
        self.recorder = InterfaceStatRecorder(new_metric)
        for metric_id, description, unit, attribute in _NET_METRICS:
            metric_config = config.metrics_configs.get(metric_id.value)
            if metric_config is None:
                raise ConfigError(f"Metric config {metric_id.value!r} not found")
            self.recorder.register(
                metric_id,
                metric_config.display_name,
                description,
                unit,
                Aggregation.SUM,
                [INTERFACE_NAME_LABEL],
                _field_exporter(attribute),
            )

    def collect(self) -> None:
        """Take one sample of every interface not excluded by the config."""
        try:
            with open(os.path.join(self.proc_path, "net", "dev"), encoding="utf-8") as handle:
                stats = parse_net_dev(handle.read())
        except (OSError, ValueError) as exc:
            log.error("Failed to retrieve net dev stat: %s", exc)
            return

        exclude = self.config.exclude_interface_regexp
        for iface, iface_stats in stats.items():
            if exclude is not None and exclude.search(iface):
                log.debug(
                    "Network interface %s matched exclude regexp %r, skipping recording",
                    iface,
                    exclude.pattern,
                )
                continue
            self.recorder.record_with_same_tags(iface_stats, {INTERFACE_NAME_LABEL: iface})