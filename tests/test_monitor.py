import json
import os
import time

import pytest

from nodestats.config import ConfigError
from nodestats.metrics import MetricID
from nodestats.monitor import (
    SYSTEM_STATS_MONITOR_NAME,
    SystemStatsMonitor,
    get_problem_daemon_handler,
    register_problem_daemon,
)
from nodestats.problem import ProblemDaemonHandler

NET_DEV = (
    "Inter-|   Receive                                                |  Transmit\n"
    " face |bytes    packets errs drop fifo frame compressed multicast|"
    "bytes    packets errs drop fifo colls carrier compressed\n"
    "  eth0: 5000 100 0 0 0 0 0 0 2500 30 0 0 0 0 0 0\n"
)

NET_METRICS = [m.value for m in MetricID if m.value.startswith("net/")]


def _write_config(tmp_path, **overrides):
    proc = tmp_path / "proc"
    (proc / "net").mkdir(parents=True)
    (proc / "net" / "dev").write_text(NET_DEV)
    config = {
        "invokeInterval": "1h",
        "procPath": str(proc),
        "net": {"metricsConfigs": {name: {"displayName": name} for name in NET_METRICS}},
    }
    config.update(overrides)
    path = tmp_path / "system-stats-monitor.json"
    path.write_text(json.dumps(config))
    return str(path)


def _rx_bytes(monitor):
    metric = monitor.net_collector.recorder.collectors[MetricID.NET_DEV_RX_BYTES].metric
    return {r.labels["interface_name"]: r.value for r in metric.list_metrics()}


def test_registration():
    handler = get_problem_daemon_handler(SYSTEM_STATS_MONITOR_NAME)
    assert handler.create_problem_daemon_or_die is SystemStatsMonitor
    assert handler.cmd_option_description == "Set to config file paths."


def test_unknown_daemon_raises():
    with pytest.raises(KeyError):
        get_problem_daemon_handler("no-such-daemon")


def test_duplicate_registration_raises():
    handler = ProblemDaemonHandler(create_problem_daemon_or_die=SystemStatsMonitor)
    with pytest.raises(ValueError):
        register_problem_daemon(SYSTEM_STATS_MONITOR_NAME, handler)


def test_only_configured_collectors_are_created(tmp_path):
    monitor = SystemStatsMonitor(_write_config(tmp_path))
    assert monitor.cpu_collector is None
    assert monitor.disk_collector is None
    assert monitor.host_collector is None
    assert monitor.memory_collector is None
    assert monitor.os_feature_collector is None
    assert monitor.net_collector is not None
    assert monitor.config.invoke_interval == 3600


def test_collect_once_records_net_metrics(tmp_path):
    monitor = SystemStatsMonitor(_write_config(tmp_path))
    monitor.collect_once()
    assert _rx_bytes(monitor) == {"eth0": 5000}


def test_start_and_stop(tmp_path):
    monitor = SystemStatsMonitor(_write_config(tmp_path))
    assert monitor.start() is None
    deadline = time.monotonic() + 5
    while not _rx_bytes(monitor) and time.monotonic() < deadline:
        time.sleep(0.01)
    monitor.stop()
    assert not monitor.running
    assert _rx_bytes(monitor) == {"eth0": 5000}


def test_relative_known_modules_path_follows_config(tmp_path):
    path = _write_config(
        tmp_path,
        osFeature={
            "metricsConfigs": {"system/os_feature": {"displayName": "system/os_feature"}},
            "knownModulesConfigPath": "known.json",
        },
    )
    monitor = SystemStatsMonitor(path)
    assert monitor.config.os_feature_config.known_modules_config_path == os.path.join(
        str(tmp_path), "known.json"
    )
    assert monitor.os_feature_collector is not None


def test_invalid_json_raises(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text("{not json")
    with pytest.raises(ConfigError):
        SystemStatsMonitor(str(path))


def test_missing_config_file_raises(tmp_path):
    with pytest.raises(OSError):
        SystemStatsMonitor(str(tmp_path / "missing.json"))


def test_invalid_interval_raises(tmp_path):
    with pytest.raises(ConfigError):
        SystemStatsMonitor(_write_config(tmp_path, invokeInterval="-1s"))


def test_missing_proc_path_raises(tmp_path):
    with pytest.raises(ConfigError):
        SystemStatsMonitor(_write_config(tmp_path, procPath=str(tmp_path / "absent")))