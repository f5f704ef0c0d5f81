import json
from types import SimpleNamespace

import pytest

from nodestats.config import CPUStatsConfig, MetricConfig
from nodestats.cpu import CPUCollector, CPUTimes, ProcStat, parse_proc_stat

FAKE_CPU_CONFIG = """
{
    "metricsConfigs": {
        "cpu/load_15m": {"displayName": "cpu/load_15m"},
        "cpu/load_1m": {"displayName": "cpu/load_1m"},
        "cpu/load_5m": {"displayName": "cpu/load_5m"},
        "cpu/runnable_task_count": {"displayName": "cpu/runnable_task_count"},
        "cpu/usage_time": {"displayName": "cpu/usage_time"},
        "system/cpu_stat": {"displayName": "system/cpu_stat"},
        "system/interrupts_total": {"displayName": "system/interrupts_total"},
        "system/processes_total": {"displayName": "system/processes_total"},
        "system/procs_blocked": {"displayName": "system/procs_blocked"},
        "system/procs_running": {"displayName": "system/procs_running"}
    }
}
"""

FAKE_STAT = """cpu  300 10 150 9000 20 3 5 0 0 0
cpu0 100 5 50 4500 10 3 2 0 0 0
cpu1 200 5 100 4500 10 0 3 0 0 0
intr 12345 0 1 2
ctxt 6789
btime 1600000000
processes 4242
procs_running 3
procs_blocked 1
softirq 100 1 2
"""


def _load_config():
    raw = json.loads(FAKE_CPU_CONFIG)["metricsConfigs"]
    return CPUStatsConfig(
        {key: MetricConfig(display_name=value["displayName"]) for key, value in raw.items()}
    )


@pytest.fixture
def proc_dir(tmp_path):
    (tmp_path / "stat").write_text(FAKE_STAT)
    return tmp_path


def _times(**values):
    return SimpleNamespace(**values)


def test_parse_proc_stat_counters():
    stat = parse_proc_stat(FAKE_STAT)
    assert stat.irq_total == 12345
    assert stat.context_switches == 6789
    assert stat.boot_time == 1600000000
    assert stat.process_created == 4242
    assert stat.processes_running == 3
    assert stat.processes_blocked == 1


def test_parse_proc_stat_cpus():
    stat = parse_proc_stat(FAKE_STAT)
    assert len(stat.cpus) == 2
    assert stat.cpus[0] == CPUTimes(1.0, 0.05, 0.5, 45.0, 0.1, 0.03, 0.02, 0.0, 0.0, 0.0)
    assert stat.cpus[1].user == 2.0
    assert stat.cpu_total.idle == 90.0


def test_parse_proc_stat_short_cpu_line_fills_zero():
    stat = parse_proc_stat("cpu0 100 200 300 400\n")
    assert stat.cpus == [CPUTimes(user=1.0, nice=2.0, system=3.0, idle=4.0)]


def test_parse_proc_stat_cpu_gaps():
    stat = parse_proc_stat("cpu2 100 0 0 0\n")
    assert stat.cpus == [CPUTimes(), CPUTimes(), CPUTimes(user=1.0)]


def test_parse_proc_stat_empty():
    assert parse_proc_stat("") == ProcStat()


@pytest.mark.parametrize("text", ["processes abc\n", "cpuX 1 2 3\n", "cpu0 1 x 3\n"])
def test_parse_proc_stat_invalid(text):
    with pytest.raises(ValueError):
        parse_proc_stat(text)


def test_cpu_collector_records_everything(proc_dir):
    collector = CPUCollector(
        _load_config(),
        str(proc_dir),
        cpu_times=lambda: _times(user=1.5, system=0.5),
        load_average=lambda: (0.5, 1.25, 2.0),
    )
    collector.collect()

    assert [m.value for m in collector.load_1m.list_metrics()] == [0.5]
    assert [m.value for m in collector.runnable_task_count.list_metrics()] == [0.5]
    assert [m.value for m in collector.load_5m.list_metrics()] == [1.25]
    assert [m.value for m in collector.load_15m.list_metrics()] == [2.0]
    assert [m.value for m in collector.processes_total.list_metrics()] == [4242]
    assert [m.value for m in collector.procs_running.list_metrics()] == [3]
    assert [m.value for m in collector.procs_blocked.list_metrics()] == [1]
    assert [m.value for m in collector.interrupts_total.list_metrics()] == [12345]

    stages = {
        (m.labels["cpu"], m.labels["stage"]): m.value
        for m in collector.cpu_stat.list_metrics()
    }
    assert len(stages) == 20
    assert stages[("cpu0", "iRQ")] == pytest.approx(0.03)
    assert stages[("cpu1", "user")] == pytest.approx(2.0)
    assert stages[("cpu0", "guestNice")] == 0.0


def test_cpu_usage_records_deltas(proc_dir):
    samples = iter([_times(user=1.5, idle=10.0), _times(user=2.0, idle=12.0)])
    collector = CPUCollector(
        _load_config(),
        str(proc_dir),
        cpu_times=lambda: next(samples),
        load_average=lambda: (0.0, 0.0, 0.0),
    )
    collector.collect()
    first = {m.labels["state"]: m.value for m in collector.usage_time.list_metrics()}
    assert first["user"] == pytest.approx(150.0)
    assert first["idle"] == pytest.approx(1000.0)
    assert first["steal"] == 0.0
    assert len(first) == 10

    collector.collect()
    second = {m.labels["state"]: m.value for m in collector.usage_time.list_metrics()}
    assert second["user"] == pytest.approx(200.0)
    assert second["idle"] == pytest.approx(1200.0)


def test_missing_stat_file_skips_system_stats(tmp_path):
    collector = CPUCollector(
        _load_config(),
        str(tmp_path),
        cpu_times=lambda: _times(user=1.0),
        load_average=lambda: (3.0, 2.0, 1.0),
    )
    collector.collect()
    assert collector.processes_total.list_metrics() == []
    assert collector.cpu_stat.list_metrics() == []
    assert [m.value for m in collector.load_1m.list_metrics()] == [3.0]


def test_unconfigured_metrics_are_absent(proc_dir):
    config = CPUStatsConfig({"cpu/load_1m": MetricConfig("cpu/load_1m")})
    collector = CPUCollector(
        config,
        str(proc_dir),
        cpu_times=lambda: _times(user=1.0),
        load_average=lambda: (4.0, 5.0, 6.0),
    )
    collector.collect()
    assert collector.usage_time is None
    assert collector.cpu_stat is None
    assert collector.load_5m is None
    assert [m.value for m in collector.load_1m.list_metrics()] == [4.0]


def test_load_error_is_not_recorded(proc_dir):
    def failing():
        raise OSError("no load average")

    collector = CPUCollector(
        _load_config(),
        str(proc_dir),
        cpu_times=lambda: _times(user=1.0),
        load_average=failing,
    )
    collector.collect()
    assert collector.load_1m.list_metrics() == []
    assert [m.value for m in collector.procs_running.list_metrics()] == [3]