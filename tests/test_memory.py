import pytest

from nodestats.config import MemoryStatsConfig, MetricConfig
from nodestats.memory import MemoryCollector, parse_meminfo

FAKE_MEMINFO = """MemTotal:        1000 kB
MemFree:          300 kB
MemAvailable:     500 kB
Buffers:           50 kB
Cached:           100 kB
Slab:              40 kB
Active(anon):      70 kB
Inactive(anon):    30 kB
Active(file):      20 kB
Inactive(file):    10 kB
Unevictable:        5 kB
Dirty:              4 kB
Writeback:          2 kB
HugePages_Total:    0
"""

ALL_METRICS = [
    "memory/bytes_used",
    "memory/anonymous_used",
    "memory/page_cache_used",
    "memory/unevictable_used",
    "memory/dirty_used",
]


def _config(names=ALL_METRICS):
    return MemoryStatsConfig({name: MetricConfig(display_name=name) for name in names})


def _by_state(metric):
    return {m.labels.get("state"): m.value for m in metric.list_metrics()}


def test_parse_meminfo():
    info = parse_meminfo(FAKE_MEMINFO)
    assert info["MemTotal"] == 1000
    assert info["Active(anon)"] == 70
    assert info["HugePages_Total"] == 0
    assert len(info) == 14


@pytest.mark.parametrize("text", ["MemTotal:\n", "MemTotal: lots kB\n"])
def test_parse_meminfo_malformed(text):
    with pytest.raises(ValueError):
        parse_meminfo(text)


def test_memory_collector_records_all(tmp_path):
    (tmp_path / "meminfo").write_text(FAKE_MEMINFO)
    collector = MemoryCollector(_config(), proc_path=str(tmp_path))
    collector.collect()

    assert _by_state(collector.bytes_used) == {
        "free": 300 * 1024,
        "buffered": 50 * 1024,
        "cached": 100 * 1024,
        "slab": 40 * 1024,
        "used": 510 * 1024,
    }
    assert _by_state(collector.dirty_used) == {"dirty": 4096, "writeback": 2048}
    assert _by_state(collector.anonymous_used) == {"active": 70 * 1024, "inactive": 30 * 1024}
    assert _by_state(collector.page_cache_used) == {"active": 20 * 1024, "inactive": 10 * 1024}
    assert [(m.labels, m.value) for m in collector.unevictable_used.list_metrics()] == [
        ({}, 5 * 1024)
    ]


def test_used_needs_every_component(tmp_path):
    (tmp_path / "meminfo").write_text("MemTotal: 1000 kB\nMemFree: 300 kB\n")
    collector = MemoryCollector(_config(["memory/bytes_used"]), proc_path=str(tmp_path))
    collector.collect()
    assert _by_state(collector.bytes_used) == {"free": 300 * 1024}


def test_empty_config_creates_no_metrics(tmp_path):
    collector = MemoryCollector(MemoryStatsConfig(), proc_path=str(tmp_path))
    collector.collect()
    assert collector.bytes_used is None
    assert collector.dirty_used is None
    assert collector.unevictable_used is None


def test_missing_meminfo_records_nothing(tmp_path):
    collector = MemoryCollector(_config(), proc_path=str(tmp_path))
    collector.collect()
    assert collector.bytes_used.list_metrics() == []
    assert collector.anonymous_used.list_metrics() == []