# nodestats

`nodestats` gathers statistics about the machine it runs on and records them
as labelled in-memory metrics. Most data comes from a procfs tree (`/proc` by
default); `psutil` supplies CPU times, load averages, partitions, disk usage
and boot time.

## Collectors

| Collector                        | Metrics                                                                  |
|----------------------------------|--------------------------------------------------------------------------|
| `nodestats.cpu.CPUCollector`     | load averages, runnable tasks, usage time per state, per-CPU stage times, forks, running/blocked processes, interrupts |
| `nodestats.memory.MemoryCollector` | bytes by state (free, buffered, cached, slab, used), anonymous, page cache, unevictable, dirty/writeback |
| `nodestats.disk.DiskCollector`   | IO time, weighted IO, average queue length, operation counts, merged operations, bytes, operation time, bytes used per device |
| `nodestats.net.NetCollector`     | every `net/dev` counter per interface, with an optional exclusion regexp |
| `nodestats.host.HostCollector`   | uptime, labelled with kernel and OS version                              |
| `nodestats.osfeature.OSFeatureCollector` | KTD, unified cgroup hierarchy, kernel module integrity, GPU support, unknown kernel modules |

A metric is created only when its entry in `metricsConfigs` has a non-empty
`displayName`; the others are skipped. The network collector is stricter:
its `metricsConfigs` must contain an entry for every `net/...` metric
(`net/rx_bytes`, `net/rx_packets`, `net/rx_errors`, `net/rx_dropped`,
`net/rx_fifo`, `net/rx_frame`, `net/rx_compressed`, `net/rx_multicast`,
`net/tx_bytes`, `net/tx_packets`, `net/tx_errors`, `net/tx_dropped`,
`net/tx_fifo`, `net/tx_collisions`, `net/tx_carrier`, `net/tx_compressed`),
otherwise it raises `ConfigError`. Give an entry an empty `displayName` to
leave that metric out.

On Windows the CPU collector records only usage time, and the memory
collector records only free and used bytes.

## Configuration

The monitor reads a JSON file:

```json
{
  "invokeInterval": "60s",
  "procPath": "/proc",
  "cpu": {
    "metricsConfigs": {
      "cpu/load_1m": {"displayName": "cpu/load_1m"},
      "cpu/usage_time": {"displayName": "cpu/usage_time"}
    }
  },
  "memory": {
    "metricsConfigs": {
      "memory/bytes_used": {"displayName": "memory/bytes_used"}
    }
  },
  "disk": {
    "includeRootBlk": true,
    "includeAllAttachedBlk": true,
    "lsblkTimeout": "5s",
    "metricsConfigs": {
      "disk/io_time": {"displayName": "disk/io_time"}
    }
  },
  "host": {
    "metricsConfigs": {
      "host/uptime": {"displayName": "host/uptime"}
    }
  },
  "osFeature": {
    "knownModulesConfigPath": "guestosconfig/known-modules.json",
    "metricsConfigs": {
      "system/os_feature": {"displayName": "system/os_feature"}
    }
  }
}
```

A `net` section takes `metricsConfigs` (with all sixteen entries, see above)
and an optional `excludeInterfaceRegexp`; interfaces whose name the regexp
matches anywhere are not recorded.

Defaults applied by `SystemStatsConfig.apply_configuration` when a field is
missing:

* `invokeInterval`: `1m0s`
* `procPath`: `/proc` on Linux, empty on Windows
* `disk.lsblkTimeout`: `5s`
* `osFeature.knownModulesConfigPath`: `guestosconfig/known-modules.json`;
  the monitor resolves a relative path against the directory of the
  configuration file

`SystemStatsConfig.validate` rejects a non-positive interval or timeout, a
`procPath` that does not exist (not checked on Windows), and an
`lsblkTimeout` longer than `invokeInterval`. Problems are raised as
`nodestats.config.ConfigError`.

Durations use the `1h2m3.5s` notation:

```python
from nodestats.config import parse_duration, format_duration

parse_duration("1m30s")   # 90.0
format_duration(60)       # "1m0s"
```

## Running the monitor

```python
from nodestats.monitor import SystemStatsMonitor

monitor = SystemStatsMonitor("/etc/nodestats/system-stats-monitor.json")
monitor.start()        # collects now, then once per invokeInterval, in a thread
...
monitor.stop()         # signals the thread and waits for it
```

`collect_once()` runs every configured collector a single time. The CPU, net
and OS feature collectors read from `procPath`; the memory collector reads
`/proc/meminfo` and the disk collector `/proc/diskstats`, falling back to
`psutil` when that file is absent.

The monitor registers itself as a problem daemon under the name
`system-stats-monitor`:

```python
from nodestats.monitor import get_problem_daemon_handler

handler = get_problem_daemon_handler("system-stats-monitor")
monitor = handler.create_problem_daemon_or_die("config.json")
```

## Reading recorded values

Metrics are created with `new_int64_metric` and `new_float64_metric`. Each
label set keeps one value: with `Aggregation.LAST_VALUE` a new measurement
replaces it, with `Aggregation.SUM` it is added to it.

```python
from nodestats.metrics import Aggregation, MetricID, new_int64_metric

metric = new_int64_metric(
    MetricID.NET_DEV_RX_BYTES, "net/rx_bytes",
    "Cumulative count of bytes received.", "Byte",
    Aggregation.SUM, ["interface_name"],
)
metric.record({"interface_name": "eth0"}, 5000)
for rep in metric.list_metrics():
    print(rep.labels, rep.value)
```

Each collector exposes its metrics as attributes (for example
`CPUCollector.load_1m`, `MemoryCollector.bytes_used`, `HostCollector.uptime`,
`NetCollector.recorder.collectors`); an attribute is `None` when its metric
is not configured.

## Parsing helpers

The kernel file parsers can be used on their own:

* `nodestats.cpu.parse_proc_stat` for `stat`
* `nodestats.memory.parse_meminfo` for `meminfo`
* `nodestats.net.parse_net_dev` for `net/dev`
* `nodestats.osfeature.parse_cmdline` and `parse_modules` for `cmdline` and
  `modules`

## Problem types

`nodestats.problem` defines `Severity`, `ConditionStatus`, `ProblemType`,
`Condition`, `Event`, `Status` (with `to_dict()`), the abstract `Monitor` and
`ProblemDaemonHandler`.

## What it does not do

* Metrics stay in memory. There is no exporter to Prometheus or any other
  backend, and no HTTP endpoint.
* There is no command-line program; the monitor is started from Python.
* The system stats monitor reports metrics only; it produces no events or
  node conditions.