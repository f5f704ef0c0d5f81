"""Guest OS feature detection from the kernel command line and loaded modules."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from .config import MetricConfig, OSFeatureStatsConfig
from .metrics import FEATURE_LABEL, VALUE_LABEL, Aggregation, MetricID, new_int64_metric

log = logging.getLogger(__name__)

_INTEGER = re.compile(r"[+-]?\d+")


@dataclass(frozen=True)
class CmdlineArg:
    """One argument of the kernel command line; flags without '=' have an empty value."""

    key: str
    value: str = ""


@dataclass(frozen=True)
class Module:
    """One loaded kernel module."""

    module_name: str
    size: int = 0
    instances: int = 0
    dependencies: tuple[str, ...] = ()
    state: str = ""
    offset: int = 0
    out_of_tree: bool = False
    proprietary: bool = False
    unsigned: bool = False

    @classmethod
    def _from_dict(cls, data: Any) -> Module:
        if not isinstance(data, dict):
            raise ValueError("module entry must be an object")
        lowered = {str(key).lower(): value for key, value in data.items()}
        name = lowered.get("modulename", "")
        if not isinstance(name, str):
            raise ValueError("module name must be a string")
        return cls(
            module_name=name,
            out_of_tree=bool(lowered.get("outoftree", False)),
            proprietary=bool(lowered.get("proprietary", False)),
            unsigned=bool(lowered.get("unsigned", False)),
        )


def parse_cmdline(text: str) -> list[CmdlineArg]:
    """Split the kernel command line into key/value arguments."""
    args = []
    for token in text.split():
        key, _, value = token.partition("=")
        args.append(CmdlineArg(key, value))
    return args


def _parse_taints(field: str) -> str:
    if field.startswith("(") and field.endswith(")"):
        return field[1:-1]
    return ""


def parse_modules(text: str) -> list[Module]:
    """Parse the kernel's modules file.

    Raises ValueError on a malformed line.
    """
    modules = []
    for line in text.splitlines():
        parts = line.split()
        if not parts:
            continue
        if len(parts) < 6:
            raise ValueError(f"malformed modules line: {line!r}")
        name, size, instances, deps, state, offset = parts[:6]
        taints = "".join(_parse_taints(part) for part in parts[6:])
        try:
            module = Module(
                module_name=name,
                size=int(size),
                instances=int(instances),
                dependencies=tuple(dep for dep in deps.split(",") if dep and dep != "-"),
                state=state,
                offset=int(offset, 16),
                out_of_tree="O" in taints,
                proprietary="P" in taints,
                unsigned="E" in taints,
            )
        except ValueError as exc:
            raise ValueError(f"malformed modules line: {line!r}") from exc
        modules.append(module)
    return modules


def contains_module(name: str, modules: Iterable[Module]) -> bool:
    """Tell whether a module of that name is among the given modules."""
    return any(module.module_name == name for module in modules)


def _parse_flag(value: str) -> int:
    return int(value) if _INTEGER.fullmatch(value) else 0


class OSFeatureCollector:
    """Records guest OS features such as GPU support and module integrity."""

    def __init__(self, config: OSFeatureStatsConfig, proc_path: str) -> None:
        self.config = config
        self.proc_path = proc_path
        metric_id = MetricID.OS_FEATURE
        self.os_feature = new_int64_metric(
            metric_id,
            config.metrics_configs.get(metric_id.value, MetricConfig()).display_name,
            "OS Features like GPU support, KTD kernel, third party modules as unknown "
            "modules. 1 if the feature is enabled and 0, if disabled.",
            "1",
            Aggregation.LAST_VALUE,
            [FEATURE_LABEL, VALUE_LABEL],
        )

    def record_features_from_cmdline(self, cmdline_args: Iterable[CmdlineArg]) -> None:
        """Record KTD, UnifiedCgroupHierarchy and KernelModuleIntegrity."""
        keys = {
            "csm.enabled": "KTD",
            "systemd.unified_cgroup_hierarchy": "UnifiedCgroupHierarchy",
            "module.sig_enforce": "ModuleSigned",
            "loadpin.enabled": "LoadPinEnabled",
        }
        features = dict.fromkeys(keys.values(), 0)
        for arg in cmdline_args:
            if arg.key in keys:
                features[keys[arg.key]] = _parse_flag(arg.value)

        self.os_feature.record({FEATURE_LABEL: "KTD"}, features["KTD"])
        self.os_feature.record(
            {FEATURE_LABEL: "UnifiedCgroupHierarchy"}, features["UnifiedCgroupHierarchy"]
        )
        integrity = int(features["ModuleSigned"] == 1 and features["LoadPinEnabled"] == 1)
        self.os_feature.record({FEATURE_LABEL: "KernelModuleIntegrity"}, integrity)

    def _known_modules(self) -> list[Module]:
        path = self.config.known_modules_config_path
        try:
            with open(path, encoding="utf-8") as handle:
                data = json.load(handle)
        except OSError as exc:
            log.warning("Failed to read configuration file %s: %s", path, exc)
            return []
        except ValueError as exc:
            log.warning("Failed to retrieve known modules %s", exc)
            return []
        if data is None:
            return []
        try:
            if not isinstance(data, list):
                raise ValueError("known modules must be a list")
            return [Module._from_dict(entry) for entry in data]
        except ValueError as exc:
            log.warning("Failed to retrieve known modules %s", exc)
            return []

    def record_features_from_modules(self, modules: Sequence[Module]) -> None:
        """Record GPUSupport and third-party modules not listed as known."""
        known = self._known_modules()
        has_gpu_support = 0
        unknown: list[str] = []
        for module in modules:
            if "nvidia" in module.module_name:
                has_gpu_support = 1
            elif (module.out_of_tree or module.proprietary) and not contains_module(
                module.module_name, known
            ):
                unknown.append(module.module_name)

        if unknown:
            self.os_feature.record(
                {FEATURE_LABEL: "UnknownModules", VALUE_LABEL: ",".join(unknown)}, 1
            )
        else:
            self.os_feature.record({FEATURE_LABEL: "UnknownModules"}, 0)
        self.os_feature.record({FEATURE_LABEL: "GPUSupport"}, has_gpu_support)

    def collect(self) -> None:
        """Take one sample of the OS features.

        Raises OSError or ValueError when the kernel files cannot be read.
        """
        if self.os_feature is None:
            return
        with open(os.path.join(self.proc_path, "cmdline"), encoding="utf-8") as handle:
            cmdline_args = parse_cmdline(handle.read())
        self.record_features_from_cmdline(cmdline_args)
        with open(os.path.join(self.proc_path, "modules"), encoding="utf-8") as handle:
            modules = parse_modules(handle.read())
        self.record_features_from_modules(modules)