"""Harness configuration.

The defaults live in `config.json` next to this module. Another file can be selected with `--config`, and the CLI
overrides a handful of fields (duration, cooldown, kinds, log directory) on top of whatever file was loaded.
"""

import json
import os
from pathlib import Path
from typing import Any
from typing import Dict
from typing import Mapping
from typing import Optional
from typing import Sequence
from typing import Tuple
from typing import Union

import attr

from mig_stress.workloads import InvalidWorkloadError
from mig_stress.workloads import KindSettings
from mig_stress.workloads import WorkloadKind
from mig_stress.workloads import make_params
from mig_stress.workloads import parse_kind
from mig_stress.workloads import parse_strategy

DEFAULT_CONFIG_FILE = os.path.join(os.path.dirname(os.path.realpath(__file__)), "config.json")


@attr.s(auto_attribs=True, frozen=True)
class KernelLogConfig:
    tail_lines: int = 100
    device_keywords: Tuple[str, ...] = ("gpu", "nvidia", "cuda")
    failure_keywords: Tuple[str, ...] = ("error", "fail", "crash")


@attr.s(auto_attribs=True, frozen=True)
class MigSetupConfig:
    enabled: bool = True
    gpu_index: int = 0
    profiles: Tuple[int, ...] = (19,) * 7
    use_sudo: bool = True


@attr.s(auto_attribs=True, frozen=True)
class RuntimeCheckConfig:
    python: str = "python3"
    timeout_sec: int = 120


@attr.s(auto_attribs=True, frozen=True)
class HarnessConfig:
    log_dir: Path = Path("mig_stress_logs")
    cooldown_sec: float = 1920.0
    cooldown_log_interval_sec: float = 300.0
    timeout_margin_sec: float = 120.0
    stop_grace_sec: float = 30.0
    secondary_warmup_sec: float = 10.0
    poll_interval_sec: float = 0.1
    kinds_to_run: Tuple[WorkloadKind, ...] = tuple(sorted(WorkloadKind, key=lambda kind: kind.value))
    kernel_log: KernelLogConfig = KernelLogConfig()
    mig_setup: MigSetupConfig = MigSetupConfig()
    runtime_check: RuntimeCheckConfig = RuntimeCheckConfig()
    kinds: Mapping[WorkloadKind, KindSettings] = attr.ib(factory=dict)

    def settings_for(self, kind: WorkloadKind) -> KindSettings:
        return self.kinds.get(kind, KindSettings())

    def with_overrides(
        self,
        duration_sec: Optional[float] = None,
        cooldown_sec: Optional[float] = None,
        kinds: Optional[Sequence[WorkloadKind]] = None,
        log_dir: Optional[Path] = None,
    ) -> "HarnessConfig":
        changes: Dict[str, Any] = {}
        if duration_sec is not None:
            changes["kinds"] = {
                kind: attr.evolve(self.settings_for(kind), duration_sec=duration_sec) for kind in WorkloadKind
            }
        if cooldown_sec is not None:
            changes["cooldown_sec"] = cooldown_sec
        if kinds is not None:
            changes["kinds_to_run"] = tuple(kinds)
        if log_dir is not None:
            changes["log_dir"] = log_dir
        return attr.evolve(self, **changes)


def _kind_settings_from_dict(kind: WorkloadKind, data: Mapping[str, Any]) -> KindSettings:
    params = data.get("params", {})
    for strategy_name, overrides in params.items():
        # fail at load time rather than inside a worker halfway through the sequence
        strategy = parse_strategy(strategy_name)
        make_params(strategy, overrides)
    fields = {key: value for key, value in data.items() if key != "params"}
    try:
        return KindSettings(params=params, **fields)
    except TypeError as e:
        raise InvalidWorkloadError(f"Invalid settings for kind {kind.value}: {e}") from e


def config_from_dict(data: Mapping[str, Any]) -> HarnessConfig:
    kernel_log = data.get("kernel_log", {})
    mig_setup = data.get("mig_setup", {})
    runtime_check = data.get("runtime_check", {})
    default = HarnessConfig()
    kinds: Dict[WorkloadKind, KindSettings] = {}
    for name, value in data.get("kinds", {}).items():
        kind = parse_kind(name)
        kinds[kind] = _kind_settings_from_dict(kind, value)
    return HarnessConfig(
        log_dir=Path(data.get("log_dir", default.log_dir)),
        cooldown_sec=float(data.get("cooldown_sec", default.cooldown_sec)),
        cooldown_log_interval_sec=float(data.get("cooldown_log_interval_sec", default.cooldown_log_interval_sec)),
        timeout_margin_sec=float(data.get("timeout_margin_sec", default.timeout_margin_sec)),
        stop_grace_sec=float(data.get("stop_grace_sec", default.stop_grace_sec)),
        secondary_warmup_sec=float(data.get("secondary_warmup_sec", default.secondary_warmup_sec)),
        poll_interval_sec=float(data.get("poll_interval_sec", default.poll_interval_sec)),
        kinds_to_run=tuple(parse_kind(name) for name in data["kinds_to_run"])
        if "kinds_to_run" in data
        else default.kinds_to_run,
        kernel_log=KernelLogConfig(
            tail_lines=int(kernel_log.get("tail_lines", default.kernel_log.tail_lines)),
            device_keywords=tuple(kernel_log.get("device_keywords", default.kernel_log.device_keywords)),
            failure_keywords=tuple(kernel_log.get("failure_keywords", default.kernel_log.failure_keywords)),
        ),
        mig_setup=MigSetupConfig(
            enabled=bool(mig_setup.get("enabled", default.mig_setup.enabled)),
            gpu_index=int(mig_setup.get("gpu_index", default.mig_setup.gpu_index)),
            profiles=tuple(int(profile) for profile in mig_setup.get("profiles", default.mig_setup.profiles)),
            use_sudo=bool(mig_setup.get("use_sudo", default.mig_setup.use_sudo)),
        ),
        runtime_check=RuntimeCheckConfig(
            python=str(runtime_check.get("python", default.runtime_check.python)),
            timeout_sec=int(runtime_check.get("timeout_sec", default.runtime_check.timeout_sec)),
        ),
        kinds=kinds,
    )


def load_config(path: Union[str, Path] = DEFAULT_CONFIG_FILE) -> HarnessConfig:
    with open(path, "r") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise InvalidWorkloadError(f"Config file {path} is not valid JSON: {e}") from e
    return config_from_dict(data)

