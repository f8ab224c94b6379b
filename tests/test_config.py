import json
from pathlib import Path

import pytest

from mig_stress.config import HarnessConfig
from mig_stress.config import config_from_dict
from mig_stress.config import load_config
from mig_stress.workloads import InvalidWorkloadError
from mig_stress.workloads import KindSettings
from mig_stress.workloads import StrategyName
from mig_stress.workloads import SustainedLoadParams
from mig_stress.workloads import ThermalCyclingParams
from mig_stress.workloads import WorkloadKind


def test_packaged_config_loads() -> None:
    config = load_config()
    assert config.cooldown_sec == 1920
    assert config.cooldown_log_interval_sec == 300
    assert set(config.kinds_to_run) == set(WorkloadKind)
    assert config.mig_setup.profiles == (19,) * 7
    assert config.settings_for(WorkloadKind.INTENSE).wave_pause_sec == 30
    assert config.settings_for(WorkloadKind.STANDARD).wave_pause_sec == 10
    assert config.settings_for(WorkloadKind.PCIE).duration_sec == 180
    assert config.settings_for(WorkloadKind.MULTIPROC).processes_per_partition == 4
    thermal = config.settings_for(WorkloadKind.THERMAL).params_for(StrategyName.THERMAL_CYCLING)
    assert thermal == ThermalCyclingParams(cycle_duration_sec=30)


def test_missing_sections_fall_back_to_defaults() -> None:
    config = config_from_dict({"cooldown_sec": 5})
    assert config.cooldown_sec == 5
    assert config.kinds_to_run == HarnessConfig().kinds_to_run
    assert config.settings_for(WorkloadKind.THRASHING) == KindSettings()


def test_kinds_to_run_keeps_the_configured_order() -> None:
    config = config_from_dict({"kinds_to_run": ["thrashing", "standard"]})
    assert config.kinds_to_run == (WorkloadKind.THRASHING, WorkloadKind.STANDARD)


def test_unknown_kind_is_rejected() -> None:
    with pytest.raises(InvalidWorkloadError, match="Unknown workload kind"):
        config_from_dict({"kinds_to_run": ["standard", "warp"]})


def test_invalid_strategy_params_are_rejected_at_load_time() -> None:
    with pytest.raises(InvalidWorkloadError):
        config_from_dict({"kinds": {"standard": {"params": {"sustained_load": {"target_fraction": 2.0}}}}})


def test_unknown_kind_setting_is_rejected() -> None:
    with pytest.raises(InvalidWorkloadError, match="Invalid settings for kind pcie"):
        config_from_dict({"kinds": {"pcie": {"duration": 10}}})


def test_invalid_json_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{not json")
    with pytest.raises(InvalidWorkloadError, match="not valid JSON"):
        load_config(path)


def test_overrides(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {"kinds": {"intense": {"duration_sec": 600, "params": {"sustained_load": {"target_fraction": 0.9}}}}}
        )
    )
    config = load_config(path).with_overrides(
        duration_sec=30, cooldown_sec=0, kinds=[WorkloadKind.INTENSE], log_dir=tmp_path / "out"
    )
    assert config.cooldown_sec == 0
    assert config.kinds_to_run == (WorkloadKind.INTENSE,)
    assert config.log_dir == tmp_path / "out"
    assert all(config.settings_for(kind).duration_sec == 30 for kind in WorkloadKind)
    # the duration override keeps the other per-kind settings
    intense = config.settings_for(WorkloadKind.INTENSE)
    assert intense.params_for(StrategyName.SUSTAINED_LOAD) == SustainedLoadParams(target_fraction=0.9)


def test_no_overrides_leave_the_config_unchanged() -> None:
    config = HarnessConfig()
    assert config.with_overrides() == config
