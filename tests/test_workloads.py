import json
import sys
from collections import Counter

import pytest

from conftest import PARTITIONS
from mig_stress.workloads import WORKER_MODULE
from mig_stress.workloads import ComputeParams
from mig_stress.workloads import InvalidWorkloadError
from mig_stress.workloads import KindSettings
from mig_stress.workloads import PartitionId
from mig_stress.workloads import StrategyName
from mig_stress.workloads import SustainedLoadParams
from mig_stress.workloads import ThrashingParams
from mig_stress.workloads import WorkerRole
from mig_stress.workloads import WorkloadKind
from mig_stress.workloads import WorkloadSpec
from mig_stress.workloads import make_params
from mig_stress.workloads import params_from_json
from mig_stress.workloads import params_to_json
from mig_stress.workloads import plan_round
from mig_stress.workloads import worker_command

PARTITION_IDS = tuple(PartitionId(partition) for partition in PARTITIONS)


def test_standard_runs_one_partition_per_wave() -> None:
    plan = plan_round(WorkloadKind.STANDARD, PARTITION_IDS, KindSettings(duration_sec=60, wave_pause_sec=10))
    assert [[spec.partition_id for spec in wave.specs] for wave in plan.waves] == [[p] for p in PARTITION_IDS]
    assert plan.wave_pause_sec == 10
    assert all(spec.strategy == StrategyName.SUSTAINED_LOAD for spec in plan.specs)


def test_cuda_runs_one_partition_per_wave() -> None:
    plan = plan_round(WorkloadKind.CUDA, PARTITION_IDS, KindSettings())
    assert len(plan.waves) == len(PARTITION_IDS)
    assert all(spec.strategy == StrategyName.CUDA_EDGE_CASES for spec in plan.specs)


def test_intense_rotates_the_primary_over_every_partition() -> None:
    settings = KindSettings(duration_sec=100, secondary_target_fraction=0.75, secondary_extra_sec=60)
    plan = plan_round(WorkloadKind.INTENSE, PARTITION_IDS, settings)

    assert len(plan.waves) == len(PARTITION_IDS)
    for wave, primary_id in zip(plan.waves, PARTITION_IDS):
        (primary,) = [spec for spec in wave.specs if spec.role == WorkerRole.PRIMARY]
        assert primary.partition_id == primary_id
        assert primary.duration_sec == 100
        assert isinstance(primary.params, SustainedLoadParams)
        assert primary.params.target_fraction == 0.95
        assert wave.counted == (primary,)

        secondaries = [spec for spec in wave.specs if spec.role == WorkerRole.SECONDARY]
        assert {spec.partition_id for spec in secondaries} == set(PARTITION_IDS) - {primary_id}
        for secondary in secondaries:
            assert secondary.duration_sec == 160
            assert isinstance(secondary.params, SustainedLoadParams)
            assert secondary.params.target_fraction == 0.75


def test_multiproc_rotates_strategies_inside_each_partition() -> None:
    plan = plan_round(WorkloadKind.MULTIPROC, PARTITION_IDS, KindSettings(processes_per_partition=4))
    (wave,) = plan.waves
    assert len(wave.specs) == 4 * len(PARTITION_IDS)
    for partition_id in PARTITION_IDS:
        strategies = [spec.strategy for spec in wave.specs if spec.partition_id == partition_id]
        assert strategies == [
            StrategyName.COMPUTE,
            StrategyName.MEMORY_CYCLING,
            StrategyName.TRANSFER,
            StrategyName.STREAMS,
        ]


@pytest.mark.parametrize(
    "kind, strategy",
    [
        (WorkloadKind.THRASHING, StrategyName.THRASHING),
        (WorkloadKind.INTENSE_THRASHING, StrategyName.BASE_LOAD_THRASHING),
        (WorkloadKind.PCIE, StrategyName.PCIE_TRANSFER),
        (WorkloadKind.THERMAL, StrategyName.THERMAL_CYCLING),
    ],
)
def test_other_kinds_run_one_wave_with_one_worker_per_partition(kind: WorkloadKind, strategy: StrategyName) -> None:
    plan = plan_round(kind, PARTITION_IDS, KindSettings())
    (wave,) = plan.waves
    assert [spec.partition_id for spec in wave.specs] == list(PARTITION_IDS)
    assert all(spec.strategy == strategy and spec.role == WorkerRole.PEER for spec in wave.specs)


@pytest.mark.parametrize("kind", list(WorkloadKind))
def test_worker_indices_are_unique_within_a_round(kind: WorkloadKind) -> None:
    plan = plan_round(kind, PARTITION_IDS, KindSettings())
    indices = [spec.worker_index for spec in plan.specs]
    assert sorted(indices) == list(range(len(indices)))


@pytest.mark.parametrize("kind", list(WorkloadKind))
def test_no_partitions_means_no_waves(kind: WorkloadKind) -> None:
    assert plan_round(kind, (), KindSettings()).waves == ()


def test_single_partition_intense_has_a_lone_primary() -> None:
    plan = plan_round(WorkloadKind.INTENSE, PARTITION_IDS[:1], KindSettings())
    (wave,) = plan.waves
    assert [spec.role for spec in wave.specs] == [WorkerRole.PRIMARY]


def test_param_overrides_from_settings() -> None:
    settings = KindSettings(params={"thrashing": {"max_allocations": 20, "chunk_sizes_mb": [10, 20]}})
    params = settings.params_for(StrategyName.THRASHING)
    assert params == ThrashingParams(max_allocations=20, chunk_sizes_mb=(10, 20))


def test_unknown_parameter_is_rejected() -> None:
    with pytest.raises(InvalidWorkloadError, match="Invalid parameters for compute"):
        make_params(StrategyName.COMPUTE, {"matrix_sise": 10})


@pytest.mark.parametrize(
    "strategy, overrides",
    [
        (StrategyName.THRASHING, {"min_allocations": 50, "max_allocations": 10}),
        (StrategyName.BASE_LOAD_THRASHING, {"base_fraction": 0.9, "ceiling_fraction": 0.8}),
        (StrategyName.THRASHING, {"chunk_sizes_mb": []}),
        (StrategyName.TRANSFER, {"sleep_sec": -1}),
    ],
)
def test_inconsistent_parameters_are_rejected(strategy: StrategyName, overrides: dict) -> None:
    with pytest.raises(InvalidWorkloadError):
        make_params(strategy, overrides)


def test_spec_rejects_a_non_positive_duration() -> None:
    with pytest.raises(InvalidWorkloadError):
        WorkloadSpec(WorkloadKind.PCIE, PARTITION_IDS[0], 0, make_params(StrategyName.PCIE_TRANSFER))


def test_spec_rejects_foreign_params() -> None:
    with pytest.raises(InvalidWorkloadError):
        WorkloadSpec(WorkloadKind.PCIE, PARTITION_IDS[0], 10, {"buffer_fraction": 0.4})  # type: ignore


def test_params_from_json_requires_an_object() -> None:
    with pytest.raises(InvalidWorkloadError, match="must be a JSON object"):
        params_from_json(StrategyName.COMPUTE, "[1, 2]")
    with pytest.raises(InvalidWorkloadError, match="not valid JSON"):
        params_from_json(StrategyName.COMPUTE, "{matrix_size")


def test_worker_command_carries_the_whole_spec() -> None:
    spec = WorkloadSpec(
        WorkloadKind.MULTIPROC, PARTITION_IDS[1], 42.0, ComputeParams(matrix_size=256), WorkerRole.PEER, 7
    )
    command = worker_command(spec)
    assert command[:3] == [sys.executable, "-m", WORKER_MODULE]
    options = dict(zip(command[3::2], command[4::2]))
    assert options == {
        "--partition": PARTITION_IDS[1],
        "--strategy": "compute",
        "--params": params_to_json(spec.params),
        "--duration": "42.0",
        "--role": "peer",
        "--worker-id": "7",
    }
    assert params_from_json(StrategyName.COMPUTE, options["--params"]) == spec.params
    assert json.loads(options["--params"]) == {"matrix_size": 256, "progress_every": 500}


def test_every_partition_is_stressed_by_every_kind() -> None:
    for kind in WorkloadKind:
        plan = plan_round(kind, PARTITION_IDS, KindSettings())
        counted = Counter(spec.partition_id for spec in plan.specs if spec.counts_toward_round)
        assert set(counted) == set(PARTITION_IDS)
