"""Workload kinds, strategy parameters and round plans.

A workload kind (what the operator asks for) is turned into a `RoundPlan`: a sequence of waves, each wave being a set
of `WorkloadSpec`s that are launched and collected together. Every spec names exactly one partition and one strategy,
and its `params` record is the tagged variant that selects the stress behavior inside the worker.
"""

import json
import sys
from enum import Enum
from typing import Any
from typing import Dict
from typing import Final
from typing import List
from typing import Mapping
from typing import NewType
from typing import Optional
from typing import Sequence
from typing import Tuple
from typing import Type
from typing import Union

import attr

PartitionId = NewType("PartitionId", str)

WORKER_MODULE: Final[str] = "mig_stress.worker"


class InvalidWorkloadError(ValueError):
    pass


class WorkloadKind(Enum):
    CUDA = "cuda"
    INTENSE = "intense"
    INTENSE_THRASHING = "intense_thrashing"
    MULTIPROC = "multiproc"
    PCIE = "pcie"
    STANDARD = "standard"
    THERMAL = "thermal"
    THRASHING = "thrashing"


class StrategyName(Enum):
    SUSTAINED_LOAD = "sustained_load"
    THRASHING = "thrashing"
    BASE_LOAD_THRASHING = "base_load_thrashing"
    CUDA_EDGE_CASES = "cuda_edge_cases"
    PCIE_TRANSFER = "pcie_transfer"
    THERMAL_CYCLING = "thermal_cycling"
    COMPUTE = "compute"
    MEMORY_CYCLING = "memory_cycling"
    TRANSFER = "transfer"
    STREAMS = "streams"


class WorkerRole(Enum):
    """
    PEER workers all count toward the round result.
    PRIMARY is the peak-stress worker of a wave, SECONDARY workers only provide background load and don't count.
    """

    PEER = "peer"
    PRIMARY = "primary"
    SECONDARY = "secondary"


def parse_kind(name: str) -> WorkloadKind:
    """
    >>> parse_kind("pcie")
    <WorkloadKind.PCIE: 'pcie'>
    >>> parse_kind("warp")
    Traceback (most recent call last):
    ...
    mig_stress.workloads.InvalidWorkloadError: Unknown workload kind 'warp', expected one of cuda, intense, intense_thrashing, multiproc, pcie, standard, thermal, thrashing
    """
    try:
        return WorkloadKind(name)
    except ValueError as e:
        expected = ", ".join(kind.value for kind in WorkloadKind)
        raise InvalidWorkloadError(f"Unknown workload kind {name!r}, expected one of {expected}") from e


def parse_strategy(name: str) -> StrategyName:
    try:
        return StrategyName(name)
    except ValueError as e:
        raise InvalidWorkloadError(f"Unknown strategy {name!r}") from e


def _fraction(instance: Any, attribute: "attr.Attribute[float]", value: float) -> None:
    if not 0.0 < value <= 1.0:
        raise InvalidWorkloadError(f"{attribute.name} must be in (0, 1], got {value}")


def _positive(instance: Any, attribute: "attr.Attribute[float]", value: float) -> None:
    if value <= 0:
        raise InvalidWorkloadError(f"{attribute.name} must be positive, got {value}")


def _non_negative(instance: Any, attribute: "attr.Attribute[float]", value: float) -> None:
    if value < 0:
        raise InvalidWorkloadError(f"{attribute.name} must not be negative, got {value}")


def _non_empty(instance: Any, attribute: "attr.Attribute[Tuple[int, ...]]", value: Tuple[int, ...]) -> None:
    if len(value) == 0 or any(size <= 0 for size in value):
        raise InvalidWorkloadError(f"{attribute.name} must be a non-empty list of positive sizes, got {value}")


def _int_tuple(value: Sequence[int]) -> Tuple[int, ...]:
    return tuple(int(x) for x in value)


@attr.s(auto_attribs=True, frozen=True)
class SustainedLoadParams:
    target_fraction: float = attr.ib(default=0.95, validator=_fraction)
    chunk_mb: int = attr.ib(default=100, validator=_positive)
    sync_every: int = attr.ib(default=100, validator=_positive)
    sleep_sec: float = attr.ib(default=0.1, validator=_non_negative)
    progress_every: int = attr.ib(default=10, validator=_positive)


@attr.s(auto_attribs=True, frozen=True)
class ThrashingParams:
    chunk_sizes_mb: Tuple[int, ...] = attr.ib(
        default=(10, 50, 100, 200, 500, 750, 1024), converter=_int_tuple, validator=_non_empty
    )
    min_allocations: int = attr.ib(default=10, validator=_positive)
    max_allocations: int = attr.ib(default=40, validator=_positive)
    max_operated: int = attr.ib(default=10, validator=_positive)
    free_fraction: float = attr.ib(default=0.7, validator=_fraction)
    empty_cache_every: int = attr.ib(default=20, validator=_positive)
    progress_every: int = attr.ib(default=100, validator=_positive)
    sleep_sec: float = attr.ib(default=0.001, validator=_non_negative)

    def __attrs_post_init__(self) -> None:
        if self.min_allocations > self.max_allocations:
            raise InvalidWorkloadError(
                f"min_allocations ({self.min_allocations}) is larger than max_allocations ({self.max_allocations})"
            )


@attr.s(auto_attribs=True, frozen=True)
class BaseLoadThrashingParams:
    base_fraction: float = attr.ib(default=0.65, validator=_fraction)
    ceiling_fraction: float = attr.ib(default=0.85, validator=_fraction)
    chunk_sizes_mb: Tuple[int, ...] = attr.ib(default=(5, 10, 25, 50, 100), converter=_int_tuple, validator=_non_empty)
    min_allocations: int = attr.ib(default=5, validator=_positive)
    max_allocations: int = attr.ib(default=15, validator=_positive)
    max_operated: int = attr.ib(default=3, validator=_positive)
    free_fraction: float = attr.ib(default=0.8, validator=_fraction)
    touch_base_every: int = attr.ib(default=50, validator=_positive)
    empty_cache_every: int = attr.ib(default=25, validator=_positive)
    progress_every: int = attr.ib(default=200, validator=_positive)
    sleep_sec: float = attr.ib(default=0.002, validator=_non_negative)

    def __attrs_post_init__(self) -> None:
        if self.base_fraction >= self.ceiling_fraction:
            raise InvalidWorkloadError(
                f"base_fraction ({self.base_fraction}) must be below ceiling_fraction ({self.ceiling_fraction})"
            )
        if self.min_allocations > self.max_allocations:
            raise InvalidWorkloadError(
                f"min_allocations ({self.min_allocations}) is larger than max_allocations ({self.max_allocations})"
            )


@attr.s(auto_attribs=True, frozen=True)
class CudaEdgeCaseParams:
    max_streams: int = attr.ib(default=128, validator=_positive)
    working_fraction: float = attr.ib(default=0.5, validator=_fraction)
    working_chunks: int = attr.ib(default=20, validator=_positive)
    chunk_mb: int = attr.ib(default=50, validator=_positive)
    active_streams: int = attr.ib(default=10, validator=_positive)
    sync_every: int = attr.ib(default=5, validator=_positive)
    reduce_every: int = attr.ib(default=10, validator=_positive)
    reshape_every: int = attr.ib(default=20, validator=_positive)
    inplace_every: int = attr.ib(default=15, validator=_positive)
    burst_every: int = attr.ib(default=50, validator=_positive)
    progress_every: int = attr.ib(default=100, validator=_positive)
    sleep_sec: float = attr.ib(default=0.05, validator=_non_negative)


@attr.s(auto_attribs=True, frozen=True)
class PcieTransferParams:
    buffer_fraction: float = attr.ib(default=0.4, validator=_fraction)
    matrix_size: int = attr.ib(default=2048, validator=_positive)
    matmul_every: int = attr.ib(default=2, validator=_positive)
    progress_every: int = attr.ib(default=20, validator=_positive)


@attr.s(auto_attribs=True, frozen=True)
class ThermalCyclingParams:
    cycle_duration_sec: float = attr.ib(default=30.0, validator=_positive)
    hot_fraction: float = attr.ib(default=0.9, validator=_fraction)
    matrix_size: int = attr.ib(default=2048, validator=_positive)
    hot_sample_every: int = attr.ib(default=100, validator=_positive)
    cold_sample_interval_sec: float = attr.ib(default=2.0, validator=_positive)


@attr.s(auto_attribs=True, frozen=True)
class ComputeParams:
    matrix_size: int = attr.ib(default=1024, validator=_positive)
    progress_every: int = attr.ib(default=500, validator=_positive)


@attr.s(auto_attribs=True, frozen=True)
class MemoryCyclingParams:
    chunk_fraction: float = attr.ib(default=0.1, validator=_fraction)
    chunk_count: int = attr.ib(default=3, validator=_positive)
    sleep_sec: float = attr.ib(default=0.01, validator=_non_negative)
    progress_every: int = attr.ib(default=100, validator=_positive)


@attr.s(auto_attribs=True, frozen=True)
class TransferParams:
    buffer_mb: int = attr.ib(default=50, validator=_positive)
    sleep_sec: float = attr.ib(default=0.005, validator=_non_negative)
    progress_every: int = attr.ib(default=200, validator=_positive)


@attr.s(auto_attribs=True, frozen=True)
class StreamsParams:
    stream_count: int = attr.ib(default=32, validator=_positive)
    matrix_size: int = attr.ib(default=512, validator=_positive)
    progress_every: int = attr.ib(default=200, validator=_positive)


StrategyParams = Union[
    SustainedLoadParams,
    ThrashingParams,
    BaseLoadThrashingParams,
    CudaEdgeCaseParams,
    PcieTransferParams,
    ThermalCyclingParams,
    ComputeParams,
    MemoryCyclingParams,
    TransferParams,
    StreamsParams,
]

PARAMS_BY_STRATEGY: Final[Dict[StrategyName, Type[Any]]] = {
    StrategyName.SUSTAINED_LOAD: SustainedLoadParams,
    StrategyName.THRASHING: ThrashingParams,
    StrategyName.BASE_LOAD_THRASHING: BaseLoadThrashingParams,
    StrategyName.CUDA_EDGE_CASES: CudaEdgeCaseParams,
    StrategyName.PCIE_TRANSFER: PcieTransferParams,
    StrategyName.THERMAL_CYCLING: ThermalCyclingParams,
    StrategyName.COMPUTE: ComputeParams,
    StrategyName.MEMORY_CYCLING: MemoryCyclingParams,
    StrategyName.TRANSFER: TransferParams,
    StrategyName.STREAMS: StreamsParams,
}

STRATEGY_BY_PARAMS: Final[Dict[Type[Any], StrategyName]] = {
    params_type: strategy for strategy, params_type in PARAMS_BY_STRATEGY.items()
}

MULTIPROC_ROTATION: Final[Tuple[StrategyName, ...]] = (
    StrategyName.COMPUTE,
    StrategyName.MEMORY_CYCLING,
    StrategyName.TRANSFER,
    StrategyName.STREAMS,
)

STRATEGIES_BY_KIND: Final[Dict[WorkloadKind, Tuple[StrategyName, ...]]] = {
    WorkloadKind.STANDARD: (StrategyName.SUSTAINED_LOAD,),
    WorkloadKind.INTENSE: (StrategyName.SUSTAINED_LOAD,),
    WorkloadKind.THRASHING: (StrategyName.THRASHING,),
    WorkloadKind.INTENSE_THRASHING: (StrategyName.BASE_LOAD_THRASHING,),
    WorkloadKind.CUDA: (StrategyName.CUDA_EDGE_CASES,),
    WorkloadKind.PCIE: (StrategyName.PCIE_TRANSFER,),
    WorkloadKind.THERMAL: (StrategyName.THERMAL_CYCLING,),
    WorkloadKind.MULTIPROC: MULTIPROC_ROTATION,
}


def make_params(strategy: StrategyName, overrides: Optional[Mapping[str, Any]] = None) -> StrategyParams:
    """
    >>> make_params(StrategyName.COMPUTE, {"matrix_size": 256})
    ComputeParams(matrix_size=256, progress_every=500)
    >>> make_params(StrategyName.SUSTAINED_LOAD, {"target_fraction": 1.5})
    Traceback (most recent call last):
    ...
    mig_stress.workloads.InvalidWorkloadError: target_fraction must be in (0, 1], got 1.5
    """
    params_type = PARAMS_BY_STRATEGY[strategy]
    try:
        return params_type(**(overrides or {}))  # type: ignore
    except TypeError as e:
        raise InvalidWorkloadError(f"Invalid parameters for {strategy.value}: {e}") from e


def params_from_json(strategy: StrategyName, data: str) -> StrategyParams:
    try:
        overrides = json.loads(data)
    except json.JSONDecodeError as e:
        raise InvalidWorkloadError(f"Parameters for {strategy.value} are not valid JSON: {e}") from e
    if not isinstance(overrides, dict):
        raise InvalidWorkloadError(f"Parameters for {strategy.value} must be a JSON object, got {data}")
    return make_params(strategy, overrides)


def params_to_json(params: StrategyParams) -> str:
    return json.dumps(attr.asdict(params), sort_keys=True)


@attr.s(auto_attribs=True, frozen=True)
class WorkloadSpec:
    """
    Everything one worker process needs to know.

    Attributes:
        kind: The workload kind this worker belongs to.
        partition_id: The MIG identifier of the partition to stress, passed through untouched.
        duration_sec: How long the worker keeps stressing the partition.
        params: The strategy parameters, whose type also selects the strategy.
        role: How the worker's outcome counts toward the round.
        worker_index: Unique within a round, used to name the worker's log.
    """

    kind: WorkloadKind
    partition_id: PartitionId
    duration_sec: float = attr.ib(validator=_positive)
    params: StrategyParams
    role: WorkerRole = WorkerRole.PEER
    worker_index: int = 0

    def __attrs_post_init__(self) -> None:
        if type(self.params) not in STRATEGY_BY_PARAMS:
            raise InvalidWorkloadError(f"{self.params!r} is not a strategy parameter record")

    @property
    def strategy(self) -> StrategyName:
        return STRATEGY_BY_PARAMS[type(self.params)]

    @property
    def counts_toward_round(self) -> bool:
        return self.role != WorkerRole.SECONDARY

    def describe(self) -> str:
        return f"worker {self.worker_index} ({self.role.value} {self.strategy.value} on {self.partition_id})"


def worker_command(spec: WorkloadSpec, python: str = sys.executable) -> List[str]:
    return [
        python,
        "-m",
        WORKER_MODULE,
        "--partition",
        spec.partition_id,
        "--strategy",
        spec.strategy.value,
        "--params",
        params_to_json(spec.params),
        "--duration",
        str(spec.duration_sec),
        "--role",
        spec.role.value,
        "--worker-id",
        str(spec.worker_index),
    ]


@attr.s(auto_attribs=True, frozen=True)
class KindSettings:
    """
    Per-kind knobs, loaded from the `kinds` section of the config file.

    `params` maps a strategy name to overrides of its parameter record defaults.
    """

    duration_sec: float = attr.ib(default=1800.0, validator=_positive)
    wave_pause_sec: float = attr.ib(default=0.0, validator=_non_negative)
    processes_per_partition: int = attr.ib(default=4, validator=_positive)
    secondary_target_fraction: float = attr.ib(default=0.75, validator=_fraction)
    secondary_extra_sec: float = attr.ib(default=60.0, validator=_non_negative)
    params: Mapping[str, Mapping[str, Any]] = attr.ib(factory=dict)

    def params_for(self, strategy: StrategyName) -> StrategyParams:
        return make_params(strategy, self.params.get(strategy.value))


@attr.s(auto_attribs=True, frozen=True)
class Wave:
    index: int
    specs: Tuple[WorkloadSpec, ...]

    @property
    def counted(self) -> Tuple[WorkloadSpec, ...]:
        return tuple(spec for spec in self.specs if spec.counts_toward_round)


@attr.s(auto_attribs=True, frozen=True)
class RoundPlan:
    kind: WorkloadKind
    waves: Tuple[Wave, ...]
    wave_pause_sec: float = 0.0

    @property
    def specs(self) -> Tuple[WorkloadSpec, ...]:
        return tuple(spec for wave in self.waves for spec in wave.specs)


def plan_round(kind: WorkloadKind, partitions: Sequence[PartitionId], settings: KindSettings) -> RoundPlan:
    """Lays out the waves of a round.

    `standard` and `cuda` stress one partition per wave. `intense` rotates the primary role over the partitions, every other
    partition running a lighter, longer secondary load in the same wave. `multiproc` starts several processes per
    partition in a single wave. Every other kind is one wave with one worker per partition.
    """
    waves: List[List[WorkloadSpec]] = []
    worker_index = 0

    def next_index() -> int:
        nonlocal worker_index
        worker_index += 1
        return worker_index - 1

    if kind in (WorkloadKind.STANDARD, WorkloadKind.CUDA):
        (strategy,) = STRATEGIES_BY_KIND[kind]
        params = settings.params_for(strategy)
        for partition_id in partitions:
            waves.append([WorkloadSpec(kind, partition_id, settings.duration_sec, params, WorkerRole.PEER, next_index())])
    elif kind == WorkloadKind.INTENSE:
        primary_params = settings.params_for(StrategyName.SUSTAINED_LOAD)
        assert isinstance(primary_params, SustainedLoadParams)
        secondary_params = attr.evolve(primary_params, target_fraction=settings.secondary_target_fraction)
        for primary_id in partitions:
            wave = [
                WorkloadSpec(
                    kind,
                    partition_id,
                    settings.duration_sec + settings.secondary_extra_sec,
                    secondary_params,
                    WorkerRole.SECONDARY,
                    next_index(),
                )
                for partition_id in partitions
                if partition_id != primary_id
            ]
            wave.append(
                WorkloadSpec(kind, primary_id, settings.duration_sec, primary_params, WorkerRole.PRIMARY, next_index())
            )
            waves.append(wave)
    elif kind == WorkloadKind.MULTIPROC:
        wave = []
        for partition_id in partitions:
            for process_index in range(settings.processes_per_partition):
                strategy = MULTIPROC_ROTATION[process_index % len(MULTIPROC_ROTATION)]
                wave.append(
                    WorkloadSpec(
                        kind,
                        partition_id,
                        settings.duration_sec,
                        settings.params_for(strategy),
                        WorkerRole.PEER,
                        next_index(),
                    )
                )
        if wave:
            waves.append(wave)
    else:
        (strategy,) = STRATEGIES_BY_KIND[kind]
        params = settings.params_for(strategy)
        wave = [
            WorkloadSpec(kind, partition_id, settings.duration_sec, params, WorkerRole.PEER, next_index())
            for partition_id in partitions
        ]
        if wave:
            waves.append(wave)

    return RoundPlan(
        kind=kind,
        waves=tuple(Wave(index=i, specs=tuple(specs)) for i, specs in enumerate(waves)),
        wave_pause_sec=settings.wave_pause_sec,
    )
