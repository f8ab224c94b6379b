from typing import Any
from typing import Callable
from typing import List
from typing import Optional

import pytest

torch = pytest.importorskip("torch")

from conftest import FakeClock  # noqa: E402
from mig_stress.partitions import Telemetry  # noqa: E402
from mig_stress.strategies import MB  # noqa: E402
from mig_stress.strategies import PcieTransfer  # noqa: E402
from mig_stress.strategies import StrategyContext  # noqa: E402
from mig_stress.strategies import ThermalCycling  # noqa: E402
from mig_stress.strategies import allocate_fraction  # noqa: E402
from mig_stress.strategies import free_random_subset  # noqa: E402
from mig_stress.strategies import try_allocate  # noqa: E402
from mig_stress.workloads import PcieTransferParams  # noqa: E402
from mig_stress.workloads import ThermalCyclingParams  # noqa: E402

REAL_RANDN = torch.randn


@pytest.fixture(autouse=True)
def no_cuda(monkeypatch: pytest.MonkeyPatch) -> None:
    """The strategies run on the CPU here, so the CUDA bookkeeping calls do nothing."""
    monkeypatch.setattr(torch.cuda, "synchronize", lambda device=None: None)
    monkeypatch.setattr(torch.cuda, "empty_cache", lambda: None)
    monkeypatch.setattr(torch.cuda, "memory_allocated", lambda device=None: 0)
    monkeypatch.setattr(torch.cuda, "memory_reserved", lambda device=None: 0)


class LimitedRandn:
    """Hands out real CPU tensors until `limit` of them exist, then raises `error`."""

    def __init__(self, limit: int, error: Optional[BaseException] = None) -> None:
        self.limit = limit
        self.error = error if error is not None else torch.cuda.OutOfMemoryError("CUDA out of memory")
        self.calls = 0

    def __call__(self, *size: Any, **kwargs: Any) -> Any:
        self.calls += 1
        if self.calls > self.limit:
            raise self.error
        kwargs.pop("pin_memory", None)
        return REAL_RANDN(*size, **kwargs)


def make_context(total_memory: int, clock: Optional[Callable[[], float]] = None, **kwargs: Any) -> StrategyContext:
    if clock is not None:
        kwargs["clock"] = clock
    return StrategyContext(device=torch.device("cpu"), total_memory=total_memory, duration_sec=60, **kwargs)


def test_allocate_fraction_fills_up_to_the_target() -> None:
    context = make_context(total_memory=10 * MB)
    tensors = allocate_fraction(0.5, 2 * MB, context)

    assert [tensor.numel() * 4 for tensor in tensors] == [2 * MB, 2 * MB, 1 * MB]
    assert context.counters.allocations == 3
    assert context.counters.oom_events == 0


def test_allocate_fraction_stops_at_the_first_out_of_memory(monkeypatch: pytest.MonkeyPatch) -> None:
    randn = LimitedRandn(limit=2)
    monkeypatch.setattr(torch, "randn", randn)
    context = make_context(total_memory=100 * MB)
    tensors = allocate_fraction(0.9, 10 * MB, context)

    assert len(tensors) == 2
    assert randn.calls == 3
    assert context.counters.allocations == 2
    assert context.counters.oom_events == 1


def test_try_allocate_treats_a_plain_runtime_error_about_memory_as_exhaustion(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(torch, "randn", LimitedRandn(limit=0, error=RuntimeError("CUDA error: out of memory")))
    context = make_context(total_memory=10 * MB)

    assert try_allocate(MB, context, pin_memory=True) is None
    assert context.counters.oom_events == 1
    assert context.counters.allocations == 0


def test_try_allocate_reraises_other_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(torch, "randn", LimitedRandn(limit=0, error=RuntimeError("CUDA error: misaligned address")))
    context = make_context(total_memory=10 * MB)

    with pytest.raises(RuntimeError, match="misaligned address"):
        try_allocate(MB, context)
    assert context.counters.oom_events == 0


def test_pcie_transfer_halves_the_buffer_until_the_pinned_allocation_fits(monkeypatch: pytest.MonkeyPatch) -> None:
    def randn(*size: Any, **kwargs: Any) -> Any:
        if kwargs.pop("pin_memory", False) and size[0] * 4 > 2 * MB:
            raise RuntimeError("CUDA error: out of memory")
        return REAL_RANDN(*size, **kwargs)

    monkeypatch.setattr(torch, "randn", randn)
    context = make_context(total_memory=8 * MB)
    strategy = PcieTransfer(PcieTransferParams(buffer_fraction=0.5, matrix_size=8), context)
    strategy.allocate()

    assert strategy.transfer_bytes == 2 * MB
    assert context.counters.oom_events == 1
    strategy.step(1)
    assert strategy.h2d_bytes == strategy.d2h_bytes == 2 * MB


def test_free_random_subset_frees_the_requested_share() -> None:
    context = make_context(total_memory=10 * MB)
    tensors = [torch.zeros(4) for _ in range(10)]
    free_random_subset(tensors, 0.7, context)

    assert len(tensors) == 3
    assert context.counters.deallocations == 7


def test_free_random_subset_of_nothing() -> None:
    context = make_context(total_memory=10 * MB)
    tensors: List[Any] = []
    free_random_subset(tensors, 0.7, context)
    assert context.counters.deallocations == 0


def test_thermal_cycling_alternates_hot_and_cold_phases(clock: FakeClock) -> None:
    readings = iter([Telemetry(40.0, 50.0), Telemetry(75.0, 300.0), Telemetry(55.0, None), Telemetry(80.0, 310.0)])
    context = make_context(total_memory=4 * MB, clock=clock, telemetry=lambda: next(readings))
    params = ThermalCyclingParams(
        cycle_duration_sec=10, hot_fraction=0.5, matrix_size=8, hot_sample_every=1, cold_sample_interval_sec=0.001
    )
    strategy = ThermalCycling(params, context)
    strategy.allocate()
    context.start_time = clock()

    strategy.step(1)
    assert strategy.is_hot
    assert strategy.cycle == 1
    assert len(strategy.tensors) == 1
    assert strategy.a is not None and strategy.a.shape == (8, 8)

    clock.advance(10)
    strategy.step(2)
    assert strategy.is_hot is False
    assert strategy.tensors == []
    assert strategy.a is None and strategy.b is None

    clock.advance(10)
    strategy.step(3)
    assert strategy.is_hot
    assert strategy.cycle == 2

    strategy.cleanup()
    assert strategy.tensors == []
    assert strategy.temperatures == [40.0, 75.0, 55.0, 80.0]
    assert strategy.powers == [50.0, 300.0, 310.0]
    summary = strategy.summary()
    assert summary[0] == "Thermal cycles: 2"
    assert summary[1] == "Temperature: min 40.0C, max 80.0C, mean 62.5C, p50 65.0C, delta 40.0C"
