"""The stress strategies run inside a worker process.

Each strategy is a plain class built from its frozen parameter record and a `StrategyContext`. The worker drives it:
`allocate()` once, `step()` until the duration expires or a stop is requested, then `cleanup()` and `summary()`.
Strategies never decide when to stop, and running out of memory inside `step()` is handled by the driver.
"""

import random
import time
from enum import Enum
from threading import Event
from typing import Callable
from typing import Dict
from typing import Final
from typing import List
from typing import Optional
from typing import Sequence
from typing import Tuple

import attr
import numpy as np
import torch
from loguru import logger
from typing_extensions import Protocol

from mig_stress.partitions import Telemetry
from mig_stress.utils.timer import Timer
from mig_stress.workloads import BaseLoadThrashingParams
from mig_stress.workloads import ComputeParams
from mig_stress.workloads import CudaEdgeCaseParams
from mig_stress.workloads import MemoryCyclingParams
from mig_stress.workloads import PcieTransferParams
from mig_stress.workloads import StrategyName
from mig_stress.workloads import StrategyParams
from mig_stress.workloads import StreamsParams
from mig_stress.workloads import SustainedLoadParams
from mig_stress.workloads import ThermalCyclingParams
from mig_stress.workloads import ThrashingParams
from mig_stress.workloads import TransferParams

MB: Final[int] = 1024 * 1024
GB: Final[int] = 1024 * MB
FLOAT32_BYTES: Final[int] = 4

# shapes that are legal but rarely used: very wide, very tall, 3D and 4D
UNUSUAL_SHAPES: Final[Tuple[Tuple[int, ...], ...]] = (
    (1, 1000000),
    (1000000, 1),
    (1000, 1000, 10),
    (100, 100, 10, 10),
)


class LoopKind(Enum):
    STRESSING = "STRESSING"
    CYCLING = "CYCLING"


@attr.s(auto_attribs=True)
class StressCounters:
    iterations: int = 0
    allocations: int = 0
    deallocations: int = 0
    oom_events: int = 0


@attr.s(auto_attribs=True)
class StrategyContext:
    """What a strategy may use besides its parameters. Mutable: the driver sets `start_time` when stressing begins."""

    device: torch.device
    total_memory: int
    duration_sec: float
    stop_event: Event = attr.ib(factory=Event)
    counters: StressCounters = attr.ib(factory=StressCounters)
    timer: Timer = attr.ib(factory=Timer)
    clock: Callable[[], float] = time.monotonic
    # the worker binds this to the GPU holding its partition; no readings by default
    telemetry: Callable[[], Telemetry] = Telemetry
    start_time: float = 0.0

    @property
    def elapsed_sec(self) -> float:
        return self.clock() - self.start_time

    def progress(self) -> str:
        return f"{self.elapsed_sec:.0f}s/{self.duration_sec:.0f}s"

    def pause(self, seconds: float) -> None:
        """Sleeps, waking up as soon as a stop is requested."""
        if seconds > 0:
            self.stop_event.wait(seconds)

    def memory_status(self) -> str:
        allocated = torch.cuda.memory_allocated(self.device) / GB
        reserved = torch.cuda.memory_reserved(self.device) / GB
        return f"Mem: {allocated:.2f}GB | Reserved: {reserved:.2f}GB"


class StressStrategy(Protocol):
    loop_kind: LoopKind

    def allocate(self) -> None:
        ...

    def step(self, iteration: int) -> None:
        ...

    def cleanup(self) -> None:
        ...

    def summary(self) -> Tuple[str, ...]:
        ...


def is_out_of_memory(error: BaseException) -> bool:
    """Pinned host allocations, cuBLAS workspaces and stream creation report exhaustion as a plain RuntimeError.

    >>> is_out_of_memory(RuntimeError("CUDA error: out of memory"))
    True
    >>> is_out_of_memory(RuntimeError("CUDA error: an illegal memory access was encountered"))
    False
    >>> is_out_of_memory(ValueError("out of memory"))
    False
    """
    return isinstance(error, torch.cuda.OutOfMemoryError) or (
        isinstance(error, RuntimeError) and "out of memory" in str(error)
    )


def try_allocate(num_bytes: int, context: StrategyContext, pin_memory: bool = False) -> Optional[torch.Tensor]:
    """Allocates a float32 tensor of about `num_bytes`, or returns None when the memory is exhausted.

    With `pin_memory`, the tensor lives in page-locked host memory instead of on the device.
    """
    num_elements = max(1, num_bytes // FLOAT32_BYTES)
    try:
        if pin_memory:
            tensor = torch.randn(num_elements, dtype=torch.float32, pin_memory=True)
        else:
            tensor = torch.randn(num_elements, dtype=torch.float32, device=context.device)
    except RuntimeError as e:
        if not is_out_of_memory(e):
            raise
        context.counters.oom_events += 1
        torch.cuda.empty_cache()
        return None
    context.counters.allocations += 1
    return tensor


def allocate_fraction(fraction: float, chunk_bytes: int, context: StrategyContext) -> List[torch.Tensor]:
    """Fills `fraction` of the device memory with `chunk_bytes` tensors, stopping early at the first OOM."""
    target = int(context.total_memory * fraction)
    tensors: List[torch.Tensor] = []
    allocated = 0
    while allocated < target:
        size = min(chunk_bytes, target - allocated)
        tensor = try_allocate(size, context)
        if tensor is None:
            logger.info(f"Reached the memory limit at {allocated / GB:.2f} GB")
            break
        tensors.append(tensor)
        allocated += size
    torch.cuda.synchronize(context.device)
    logger.info(
        f"Allocated {allocated / GB:.2f} GB in {len(tensors)} chunks ({allocated / context.total_memory * 100:.1f}% of device memory)"
    )
    return tensors


def free_random_subset(tensors: List[torch.Tensor], fraction: float, context: StrategyContext) -> None:
    """Deletes `fraction` of the tensors in random order to fragment the allocator."""
    indices = random.sample(range(len(tensors)), int(len(tensors) * fraction))
    for index in sorted(indices, reverse=True):
        del tensors[index]
        context.counters.deallocations += 1


def describe_values(values: Sequence[float], unit: str) -> str:
    """
    >>> describe_values([60.0, 70.0, 80.0], "C")
    'min 60.0C, max 80.0C, mean 70.0C, p50 70.0C, delta 20.0C'
    >>> describe_values([], "W")
    'no samples'
    """
    if len(values) == 0:
        return "no samples"
    array = np.asarray(values, dtype=np.float64)
    return (
        f"min {array.min():.1f}{unit}, max {array.max():.1f}{unit}, mean {array.mean():.1f}{unit}, "
        f"p50 {np.percentile(array, 50):.1f}{unit}, delta {array.max() - array.min():.1f}{unit}"
    )


class SustainedLoad:
    """Holds a large share of the memory and keeps every chunk busy with cheap elementwise ops."""

    loop_kind = LoopKind.STRESSING

    def __init__(self, params: SustainedLoadParams, context: StrategyContext) -> None:
        self.params = params
        self.context = context
        self.tensors: List[torch.Tensor] = []

    def allocate(self) -> None:
        self.tensors = allocate_fraction(self.params.target_fraction, self.params.chunk_mb * MB, self.context)

    def step(self, iteration: int) -> None:
        for tensor in self.tensors:
            tensor.mul_(1.0001)
            tensor.add_(0.0001)
        if iteration % self.params.sync_every == 0:
            torch.cuda.synchronize(self.context.device)
        if iteration % self.params.progress_every == 0:
            logger.info(f"Iteration {iteration} | {self.context.progress()} | {self.context.memory_status()}")
        self.context.pause(self.params.sleep_sec)

    def cleanup(self) -> None:
        self.tensors.clear()
        torch.cuda.empty_cache()

    def summary(self) -> Tuple[str, ...]:
        return (f"Chunks held: {self.context.counters.allocations}",)


class Thrashing:
    """Allocates and frees chunks of random sizes as fast as possible to fragment the allocator."""

    loop_kind = LoopKind.CYCLING

    def __init__(self, params: ThrashingParams, context: StrategyContext) -> None:
        self.params = params
        self.context = context

    def allocate(self) -> None:
        logger.info(f"Thrashing with chunk sizes {', '.join(f'{size}MB' for size in self.params.chunk_sizes_mb)}")

    def step(self, iteration: int) -> None:
        tensors: List[torch.Tensor] = []
        for _ in range(random.randint(self.params.min_allocations, self.params.max_allocations)):
            tensor = try_allocate(random.choice(self.params.chunk_sizes_mb) * MB, self.context)
            if tensor is None:
                break
            tensors.append(tensor)
        torch.cuda.synchronize(self.context.device)

        for tensor in random.sample(tensors, min(self.params.max_operated, len(tensors))):
            tensor.mul_(1.01)
            tensor.add_(0.01)
            tensor.pow_(2)
            tensor.sqrt_()
            side = int(tensor.numel() ** 0.5)
            if side > 100:
                square = tensor[: side * side].view(side, side)
                torch.mm(square, square.T)
        torch.cuda.synchronize(self.context.device)

        free_random_subset(tensors, self.params.free_fraction, self.context)
        del tensors
        if iteration % self.params.empty_cache_every == 0:
            torch.cuda.empty_cache()
        if iteration % self.params.progress_every == 0:
            counters = self.context.counters
            logger.info(
                f"Cycle {iteration} | {self.context.progress()} | Allocs: {counters.allocations} | "
                f"Deallocs: {counters.deallocations} | OOMs: {counters.oom_events} | {self.context.memory_status()}"
            )
        self.context.pause(self.params.sleep_sec)

    def cleanup(self) -> None:
        torch.cuda.empty_cache()

    def summary(self) -> Tuple[str, ...]:
        return ()


class BaseLoadThrashing:
    """Thrashes the memory left over by a persistent base load, never going above a ceiling."""

    loop_kind = LoopKind.CYCLING

    def __init__(self, params: BaseLoadThrashingParams, context: StrategyContext) -> None:
        self.params = params
        self.context = context
        self.base: List[torch.Tensor] = []

    def allocate(self) -> None:
        self.base = allocate_fraction(self.params.base_fraction, 100 * MB, self.context)
        base_bytes = torch.cuda.memory_allocated(self.context.device)
        logger.info(f"Available for thrashing: {(self.context.total_memory - base_bytes) / GB:.2f} GB")

    def step(self, iteration: int) -> None:
        ceiling = self.context.total_memory * self.params.ceiling_fraction
        tensors: List[torch.Tensor] = []
        for _ in range(random.randint(self.params.min_allocations, self.params.max_allocations)):
            in_use = torch.cuda.memory_allocated(self.context.device)
            if in_use > ceiling:
                break
            available = self.context.total_memory - in_use
            sizes = [size for size in self.params.chunk_sizes_mb if size * MB <= available]
            if not sizes:
                break
            tensor = try_allocate(random.choice(sizes) * MB, self.context)
            if tensor is None:
                break
            tensors.append(tensor)
        torch.cuda.synchronize(self.context.device)

        for tensor in random.sample(tensors, min(self.params.max_operated, len(tensors))):
            tensor.mul_(1.01)
            tensor.add_(0.01)
        torch.cuda.synchronize(self.context.device)

        if iteration % self.params.touch_base_every == 0 and self.base:
            for tensor in random.sample(self.base, min(5, len(self.base))):
                tensor.mul_(1.0001)

        free_random_subset(tensors, self.params.free_fraction, self.context)
        del tensors
        if iteration % self.params.empty_cache_every == 0:
            torch.cuda.empty_cache()
        if iteration % self.params.progress_every == 0:
            counters = self.context.counters
            logger.info(
                f"Cycle {iteration} | {self.context.progress()} | Allocs: {counters.allocations} | "
                f"Deallocs: {counters.deallocations} | OOMs: {counters.oom_events} | {self.context.memory_status()}"
            )
        self.context.pause(self.params.sleep_sec)

    def cleanup(self) -> None:
        self.base.clear()
        torch.cuda.empty_cache()

    def summary(self) -> Tuple[str, ...]:
        return (f"Base chunks: {len(self.base)}",)


class CudaEdgeCases:
    """Many streams, odd tensor shapes, cross-stream syncs, reshapes and in-place chains."""

    loop_kind = LoopKind.STRESSING

    def __init__(self, params: CudaEdgeCaseParams, context: StrategyContext) -> None:
        self.params = params
        self.context = context
        self.streams: List[torch.cuda.Stream] = []
        self.odd_tensors: List[torch.Tensor] = []
        self.working: List[torch.Tensor] = []

    def allocate(self) -> None:
        try:
            for _ in range(self.params.max_streams):
                self.streams.append(torch.cuda.Stream(device=self.context.device))
        except RuntimeError as e:
            logger.warning(f"Could only create {len(self.streams)} CUDA streams: {e}")
        logger.info(f"Created {len(self.streams)} CUDA streams")

        for shape in UNUSUAL_SHAPES:
            try:
                tensor = torch.randn(shape, dtype=torch.float32, device=self.context.device)
            except RuntimeError as e:
                if not is_out_of_memory(e):
                    raise
                self.context.counters.oom_events += 1
                torch.cuda.empty_cache()
                logger.warning(f"Out of memory creating a tensor of shape {shape}")
                continue
            self.odd_tensors.append(tensor)
            logger.info(f"Created tensor with shape {shape}: {tensor.numel() * FLOAT32_BYTES / MB:.2f} MB")

        chunk_bytes = self.params.chunk_mb * MB
        chunk_count = min(
            self.params.working_chunks, int(self.context.total_memory * self.params.working_fraction / chunk_bytes)
        )
        for _ in range(chunk_count):
            tensor = try_allocate(chunk_bytes, self.context)
            if tensor is None:
                break
            self.working.append(tensor)
        logger.info(f"Allocated {len(self.working)} working tensors ({len(self.working) * self.params.chunk_mb} MB)")

    def step(self, iteration: int) -> None:
        if not self.working:
            raise RuntimeError("No working tensors could be allocated")
        for index, stream in enumerate(self.streams[: self.params.active_streams]):
            with torch.cuda.stream(stream):
                tensor = self.working[index % len(self.working)]
                tensor.mul_(1.001)
                tensor.add_(0.001)
        if iteration % self.params.sync_every == 0:
            torch.cuda.synchronize(self.context.device)
        if iteration % self.params.reduce_every == 0:
            for tensor in self.working[:5]:
                tensor.sum()
                tensor.mean()
                tensor.std()
        if iteration % self.params.reshape_every == 0:
            for tensor in self.working[:3]:
                side = int(tensor.size(0) ** 0.5)
                tensor[: side * side].reshape(side, side).t().contiguous()
        if iteration % self.params.inplace_every == 0:
            self.working[0].add_(1.0).mul_(0.99).clamp_(-10, 10).abs_()
        if iteration % self.params.burst_every == 0:
            burst = [try_allocate(4 * MB, self.context) for _ in range(5)]
            del burst
            torch.cuda.empty_cache()
        if iteration % self.params.progress_every == 0:
            logger.info(
                f"Iteration {iteration} | {self.context.progress()} | {self.context.memory_status()} | "
                f"Streams: {len(self.streams)}"
            )
        self.context.pause(self.params.sleep_sec)

    def cleanup(self) -> None:
        torch.cuda.synchronize(self.context.device)
        self.streams.clear()
        self.odd_tensors.clear()
        self.working.clear()
        torch.cuda.empty_cache()

    def summary(self) -> Tuple[str, ...]:
        return (f"CUDA streams used: {len(self.streams)}",)


class PcieTransfer:
    """Round-trips a large pinned host buffer through the device, with matmuls in between."""

    loop_kind = LoopKind.STRESSING

    def __init__(self, params: PcieTransferParams, context: StrategyContext) -> None:
        self.params = params
        self.context = context
        self.host: Optional[torch.Tensor] = None
        self.device_buffer: Optional[torch.Tensor] = None
        self.a: Optional[torch.Tensor] = None
        self.b: Optional[torch.Tensor] = None
        self.transfer_bytes = 0
        self.h2d_bytes = 0
        self.d2h_bytes = 0
        self.compute_ops = 0
        self.bandwidths: List[float] = []

    def allocate(self) -> None:
        transfer_bytes = int(self.context.total_memory * self.params.buffer_fraction)
        # halve the buffer until both sides fit
        while transfer_bytes >= MB:
            host = try_allocate(transfer_bytes, self.context, pin_memory=True)
            device_buffer = try_allocate(transfer_bytes, self.context) if host is not None else None
            if host is not None and device_buffer is not None:
                self.host, self.device_buffer, self.transfer_bytes = host, device_buffer, transfer_bytes
                break
            del host, device_buffer
            transfer_bytes //= 2
        if self.host is None:
            raise RuntimeError("Could not allocate a transfer buffer of at least 1 MB")
        logger.info(f"Transfer size: {self.transfer_bytes / GB:.2f} GB")
        size = self.params.matrix_size
        self.a = torch.randn(size, size, dtype=torch.float32, device=self.context.device)
        self.b = torch.randn(size, size, dtype=torch.float32, device=self.context.device)

    def step(self, iteration: int) -> None:
        assert self.host is not None and self.device_buffer is not None
        start = time.perf_counter()
        self.device_buffer.copy_(self.host, non_blocking=True)
        self.h2d_bytes += self.transfer_bytes
        if iteration % self.params.matmul_every == 0:
            torch.mm(self.a, self.b)
            self.compute_ops += 1
        # blocking copy back paces the iterations
        self.host.copy_(self.device_buffer, non_blocking=False)
        self.d2h_bytes += self.transfer_bytes
        seconds = time.perf_counter() - start
        if seconds > 0:
            self.bandwidths.append(2 * self.transfer_bytes / seconds / GB)
        if iteration % self.params.progress_every == 0:
            elapsed = max(self.context.elapsed_sec, 1e-9)
            logger.info(
                f"Iter {iteration} | {self.context.progress()} | H2D: {self.h2d_bytes / elapsed / GB:.2f} GB/s | "
                f"D2H: {self.d2h_bytes / elapsed / GB:.2f} GB/s | "
                f"Total: {(self.h2d_bytes + self.d2h_bytes) / elapsed / GB:.2f} GB/s | Compute ops: {self.compute_ops}"
            )

    def cleanup(self) -> None:
        self.host = self.device_buffer = self.a = self.b = None
        torch.cuda.empty_cache()

    def summary(self) -> Tuple[str, ...]:
        elapsed = max(self.context.elapsed_sec, 1e-9)
        return (
            f"Total data transferred: {(self.h2d_bytes + self.d2h_bytes) / GB:.2f} GB",
            f"H2D bandwidth: {self.h2d_bytes / elapsed / GB:.2f} GB/s",
            f"D2H bandwidth: {self.d2h_bytes / elapsed / GB:.2f} GB/s",
            f"Round trip bandwidth: {describe_values(self.bandwidths, ' GB/s')}",
            f"Compute operations: {self.compute_ops}",
        )


class ThermalCycling:
    """Alternates HOT phases (memory mostly full, matmuls) with COLD phases (everything freed)."""

    loop_kind = LoopKind.CYCLING

    def __init__(self, params: ThermalCyclingParams, context: StrategyContext) -> None:
        self.params = params
        self.context = context
        self.tensors: List[torch.Tensor] = []
        self.a: Optional[torch.Tensor] = None
        self.b: Optional[torch.Tensor] = None
        self.is_hot: Optional[bool] = None
        self.cycle = 0
        self.temperatures: List[float] = []
        self.powers: List[float] = []

    def allocate(self) -> None:
        initial = self.context.telemetry()
        logger.info(f"Initial telemetry: {initial.display()}")
        self._record(initial)

    def _record(self, telemetry: Telemetry) -> None:
        if telemetry.temperature_c is not None:
            self.temperatures.append(telemetry.temperature_c)
        if telemetry.power_w is not None:
            self.powers.append(telemetry.power_w)

    def _sample(self, phase: str) -> None:
        telemetry = self.context.telemetry()
        self._record(telemetry)
        logger.info(f"  {phase}: {self.context.progress()} | {telemetry.display()}")

    def _enter_hot(self) -> None:
        self.cycle += 1
        logger.info(f"Cycle {self.cycle}: HOT phase")
        size = self.params.matrix_size
        self.a = try_allocate(size * size * FLOAT32_BYTES, self.context)
        self.b = try_allocate(size * size * FLOAT32_BYTES, self.context)
        if self.a is not None and self.b is not None:
            self.a = self.a.view(size, size)
            self.b = self.b.view(size, size)
        self.tensors = allocate_fraction(self.params.hot_fraction, 100 * MB, self.context)

    def _enter_cold(self) -> None:
        logger.info(f"Cycle {self.cycle}: COLD phase")
        self.tensors.clear()
        self.a = self.b = None
        torch.cuda.synchronize(self.context.device)
        torch.cuda.empty_cache()

    def step(self, iteration: int) -> None:
        is_hot = int(self.context.elapsed_sec // self.params.cycle_duration_sec) % 2 == 0
        if is_hot != self.is_hot:
            with self.context.timer("phase_switch"):
                if is_hot:
                    self._enter_hot()
                else:
                    self._enter_cold()
            self.is_hot = is_hot
        if is_hot:
            if self.a is not None and self.b is not None:
                torch.mm(self.a, self.b)
            for tensor in self.tensors[:5]:
                tensor.mul_(1.0001)
            if iteration % self.params.hot_sample_every == 0:
                torch.cuda.synchronize(self.context.device)
                self._sample("HOT")
        else:
            self.context.pause(self.params.cold_sample_interval_sec)
            self._sample("COLD")

    def cleanup(self) -> None:
        self._enter_cold()

    def summary(self) -> Tuple[str, ...]:
        return (
            f"Thermal cycles: {self.cycle}",
            f"Temperature: {describe_values(self.temperatures, 'C')}",
            f"Power: {describe_values(self.powers, 'W')}",
        )


class Compute:
    """Chained square matmuls."""

    loop_kind = LoopKind.STRESSING

    def __init__(self, params: ComputeParams, context: StrategyContext) -> None:
        self.params = params
        self.context = context
        self.a: Optional[torch.Tensor] = None
        self.b: Optional[torch.Tensor] = None

    def allocate(self) -> None:
        size = self.params.matrix_size
        self.a = torch.randn(size, size, dtype=torch.float32, device=self.context.device)
        self.b = torch.randn(size, size, dtype=torch.float32, device=self.context.device)

    def step(self, iteration: int) -> None:
        assert self.a is not None and self.b is not None
        product = torch.mm(self.a, self.b)
        # keep the chain finite
        self.a = product / product.abs().max().clamp(min=1e-6)
        if iteration % self.params.progress_every == 0:
            logger.info(f"Compute: {iteration} iterations, {self.context.progress()}")

    def cleanup(self) -> None:
        self.a = self.b = None
        torch.cuda.empty_cache()

    def summary(self) -> Tuple[str, ...]:
        return ()


class MemoryCycling:
    loop_kind = LoopKind.CYCLING

    def __init__(self, params: MemoryCyclingParams, context: StrategyContext) -> None:
        self.params = params
        self.context = context

    def allocate(self) -> None:
        chunk_gb = self.context.total_memory * self.params.chunk_fraction / GB
        logger.info(f"Cycling {self.params.chunk_count} chunks of {chunk_gb:.2f} GB")

    def step(self, iteration: int) -> None:
        tensors: List[torch.Tensor] = []
        for _ in range(self.params.chunk_count):
            tensor = try_allocate(int(self.context.total_memory * self.params.chunk_fraction), self.context)
            if tensor is None:
                break
            tensors.append(tensor)
        for tensor in tensors:
            tensor.mul_(1.01)
        torch.cuda.synchronize(self.context.device)
        self.context.counters.deallocations += len(tensors)
        del tensors
        torch.cuda.empty_cache()
        if iteration % self.params.progress_every == 0:
            logger.info(f"Memory: {iteration} cycles, {self.context.progress()}")
        self.context.pause(self.params.sleep_sec)

    def cleanup(self) -> None:
        torch.cuda.empty_cache()

    def summary(self) -> Tuple[str, ...]:
        return ()


class Transfer:
    loop_kind = LoopKind.STRESSING

    def __init__(self, params: TransferParams, context: StrategyContext) -> None:
        self.params = params
        self.context = context
        self.host: Optional[torch.Tensor] = None
        self.device_buffer: Optional[torch.Tensor] = None

    def allocate(self) -> None:
        num_elements = self.params.buffer_mb * MB // FLOAT32_BYTES
        self.host = torch.randn(num_elements, dtype=torch.float32, pin_memory=True)
        self.device_buffer = torch.empty(num_elements, dtype=torch.float32, device=self.context.device)

    def step(self, iteration: int) -> None:
        assert self.host is not None and self.device_buffer is not None
        self.device_buffer.copy_(self.host)
        self.host.copy_(self.device_buffer)
        if iteration % self.params.progress_every == 0:
            logger.info(f"Transfer: {iteration} transfers, {self.context.progress()}")
        self.context.pause(self.params.sleep_sec)

    def cleanup(self) -> None:
        self.host = self.device_buffer = None
        torch.cuda.empty_cache()

    def summary(self) -> Tuple[str, ...]:
        return (f"Data moved: {2 * self.context.counters.iterations * self.params.buffer_mb / 1024:.2f} GB",)


class Streams:
    loop_kind = LoopKind.STRESSING

    def __init__(self, params: StreamsParams, context: StrategyContext) -> None:
        self.params = params
        self.context = context
        self.streams: List[torch.cuda.Stream] = []
        self.tensors: List[torch.Tensor] = []

    def allocate(self) -> None:
        size = self.params.matrix_size
        self.streams = [torch.cuda.Stream(device=self.context.device) for _ in range(self.params.stream_count)]
        self.tensors = [
            torch.randn(size, size, dtype=torch.float32, device=self.context.device)
            for _ in range(self.params.stream_count)
        ]

    def step(self, iteration: int) -> None:
        for stream, tensor in zip(self.streams, self.tensors):
            with torch.cuda.stream(stream):
                tensor.mul_(1.001)
                tensor.add_(0.001)
        for stream in self.streams:
            stream.synchronize()
        if iteration % self.params.progress_every == 0:
            logger.info(f"Streams: {iteration} iterations, {self.context.progress()}")

    def cleanup(self) -> None:
        self.streams.clear()
        self.tensors.clear()
        torch.cuda.empty_cache()

    def summary(self) -> Tuple[str, ...]:
        return ()


STRATEGIES: Final[Dict[StrategyName, Callable[[StrategyParams, StrategyContext], StressStrategy]]] = {
    StrategyName.SUSTAINED_LOAD: SustainedLoad,  # type: ignore
    StrategyName.THRASHING: Thrashing,  # type: ignore
    StrategyName.BASE_LOAD_THRASHING: BaseLoadThrashing,  # type: ignore
    StrategyName.CUDA_EDGE_CASES: CudaEdgeCases,  # type: ignore
    StrategyName.PCIE_TRANSFER: PcieTransfer,  # type: ignore
    StrategyName.THERMAL_CYCLING: ThermalCycling,  # type: ignore
    StrategyName.COMPUTE: Compute,  # type: ignore
    StrategyName.MEMORY_CYCLING: MemoryCycling,  # type: ignore
    StrategyName.TRANSFER: Transfer,  # type: ignore
    StrategyName.STREAMS: Streams,  # type: ignore
}


def build_strategy(strategy: StrategyName, params: StrategyParams, context: StrategyContext) -> StressStrategy:
    return STRATEGIES[strategy](params, context)
