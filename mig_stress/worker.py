"""
Usage:
```
python -m mig_stress.worker --partition MIG-... --strategy sustained_load --params '{}' --duration 1800 --role peer --worker-id 0
```

Stresses one MIG partition with one strategy for a fixed duration. The launcher selects the partition by setting
CUDA_VISIBLE_DEVICES in this process's environment, and passes the same identifier as `--partition` so the worker can
check that it actually got the device it was asked to stress.

Exit codes: 0 success (including a requested stop), 1 fatal error, 3 partition unavailable.
"""

import argparse
import os
import signal
import sys
from enum import Enum
from threading import Event
from types import FrameType
from typing import List
from typing import Optional

import attr
import torch
from loguru import logger

from mig_stress.logs import configure_stderr
from mig_stress.partitions import partition_telemetry
from mig_stress.results import WORKER_DEVICE_UNAVAILABLE_EXIT_CODE
from mig_stress.results import WORKER_FAILURE_EXIT_CODE
from mig_stress.results import WORKER_SUCCESS_EXIT_CODE
from mig_stress.strategies import GB
from mig_stress.strategies import LoopKind
from mig_stress.strategies import StrategyContext
from mig_stress.strategies import StressStrategy
from mig_stress.strategies import build_strategy
from mig_stress.strategies import is_out_of_memory
from mig_stress.workloads import InvalidWorkloadError
from mig_stress.workloads import PartitionId
from mig_stress.workloads import StrategyName
from mig_stress.workloads import StrategyParams
from mig_stress.workloads import WorkerRole
from mig_stress.workloads import params_from_json
from mig_stress.workloads import parse_strategy


class WorkerState(Enum):
    INIT = "INIT"
    ALLOCATING = "ALLOCATING"
    STRESSING = "STRESSING"
    CYCLING = "CYCLING"
    CLEANUP = "CLEANUP"
    DONE = "DONE"
    FAILED = "FAILED"


class DeviceUnavailableError(Exception):
    pass


@attr.s(auto_attribs=True, frozen=True)
class PartitionContext:
    partition_id: PartitionId
    device: torch.device
    device_name: str
    total_memory: int

    @classmethod
    def open(cls, partition_id: PartitionId) -> "PartitionContext":
        visible = os.environ.get("CUDA_VISIBLE_DEVICES", "")
        if partition_id not in (device.strip() for device in visible.split(",")):
            raise DeviceUnavailableError(
                f"Partition {partition_id} is not visible to this process (CUDA_VISIBLE_DEVICES={visible!r})"
            )
        if not torch.cuda.is_available() or torch.cuda.device_count() < 1:
            raise DeviceUnavailableError(f"CUDA is not available for partition {partition_id}")
        device = torch.device("cuda:0")
        properties = torch.cuda.get_device_properties(device)
        return cls(
            partition_id=partition_id,
            device=device,
            device_name=properties.name,
            total_memory=properties.total_memory,
        )


class WorkerDriver:
    """Runs a strategy through INIT -> ALLOCATING -> STRESSING/CYCLING -> CLEANUP -> DONE (or FAILED)."""

    def __init__(self, strategy: StressStrategy, context: StrategyContext) -> None:
        self.strategy = strategy
        self.context = context
        self.state = WorkerState.INIT

    def _transition(self, state: WorkerState) -> None:
        logger.info(f"State: {self.state.value} -> {state.value}")
        self.state = state

    def _record_oom(self, where: str, error: RuntimeError) -> None:
        self.context.counters.oom_events += 1
        torch.cuda.empty_cache()
        first_line = str(error).splitlines()[0] if str(error) else type(error).__name__
        logger.warning(f"Out of memory during {where}, continuing: {first_line}")

    def _stress(self) -> None:
        context = self.context
        deadline = context.start_time + context.duration_sec
        iteration = 0
        while context.clock() < deadline and not context.stop_event.is_set():
            iteration += 1
            try:
                self.strategy.step(iteration)
            except RuntimeError as e:
                if not is_out_of_memory(e):
                    raise
                self._record_oom(f"iteration {iteration}", e)
            context.counters.iterations = iteration
        if context.stop_event.is_set():
            logger.info(f"Stop requested after {iteration} iterations")

    def run(self) -> int:
        timer = self.context.timer
        try:
            self._transition(WorkerState.ALLOCATING)
            with timer("allocate"):
                try:
                    self.strategy.allocate()
                except RuntimeError as e:
                    if not is_out_of_memory(e):
                        raise
                    self._record_oom("allocation", e)

            loop_state = WorkerState.CYCLING if self.strategy.loop_kind == LoopKind.CYCLING else WorkerState.STRESSING
            self._transition(loop_state)
            self.context.start_time = self.context.clock()
            with timer(loop_state.value.lower()):
                self._stress()

            self._transition(WorkerState.CLEANUP)
            with timer("cleanup"):
                self.strategy.cleanup()
        except Exception as e:
            logger.exception(f"Fatal error in state {self.state.value}: {e}")
            self._transition(WorkerState.FAILED)
            return WORKER_FAILURE_EXIT_CODE

        self._log_statistics()
        self._transition(WorkerState.DONE)
        return WORKER_SUCCESS_EXIT_CODE

    def _log_statistics(self) -> None:
        counters = self.context.counters
        elapsed = max(self.context.elapsed_sec, 1e-9)
        logger.info("=" * 50)
        logger.info(f"Iterations: {counters.iterations} ({counters.iterations / elapsed:.2f}/s)")
        logger.info(f"Allocations: {counters.allocations} | Deallocations: {counters.deallocations}")
        logger.info(f"OOM events: {counters.oom_events}")
        for line in self.strategy.summary():
            logger.info(line)
        logger.info(f"Phases: {self.context.timer.format()}")
        logger.info("=" * 50)


def install_stop_handler(stop_event: Event) -> None:
    def _request_stop(signum: int, frame: Optional[FrameType]) -> None:
        logger.info(f"Received signal {signum}, stopping after the current step")
        stop_event.set()

    signal.signal(signal.SIGTERM, _request_stop)


def run_worker(
    partition_id: PartitionId,
    strategy_name: StrategyName,
    params: StrategyParams,
    duration_sec: float,
    role: WorkerRole = WorkerRole.PEER,
    worker_index: int = 0,
    stop_event: Optional[Event] = None,
) -> int:
    logger.info(
        f"Worker {worker_index} (pid {os.getpid()}, {role.value}) running {strategy_name.value} on {partition_id} "
        f"for {duration_sec:.0f}s"
    )
    try:
        partition = PartitionContext.open(partition_id)
    except DeviceUnavailableError as e:
        logger.error(str(e))
        return WORKER_DEVICE_UNAVAILABLE_EXIT_CODE

    logger.info(f"Device: {partition.device_name}, total memory: {partition.total_memory / GB:.2f} GB")
    context = StrategyContext(
        device=partition.device,
        total_memory=partition.total_memory,
        duration_sec=duration_sec,
        stop_event=stop_event if stop_event is not None else Event(),
    )
    if strategy_name == StrategyName.THERMAL_CYCLING:
        context.telemetry = partition_telemetry(partition_id)
    strategy = build_strategy(strategy_name, params, context)
    return WorkerDriver(strategy, context).run()


@logger.catch(reraise=True)
def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Stress one MIG partition with one strategy.")
    parser.add_argument("--partition", required=True, help="the MIG identifier of the partition, e.g. MIG-...")
    parser.add_argument("--strategy", required=True, help="one of the strategy names, e.g. sustained_load")
    parser.add_argument("--params", default="{}", help="JSON object overriding the strategy's default parameters")
    parser.add_argument("--duration", type=float, required=True, help="seconds to stress the partition")
    parser.add_argument("--role", default=WorkerRole.PEER.value, choices=[role.value for role in WorkerRole])
    parser.add_argument("--worker-id", type=int, default=0)
    args = parser.parse_args(argv)

    configure_stderr()
    try:
        strategy_name = parse_strategy(args.strategy)
        params = params_from_json(strategy_name, args.params)
    except InvalidWorkloadError as e:
        parser.error(str(e))
    if args.duration <= 0:
        parser.error(f"--duration must be positive, got {args.duration}")

    stop_event = Event()
    install_stop_handler(stop_event)
    sys.exit(
        run_worker(
            partition_id=PartitionId(args.partition),
            strategy_name=strategy_name,
            params=params,
            duration_sec=args.duration,
            role=WorkerRole(args.role),
            worker_index=args.worker_id,
            stop_event=stop_event,
        )
    )


if __name__ == "__main__":
    main()
