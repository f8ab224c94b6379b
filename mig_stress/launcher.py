import os
import subprocess
import time
from pathlib import Path
from threading import Event
from typing import IO
from typing import Any
from typing import Callable
from typing import Dict
from typing import List
from typing import Mapping
from typing import Optional
from typing import Sequence

import attr
from loguru import logger

from mig_stress.utils.events import wait_unless_cancelled
from mig_stress.workloads import PartitionId
from mig_stress.workloads import WorkerRole
from mig_stress.workloads import WorkloadSpec
from mig_stress.workloads import worker_command

SpawnFunction = Callable[[List[str], Dict[str, str], IO[Any]], "subprocess.Popen[Any]"]


def spawn_process(command: List[str], env: Dict[str, str], log_file: IO[Any]) -> "subprocess.Popen[Any]":
    return subprocess.Popen(
        command,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=log_file,
        stderr=subprocess.STDOUT,
    )


def worker_environment(partition_id: PartitionId, base_env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """
    The environment of one worker. The partition is selected here, for the child only.

    >>> env = worker_environment(PartitionId("MIG-1234"), {"PATH": "/usr/bin", "CUDA_VISIBLE_DEVICES": "0"})
    >>> env["CUDA_VISIBLE_DEVICES"], env["PATH"]
    ('MIG-1234', '/usr/bin')
    """
    env = dict(os.environ if base_env is None else base_env)
    env["CUDA_VISIBLE_DEVICES"] = partition_id
    env["PYTHONUNBUFFERED"] = "1"
    return env


@attr.s(auto_attribs=True, frozen=True)
class LaunchedWorker:
    """
    A spec and what happened when we tried to start it.

    Exactly one of `process`, `spawn_error` and `cancelled` describes the worker: it is running (or ran), it could not
    be started, or the run was cancelled before its turn came.
    """

    spec: WorkloadSpec
    log_path: Path
    started_at: float
    process: Optional["subprocess.Popen[Any]"] = None
    spawn_error: Optional[str] = None
    cancelled: bool = False

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None


def worker_log_path(log_dir: Path, spec: WorkloadSpec, timestamp: str) -> Path:
    return log_dir / f"{spec.kind.value}_worker_{spec.worker_index}_{timestamp}.log"


class Launcher:
    """Starts one OS process per spec. Secondaries go first and get a warmup before the other workers start."""

    def __init__(
        self,
        secondary_warmup_sec: float = 10.0,
        command_factory: Callable[[WorkloadSpec], List[str]] = worker_command,
        spawn: SpawnFunction = spawn_process,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], bool]] = None,
        cancel_event: Optional[Event] = None,
    ) -> None:
        self.secondary_warmup_sec = secondary_warmup_sec
        self.command_factory = command_factory
        self.spawn = spawn
        self.clock = clock
        self.cancel_event = cancel_event if cancel_event is not None else Event()
        # returns False when the wait was cut short by a cancellation
        self.sleep = sleep if sleep is not None else (lambda seconds: wait_unless_cancelled(seconds, self.cancel_event))

    def _start(self, spec: WorkloadSpec, log_dir: Path, timestamp: str) -> LaunchedWorker:
        log_path = worker_log_path(log_dir, spec, timestamp)
        command = self.command_factory(spec)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_file = open(log_path, "w")
        except OSError as e:
            logger.error(f"Failed to open the log of {spec.describe()} at {log_path}: {e}")
            return LaunchedWorker(
                spec=spec, log_path=log_path, started_at=self.clock(), spawn_error=f"Could not open {log_path}: {e}"
            )
        with log_file:
            try:
                process = self.spawn(command, worker_environment(spec.partition_id), log_file)
            except OSError as e:
                logger.error(f"Failed to start {spec.describe()}: {e}")
                log_file.write(f"Failed to start `{' '.join(command)}`: {e}\n")
                return LaunchedWorker(spec=spec, log_path=log_path, started_at=self.clock(), spawn_error=str(e))
        logger.info(f"Started {spec.describe()} with pid {process.pid}, logging to {log_path}")
        return LaunchedWorker(spec=spec, log_path=log_path, started_at=self.clock(), process=process)

    def _not_started(self, spec: WorkloadSpec, log_dir: Path, timestamp: str) -> LaunchedWorker:
        logger.info(f"Not starting {spec.describe()}: the run was cancelled")
        return LaunchedWorker(
            spec=spec, log_path=worker_log_path(log_dir, spec, timestamp), started_at=self.clock(), cancelled=True
        )

    def launch(self, specs: Sequence[WorkloadSpec], log_dir: Path, timestamp: str) -> List[LaunchedWorker]:
        secondaries = [spec for spec in specs if spec.role == WorkerRole.SECONDARY]
        others = [spec for spec in specs if spec.role != WorkerRole.SECONDARY]
        launched = []

        for spec in secondaries:
            if self.cancel_event.is_set():
                launched.append(self._not_started(spec, log_dir, timestamp))
            else:
                launched.append(self._start(spec, log_dir, timestamp))

        is_warm = True
        if secondaries and others:
            logger.info(f"Waiting {self.secondary_warmup_sec:.0f}s for {len(secondaries)} secondary workers to warm up")
            is_warm = self.sleep(self.secondary_warmup_sec)

        for spec in others:
            if not is_warm or self.cancel_event.is_set():
                launched.append(self._not_started(spec, log_dir, timestamp))
            else:
                launched.append(self._start(spec, log_dir, timestamp))
        return launched
