import subprocess
import time
from pathlib import Path
from threading import Event
from typing import Callable
from typing import Dict
from typing import Final
from typing import List
from typing import Optional
from typing import Sequence
from typing import Tuple

from loguru import logger

from mig_stress.launcher import LaunchedWorker
from mig_stress.results import WorkerOutcome
from mig_stress.results import WorkerStatus
from mig_stress.results import status_from_exit_code
from mig_stress.utils.events import get_expiration_event
from mig_stress.workloads import WorkerRole

KILL_WAIT_SEC: Final[float] = 10.0


class Collector:
    """Waits for the workers of one wave and turns each of them into exactly one `WorkerOutcome`.

    Only the workers that count toward the round are waited for. Secondaries still running once those are done are
    asked to stop, and killed if they don't within `stop_grace_sec`.
    """

    def __init__(
        self,
        stop_grace_sec: float = 30.0,
        poll_interval_sec: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        cancel_event: Optional[Event] = None,
    ) -> None:
        self.stop_grace_sec = stop_grace_sec
        self.poll_interval_sec = poll_interval_sec
        self.clock = clock
        self.cancel_event = cancel_event if cancel_event is not None else Event()

    def _outcome(
        self,
        worker: LaunchedWorker,
        status: WorkerStatus,
        returncode: Optional[int] = None,
        forced: bool = False,
        error: Optional[str] = None,
    ) -> WorkerOutcome:
        outcome = WorkerOutcome.for_spec(
            worker.spec,
            status,
            pid=worker.pid,
            returncode=returncode,
            elapsed_sec=self.clock() - worker.started_at,
            log_path=worker.log_path,
            forced=forced,
            error=error,
        )
        log = logger.info if status in (WorkerStatus.SUCCESS, WorkerStatus.STOPPED) else logger.warning
        log(outcome.display())
        return outcome

    def _stop_all(self, workers: Sequence[LaunchedWorker]) -> Dict[int, bool]:
        """Terminates every worker, then kills the ones still alive after the grace period.

        Returns, per worker index, whether the worker had to be killed.
        """
        for worker in workers:
            assert worker.process is not None
            logger.info(f"Stopping {worker.spec.describe()} (pid {worker.pid})")
            worker.process.terminate()
        deadline = self.clock() + self.stop_grace_sec
        forced: Dict[int, bool] = {}
        for worker in workers:
            assert worker.process is not None
            try:
                worker.process.wait(timeout=max(0.0, deadline - self.clock()))
                forced[worker.spec.worker_index] = False
            except subprocess.TimeoutExpired:
                logger.warning(f"{worker.spec.describe()} did not stop within {self.stop_grace_sec:.0f}s, killing it")
                worker.process.kill()
                try:
                    worker.process.wait(timeout=KILL_WAIT_SEC)
                except subprocess.TimeoutExpired:
                    logger.error(f"pid {worker.pid} didn't terminate after kill")
                forced[worker.spec.worker_index] = True
        return forced

    def collect(self, workers: Sequence[LaunchedWorker], timeout_sec: float) -> Tuple[WorkerOutcome, ...]:
        outcomes: Dict[int, WorkerOutcome] = {}
        for worker in workers:
            if worker.spawn_error is not None:
                outcomes[worker.spec.worker_index] = self._outcome(
                    worker, WorkerStatus.SPAWN_ERROR, error=worker.spawn_error
                )
            elif worker.cancelled:
                outcomes[worker.spec.worker_index] = self._outcome(worker, WorkerStatus.CANCELLED)

        running = [worker for worker in workers if worker.process is not None]
        pending = [worker for worker in running if worker.spec.role != WorkerRole.SECONDARY]
        secondaries = [worker for worker in running if worker.spec.role == WorkerRole.SECONDARY]

        is_cancelled = False
        with get_expiration_event(timeout_sec) as expired:
            while pending:
                for worker in list(pending):
                    assert worker.process is not None
                    returncode = worker.process.poll()
                    if returncode is not None:
                        outcomes[worker.spec.worker_index] = self._outcome(
                            worker, status_from_exit_code(returncode), returncode=returncode
                        )
                        pending.remove(worker)
                if not pending:
                    break
                if self.cancel_event.is_set():
                    is_cancelled = True
                    break
                if expired.is_set():
                    break
                expired.wait(self.poll_interval_sec)

        if is_cancelled:
            logger.warning(f"Run cancelled, stopping {len(pending) + len(secondaries)} workers")
            to_stop = pending + [worker for worker in secondaries if worker.process.poll() is None]  # type: ignore
            forced = self._stop_all(to_stop)
            for worker in to_stop:
                outcomes[worker.spec.worker_index] = self._outcome(
                    worker,
                    WorkerStatus.CANCELLED,
                    returncode=worker.process.returncode,  # type: ignore
                    forced=forced[worker.spec.worker_index],
                )
        elif pending:
            logger.warning(f"{len(pending)} workers still running after the {timeout_sec:.0f}s timeout")
            forced = self._stop_all(pending)
            for worker in pending:
                outcomes[worker.spec.worker_index] = self._outcome(
                    worker,
                    WorkerStatus.TIMEOUT,
                    returncode=worker.process.returncode,  # type: ignore
                    forced=forced[worker.spec.worker_index],
                )

        still_running: List[LaunchedWorker] = []
        for worker in secondaries:
            if worker.spec.worker_index in outcomes:
                continue
            assert worker.process is not None
            returncode = worker.process.poll()
            if returncode is None:
                still_running.append(worker)
            else:
                outcomes[worker.spec.worker_index] = self._outcome(
                    worker, status_from_exit_code(returncode), returncode=returncode
                )
        if still_running:
            forced = self._stop_all(still_running)
            for worker in still_running:
                outcomes[worker.spec.worker_index] = self._outcome(
                    worker,
                    WorkerStatus.STOPPED,
                    returncode=worker.process.returncode,  # type: ignore
                    forced=forced[worker.spec.worker_index],
                )

        return tuple(outcomes[worker.spec.worker_index] for worker in workers)


def consolidate_logs(outcomes: Sequence[WorkerOutcome], round_log: Path) -> None:
    """Appends every worker log to the round log, each under a header naming the worker."""
    round_log.parent.mkdir(parents=True, exist_ok=True)
    with open(round_log, "a") as f:
        for outcome in outcomes:
            f.write("\n" + "=" * 60 + "\n")
            f.write(
                f"Device Log: worker {outcome.worker_index} | partition {outcome.partition_id} | "
                f"role {outcome.role.value} | strategy {outcome.strategy.value} | pid {outcome.pid} | "
                f"status {outcome.status.value}\n"
            )
            f.write("=" * 60 + "\n")
            if outcome.log_path is None or not outcome.log_path.is_file():
                f.write("(no log file was written for this worker)\n")
                continue
            with open(outcome.log_path, "r", errors="replace") as worker_log:
                f.write(worker_log.read())
