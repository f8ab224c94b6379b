"""Runs every configured workload kind, one after the other, with a cooldown in between.

A failed kind never stops the sequence. The run only stops early when the host can't run anything at all (no
partitions, no PyTorch) or when it is cancelled; in both cases every kind that didn't run is recorded as skipped.
"""

import time
from enum import Enum
from pathlib import Path
from threading import Event
from typing import Callable
from typing import List
from typing import Optional
from typing import Tuple

from loguru import logger
from typing_extensions import Protocol

from mig_stress.config import HarnessConfig
from mig_stress.health_checks import HealthyResult
from mig_stress.health_checks import TorchRuntimeHealthCheck
from mig_stress.health_checks import run_health_check
from mig_stress.logs import file_sink
from mig_stress.logs import log_section
from mig_stress.partitions import PartitionDiscoveryError
from mig_stress.partitions import discover_partitions
from mig_stress.partitions import setup_partitions
from mig_stress.results import RoundReport
from mig_stress.results import RunReport
from mig_stress.results import RunSummary
from mig_stress.rounds import make_timestamp
from mig_stress.utils.commands import CommandRunner
from mig_stress.utils.commands import run_local_command
from mig_stress.utils.events import wait_unless_cancelled
from mig_stress.utils.serialization import serialize_to_json
from mig_stress.workloads import PartitionId
from mig_stress.workloads import WorkloadKind

CANCELLED_REASON = "the run was cancelled"


class SequencerState(Enum):
    DISCOVER_PARTITIONS = "DISCOVER_PARTITIONS"
    VERIFY_RUNTIME = "VERIFY_RUNTIME"
    RUN_ROUND = "RUN_ROUND"
    COOLDOWN = "COOLDOWN"
    FINAL_SUMMARY = "FINAL_SUMMARY"


class RoundRunnerLike(Protocol):
    def run(self, kind: WorkloadKind, partitions: Tuple[PartitionId, ...]) -> RoundReport:
        ...


def discover_or_setup_partitions(config: HarnessConfig, run_command: CommandRunner) -> Tuple[PartitionId, ...]:
    """Lists the partitions, creating them first when there are none.

    A failed setup is logged and discovery runs again anyway: the partitions may exist regardless, and if they don't,
    the empty result is what stops the run.
    """
    partitions = discover_partitions(run_command)
    if partitions or not config.mig_setup.enabled:
        return partitions
    logger.info("No MIG partitions found, attempting MIG setup")
    setup = config.mig_setup
    if setup_partitions(setup.gpu_index, setup.profiles, setup.use_sudo, run_command):
        logger.info("MIG setup completed successfully")
    else:
        logger.error("MIG setup failed, but continuing anyway")
    return discover_partitions(run_command)


class Sequencer:
    def __init__(
        self,
        config: HarnessConfig,
        round_runner: RoundRunnerLike,
        run_command: CommandRunner = run_local_command,
        wait: Optional[Callable[[float], bool]] = None,
        cancel_event: Optional[Event] = None,
        timestamp: Callable[[], str] = make_timestamp,
    ) -> None:
        self.config = config
        self.round_runner = round_runner
        self.run_command = run_command
        self.cancel_event = cancel_event if cancel_event is not None else Event()
        # returns False when the wait was cut short by a cancellation
        self.wait = wait if wait is not None else (lambda seconds: wait_unless_cancelled(seconds, self.cancel_event))
        self.timestamp = timestamp
        self.history: List[SequencerState] = []

    @property
    def state(self) -> Optional[SequencerState]:
        return self.history[-1] if self.history else None

    def _enter(self, state: SequencerState) -> None:
        logger.info(f"Sequencer: {self.state.value if self.state else 'START'} -> {state.value}")
        self.history.append(state)

    def _discover(self) -> Tuple[Tuple[PartitionId, ...], Optional[str]]:
        self._enter(SequencerState.DISCOVER_PARTITIONS)
        try:
            partitions = discover_or_setup_partitions(self.config, self.run_command)
        except PartitionDiscoveryError as e:
            return (), f"Partition discovery failed: {e.message}"
        if not partitions:
            return (), "No MIG partitions found"
        return partitions, None

    def _verify_runtime(self) -> Optional[str]:
        self._enter(SequencerState.VERIFY_RUNTIME)
        runtime = self.config.runtime_check
        outcome = run_health_check(TorchRuntimeHealthCheck(python=runtime.python), self.run_command, runtime.timeout_sec)
        if isinstance(outcome, HealthyResult):
            logger.info(outcome.message)
            return None
        logger.error(outcome.display())
        return f"PyTorch runtime unavailable: {outcome.message}"

    def _cooldown(self) -> None:
        self._enter(SequencerState.COOLDOWN)
        remaining = self.config.cooldown_sec
        logger.info(f"Cooling down for {remaining:.0f}s before the next kind")
        while remaining > 0:
            chunk = min(self.config.cooldown_log_interval_sec, remaining)
            if not self.wait(chunk):
                logger.warning("Cooldown interrupted, the run was cancelled")
                return
            remaining -= chunk
            if remaining > 0:
                logger.info(f"Cooldown: {remaining:.0f}s remaining")

    def _run_round(self, kind: WorkloadKind, partitions: Tuple[PartitionId, ...]) -> RoundReport:
        self._enter(SequencerState.RUN_ROUND)
        try:
            report = self.round_runner.run(kind, partitions)
        except Exception as e:
            logger.exception(f"Round {kind.value} crashed: {e}")
            return RoundReport(kind=kind, error=f"{type(e).__name__}: {e}")
        if report.success:
            logger.info(f"{kind.value}: PASSED in {report.elapsed_sec:.0f}s")
        else:
            logger.error(f"{kind.value}: FAILED ({report.failure_reason})")
        return report

    def _run_rounds(self, partitions: Tuple[PartitionId, ...]) -> List[RoundReport]:
        kinds = self.config.kinds_to_run
        rounds: List[RoundReport] = []
        for index, kind in enumerate(kinds):
            if self.cancel_event.is_set():
                logger.warning(f"Skipping {kind.value}: {CANCELLED_REASON}")
                rounds.append(RoundReport.skipped(kind, CANCELLED_REASON))
                continue
            log_section(f"KIND {index + 1} of {len(kinds)}: {kind.value}")
            rounds.append(self._run_round(kind, partitions))
            if index < len(kinds) - 1 and not self.cancel_event.is_set():
                self._cooldown()
        return rounds

    def run(self) -> RunReport:
        timestamp = self.timestamp()
        log_dir = self.config.log_dir
        sequence_log = log_dir / f"sequential_run_{timestamp}.log"
        failed_kinds_log = log_dir / f"failed_kinds_{timestamp}.log"
        summary_path = log_dir / f"summary_{timestamp}.json"
        start = time.monotonic()

        with file_sink(sequence_log):
            log_section("MIG STRESS TEST SUITE - SEQUENTIAL RUN")
            logger.info(f"Kinds: {', '.join(kind.value for kind in self.config.kinds_to_run)}")
            logger.info(f"Cooldown between kinds: {self.config.cooldown_sec:.0f}s")
            logger.info(f"Logs: {log_dir}")

            partitions, infrastructure_error = self._discover()
            if infrastructure_error is None:
                infrastructure_error = self._verify_runtime()

            if infrastructure_error is not None:
                logger.error(f"{infrastructure_error}, skipping every kind")
                rounds = [RoundReport.skipped(kind, infrastructure_error) for kind in self.config.kinds_to_run]
            else:
                rounds = self._run_rounds(partitions)

            self._enter(SequencerState.FINAL_SUMMARY)
            report = RunReport(
                partitions=partitions,
                rounds=tuple(rounds),
                sequence_log=sequence_log,
                failed_kinds_log=failed_kinds_log,
                summary_path=summary_path,
                cancelled=self.cancel_event.is_set(),
                infrastructure_error=infrastructure_error,
            )
            write_failed_kinds(report, failed_kinds_log)
            summary_path.write_text(serialize_to_json(RunSummary.from_report(report), indent=2))
            log_final_summary(report, time.monotonic() - start)
        return report


def write_failed_kinds(report: RunReport, path: Path) -> None:
    with open(path, "w") as f:
        for round_report in report.rounds:
            if not round_report.success:
                f.write(f"{round_report.kind.value} - {round_report.failure_reason}\n")


def log_final_summary(report: RunReport, elapsed_sec: float) -> None:
    log_section("FINAL SUMMARY")
    logger.info(f"Partitions: {len(report.partitions)}")
    logger.info(f"Total kinds: {len(report.rounds)}")
    logger.info(f"Passed: {len(report.passed)}")
    logger.info(f"Failed: {len(report.failed)}")
    logger.info(f"Skipped: {len(report.skipped)}")
    logger.info(f"Total time: {elapsed_sec / 60:.1f} minutes")
    for round_report in report.rounds:
        if round_report.success:
            logger.info(f"  PASSED  {round_report.kind.value}")
        else:
            logger.error(f"  FAILED  {round_report.kind.value}: {round_report.failure_reason}")
    if report.exit_code == 0:
        logger.info("All kinds passed")
    else:
        logger.error(f"Some kinds failed, see {report.failed_kinds_log}")
