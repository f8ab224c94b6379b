"""Runs one workload kind: plans its waves, launches and collects each of them, and writes the round's logs."""

import datetime
import time
from pathlib import Path
from threading import Event
from typing import Callable
from typing import List
from typing import Optional
from typing import Sequence
from typing import Tuple

from loguru import logger

from mig_stress.collector import Collector
from mig_stress.collector import consolidate_logs
from mig_stress.config import HarnessConfig
from mig_stress.health_checks import HealthyResult
from mig_stress.health_checks import KernelLogAnomalyError
from mig_stress.health_checks import KernelLogAnomalyHealthCheck
from mig_stress.health_checks import run_health_check
from mig_stress.launcher import Launcher
from mig_stress.logs import file_sink
from mig_stress.logs import log_section
from mig_stress.partitions import log_gpu_status
from mig_stress.results import RoundReport
from mig_stress.results import WorkerOutcome
from mig_stress.utils.commands import CommandRunner
from mig_stress.utils.commands import run_local_command
from mig_stress.utils.events import wait_unless_cancelled
from mig_stress.workloads import PartitionId
from mig_stress.workloads import RoundPlan
from mig_stress.workloads import Wave
from mig_stress.workloads import WorkloadKind
from mig_stress.workloads import plan_round


def make_timestamp() -> str:
    return datetime.datetime.now().strftime("%Y%m%d_%H%M%S")


def wave_timeout_sec(wave: Wave, timeout_margin_sec: float) -> float:
    """The collector only waits for the workers that count, so the secondaries' longer duration doesn't matter."""
    specs = wave.counted or wave.specs
    return max(spec.duration_sec for spec in specs) + timeout_margin_sec


class RoundRunner:
    def __init__(
        self,
        config: HarnessConfig,
        launcher: Launcher,
        collector: Collector,
        run_command: CommandRunner = run_local_command,
        sleep: Optional[Callable[[float], bool]] = None,
        cancel_event: Optional[Event] = None,
        timestamp: Callable[[], str] = make_timestamp,
    ) -> None:
        self.config = config
        self.launcher = launcher
        self.collector = collector
        self.run_command = run_command
        self.cancel_event = cancel_event if cancel_event is not None else Event()
        self.sleep = sleep if sleep is not None else (lambda seconds: wait_unless_cancelled(seconds, self.cancel_event))
        self.timestamp = timestamp

    def scan_kernel_log(self) -> Tuple[str, ...]:
        kernel_log = self.config.kernel_log
        health_check = KernelLogAnomalyHealthCheck(
            tail_lines=kernel_log.tail_lines,
            device_keywords=kernel_log.device_keywords,
            failure_keywords=kernel_log.failure_keywords,
        )
        outcome = run_health_check(health_check, self.run_command)
        if isinstance(outcome, KernelLogAnomalyError):
            logger.warning(outcome.message)
            for line in outcome.matched_lines:
                logger.warning(f"  {line}")
            return outcome.matched_lines
        if not isinstance(outcome, HealthyResult):
            logger.warning(outcome.display())
        else:
            logger.info("No GPU related errors in the kernel log")
        return ()

    def _run_wave(
        self, plan: RoundPlan, wave: Wave, log_dir: Path, timestamp: str
    ) -> Tuple[Tuple[WorkerOutcome, ...], Tuple[str, ...]]:
        log_section(f"{plan.kind.value}: wave {wave.index + 1} of {len(plan.waves)} ({len(wave.specs)} workers)")
        log_gpu_status("before wave", self.run_command)
        launched = self.launcher.launch(wave.specs, log_dir, timestamp)
        outcomes = self.collector.collect(launched, wave_timeout_sec(wave, self.config.timeout_margin_sec))
        log_gpu_status("after wave", self.run_command)
        anomalies = self.scan_kernel_log()
        return outcomes, anomalies

    def run(self, kind: WorkloadKind, partitions: Sequence[PartitionId]) -> RoundReport:
        timestamp = self.timestamp()
        log_dir = self.config.log_dir / kind.value
        round_log = log_dir / f"{kind.value}_round_{timestamp}.log"
        error_log = log_dir / f"{kind.value}_errors_{timestamp}.log"
        start = time.monotonic()

        plan = plan_round(kind, partitions, self.config.settings_for(kind))
        outcomes: List[WorkerOutcome] = []
        anomalies: List[str] = []
        with file_sink(round_log):
            log_section(f"Round {kind.value}: {len(plan.specs)} workers on {len(partitions)} partitions")
            if not plan.waves:
                logger.error(f"Nothing to run for {kind.value}: no partitions")
            for wave in plan.waves:
                wave_outcomes, wave_anomalies = self._run_wave(plan, wave, log_dir, timestamp)
                outcomes.extend(wave_outcomes)
                # the kernel log tail is rescanned after every wave, so the same line can show up again
                anomalies.extend(line for line in wave_anomalies if line not in anomalies)
                is_last = wave.index == len(plan.waves) - 1
                if not is_last and plan.wave_pause_sec > 0 and not self.cancel_event.is_set():
                    logger.info(f"Pausing {plan.wave_pause_sec:.0f}s before the next wave")
                    self.sleep(plan.wave_pause_sec)

            with open(error_log, "w") as f:
                for line in anomalies:
                    f.write(line + "\n")

            report = RoundReport(
                kind=kind,
                outcomes=tuple(outcomes),
                anomalies=tuple(anomalies),
                round_log=round_log,
                error_log=error_log,
                elapsed_sec=time.monotonic() - start,
            )
            log_section(f"Round {kind.value}: {'PASSED' if report.success else 'FAILED'}")
            logger.info(f"Counted workers succeeded: {report.succeeded}, failed: {report.failed}")
            for outcome in report.outcomes:
                logger.info(f"  {outcome.display()}")
            if anomalies:
                logger.warning(f"Kernel log anomalies detected, see {error_log}")

        consolidate_logs(report.outcomes, round_log)
        return report
