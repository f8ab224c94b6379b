"""Outcome records for workers, rounds and whole runs."""

from enum import Enum
from pathlib import Path
from typing import Final
from typing import Optional
from typing import Tuple

import attr

from mig_stress.workloads import PartitionId
from mig_stress.workloads import StrategyName
from mig_stress.workloads import WorkerRole
from mig_stress.workloads import WorkloadKind
from mig_stress.workloads import WorkloadSpec

WORKER_SUCCESS_EXIT_CODE: Final[int] = 0
WORKER_FAILURE_EXIT_CODE: Final[int] = 1
WORKER_DEVICE_UNAVAILABLE_EXIT_CODE: Final[int] = 3


class WorkerStatus(Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    TIMEOUT = "TIMEOUT"
    DEVICE_UNAVAILABLE = "DEVICE_UNAVAILABLE"
    SPAWN_ERROR = "SPAWN_ERROR"
    # secondaries that were still running when the counted workers of their wave finished
    STOPPED = "STOPPED"
    CANCELLED = "CANCELLED"


def status_from_exit_code(returncode: int) -> WorkerStatus:
    """
    >>> status_from_exit_code(0)
    <WorkerStatus.SUCCESS: 'SUCCESS'>
    >>> status_from_exit_code(3)
    <WorkerStatus.DEVICE_UNAVAILABLE: 'DEVICE_UNAVAILABLE'>
    >>> status_from_exit_code(-11)
    <WorkerStatus.FAILURE: 'FAILURE'>
    """
    if returncode == WORKER_SUCCESS_EXIT_CODE:
        return WorkerStatus.SUCCESS
    if returncode == WORKER_DEVICE_UNAVAILABLE_EXIT_CODE:
        return WorkerStatus.DEVICE_UNAVAILABLE
    return WorkerStatus.FAILURE


@attr.s(auto_attribs=True, frozen=True)
class WorkerOutcome:
    partition_id: PartitionId
    worker_index: int
    role: WorkerRole
    strategy: StrategyName
    status: WorkerStatus
    pid: Optional[int] = None
    returncode: Optional[int] = None
    elapsed_sec: float = 0.0
    log_path: Optional[Path] = None
    forced: bool = False
    error: Optional[str] = None

    @classmethod
    def for_spec(cls, spec: WorkloadSpec, status: WorkerStatus, **kwargs: object) -> "WorkerOutcome":
        return cls(
            partition_id=spec.partition_id,
            worker_index=spec.worker_index,
            role=spec.role,
            strategy=spec.strategy,
            status=status,
            **kwargs,  # type: ignore
        )

    @property
    def counts_toward_round(self) -> bool:
        return self.role != WorkerRole.SECONDARY

    @property
    def is_success(self) -> bool:
        return self.status == WorkerStatus.SUCCESS

    def display(self) -> str:
        message = (
            f"worker {self.worker_index} [{self.role.value}/{self.strategy.value}] on {self.partition_id}: "
            f"{self.status.value}"
        )
        if self.returncode is not None:
            message += f" (exit code {self.returncode})"
        if self.forced:
            message += " (killed)"
        if self.error is not None:
            message += f": {self.error}"
        return message


@attr.s(auto_attribs=True, frozen=True)
class RoundReport:
    kind: WorkloadKind
    outcomes: Tuple[WorkerOutcome, ...] = ()
    anomalies: Tuple[str, ...] = ()
    skipped_reason: Optional[str] = None
    error: Optional[str] = None
    round_log: Optional[Path] = None
    error_log: Optional[Path] = None
    elapsed_sec: float = 0.0

    @property
    def counted_outcomes(self) -> Tuple[WorkerOutcome, ...]:
        return tuple(outcome for outcome in self.outcomes if outcome.counts_toward_round)

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.counted_outcomes if outcome.is_success)

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.counted_outcomes if not outcome.is_success)

    @property
    def is_skipped(self) -> bool:
        return self.skipped_reason is not None

    @property
    def success(self) -> bool:
        return (
            not self.is_skipped
            and self.error is None
            and len(self.counted_outcomes) > 0
            and self.failed == 0
            and len(self.anomalies) == 0
        )

    @property
    def failure_reason(self) -> Optional[str]:
        if self.success:
            return None
        if self.skipped_reason is not None:
            return f"skipped: {self.skipped_reason}"
        if self.error is not None:
            return f"round error: {self.error}"
        if len(self.counted_outcomes) == 0:
            return "no workers ran"
        if self.failed > 0:
            return f"{self.failed} of {len(self.counted_outcomes)} workers failed"
        return f"{len(self.anomalies)} kernel log anomalies"

    @classmethod
    def skipped(cls, kind: WorkloadKind, reason: str) -> "RoundReport":
        return cls(kind=kind, skipped_reason=reason)


@attr.s(auto_attribs=True, frozen=True)
class RunReport:
    partitions: Tuple[PartitionId, ...]
    rounds: Tuple[RoundReport, ...]
    sequence_log: Optional[Path] = None
    failed_kinds_log: Optional[Path] = None
    summary_path: Optional[Path] = None
    cancelled: bool = False
    infrastructure_error: Optional[str] = None

    @property
    def passed(self) -> Tuple[str, ...]:
        return tuple(report.kind.value for report in self.rounds if report.success)

    @property
    def skipped(self) -> Tuple[str, ...]:
        return tuple(report.kind.value for report in self.rounds if report.is_skipped)

    @property
    def failed(self) -> Tuple[str, ...]:
        """Kinds that ran and failed. Skipped kinds are listed separately but also count as failures for the exit code."""
        return tuple(report.kind.value for report in self.rounds if not report.success and not report.is_skipped)

    @property
    def exit_code(self) -> int:
        if len(self.rounds) > 0 and all(report.success for report in self.rounds):
            return 0
        return 1


@attr.s(auto_attribs=True, frozen=True)
class RunSummary:
    """The JSON document written at the end of a run."""

    partitions: Tuple[str, ...]
    total: int
    passed: Tuple[str, ...]
    failed: Tuple[str, ...]
    skipped: Tuple[str, ...]
    exit_code: int
    cancelled: bool
    infrastructure_error: Optional[str]
    rounds: Tuple[RoundReport, ...]

    @classmethod
    def from_report(cls, report: RunReport) -> "RunSummary":
        return cls(
            partitions=tuple(report.partitions),
            total=len(report.rounds),
            passed=report.passed,
            failed=report.failed,
            skipped=report.skipped,
            exit_code=report.exit_code,
            cancelled=report.cancelled,
            infrastructure_error=report.infrastructure_error,
            rounds=report.rounds,
        )
