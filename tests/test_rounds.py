import sys
from pathlib import Path
from typing import List

import attr

from conftest import PARTITIONS
from conftest import FakeCommandRunner
from conftest import completed
from mig_stress.collector import Collector
from mig_stress.config import HarnessConfig
from mig_stress.launcher import Launcher
from mig_stress.results import WorkerStatus
from mig_stress.rounds import RoundRunner
from mig_stress.workloads import KindSettings
from mig_stress.workloads import PartitionId
from mig_stress.workloads import WorkerRole
from mig_stress.workloads import WorkloadKind
from mig_stress.workloads import WorkloadSpec

PARTITION_IDS = tuple(PartitionId(partition) for partition in PARTITIONS)
GPU_FAILURE_LINE = "[  250.7] NVRM: Xid (PCI:0000:0f:00): 79, GPU has fallen off the bus, error"


def exiting_with(returncode_by_partition: dict, secondary_script: str = "import time; time.sleep(60)"):
    def command_factory(spec: WorkloadSpec) -> List[str]:
        if spec.role == WorkerRole.SECONDARY:
            return [sys.executable, "-c", secondary_script]
        returncode = returncode_by_partition.get(spec.partition_id, 0)
        script = f"import sys; print('stressing {spec.partition_id}'); sys.exit({returncode})"
        return [sys.executable, "-c", script]

    return command_factory


def make_runner(config: HarnessConfig, run_command: FakeCommandRunner, command_factory, pauses=None) -> RoundRunner:
    launcher = Launcher(secondary_warmup_sec=0, command_factory=command_factory)
    collector = Collector(stop_grace_sec=5, poll_interval_sec=0.01)

    def sleep(seconds: float) -> bool:
        if pauses is not None:
            pauses.append(seconds)
        return True

    return RoundRunner(config, launcher, collector, run_command=run_command, sleep=sleep, timestamp=lambda: "ts")


def test_successful_round_writes_its_logs(config: HarnessConfig, healthy_host: FakeCommandRunner) -> None:
    runner = make_runner(config, healthy_host, exiting_with({}))
    report = runner.run(WorkloadKind.THRASHING, PARTITION_IDS)

    assert report.success
    assert report.failure_reason is None
    assert statuses(report) == [WorkerStatus.SUCCESS] * 3
    assert report.round_log == config.log_dir / "thrashing" / "thrashing_round_ts.log"
    assert report.error_log is not None and report.error_log.read_text() == ""
    round_log = report.round_log.read_text()
    assert round_log.count("Device Log: worker") == 3
    for partition in PARTITION_IDS:
        assert f"stressing {partition}" in round_log
    assert (config.log_dir / "thrashing" / "thrashing_worker_2_ts.log").exists()
    assert healthy_host.count("nvidia-smi --query-gpu=name") == 2
    assert healthy_host.count("set -o pipefail; dmesg") == 1


def test_a_failed_worker_fails_the_round(config: HarnessConfig, healthy_host: FakeCommandRunner) -> None:
    runner = make_runner(config, healthy_host, exiting_with({PARTITION_IDS[1]: 1}))
    report = runner.run(WorkloadKind.PCIE, PARTITION_IDS)

    assert not report.success
    assert (report.succeeded, report.failed) == (2, 1)
    assert report.failure_reason == "1 of 3 workers failed"


def test_kernel_log_anomaly_fails_the_round(config: HarnessConfig, healthy_host: FakeCommandRunner) -> None:
    healthy_host.respond("set -o pipefail; dmesg", completed(GPU_FAILURE_LINE + "\n"))
    runner = make_runner(config, healthy_host, exiting_with({}))
    report = runner.run(WorkloadKind.STANDARD, PARTITION_IDS)

    assert report.failed == 0
    assert not report.success
    # the same line is seen after each of the three waves, but recorded once
    assert report.anomalies == (GPU_FAILURE_LINE,)
    assert report.error_log is not None and report.error_log.read_text() == GPU_FAILURE_LINE + "\n"
    assert report.failure_reason == "1 kernel log anomalies"


def test_standard_pauses_between_waves_but_not_after_the_last(
    config: HarnessConfig, healthy_host: FakeCommandRunner
) -> None:
    config = attr.evolve(config, kinds={WorkloadKind.STANDARD: KindSettings(wave_pause_sec=10)})
    pauses: List[float] = []
    runner = make_runner(config, healthy_host, exiting_with({}), pauses)
    report = runner.run(WorkloadKind.STANDARD, PARTITION_IDS)

    assert report.success
    assert pauses == [10, 10]
    assert [outcome.partition_id for outcome in report.outcomes] == list(PARTITION_IDS)


def test_intense_round_counts_only_the_primaries(config: HarnessConfig, healthy_host: FakeCommandRunner) -> None:
    runner = make_runner(config, healthy_host, exiting_with({}))
    report = runner.run(WorkloadKind.INTENSE, PARTITION_IDS)

    assert report.success
    # one outcome per spawned worker: three waves of one primary and two secondaries
    assert len(report.outcomes) == 9
    assert len(report.counted_outcomes) == 3
    assert all(outcome.role == WorkerRole.PRIMARY for outcome in report.counted_outcomes)
    secondaries = [outcome for outcome in report.outcomes if outcome.role == WorkerRole.SECONDARY]
    assert {outcome.status for outcome in secondaries} == {WorkerStatus.STOPPED}


def test_failing_secondaries_do_not_fail_the_round(config: HarnessConfig, healthy_host: FakeCommandRunner) -> None:
    runner = make_runner(config, healthy_host, exiting_with({}, secondary_script="import sys; sys.exit(1)"))
    report = runner.run(WorkloadKind.INTENSE, PARTITION_IDS[:2])
    assert report.success
    assert len(report.outcomes) == 4


def test_round_without_partitions_fails(config: HarnessConfig, healthy_host: FakeCommandRunner) -> None:
    runner = make_runner(config, healthy_host, exiting_with({}))
    report = runner.run(WorkloadKind.THERMAL, ())
    assert report.outcomes == ()
    assert not report.success
    assert report.failure_reason == "no workers ran"


def test_unreadable_kernel_log_does_not_fail_the_round(config: HarnessConfig, healthy_host: FakeCommandRunner) -> None:
    healthy_host.respond("set -o pipefail; dmesg", completed("dmesg: read kernel buffer failed", returncode=1))
    runner = make_runner(config, healthy_host, exiting_with({}))
    assert runner.run(WorkloadKind.THRASHING, PARTITION_IDS).success


def statuses(report) -> List[WorkerStatus]:
    return [outcome.status for outcome in report.outcomes]
