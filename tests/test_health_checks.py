from conftest import FakeCommandRunner
from conftest import completed
from mig_stress.health_checks import HealthCheckCommandError
from mig_stress.health_checks import HealthCheckWarning
from mig_stress.health_checks import HealthyResult
from mig_stress.health_checks import KernelLogAnomalyError
from mig_stress.health_checks import KernelLogAnomalyHealthCheck
from mig_stress.health_checks import TorchRuntimeError
from mig_stress.health_checks import TorchRuntimeHealthCheck
from mig_stress.health_checks import find_kernel_log_anomalies
from mig_stress.health_checks import run_health_check
from mig_stress.utils.commands import SUBPROCESS_STOPPED_BY_REQUEST_EXIT_CODE

KERNEL_LOG = """[  101.2] usb 1-1: new high-speed USB device number 2
[  250.7] NVRM: Xid (PCI:0000:0f:00): 79, GPU has fallen off the bus, error
[  251.0] EXT4-fs error (device sda1): ext4_find_entry
[  260.3] cuda worker crashed on MIG device
"""


def test_find_kernel_log_anomalies_needs_a_device_and_a_failure_keyword() -> None:
    assert find_kernel_log_anomalies(KERNEL_LOG) == (
        "[  250.7] NVRM: Xid (PCI:0000:0f:00): 79, GPU has fallen off the bus, error",
        "[  260.3] cuda worker crashed on MIG device",
    )


def test_kernel_log_check_reports_matched_lines() -> None:
    outcome = KernelLogAnomalyHealthCheck(tail_lines=50).validate_result(KERNEL_LOG, 0)
    assert isinstance(outcome, KernelLogAnomalyError)
    assert len(outcome.matched_lines) == 2
    assert "last 50 kernel log lines" in outcome.message
    assert "dmesg" in outcome.display()


def test_clean_kernel_log_is_healthy() -> None:
    assert KernelLogAnomalyHealthCheck().validate_result("[ 1.0] all quiet\n", 0) == HealthyResult()


def test_unreadable_kernel_log_is_a_warning() -> None:
    outcome = KernelLogAnomalyHealthCheck().validate_result("dmesg: read kernel buffer failed", 1)
    assert isinstance(outcome, HealthCheckWarning)


def test_kernel_log_check_command_tails_the_log() -> None:
    assert KernelLogAnomalyHealthCheck(tail_lines=100).create_command() == "set -o pipefail; dmesg | tail -n 100"


def test_custom_keywords() -> None:
    check = KernelLogAnomalyHealthCheck(device_keywords=("xid",), failure_keywords=("79",))
    outcome = check.validate_result(KERNEL_LOG, 0)
    assert isinstance(outcome, KernelLogAnomalyError)
    assert outcome.matched_lines == ("[  250.7] NVRM: Xid (PCI:0000:0f:00): 79, GPU has fallen off the bus, error",)


def test_torch_runtime_check_import_failure() -> None:
    outcome = TorchRuntimeHealthCheck().validate_result("ModuleNotFoundError: No module named 'torch'\n", 1)
    assert isinstance(outcome, TorchRuntimeError)
    assert outcome.cause == "ModuleNotFoundError: No module named 'torch'"


def test_torch_runtime_check_uses_the_configured_interpreter() -> None:
    run_command = FakeCommandRunner({"/opt/venv/bin/python -c": completed("2.4.1+cu121\nTrue\n")})
    outcome = run_health_check(TorchRuntimeHealthCheck(python="/opt/venv/bin/python"), run_command)
    assert isinstance(outcome, HealthyResult)
    assert outcome.message == "PyTorch 2.4.1+cu121 with CUDA available"


def test_timed_out_health_check_is_a_command_error() -> None:
    run_command = FakeCommandRunner({"set -o pipefail": completed(returncode=SUBPROCESS_STOPPED_BY_REQUEST_EXIT_CODE)})
    outcome = run_health_check(KernelLogAnomalyHealthCheck(), run_command, timeout_sec=5)
    assert isinstance(outcome, HealthCheckCommandError)
    assert outcome.returncode == SUBPROCESS_STOPPED_BY_REQUEST_EXIT_CODE
    assert "timed out after 5s" in outcome.message
