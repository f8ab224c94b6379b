"""Host-level checks that run around the stress rounds.

A health check consists of a bash command and a validation function that parses the output of the command and returns
an outcome record instead of raising.
"""

from abc import ABC
from abc import abstractmethod
from typing import Final
from typing import Iterable
from typing import Optional
from typing import Sequence
from typing import Tuple
from typing import Union

import attr
from loguru import logger

from mig_stress.utils.commands import CommandRunner
from mig_stress.utils.commands import run_local_command


def _indent(text: str, indentation: int) -> str:
    return "\n".join(indentation * " " + line for line in text.splitlines())


def _describe(outcome: object, message: str, *details: Tuple[str, Optional[str]]) -> str:
    lines = [f"{type(outcome).__name__}: {message}"]
    lines.extend(f"{label}: {value}" for label, value in details if value is not None)
    return "\n".join(lines)


@attr.s(auto_attribs=True, frozen=True)
class HealthyResult:
    message: str = "OK"
    suggested_remediation: Optional[str] = None

    def display(self, indentation: int = 0) -> str:
        return _indent(_describe(self, self.message), indentation)


@attr.s(auto_attribs=True, frozen=True)
class HealthCheckWarning:
    """The check could not conclude, but nothing points at the GPUs either."""

    message: str
    suggested_remediation: Optional[str] = None

    def display(self, indentation: int = 0) -> str:
        return _indent(_describe(self, self.message, ("Suggested remediation", self.suggested_remediation)), indentation)


@attr.s(auto_attribs=True, frozen=True, kw_only=True)
class HealthCheckError:
    """The check found something wrong with the host.

    >>> print(HealthCheckError(message="GPU 0 is missing", suggested_remediation="Reset it", cause="Xid 79").display(2))
      HealthCheckError: GPU 0 is missing
      Suggested remediation: Reset it
      Cause: Xid 79
    """

    message: str
    suggested_remediation: str
    cause: Optional[str] = None

    def display(self, indentation: int = 0) -> str:
        text = _describe(
            self, self.message, ("Suggested remediation", self.suggested_remediation), ("Cause", self.cause)
        )
        return _indent(text, indentation)


@attr.s(auto_attribs=True, frozen=True, kw_only=True)
class HealthCheckCommandError:
    """The check command itself timed out or could not run."""

    message: str
    returncode: int
    cause: Optional[str] = None
    suggested_remediation: str = "Error or timeout running the health check command."

    def display(self, indentation: int = 0) -> str:
        return _indent(_describe(self, f"{self.message} (return code {self.returncode})"), indentation)


HealthCheckOutcome = Union[HealthyResult, HealthCheckError, HealthCheckWarning, HealthCheckCommandError]


class HealthCheck(ABC):
    """The core interface for health checks."""

    @abstractmethod
    def create_command(self) -> str:
        """Create the command to run."""

    @abstractmethod
    def validate_result(self, output: str, returncode: int) -> HealthCheckOutcome:
        """Parse the output of the command."""


@attr.s(auto_attribs=True, frozen=True, kw_only=True)
class KernelLogAnomalyError(HealthCheckError):
    """Returned when the tail of the kernel log mentions a GPU failure."""

    matched_lines: Tuple[str, ...] = ()
    suggested_remediation: str = "\n".join(
        (
            "Inspect the full kernel log around the stress round (`dmesg -T`).",
            "Repeated GPU errors usually mean the partition layout should be recreated or the GPU reset.",
        )
    )


def is_kernel_log_anomaly(
    line: str, device_keywords: Iterable[str] = ("gpu", "nvidia", "cuda"), failure_keywords: Iterable[str] = ("error", "fail", "crash")
) -> bool:
    """A line is an anomaly when it names a GPU-ish device and a failure, in any case.

    Examples:
    >>> is_kernel_log_anomaly("[ 1234.5] NVRM: GPU at PCI:0000:0f:00: GPU has fallen off the bus, Error")
    True
    >>> is_kernel_log_anomaly("[ 1234.5] nvidia-modeset: Loading NVIDIA Kernel Mode Setting Driver")
    False
    >>> is_kernel_log_anomaly("[ 1234.5] EXT4-fs error (device sda1): ext4_find_entry")
    False
    >>> is_kernel_log_anomaly("[ 1234.5] CUDA kernel crashed")
    True
    """
    lowered = line.lower()
    return any(keyword.lower() in lowered for keyword in device_keywords) and any(
        keyword.lower() in lowered for keyword in failure_keywords
    )


def find_kernel_log_anomalies(
    output: str, device_keywords: Sequence[str] = ("gpu", "nvidia", "cuda"), failure_keywords: Sequence[str] = ("error", "fail", "crash")
) -> Tuple[str, ...]:
    return tuple(
        line.rstrip()
        for line in output.splitlines()
        if is_kernel_log_anomaly(line, device_keywords, failure_keywords)
    )


@attr.s(auto_attribs=True, frozen=True)
class KernelLogAnomalyHealthCheck(HealthCheck):
    tail_lines: int = 100
    device_keywords: Tuple[str, ...] = ("gpu", "nvidia", "cuda")
    failure_keywords: Tuple[str, ...] = ("error", "fail", "crash")

    def create_command(self) -> str:
        # pipefail so that an unreadable kernel log is reported instead of looking like an empty one
        return f"set -o pipefail; dmesg | tail -n {self.tail_lines}"

    def validate_result(self, output: str, returncode: int) -> HealthCheckOutcome:
        if returncode != 0:
            return HealthCheckWarning(
                message=f"Could not read the kernel log, `dmesg` returned {returncode}.",
                suggested_remediation="Run the harness as a user allowed to read the kernel log to enable anomaly detection.",
            )
        anomalies = find_kernel_log_anomalies(output, self.device_keywords, self.failure_keywords)
        if anomalies:
            return KernelLogAnomalyError(
                message=f"Found {len(anomalies)} GPU related errors in the last {self.tail_lines} kernel log lines.",
                matched_lines=anomalies,
            )
        return HealthyResult()


TORCH_RUNTIME_SCRIPT: Final[str] = "import torch; print(torch.__version__); print(torch.cuda.is_available())"


@attr.s(auto_attribs=True, frozen=True, kw_only=True)
class TorchRuntimeError(HealthCheckError):
    """Returned when PyTorch cannot be imported or cannot see any CUDA device."""

    suggested_remediation: str = "Install a CUDA enabled PyTorch build for this interpreter and check the driver with `nvidia-smi`."


@attr.s(auto_attribs=True, frozen=True)
class TorchRuntimeHealthCheck(HealthCheck):
    python: str = "python3"

    def create_command(self) -> str:
        return f'{self.python} -c "{TORCH_RUNTIME_SCRIPT}"'

    def validate_result(self, output: str, returncode: int) -> HealthCheckOutcome:
        """
        >>> TorchRuntimeHealthCheck().validate_result("2.4.1+cu121\\nTrue\\n", 0)
        HealthyResult(message='PyTorch 2.4.1+cu121 with CUDA available', suggested_remediation=None)
        >>> TorchRuntimeHealthCheck().validate_result("2.4.1+cpu\\nFalse\\n", 0).message
        'PyTorch 2.4.1+cpu is installed but CUDA is not available'
        """
        if returncode != 0:
            return TorchRuntimeError(
                message=f"PyTorch could not be imported (return code {returncode}).", cause=output.strip() or None
            )
        lines = [line.strip() for line in output.splitlines() if line.strip()]
        if len(lines) < 2:
            return TorchRuntimeError(message=f"Unexpected output from the PyTorch check: {output!r}")
        version, cuda_available = lines[-2], lines[-1]
        if cuda_available != "True":
            return TorchRuntimeError(message=f"PyTorch {version} is installed but CUDA is not available")
        return HealthyResult(message=f"PyTorch {version} with CUDA available")


def run_health_check(
    health_check: HealthCheck, run_command: CommandRunner = run_local_command, timeout_sec: int = 100
) -> HealthCheckOutcome:
    command = health_check.create_command()
    result = run_command(command, is_checked=False, timeout_sec=timeout_sec)
    if result.was_stopped:
        logger.warning(f"Health check `{command}` timed out.")
        return HealthCheckCommandError(message=f"`{command}` timed out after {timeout_sec}s", returncode=result.returncode)
    return health_check.validate_result(result.output, result.returncode)


if __name__ == "__main__":
    import doctest

    doctest.testmod()
