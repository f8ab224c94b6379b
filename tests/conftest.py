from pathlib import Path
from typing import Dict
from typing import List
from typing import Optional

import pytest

from mig_stress.config import HarnessConfig
from mig_stress.config import KernelLogConfig
from mig_stress.utils.commands import CompletedProcess

NVIDIA_SMI_L_OUTPUT = """GPU 0: NVIDIA A100-SXM4-40GB (UUID: GPU-5f3c8f0e-1d2a-4b6e-9a4d-0c1e2f3a4b5c)
  MIG 1g.5gb      Device  0: (UUID: MIG-11111111-0000-0000-0000-000000000001)
  MIG 1g.5gb      Device  1: (UUID: MIG-11111111-0000-0000-0000-000000000002)
  MIG 1g.5gb      Device  2: (UUID: MIG-11111111-0000-0000-0000-000000000003)
"""

PARTITIONS = (
    "MIG-11111111-0000-0000-0000-000000000001",
    "MIG-11111111-0000-0000-0000-000000000002",
    "MIG-11111111-0000-0000-0000-000000000003",
)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCommandRunner:
    """Answers commands by their first matching prefix, recording every call. Unknown commands succeed silently."""

    def __init__(self, responses: Optional[Dict[str, CompletedProcess]] = None) -> None:
        self.responses: Dict[str, List[CompletedProcess]] = {}
        for prefix, result in (responses or {}).items():
            self.respond(prefix, result)
        self.calls: List[str] = []

    def respond(self, prefix: str, *results: CompletedProcess) -> None:
        """Queues results for `prefix`; the last one is repeated once the others are used up."""
        self.responses[prefix] = list(results)

    def __call__(
        self,
        command: str,
        is_checked: bool = True,
        timeout_sec: Optional[int] = None,
        shutdown_timeout_sec: int = 30,
    ) -> CompletedProcess:
        self.calls.append(command)
        result = CompletedProcess(returncode=0, output="", command=command)
        for prefix, results in self.responses.items():
            if command.startswith(prefix):
                result = results.pop(0) if len(results) > 1 else results[0]
                result = CompletedProcess(returncode=result.returncode, output=result.output, command=command)
                break
        if is_checked:
            result.check()
        return result

    def count(self, prefix: str) -> int:
        return sum(1 for call in self.calls if call.startswith(prefix))


def completed(output: str = "", returncode: int = 0) -> CompletedProcess:
    return CompletedProcess(returncode=returncode, output=output, command="")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def healthy_host() -> FakeCommandRunner:
    """Three partitions, PyTorch with CUDA, and a clean kernel log."""
    return FakeCommandRunner(
        {
            "nvidia-smi -L": completed(NVIDIA_SMI_L_OUTPUT),
            "python3 -c": completed("2.4.1+cu121\nTrue\n"),
            "set -o pipefail; dmesg": completed("[    1.0] usb 1-1: new high-speed USB device\n"),
        }
    )


@pytest.fixture
def config(tmp_path: Path) -> HarnessConfig:
    return HarnessConfig(
        log_dir=tmp_path / "logs",
        cooldown_sec=0.0,
        secondary_warmup_sec=0.0,
        stop_grace_sec=5.0,
        poll_interval_sec=0.01,
        timeout_margin_sec=30.0,
        kernel_log=KernelLogConfig(),
    )
