"""MIG partition discovery, setup and GPU status snapshots.

Everything here goes through `nvidia-smi`; the harness never manages partitions itself.
"""

import csv
import functools
import re
from typing import Callable
from typing import Dict
from typing import Final
from typing import Optional
from typing import Sequence
from typing import Tuple

import attr
from loguru import logger

from mig_stress.utils.commands import CommandError
from mig_stress.utils.commands import CommandRunner
from mig_stress.utils.commands import run_local_command
from mig_stress.workloads import PartitionId

LIST_DEVICES_COMMAND: Final[str] = "nvidia-smi -L"
GPU_STATUS_COMMAND: Final[str] = "nvidia-smi --query-gpu=name,memory.total,memory.used,memory.free --format=csv"
TELEMETRY_QUERY: Final[str] = "--query-gpu=temperature.gpu,power.draw --format=csv,noheader,nounits"

_MIG_UUID_REGEX: Final[re.Pattern] = re.compile(r"\(UUID:\s*(MIG-[^)\s]+)\)")
_GPU_UUID_REGEX: Final[re.Pattern] = re.compile(r"\(UUID:\s*(GPU-[^)\s]+)\)")


@attr.s(auto_exc=True, auto_attribs=True)
class PartitionDiscoveryError(Exception):
    """
    Raised when the partitions could not be listed at all, as opposed to listing zero partitions.
    """

    message: str
    output: str = ""


def parse_mig_uuids(output: str) -> Tuple[PartitionId, ...]:
    """Extracts the MIG identifiers from the output of `nvidia-smi -L`, in order of appearance.

    Examples:
    >>> output = '''GPU 0: NVIDIA A100-SXM4-40GB (UUID: GPU-5f3c8f0e-1d2a-4b6e-9a4d-0c1e2f3a4b5c)
    ...   MIG 1g.5gb      Device  0: (UUID: MIG-a1b2c3d4-0000-5e6f-8a9b-000000000001)
    ...   MIG 1g.5gb      Device  1: (UUID: MIG-a1b2c3d4-0000-5e6f-8a9b-000000000002)'''
    >>> parse_mig_uuids(output)
    ('MIG-a1b2c3d4-0000-5e6f-8a9b-000000000001', 'MIG-a1b2c3d4-0000-5e6f-8a9b-000000000002')
    >>> parse_mig_uuids("GPU 0: NVIDIA A100-SXM4-40GB (UUID: GPU-5f3c8f0e-1d2a-4b6e-9a4d-0c1e2f3a4b5c)")
    ()
    >>> parse_mig_uuids("No devices found.")
    ()
    """
    partitions = []
    for line in output.splitlines():
        if "MIG" not in line:
            continue
        match = _MIG_UUID_REGEX.search(line)
        if match is not None and match.group(1) not in partitions:
            partitions.append(match.group(1))
    return tuple(PartitionId(partition) for partition in partitions)


def discover_partitions(run_command: CommandRunner = run_local_command, timeout_sec: int = 60) -> Tuple[PartitionId, ...]:
    """Lists the MIG partitions visible on this host.

    Discovery has no side effects, so calling it twice without an intervening setup returns the same tuple.
    """
    try:
        result = run_command(LIST_DEVICES_COMMAND, is_checked=True, timeout_sec=timeout_sec)
    except CommandError as e:
        raise PartitionDiscoveryError(
            message=f"`{LIST_DEVICES_COMMAND}` failed with return code {e.returncode}", output=e.output
        ) from e
    partitions = parse_mig_uuids(result.output)
    logger.info(f"Found {len(partitions)} MIG partitions")
    for partition in partitions:
        logger.info(f"  {partition}")
    return partitions


def mig_setup_commands(gpu_index: int, profiles: Sequence[int], use_sudo: bool = True) -> Tuple[Tuple[str, bool], ...]:
    """The commands that (re)create the MIG layout, each paired with whether its failure matters.

    Deleting compute and GPU instances fails when there is nothing to delete, so those two are allowed to fail.

    >>> for command, is_checked in mig_setup_commands(0, (19, 19), use_sudo=False):
    ...     print(command, is_checked)
    nvidia-smi -i 0 -mig 1 True
    nvidia-smi mig -dci -i 0 False
    nvidia-smi mig -dgi -i 0 False
    nvidia-smi mig -cgi 19,19 -C True
    """
    prefix = "sudo " if use_sudo else ""
    return (
        (f"{prefix}nvidia-smi -i {gpu_index} -mig 1", True),
        (f"{prefix}nvidia-smi mig -dci -i {gpu_index}", False),
        (f"{prefix}nvidia-smi mig -dgi -i {gpu_index}", False),
        (f"{prefix}nvidia-smi mig -cgi {','.join(str(profile) for profile in profiles)} -C", True),
    )


def setup_partitions(
    gpu_index: int,
    profiles: Sequence[int],
    use_sudo: bool = True,
    run_command: CommandRunner = run_local_command,
    timeout_sec: int = 300,
) -> bool:
    """Enables MIG mode on one GPU and carves it into `profiles`.

    Returns whether every step that matters succeeded. A failure is logged and never raised: the caller decides
    whether to carry on.
    """
    logger.info(f"Setting up MIG on GPU {gpu_index} with profiles {','.join(str(profile) for profile in profiles)}")
    for command, is_checked in mig_setup_commands(gpu_index, profiles, use_sudo):
        result = run_command(command, is_checked=False, timeout_sec=timeout_sec)
        if result.returncode == 0:
            logger.info(f"`{command}` succeeded")
            continue
        if not is_checked:
            logger.info(f"`{command}` returned {result.returncode}, ignoring")
            continue
        logger.error(f"`{command}` failed with return code {result.returncode}: {result.output.strip()}")
        return False
    return True


def log_gpu_status(label: str, run_command: CommandRunner = run_local_command, timeout_sec: int = 30) -> None:
    result = run_command(GPU_STATUS_COMMAND, is_checked=False, timeout_sec=timeout_sec)
    if result.returncode != 0:
        logger.warning(f"Could not read GPU status ({label}): `{GPU_STATUS_COMMAND}` returned {result.returncode}")
        return
    logger.info(f"GPU status ({label}):")
    for line in result.output.splitlines():
        if line.strip():
            logger.info(f"  {line.strip()}")


@attr.s(auto_attribs=True, frozen=True)
class Telemetry:
    temperature_c: Optional[float] = None
    power_w: Optional[float] = None

    def display(self) -> str:
        temperature = "N/A" if self.temperature_c is None else f"{self.temperature_c:.0f}C"
        power = "N/A" if self.power_w is None else f"{self.power_w:.1f}W"
        return f"Temp: {temperature} | Power: {power}"


def _parse_number(value: str) -> Optional[float]:
    try:
        return float(value.strip())
    except ValueError:
        return None


def parse_telemetry(output: str) -> Telemetry:
    """Parses the first row of the telemetry query. MIG partitions share the temperature and power of their GPU.

    Examples:
    >>> parse_telemetry("64, 251.37")
    Telemetry(temperature_c=64.0, power_w=251.37)
    >>> parse_telemetry("64, [N/A]")
    Telemetry(temperature_c=64.0, power_w=None)
    >>> parse_telemetry("")
    Telemetry(temperature_c=None, power_w=None)
    """
    for row in csv.reader(output.splitlines()):
        if len(row) != 2:
            continue
        return Telemetry(temperature_c=_parse_number(row[0]), power_w=_parse_number(row[1]))
    return Telemetry()


def read_telemetry(gpu: str, run_command: CommandRunner = run_local_command, timeout_sec: int = 10) -> Telemetry:
    """Reads the temperature and power of `gpu`, a GPU index or `GPU-...` identifier."""
    command = f"nvidia-smi -i {gpu} {TELEMETRY_QUERY}"
    result = run_command(command, is_checked=False, timeout_sec=timeout_sec)
    if result.returncode != 0:
        return Telemetry()
    return parse_telemetry(result.output)


def parse_parent_gpus(output: str) -> Dict[PartitionId, str]:
    """Maps each MIG identifier in the output of `nvidia-smi -L` to the identifier of the GPU it was carved from.

    Examples:
    >>> output = '''GPU 0: NVIDIA A100-SXM4-40GB (UUID: GPU-aaaa)
    ...   MIG 1g.5gb      Device  0: (UUID: MIG-0001)
    ... GPU 1: NVIDIA A100-SXM4-40GB (UUID: GPU-bbbb)
    ...   MIG 1g.5gb      Device  0: (UUID: MIG-0002)'''
    >>> parse_parent_gpus(output)
    {'MIG-0001': 'GPU-aaaa', 'MIG-0002': 'GPU-bbbb'}
    """
    parents: Dict[PartitionId, str] = {}
    gpu: Optional[str] = None
    for line in output.splitlines():
        gpu_match = _GPU_UUID_REGEX.search(line)
        if gpu_match is not None:
            gpu = gpu_match.group(1)
            continue
        mig_match = _MIG_UUID_REGEX.search(line)
        if mig_match is not None and gpu is not None:
            parents[PartitionId(mig_match.group(1))] = gpu
    return parents


def partition_telemetry(
    partition_id: PartitionId, run_command: CommandRunner = run_local_command, timeout_sec: int = 10
) -> Callable[[], Telemetry]:
    """Returns a reader for the temperature and power of the GPU that holds `partition_id`.

    When the parent GPU cannot be found, the reader reports missing readings rather than another GPU's.
    """
    result = run_command(LIST_DEVICES_COMMAND, is_checked=False, timeout_sec=timeout_sec)
    gpu = parse_parent_gpus(result.output).get(partition_id) if result.returncode == 0 else None
    if gpu is None:
        logger.warning(f"Could not find the GPU holding {partition_id}, temperature and power will not be sampled")
        return Telemetry
    logger.info(f"Sampling temperature and power of {gpu}, which holds {partition_id}")
    return functools.partial(read_telemetry, gpu, run_command, timeout_sec)
