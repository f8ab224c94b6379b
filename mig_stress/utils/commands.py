import os
import subprocess
from typing import Any
from typing import Optional

import attr
from loguru import logger
from typing_extensions import Protocol
from typing_extensions import Self

# returned instead of the real exit code when we had to stop a command that ran past its timeout
SUBPROCESS_STOPPED_BY_REQUEST_EXIT_CODE = -9999

KILL_WAIT_SEC = 10


@attr.s(auto_exc=True, auto_attribs=True)
class CommandError(Exception):
    """A checked command exited with a nonzero return code."""

    command: str
    returncode: int
    output: str


@attr.s(auto_attribs=True, frozen=True)
class CompletedProcess:
    """The result of a bash command. stdout and stderr are merged into `output`."""

    returncode: int
    output: str
    command: str

    @property
    def was_stopped(self) -> bool:
        return self.returncode == SUBPROCESS_STOPPED_BY_REQUEST_EXIT_CODE

    def check(self) -> Self:
        if self.returncode == 0:
            return self
        raise CommandError(command=self.command, returncode=self.returncode, output=self.output)


class CommandRunner(Protocol):
    def __call__(
        self,
        command: str,
        is_checked: bool = True,
        timeout_sec: Optional[int] = None,
        shutdown_timeout_sec: int = 30,
    ) -> CompletedProcess:
        ...


def stop_process(process: "subprocess.Popen[Any]", shutdown_timeout_sec: float = 30) -> bool:
    """SIGTERM, then SIGKILL once `shutdown_timeout_sec` has passed.

    Returns whether the process exited on its own after the SIGTERM.
    """
    process.terminate()
    try:
        process.wait(timeout=shutdown_timeout_sec)
    except subprocess.TimeoutExpired:
        process.kill()
        try:
            process.wait(timeout=KILL_WAIT_SEC)
        except subprocess.TimeoutExpired:
            logger.warning(f"pid {process.pid} is still alive {KILL_WAIT_SEC}s after SIGKILL")
        return False
    return True


def run_local_command(
    command: str,
    is_checked: bool = True,
    timeout_sec: Optional[int] = None,
    shutdown_timeout_sec: int = 30,
) -> CompletedProcess:
    """Runs `command` with bash on this host.

    A command still running after `timeout_sec` is stopped and reported with SUBPROCESS_STOPPED_BY_REQUEST_EXIT_CODE,
    which `check` treats like any other failure.
    """
    process = subprocess.Popen(
        ["/bin/bash", "-c", command],
        text=True,
        errors="replace",
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        env=dict(os.environ, TERM="dumb"),
    )
    try:
        output, _ = process.communicate(timeout=timeout_sec)
        result = CompletedProcess(returncode=process.returncode, output=output, command=command)
    except subprocess.TimeoutExpired:
        logger.info(f"`{command}` ran past its {timeout_sec}s timeout, stopping it")
        stop_process(process, shutdown_timeout_sec)
        result = CompletedProcess(returncode=SUBPROCESS_STOPPED_BY_REQUEST_EXIT_CODE, output="", command=command)
    return result.check() if is_checked else result
