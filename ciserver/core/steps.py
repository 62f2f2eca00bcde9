"""
Step runner: executes one pipeline step and returns a tagged result.

A step either produces `StepOutput` or `StepFailure`; failures are values, not
exceptions, and the executor threads them through its pipeline loop.

Commands run in their own process group so the timeout guard can kill a step
together with everything it spawned.
"""
import logging
import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

logger = logging.getLogger(__name__)

# Exit code reported when the command could not be started at all
EXIT_NOT_RUNNABLE = 127

DEFAULT_MAX_OUTPUT = 1_000_000


@dataclass(frozen=True)
class StepOutput:
    """Successful step with its captured output."""
    output: str


@dataclass(frozen=True)
class StepFailure:
    """Failed step: output captured so far, exit code, human-readable reason."""
    output: str
    exit_code: int
    reason: str


StepResult = Union[StepOutput, StepFailure]


@dataclass(frozen=True)
class Step:
    """A named pipeline step. `label` is what the transcript echoes."""
    label: str
    action: Callable[[], StepResult]

    def run(self) -> StepResult:
        return self.action()


class ActiveProcess:
    """Tracks the step process currently running in this worker."""

    def __init__(self):
        self._lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None

    def set(self, process: Optional[subprocess.Popen]) -> None:
        with self._lock:
            self._process = process

    def kill(self) -> bool:
        """Kill the running step's whole process group. Returns True if one was running."""
        with self._lock:
            process = self._process
        if process is None or process.poll() is not None:
            return False
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            return False
        logger.info(f"step_killed pid={process.pid}")
        return True


# One worker process runs one build, so one tracker per process
active_process = ActiveProcess()


def _truncate(output: str, max_output: int) -> str:
    if len(output) > max_output:
        return output[:max_output] + f"\n... (truncated, {len(output)} total chars)\n"
    return output


def _run(
    cmd: Union[str, list[str]],
    cwd: Optional[Path],
    shell: bool,
    max_output: int,
) -> StepResult:
    display = cmd if isinstance(cmd, str) else " ".join(cmd)
    try:
        process = subprocess.Popen(
            cmd,
            shell=shell,
            cwd=str(cwd) if cwd else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
            start_new_session=True,
        )
    except OSError as e:
        logger.warning(f"step_spawn_failed error_type={type(e).__name__}")
        return StepFailure(
            output="",
            exit_code=EXIT_NOT_RUNNABLE,
            reason=f"could not run '{display}': {e}\n",
        )

    active_process.set(process)
    try:
        stdout, _ = process.communicate()
    finally:
        active_process.set(None)

    output = _truncate(stdout or "", max_output)
    if process.returncode != 0:
        return StepFailure(
            output=output,
            exit_code=process.returncode,
            reason=f"command '{display}' exited with code {process.returncode}\n",
        )
    return StepOutput(output=output)


def run_shell(command: str, cwd: Optional[Path] = None, max_output: int = DEFAULT_MAX_OUTPUT) -> StepResult:
    """
    Run a shell command string.

    Args:
        command: Command line passed to /bin/sh
        cwd: Working directory
        max_output: Captured output is truncated past this many characters

    Returns:
        StepOutput, or StepFailure with the process exit code passed through
    """
    return _run(command, cwd, shell=True, max_output=max_output)


def run_process(args: list[str], cwd: Optional[Path] = None, max_output: int = DEFAULT_MAX_OUTPUT) -> StepResult:
    """Run an argv list without a shell. Same result contract as run_shell."""
    return _run(args, cwd, shell=False, max_output=max_output)
