"""
Git collaborator: clone and checkout through the git CLI.
Both operations return step results so the executor handles them like any step.
"""
import logging
from pathlib import Path
from typing import Optional

from ciserver.core.steps import StepFailure, StepOutput, StepResult, run_process, DEFAULT_MAX_OUTPUT

logger = logging.getLogger(__name__)

GIT = "git"


class Git:
    """Thin wrapper over the git CLI."""

    def __init__(self, executable: str = GIT, max_output: int = DEFAULT_MAX_OUTPUT):
        self.executable = executable
        self.max_output = max_output

    def _git(self, args: list[str], cwd: Optional[Path] = None) -> StepResult:
        return run_process([self.executable, *args], cwd=cwd, max_output=self.max_output)

    def clone(self, remote: str, local: str) -> StepResult:
        """Clone `remote` into `local`."""
        Path(local).parent.mkdir(parents=True, exist_ok=True)
        logger.info("git_clone")
        return self._git(["clone", remote, local])

    def checkout(self, local: str, ref: str, branch_tip: bool = False) -> StepResult:
        """
        Fetch from origin and check out `ref`.

        With branch_tip the working tree is reset to origin's head of that
        branch, so a long-lived checkout follows new pushes.
        """
        cwd = Path(local)
        commands = [
            ["fetch", "origin"],
            ["checkout", "-f", ref],
        ]
        if branch_tip:
            commands.append(["reset", "--hard", f"origin/{ref}"])

        transcript = []
        for args in commands:
            result = self._git(args, cwd=cwd)
            transcript.append(result.output)
            if isinstance(result, StepFailure):
                return StepFailure(
                    output="".join(transcript),
                    exit_code=result.exit_code,
                    reason=result.reason,
                )

        transcript.insert(0, f'git: Successfully checked out "{ref}" to "{local}"\n')
        return StepOutput(output="".join(transcript))
