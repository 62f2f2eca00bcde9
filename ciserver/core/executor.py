"""
Build executor: runs one build's pipeline inside a worker process.

Pipeline: [clone if the checkout is missing] -> checkout -> project commands.
Steps run sequentially and the first failure aborts the rest. The build record
is persisted before and after every step so readers see live progress.

A timeout guard armed at pipeline start marks the build `timeout`, kills the
running step and exits the worker with TIMEOUT_EXIT_CODE. The coordinator
reads that exit code as a timeout rather than a crash.
"""
import logging
import os
import signal
import sys
import threading
from dataclasses import replace
from pathlib import Path
from typing import Callable, Optional, List

from ciserver.core.builds import Build, BuildStore, build_store, utcnow
from ciserver.core.config import get_settings
from ciserver.core.errors import BuildNotFound, ProjectNotFound
from ciserver.core.git import Git
from ciserver.core.hooks import HookDispatcher
from ciserver.core.logging import setup_logging
from ciserver.core.projects import Project, ProjectStore, project_store
from ciserver.core.steps import Step, StepFailure, StepResult, active_process, run_shell
from ciserver.db.database import reset_engine_after_fork
from ciserver.schemas.build import BuildStatus, HookName

logger = logging.getLogger(__name__)

# Same convention as coreutils timeout(1)
TIMEOUT_EXIT_CODE = 124

# Used when a build names neither a branch nor a revision
DEFAULT_BRANCH = "master"

TERMINAL_HOOKS = {
    BuildStatus.SUCCESS: HookName.ON_SUCCESS,
    BuildStatus.FAILED: HookName.ON_FAILED,
    BuildStatus.TIMEOUT: HookName.ON_FAILED,
}


class TimeoutGuard:
    """One-shot deferred action, cancelled when the pipeline finishes first."""

    def __init__(self, delay_s: float, action: Callable[[], None]):
        self.delay_s = delay_s
        self._timer = threading.Timer(delay_s, action)
        self._timer.daemon = True

    def arm(self) -> None:
        self._timer.start()

    def cancel(self) -> None:
        self._timer.cancel()


class BuildExecutor:
    """Runs the step pipeline for one build and records its outcome."""

    def __init__(
        self,
        projects: Optional[ProjectStore] = None,
        builds: Optional[BuildStore] = None,
        hooks: Optional[HookDispatcher] = None,
        git: Optional[Git] = None,
        shell: Callable[..., StepResult] = run_shell,
        timeout_s: Optional[float] = None,
        max_output: Optional[int] = None,
        terminate: Optional[Callable[[], None]] = None,
    ):
        settings = get_settings()
        self.projects = projects or project_store
        self.builds = builds or build_store
        self.hooks = hooks or HookDispatcher(self.projects, self.builds)
        self.max_output = max_output if max_output is not None else settings.max_step_output
        self.git = git or Git(max_output=self.max_output)
        self.shell = shell
        self.timeout_s = timeout_s if timeout_s is not None else settings.build_timeout_s
        self.terminate = terminate or self._exit_worker

    def execute(self, project_id: int, build_id: int) -> Build:
        """
        Run a queued build to a terminal status.

        Returns the final build record. Raises ProjectNotFound/BuildNotFound
        or store errors, which the coordinator treats as a worker crash.
        """
        project = self.projects.get(project_id)
        if project is None:
            raise ProjectNotFound(project_id)
        build = self.builds.get(project_id, build_id)
        if build is None:
            raise BuildNotFound(project_id, build_id)

        if build.is_terminal:
            # Enqueued twice; a finished build is never run again
            logger.info(
                f"build_skipped project_id={project_id} build_id={build_id} "
                f"status={build.status.value}"
            )
            return build

        build = replace(build, status=BuildStatus.BUILDING, start=utcnow())
        if not self.builds.update(build):
            return self.builds.get(project_id, build_id)
        logger.info(f"build_started project_id={project_id} build_id={build_id}")
        self.hooks.run(HookName.ON_BUILDING, project_id, build_id)

        guard = TimeoutGuard(self.timeout_s, lambda: self._on_timeout(project_id, build_id))
        guard.arm()
        try:
            final = self._run_steps(build, self._pipeline(project, build))
        finally:
            guard.cancel()

        if final is None or not self.builds.update(final):
            # Someone else (the timeout guard) already finished this build
            stored = self.builds.get(project_id, build_id)
            logger.info(f"build_superseded project_id={project_id} build_id={build_id}")
            return stored if stored is not None else build

        self.hooks.run(TERMINAL_HOOKS[final.status], project_id, build_id)
        return final

    def _pipeline(self, project: Project, build: Build) -> List[Step]:
        """Ordered steps for this build."""
        local = project.local
        ref = build.revision or build.branch or DEFAULT_BRANCH
        branch_tip = not build.revision
        steps = []

        if not Path(local).is_dir():
            steps.append(Step(
                label=f"git clone {project.remote} {local}",
                action=lambda: self.git.clone(project.remote, local),
            ))

        steps.append(Step(
            label=f"git checkout {ref}",
            action=lambda: self.git.checkout(local, ref, branch_tip=branch_tip),
        ))

        for command in project.build:
            steps.append(Step(
                label=command,
                action=lambda command=command: self.shell(command, cwd=Path(local), max_output=self.max_output),
            ))
        return steps

    def _run_steps(self, build: Build, steps: List[Step]) -> Optional[Build]:
        """
        Run steps in order, stopping at the first failure.
        Returns the terminal build, or None if the record was finished elsewhere.
        """
        for step in steps:
            build = build.with_output(f"$ {step.label}\n")
            if not self.builds.update(build):
                return None

            result = step.run()

            if isinstance(result, StepFailure):
                chunks = [chunk for chunk in (result.output, result.reason) if chunk]
                logger.info(
                    f"step_failed project_id={build.project_id} build_id={build.id} "
                    f"exit={result.exit_code}"
                )
                return replace(
                    build,
                    output=build.output + chunks,
                    status=BuildStatus.FAILED,
                    exit=result.exit_code,
                    stop=utcnow(),
                )

            build = build.with_output(result.output)
            if not self.builds.update(build):
                return None

        return replace(build, status=BuildStatus.SUCCESS, exit=0, stop=utcnow())

    def _on_timeout(self, project_id: int, build_id: int) -> None:
        """Timeout guard action. Runs on the timer thread."""
        logger.warning(f"build_timeout project_id={project_id} build_id={build_id} timeout_s={self.timeout_s}")
        try:
            marked = self.builds.mark_terminal(
                project_id,
                build_id,
                BuildStatus.TIMEOUT,
                reason=f"ciserver: build timed out after {self.timeout_s:g} seconds\n",
            )
        except Exception:
            logger.exception(f"build_timeout_mark_failed project_id={project_id} build_id={build_id}")
            self.terminate()
            return

        if marked is None:
            current = self.builds.get(project_id, build_id)
            if current is not None and current.is_terminal:
                # Pipeline finished first; the worker is already on its way out
                return
            # Lost the write to concurrent progress; the coordinator records the
            # timeout when it sees our exit code
            logger.warning(f"build_timeout_unrecorded project_id={project_id} build_id={build_id}")
            self.terminate()
            return
        self.hooks.run(HookName.ON_FAILED, project_id, build_id)
        self.terminate()

    def _exit_worker(self) -> None:
        """Hard-stop this worker process."""
        active_process.kill()
        self.hooks.close()
        sys.stdout.flush()
        os._exit(TIMEOUT_EXIT_CODE)


def _on_sigterm(signum, frame) -> None:
    """Coordinator shutdown: take the running step's process group down too."""
    active_process.kill()
    sys.stdout.flush()
    os._exit(128 + signum)


def run_worker(project_id: int, build_id: int) -> None:
    """Entry point of a build worker process."""
    settings = get_settings()
    setup_logging(settings.log_level)
    reset_engine_after_fork()
    signal.signal(signal.SIGTERM, _on_sigterm)

    hooks = HookDispatcher()
    executor = BuildExecutor(hooks=hooks)
    try:
        executor.execute(project_id, build_id)
    finally:
        hooks.close()
