"""
Build queue coordinator: single-worker FIFO scheduler.

One coordinator thread owns the pending queue and the worker slot and
processes messages from its inbox one at a time:

- enqueue: append; start it right away when idle
- process-next: dequeue the head and launch a worker unless busy
- worker-exited: posted exactly once per worker by its monitor thread;
  ignored unless it is for the worker currently in the slot
- snapshot: report queue state through a future

No other thread touches the queue or the slot, so no locking is needed.
"""
import logging
import multiprocessing
import queue
import threading
from collections import deque
from concurrent.futures import Future
from multiprocessing.connection import wait as wait_for_objects
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Optional, List

from ciserver.core.builds import BuildStore, build_store
from ciserver.core.config import get_settings
from ciserver.core.executor import TIMEOUT_EXIT_CODE, run_worker
from ciserver.core.hooks import HookDispatcher
from ciserver.core.metrics import metrics
from ciserver.schemas.build import BuildStatus, HookName

logger = logging.getLogger(__name__)

# How long a terminated worker gets to clean up before SIGKILL
TERMINATE_GRACE_S = 5.0


class WorkerExit(str, Enum):
    """Why a worker process ended."""
    NORMAL = "normal"
    TIMEOUT = "timeout"
    CRASHED = "crashed"


def classify_exit(exitcode: Optional[int]) -> WorkerExit:
    """Map a worker process exit code to a WorkerExit reason."""
    if exitcode == 0:
        return WorkerExit.NORMAL
    if exitcode == TIMEOUT_EXIT_CODE:
        return WorkerExit.TIMEOUT
    return WorkerExit.CRASHED


@dataclass(frozen=True)
class QueueEntry:
    """A (project, build) pair waiting for the worker slot."""
    project_id: int
    build_id: int


@dataclass(frozen=True)
class QueueSnapshot:
    """Point-in-time view of the coordinator state."""
    current: Optional[QueueEntry]
    pending: List[QueueEntry] = field(default_factory=list)

    @property
    def busy(self) -> bool:
        return self.current is not None


class WorkerHandle:
    """A launched worker process."""

    def __init__(self, entry: QueueEntry, process: multiprocessing.process.BaseProcess):
        self.entry = entry
        self.process = process

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    def kill(self) -> None:
        """
        Stop the worker. SIGTERM first so it can kill its step's process
        group; SIGKILL if it is still around after the grace period.
        """
        if not self.process.is_alive():
            return
        self.process.terminate()
        if not wait_for_objects([self.process.sentinel], TERMINATE_GRACE_S):
            logger.warning(f"worker_kill build_id={self.entry.build_id} worker_pid={self.pid}")
            self.process.kill()


ExitCallback = Callable[[WorkerHandle, WorkerExit, Optional[int]], None]


class ProcessWorkerLauncher:
    """Starts each build in its own process and reports its exit once."""

    def __init__(self, target: Callable[[int, int], None] = run_worker, start_method: Optional[str] = None):
        self.target = target
        self.start_method = start_method or get_settings().worker_start_method

    def launch(self, entry: QueueEntry, on_exit: ExitCallback) -> WorkerHandle:
        ctx = multiprocessing.get_context(self.start_method)
        process = ctx.Process(
            target=self.target,
            args=(entry.project_id, entry.build_id),
            name=f"build-worker-{entry.build_id}",
        )
        process.start()
        handle = WorkerHandle(entry, process)

        monitor = threading.Thread(
            target=self._monitor,
            args=(handle, on_exit),
            name=f"build-monitor-{entry.build_id}",
            daemon=True,
        )
        monitor.start()
        return handle

    @staticmethod
    def _monitor(handle: WorkerHandle, on_exit: ExitCallback) -> None:
        handle.process.join()
        exitcode = handle.process.exitcode
        on_exit(handle, classify_exit(exitcode), exitcode)


# Inbox messages

@dataclass(frozen=True)
class _Enqueue:
    entry: QueueEntry


@dataclass(frozen=True)
class _ProcessNext:
    pass


@dataclass(frozen=True)
class _WorkerExited:
    handle: WorkerHandle
    reason: WorkerExit
    exitcode: Optional[int]


@dataclass(frozen=True)
class _Snapshot:
    reply: Future


@dataclass(frozen=True)
class _Stop:
    pass


@dataclass
class _Slot:
    handle: WorkerHandle
    entry: QueueEntry


class BuildCoordinator:
    """Owns the build queue and the single worker slot."""

    def __init__(
        self,
        builds: Optional[BuildStore] = None,
        hooks: Optional[HookDispatcher] = None,
        launcher=None,
    ):
        self.builds = builds or build_store
        self.hooks = hooks or HookDispatcher(builds=self.builds)
        self.launcher = launcher or ProcessWorkerLauncher()
        self._inbox: "queue.Queue[object]" = queue.Queue()
        self._pending: Deque[QueueEntry] = deque()
        self._busy: Optional[_Slot] = None
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Control surface (any thread)
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the coordinator thread. Safe to call more than once."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="build-coordinator", daemon=True)
        self._thread.start()
        logger.info("coordinator_started")

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the coordinator thread; a running worker is killed."""
        if self._thread is None:
            return
        self._inbox.put(_Stop())
        self._thread.join(timeout)
        self._thread = None
        logger.info("coordinator_stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def enqueue(self, project_id: int, build_id: int) -> None:
        """Queue a build. Fire-and-forget; always accepted."""
        metrics.inc("builds_enqueued_total")
        self._inbox.put(_Enqueue(QueueEntry(project_id, build_id)))

    def process_next(self) -> None:
        """Ask the coordinator to start the next build if it is idle."""
        self._inbox.put(_ProcessNext())

    def snapshot(self, timeout: float = 5.0) -> QueueSnapshot:
        """Current slot and pending entries, answered by the coordinator thread."""
        reply: Future = Future()
        self._inbox.put(_Snapshot(reply))
        return reply.result(timeout=timeout)

    # ------------------------------------------------------------------
    # Coordinator thread
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while True:
            message = self._inbox.get()
            if isinstance(message, _Stop):
                self._shutdown()
                return
            try:
                self._handle(message)
            except Exception:
                # A bad message must not take the scheduler down with it
                logger.exception(f"coordinator_message_failed message={type(message).__name__}")

    def _handle(self, message: object) -> None:
        if isinstance(message, _Enqueue):
            self._on_enqueue(message.entry)
        elif isinstance(message, _ProcessNext):
            self._dequeue_and_run()
        elif isinstance(message, _WorkerExited):
            self._on_worker_exit(message.handle, message.reason, message.exitcode)
        elif isinstance(message, _Snapshot):
            current = self._busy.entry if self._busy else None
            message.reply.set_result(QueueSnapshot(current=current, pending=list(self._pending)))
        else:
            logger.warning(f"coordinator_unknown_message message={type(message).__name__}")

    def _on_enqueue(self, entry: QueueEntry) -> None:
        self._pending.append(entry)
        logger.info(
            f"build_enqueued project_id={entry.project_id} build_id={entry.build_id} "
            f"pending={len(self._pending)} busy={self._busy is not None}"
        )
        if self._busy is None:
            self._dequeue_and_run()

    def _dequeue_and_run(self) -> None:
        if self._busy is not None:
            return

        while self._pending:
            entry = self._pending.popleft()
            try:
                handle = self.launcher.launch(entry, self._post_exit)
            except Exception:
                logger.exception(
                    f"worker_launch_failed project_id={entry.project_id} build_id={entry.build_id}"
                )
                self._force_terminal(entry, BuildStatus.FAILED, "ciserver: could not start build worker\n")
                continue

            self._busy = _Slot(handle=handle, entry=entry)
            metrics.inc("builds_started_total")
            logger.info(
                f"worker_started project_id={entry.project_id} build_id={entry.build_id} "
                f"worker_pid={handle.pid}"
            )
            return

    def _post_exit(self, handle: WorkerHandle, reason: WorkerExit, exitcode: Optional[int]) -> None:
        # Called on the monitor thread; hand over to the coordinator thread
        self._inbox.put(_WorkerExited(handle, reason, exitcode))

    def _on_worker_exit(self, handle: WorkerHandle, reason: WorkerExit, exitcode: Optional[int]) -> None:
        if self._busy is None or self._busy.handle is not handle:
            metrics.inc("worker_exit_stale_total")
            logger.warning(
                f"worker_exit_ignored build_id={handle.entry.build_id} reason={reason.value}"
            )
            return

        entry = self._busy.entry
        metrics.inc(f"worker_exit_{reason.value}_total")
        logger.info(
            f"worker_exited project_id={entry.project_id} build_id={entry.build_id} "
            f"reason={reason.value} exit_code={exitcode}"
        )

        try:
            if reason == WorkerExit.TIMEOUT:
                # The guard normally wrote this already; no-op in that case
                self._force_terminal(entry, BuildStatus.TIMEOUT, "ciserver: build timed out\n")
            elif reason == WorkerExit.CRASHED:
                self._force_terminal(
                    entry,
                    BuildStatus.FAILED,
                    f"ciserver: build worker exited abnormally (exit code {exitcode})\n",
                )
            else:
                self._force_terminal(
                    entry,
                    BuildStatus.FAILED,
                    "ciserver: build worker exited without recording a result\n",
                )
        finally:
            self._busy = None
            self._dequeue_and_run()

    def _force_terminal(self, entry: QueueEntry, status: BuildStatus, reason: str) -> None:
        """Finish a build the worker could not finish. No-op if already terminal."""
        try:
            marked = self.builds.mark_terminal(entry.project_id, entry.build_id, status, reason=reason)
        except Exception:
            logger.exception(
                f"build_force_terminal_failed project_id={entry.project_id} build_id={entry.build_id}"
            )
            return
        if marked is not None:
            self.hooks.run(HookName.ON_FAILED, entry.project_id, entry.build_id)

    def _shutdown(self) -> None:
        if self._busy is None:
            return
        slot = self._busy
        self._busy = None
        slot.handle.kill()
        self._force_terminal(slot.entry, BuildStatus.FAILED, "ciserver: build aborted by server shutdown\n")


# Global coordinator instance (started by the application lifespan)
build_coordinator = BuildCoordinator()
