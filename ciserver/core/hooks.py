"""
Hook dispatcher: build lifecycle notifications.

Every dispatched event is recorded in the hook_events table, then POSTed to the
webhook URLs the project registers for it. Delivery is best-effort: nothing in
here may block or fail a build.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Optional, List

import httpx

from ciserver.core.builds import BuildStore, build_store
from ciserver.core.config import get_settings
from ciserver.core.projects import ProjectStore, project_store
from ciserver.db.database import SessionLocal
from ciserver.db.models import HookEvent as HookEventModel
from ciserver.schemas.build import HookName

logger = logging.getLogger(__name__)

MAX_DELIVERY_THREADS = 4


class HookDispatcher:
    """Fire-and-forget hook delivery."""

    def __init__(
        self,
        projects: Optional[ProjectStore] = None,
        builds: Optional[BuildStore] = None,
        timeout_s: Optional[float] = None,
    ):
        self.projects = projects or project_store
        self.builds = builds or build_store
        self.timeout_s = timeout_s if timeout_s is not None else get_settings().hook_timeout_s
        self._pool: Optional[ThreadPoolExecutor] = None

    def _executor(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=MAX_DELIVERY_THREADS,
                thread_name_prefix="hook-delivery",
            )
        return self._pool

    def run(self, event: HookName, project_id: int, build_id: int) -> None:
        """Dispatch one lifecycle event. Never raises."""
        try:
            build = self.builds.get(project_id, build_id)
            status = build.status.value if build else None
            self._record(event, project_id, build_id, status)

            project = self.projects.get(project_id)
            urls = project.hook_urls(event.value) if project else []
            payload = {
                "event": event.value,
                "project_id": project_id,
                "build_id": build_id,
                "status": status,
            }
            for url in urls:
                self._executor().submit(self._deliver, url, payload)

            logger.info(
                f"hook_dispatched event={event.value} project_id={project_id} "
                f"build_id={build_id} targets={len(urls)}"
            )
        except Exception as e:
            logger.warning(
                f"hook_dispatch_failed event={event.value} project_id={project_id} "
                f"build_id={build_id} error_type={type(e).__name__}"
            )

    def _record(self, event: HookName, project_id: int, build_id: int, status: Optional[str]) -> None:
        db = SessionLocal()
        try:
            db.add(HookEventModel(
                project_id=project_id,
                build_id=build_id,
                event=event.value,
                status=status,
                created_at=datetime.now(timezone.utc).isoformat(),
            ))
            db.commit()
        finally:
            db.close()

    def _deliver(self, url: str, payload: dict) -> None:
        try:
            with httpx.Client(timeout=self.timeout_s) as client:
                response = client.post(url, json=payload)
            if response.status_code >= 400:
                logger.warning(
                    f"hook_rejected event={payload['event']} build_id={payload['build_id']} "
                    f"status_code={response.status_code}"
                )
        except httpx.HTTPError as e:
            # Never log the URL, it may embed a token
            logger.warning(
                f"hook_delivery_failed event={payload['event']} build_id={payload['build_id']} "
                f"error_type={type(e).__name__}"
            )

    def close(self) -> None:
        """Wait for in-flight deliveries. Call before a worker process exits."""
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None


def list_hook_events(build_id: int, project_id: Optional[int] = None) -> List[dict]:
    """Recorded hook events for a build, in dispatch order."""
    db = SessionLocal()
    try:
        query = db.query(HookEventModel).filter(HookEventModel.build_id == build_id)
        if project_id is not None:
            query = query.filter(HookEventModel.project_id == project_id)
        return [
            {"event": m.event, "status": m.status, "created_at": m.created_at}
            for m in query.order_by(HookEventModel.id.asc()).all()
        ]
    finally:
        db.close()
