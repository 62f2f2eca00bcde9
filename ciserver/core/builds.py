"""
SQLite-backed build store.

Every write is conditional on the stored status still being non-terminal, so
a build becomes terminal exactly once: the first of {executor finish, timeout
guard, coordinator crash handling} to write a terminal status wins and later
writes are dropped.
"""
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional, List

from ciserver.db.database import SessionLocal
from ciserver.db.models import Build as BuildModel, HookEvent as HookEventModel
from ciserver.schemas.build import BuildStatus, TERMINAL_STATUSES
from ciserver.core.metrics import metrics

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = tuple(s.value for s in BuildStatus if s not in TERMINAL_STATUSES)

# Attempts for mark_terminal when the executor appends output concurrently
MARK_TERMINAL_ATTEMPTS = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Build:
    """A single build attempt (in-memory representation)."""
    id: int
    project_id: int
    title: Optional[str] = None
    branch: Optional[str] = None
    revision: Optional[str] = None
    author: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    status: BuildStatus = BuildStatus.QUEUED
    output: List[str] = field(default_factory=list)
    exit: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    start: Optional[datetime] = None
    stop: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def with_output(self, chunk: str) -> "Build":
        """Return a copy with one more output chunk appended."""
        return replace(self, output=[*self.output, chunk])


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _model_to_build(model: BuildModel) -> Build:
    """Convert SQLAlchemy model to Build dataclass."""
    return Build(
        id=model.id,
        project_id=model.project_id,
        title=model.title,
        branch=model.branch,
        revision=model.revision,
        author=model.author,
        tags=json.loads(model.tags) if model.tags else [],
        status=BuildStatus(model.status),
        output=json.loads(model.output) if model.output else [],
        exit=model.exit,
        created_at=datetime.fromisoformat(model.created_at),
        start=_parse_ts(model.start),
        stop=_parse_ts(model.stop),
    )


def _build_to_values(build: Build) -> dict:
    """Column values for an UPDATE of every mutable field."""
    return {
        BuildModel.title: build.title,
        BuildModel.branch: build.branch,
        BuildModel.revision: build.revision,
        BuildModel.author: build.author,
        BuildModel.tags: json.dumps(build.tags),
        BuildModel.status: build.status.value,
        BuildModel.output: json.dumps(build.output),
        BuildModel.exit: build.exit,
        BuildModel.start: _format_ts(build.start),
        BuildModel.stop: _format_ts(build.stop),
    }


@dataclass
class Recovery:
    """Outcome of startup recovery."""
    failed: List[Build] = field(default_factory=list)
    queued: List[Build] = field(default_factory=list)


class BuildStore:
    """SQLite-backed build store."""

    def create(
        self,
        project_id: int,
        title: Optional[str] = None,
        branch: Optional[str] = None,
        revision: Optional[str] = None,
        author: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Build:
        """Create a queued build and return it."""
        db = SessionLocal()
        try:
            model = BuildModel(
                project_id=project_id,
                title=title,
                branch=branch,
                revision=revision or None,
                author=author,
                tags=json.dumps(tags or []),
                status=BuildStatus.QUEUED.value,
                output="[]",
                created_at=utcnow().isoformat(),
            )
            db.add(model)
            db.commit()
            db.refresh(model)

            logger.info(f"build_created project_id={project_id} build_id={model.id}")
            metrics.inc("builds_created_total")
            return _model_to_build(model)
        finally:
            db.close()

    def get(self, project_id: int, build_id: int) -> Optional[Build]:
        """Get a build by project and build ID."""
        db = SessionLocal()
        try:
            model = (
                db.query(BuildModel)
                .filter(BuildModel.project_id == project_id, BuildModel.id == build_id)
                .first()
            )
            if not model:
                return None
            return _model_to_build(model)
        finally:
            db.close()

    def list(
        self,
        project_id: int,
        limit: Optional[int] = None,
        last: Optional[int] = None,
    ) -> List[Build]:
        """
        Builds of a project, newest first.

        Args:
            project_id: Owning project
            limit: Return at most this many builds (None = all)
            last: Only builds with an id lower than this one (paging backwards)
        """
        db = SessionLocal()
        try:
            query = db.query(BuildModel).filter(BuildModel.project_id == project_id)
            if last is not None:
                query = query.filter(BuildModel.id < last)
            query = query.order_by(BuildModel.id.desc())
            if limit is not None:
                query = query.limit(limit)
            return [_model_to_build(m) for m in query.all()]
        finally:
            db.close()

    def update(self, build: Build) -> bool:
        """
        Overwrite a build record.

        Applied only while the stored build is still non-terminal. Returns
        False when the write was dropped because another writer already
        recorded a terminal status.
        """
        db = SessionLocal()
        try:
            rows = (
                db.query(BuildModel)
                .filter(
                    BuildModel.project_id == build.project_id,
                    BuildModel.id == build.id,
                    BuildModel.status.in_(ACTIVE_STATUSES),
                )
                .update(_build_to_values(build), synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()

        if not rows:
            logger.info(
                f"build_update_dropped project_id={build.project_id} "
                f"build_id={build.id} status={build.status.value}"
            )
            return False
        if build.is_terminal:
            logger.info(
                f"build_finished project_id={build.project_id} build_id={build.id} "
                f"status={build.status.value} exit={build.exit}"
            )
        return True

    def mark_terminal(
        self,
        project_id: int,
        build_id: int,
        status: BuildStatus,
        reason: Optional[str] = None,
        exit_code: Optional[int] = None,
    ) -> Optional[Build]:
        """
        Force a terminal status onto a build from outside its executor.

        Used by the timeout guard and by the coordinator when a worker
        crashed. Appends `reason` to the output. Returns the updated build, or
        None when the build is missing or already terminal.
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {status.value}")

        for _ in range(MARK_TERMINAL_ATTEMPTS):
            current = self.get(project_id, build_id)
            if current is None or current.is_terminal:
                return None

            output = current.output + ([reason] if reason else [])
            db = SessionLocal()
            try:
                rows = (
                    db.query(BuildModel)
                    .filter(
                        BuildModel.project_id == project_id,
                        BuildModel.id == build_id,
                        BuildModel.status.in_(ACTIVE_STATUSES),
                        # Optimistic check: retry if the executor appended meanwhile
                        BuildModel.output == json.dumps(current.output),
                    )
                    .update(
                        {
                            BuildModel.status: status.value,
                            BuildModel.output: json.dumps(output),
                            BuildModel.exit: exit_code if exit_code is not None else current.exit,
                            BuildModel.stop: utcnow().isoformat(),
                        },
                        synchronize_session=False,
                    )
                )
                db.commit()
            finally:
                db.close()

            if rows:
                logger.info(
                    f"build_marked project_id={project_id} build_id={build_id} "
                    f"status={status.value}"
                )
                return self.get(project_id, build_id)

        logger.warning(f"build_mark_contended project_id={project_id} build_id={build_id}")
        return None

    def delete(self, build: Build) -> bool:
        """Delete a build record."""
        db = SessionLocal()
        try:
            rows = (
                db.query(BuildModel)
                .filter(BuildModel.project_id == build.project_id, BuildModel.id == build.id)
                .delete(synchronize_session=False)
            )
            db.query(HookEventModel).filter(
                HookEventModel.project_id == build.project_id,
                HookEventModel.build_id == build.id,
            ).delete(synchronize_session=False)
            db.commit()
            if rows:
                logger.info(f"build_deleted project_id={build.project_id} build_id={build.id}")
            return bool(rows)
        finally:
            db.close()

    def recover_interrupted(self) -> Recovery:
        """
        Repair builds left behind by a previous server process.

        Builds stuck in `building` lost their worker and are marked failed;
        the caller fires their on_failed hook. Still-queued builds are
        returned oldest first for re-enqueueing.
        """
        db = SessionLocal()
        try:
            stuck = db.query(BuildModel).filter(BuildModel.status == BuildStatus.BUILDING.value).all()
            queued = (
                db.query(BuildModel)
                .filter(BuildModel.status == BuildStatus.QUEUED.value)
                .order_by(BuildModel.id.asc())
                .all()
            )
            stuck_ids = [(m.project_id, m.id) for m in stuck]
            queued_builds = [_model_to_build(m) for m in queued]
        finally:
            db.close()

        failed = []
        for project_id, build_id in stuck_ids:
            marked = self.mark_terminal(
                project_id,
                build_id,
                BuildStatus.FAILED,
                reason="ciserver: build interrupted by server restart\n",
            )
            if marked is not None:
                failed.append(marked)

        if failed or queued_builds:
            logger.info(f"builds_recovered failed={len(failed)} requeued={len(queued_builds)}")
        return Recovery(failed=failed, queued=queued_builds)


# Global build store instance
build_store = BuildStore()
