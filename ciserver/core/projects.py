"""
SQLite-backed project store.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List

from ciserver.db.database import SessionLocal
from ciserver.db.models import HookEvent as HookEventModel, Project as ProjectModel

logger = logging.getLogger(__name__)


@dataclass
class Project:
    """A buildable project (in-memory representation)."""
    id: int
    name: str
    local: str
    remote: str
    build: List[str] = field(default_factory=list)
    hooks: dict[str, List[str]] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def hook_urls(self, event: str) -> List[str]:
        return list(self.hooks.get(event, []))


def _model_to_project(model: ProjectModel) -> Project:
    """Convert SQLAlchemy model to Project dataclass."""
    return Project(
        id=model.id,
        name=model.name,
        local=model.local,
        remote=model.remote,
        build=json.loads(model.build) if model.build else [],
        hooks=json.loads(model.hooks) if model.hooks else {},
        created_at=datetime.fromisoformat(model.created_at),
    )


class ProjectStore:
    """SQLite-backed project store."""

    def create(
        self,
        name: str,
        local: str,
        remote: str,
        build: Optional[List[str]] = None,
        hooks: Optional[dict[str, List[str]]] = None,
    ) -> Project:
        """Create a project and return it."""
        db = SessionLocal()
        try:
            model = ProjectModel(
                name=name,
                local=local,
                remote=remote,
                build=json.dumps(build or []),
                hooks=json.dumps(hooks or {}),
                created_at=datetime.now(timezone.utc).isoformat(),
            )
            db.add(model)
            db.commit()
            db.refresh(model)
            logger.info(f"project_created project_id={model.id}")
            return _model_to_project(model)
        finally:
            db.close()

    def get(self, project_id: int) -> Optional[Project]:
        """Get a project by ID."""
        db = SessionLocal()
        try:
            model = db.query(ProjectModel).filter(ProjectModel.id == project_id).first()
            if not model:
                return None
            return _model_to_project(model)
        finally:
            db.close()

    def list(self) -> List[Project]:
        """All projects, oldest first."""
        db = SessionLocal()
        try:
            models = db.query(ProjectModel).order_by(ProjectModel.id.asc()).all()
            return [_model_to_project(m) for m in models]
        finally:
            db.close()

    def delete(self, project_id: int) -> bool:
        """Delete a project and its builds. Returns False if it did not exist."""
        db = SessionLocal()
        try:
            model = db.query(ProjectModel).filter(ProjectModel.id == project_id).first()
            if not model:
                return False
            db.delete(model)
            db.query(HookEventModel).filter(HookEventModel.project_id == project_id).delete(
                synchronize_session=False
            )
            db.commit()
            logger.info(f"project_deleted project_id={project_id}")
            return True
        finally:
            db.close()


# Global project store instance
project_store = ProjectStore()
