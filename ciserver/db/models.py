"""
SQLAlchemy models for projects, builds and hook deliveries.
"""
from sqlalchemy import Column, Text, Integer, Index, ForeignKey
from sqlalchemy.orm import relationship

from ciserver.db.database import Base


class Project(Base):
    """SQLite model for projects."""
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False, index=True)
    local = Column(Text, nullable=False)  # Checkout path on this host
    remote = Column(Text, nullable=False)  # Git remote URL
    build = Column(Text, nullable=False, default="[]")  # JSON array of shell commands
    hooks = Column(Text, nullable=False, default="{}")  # JSON: {"on_success": ["https://..."]}
    created_at = Column(Text, nullable=False)

    builds = relationship("Build", back_populates="project", cascade="all, delete-orphan")

    # Never hand a deleted project's id to a new one
    __table_args__ = {"sqlite_autoincrement": True}


class Build(Base):
    """SQLite model for builds."""
    __tablename__ = "builds"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(Text, nullable=True)
    branch = Column(Text, nullable=True)
    revision = Column(Text, nullable=True)  # NULL = branch tip
    author = Column(Text, nullable=True)
    tags = Column(Text, nullable=False, default="[]")  # JSON array
    status = Column(Text, nullable=False, index=True)
    output = Column(Text, nullable=False, default="[]")  # JSON array of chunks, chronological
    exit = Column(Integer, nullable=True)
    created_at = Column(Text, nullable=False)  # ISO timestamp
    start = Column(Text, nullable=True)
    stop = Column(Text, nullable=True)

    project = relationship("Project", back_populates="builds")

    __table_args__ = (
        Index("ix_builds_project_id_desc", "project_id", "id"),
        # A worker of a deleted build must never match a newer build
        {"sqlite_autoincrement": True},
    )


class HookEvent(Base):
    """SQLite model for dispatched hook events."""
    __tablename__ = "hook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, nullable=False, index=True)
    build_id = Column(Integer, nullable=False, index=True)
    event = Column(Text, nullable=False)  # on_building, on_success, on_failed
    status = Column(Text, nullable=True)  # Build status when fired
    created_at = Column(Text, nullable=False)
