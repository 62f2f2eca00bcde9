"""
Pydantic schemas for Build API requests and responses.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

CI_SKIP_MARKER = "[ci skip]"


class BuildStatus(str, Enum):
    """Build execution status."""
    QUEUED = "queued"
    BUILDING = "building"
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({BuildStatus.SUCCESS, BuildStatus.FAILED, BuildStatus.TIMEOUT})


class HookName(str, Enum):
    """Build lifecycle hook events."""
    ON_BUILDING = "on_building"
    ON_SUCCESS = "on_success"
    ON_FAILED = "on_failed"


class BuildCreateRequest(BaseModel):
    """
    Request body for POST /project/{project_id}/build.
    With `copy`, the referenced build's fields are reused and the rest is ignored.
    """
    title: Optional[str] = Field(default=None, max_length=1024)
    branch: Optional[str] = Field(default=None, max_length=255)
    revision: Optional[str] = Field(default=None, max_length=255)
    author: Optional[str] = Field(default=None, max_length=255)
    tags: List[str] = Field(default_factory=list)
    copy_from: Optional[int] = Field(default=None, alias="copy")

    model_config = {"populate_by_name": True}

    @field_validator("tags", mode="before")
    @classmethod
    def tags_as_strings(cls, v):
        if v is None:
            return []
        return [str(t) for t in v]

    @property
    def skip_ci(self) -> bool:
        """Commit messages containing [ci skip] do not trigger a build."""
        return CI_SKIP_MARKER in (self.title or "")


class BuildResponse(BaseModel):
    """A build record as returned by the API."""
    id: int
    project: int
    title: Optional[str] = None
    branch: Optional[str] = None
    revision: Optional[str] = None
    author: Optional[str] = None
    tags: List[str] = []
    status: BuildStatus
    output: List[str] = []
    exit: Optional[int] = None
    created_at: datetime
    start: Optional[datetime] = None
    stop: Optional[datetime] = None


class QueueEntryResponse(BaseModel):
    project_id: int
    build_id: int


class QueueStatusResponse(BaseModel):
    """Response for GET /queue."""
    busy: bool
    current: Optional[QueueEntryResponse] = None
    pending: List[QueueEntryResponse] = []
