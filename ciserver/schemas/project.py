"""
Pydantic schemas for Project API requests and responses.
"""
from datetime import datetime
from typing import Dict, List

from pydantic import BaseModel, Field, field_validator

from ciserver.schemas.build import HookName


class ProjectCreateRequest(BaseModel):
    """Request body for POST /project."""
    name: str = Field(..., min_length=1, max_length=255)
    local: str = Field(..., min_length=1, max_length=4096)
    remote: str = Field(..., min_length=1, max_length=4096)
    build: List[str] = Field(default_factory=list)
    hooks: Dict[HookName, List[str]] = Field(default_factory=dict)

    @field_validator("build")
    @classmethod
    def no_blank_commands(cls, v: List[str]) -> List[str]:
        if any(not cmd.strip() for cmd in v):
            raise ValueError("build commands must not be blank")
        return v


class ProjectResponse(BaseModel):
    """A project as returned by the API."""
    id: int
    name: str
    local: str
    remote: str
    build: List[str]
    hooks: Dict[str, List[str]] = {}
    created_at: datetime


class ProjectListResponse(BaseModel):
    items: List[ProjectResponse]
    total: int
