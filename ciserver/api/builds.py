"""
Build API routes.

Builds are created `queued` and handed to the coordinator; everything after
that happens in the worker process.
"""
import logging
from typing import Optional, List

from fastapi import APIRouter, HTTPException, Query, Response

from ciserver.core.builds import Build, build_store
from ciserver.core.coordinator import build_coordinator
from ciserver.core.projects import project_store
from ciserver.schemas.build import BuildCreateRequest, BuildResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/project/{project_id}/build", tags=["build"])


def build_to_response(build: Build) -> BuildResponse:
    return BuildResponse(
        id=build.id,
        project=build.project_id,
        title=build.title,
        branch=build.branch,
        revision=build.revision,
        author=build.author,
        tags=build.tags,
        status=build.status,
        output=build.output,
        exit=build.exit,
        created_at=build.created_at,
        start=build.start,
        stop=build.stop,
    )


def _optional_int(name: str, value: Optional[str]) -> Optional[int]:
    """Query values: missing or empty means no constraint."""
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"'{name}' must be an integer")


def _require_project(project_id: int) -> None:
    if project_store.get(project_id) is None:
        raise HTTPException(status_code=404, detail="Project not found")


def _require_build(project_id: int, build_id: int) -> Build:
    build = build_store.get(project_id, build_id)
    if not build:
        raise HTTPException(status_code=404, detail="Build not found")
    return build


def create_and_enqueue(
    project_id: int,
    title: Optional[str],
    branch: Optional[str],
    revision: Optional[str],
    author: Optional[str],
    tags: List[str],
) -> Build:
    """Create a queued build and hand it to the coordinator."""
    build = build_store.create(
        project_id,
        title=title,
        branch=branch,
        revision=revision,
        author=author,
        tags=tags,
    )
    build_coordinator.enqueue(project_id, build.id)
    return build


@router.get("", response_model=List[BuildResponse])
async def list_builds(
    project_id: int,
    limit: Optional[str] = Query(default=None),
    last: Optional[str] = Query(default=None),
) -> List[BuildResponse]:
    """
    List builds, newest first.

    - `limit=N`: the N most recent builds
    - `limit=N&last=ID`: the N most recent builds older than build ID
    """
    _require_project(project_id)
    limit_value = _optional_int("limit", limit)
    last_value = _optional_int("last", last) if limit_value is not None else None
    builds = build_store.list(project_id, limit=limit_value, last=last_value)
    return [build_to_response(b) for b in builds]


@router.get("/{build_id}", response_model=BuildResponse)
async def get_build(project_id: int, build_id: int) -> BuildResponse:
    return build_to_response(_require_build(project_id, build_id))


@router.delete("/{build_id}")
async def delete_build(project_id: int, build_id: int) -> dict:
    build = _require_build(project_id, build_id)
    build_store.delete(build)
    return {}


@router.post("", response_model=BuildResponse)
async def create_build(project_id: int, request: BuildCreateRequest):
    """
    Queue a build.

    A title containing `[ci skip]` queues nothing (204). With `copy`, the
    referenced build is re-run as a new build with the same
    title/branch/revision/author/tags.
    """
    _require_project(project_id)

    if request.skip_ci:
        logger.info(f"build_skipped_ci project_id={project_id}")
        return Response(status_code=204)

    if request.copy_from is not None:
        old = _require_build(project_id, request.copy_from)
        build = create_and_enqueue(
            project_id,
            title=old.title,
            branch=old.branch,
            revision=old.revision,
            author=old.author,
            tags=old.tags,
        )
    else:
        build = create_and_enqueue(
            project_id,
            title=request.title,
            branch=request.branch,
            revision=request.revision,
            author=request.author,
            tags=request.tags,
        )
    return build_to_response(build)
