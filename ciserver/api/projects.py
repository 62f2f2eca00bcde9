"""
Project API routes.
"""
import logging

from fastapi import APIRouter, HTTPException

from ciserver.core.projects import Project, project_store
from ciserver.schemas.project import ProjectCreateRequest, ProjectResponse, ProjectListResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/project", tags=["project"])


def project_to_response(project: Project) -> ProjectResponse:
    return ProjectResponse(
        id=project.id,
        name=project.name,
        local=project.local,
        remote=project.remote,
        build=project.build,
        hooks=project.hooks,
        created_at=project.created_at,
    )


@router.post("", status_code=201, response_model=ProjectResponse)
async def create_project(request: ProjectCreateRequest) -> ProjectResponse:
    """Register a project: where to fetch it and which commands build it."""
    project = project_store.create(
        name=request.name,
        local=request.local,
        remote=request.remote,
        build=request.build,
        hooks={event.value: urls for event, urls in request.hooks.items()},
    )
    return project_to_response(project)


@router.get("", response_model=ProjectListResponse)
async def list_projects() -> ProjectListResponse:
    projects = project_store.list()
    return ProjectListResponse(
        items=[project_to_response(p) for p in projects],
        total=len(projects),
    )


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(project_id: int) -> ProjectResponse:
    project = project_store.get(project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project_to_response(project)


@router.delete("/{project_id}")
async def delete_project(project_id: int) -> dict:
    """Delete a project together with its builds."""
    if not project_store.delete(project_id):
        raise HTTPException(status_code=404, detail="Project not found")
    return {"deleted": True, "id": project_id}
