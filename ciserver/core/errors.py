"""
Service exceptions.
"""


class CIServerError(Exception):
    """Base error for ciserver operations."""
    pass


class ProjectNotFound(CIServerError):
    """Raised when a project id does not exist."""

    def __init__(self, project_id: int):
        super().__init__(f"Project not found: {project_id}")
        self.project_id = project_id


class BuildNotFound(CIServerError):
    """Raised when a build id does not exist for a project."""

    def __init__(self, project_id: int, build_id: int):
        super().__init__(f"Build not found: {project_id}/{build_id}")
        self.project_id = project_id
        self.build_id = build_id
