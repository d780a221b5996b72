"""Request and response schemas for workspace endpoints."""

from pydantic import BaseModel, Field

from canopy.models import TreeSnapshot

EXPORT_VERSION = "1.0"


class WorkspaceMetadata(BaseModel):
    id: str
    name: str
    icon: str | None = None
    created_at: str
    updated_at: str
    total_nodes: int = 1
    total_messages: int = 0


class WorkspaceIndex(BaseModel):
    """Persisted list of workspaces plus the one that is open."""

    active_id: str
    workspaces: list[WorkspaceMetadata] = Field(default_factory=list)


class WorkspaceExport(BaseModel):
    """Portable form of one workspace: its metadata and its whole tree."""

    metadata: WorkspaceMetadata
    tree: TreeSnapshot
    exported_at: str
    version: str = EXPORT_VERSION


# -- Requests --


class CreateWorkspaceRequest(BaseModel):
    name: str = ""
    icon: str | None = None


class UpdateWorkspaceRequest(BaseModel):
    name: str | None = None
    icon: str | None = None


# -- Responses --


class WorkspaceSummary(WorkspaceMetadata):
    is_active: bool = False
