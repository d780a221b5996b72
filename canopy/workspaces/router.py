"""FastAPI routes for listing, switching and moving workspaces."""

from fastapi import APIRouter, Depends, HTTPException, status

from canopy.workspaces.schemas import (
    CreateWorkspaceRequest,
    UpdateWorkspaceRequest,
    WorkspaceExport,
    WorkspaceSummary,
)
from canopy.workspaces.service import (
    InvalidWorkspaceOperationError,
    WorkspaceBusyError,
    WorkspaceNotFoundError,
    WorkspaceService,
)

router = APIRouter(prefix="/api/workspaces", tags=["workspaces"])


def get_workspace_service() -> WorkspaceService:
    """Dependency placeholder, replaced at app startup."""
    raise RuntimeError("WorkspaceService not initialized")


@router.get("")
async def list_workspaces(
    service: WorkspaceService = Depends(get_workspace_service),
) -> list[WorkspaceSummary]:
    return service.list_workspaces()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_workspace(
    request: CreateWorkspaceRequest,
    service: WorkspaceService = Depends(get_workspace_service),
) -> WorkspaceSummary:
    return await service.create_workspace(request.name, request.icon)


@router.get("/active")
async def get_active_workspace(
    service: WorkspaceService = Depends(get_workspace_service),
) -> WorkspaceSummary:
    return service.get_workspace(service.active_id)


@router.post("/import", status_code=status.HTTP_201_CREATED)
async def import_workspace(
    export: WorkspaceExport,
    service: WorkspaceService = Depends(get_workspace_service),
) -> WorkspaceSummary:
    return await service.import_workspace(export)


@router.get("/{workspace_id}")
async def get_workspace(
    workspace_id: str,
    service: WorkspaceService = Depends(get_workspace_service),
) -> WorkspaceSummary:
    try:
        return service.get_workspace(workspace_id)
    except WorkspaceNotFoundError:
        raise HTTPException(status_code=404, detail=f"Workspace not found: {workspace_id}")


@router.patch("/{workspace_id}")
async def update_workspace(
    workspace_id: str,
    request: UpdateWorkspaceRequest,
    service: WorkspaceService = Depends(get_workspace_service),
) -> WorkspaceSummary:
    try:
        return await service.update_workspace(
            workspace_id, name=request.name, icon=request.icon
        )
    except WorkspaceNotFoundError:
        raise HTTPException(status_code=404, detail=f"Workspace not found: {workspace_id}")


@router.delete("/{workspace_id}")
async def delete_workspace(
    workspace_id: str,
    service: WorkspaceService = Depends(get_workspace_service),
) -> list[WorkspaceSummary]:
    try:
        await service.delete_workspace(workspace_id)
    except WorkspaceNotFoundError:
        raise HTTPException(status_code=404, detail=f"Workspace not found: {workspace_id}")
    except InvalidWorkspaceOperationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except WorkspaceBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return service.list_workspaces()


@router.post("/{workspace_id}/activate")
async def activate_workspace(
    workspace_id: str,
    service: WorkspaceService = Depends(get_workspace_service),
) -> WorkspaceSummary:
    try:
        return await service.switch_workspace(workspace_id)
    except WorkspaceNotFoundError:
        raise HTTPException(status_code=404, detail=f"Workspace not found: {workspace_id}")
    except WorkspaceBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/{workspace_id}/export")
async def export_workspace(
    workspace_id: str,
    service: WorkspaceService = Depends(get_workspace_service),
) -> WorkspaceExport:
    try:
        return await service.export_workspace(workspace_id)
    except WorkspaceNotFoundError:
        raise HTTPException(status_code=404, detail=f"Workspace not found: {workspace_id}")
