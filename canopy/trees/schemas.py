"""Request and response schemas for tree, node and turn endpoints."""

from typing import Literal

from pydantic import BaseModel, Field

from canopy.models import DEFAULT_BRANCH_LABEL, Attachment, CapabilityFlags, ContextUsage

# -- Requests --


class SetActiveNodeRequest(BaseModel):
    node_id: str


class CreateBranchRequest(BaseModel):
    label: str = DEFAULT_BRANCH_LABEL
    # "branch" fans out sideways; "response" continues straight down
    kind: Literal["branch", "response"] = "branch"
    activate: bool = True


class PatchNodeRequest(BaseModel):
    label: str = Field(min_length=1)


class TurnRequest(BaseModel):
    """Request body for POST /api/nodes/{node_id}/turns."""

    content: str = ""
    attachments: list[Attachment] = Field(default_factory=list)
    provider: str | None = None
    model: str | None = None
    capabilities: CapabilityFlags | None = None
    stream: bool = False


# -- Responses --


class RemovedNodesResponse(BaseModel):
    removed: list[str]


class ContextEntry(BaseModel):
    role: Literal["user", "model"]
    content: str
    attachments: list[Attachment] = Field(default_factory=list)


class ContextPreviewResponse(BaseModel):
    node_id: str
    model: str
    history: list[ContextEntry]
    usage: ContextUsage


class TurnDefaults(BaseModel):
    """Provider and model used when a turn request names neither."""

    provider: str
    model: str
