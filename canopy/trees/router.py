"""FastAPI routes for the conversation tree, its nodes, and turns."""

import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from canopy.generation.context import assemble_history
from canopy.generation.service import TurnInProgressError, TurnInput, TurnOutcome, TurnService
from canopy.generation.wire import MEDIA_TYPE, encode_event
from canopy.models import ActivePath, Attachment, CapabilityFlags, Node, StreamEvent, TreeSnapshot
from canopy.persistence.repository import TreeRepository
from canopy.providers.base import TextGenerationProvider
from canopy.providers.registry import ProviderNotFoundError, get_provider
from canopy.threads.manager import ThreadContextManager
from canopy.trees.schemas import (
    ContextEntry,
    ContextPreviewResponse,
    CreateBranchRequest,
    PatchNodeRequest,
    RemovedNodesResponse,
    SetActiveNodeRequest,
    TurnDefaults,
    TurnRequest,
)
from canopy.trees.store import (
    InvalidOperationError,
    NodeNotFoundError,
    TreeStore,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["tree"])


def get_tree_store() -> TreeStore:
    """Dependency placeholder, replaced at app startup."""
    raise RuntimeError("TreeStore not initialized")


def get_thread_manager() -> ThreadContextManager:
    """Dependency placeholder, replaced at app startup."""
    raise RuntimeError("ThreadContextManager not initialized")


def get_turn_service() -> TurnService:
    """Dependency placeholder, replaced at app startup."""
    raise RuntimeError("TurnService not initialized")


def get_repository() -> TreeRepository:
    """Dependency placeholder, replaced at app startup."""
    raise RuntimeError("TreeRepository not initialized")


def get_turn_defaults() -> TurnDefaults:
    """Dependency placeholder, replaced at app startup."""
    raise RuntimeError("Turn defaults not initialized")


# -- Tree --


@router.get("/tree")
async def get_tree(store: TreeStore = Depends(get_tree_store)) -> TreeSnapshot:
    return store.snapshot()


@router.put("/tree/active")
async def set_active_node(
    request: SetActiveNodeRequest,
    store: TreeStore = Depends(get_tree_store),
    repo: TreeRepository = Depends(get_repository),
) -> TreeSnapshot:
    try:
        store.set_active_node(request.node_id)
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail=f"Node not found: {request.node_id}")
    await repo.save(store)
    return store.snapshot()


@router.delete("/tree")
async def clear_tree(
    store: TreeStore = Depends(get_tree_store),
    threads: ThreadContextManager = Depends(get_thread_manager),
    repo: TreeRepository = Depends(get_repository),
) -> TreeSnapshot:
    store.clear()
    threads.dispose_all()
    await repo.save(store)
    return store.snapshot()


# -- Nodes --


@router.get("/nodes/{node_id}")
async def get_node(node_id: str, store: TreeStore = Depends(get_tree_store)) -> Node:
    try:
        return store.get_node(node_id)
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")


@router.patch("/nodes/{node_id}")
async def rename_node(
    node_id: str,
    request: PatchNodeRequest,
    store: TreeStore = Depends(get_tree_store),
    repo: TreeRepository = Depends(get_repository),
) -> Node:
    try:
        store.set_label(node_id, request.label)
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")
    await repo.save(store)
    return store.get_node(node_id)


@router.post("/nodes/{node_id}/branch", status_code=status.HTTP_201_CREATED)
async def create_branch(
    node_id: str,
    request: CreateBranchRequest,
    store: TreeStore = Depends(get_tree_store),
    threads: ThreadContextManager = Depends(get_thread_manager),
    repo: TreeRepository = Depends(get_repository),
) -> Node:
    try:
        if request.kind == "response":
            new_id = store.create_response_node(node_id, request.label)
        else:
            new_id = store.create_branch(node_id, request.label)
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")

    # Snapshot the source's documents now; later uploads to it stay put
    threads.branch_thread(node_id, new_id, store.path_messages(new_id))
    if request.activate:
        store.set_active_node(new_id)
    await repo.save(store)
    return store.get_node(new_id)


@router.post("/nodes/{node_id}/reset")
async def reset_node(
    node_id: str,
    store: TreeStore = Depends(get_tree_store),
    repo: TreeRepository = Depends(get_repository),
) -> RemovedNodesResponse:
    if not store.has_node(node_id):
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")
    removed = store.reset_node(node_id)
    await repo.save(store)
    return RemovedNodesResponse(removed=removed)


@router.delete("/nodes/{node_id}")
async def delete_node(
    node_id: str,
    store: TreeStore = Depends(get_tree_store),
    repo: TreeRepository = Depends(get_repository),
) -> RemovedNodesResponse:
    try:
        removed = store.delete_node_and_descendants(node_id)
    except InvalidOperationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not removed:
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")
    await repo.save(store)
    return RemovedNodesResponse(removed=removed)


@router.get("/nodes/{node_id}/path")
async def get_path(node_id: str, store: TreeStore = Depends(get_tree_store)) -> ActivePath:
    try:
        return store.active_path(node_id)
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")


@router.get("/nodes/{node_id}/documents")
async def get_documents(
    node_id: str,
    store: TreeStore = Depends(get_tree_store),
    threads: ThreadContextManager = Depends(get_thread_manager),
) -> list[Attachment]:
    if not store.has_node(node_id):
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")
    return threads.document_context(node_id)


@router.get("/nodes/{node_id}/context")
async def get_context(
    node_id: str,
    model: str | None = None,
    include_thinking: bool = False,
    store: TreeStore = Depends(get_tree_store),
    defaults: TurnDefaults = Depends(get_turn_defaults),
) -> ContextPreviewResponse:
    resolved_model = model or defaults.model
    try:
        payload, usage = assemble_history(
            store, node_id, model=resolved_model, include_thinking=include_thinking,
        )
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")
    return ContextPreviewResponse(
        node_id=node_id,
        model=resolved_model,
        history=[ContextEntry(**entry) for entry in payload],
        usage=usage,
    )


# -- Turns --


@router.post("/nodes/{node_id}/turns", response_model=None)
async def submit_turn(
    node_id: str,
    request: TurnRequest,
    store: TreeStore = Depends(get_tree_store),
    service: TurnService = Depends(get_turn_service),
    repo: TreeRepository = Depends(get_repository),
    defaults: TurnDefaults = Depends(get_turn_defaults),
) -> TurnOutcome | StreamingResponse:
    provider, model = _resolve_provider(request, defaults)
    turn = TurnInput(content=request.content, attachments=request.attachments)
    try:
        service.validate_turn(node_id, turn)
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")
    except InvalidOperationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TurnInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if request.stream:
        return StreamingResponse(
            _stream_ndjson(
                service, repo, store, node_id, turn, provider, model, request.capabilities,
            ),
            media_type=MEDIA_TYPE,
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    try:
        outcome = await service.submit_turn(
            node_id, turn, provider=provider, model=model, capabilities=request.capabilities,
        )
    except TurnInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    finally:
        await repo.save(store)
    return outcome


def _resolve_provider(
    request: TurnRequest, defaults: TurnDefaults
) -> tuple[TextGenerationProvider, str]:
    name = request.provider or defaults.provider
    try:
        provider = get_provider(name)
    except ProviderNotFoundError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if request.model:
        return provider, request.model
    if name != defaults.provider and provider.suggested_models:
        return provider, provider.suggested_models[0]
    return provider, defaults.model


async def _stream_ndjson(
    service: TurnService,
    repo: TreeRepository,
    store: TreeStore,
    node_id: str,
    turn: TurnInput,
    provider: TextGenerationProvider,
    model: str,
    capabilities: CapabilityFlags | None,
) -> AsyncIterator[str]:
    """Async generator that yields one JSON record per line."""
    try:
        async for event in service.stream_turn(
            node_id, turn, provider=provider, model=model, capabilities=capabilities,
        ):
            yield encode_event(event)
    except Exception as e:
        logger.exception("Streaming turn on %s failed", node_id)
        yield encode_event(StreamEvent(type="error", content=str(e)))
    finally:
        await repo.save(store)
