"""Canopy FastAPI application entry point."""

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from anthropic import AsyncAnthropic
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from canopy.db.connection import Database
from canopy.generation.service import TurnService
from canopy.generation.titles import TitleGenerator
from canopy.persistence.blobs import SQLiteBlobStore
from canopy.providers.anthropic import AnthropicProvider
from canopy.providers.openai import OpenAIProvider
from canopy.providers.registry import (
    clear_providers,
    get_all_providers,
    get_provider,
    list_providers,
    register_provider,
)
from canopy.threads import RegistrySessionFactory, ThreadContextManager
from canopy.trees.router import (
    get_repository,
    get_thread_manager,
    get_tree_store,
    get_turn_defaults,
    get_turn_service,
)
from canopy.trees.router import router as tree_router
from canopy.trees.schemas import TurnDefaults
from canopy.trees.store import TreeStore
from canopy.workspaces.router import get_workspace_service
from canopy.workspaces.router import router as workspace_router
from canopy.workspaces.service import WorkspaceService

logger = logging.getLogger(__name__)

VERSION = "0.1.0"
DEFAULT_MODELS = {
    "anthropic": "claude-sonnet-4-5-20250929",
    "openai": "gpt-4o",
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage database lifecycle and service wiring."""
    # Load .env from the project root (secrets stay out of shell profile)
    load_dotenv(Path(__file__).resolve().parent.parent / ".env")

    db = await Database.connect(os.environ.get("CANOPY_DB_PATH", "canopy.db"))
    store = TreeStore()

    # Auto-register providers whose keys are set
    if os.environ.get("ANTHROPIC_API_KEY"):
        register_provider(AnthropicProvider(AsyncAnthropic()))

    if os.environ.get("OPENAI_API_KEY"):
        register_provider(OpenAIProvider(api_key=os.environ["OPENAI_API_KEY"]))

    available = list_providers()
    default_provider = os.environ.get("CANOPY_DEFAULT_PROVIDER") or (
        available[0] if available else "anthropic"
    )
    default_model = os.environ.get("CANOPY_DEFAULT_MODEL") or DEFAULT_MODELS.get(
        default_provider, DEFAULT_MODELS["anthropic"]
    )
    if not available:
        logger.warning("No provider API keys configured; turns will be rejected")

    threads = ThreadContextManager(RegistrySessionFactory(default_provider, default_model))
    # Threads die with their nodes
    store.add_removal_listener(threads.dispose_many)

    # Without the default provider, titles come from the local fallback
    title_provider = get_provider(default_provider) if default_provider in available else None
    titles = TitleGenerator(title_provider, default_model)
    turns = TurnService(store, threads, titles)

    workspaces = WorkspaceService(SQLiteBlobStore(db), store, turns)
    await workspaces.open()

    defaults = TurnDefaults(provider=default_provider, model=default_model)
    app.dependency_overrides[get_tree_store] = lambda: store
    app.dependency_overrides[get_thread_manager] = lambda: threads
    app.dependency_overrides[get_turn_service] = lambda: turns
    app.dependency_overrides[get_repository] = lambda: workspaces.repository
    app.dependency_overrides[get_turn_defaults] = lambda: defaults
    app.dependency_overrides[get_workspace_service] = lambda: workspaces

    app.state.db = db
    logger.info(
        "Canopy ready: workspace %s, %d nodes, providers=%s, default=%s/%s",
        workspaces.active_id, len(store.node_ids()), available, default_provider, default_model,
    )
    yield

    await titles.drain()
    await workspaces.save()
    threads.dispose_all()
    clear_providers()
    await db.close()


def _cors_origins() -> list[str]:
    raw = os.environ.get("CANOPY_CORS_ORIGINS", "http://localhost:3000")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


app = FastAPI(
    title="Canopy",
    description="Branching conversation trees over generative-text services",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(tree_router)
app.include_router(workspace_router)


@app.get("/api/health")
async def health() -> dict:
    return {"status": "ok", "version": VERSION}


@app.get("/api/providers")
async def providers() -> list[dict]:
    return [
        {"name": p.name, "available": True, "models": p.suggested_models}
        for p in get_all_providers()
    ]
