"""Shared pytest fixtures for Canopy tests."""

import pytest
from httpx import ASGITransport, AsyncClient

from canopy.db.connection import Database
from canopy.generation.service import TurnService
from canopy.main import app
from canopy.persistence.blobs import MemoryBlobStore
from canopy.persistence.repository import TreeRepository
from canopy.providers.registry import clear_providers, register_provider
from canopy.threads.manager import ThreadContextManager
from canopy.trees.router import (
    get_repository,
    get_thread_manager,
    get_tree_store,
    get_turn_defaults,
    get_turn_service,
)
from canopy.trees.schemas import TurnDefaults
from canopy.trees.store import TreeStore
from canopy.workspaces.router import get_workspace_service
from canopy.workspaces.service import WorkspaceService
from tests.fixtures import FakeProvider, fake_session_factory


@pytest.fixture
async def db():
    """In-memory database for tests."""
    database = await Database.connect(":memory:")
    yield database
    await database.close()


@pytest.fixture
def store() -> TreeStore:
    return TreeStore()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def threads(store: TreeStore, provider: FakeProvider) -> ThreadContextManager:
    """Thread manager wired to the store's removal notifications."""
    manager = ThreadContextManager(fake_session_factory(provider))
    store.add_removal_listener(manager.dispose_many)
    return manager


@pytest.fixture
def blobs() -> MemoryBlobStore:
    return MemoryBlobStore()


@pytest.fixture
def repo(blobs: MemoryBlobStore) -> TreeRepository:
    return TreeRepository(blobs)


@pytest.fixture
def turns(store: TreeStore, threads: ThreadContextManager) -> TurnService:
    return TurnService(store, threads)


@pytest.fixture
async def workspaces(blobs, store, turns) -> WorkspaceService:
    """Workspace service over the in-memory blobs, opened on the default workspace."""
    service = WorkspaceService(blobs, store, turns)
    await service.open()
    return service


@pytest.fixture
async def client(store, threads, turns, provider, workspaces):
    """Async test client with an in-memory tree and a fake provider."""
    clear_providers()
    register_provider(provider)
    defaults = TurnDefaults(provider="fake", model="fake-model")

    app.dependency_overrides[get_tree_store] = lambda: store
    app.dependency_overrides[get_thread_manager] = lambda: threads
    app.dependency_overrides[get_turn_service] = lambda: turns
    app.dependency_overrides[get_repository] = lambda: workspaces.repository
    app.dependency_overrides[get_turn_defaults] = lambda: defaults
    app.dependency_overrides[get_workspace_service] = lambda: workspaces
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
    app.dependency_overrides.clear()
    clear_providers()
