"""Workspaces: several named trees, one of them open in the live TreeStore.

Each workspace's tree is stored as its own blob; an index blob lists the
workspaces and remembers which one is open. Switching saves the open tree and
swaps the target's tree into the store, whose removal listeners then drop
every thread that belonged to the old tree.
"""

import logging
from datetime import UTC, datetime
from uuid import uuid4

from pydantic import ValidationError

from canopy.generation.service import TurnService
from canopy.persistence.blobs import BlobStore
from canopy.persistence.repository import TREE_BLOB_NAME, TreeRepository
from canopy.trees.store import TreeStore
from canopy.workspaces.schemas import (
    WorkspaceExport,
    WorkspaceIndex,
    WorkspaceMetadata,
    WorkspaceSummary,
)

logger = logging.getLogger(__name__)

INDEX_BLOB_NAME = "canopy-workspaces"
DEFAULT_WORKSPACE_ID = "default"
DEFAULT_WORKSPACE_NAME = "Main Workspace"
NEW_WORKSPACE_NAME = "New Workspace"
UNNAMED_WORKSPACE_NAME = "Unnamed Workspace"


def tree_blob_name(workspace_id: str) -> str:
    # The default workspace reads the blob written before workspaces existed
    if workspace_id == DEFAULT_WORKSPACE_ID:
        return TREE_BLOB_NAME
    return f"{TREE_BLOB_NAME}-{workspace_id}"


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _default_index() -> WorkspaceIndex:
    now = _now()
    return WorkspaceIndex(
        active_id=DEFAULT_WORKSPACE_ID,
        workspaces=[
            WorkspaceMetadata(
                id=DEFAULT_WORKSPACE_ID,
                name=DEFAULT_WORKSPACE_NAME,
                created_at=now,
                updated_at=now,
            )
        ],
    )


def _totals(store: TreeStore) -> tuple[int, int]:
    snapshot = store.snapshot()
    return len(snapshot.nodes), sum(len(n.chat_history) for n in snapshot.nodes)


class WorkspaceService:
    """Lists, creates, switches, deletes, exports and imports workspaces."""

    def __init__(
        self,
        blobs: BlobStore,
        store: TreeStore,
        turns: TurnService | None = None,
    ) -> None:
        self._blobs = blobs
        self._store = store
        self._turns = turns
        self._index = _default_index()

    async def open(self) -> None:
        """Load the index and put the open workspace's tree into the store."""
        self._index = await self._load_index()
        loaded = await self.repository.load()
        self._store.replace(loaded.snapshot())
        await self._save_index()
        logger.info(
            "Opened workspace %s (%d workspaces)",
            self.active_id, len(self._index.workspaces),
        )

    @property
    def active_id(self) -> str:
        return self._index.active_id

    @property
    def repository(self) -> TreeRepository:
        """Repository for the open workspace's tree."""
        return TreeRepository(self._blobs, tree_blob_name(self.active_id))

    def list_workspaces(self) -> list[WorkspaceSummary]:
        self._refresh_active_totals()
        return [self._summary(ws) for ws in self._index.workspaces]

    def get_workspace(self, workspace_id: str) -> WorkspaceSummary:
        if workspace_id == self.active_id:
            self._refresh_active_totals()
        return self._summary(self._require(workspace_id))

    async def create_workspace(self, name: str = "", icon: str | None = None) -> WorkspaceSummary:
        now = _now()
        workspace = WorkspaceMetadata(
            id=uuid4().hex,
            name=name.strip() or NEW_WORKSPACE_NAME,
            icon=icon,
            created_at=now,
            updated_at=now,
        )
        self._index.workspaces.append(workspace)
        await self._save_index()
        logger.info("Created workspace %s (%r)", workspace.id, workspace.name)
        return self._summary(workspace)

    async def update_workspace(
        self,
        workspace_id: str,
        *,
        name: str | None = None,
        icon: str | None = None,
    ) -> WorkspaceSummary:
        workspace = self._require(workspace_id)
        if name is not None:
            workspace.name = name.strip() or UNNAMED_WORKSPACE_NAME
        if icon is not None:
            workspace.icon = icon
        workspace.updated_at = _now()
        await self._save_index()
        return self._summary(workspace)

    async def switch_workspace(self, workspace_id: str) -> WorkspaceSummary:
        """Save the open tree, then open workspace_id's tree in its place.

        Raises:
            WorkspaceNotFoundError: If workspace_id is unknown.
            WorkspaceBusyError: If a turn is still running in the open tree.
        """
        target = self._require(workspace_id)
        if workspace_id == self.active_id:
            return self._summary(target)
        self._ensure_idle()
        await self.save()
        await self._open_tree(workspace_id)
        logger.info("Switched to workspace %s", workspace_id)
        return self._summary(target)

    async def delete_workspace(self, workspace_id: str) -> None:
        """Remove a workspace and its tree. Deleting the open one opens the default."""
        if workspace_id == DEFAULT_WORKSPACE_ID:
            raise InvalidWorkspaceOperationError("The default workspace cannot be deleted")
        self._require(workspace_id)
        if workspace_id == self.active_id:
            self._ensure_idle()
            await self._open_tree(DEFAULT_WORKSPACE_ID)
        await self._blobs.clear(tree_blob_name(workspace_id))
        self._index.workspaces = [ws for ws in self._index.workspaces if ws.id != workspace_id]
        await self._save_index()
        logger.info("Deleted workspace %s", workspace_id)

    async def export_workspace(self, workspace_id: str) -> WorkspaceExport:
        workspace = self._require(workspace_id)
        if workspace_id == self.active_id:
            self._refresh_active_totals()
            tree = self._store.snapshot()
        else:
            tree = (await TreeRepository(self._blobs, tree_blob_name(workspace_id)).load()).snapshot()
        return WorkspaceExport(metadata=workspace.model_copy(), tree=tree, exported_at=_now())

    async def import_workspace(self, export: WorkspaceExport) -> WorkspaceSummary:
        """Store an exported workspace as a new, closed workspace."""
        tree = TreeStore.from_snapshot(export.tree)
        total_nodes, total_messages = _totals(tree)
        now = _now()
        workspace = WorkspaceMetadata(
            id=uuid4().hex,
            name=f"{export.metadata.name} (Imported)",
            icon=export.metadata.icon,
            created_at=now,
            updated_at=now,
            total_nodes=total_nodes,
            total_messages=total_messages,
        )
        await TreeRepository(self._blobs, tree_blob_name(workspace.id)).save(tree)
        self._index.workspaces.append(workspace)
        await self._save_index()
        logger.info("Imported workspace %s from %r", workspace.id, export.metadata.name)
        return self._summary(workspace)

    async def save(self) -> None:
        """Persist the open tree and its workspace's totals."""
        await self.repository.save(self._store)
        self._refresh_active_totals()
        self._require(self.active_id).updated_at = _now()
        await self._save_index()

    async def _open_tree(self, workspace_id: str) -> None:
        loaded = await TreeRepository(self._blobs, tree_blob_name(workspace_id)).load()
        self._index.active_id = workspace_id
        self._store.replace(loaded.snapshot())
        await self._save_index()

    async def _load_index(self) -> WorkspaceIndex:
        raw = await self._blobs.get(INDEX_BLOB_NAME)
        if raw is None:
            logger.info("No workspace index found; creating %r", DEFAULT_WORKSPACE_NAME)
            return _default_index()
        try:
            index = WorkspaceIndex.model_validate_json(raw)
        except ValidationError as e:
            logger.error("Workspace index is unreadable, starting fresh: %s", e)
            return _default_index()

        if not any(ws.id == DEFAULT_WORKSPACE_ID for ws in index.workspaces):
            index.workspaces.insert(0, _default_index().workspaces[0])
        if not any(ws.id == index.active_id for ws in index.workspaces):
            logger.warning("Open workspace %s is missing; opening the default", index.active_id)
            index.active_id = DEFAULT_WORKSPACE_ID
        return index

    async def _save_index(self) -> None:
        await self._blobs.set(INDEX_BLOB_NAME, self._index.model_dump_json())

    def _refresh_active_totals(self) -> None:
        workspace = self._require(self.active_id)
        workspace.total_nodes, workspace.total_messages = _totals(self._store)

    def _ensure_idle(self) -> None:
        if self._turns is not None and self._turns.has_active_turns():
            raise WorkspaceBusyError()

    def _summary(self, workspace: WorkspaceMetadata) -> WorkspaceSummary:
        return WorkspaceSummary(
            **workspace.model_dump(), is_active=workspace.id == self.active_id
        )

    def _require(self, workspace_id: str) -> WorkspaceMetadata:
        for workspace in self._index.workspaces:
            if workspace.id == workspace_id:
                return workspace
        raise WorkspaceNotFoundError(workspace_id)


class WorkspaceNotFoundError(Exception):
    def __init__(self, workspace_id: str) -> None:
        self.workspace_id = workspace_id
        super().__init__(f"Workspace not found: {workspace_id}")


class InvalidWorkspaceOperationError(Exception):
    pass


class WorkspaceBusyError(Exception):
    def __init__(self) -> None:
        super().__init__("A turn is still running in the open workspace")
