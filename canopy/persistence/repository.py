"""Loads and saves the whole tree as a single JSON blob."""

import logging

from pydantic import ValidationError

from canopy.models import TreeSnapshot
from canopy.persistence.blobs import BlobStore
from canopy.trees.store import TreeStore

logger = logging.getLogger(__name__)

TREE_BLOB_NAME = "canopy-tree"


class TreeRepository:
    def __init__(self, blobs: BlobStore, name: str = TREE_BLOB_NAME) -> None:
        self._blobs = blobs
        self._name = name

    async def load(self) -> TreeStore:
        """Return the persisted tree, or a fresh root-only tree.

        A blob that can't be decoded is logged and ignored rather than
        blocking startup.
        """
        raw = await self._blobs.get(self._name)
        if raw is None:
            logger.info("No saved tree found; starting fresh")
            return TreeStore()
        try:
            snapshot = TreeSnapshot.model_validate_json(raw)
        except ValidationError as e:
            logger.error("Saved tree is unreadable, starting fresh: %s", e)
            return TreeStore()
        store = TreeStore.from_snapshot(snapshot)
        logger.info("Loaded tree with %d nodes", len(store.node_ids()))
        return store

    async def save(self, store: TreeStore) -> None:
        await self._blobs.set(self._name, store.snapshot().model_dump_json())

    async def clear(self) -> None:
        await self._blobs.clear(self._name)
