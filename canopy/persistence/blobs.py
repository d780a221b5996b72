"""Opaque blob storage behind get/set/clear."""

from abc import ABC, abstractmethod
from datetime import UTC, datetime

from canopy.db.connection import Database


class BlobStore(ABC):
    """Stores named text blobs. Encoding is the caller's concern."""

    @abstractmethod
    async def get(self, name: str) -> str | None:
        ...

    @abstractmethod
    async def set(self, name: str, data: str) -> None:
        ...

    @abstractmethod
    async def clear(self, name: str) -> None:
        ...


class MemoryBlobStore(BlobStore):
    def __init__(self) -> None:
        self._blobs: dict[str, str] = {}

    async def get(self, name: str) -> str | None:
        return self._blobs.get(name)

    async def set(self, name: str, data: str) -> None:
        self._blobs[name] = data

    async def clear(self, name: str) -> None:
        self._blobs.pop(name, None)


class SQLiteBlobStore(BlobStore):
    """Blobs as rows in the `blobs` table, one row per name."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def get(self, name: str) -> str | None:
        row = await self._db.fetchone("SELECT data FROM blobs WHERE name = ?", (name,))
        return row["data"] if row is not None else None

    async def set(self, name: str, data: str) -> None:
        await self._db.execute(
            """
            INSERT INTO blobs (name, data, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
            """,
            (name, data, datetime.now(UTC).isoformat()),
        )

    async def clear(self, name: str) -> None:
        await self._db.execute("DELETE FROM blobs WHERE name = ?", (name,))
