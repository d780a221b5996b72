"""The one aiosqlite connection canopy's blob storage runs on."""

import logging

import aiosqlite

from canopy.db.schema import SCHEMA_SQL

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "canopy.db"

# journal_mode is ignored by sqlite for ":memory:" databases
_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA busy_timeout=5000",
    "PRAGMA synchronous=NORMAL",
)


class Database:
    """Shared connection. Every write commits before returning."""

    def __init__(self, connection: aiosqlite.Connection, path: str = DEFAULT_DB_PATH) -> None:
        self._conn = connection
        self.path = path

    @classmethod
    async def connect(cls, path: str = DEFAULT_DB_PATH) -> "Database":
        conn = await aiosqlite.connect(path)
        conn.row_factory = aiosqlite.Row
        for pragma in _PRAGMAS:
            await conn.execute(pragma)
        await conn.executescript(SCHEMA_SQL)
        await conn.commit()
        logger.info("Opened database %s", path)
        return cls(conn, path)

    async def execute(self, sql: str, params: tuple = ()) -> None:
        await self._conn.execute(sql, params)
        await self._conn.commit()

    async def fetchone(self, sql: str, params: tuple = ()) -> aiosqlite.Row | None:
        async with self._conn.execute(sql, params) as cursor:
            return await cursor.fetchone()

    async def fetchall(self, sql: str, params: tuple = ()) -> list[aiosqlite.Row]:
        async with self._conn.execute(sql, params) as cursor:
            return list(await cursor.fetchall())

    async def close(self) -> None:
        await self._conn.close()
        logger.info("Closed database %s", self.path)
