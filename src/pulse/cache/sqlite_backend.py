"""
SQLite-backed cache backend using aiosqlite.

One table per namespace:

    key TEXT PRIMARY KEY, payload BLOB, expires_at INTEGER

The payload is the orjson-encoded CacheEntry dict. expires_at is stored
alongside it so stats can count expired rows without decoding payloads.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from pathlib import Path

import aiosqlite
import orjson

from pulse.cache.base import KeyValueBackend
from pulse.exceptions import CacheError
from pulse.logging import get_logger
from pulse.types import CacheEntry

logger = get_logger(__name__)

_NAMESPACE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SQLiteBackend(KeyValueBackend):
    """Persistent backend storing each namespace in its own table."""

    name = "sqlite"

    def __init__(self, db_path: str | Path) -> None:
        """Initialize backend.

        Args:
            db_path: Path of the SQLite database file.
        """
        self.db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None
        self._namespaces: frozenset[str] = frozenset()

    async def open(self, namespaces: Sequence[str]) -> None:
        for ns in namespaces:
            if not _NAMESPACE_RE.match(ns):
                raise CacheError(f"Invalid namespace name {ns!r}", ns)

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(self.db_path)
            for ns in namespaces:
                await self._db.execute(f"""
                    CREATE TABLE IF NOT EXISTS "{ns}" (
                        key TEXT PRIMARY KEY,
                        payload BLOB NOT NULL,
                        expires_at INTEGER NOT NULL
                    )
                """)
            await self._db.commit()
        except (OSError, aiosqlite.Error) as e:
            raise CacheError(
                "Failed to open cache database",
                "init",
                context={"db_path": str(self.db_path), "error": str(e)},
            ) from e

        self._namespaces = frozenset(namespaces)
        logger.info(
            "SQLite cache opened",
            db_path=str(self.db_path),
            namespaces=",".join(namespaces),
        )

    def _conn(self, namespace: str, key: str) -> aiosqlite.Connection:
        if self._db is None:
            raise CacheError("Backend not opened", key)
        if namespace not in self._namespaces:
            raise CacheError(
                f"Unknown namespace {namespace!r}",
                key,
                context={"namespace": namespace},
            )
        return self._db

    async def get(self, namespace: str, key: str) -> CacheEntry | None:
        db = self._conn(namespace, key)
        try:
            async with db.execute(
                f'SELECT payload FROM "{namespace}" WHERE key = ?', (key,)
            ) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise CacheError("Failed to get from cache", key, {"error": str(e)}) from e

        if row is None:
            return None
        return _decode(row[0], key)

    async def set(self, namespace: str, entry: CacheEntry) -> None:
        db = self._conn(namespace, entry.key)
        try:
            payload = orjson.dumps(entry.to_dict())
        except TypeError as e:
            raise CacheError(
                "Cache payload is not serializable", entry.key, {"error": str(e)}
            ) from e

        try:
            await db.execute(
                f'INSERT OR REPLACE INTO "{namespace}" (key, payload, expires_at) '
                "VALUES (?, ?, ?)",
                (entry.key, payload, entry.expires_at),
            )
            await db.commit()
        except aiosqlite.Error as e:
            raise CacheError("Failed to set cache", entry.key, {"error": str(e)}) from e

    async def delete(self, namespace: str, key: str) -> None:
        db = self._conn(namespace, key)
        try:
            await db.execute(f'DELETE FROM "{namespace}" WHERE key = ?', (key,))
            await db.commit()
        except aiosqlite.Error as e:
            raise CacheError(
                "Failed to delete from cache", key, {"error": str(e)}
            ) from e

    async def keys(self, namespace: str) -> list[str]:
        db = self._conn(namespace, namespace)
        try:
            async with db.execute(f'SELECT key FROM "{namespace}"') as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise CacheError("Failed to get keys", namespace, {"error": str(e)}) from e
        return [row[0] for row in rows]

    async def values(self, namespace: str) -> list[CacheEntry]:
        db = self._conn(namespace, namespace)
        try:
            async with db.execute(f'SELECT key, payload FROM "{namespace}"') as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise CacheError(
                "Failed to read entries", namespace, {"error": str(e)}
            ) from e
        return [_decode(payload, key) for key, payload in rows]

    async def clear(self, namespace: str) -> None:
        db = self._conn(namespace, namespace)
        try:
            await db.execute(f'DELETE FROM "{namespace}"')
            await db.commit()
        except aiosqlite.Error as e:
            raise CacheError("Failed to clear cache", namespace, {"error": str(e)}) from e

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None


def _decode(payload: bytes, key: str) -> CacheEntry:
    try:
        return CacheEntry.from_dict(orjson.loads(payload))
    except (orjson.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise CacheError("Corrupt cache entry", key, {"error": str(e)}) from e
