# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Key-value storage port used by every stateful component.

All entities are stored as JSON blobs under namespaced keys:

- ``user:{tenant_id}:{type}[:{id}]`` for tenant-scoped data (agents, labels)
- ``retry:{id}`` for pending retry items
- ``dead:{id}`` for dead-letter items
- ``ratelimit:{client_key}`` for rate limit counters

Besides plain ``get``/``put``/``delete``/``list`` the port offers an atomic
``compare_and_set`` so that read-modify-write cycles (rate limit counters,
health failure counts, retry leases) cannot clobber each other. Expired
entries are invisible to every operation and count as absent.

Two implementations are provided: :class:`MemoryStorage` for tests and
single-process deployments, and :class:`SqliteStorage`, an aiosqlite-backed
store suitable for a persistent deployment.

Example:
    Atomically incrementing a counter::

        storage = SqliteStorage("/data/moperator.db")
        await storage.init_db()

        def bump(raw):
            value = int(raw or b"0") + 1
            return str(value).encode()

        await storage.update("counter", bump, ttl=60)
"""

from __future__ import annotations

import abc
import asyncio
import time
from collections.abc import Callable

import aiosqlite

from .logger import get_logger

Mutator = Callable[[bytes | None], bytes | None]

DEFAULT_UPDATE_ATTEMPTS = 16


class StorageConflictError(RuntimeError):
    """Raised when a compare-and-set update keeps losing to concurrent writers."""

    def __init__(self, key: str, attempts: int):
        super().__init__(f"Could not update {key!r} after {attempts} attempts")
        self.key = key
        self.attempts = attempts


class Storage(abc.ABC):
    """Abstract key-value store with TTL and compare-and-set semantics."""

    @abc.abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Return the value stored under ``key`` or None when absent or expired."""

    @abc.abstractmethod
    async def put(self, key: str, value: bytes, ttl: int | None = None) -> None:
        """Store ``value`` under ``key``, expiring after ``ttl`` seconds if given."""

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``; a missing key is not an error."""

    @abc.abstractmethod
    async def list(self, prefix: str = "") -> list[str]:
        """Return the live keys starting with ``prefix`` in lexical order."""

    @abc.abstractmethod
    async def compare_and_set(
        self,
        key: str,
        expected: bytes | None,
        value: bytes,
        ttl: int | None = None,
    ) -> bool:
        """Write ``value`` only if the current value equals ``expected``.

        ``expected=None`` means the key must be absent (or expired).

        Returns:
            True if the write happened, False if another writer got there first.
        """

    async def update(
        self,
        key: str,
        mutate: Mutator,
        ttl: int | None = None,
        max_attempts: int = DEFAULT_UPDATE_ATTEMPTS,
    ) -> bytes | None:
        """Apply ``mutate`` to the current value atomically.

        ``mutate`` receives the current value (or None) and returns the new
        value, or None to leave the key untouched. The cycle is retried until
        the compare-and-set succeeds.

        Returns:
            The value written, or the current value when ``mutate`` returned None.

        Raises:
            StorageConflictError: If the update did not converge.
        """
        for _ in range(max_attempts):
            current = await self.get(key)
            new_value = mutate(current)
            if new_value is None:
                return current
            if await self.compare_and_set(key, current, new_value, ttl=ttl):
                return new_value
        raise StorageConflictError(key, max_attempts)


class MemoryStorage(Storage):
    """In-process storage serializing every operation with an asyncio lock."""

    def __init__(self) -> None:
        self._data: dict[str, tuple[bytes, float | None]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> bytes | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.time():
            del self._data[key]
            return None
        return value

    @staticmethod
    def _expiry(ttl: int | None) -> float | None:
        return time.time() + ttl if ttl else None

    async def get(self, key: str) -> bytes | None:
        async with self._lock:
            return self._live(key)

    async def put(self, key: str, value: bytes, ttl: int | None = None) -> None:
        async with self._lock:
            self._data[key] = (value, self._expiry(ttl))

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def list(self, prefix: str = "") -> list[str]:
        async with self._lock:
            keys = [key for key in list(self._data) if key.startswith(prefix)]
            return sorted(key for key in keys if self._live(key) is not None)

    async def compare_and_set(
        self,
        key: str,
        expected: bytes | None,
        value: bytes,
        ttl: int | None = None,
    ) -> bool:
        async with self._lock:
            if self._live(key) != expected:
                return False
            self._data[key] = (value, self._expiry(ttl))
            return True


class SqliteStorage(Storage):
    """Async SQLite storage with an ``expires_at`` column for TTL handling.

    Each operation opens and closes its own connection. Compare-and-set runs
    inside a ``BEGIN IMMEDIATE`` transaction so concurrent writers, even from
    other processes, are serialized by SQLite's write lock.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str = "/data/moperator.db"):
        self.db_path = db_path
        self.logger = get_logger("Storage")

    def _connect(self):
        return aiosqlite.connect(self.db_path, isolation_level=None)

    async def init_db(self) -> None:
        """Create the key-value table. Idempotent."""
        async with self._connect() as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value BLOB NOT NULL,
                    expires_at REAL
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_kv_store_expires ON kv_store(expires_at)"
            )

    @staticmethod
    def _expiry(ttl: int | None) -> float | None:
        return time.time() + ttl if ttl else None

    async def get(self, key: str) -> bytes | None:
        async with self._connect() as db:
            async with db.execute(
                "SELECT value FROM kv_store WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)",
                (key, time.time()),
            ) as cur:
                row = await cur.fetchone()
        return bytes(row[0]) if row else None

    async def put(self, key: str, value: bytes, ttl: int | None = None) -> None:
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO kv_store (key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at
                """,
                (key, value, self._expiry(ttl)),
            )

    async def delete(self, key: str) -> None:
        async with self._connect() as db:
            await db.execute("DELETE FROM kv_store WHERE key = ?", (key,))

    async def list(self, prefix: str = "") -> list[str]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT key FROM kv_store
                WHERE key LIKE ? ESCAPE '\\' AND (expires_at IS NULL OR expires_at > ?)
                ORDER BY key
                """,
                (escaped + "%", time.time()),
            ) as cur:
                rows = await cur.fetchall()
        return [row[0] for row in rows]

    async def compare_and_set(
        self,
        key: str,
        expected: bytes | None,
        value: bytes,
        ttl: int | None = None,
    ) -> bool:
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                async with db.execute(
                    "SELECT value FROM kv_store WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)",
                    (key, time.time()),
                ) as cur:
                    row = await cur.fetchone()
                current = bytes(row[0]) if row else None
                if current != expected:
                    await db.execute("ROLLBACK")
                    return False
                await db.execute(
                    """
                    INSERT INTO kv_store (key, value, expires_at) VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at
                    """,
                    (key, value, self._expiry(ttl)),
                )
                await db.execute("COMMIT")
                return True
            except Exception:
                await db.execute("ROLLBACK")
                raise

    async def purge_expired(self) -> int:
        """Delete expired rows and return how many were reclaimed."""
        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM kv_store WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (time.time(),),
            )
            removed = cursor.rowcount
        if removed:
            self.logger.debug("Purged %d expired storage entries", removed)
        return removed
