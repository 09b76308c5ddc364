"""
Advisory locking for schema migrations.

Migrations of one schema are serialized with a PostgreSQL session-level
advisory lock keyed by a stable 32-bit hash of the schema name. A session
lock belongs to the connection that took it, so each held lock keeps its own
dedicated connection until release.

Invariants:
    - A key is held at most once per manager (re-entry waits like contention)
    - release() unlocks on the same connection that acquired
    - Timeouts are bounded by LockConfig.max_timeout_ms

Example:
    >>> locks = AdvisoryLockManager(engine, LockConfig())
    >>> async with locks.hold(schema_name_to_lock_key("app_...")):
    ...     ...
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from ..config import LockConfig
from ..errors import LockTimeoutError

logger = logging.getLogger(__name__)


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value >= 0x80000000 else value


def schema_name_to_lock_key(name: str) -> int:
    """Stable non-negative lock key for a schema name (or UUID).

    Hyphens are ignored, so a UUID and its hex form share a key.
    """
    h = 0
    for ch in name.replace("-", ""):
        h = _to_int32((h << 5) - h + ord(ch))
    return abs(h)


class AdvisoryLockManager:
    """Acquires and releases session-level advisory locks.

    Attributes:
        engine: Engine that dedicated lock connections come from
        config: Timeouts and poll interval
    """

    def __init__(self, engine: AsyncEngine, config: LockConfig | None = None) -> None:
        self.engine = engine
        self.config = config or LockConfig()
        self._held: dict[int, AsyncConnection] = {}
        self._acquiring: set[int] = set()

    def held_keys(self) -> list[int]:
        return sorted(self._held)

    def _resolve_timeout(self, timeout_ms: int | None) -> int:
        timeout = self.config.timeout_ms if timeout_ms is None else timeout_ms
        if isinstance(timeout, bool) or not isinstance(timeout, int):
            raise ValueError(f"timeout_ms must be an integer, got {timeout!r}")
        if timeout <= 0 or timeout > self.config.max_timeout_ms:
            raise ValueError(
                f"timeout_ms must be in (0, {self.config.max_timeout_ms}], got {timeout}"
            )
        return timeout

    async def acquire(self, lock_key: int, timeout_ms: int | None = None) -> bool:
        """Poll for the lock until it is taken or the timeout expires.

        Returns:
            True if acquired; False on timeout or database error

        Raises:
            ValueError: If timeout_ms is not a positive int within the max
        """
        timeout = self._resolve_timeout(timeout_ms)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout / 1000
        poll_interval = self.config.poll_interval_ms / 1000

        while True:
            if lock_key not in self._held and lock_key not in self._acquiring:
                self._acquiring.add(lock_key)
                try:
                    outcome = await self._try_acquire(lock_key)
                finally:
                    self._acquiring.discard(lock_key)
                if outcome is not None:
                    return outcome
            else:
                logger.debug("Advisory lock busy in this process", extra={"lock_key": lock_key})

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(
                    "Advisory lock acquisition timed out",
                    extra={"lock_key": lock_key, "timeout_ms": timeout},
                )
                return False
            await asyncio.sleep(min(poll_interval, remaining))

    async def _try_acquire(self, lock_key: int) -> bool | None:
        """One attempt. True on success, None on contention, False on error."""
        conn: AsyncConnection | None = None
        try:
            conn = await self.engine.connect()
            await conn.execute(
                text(f"SET statement_timeout = {int(self.config.statement_timeout_ms)}")
            )
            result = await conn.execute(
                text("SELECT pg_try_advisory_lock(:key)"), {"key": lock_key}
            )
            if result.scalar():
                # Session lock survives the commit
                await conn.commit()
                self._held[lock_key] = conn
                logger.debug("Advisory lock acquired", extra={"lock_key": lock_key})
                return True

            logger.debug("Advisory lock held elsewhere", extra={"lock_key": lock_key})
            await conn.close()
            return None
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "Advisory lock acquisition failed",
                extra={"lock_key": lock_key, "error": str(e)},
            )
            if conn is not None:
                await self._discard(conn)
            return False

    async def _discard(self, conn: AsyncConnection) -> None:
        """Invalidate a connection so the server ends its session (and locks)."""
        try:
            await conn.invalidate()
        except SQLAlchemyError as e:
            logger.debug("Connection invalidate failed", extra={"error": str(e)})
        finally:
            await conn.close()

    async def release(self, lock_key: int) -> None:
        """Release a held lock. Unknown keys are ignored."""
        conn = self._held.pop(lock_key, None)
        if conn is None:
            return
        try:
            await conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": lock_key})
            await conn.execute(text("RESET statement_timeout"))
            await conn.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "Advisory lock release failed",
                extra={"lock_key": lock_key, "error": str(e)},
            )
            await self._discard(conn)
            return
        await conn.close()
        logger.debug("Advisory lock released", extra={"lock_key": lock_key})

    @asynccontextmanager
    async def hold(self, lock_key: int, timeout_ms: int | None = None) -> AsyncIterator[int]:
        """Hold a lock for the duration of the block.

        Raises:
            LockTimeoutError: If the lock is not acquired in time
        """
        if not await self.acquire(lock_key, timeout_ms):
            raise LockTimeoutError(lock_key, timeout_ms or self.config.timeout_ms)
        try:
            yield lock_key
        finally:
            await self.release(lock_key)

    async def close(self) -> None:
        """Release every held lock."""
        for lock_key in list(self._held):
            await self.release(lock_key)
