"""
In-memory stand-ins for SQLAlchemy's AsyncEngine/AsyncConnection.

They record every executed statement and answer from scripted responses
matched by SQL fragment. Only the surface the engine uses is implemented.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.exc import OperationalError


class FakeResult:
    """Scripted result: scalar(), mappings().all()/first(), fetchall(), rowcount."""

    def __init__(self, scalar: Any = None, rows: list[dict[str, Any]] | None = None, rowcount: int = 0):
        self._scalar = scalar
        self._rows = rows or []
        self.rowcount = rowcount

    def scalar(self) -> Any:
        return self._scalar

    def mappings(self) -> FakeResult:
        return self

    def all(self) -> list[dict[str, Any]]:
        return list(self._rows)

    def first(self) -> dict[str, Any] | None:
        return self._rows[0] if self._rows else None

    def fetchall(self) -> list[tuple[Any, ...]]:
        return [tuple(row.values()) for row in self._rows]


class FakeConnection:
    """Connection that forwards every statement to its engine."""

    def __init__(self, engine: FakeEngine):
        self.engine = engine
        self.closed = False
        self.invalidated = False
        self.commits = 0

    async def execute(self, statement: Any, params: Any = None) -> FakeResult:
        return self.engine._execute(self, str(statement), params)

    async def commit(self) -> None:
        self.commits += 1

    async def close(self) -> None:
        self.closed = True

    async def invalidate(self) -> None:
        self.invalidated = True

    def __await__(self):
        async def _start() -> FakeConnection:
            return self

        return _start().__await__()

    async def __aenter__(self) -> FakeConnection:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


class FakeEngine:
    """Records (sql, params) pairs and counts transactions."""

    def __init__(self) -> None:
        self.statements: list[tuple[str, Any]] = []
        self.connections: list[FakeConnection] = []
        self.transactions_committed = 0
        self.transactions_rolled_back = 0
        self.disposed = False
        self._responses: list[tuple[str, list[FakeResult]]] = []
        self._failures: list[tuple[str, str]] = []

    def respond(self, fragment: str, *results: FakeResult) -> None:
        """Answer statements containing `fragment` with `results` in order; the last repeats.

        Later registrations take precedence over earlier ones.
        """
        self._responses.append((fragment, list(results)))

    def fail(self, fragment: str, message: str = "simulated failure") -> None:
        """Raise OperationalError for statements containing `fragment`."""
        self._failures.append((fragment, message))

    def _execute(self, conn: FakeConnection, sql: str, params: Any) -> FakeResult:
        self.statements.append((sql, params))
        for fragment, message in self._failures:
            if fragment in sql:
                raise OperationalError(sql, params, Exception(message))
        for fragment, queue in reversed(self._responses):
            if fragment in sql:
                return queue.pop(0) if len(queue) > 1 else queue[0]
        return FakeResult()

    def sql(self) -> list[str]:
        return [sql for sql, _ in self.statements]

    def executed(self, fragment: str) -> list[str]:
        return [sql for sql, _ in self.statements if fragment in sql]

    def connect(self) -> FakeConnection:
        conn = FakeConnection(self)
        self.connections.append(conn)
        return conn

    @asynccontextmanager
    async def begin(self):
        conn = self.connect()
        try:
            yield conn
        except BaseException:
            self.transactions_rolled_back += 1
            raise
        else:
            self.transactions_committed += 1
        finally:
            conn.closed = True

    async def dispose(self) -> None:
        self.disposed = True
