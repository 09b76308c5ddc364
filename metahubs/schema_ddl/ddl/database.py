"""
Database access helpers.

Wraps SQLAlchemy's asyncio engine (asyncpg driver) and the identifier
quoting used to assemble DDL text.

DDL cannot take bound parameters for identifiers, so every identifier that
reaches SQL text goes through quote_ident()/qualified(), which only accept a
TrustedIdentifier. Values always travel as bound parameters.

Invariants:
    - quote_ident() refuses plain strings
    - A component given a connection never opens its own transaction
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from ..config import DatabaseConfig
from ..schema.naming import TrustedIdentifier


def create_engine(config: DatabaseConfig) -> AsyncEngine:
    """Create the pooled async engine for a database configuration."""
    return create_async_engine(
        config.url,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_timeout=config.pool_timeout,
        pool_pre_ping=config.pool_pre_ping,
        echo=config.echo,
    )


def quote_ident(identifier: TrustedIdentifier) -> str:
    """Double-quote a validated identifier.

    Raises:
        TypeError: If the identifier did not pass validation
    """
    if not isinstance(identifier, TrustedIdentifier):
        raise TypeError(
            f"quote_ident() requires a TrustedIdentifier, got {type(identifier).__name__}"
        )
    return identifier.quoted


def qualified(schema: TrustedIdentifier, name: TrustedIdentifier) -> str:
    """Schema-qualified, quoted name: "schema"."name"."""
    return f"{quote_ident(schema)}.{quote_ident(name)}"


@asynccontextmanager
async def transaction(
    engine: AsyncEngine,
    conn: AsyncConnection | None = None,
) -> AsyncIterator[AsyncConnection]:
    """Yield the caller's connection, or a new one inside engine.begin().

    A new transaction commits on normal exit and rolls back on error.
    """
    if conn is not None:
        yield conn
        return
    async with engine.begin() as new_conn:
        yield new_conn
