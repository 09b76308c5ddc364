"""
Integration test fixtures for the schema DDL engine.

These tests need a disposable PostgreSQL database. Set
SCHEMA_DDL_TEST_DATABASE_URL (postgresql+asyncpg://...) to enable them.
"""

import os
import uuid

import pytest
import pytest_asyncio
from sqlalchemy import text

from metahubs.schema_ddl.config import DatabaseConfig, EngineConfig, LockConfig
from metahubs.schema_ddl.main import DdlServices
from metahubs.schema_ddl.schema.naming import generate_schema_name, validate_schema_name

DATABASE_URL = os.environ.get("SCHEMA_DDL_TEST_DATABASE_URL")


def pytest_collection_modifyitems(config, items):
    if DATABASE_URL:
        return
    skip = pytest.mark.skip(reason="Integration tests disabled. Set SCHEMA_DDL_TEST_DATABASE_URL to enable.")
    for item in items:
        if "tests/integration" in item.nodeid:
            item.add_marker(skip)


@pytest.fixture
def config():
    return EngineConfig(
        database=DatabaseConfig(url=DATABASE_URL or "", pool_size=2, max_overflow=2),
        lock=LockConfig(timeout_ms=2_000, max_timeout_ms=10_000, poll_interval_ms=50),
    )


@pytest_asyncio.fixture
async def services(config):
    svc = DdlServices.create(config)
    yield svc
    await svc.close()


@pytest_asyncio.fixture
async def new_schema(services):
    """Factory for fresh app_<uuid> schema names; every schema is dropped afterwards."""
    created = []

    def factory():
        name = generate_schema_name(str(uuid.uuid4()))
        created.append(name)
        return name

    yield factory

    async with services.engine.begin() as conn:
        for name in created:
            await conn.execute(text(f"DROP SCHEMA IF EXISTS {validate_schema_name(name).quoted} CASCADE"))
