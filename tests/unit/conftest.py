"""Shared fixtures for unit tests."""

import pytest

from metahubs.schema_ddl.config import LockConfig
from metahubs.schema_ddl.ddl.generator import SchemaGenerator
from metahubs.schema_ddl.ddl.locking import AdvisoryLockManager
from metahubs.schema_ddl.ddl.migrations import MigrationManager
from metahubs.schema_ddl.ddl.migrator import SchemaMigrator

from .fakes import FakeEngine, FakeResult


@pytest.fixture
def engine():
    """Fake engine where every advisory lock attempt succeeds."""
    fake = FakeEngine()
    fake.respond("pg_try_advisory_lock", FakeResult(scalar=True))
    return fake


@pytest.fixture
def fast_locks():
    """Lock config with short timeouts for contention tests."""
    return LockConfig(timeout_ms=50, max_timeout_ms=1000, poll_interval_ms=10)


@pytest.fixture
def migration_manager(engine):
    return MigrationManager(engine)


@pytest.fixture
def generator(engine, migration_manager):
    return SchemaGenerator(engine, migration_manager)


@pytest.fixture
def lock_manager(engine, fast_locks):
    return AdvisoryLockManager(engine, fast_locks)


@pytest.fixture
def migrator(engine, generator, migration_manager, lock_manager):
    return SchemaMigrator(engine, generator, migration_manager, lock_manager)
