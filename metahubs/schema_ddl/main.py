"""
Schema DDL engine - logging setup and component wiring.

The engine has no long-running process; callers (the CLI, an application
server) build one DdlServices per process and share it:

    services = DdlServices.create(EngineConfig.from_env())
    result = await services.migrator.apply_all_changes(...)
    await services.close()

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - All components share one AsyncEngine (one connection pool)
    - Exactly one AdvisoryLockManager per process
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import json_log_formatter
from sqlalchemy.ext.asyncio import AsyncEngine

from .config import EngineConfig
from .ddl.cloner import SchemaCloner
from .ddl.database import create_engine
from .ddl.generator import SchemaGenerator
from .ddl.locking import AdvisoryLockManager
from .ddl.migrations import MigrationManager
from .ddl.migrator import SchemaMigrator

logger = logging.getLogger(__name__)


def setup_logging(config: EngineConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Engine configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)


@dataclass
class DdlServices:
    """All engine components, wired to one AsyncEngine.

    Attributes:
        config: Engine configuration
        engine: Shared SQLAlchemy async engine
        migration_manager: Migration history
        generator: Schema/table generation
        lock_manager: Advisory locks
        migrator: Diff application
        cloner: Schema cloning
    """

    config: EngineConfig
    engine: AsyncEngine
    migration_manager: MigrationManager
    generator: SchemaGenerator
    lock_manager: AdvisoryLockManager
    migrator: SchemaMigrator
    cloner: SchemaCloner

    @classmethod
    def create(cls, config: EngineConfig | None = None, engine: AsyncEngine | None = None) -> DdlServices:
        """Build every component.

        Args:
            config: Engine configuration (loaded from env if not provided)
            engine: Existing engine to reuse instead of creating one
        """
        config = config or EngineConfig.from_env()
        engine = engine or create_engine(config.database)
        migration_manager = MigrationManager(engine)
        generator = SchemaGenerator(engine, migration_manager)
        lock_manager = AdvisoryLockManager(engine, config.lock)
        migrator = SchemaMigrator(engine, generator, migration_manager, lock_manager)
        logger.debug("Schema DDL services created", extra={"database_url": config.database.redacted_url()})
        return cls(
            config=config,
            engine=engine,
            migration_manager=migration_manager,
            generator=generator,
            lock_manager=lock_manager,
            migrator=migrator,
            cloner=SchemaCloner(engine),
        )

    async def close(self) -> None:
        """Release held locks and dispose of the connection pool."""
        await self.lock_manager.close()
        await self.engine.dispose()

    async def __aenter__(self) -> DdlServices:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
