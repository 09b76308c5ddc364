"""
Database half of the DDL engine.

This module provides the components that talk to PostgreSQL:
- SchemaGenerator: schemas, tables, foreign keys, system metadata
- SchemaMigrator: applies diffs behind an advisory lock
- MigrationManager: migration history and rollback analysis
- AdvisoryLockManager: per-schema migration locks
- SchemaCloner: copies a schema with data and foreign keys

Invariants:
    - Every component takes the shared AsyncEngine in its constructor
    - Each generation/migration/clone is one transaction
"""

from .cloner import CloneOptions, CloneResult, SchemaCloner, rewrite_fk_definition
from .database import create_engine, qualified, quote_ident
from .generator import GenerateSchemaOptions, SchemaGenerationResult, SchemaGenerator
from .locking import AdvisoryLockManager, schema_name_to_lock_key
from .migrations import (
    MigrationManager,
    MigrationMeta,
    MigrationRecord,
    RollbackAnalysis,
    generate_migration_name,
)
from .migrator import ApplyChangesOptions, MigrationResult, SchemaMigrator, order_changes_for_apply

__all__ = [
    # Database
    "create_engine",
    "quote_ident",
    "qualified",
    # Generator
    "SchemaGenerator",
    "GenerateSchemaOptions",
    "SchemaGenerationResult",
    # Migrator
    "SchemaMigrator",
    "ApplyChangesOptions",
    "MigrationResult",
    "order_changes_for_apply",
    # Migrations
    "MigrationManager",
    "MigrationMeta",
    "MigrationRecord",
    "RollbackAnalysis",
    "generate_migration_name",
    # Locking
    "AdvisoryLockManager",
    "schema_name_to_lock_key",
    # Cloning
    "SchemaCloner",
    "CloneOptions",
    "CloneResult",
    "rewrite_fk_definition",
]
