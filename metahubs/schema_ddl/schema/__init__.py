"""
Schema module for the DDL engine.

This module provides the pure (database-free) half of the engine:
- Entity definitions (EntityDefinition, FieldDefinition)
- Physical naming and identifier validation
- Versioned schema snapshots
- The diff engine classifying changes as additive or destructive

Invariants:
    - Nothing in this package touches a database
    - Physical names derive from ids only
    - Snapshots older than CURRENT_SCHEMA_SNAPSHOT_VERSION are upgraded on read

How to change safely:
    - Add new data types with a generator type mapping
    - Add new change types with a migrator handler and a priority
"""

from .diff import ChangeType, SchemaChange, SchemaDiff, calculate_schema_diff
from .naming import (
    MAX_IDENTIFIER_LENGTH,
    TrustedIdentifier,
    build_fk_constraint_name,
    build_index_name,
    generate_branch_schema_name,
    generate_column_name,
    generate_schema_name,
    generate_table_name,
    generate_tabular_table_name,
    is_valid_schema_name,
    validate_identifier,
    validate_schema_name,
)
from .snapshot import (
    CURRENT_SCHEMA_SNAPSHOT_VERSION,
    EntitySnapshot,
    FieldSnapshot,
    SchemaSnapshot,
    build_schema_snapshot,
)
from .types import (
    AttributeDataType,
    EntityDefinition,
    EntityKind,
    FieldDefinition,
    load_entities,
    validate_entities,
)

__all__ = [
    # Types
    "EntityKind",
    "AttributeDataType",
    "FieldDefinition",
    "EntityDefinition",
    "validate_entities",
    "load_entities",
    # Naming
    "MAX_IDENTIFIER_LENGTH",
    "TrustedIdentifier",
    "validate_identifier",
    "validate_schema_name",
    "is_valid_schema_name",
    "generate_schema_name",
    "generate_branch_schema_name",
    "generate_table_name",
    "generate_column_name",
    "generate_tabular_table_name",
    "build_fk_constraint_name",
    "build_index_name",
    # Snapshots
    "CURRENT_SCHEMA_SNAPSHOT_VERSION",
    "SchemaSnapshot",
    "EntitySnapshot",
    "FieldSnapshot",
    "build_schema_snapshot",
    # Diff
    "ChangeType",
    "SchemaChange",
    "SchemaDiff",
    "calculate_schema_diff",
]
