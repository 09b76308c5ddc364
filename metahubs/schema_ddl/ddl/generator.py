"""
Schema generator.

Creates PostgreSQL schemas and tables from entity definitions and keeps the
self-describing system catalog (_app_objects/_app_attributes) in sync.

Generation order inside one transaction:
    1. CREATE SCHEMA
    2. System tables (_app_objects ... _app_migrations)
    3. Entity tables and their tabular-part child tables
    4. Foreign keys for every targeted REF field (after all tables exist,
       since a REF may point at any table, or at _app_values)
    5. Sync system metadata
    6. Optionally record the initial migration

Invariants:
    - Enumeration entities get catalog rows but never a table
    - Every user table carries the full bookkeeping column set
    - Identifiers reach SQL only through quote_ident()/qualified()

How to change safely:
    - New data types need a map_data_type entry; the mapping is exhaustive
    - Keep FK creation after table creation
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from ..errors import EntityDefinitionError, MigrationRecordError
from ..schema.diff import SchemaDiff
from ..schema.naming import (
    TrustedIdentifier,
    build_fk_constraint_name,
    generate_column_name,
    generate_table_name,
    generate_tabular_table_name,
    validate_identifier,
    validate_schema_name,
)
from ..schema.snapshot import SchemaSnapshot, build_schema_snapshot
from ..schema.types import AttributeDataType, EntityDefinition, EntityKind, FieldDefinition, validate_entities
from .database import qualified, quote_ident, transaction
from .migrations import MigrationManager, generate_migration_name
from .system_tables import (
    ATTRIBUTES_TABLE,
    BOOKKEEPING_COLUMNS,
    BOOKKEEPING_INDEXES,
    ID_COLUMN,
    OBJECTS_TABLE,
    SYSTEM_TABLES,
    TABULAR_PARENT_COLUMN,
    TABULAR_SORT_COLUMN,
    VALUES_TABLE,
    IndexDef,
)

logger = logging.getLogger(__name__)

_PG_TYPES: dict[AttributeDataType, str] = {
    AttributeDataType.STRING: "TEXT",
    AttributeDataType.NUMBER: "NUMERIC",
    AttributeDataType.BOOLEAN: "BOOLEAN",
    AttributeDataType.DATE: "DATE",
    AttributeDataType.DATETIME: "TIMESTAMPTZ",
    AttributeDataType.REF: "UUID",
    AttributeDataType.JSON: "JSONB",
}

_TABULAR_PARENT_INDEX = IndexDef("parent", (TABULAR_PARENT_COLUMN,))


@dataclass
class GenerateSchemaOptions:
    """Options for generate_full_schema.

    Attributes:
        record_migration: Record an initial migration in _app_migrations
        migration_description: Name seed for the migration (default initial_schema)
        migration_meta: Extra meta keys (publicationSnapshotHash, publicationId,
            publicationVersionId)
        publication_snapshot: Opaque payload stored beside the migration
        user_id: Audit user for bookkeeping columns
    """

    record_migration: bool = False
    migration_description: str | None = None
    migration_meta: dict[str, Any] | None = None
    publication_snapshot: dict[str, Any] | None = None
    user_id: str | None = None


@dataclass
class SchemaGenerationResult:
    """Outcome of generate_full_schema."""

    success: bool
    schema_name: str
    tables_created: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def _entity_map(entities: Iterable[EntityDefinition] | Mapping[str, EntityDefinition]) -> dict[str, EntityDefinition]:
    if isinstance(entities, Mapping):
        return dict(entities)
    return {entity.id: entity for entity in entities}


def foreign_key_fields(entity: EntityDefinition) -> list[tuple[str, FieldDefinition]]:
    """(table name, field) for every targeted REF field, tabular children included."""
    if entity.is_enumeration:
        return []
    table_name = generate_table_name(entity.id, entity.kind)
    pairs = []
    for f in entity.top_level_fields():
        if f.is_table:
            child_table = generate_tabular_table_name(table_name, f.id)
            pairs.extend(
                (child_table, child)
                for child in entity.child_fields(f.id)
                if child.data_type is AttributeDataType.REF and child.target_entity_id
            )
        elif f.data_type is AttributeDataType.REF and f.target_entity_id:
            pairs.append((table_name, f))
    return pairs


def build_user_column(f: FieldDefinition) -> str:
    """Column clause for a user field: NOT NULL when required, DEFAULT false for BOOLEAN."""
    column = validate_identifier(generate_column_name(f.id))
    parts = [quote_ident(column), SchemaGenerator.map_data_type(f.data_type)]
    if f.is_required:
        parts.append("NOT NULL")
    if f.data_type is AttributeDataType.BOOLEAN:
        parts.append("DEFAULT false")
    return " ".join(parts)


class SchemaGenerator:
    """Creates schemas, tables and foreign keys, and syncs system metadata.

    Example:
        >>> generator = SchemaGenerator(engine, migration_manager)
        >>> result = await generator.generate_full_schema("app_...", entities)
        >>> result.tables_created
        ['Order', 'Customer']
    """

    def __init__(
        self,
        engine: AsyncEngine,
        migration_manager: MigrationManager | None = None,
    ) -> None:
        self.engine = engine
        self.migration_manager = migration_manager

    @staticmethod
    def map_data_type(data_type: AttributeDataType) -> str:
        """PostgreSQL type for a field data type.

        Raises:
            EntityDefinitionError: For TABLE, which is stored as a child table
        """
        try:
            return _PG_TYPES[data_type]
        except KeyError:
            raise EntityDefinitionError(
                f"Data type {data_type.value} has no column representation"
            ) from None

    # -- schemas ---------------------------------------------------------

    async def create_schema(self, schema_name: str, conn: AsyncConnection | None = None) -> None:
        schema = validate_schema_name(schema_name)
        async with transaction(self.engine, conn) as c:
            await c.execute(text(f"CREATE SCHEMA IF NOT EXISTS {quote_ident(schema)}"))
        logger.info("Schema created", extra={"schema": schema.value})

    async def drop_schema(self, schema_name: str, conn: AsyncConnection | None = None) -> None:
        schema = validate_schema_name(schema_name)
        async with transaction(self.engine, conn) as c:
            await c.execute(text(f"DROP SCHEMA IF EXISTS {quote_ident(schema)} CASCADE"))
        logger.info("Schema dropped", extra={"schema": schema.value})

    async def schema_exists(self, schema_name: str, conn: AsyncConnection | None = None) -> bool:
        schema = validate_schema_name(schema_name)
        async with transaction(self.engine, conn) as c:
            result = await c.execute(
                text(
                    "SELECT EXISTS (SELECT 1 FROM information_schema.schemata "
                    "WHERE schema_name = :schema)"
                ),
                {"schema": schema.value},
            )
            return result.scalar() is True

    # -- tables ----------------------------------------------------------

    async def _create_indexes(
        self,
        conn: AsyncConnection,
        schema: TrustedIdentifier,
        table: TrustedIdentifier,
        indexes: Iterable[IndexDef],
    ) -> None:
        for index in indexes:
            await conn.execute(text(index.render(schema, table)))

    async def create_entity_table(
        self,
        schema_name: str,
        entity: EntityDefinition,
        conn: AsyncConnection | None = None,
    ) -> None:
        """Create an entity table and the child table of each TABLE field."""
        if entity.is_enumeration:
            return
        schema = validate_schema_name(schema_name)
        table = validate_identifier(generate_table_name(entity.id, entity.kind))

        columns = [ID_COLUMN.render(schema)]
        columns.extend(build_user_column(f) for f in entity.top_level_fields() if not f.is_table)
        columns.extend(c.render(schema) for c in BOOKKEEPING_COLUMNS)

        async with transaction(self.engine, conn) as c:
            await c.execute(
                text(f"CREATE TABLE {qualified(schema, table)} (\n    " + ",\n    ".join(columns) + "\n)")
            )
            await self._create_indexes(c, schema, table, BOOKKEEPING_INDEXES)
            logger.info(
                "Entity table created",
                extra={"schema": schema.value, "table": table.value, "entity": entity.codename},
            )

            for f in entity.top_level_fields():
                if f.is_table:
                    await self.create_tabular_table(
                        schema_name, table.value, f, entity.child_fields(f.id), conn=c
                    )

    async def create_tabular_table(
        self,
        schema_name: str,
        parent_table_name: str,
        table_field: FieldDefinition,
        child_fields: Iterable[FieldDefinition],
        conn: AsyncConnection | None = None,
    ) -> str:
        """Create the child table of a TABLE field. Returns its name.

        Raises:
            EntityDefinitionError: If a child is itself TABLE-typed
        """
        children = list(child_fields)
        for child in children:
            if child.is_table:
                raise EntityDefinitionError(
                    f"TABLE field '{child.codename}' cannot be nested inside TABLE field "
                    f"'{table_field.codename}'",
                    field_id=child.id,
                )

        schema = validate_schema_name(schema_name)
        parent = validate_identifier(parent_table_name)
        table = validate_identifier(generate_tabular_table_name(parent.value, table_field.id))

        columns = [
            ID_COLUMN.render(schema),
            f"{quote_ident(validate_identifier(TABULAR_PARENT_COLUMN))} UUID NOT NULL "
            f"REFERENCES {qualified(schema, parent)}(id) ON DELETE CASCADE",
            f"{quote_ident(validate_identifier(TABULAR_SORT_COLUMN))} INTEGER NOT NULL DEFAULT 0",
        ]
        columns.extend(build_user_column(child) for child in children)
        columns.extend(c.render(schema) for c in BOOKKEEPING_COLUMNS)

        async with transaction(self.engine, conn) as c:
            await c.execute(
                text(f"CREATE TABLE {qualified(schema, table)} (\n    " + ",\n    ".join(columns) + "\n)")
            )
            await self._create_indexes(c, schema, table, (_TABULAR_PARENT_INDEX, *BOOKKEEPING_INDEXES))
        logger.info(
            "Tabular table created",
            extra={"schema": schema.value, "table": table.value, "parent_table": parent.value},
        )
        return table.value

    async def add_foreign_key(
        self,
        schema_name: str,
        table_name: str,
        f: FieldDefinition,
        entities: Iterable[EntityDefinition] | Mapping[str, EntityDefinition],
        conn: AsyncConnection | None = None,
    ) -> bool:
        """Add an ON DELETE SET NULL foreign key for a REF field.

        The target kind is the field's target_entity_kind, falling back to the
        target entity's kind. Enumeration targets reference the shared values
        table whether or not the enumeration is in `entities`. Any other
        target that is not in `entities` is logged and skipped.

        Returns:
            True if a constraint was added
        """
        if not f.target_entity_id:
            return False

        target = _entity_map(entities).get(f.target_entity_id)
        target_kind = f.target_entity_kind or (target.kind if target else None)

        if target_kind is EntityKind.ENUMERATION:
            target_table_name = VALUES_TABLE
        elif target is None:
            logger.warning(
                "FK target entity not found, skipping",
                extra={"field_id": f.id, "target_entity_id": f.target_entity_id, "table": table_name},
            )
            return False
        else:
            target_table_name = generate_table_name(target.id, target.kind)

        schema = validate_schema_name(schema_name)
        table = validate_identifier(table_name)
        column = validate_identifier(generate_column_name(f.id))
        constraint = validate_identifier(build_fk_constraint_name(table.value, column.value))
        target_table = validate_identifier(target_table_name)

        async with transaction(self.engine, conn) as c:
            await c.execute(
                text(
                    f"ALTER TABLE {qualified(schema, table)} "
                    f"ADD CONSTRAINT {quote_ident(constraint)} "
                    f"FOREIGN KEY ({quote_ident(column)}) "
                    f"REFERENCES {qualified(schema, target_table)}(id) ON DELETE SET NULL"
                )
            )
        logger.info(
            "Foreign key added",
            extra={"table": table.value, "column": column.value, "target_table": target_table.value},
        )
        return True

    async def add_entity_foreign_keys(
        self,
        schema_name: str,
        entity: EntityDefinition,
        entities: Iterable[EntityDefinition] | Mapping[str, EntityDefinition],
        conn: AsyncConnection | None = None,
    ) -> int:
        """Add FKs for every targeted REF field of an entity, children included."""
        added = 0
        for table_name, f in foreign_key_fields(entity):
            added += await self.add_foreign_key(schema_name, table_name, f, entities, conn)
        return added

    # -- system tables ---------------------------------------------------

    async def ensure_system_tables(self, schema_name: str, conn: AsyncConnection | None = None) -> None:
        schema = validate_schema_name(schema_name)
        async with transaction(self.engine, conn) as c:
            for table_def in SYSTEM_TABLES:
                for statement in table_def.render(schema):
                    await c.execute(text(statement))
        logger.debug("System tables ensured", extra={"schema": schema.value})

    async def system_tables_exist(self, schema_name: str, conn: AsyncConnection | None = None) -> bool:
        schema = validate_schema_name(schema_name)
        async with transaction(self.engine, conn) as c:
            result = await c.execute(
                text(
                    "SELECT count(*) FROM information_schema.tables "
                    "WHERE table_schema = :schema AND table_name IN (:objects, :attributes)"
                ),
                {"schema": schema.value, "objects": OBJECTS_TABLE, "attributes": ATTRIBUTES_TABLE},
            )
            return result.scalar() == 2

    async def sync_system_metadata(
        self,
        schema_name: str,
        entities: Iterable[EntityDefinition],
        conn: AsyncConnection | None = None,
        remove_missing: bool = False,
        user_id: str | None = None,
    ) -> None:
        """Mirror entity definitions into _app_objects/_app_attributes.

        Rows are upserted by id. Targets outside the entity set are stored as
        NULL. With remove_missing, rows for ids no longer defined are deleted
        (attributes first, then objects).
        """
        entity_list = list(entities)
        known_ids = {entity.id for entity in entity_list}
        schema = validate_schema_name(schema_name)
        objects = qualified(schema, validate_identifier(OBJECTS_TABLE))
        attributes = qualified(schema, validate_identifier(ATTRIBUTES_TABLE))

        object_rows = [
            {
                "id": entity.id,
                "kind": entity.kind.value,
                "codename": entity.codename,
                "table_name": None if entity.is_enumeration else generate_table_name(entity.id, entity.kind),
                "presentation": json.dumps(entity.presentation),
                "config": json.dumps(entity.config),
                "user_id": user_id,
            }
            for entity in entity_list
        ]

        attribute_rows = []
        for entity in entity_list:
            table_name = None if entity.is_enumeration else generate_table_name(entity.id, entity.kind)
            # Parents before children so parent_attribute_id always resolves
            ordered = entity.top_level_fields() + [f for f in entity.fields if f.is_child]
            for f in ordered:
                if f.is_table and table_name is not None:
                    column_name = generate_tabular_table_name(table_name, f.id)
                else:
                    column_name = generate_column_name(f.id)
                target_known = f.target_entity_id in known_ids
                attribute_rows.append(
                    {
                        "id": f.id,
                        "object_id": entity.id,
                        "codename": f.codename,
                        "column_name": column_name,
                        "data_type": f.data_type.value,
                        "is_required": f.is_required,
                        "target_object_id": f.target_entity_id if target_known else None,
                        "target_object_kind": (
                            f.target_entity_kind.value if target_known and f.target_entity_kind else None
                        ),
                        "parent_attribute_id": f.parent_attribute_id,
                        "presentation": json.dumps(f.presentation),
                        "validation_rules": json.dumps(f.validation_rules),
                        "ui_config": json.dumps(f.ui_config),
                        "user_id": user_id,
                    }
                )

        async with transaction(self.engine, conn) as c:
            await self.ensure_system_tables(schema_name, conn=c)

            if object_rows:
                await c.execute(
                    text(
                        f"INSERT INTO {objects} "
                        "(id, kind, codename, table_name, presentation, config, "
                        "_upl_created_by, _upl_updated_by) "
                        "VALUES (CAST(:id AS uuid), :kind, :codename, :table_name, "
                        "CAST(:presentation AS JSONB), CAST(:config AS JSONB), "
                        "CAST(:user_id AS uuid), CAST(:user_id AS uuid)) "
                        "ON CONFLICT (id) DO UPDATE SET "
                        "kind = EXCLUDED.kind, codename = EXCLUDED.codename, "
                        "table_name = EXCLUDED.table_name, presentation = EXCLUDED.presentation, "
                        "config = EXCLUDED.config, _upl_updated_at = now(), "
                        "_upl_updated_by = EXCLUDED._upl_updated_by"
                    ),
                    object_rows,
                )

            if attribute_rows:
                await c.execute(
                    text(
                        f"INSERT INTO {attributes} "
                        "(id, object_id, codename, column_name, data_type, is_required, "
                        "target_object_id, target_object_kind, parent_attribute_id, "
                        "presentation, validation_rules, ui_config, _upl_created_by, _upl_updated_by) "
                        "VALUES (CAST(:id AS uuid), CAST(:object_id AS uuid), :codename, :column_name, "
                        ":data_type, :is_required, CAST(:target_object_id AS uuid), :target_object_kind, "
                        "CAST(:parent_attribute_id AS uuid), CAST(:presentation AS JSONB), "
                        "CAST(:validation_rules AS JSONB), CAST(:ui_config AS JSONB), "
                        "CAST(:user_id AS uuid), CAST(:user_id AS uuid)) "
                        "ON CONFLICT (id) DO UPDATE SET "
                        "object_id = EXCLUDED.object_id, codename = EXCLUDED.codename, "
                        "column_name = EXCLUDED.column_name, data_type = EXCLUDED.data_type, "
                        "is_required = EXCLUDED.is_required, target_object_id = EXCLUDED.target_object_id, "
                        "target_object_kind = EXCLUDED.target_object_kind, "
                        "parent_attribute_id = EXCLUDED.parent_attribute_id, "
                        "presentation = EXCLUDED.presentation, validation_rules = EXCLUDED.validation_rules, "
                        "ui_config = EXCLUDED.ui_config, _upl_updated_at = now(), "
                        "_upl_updated_by = EXCLUDED._upl_updated_by"
                    ),
                    attribute_rows,
                )

            if remove_missing:
                attribute_ids = [row["id"] for row in attribute_rows]
                await c.execute(
                    text(f"DELETE FROM {attributes} WHERE id::text <> ALL(:ids)"),
                    {"ids": attribute_ids},
                )
                await c.execute(
                    text(f"DELETE FROM {objects} WHERE id::text <> ALL(:ids)"),
                    {"ids": [row["id"] for row in object_rows]},
                )

        logger.info(
            "System metadata synced",
            extra={
                "schema": schema.value,
                "objects": len(object_rows),
                "attributes": len(attribute_rows),
                "remove_missing": remove_missing,
            },
        )

    # -- full generation -------------------------------------------------

    def generate_snapshot(self, entities: Iterable[EntityDefinition]) -> SchemaSnapshot:
        return build_schema_snapshot(entities)

    async def generate_full_schema(
        self,
        schema_name: str,
        entities: Iterable[EntityDefinition],
        options: GenerateSchemaOptions | None = None,
    ) -> SchemaGenerationResult:
        """Create a complete schema in one transaction.

        Database failures are reported in the result; invalid names and
        definitions raise.

        Raises:
            InvalidIdentifierError: If the schema name is not a generated shape
            EntityDefinitionError: If the definitions are invalid
            MigrationRecordError: If recording is requested without a manager
        """
        options = options or GenerateSchemaOptions()
        entity_list = list(entities)
        validate_schema_name(schema_name)
        validate_entities(entity_list)
        if options.record_migration and self.migration_manager is None:
            raise MigrationRecordError("migration_manager is required when record_migration is set")

        result = SchemaGenerationResult(success=False, schema_name=schema_name)
        by_id = _entity_map(entity_list)
        created: list[str] = []

        try:
            async with self.engine.begin() as conn:
                await self.create_schema(schema_name, conn)
                await self.ensure_system_tables(schema_name, conn)

                for entity in entity_list:
                    if entity.is_enumeration:
                        continue
                    await self.create_entity_table(schema_name, entity, conn)
                    created.append(entity.codename)

                for entity in entity_list:
                    await self.add_entity_foreign_keys(schema_name, entity, by_id, conn)

                await self.sync_system_metadata(schema_name, entity_list, conn=conn, user_id=options.user_id)

                if options.record_migration:
                    snapshot = self.generate_snapshot(entity_list)
                    initial = SchemaDiff(
                        has_changes=True,
                        summary=f"Initial schema creation with {len(created)} table(s)",
                    )
                    await self.migration_manager.record_migration(
                        schema_name,
                        generate_migration_name(options.migration_description or "initial_schema"),
                        None,
                        snapshot,
                        initial,
                        conn=conn,
                        extra_meta=options.migration_meta,
                        publication_snapshot=options.publication_snapshot,
                        user_id=options.user_id,
                    )
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "Schema generation failed",
                extra={"schema": schema_name, "error": str(e)},
                exc_info=True,
            )
            result.errors.append(f"Schema generation failed: {e}")
            return result

        result.tables_created = created
        result.success = True
        logger.info(
            "Schema generated",
            extra={"schema": schema_name, "tables_created": len(created)},
        )
        return result
