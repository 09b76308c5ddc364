"""
Schema migrator.

Applies a SchemaDiff to a live schema:
    1. Refuse unconfirmed destructive changes (no lock, no database access)
    2. Take the schema's advisory lock
    3. In ONE transaction: destructive changes, then additive changes, each
       group in dependency order; then deferred foreign keys for tables
       created in this run and for references into recreated tables; then sync system metadata (pruning stale rows);
       then optionally record the migration
    4. Release the lock, always

Apply order within a group is fixed by a priority table so that, e.g., a
foreign key is dropped before its column and a table exists before columns
or foreign keys that need it. Ties keep diff order.

Invariants:
    - Every ChangeType has exactly one handler (checked at import)
    - Any change failure rolls back the whole transaction
    - The lock is released on every exit path

How to change safely:
    - A new ChangeType needs a handler in _HANDLERS and a priority in both tables
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from ..errors import ChangeApplicationError, EntityDefinitionError, UnknownChangeTypeError
from ..schema.diff import NULLABLE, REQUIRED, ChangeType, SchemaChange, SchemaDiff, calculate_schema_diff
from ..schema.naming import (
    TrustedIdentifier,
    build_fk_constraint_name,
    generate_table_name,
    validate_identifier,
    validate_schema_name,
)
from ..schema.snapshot import SchemaSnapshot
from ..schema.types import AttributeDataType, EntityDefinition, FieldDefinition, validate_entities
from .database import qualified, quote_ident
from .generator import SchemaGenerator, build_user_column, foreign_key_fields
from .locking import AdvisoryLockManager, schema_name_to_lock_key
from .migrations import MigrationManager, generate_migration_name

logger = logging.getLogger(__name__)

LOCK_FAILED_MESSAGE = "Could not acquire advisory lock. Another migration may be in progress."

DEFAULT_PRIORITY = 100

DESTRUCTIVE_PRIORITY: dict[ChangeType, int] = {
    ChangeType.DROP_FK: 10,
    ChangeType.DROP_TABULAR_COLUMN: 15,
    ChangeType.DROP_COLUMN: 20,
    ChangeType.ALTER_COLUMN: 25,
    ChangeType.ALTER_TABULAR_COLUMN: 26,
    ChangeType.DROP_TABULAR_TABLE: 30,
    ChangeType.DROP_TABLE: 40,
    ChangeType.RENAME_TABLE: 50,
    ChangeType.MODIFY_FIELD: 60,
}

ADDITIVE_PRIORITY: dict[ChangeType, int] = {
    ChangeType.ADD_TABLE: 10,
    ChangeType.ADD_TABULAR_TABLE: 12,
    ChangeType.ADD_COLUMN: 20,
    ChangeType.ADD_TABULAR_COLUMN: 22,
    ChangeType.ALTER_COLUMN: 30,
    ChangeType.ALTER_TABULAR_COLUMN: 32,
    ChangeType.ADD_FK: 40,
    ChangeType.RENAME_TABLE: 50,
    ChangeType.MODIFY_FIELD: 60,
}


def order_changes_for_apply(changes: Sequence[SchemaChange], mode: str) -> list[SchemaChange]:
    """Stable sort by the priority table of `mode` ("additive" or "destructive")."""
    if mode not in ("additive", "destructive"):
        raise ValueError(f"mode must be 'additive' or 'destructive', got {mode!r}")
    priorities = ADDITIVE_PRIORITY if mode == "additive" else DESTRUCTIVE_PRIORITY
    ordered = sorted(
        enumerate(changes),
        key=lambda item: (priorities.get(item[1].change_type, DEFAULT_PRIORITY), item[0]),
    )
    return [change for _, change in ordered]


@dataclass
class ApplyChangesOptions:
    """Options for apply_all_changes.

    Attributes:
        record_migration: Record the run in _app_migrations (when anything applied)
        migration_description: Name seed (default schema_sync)
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
class MigrationResult:
    """Outcome of applying a diff."""

    success: bool = False
    changes_applied: int = 0
    errors: list[str] = field(default_factory=list)
    new_snapshot: SchemaSnapshot | None = None


@dataclass
class _ApplyContext:
    schema_name: str
    schema: TrustedIdentifier
    entities: dict[str, EntityDefinition]
    conn: AsyncConnection
    created_entities: list[str] = field(default_factory=list)
    dropped_entities: set[str] = field(default_factory=set)
    added_foreign_keys: set[tuple[str, str]] = field(default_factory=set)


class SchemaMigrator:
    """Applies schema diffs behind an advisory lock.

    Example:
        >>> diff = migrator.calculate_diff(previous_snapshot, entities)
        >>> result = await migrator.apply_all_changes(schema, diff, entities, confirmed_destructive=False)
        >>> result.success, result.errors
    """

    def __init__(
        self,
        engine: AsyncEngine,
        generator: SchemaGenerator,
        migration_manager: MigrationManager,
        lock_manager: AdvisoryLockManager,
    ) -> None:
        self.engine = engine
        self.generator = generator
        self.migration_manager = migration_manager
        self.lock_manager = lock_manager

    def calculate_diff(
        self,
        old_snapshot: SchemaSnapshot | None,
        entities: Iterable[EntityDefinition],
    ) -> SchemaDiff:
        return calculate_schema_diff(old_snapshot, entities)

    async def _current_snapshot(self, schema_name: str) -> SchemaSnapshot | None:
        latest = await self.migration_manager.get_latest_migration(schema_name)
        return latest.meta.snapshot_after if latest else None

    async def apply_additive_changes(
        self,
        schema_name: str,
        diff: SchemaDiff,
        entities: Iterable[EntityDefinition],
    ) -> MigrationResult:
        """Apply only the additive part of a diff. Destructive changes are ignored."""
        entity_list = list(entities)
        validate_schema_name(schema_name)
        validate_entities(entity_list)
        result = MigrationResult()

        lock_key = schema_name_to_lock_key(schema_name)
        if not await self.lock_manager.acquire(lock_key):
            result.errors.append(LOCK_FAILED_MESSAGE)
            return result

        try:
            async with self.engine.begin() as conn:
                ctx = self._context(schema_name, entity_list, conn)
                await self._apply_group(ctx, diff.additive, "additive", result)
                await self._add_deferred_foreign_keys(ctx)
                await self.generator.sync_system_metadata(
                    schema_name, entity_list, conn=conn, remove_missing=True
                )
            result.success = True
            result.new_snapshot = self.generator.generate_snapshot(entity_list)
        except ChangeApplicationError as e:
            result.errors.append(e.message)
        except (SQLAlchemyError, OSError) as e:
            result.errors.append(str(e))
        finally:
            await self.lock_manager.release(lock_key)

        self._log_result(schema_name, result)
        return result

    async def apply_all_changes(
        self,
        schema_name: str,
        diff: SchemaDiff,
        entities: Iterable[EntityDefinition],
        confirmed_destructive: bool,
        options: ApplyChangesOptions | None = None,
    ) -> MigrationResult:
        """Apply destructive and additive changes in one transaction.

        Returns a failed result without touching the database when the diff
        has destructive changes and `confirmed_destructive` is False.

        Raises:
            InvalidIdentifierError: If the schema name is not a generated shape
            EntityDefinitionError: If the definitions are invalid
            UnknownChangeTypeError: If a change has no handler
        """
        if diff.destructive and not confirmed_destructive:
            descriptions = "; ".join(c.description for c in diff.destructive)
            return MigrationResult(
                errors=[f"Destructive changes require explicit confirmation. Changes: {descriptions}"]
            )

        options = options or ApplyChangesOptions()
        entity_list = list(entities)
        validate_schema_name(schema_name)
        validate_entities(entity_list)
        result = MigrationResult()

        lock_key = schema_name_to_lock_key(schema_name)
        if not await self.lock_manager.acquire(lock_key):
            result.errors.append(LOCK_FAILED_MESSAGE)
            return result

        try:
            snapshot_before = await self._current_snapshot(schema_name)

            async with self.engine.begin() as conn:
                ctx = self._context(schema_name, entity_list, conn)
                await self._apply_group(ctx, diff.destructive, "destructive", result)
                await self._apply_group(ctx, diff.additive, "additive", result)
                await self._add_deferred_foreign_keys(ctx)
                await self.generator.sync_system_metadata(
                    schema_name,
                    entity_list,
                    conn=conn,
                    remove_missing=True,
                    user_id=options.user_id,
                )

                if options.record_migration and result.changes_applied > 0:
                    await self.migration_manager.record_migration(
                        schema_name,
                        generate_migration_name(options.migration_description or "schema_sync"),
                        snapshot_before,
                        self.generator.generate_snapshot(entity_list),
                        diff,
                        conn=conn,
                        extra_meta=options.migration_meta,
                        publication_snapshot=options.publication_snapshot,
                        user_id=options.user_id,
                    )

            result.success = True
            result.new_snapshot = self.generator.generate_snapshot(entity_list)
        except ChangeApplicationError as e:
            result.errors.append(e.message)
        except (SQLAlchemyError, OSError) as e:
            result.errors.append(str(e))
        finally:
            await self.lock_manager.release(lock_key)

        self._log_result(schema_name, result)
        return result

    # -- internals -------------------------------------------------------

    def _context(
        self,
        schema_name: str,
        entities: list[EntityDefinition],
        conn: AsyncConnection,
    ) -> _ApplyContext:
        return _ApplyContext(
            schema_name=schema_name,
            schema=validate_schema_name(schema_name),
            entities={entity.id: entity for entity in entities},
            conn=conn,
        )

    def _log_result(self, schema_name: str, result: MigrationResult) -> None:
        if result.success:
            logger.info(
                "Schema changes applied",
                extra={"schema": schema_name, "changes_applied": result.changes_applied},
            )
        else:
            logger.error(
                "Schema changes failed",
                extra={
                    "schema": schema_name,
                    "changes_applied": result.changes_applied,
                    "errors": result.errors,
                },
            )

    async def _apply_group(
        self,
        ctx: _ApplyContext,
        changes: Sequence[SchemaChange],
        mode: str,
        result: MigrationResult,
    ) -> None:
        for change in order_changes_for_apply(changes, mode):
            await self.apply_change(ctx, change)
            result.changes_applied += 1

    async def apply_change(self, ctx: _ApplyContext, change: SchemaChange) -> None:
        """Run the handler for one change.

        Raises:
            UnknownChangeTypeError: If no handler exists for the change type
            ChangeApplicationError: If the change fails
        """
        handler_name = _HANDLERS.get(change.change_type)
        if handler_name is None:
            raise UnknownChangeTypeError(change.change_type)
        try:
            await getattr(self, handler_name)(ctx, change)
        except (SQLAlchemyError, OSError, EntityDefinitionError) as e:
            raise ChangeApplicationError(change, e) from e
        logger.info(
            "Schema change applied",
            extra={
                "schema": ctx.schema_name,
                "change_type": change.change_type.value,
                "table": change.table_name,
                "column": change.column_name,
            },
        )

    async def _add_deferred_foreign_keys(self, ctx: _ApplyContext) -> None:
        """FKs of tables created in this run, once every table exists.

        Dropping a table with CASCADE also drops the FKs of other tables that
        reference it. For entities recreated in this run (kind change), those
        FKs are added again on every surviving REF field that targets them.
        """
        for entity_id in ctx.created_entities:
            await self.generator.add_entity_foreign_keys(
                ctx.schema_name, ctx.entities[entity_id], ctx.entities, ctx.conn
            )

        recreated = ctx.dropped_entities.intersection(ctx.created_entities)
        if not recreated:
            return
        created = set(ctx.created_entities)
        for entity in ctx.entities.values():
            if entity.id in created:
                continue
            for table_name, f in foreign_key_fields(entity):
                if f.target_entity_id not in recreated or (table_name, f.id) in ctx.added_foreign_keys:
                    continue
                await self.generator.add_foreign_key(ctx.schema_name, table_name, f, ctx.entities, ctx.conn)
                logger.info(
                    "Foreign key restored after table recreation",
                    extra={"schema": ctx.schema_name, "table": table_name, "field_id": f.id},
                )

    async def _execute(self, ctx: _ApplyContext, sql: str) -> None:
        await ctx.conn.execute(text(sql))

    def _entity(self, ctx: _ApplyContext, change: SchemaChange) -> EntityDefinition:
        entity = ctx.entities.get(change.entity_id or "")
        if entity is None:
            raise EntityDefinitionError(
                f"Entity {change.entity_id} not found in definitions", entity_id=change.entity_id
            )
        return entity

    def _field(self, ctx: _ApplyContext, change: SchemaChange) -> FieldDefinition:
        entity = self._entity(ctx, change)
        f = entity.get_field(change.field_id or "")
        if f is None:
            raise EntityDefinitionError(
                f"Field {change.field_id} not found in entity '{entity.codename}'",
                entity_id=entity.id,
                field_id=change.field_id,
            )
        return f

    def _table(self, ctx: _ApplyContext, change: SchemaChange) -> str:
        return qualified(ctx.schema, validate_identifier(change.table_name or ""))

    # -- handlers --------------------------------------------------------

    async def _add_table(self, ctx: _ApplyContext, change: SchemaChange) -> None:
        entity = self._entity(ctx, change)
        await self.generator.create_entity_table(ctx.schema_name, entity, ctx.conn)
        ctx.created_entities.append(entity.id)

    async def _drop_table(self, ctx: _ApplyContext, change: SchemaChange) -> None:
        # CASCADE drops FK constraints of other tables that point here
        await self._execute(ctx, f"DROP TABLE IF EXISTS {self._table(ctx, change)} CASCADE")
        if change.change_type is ChangeType.DROP_TABLE and change.entity_id:
            ctx.dropped_entities.add(change.entity_id)

    async def _rename_table(self, ctx: _ApplyContext, change: SchemaChange) -> None:
        if not change.new_value:
            raise EntityDefinitionError(
                f"RENAME_TABLE for {change.table_name} has no new table name",
                entity_id=change.entity_id,
            )
        new_name = validate_identifier(str(change.new_value))
        await self._execute(ctx, f"ALTER TABLE {self._table(ctx, change)} RENAME TO {quote_ident(new_name)}")

    async def _add_column(self, ctx: _ApplyContext, change: SchemaChange) -> None:
        f = self._field(ctx, change)
        table = self._table(ctx, change)
        # Added nullable, then SET NOT NULL when required
        column_def = build_user_column(
            FieldDefinition(id=f.id, codename=f.codename, data_type=f.data_type)
        )
        await self._execute(ctx, f"ALTER TABLE {table} ADD COLUMN {column_def}")
        if f.is_required:
            column = validate_identifier(change.column_name or "")
            await self._execute(ctx, f"ALTER TABLE {table} ALTER COLUMN {quote_ident(column)} SET NOT NULL")

    async def _drop_column(self, ctx: _ApplyContext, change: SchemaChange) -> None:
        column = validate_identifier(change.column_name or "")
        await self._execute(
            ctx, f"ALTER TABLE {self._table(ctx, change)} DROP COLUMN IF EXISTS {quote_ident(column)}"
        )

    async def _alter_column(self, ctx: _ApplyContext, change: SchemaChange) -> None:
        table = self._table(ctx, change)
        column = quote_ident(validate_identifier(change.column_name or ""))
        if change.new_value == REQUIRED:
            await self._execute(ctx, f"ALTER TABLE {table} ALTER COLUMN {column} SET NOT NULL")
        elif change.new_value == NULLABLE:
            await self._execute(ctx, f"ALTER TABLE {table} ALTER COLUMN {column} DROP NOT NULL")
        else:
            pg_type = SchemaGenerator.map_data_type(AttributeDataType.from_str(change.new_value))
            await self._execute(
                ctx, f"ALTER TABLE {table} ALTER COLUMN {column} TYPE {pg_type} USING {column}::{pg_type}"
            )

    async def _modify_field(self, ctx: _ApplyContext, change: SchemaChange) -> None:
        logger.info(
            "Metadata-only field change",
            extra={
                "schema": ctx.schema_name,
                "field_id": change.field_id,
                "old_value": change.old_value,
                "new_value": change.new_value,
            },
        )

    async def _add_fk(self, ctx: _ApplyContext, change: SchemaChange) -> None:
        f = self._field(ctx, change)
        await self.generator.add_foreign_key(
            ctx.schema_name, change.table_name or "", f, ctx.entities, ctx.conn
        )
        ctx.added_foreign_keys.add((change.table_name or "", f.id))

    async def _drop_fk(self, ctx: _ApplyContext, change: SchemaChange) -> None:
        table_name = validate_identifier(change.table_name or "")
        column = validate_identifier(change.column_name or "")
        constraint = validate_identifier(build_fk_constraint_name(table_name.value, column.value))
        await self._execute(
            ctx,
            f"ALTER TABLE {qualified(ctx.schema, table_name)} DROP CONSTRAINT IF EXISTS {quote_ident(constraint)}",
        )

    async def _add_tabular_table(self, ctx: _ApplyContext, change: SchemaChange) -> None:
        entity = self._entity(ctx, change)
        table_field = self._field(ctx, change)
        await self.generator.create_tabular_table(
            ctx.schema_name,
            generate_table_name(entity.id, entity.kind),
            table_field,
            entity.child_fields(table_field.id),
            ctx.conn,
        )


# ChangeType -> SchemaMigrator method. Tabular column changes reuse the column
# handlers against the child table named in the change.
_HANDLERS: dict[ChangeType, str] = {
    ChangeType.ADD_TABLE: "_add_table",
    ChangeType.DROP_TABLE: "_drop_table",
    ChangeType.RENAME_TABLE: "_rename_table",
    ChangeType.ADD_COLUMN: "_add_column",
    ChangeType.DROP_COLUMN: "_drop_column",
    ChangeType.ALTER_COLUMN: "_alter_column",
    ChangeType.MODIFY_FIELD: "_modify_field",
    ChangeType.ADD_FK: "_add_fk",
    ChangeType.DROP_FK: "_drop_fk",
    ChangeType.ADD_TABULAR_TABLE: "_add_tabular_table",
    ChangeType.DROP_TABULAR_TABLE: "_drop_table",
    ChangeType.ADD_TABULAR_COLUMN: "_add_column",
    ChangeType.DROP_TABULAR_COLUMN: "_drop_column",
    ChangeType.ALTER_TABULAR_COLUMN: "_alter_column",
}

_missing_handlers = set(ChangeType) - set(_HANDLERS)
if _missing_handlers:
    raise RuntimeError(f"No migrator handler for: {sorted(t.value for t in _missing_handlers)}")
