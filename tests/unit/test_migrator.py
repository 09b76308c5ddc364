"""
Unit tests for the schema migrator.

Tests cover:
- Apply ordering within additive/destructive groups
- Confirmation of destructive changes
- Lock handling
- Handler behaviour for each change kind
"""

import json
from dataclasses import replace

import pytest

from metahubs.schema_ddl.ddl.migrator import (
    LOCK_FAILED_MESSAGE,
    ApplyChangesOptions,
    order_changes_for_apply,
)
from metahubs.schema_ddl.errors import UnknownChangeTypeError
from metahubs.schema_ddl.schema.diff import ChangeType, SchemaChange, SchemaDiff, calculate_schema_diff
from metahubs.schema_ddl.schema.naming import (
    build_fk_constraint_name,
    generate_column_name,
    generate_table_name,
    generate_tabular_table_name,
)
from metahubs.schema_ddl.schema.snapshot import build_schema_snapshot
from metahubs.schema_ddl.schema.types import AttributeDataType, EntityKind

from .factories import (
    CUSTOMER_ID,
    CUSTOMER_REF_ID,
    EMAIL_ID,
    LINES_ID,
    NAME_ID,
    ORDER_ID,
    SCHEMA,
    STATUS_REF_ID,
    customer,
    fld,
    order,
    sample_entities,
    status,
    with_field,
    without_field,
)
from .fakes import FakeResult

CUSTOMER_TABLE = generate_table_name(CUSTOMER_ID, EntityKind.CATALOG)
ORDER_TABLE = generate_table_name(ORDER_ID, EntityKind.DOCUMENT)
LINES_TABLE = generate_tabular_table_name(ORDER_TABLE, LINES_ID)
LINE_BUYER_ID = "0190a0b2-0000-7000-8000-000000000303"


def line_buyer():
    return fld(
        LINE_BUYER_ID,
        "buyer",
        AttributeDataType.REF,
        target=CUSTOMER_ID,
        target_kind=EntityKind.CATALOG,
        parent=LINES_ID,
    )


def change(change_type, destructive=False, description=""):
    return SchemaChange(change_type=change_type, is_destructive=destructive, description=description or change_type.value)


def latest_migration_row(entities):
    """A migration row whose snapshotAfter describes `entities`."""
    meta = {"snapshotBefore": None, "snapshotAfter": build_schema_snapshot(entities).to_dict(), "changes": []}
    return {
        "id": "0190a0b2-0000-7000-8000-00000000f001",
        "name": "20240101_000000_initial_schema",
        "applied_at": None,
        "meta": json.dumps(meta),
        "publication_snapshot": None,
    }


class TestOrdering:
    """Tests for order_changes_for_apply."""

    def test_additive_order(self):
        """Tables before columns before FKs; ties keep diff order."""
        changes = [
            change(ChangeType.ADD_FK, description="fk"),
            change(ChangeType.ADD_COLUMN, description="col-1"),
            change(ChangeType.ADD_TABLE),
            change(ChangeType.ADD_COLUMN, description="col-2"),
            change(ChangeType.ADD_TABULAR_TABLE),
        ]
        ordered = [c.description for c in order_changes_for_apply(changes, "additive")]
        assert ordered == ["ADD_TABLE", "ADD_TABULAR_TABLE", "col-1", "col-2", "fk"]

    def test_destructive_order(self):
        """FKs are dropped before columns, columns before tables."""
        changes = [
            change(ChangeType.DROP_TABLE, True),
            change(ChangeType.DROP_COLUMN, True),
            change(ChangeType.DROP_FK, True),
            change(ChangeType.DROP_TABULAR_TABLE, True),
        ]
        ordered = [c.change_type for c in order_changes_for_apply(changes, "destructive")]
        assert ordered == [ChangeType.DROP_FK, ChangeType.DROP_COLUMN, ChangeType.DROP_TABULAR_TABLE, ChangeType.DROP_TABLE]

    def test_invalid_mode(self):
        """Only additive/destructive modes exist."""
        with pytest.raises(ValueError):
            order_changes_for_apply([], "sideways")


class TestApplyAllChanges:
    """Tests for apply_all_changes."""

    @pytest.mark.asyncio
    async def test_unconfirmed_destructive_is_refused(self, engine, migrator):
        """Destructive diffs need confirmation; nothing is touched."""
        diff = calculate_schema_diff(build_schema_snapshot([customer()]), [without_field(customer(), EMAIL_ID)])
        result = await migrator.apply_all_changes(SCHEMA, diff, [customer()], confirmed_destructive=False)

        assert not result.success
        assert result.errors[0].startswith("Destructive changes require explicit confirmation.")
        assert "email" in result.errors[0]
        assert engine.statements == []

    @pytest.mark.asyncio
    async def test_fresh_schema_apply(self, engine, migrator, lock_manager):
        """Applying a fresh diff creates tables, then FKs, then syncs metadata."""
        entities = sample_entities()
        diff = calculate_schema_diff(None, entities)
        result = await migrator.apply_all_changes(SCHEMA, diff, entities, confirmed_destructive=False)

        assert result.success, result.errors
        assert result.changes_applied == 2
        assert result.new_snapshot is not None
        assert len(engine.executed("ADD CONSTRAINT")) == 2
        assert engine.executed('"_app_objects" WHERE id::text <> ALL(:ids)')
        assert engine.executed("pg_advisory_unlock")
        assert lock_manager.held_keys() == []

        sql = engine.sql()
        first_create = next(i for i, s in enumerate(sql) if s.startswith('CREATE TABLE "'))
        first_fk = next(i for i, s in enumerate(sql) if "ADD CONSTRAINT" in s)
        assert first_create < first_fk

    @pytest.mark.asyncio
    async def test_records_migration_with_before_snapshot(self, engine, migrator):
        """The recorded migration carries the previous snapshot and changes."""
        engine.respond("information_schema.tables", FakeResult(scalar=True))
        engine.respond("count(*)", FakeResult(scalar=1))
        engine.respond("ORDER BY applied_at DESC", FakeResult(rows=[latest_migration_row([customer()])]))
        engine.respond("RETURNING id", FakeResult(scalar="0190a0b2-0000-7000-8000-00000000f002"))

        phone = fld("0190a0b2-0000-7000-8000-000000000103", "phone")
        new = [customer(phone)]
        diff = calculate_schema_diff(build_schema_snapshot([customer()]), new)
        result = await migrator.apply_all_changes(
            SCHEMA,
            diff,
            new,
            confirmed_destructive=False,
            options=ApplyChangesOptions(record_migration=True, migration_description="Add phone"),
        )

        assert result.success, result.errors
        insert = next(p for sql, p in engine.statements if "INSERT INTO" in sql and "_app_migrations" in sql)
        assert insert["name"].endswith("_add_phone")
        meta = json.loads(insert["meta"])
        assert set(meta["snapshotBefore"]["entities"]) == {CUSTOMER_ID}
        assert [c["type"] for c in meta["changes"]] == ["ADD_COLUMN"]
        assert meta["hasDestructive"] is False

    @pytest.mark.asyncio
    async def test_nothing_recorded_without_changes(self, engine, migrator):
        """An empty diff records no migration."""
        result = await migrator.apply_all_changes(
            SCHEMA,
            SchemaDiff(),
            [customer()],
            confirmed_destructive=False,
            options=ApplyChangesOptions(record_migration=True),
        )
        assert result.success
        assert result.changes_applied == 0
        assert not any("INSERT INTO" in sql and "_app_migrations" in sql for sql in engine.sql())

    @pytest.mark.asyncio
    async def test_lock_failure(self, engine, migrator):
        """A held lock fails the migration without running DDL."""
        engine.respond("pg_try_advisory_lock", FakeResult(scalar=False))
        diff = calculate_schema_diff(None, [customer()])
        result = await migrator.apply_all_changes(SCHEMA, diff, [customer()], confirmed_destructive=False)

        assert not result.success
        assert result.errors == [LOCK_FAILED_MESSAGE]
        assert engine.executed('CREATE TABLE "') == []

    @pytest.mark.asyncio
    async def test_change_failure_rolls_back_and_releases(self, engine, migrator, lock_manager):
        """A failing change aborts the transaction and reports its description."""
        engine.fail("DROP COLUMN", "column is referenced")
        diff = calculate_schema_diff(build_schema_snapshot([customer()]), [without_field(customer(), EMAIL_ID)])
        result = await migrator.apply_all_changes(
            SCHEMA, diff, [without_field(customer(), EMAIL_ID)], confirmed_destructive=True
        )

        assert not result.success
        assert result.errors[0].startswith('Drop column "email" from "Customer" (DATA WILL BE LOST): ')
        assert "column is referenced" in result.errors[0]
        assert engine.transactions_rolled_back == 1
        assert lock_manager.held_keys() == []

    @pytest.mark.asyncio
    async def test_unknown_change_type_raises(self, migrator, engine):
        """A change without a handler is an error, never skipped."""

        class Bogus:
            value = "BOGUS"

        bogus = SchemaChange(change_type=Bogus(), is_destructive=False, description="bogus")
        diff = SchemaDiff(additive=[bogus], has_changes=True)
        with pytest.raises(UnknownChangeTypeError):
            await migrator.apply_all_changes(SCHEMA, diff, [customer()], confirmed_destructive=False)


class TestHandlers:
    """Tests for individual change handlers."""

    async def _apply(self, migrator, old, new, confirm=True):
        diff = calculate_schema_diff(build_schema_snapshot(old), new)
        result = await migrator.apply_all_changes(SCHEMA, diff, new, confirmed_destructive=confirm)
        assert result.success, result.errors
        return result

    @pytest.mark.asyncio
    async def test_add_required_column(self, engine, migrator):
        """Required columns are added nullable, then set NOT NULL."""
        title = fld("0190a0b2-0000-7000-8000-000000000107", "title", required=True)
        await self._apply(migrator, [customer()], [customer(title)])

        column = generate_column_name(title.id)
        add = engine.executed("ADD COLUMN")[0]
        assert add.endswith(f'ADD COLUMN "{column}" TEXT')
        assert engine.executed(f'ALTER COLUMN "{column}" SET NOT NULL')

    @pytest.mark.asyncio
    async def test_alter_type_uses_cast(self, engine, migrator):
        """Type changes cast the existing values."""
        new = with_field(customer(), fld(EMAIL_ID, "email", AttributeDataType.JSON))
        await self._apply(migrator, [customer()], [new])
        column = generate_column_name(EMAIL_ID)
        assert engine.executed(f'ALTER COLUMN "{column}" TYPE JSONB USING "{column}"::JSONB')

    @pytest.mark.asyncio
    async def test_make_optional(self, engine, migrator):
        """required -> nullable drops NOT NULL."""
        new = with_field(customer(), fld(NAME_ID, "name"))
        await self._apply(migrator, [customer()], [new], confirm=False)
        assert engine.executed(f'ALTER COLUMN "{generate_column_name(NAME_ID)}" DROP NOT NULL')

    @pytest.mark.asyncio
    async def test_retarget_drops_then_adds_fk(self, engine, migrator):
        """DROP_FK runs in the destructive group before ADD_FK."""
        old = [customer(), order(with_lines=False), status()]
        retargeted = with_field(
            order(with_lines=False),
            fld(CUSTOMER_REF_ID, "customer", AttributeDataType.REF, target=ORDER_ID, target_kind=EntityKind.DOCUMENT),
        )
        await self._apply(migrator, old, [customer(), retargeted, status()])

        constraint = build_fk_constraint_name(ORDER_TABLE, generate_column_name(CUSTOMER_REF_ID))
        sql = engine.sql()
        drop = next(i for i, s in enumerate(sql) if f'DROP CONSTRAINT IF EXISTS "{constraint}"' in s)
        add = next(i for i, s in enumerate(sql) if f'ADD CONSTRAINT "{constraint}"' in s)
        assert drop < add
        assert f'REFERENCES "{SCHEMA}"."{ORDER_TABLE}"(id)' in sql[add]

    @pytest.mark.asyncio
    async def test_drop_table_cascades(self, engine, migrator):
        """Dropped tables take dependent constraints with them."""
        await self._apply(migrator, [customer(), order(with_lines=False)], [customer()])
        assert engine.executed(f'DROP TABLE IF EXISTS "{SCHEMA}"."{ORDER_TABLE}" CASCADE')

    @pytest.mark.asyncio
    async def test_kind_change_recreates_with_fks(self, engine, migrator):
        """A recreated table gets its FKs from the deferred step."""
        hub_order = replace(order(with_lines=False), kind=EntityKind.HUB)
        await self._apply(migrator, [customer(), order(with_lines=False), status()], [customer(), hub_order, status()])

        hub_table = generate_table_name(ORDER_ID, EntityKind.HUB)
        assert engine.executed(f'DROP TABLE IF EXISTS "{SCHEMA}"."{ORDER_TABLE}" CASCADE')
        assert engine.executed(f'CREATE TABLE "{SCHEMA}"."{hub_table}"')
        assert len([s for s in engine.executed("ADD CONSTRAINT") if hub_table in s]) == 2

    @pytest.mark.asyncio
    async def test_removed_entity_drops_child_tables(self, engine, migrator):
        """Tabular child tables are dropped before their parent table."""
        await self._apply(migrator, [customer(), order(), status()], [customer(), status()])

        sql = engine.sql()
        child = next(i for i, s in enumerate(sql) if s == f'DROP TABLE IF EXISTS "{SCHEMA}"."{LINES_TABLE}" CASCADE')
        parent = next(i for i, s in enumerate(sql) if s == f'DROP TABLE IF EXISTS "{SCHEMA}"."{ORDER_TABLE}" CASCADE')
        assert child < parent

    @pytest.mark.asyncio
    async def test_kind_change_replaces_child_tables(self, engine, migrator):
        """The old kind's child table is dropped and the new one created."""
        catalog_order = replace(order(), kind=EntityKind.CATALOG)
        await self._apply(migrator, [customer(), order(), status()], [customer(), catalog_order, status()])

        new_lines = generate_tabular_table_name(generate_table_name(ORDER_ID, EntityKind.CATALOG), LINES_ID)
        assert engine.executed(f'DROP TABLE IF EXISTS "{SCHEMA}"."{LINES_TABLE}" CASCADE')
        assert engine.executed(f'CREATE TABLE "{SCHEMA}"."{new_lines}"')

    @pytest.mark.asyncio
    async def test_kind_change_restores_inbound_fks(self, engine, migrator):
        """References from surviving tables to a recreated table get their FKs back."""
        entities = [customer(), with_field(order(), line_buyer()), status()]
        recreated = [customer(kind=EntityKind.HUB), *entities[1:]]
        await self._apply(migrator, entities, recreated)

        hub_table = generate_table_name(CUSTOMER_ID, EntityKind.HUB)
        order_fk = build_fk_constraint_name(ORDER_TABLE, generate_column_name(CUSTOMER_REF_ID))
        lines_fk = build_fk_constraint_name(LINES_TABLE, generate_column_name(LINE_BUYER_ID))

        order_adds = engine.executed(f'ADD CONSTRAINT "{order_fk}"')
        lines_adds = engine.executed(f'ADD CONSTRAINT "{lines_fk}"')
        assert len(order_adds) == len(lines_adds) == 1
        assert f'REFERENCES "{SCHEMA}"."{hub_table}"(id)' in order_adds[0]
        assert f'REFERENCES "{SCHEMA}"."{hub_table}"(id)' in lines_adds[0]
        status_fk = build_fk_constraint_name(ORDER_TABLE, generate_column_name(STATUS_REF_ID))
        assert engine.executed(f'ADD CONSTRAINT "{status_fk}"') == []

    @pytest.mark.asyncio
    async def test_restored_fks_are_not_duplicated(self, engine, migrator):
        """A REF that gets ADD_FK in the same run is not restored a second time."""
        manager = fld(
            "0190a0b2-0000-7000-8000-000000000204",
            "manager",
            AttributeDataType.REF,
            target=CUSTOMER_ID,
            target_kind=EntityKind.CATALOG,
        )
        old = [customer(), order(with_lines=False), status()]
        new = [customer(kind=EntityKind.HUB), with_field(order(with_lines=False), manager), status()]
        await self._apply(migrator, old, new)

        for field_id in (CUSTOMER_REF_ID, manager.id):
            constraint = build_fk_constraint_name(ORDER_TABLE, generate_column_name(field_id))
            assert len(engine.executed(f'ADD CONSTRAINT "{constraint}"')) == 1

    @pytest.mark.asyncio
    async def test_modify_field_runs_no_ddl(self, engine, migrator):
        """Metadata-only changes emit no ALTER statements."""
        old = [customer(), order(with_lines=False)]
        changed = with_field(
            order(with_lines=False),
            fld(CUSTOMER_REF_ID, "customer", AttributeDataType.REF, target=CUSTOMER_ID, target_kind=EntityKind.HUB),
        )
        result = await self._apply(migrator, old, [customer(), changed], confirm=False)
        assert result.changes_applied == 1
        assert engine.executed("ALTER TABLE") == []
