"""
Unit tests for the schema generator and system table definitions.

Tests cover:
- Type mapping and user column clauses
- System table rendering
- Full schema generation against a recording engine
- Foreign keys and metadata sync
"""

import json
import re

import pytest

from metahubs.schema_ddl.ddl.database import qualified, quote_ident
from metahubs.schema_ddl.ddl.generator import GenerateSchemaOptions, SchemaGenerator, build_user_column
from metahubs.schema_ddl.ddl.system_tables import SYSTEM_TABLE_NAMES, SYSTEM_TABLES
from metahubs.schema_ddl.errors import EntityDefinitionError, InvalidIdentifierError, MigrationRecordError
from metahubs.schema_ddl.schema.naming import (
    generate_column_name,
    generate_table_name,
    generate_tabular_table_name,
    validate_identifier,
    validate_schema_name,
)
from metahubs.schema_ddl.schema.types import AttributeDataType, EntityKind

from .factories import (
    CUSTOMER_ID,
    CUSTOMER_REF_ID,
    LINES_ID,
    ORDER_ID,
    SCHEMA,
    STATUS_ID,
    customer,
    fld,
    order,
    sample_entities,
    status,
)
from .fakes import FakeResult

ORDER_TABLE = generate_table_name(ORDER_ID, EntityKind.DOCUMENT)
CUSTOMER_TABLE = generate_table_name(CUSTOMER_ID, EntityKind.CATALOG)


class TestColumnMapping:
    """Tests for type mapping and column clauses."""

    @pytest.mark.parametrize(
        "data_type,pg_type",
        [
            (AttributeDataType.STRING, "TEXT"),
            (AttributeDataType.NUMBER, "NUMERIC"),
            (AttributeDataType.BOOLEAN, "BOOLEAN"),
            (AttributeDataType.DATE, "DATE"),
            (AttributeDataType.DATETIME, "TIMESTAMPTZ"),
            (AttributeDataType.REF, "UUID"),
            (AttributeDataType.JSON, "JSONB"),
        ],
    )
    def test_map_data_type(self, data_type, pg_type):
        """Every column type has a PostgreSQL mapping."""
        assert SchemaGenerator.map_data_type(data_type) == pg_type

    def test_table_has_no_column_type(self):
        """TABLE fields are child tables, not columns."""
        with pytest.raises(EntityDefinitionError):
            SchemaGenerator.map_data_type(AttributeDataType.TABLE)

    def test_required_column(self):
        """Required fields are NOT NULL."""
        column = generate_column_name("f1")
        assert build_user_column(fld("f1", "title", required=True)) == f'"{column}" TEXT NOT NULL'

    def test_boolean_column_defaults_false(self):
        """BOOLEAN columns default to false."""
        column = generate_column_name("f2")
        assert build_user_column(fld("f2", "active", AttributeDataType.BOOLEAN)) == f'"{column}" BOOLEAN DEFAULT false'


class TestSystemTables:
    """Tests for declarative system tables."""

    def test_table_order(self):
        """Referenced tables come first; migrations table last."""
        assert SYSTEM_TABLE_NAMES == (
            "_app_objects",
            "_app_attributes",
            "_app_values",
            "_app_layouts",
            "_app_widgets",
            "_app_settings",
            "_app_migrations",
        )

    def test_render_is_idempotent_ddl(self):
        """Every statement is IF NOT EXISTS and schema-qualified."""
        schema = validate_schema_name(SCHEMA)
        for table_def in SYSTEM_TABLES:
            statements = table_def.render(schema)
            assert statements[0].startswith(f'CREATE TABLE IF NOT EXISTS "{SCHEMA}"."{table_def.name}"')
            assert all("IF NOT EXISTS" in s for s in statements)

    def test_attributes_reference_objects(self):
        """Attribute rows cascade with their object."""
        schema = validate_schema_name(SCHEMA)
        create = SYSTEM_TABLES[1].render(schema)[0]
        assert f'REFERENCES "{SCHEMA}"."_app_objects"(id) ON DELETE CASCADE' in create
        assert 'UNIQUE ("object_id", "column_name")' in create

    def test_single_default_value_per_enumeration(self):
        """_app_values has a partial unique index on the default value."""
        schema = validate_schema_name(SCHEMA)
        statements = SYSTEM_TABLES[2].render(schema)
        assert any(s.startswith("CREATE UNIQUE INDEX IF NOT EXISTS") and "is_default = true" in s for s in statements)

    def test_quote_ident_requires_trusted_identifier(self):
        """Plain strings never reach SQL text."""
        with pytest.raises(TypeError):
            quote_ident("cat_x")
        assert qualified(validate_schema_name(SCHEMA), validate_identifier("t")) == f'"{SCHEMA}"."t"'


class TestGenerateFullSchema:
    """Tests for generate_full_schema."""

    @pytest.mark.asyncio
    async def test_generates_tables_and_fks(self, engine, generator):
        """Schema, system tables, entity tables, child tables and FKs are created in one transaction."""
        result = await generator.generate_full_schema(SCHEMA, sample_entities())

        assert result.success, result.errors
        assert result.tables_created == ["Customer", "Order"]
        assert engine.transactions_committed == 1
        assert engine.executed(f'CREATE SCHEMA IF NOT EXISTS "{SCHEMA}"')

        created = engine.executed('CREATE TABLE "')
        lines_table = generate_tabular_table_name(ORDER_TABLE, LINES_ID)
        assert len(created) == 3
        assert any(f'"{lines_table}"' in sql and "_tp_parent_id" in sql for sql in created)
        assert not any(generate_table_name(STATUS_ID, EntityKind.ENUMERATION) in sql for sql in created)

        fks = engine.executed("ADD CONSTRAINT")
        assert len(fks) == 2
        assert any(f'REFERENCES "{SCHEMA}"."{CUSTOMER_TABLE}"(id) ON DELETE SET NULL' in sql for sql in fks)
        assert any(f'REFERENCES "{SCHEMA}"."_app_values"(id)' in sql for sql in fks)

    @pytest.mark.asyncio
    async def test_entity_table_has_bookkeeping_columns(self, engine, generator):
        """User tables carry the bookkeeping column set and indexes."""
        await generator.generate_full_schema(SCHEMA, [customer()])

        create = engine.executed(f'CREATE TABLE "{SCHEMA}"."{CUSTOMER_TABLE}"')[0]
        assert '"id" UUID PRIMARY KEY DEFAULT gen_random_uuid()' in create
        assert '"_upl_version" INTEGER NOT NULL DEFAULT 1' in create
        assert '"_app_access_level" VARCHAR(20)' in create
        assert engine.executed(f'"idx_{CUSTOMER_TABLE}_upl_deleted"')

    @pytest.mark.asyncio
    async def test_records_initial_migration(self, engine, generator):
        """With record_migration an initial migration row is inserted."""
        engine.respond("RETURNING id", FakeResult(scalar="0190a0b2-0000-7000-8000-00000000f001"))
        result = await generator.generate_full_schema(
            SCHEMA, sample_entities(), GenerateSchemaOptions(record_migration=True)
        )

        assert result.success
        inserts = [(sql, params) for sql, params in engine.statements if "_app_migrations" in sql and "INSERT" in sql]
        assert len(inserts) == 1
        params = inserts[0][1]
        assert re.match(r"^\d{8}_\d{6}_initial_schema$", params["name"])
        meta = json.loads(params["meta"])
        assert meta["snapshotBefore"] is None
        assert meta["summary"] == "Initial schema creation with 2 table(s)"
        assert set(meta["snapshotAfter"]["entities"]) == {CUSTOMER_ID, ORDER_ID, STATUS_ID}

    @pytest.mark.asyncio
    async def test_recording_requires_manager(self, engine):
        """Recording without a migration manager is a usage error."""
        generator = SchemaGenerator(engine)
        with pytest.raises(MigrationRecordError):
            await generator.generate_full_schema(SCHEMA, [customer()], GenerateSchemaOptions(record_migration=True))

    @pytest.mark.asyncio
    async def test_invalid_schema_name_raises(self, engine, generator):
        """Invalid schema names raise before any SQL."""
        with pytest.raises(InvalidIdentifierError):
            await generator.generate_full_schema("public", [customer()])
        assert engine.statements == []

    @pytest.mark.asyncio
    async def test_database_failure_is_reported(self, engine, generator):
        """Database errors roll back and are returned in the result."""
        engine.fail(f'CREATE TABLE "{SCHEMA}"."{CUSTOMER_TABLE}"', "permission denied")
        result = await generator.generate_full_schema(SCHEMA, [customer()])

        assert not result.success
        assert result.errors[0].startswith("Schema generation failed:")
        assert "permission denied" in result.errors[0]
        assert engine.transactions_rolled_back == 1
        assert result.tables_created == []


class TestForeignKeysAndMetadata:
    """Tests for FK helpers and metadata sync."""

    @pytest.mark.asyncio
    async def test_missing_target_is_skipped(self, engine, generator):
        """A REF whose target is not defined gets no constraint."""
        ref = fld("r1", "ghost", AttributeDataType.REF, target="missing")
        added = await generator.add_foreign_key(SCHEMA, CUSTOMER_TABLE, ref, [customer()])
        assert added is False
        assert engine.executed("ADD CONSTRAINT") == []

    @pytest.mark.asyncio
    async def test_enumeration_kind_needs_no_entity(self, engine, generator):
        """A REF declared against an enumeration references _app_values even if it is not passed."""
        ref = fld(CUSTOMER_REF_ID, "state", AttributeDataType.REF, target=STATUS_ID, target_kind=EntityKind.ENUMERATION)
        added = await generator.add_foreign_key(SCHEMA, CUSTOMER_TABLE, ref, [customer()])

        assert added is True
        assert engine.executed(f'REFERENCES "{SCHEMA}"."_app_values"(id) ON DELETE SET NULL')

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "entities, target_id, target_table",
        [
            ([customer()], CUSTOMER_ID, CUSTOMER_TABLE),
            ([customer(), status()], STATUS_ID, "_app_values"),
        ],
    )
    async def test_target_kind_falls_back_to_entity(self, engine, generator, entities, target_id, target_table):
        """Without target_entity_kind the target entity's own kind decides."""
        ref = fld(CUSTOMER_REF_ID, "link", AttributeDataType.REF, target=target_id)
        assert await generator.add_foreign_key(SCHEMA, ORDER_TABLE, ref, entities) is True
        assert engine.executed(f'REFERENCES "{SCHEMA}"."{target_table}"(id)')

    @pytest.mark.asyncio
    async def test_enumeration_entity_creates_no_table(self, engine, generator):
        """Enumerations never get a physical table."""
        await generator.create_entity_table(SCHEMA, status())
        assert engine.statements == []

    @pytest.mark.asyncio
    async def test_sync_metadata_upserts_and_prunes(self, engine, generator):
        """Objects and attributes are upserted; stale rows are removed."""
        await generator.sync_system_metadata(SCHEMA, [customer(), order()], remove_missing=True)

        object_insert = next(p for sql, p in engine.statements if '"_app_objects"' in sql and "INSERT" in sql)
        assert [row["id"] for row in object_insert] == [CUSTOMER_ID, ORDER_ID]

        attribute_insert = next(p for sql, p in engine.statements if '"_app_attributes"' in sql and "INSERT" in sql)
        by_id = {row["id"]: row for row in attribute_insert}
        # Status is not in the synced set, so its target is stored as NULL
        status_ref = by_id["0190a0b2-0000-7000-8000-000000000202"]
        assert status_ref["target_object_id"] is None
        assert by_id[CUSTOMER_REF_ID]["target_object_id"] == CUSTOMER_ID
        assert by_id[LINES_ID]["column_name"] == generate_tabular_table_name(ORDER_TABLE, LINES_ID)
        positions = [row["id"] for row in attribute_insert]
        assert positions.index(LINES_ID) < positions.index("0190a0b2-0000-7000-8000-000000000301")

        deletes = [(sql, p) for sql, p in engine.statements if sql.startswith("DELETE")]
        assert '"_app_attributes"' in deletes[0][0]
        assert '"_app_objects"' in deletes[1][0]
        assert deletes[1][1] == {"ids": [CUSTOMER_ID, ORDER_ID]}

    @pytest.mark.asyncio
    async def test_schema_exists(self, engine, generator):
        """schema_exists reads information_schema."""
        engine.respond("information_schema.schemata", FakeResult(scalar=True))
        assert await generator.schema_exists(SCHEMA) is True
