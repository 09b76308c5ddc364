"""
Declarative definitions of system tables and bookkeeping columns.

Every generated schema is self-describing: the _app_* catalog tables mirror
the entity definitions, and every user table (entity or tabular part) carries
the same bookkeeping columns:
- _upl_*: platform audit, versioning, archive, soft delete, purge, lock
- _app_*: application publish, archive, soft delete, owner, access level

System tables carry the _upl_* set plus the _app_ publish/archive/delete
columns (no owner/access level).

Definitions here are data; ddl/generator.py renders them.

How to change safely:
    - Append new bookkeeping columns with a default or as nullable, and add
      an ADD_COLUMN path for existing schemas
    - Keep SYSTEM_TABLES ordered so referenced tables come first
"""

from __future__ import annotations

from dataclasses import dataclass

from ..schema.naming import TrustedIdentifier, build_index_name, validate_identifier
from .database import qualified, quote_ident

OBJECTS_TABLE = "_app_objects"
ATTRIBUTES_TABLE = "_app_attributes"
VALUES_TABLE = "_app_values"
LAYOUTS_TABLE = "_app_layouts"
WIDGETS_TABLE = "_app_widgets"
SETTINGS_TABLE = "_app_settings"
MIGRATIONS_TABLE = "_app_migrations"

TABULAR_PARENT_COLUMN = "_tp_parent_id"
TABULAR_SORT_COLUMN = "_tp_sort_order"


@dataclass(frozen=True)
class ColumnDef:
    """A fixed column. `references` names a table in the same schema."""

    name: str
    sql_type: str
    nullable: bool = True
    default: str | None = None
    primary_key: bool = False
    references: str | None = None
    on_delete: str | None = None

    def render(self, schema: TrustedIdentifier) -> str:
        parts = [quote_ident(validate_identifier(self.name)), self.sql_type]
        if self.primary_key:
            parts.append("PRIMARY KEY")
        elif not self.nullable:
            parts.append("NOT NULL")
        if self.default is not None:
            parts.append(f"DEFAULT {self.default}")
        if self.references:
            parts.append(f"REFERENCES {qualified(schema, validate_identifier(self.references))}(id)")
            if self.on_delete:
                parts.append(f"ON DELETE {self.on_delete}")
        return " ".join(parts)


@dataclass(frozen=True)
class IndexDef:
    """An index named idx_<table>_<suffix>."""

    suffix: str
    columns: tuple[str, ...]
    unique: bool = False
    where: str | None = None

    def render(self, schema: TrustedIdentifier, table: TrustedIdentifier) -> str:
        name = validate_identifier(build_index_name(table.value, self.suffix))
        columns = ", ".join(quote_ident(validate_identifier(c)) for c in self.columns)
        unique = "UNIQUE " if self.unique else ""
        sql = f"CREATE {unique}INDEX IF NOT EXISTS {quote_ident(name)} ON {qualified(schema, table)} ({columns})"
        if self.where:
            sql += f" WHERE {self.where}"
        return sql


@dataclass(frozen=True)
class SystemTableDef:
    name: str
    columns: tuple[ColumnDef, ...]
    unique: tuple[tuple[str, ...], ...] = ()
    indexes: tuple[IndexDef, ...] = ()

    def render(self, schema: TrustedIdentifier) -> list[str]:
        """CREATE TABLE IF NOT EXISTS plus its indexes."""
        table = validate_identifier(self.name)
        body = [c.render(schema) for c in self.columns]
        for columns in self.unique:
            body.append("UNIQUE (" + ", ".join(quote_ident(validate_identifier(c)) for c in columns) + ")")
        statements = [
            f"CREATE TABLE IF NOT EXISTS {qualified(schema, table)} (\n    " + ",\n    ".join(body) + "\n)"
        ]
        statements.extend(index.render(schema, table) for index in self.indexes)
        return statements


def _jsonb(name: str, nullable: bool = False) -> ColumnDef:
    if nullable:
        return ColumnDef(name, "JSONB")
    return ColumnDef(name, "JSONB", nullable=False, default="'{}'::jsonb")


# Platform-level bookkeeping (_upl_*)
UPL_COLUMNS: tuple[ColumnDef, ...] = (
    ColumnDef("_upl_created_at", "TIMESTAMPTZ", nullable=False, default="now()"),
    ColumnDef("_upl_created_by", "UUID"),
    ColumnDef("_upl_updated_at", "TIMESTAMPTZ", nullable=False, default="now()"),
    ColumnDef("_upl_updated_by", "UUID"),
    ColumnDef("_upl_version", "INTEGER", nullable=False, default="1"),
    ColumnDef("_upl_archived", "BOOLEAN", nullable=False, default="false"),
    ColumnDef("_upl_archived_at", "TIMESTAMPTZ"),
    ColumnDef("_upl_archived_by", "UUID"),
    ColumnDef("_upl_deleted", "BOOLEAN", nullable=False, default="false"),
    ColumnDef("_upl_deleted_at", "TIMESTAMPTZ"),
    ColumnDef("_upl_deleted_by", "UUID"),
    ColumnDef("_upl_purge_after", "TIMESTAMPTZ"),
    ColumnDef("_upl_locked", "BOOLEAN", nullable=False, default="false"),
    ColumnDef("_upl_locked_at", "TIMESTAMPTZ"),
    ColumnDef("_upl_locked_by", "UUID"),
    ColumnDef("_upl_locked_reason", "TEXT"),
)

# Application-level publish/archive/delete (_app_*)
APP_STATUS_COLUMNS: tuple[ColumnDef, ...] = (
    ColumnDef("_app_published", "BOOLEAN", nullable=False, default="true"),
    ColumnDef("_app_published_at", "TIMESTAMPTZ"),
    ColumnDef("_app_published_by", "UUID"),
    ColumnDef("_app_archived", "BOOLEAN", nullable=False, default="false"),
    ColumnDef("_app_archived_at", "TIMESTAMPTZ"),
    ColumnDef("_app_archived_by", "UUID"),
    ColumnDef("_app_deleted", "BOOLEAN", nullable=False, default="false"),
    ColumnDef("_app_deleted_at", "TIMESTAMPTZ"),
    ColumnDef("_app_deleted_by", "UUID"),
)

APP_ACCESS_COLUMNS: tuple[ColumnDef, ...] = (
    ColumnDef("_app_owner_id", "UUID"),
    ColumnDef("_app_access_level", "VARCHAR(20)", nullable=False, default="'private'"),
)

# Every user table (entity or tabular part)
BOOKKEEPING_COLUMNS = UPL_COLUMNS + APP_STATUS_COLUMNS + APP_ACCESS_COLUMNS

SYSTEM_BOOKKEEPING_COLUMNS = UPL_COLUMNS + APP_STATUS_COLUMNS

BOOKKEEPING_INDEXES: tuple[IndexDef, ...] = (
    IndexDef("upl_deleted", ("_upl_deleted_at",), where="_upl_deleted = true"),
    IndexDef("app_deleted", ("_app_deleted_at",), where="_app_deleted = true"),
    IndexDef("app_owner", ("_app_owner_id",), where="_app_owner_id IS NOT NULL"),
)

ID_COLUMN = ColumnDef("id", "UUID", primary_key=True, default="gen_random_uuid()")


SYSTEM_TABLES: tuple[SystemTableDef, ...] = (
    SystemTableDef(
        name=OBJECTS_TABLE,
        columns=(
            ColumnDef("id", "UUID", primary_key=True),
            ColumnDef("kind", "VARCHAR(20)", nullable=False),
            ColumnDef("codename", "VARCHAR(100)", nullable=False),
            # NULL for enumerations (no physical table)
            ColumnDef("table_name", "VARCHAR(255)"),
            _jsonb("presentation"),
            _jsonb("config"),
            *SYSTEM_BOOKKEEPING_COLUMNS,
        ),
        unique=(("kind", "codename"), ("table_name",)),
    ),
    SystemTableDef(
        name=ATTRIBUTES_TABLE,
        columns=(
            ColumnDef("id", "UUID", primary_key=True),
            ColumnDef("object_id", "UUID", nullable=False, references=OBJECTS_TABLE, on_delete="CASCADE"),
            ColumnDef("codename", "VARCHAR(100)", nullable=False),
            ColumnDef("column_name", "VARCHAR(255)", nullable=False),
            ColumnDef("data_type", "VARCHAR(20)", nullable=False),
            ColumnDef("is_required", "BOOLEAN", nullable=False, default="false"),
            ColumnDef("target_object_id", "UUID", references=OBJECTS_TABLE, on_delete="SET NULL"),
            ColumnDef("target_object_kind", "VARCHAR(20)"),
            ColumnDef("parent_attribute_id", "UUID", references=ATTRIBUTES_TABLE, on_delete="CASCADE"),
            _jsonb("presentation"),
            _jsonb("validation_rules"),
            _jsonb("ui_config"),
            *SYSTEM_BOOKKEEPING_COLUMNS,
        ),
        unique=(("object_id", "column_name"),),
        indexes=(
            IndexDef("object", ("object_id",)),
            IndexDef("parent", ("parent_attribute_id",), where="parent_attribute_id IS NOT NULL"),
        ),
    ),
    SystemTableDef(
        name=VALUES_TABLE,
        columns=(
            ID_COLUMN,
            ColumnDef("object_id", "UUID", nullable=False, references=OBJECTS_TABLE, on_delete="CASCADE"),
            ColumnDef("codename", "VARCHAR(100)", nullable=False),
            _jsonb("presentation"),
            ColumnDef("sort_order", "INTEGER", nullable=False, default="0"),
            ColumnDef("is_default", "BOOLEAN", nullable=False, default="false"),
            *SYSTEM_BOOKKEEPING_COLUMNS,
        ),
        unique=(("object_id", "codename"),),
        indexes=(
            IndexDef(
                "default",
                ("object_id",),
                unique=True,
                where="is_default = true AND _upl_deleted = false AND _app_deleted = false",
            ),
        ),
    ),
    SystemTableDef(
        name=LAYOUTS_TABLE,
        columns=(
            ID_COLUMN,
            ColumnDef("codename", "VARCHAR(100)", nullable=False),
            ColumnDef("template_key", "VARCHAR(100)", nullable=False, default="'dashboard'"),
            ColumnDef("is_default", "BOOLEAN", nullable=False, default="false"),
            ColumnDef("is_active", "BOOLEAN", nullable=False, default="true"),
            ColumnDef("sort_order", "INTEGER", nullable=False, default="0"),
            _jsonb("presentation"),
            _jsonb("config"),
            *SYSTEM_BOOKKEEPING_COLUMNS,
        ),
        unique=(("codename",),),
    ),
    SystemTableDef(
        name=WIDGETS_TABLE,
        columns=(
            ID_COLUMN,
            ColumnDef("layout_id", "UUID", nullable=False, references=LAYOUTS_TABLE, on_delete="CASCADE"),
            ColumnDef("zone", "VARCHAR(50)", nullable=False),
            ColumnDef("widget_key", "VARCHAR(100)", nullable=False),
            ColumnDef("sort_order", "INTEGER", nullable=False, default="0"),
            _jsonb("config"),
            *SYSTEM_BOOKKEEPING_COLUMNS,
        ),
        indexes=(IndexDef("layout_zone", ("layout_id", "zone")),),
    ),
    SystemTableDef(
        name=SETTINGS_TABLE,
        columns=(
            ID_COLUMN,
            ColumnDef("key", "VARCHAR(100)", nullable=False),
            _jsonb("value"),
            *SYSTEM_BOOKKEEPING_COLUMNS,
        ),
        unique=(("key",),),
    ),
    SystemTableDef(
        name=MIGRATIONS_TABLE,
        columns=(
            ID_COLUMN,
            ColumnDef("name", "VARCHAR(255)", nullable=False),
            ColumnDef("applied_at", "TIMESTAMPTZ", nullable=False, default="now()"),
            _jsonb("meta"),
            _jsonb("publication_snapshot", nullable=True),
            *SYSTEM_BOOKKEEPING_COLUMNS,
        ),
        unique=(("name",),),
        indexes=(IndexDef("applied_at", ("applied_at",)),),
    ),
)

SYSTEM_TABLE_NAMES: tuple[str, ...] = tuple(t.name for t in SYSTEM_TABLES)
