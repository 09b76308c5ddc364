"""
Schema cloner.

Copies one generated schema into another: table structure (LIKE ...
INCLUDING ALL), optionally the rows, and then every foreign key, repointed at
the target schema. Used to branch a metahub schema (mhb_<id> -> mhb_<id>_b<n>).

Foreign keys are read with pg_get_constraintdef while search_path is
pg_catalog, so every REFERENCES clause comes back schema-qualified and can be
rewritten reliably.

Invariants:
    - Runs in one transaction
    - Constraints are recreated only after every table exists
    - Tables already in the target are skipped, so a re-run fills in only
      what is missing
    - References to schemas other than source/target are kept verbatim
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from ..schema.naming import validate_identifier, validate_schema_name
from .database import qualified, quote_ident

logger = logging.getLogger(__name__)

_REFERENCES_PATTERN = re.compile(r'REFERENCES\s+("(?:[^"]|"")+"|[A-Za-z_][A-Za-z0-9_$]*)\.')


@dataclass
class CloneOptions:
    source_schema: str
    target_schema: str
    drop_target_schema_if_exists: bool = False
    create_target_schema: bool = True
    copy_data: bool = True


@dataclass
class CloneResult:
    tables_copied: int = 0
    tables_skipped: int = 0
    rows_copied: int = 0
    foreign_keys_created: int = 0
    foreign_keys_skipped: int = 0


def _unquote(identifier: str) -> str:
    if identifier.startswith('"') and identifier.endswith('"'):
        return identifier[1:-1].replace('""', '"')
    return identifier


def rewrite_fk_definition(definition: str, source_schema: str, target_schema: str) -> str:
    """Repoint REFERENCES <source|target>.<table> at the target schema.

    Any other schema qualifier is left as is.
    """

    def replace(match: re.Match[str]) -> str:
        schema = _unquote(match.group(1))
        if schema in (source_schema, target_schema):
            return f'REFERENCES "{target_schema}".'
        return match.group(0)

    return _REFERENCES_PATTERN.sub(replace, definition)


class SchemaCloner:
    """Clones a schema within one database.

    Example:
        >>> cloner = SchemaCloner(engine)
        >>> result = await cloner.clone(CloneOptions("mhb_...", "mhb_..._b1"))
        >>> result.tables_copied
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    async def clone(self, options: CloneOptions) -> CloneResult:
        """Clone source_schema into target_schema.

        Raises:
            InvalidIdentifierError: If either schema name is not a generated shape
            ValueError: If source and target are the same schema
        """
        source = validate_schema_name(options.source_schema)
        target = validate_schema_name(options.target_schema)
        if source == target:
            raise ValueError("Source and target schemas must differ")

        result = CloneResult()
        async with self.engine.begin() as conn:
            await conn.execute(text("SET LOCAL search_path TO pg_catalog"))

            if options.drop_target_schema_if_exists:
                await conn.execute(text(f"DROP SCHEMA IF EXISTS {quote_ident(target)} CASCADE"))
            if options.create_target_schema:
                await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {quote_ident(target)}"))

            tables_result = await conn.execute(
                text(
                    "SELECT table_name FROM information_schema.tables "
                    "WHERE table_schema = :schema AND table_type = 'BASE TABLE' "
                    "ORDER BY table_name"
                ),
                {"schema": source.value},
            )
            tables = [validate_identifier(row[0]) for row in tables_result.fetchall()]

            present_result = await conn.execute(
                text("SELECT tablename FROM pg_catalog.pg_tables WHERE schemaname = :schema"),
                {"schema": target.value},
            )
            present = {row[0] for row in present_result.fetchall()}

            for table in tables:
                # Left over from an earlier run: keep its structure and rows
                if table.value in present:
                    result.tables_skipped += 1
                    continue
                await conn.execute(
                    text(
                        f"CREATE TABLE IF NOT EXISTS {qualified(target, table)} "
                        f"(LIKE {qualified(source, table)} INCLUDING ALL)"
                    )
                )
                result.tables_copied += 1
                if options.copy_data:
                    copied = await conn.execute(
                        text(f"INSERT INTO {qualified(target, table)} SELECT * FROM {qualified(source, table)}")
                    )
                    result.rows_copied += max(copied.rowcount or 0, 0)

            fk_result = await conn.execute(
                text(
                    "SELECT rel.relname AS table_name, con.conname AS constraint_name, "
                    "pg_get_constraintdef(con.oid) AS definition "
                    "FROM pg_constraint con "
                    "JOIN pg_class rel ON rel.oid = con.conrelid "
                    "JOIN pg_namespace nsp ON nsp.oid = rel.relnamespace "
                    "WHERE nsp.nspname = :schema AND con.contype = 'f' "
                    "ORDER BY rel.relname, con.conname"
                ),
                {"schema": source.value},
            )
            foreign_keys = fk_result.mappings().all()

            existing_result = await conn.execute(
                text(
                    "SELECT rel.relname AS table_name, con.conname AS constraint_name "
                    "FROM pg_constraint con "
                    "JOIN pg_class rel ON rel.oid = con.conrelid "
                    "JOIN pg_namespace nsp ON nsp.oid = rel.relnamespace "
                    "WHERE nsp.nspname = :schema"
                ),
                {"schema": target.value},
            )
            existing = {(row["table_name"], row["constraint_name"]) for row in existing_result.mappings().all()}

            for fk in foreign_keys:
                if (fk["table_name"], fk["constraint_name"]) in existing:
                    result.foreign_keys_skipped += 1
                    continue
                table = validate_identifier(fk["table_name"])
                constraint = validate_identifier(fk["constraint_name"])
                definition = rewrite_fk_definition(fk["definition"], source.value, target.value)
                await conn.execute(
                    text(
                        f"ALTER TABLE {qualified(target, table)} "
                        f"ADD CONSTRAINT {quote_ident(constraint)} {definition}"
                    )
                )
                result.foreign_keys_created += 1

        logger.info(
            "Schema cloned",
            extra={
                "source_schema": source.value,
                "target_schema": target.value,
                "tables_copied": result.tables_copied,
                "tables_skipped": result.tables_skipped,
                "rows_copied": result.rows_copied,
                "foreign_keys_created": result.foreign_keys_created,
                "foreign_keys_skipped": result.foreign_keys_skipped,
            },
        )
        return result
