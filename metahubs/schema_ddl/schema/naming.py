"""
Physical naming for generated schemas.

Every physical name is a pure function of a stable UUID:
- schema:        app_<hex>                 (application schema)
- branch schema: mhb_<hex> / mhb_<hex>_b<n>
- table:         cat_/hub_/doc_/enum_<hex>  (prefix by entity kind)
- column:        attr_<hex>
- tabular table: <parent>_tp_<12 hex of field id>, capped at 63 chars

TrustedIdentifier is the only type the SQL helpers accept. It can only be
constructed through validation, so any code path that assembles raw DDL text
is limited to names that passed the allow-list.

Invariants:
    - Names never depend on codenames
    - Generated names never exceed PostgreSQL's 63 character limit
    - The tabular infix and suffix survive truncation of the parent name
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass

from ..errors import InvalidIdentifierError
from .types import EntityKind

MAX_IDENTIFIER_LENGTH = 63

SCHEMA_PREFIX = "app_"
BRANCH_SCHEMA_PREFIX = "mhb_"
COLUMN_PREFIX = "attr_"
TABULAR_INFIX = "_tp_"
TABULAR_SUFFIX_LENGTH = 12

TABLE_PREFIXES: dict[EntityKind, str] = {
    EntityKind.CATALOG: "cat_",
    EntityKind.HUB: "hub_",
    EntityKind.DOCUMENT: "doc_",
    EntityKind.ENUMERATION: "enum_",
}

IDENTIFIER_PATTERN = re.compile(r"^[a-z_][a-z0-9_]*$")
SCHEMA_NAME_PATTERN = re.compile(r"^(app_[0-9a-f]{32}|mhb_[0-9a-f]{32}(_b[1-9][0-9]*)?)$")


@dataclass(frozen=True)
class TrustedIdentifier:
    """A SQL identifier that passed the allow-list.

    Construction validates, so holding an instance proves validation.
    """

    value: str

    def __post_init__(self) -> None:
        if not isinstance(self.value, str) or not self.value:
            raise InvalidIdentifierError(str(self.value), "identifier must be a non-empty string")
        if len(self.value) > MAX_IDENTIFIER_LENGTH:
            raise InvalidIdentifierError(
                self.value, f"longer than {MAX_IDENTIFIER_LENGTH} characters"
            )
        if not IDENTIFIER_PATTERN.match(self.value):
            raise InvalidIdentifierError(self.value, "must match ^[a-z_][a-z0-9_]*$")

    def __str__(self) -> str:
        return self.value

    @property
    def quoted(self) -> str:
        return f'"{self.value}"'


def validate_identifier(name: str | TrustedIdentifier) -> TrustedIdentifier:
    """Validate a table/column/constraint/schema name against the allow-list."""
    if isinstance(name, TrustedIdentifier):
        return name
    return TrustedIdentifier(name)


def is_valid_schema_name(name: str) -> bool:
    return isinstance(name, str) and SCHEMA_NAME_PATTERN.match(name) is not None


def validate_schema_name(name: str | TrustedIdentifier) -> TrustedIdentifier:
    """Validate that a schema name has one of the generated shapes.

    Raises:
        InvalidIdentifierError: If the name is not app_<32 hex> or
            mhb_<32 hex>[_b<n>]
    """
    value = name.value if isinstance(name, TrustedIdentifier) else name
    if not is_valid_schema_name(value):
        raise InvalidIdentifierError(str(value), "not a generated schema name")
    return TrustedIdentifier(value)


def clean_id(uuid: str) -> str:
    """Strip hyphens from a UUID and lowercase it."""
    return uuid.replace("-", "").lower()


def generate_schema_name(application_id: str) -> str:
    return f"{SCHEMA_PREFIX}{clean_id(application_id)}"


def generate_branch_schema_name(metahub_id: str, branch_number: int | None = None) -> str:
    """Build the schema name for a metahub branch.

    The main branch has no suffix; numbered branches get _b<n> (n >= 1).
    """
    base = f"{BRANCH_SCHEMA_PREFIX}{clean_id(metahub_id)}"
    if branch_number is None:
        return base
    if branch_number < 1:
        raise ValueError(f"branch_number must be >= 1, got {branch_number}")
    return f"{base}_b{branch_number}"


def generate_table_name(entity_id: str, kind: EntityKind | str) -> str:
    prefix = TABLE_PREFIXES[EntityKind.from_str(kind)]
    return f"{prefix}{clean_id(entity_id)}"


def generate_column_name(field_id: str) -> str:
    return f"{COLUMN_PREFIX}{clean_id(field_id)}"


def generate_tabular_table_name(parent_table_name: str, field_id: str) -> str:
    """Child table name for a TABLE field.

    The parent name is truncated so that the infix and the 12 character field
    suffix always fit within the identifier limit.
    """
    suffix = f"{TABULAR_INFIX}{clean_id(field_id)[:TABULAR_SUFFIX_LENGTH]}"
    head = parent_table_name[: MAX_IDENTIFIER_LENGTH - len(suffix)]
    return f"{head}{suffix}"


def build_fk_constraint_name(table_name: str, column_name: str) -> str:
    """Foreign key constraint name, unique per (table, column).

    Short names are kept readable; names over the limit are shortened with a
    digest of the full pair so two columns of one long table never collide.
    """
    name = f"fk_{table_name}_{column_name}"
    if len(name) <= MAX_IDENTIFIER_LENGTH:
        return name
    digest = hashlib.sha1(f"{table_name}.{column_name}".encode()).hexdigest()[:10]
    return f"{name[: MAX_IDENTIFIER_LENGTH - len(digest) - 1]}_{digest}"


def build_index_name(table_name: str, suffix: str) -> str:
    """Index name idx_<table>_<suffix> with the suffix preserved on truncation."""
    tail = f"_{suffix}"
    head = f"idx_{table_name}"[: MAX_IDENTIFIER_LENGTH - len(tail)]
    return f"{head}{tail}"
