"""
Schema diff engine.

Compares the last recorded SchemaSnapshot against a new list of entity
definitions and classifies every structural change:
- additive: safe to apply automatically
- destructive: may lose data, requires explicit confirmation

Rules (per non-enumeration entity):
    - no prior snapshot             -> ADD_TABLE per entity
    - entity removed                -> DROP_TABULAR_TABLE per TABLE field + DROP_TABLE
    - kind changed                  -> the same drops (old) + ADD_TABLE (new)
    - field added                   -> ADD_COLUMN (+ ADD_FK for targeted REF)
    - TABLE field added             -> ADD_TABULAR_TABLE (+ ADD_FK per REF child)
    - field removed                 -> DROP_COLUMN / DROP_TABULAR_TABLE
    - data type changed             -> ALTER_COLUMN (destructive)
    - nullable -> required          -> ALTER_COLUMN (destructive)
    - required -> nullable          -> ALTER_COLUMN (additive)
    - target entity changed         -> DROP_FK (old) + ADD_FK (new)
    - only target kind changed      -> MODIFY_FIELD (metadata only)
    - children of retained TABLE fields get the same rules one level deep,
      as *_TABULAR_* changes against the child table

Invariants:
    - Codename edits never produce changes
    - Enumeration entities never appear in a diff
    - diff(snapshot_of(E), E) has no changes

Example:
    >>> diff = calculate_schema_diff(previous_snapshot, entities)
    >>> if diff.destructive:
    ...     print(diff.summary)
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import UnknownChangeTypeError
from .naming import generate_column_name, generate_table_name, generate_tabular_table_name
from .snapshot import EntitySnapshot, FieldSnapshot, SchemaSnapshot
from .types import (
    AttributeDataType,
    EntityDefinition,
    EntityKind,
    FieldDefinition,
    validate_entities,
)

logger = logging.getLogger(__name__)


class ChangeType(Enum):
    """Kinds of schema changes. One migrator handler exists per member."""

    ADD_TABLE = "ADD_TABLE"
    DROP_TABLE = "DROP_TABLE"
    RENAME_TABLE = "RENAME_TABLE"
    ADD_COLUMN = "ADD_COLUMN"
    DROP_COLUMN = "DROP_COLUMN"
    ALTER_COLUMN = "ALTER_COLUMN"
    MODIFY_FIELD = "MODIFY_FIELD"
    ADD_FK = "ADD_FK"
    DROP_FK = "DROP_FK"
    ADD_TABULAR_TABLE = "ADD_TABULAR_TABLE"
    DROP_TABULAR_TABLE = "DROP_TABULAR_TABLE"
    ADD_TABULAR_COLUMN = "ADD_TABULAR_COLUMN"
    DROP_TABULAR_COLUMN = "DROP_TABULAR_COLUMN"
    ALTER_TABULAR_COLUMN = "ALTER_TABULAR_COLUMN"

    @classmethod
    def from_str(cls, value: str | ChangeType) -> ChangeType:
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise UnknownChangeTypeError(value) from None


NULLABLE = "nullable"
REQUIRED = "required"


@dataclass(frozen=True)
class SchemaChange:
    """A single classified schema change.

    Attributes:
        change_type: What kind of DDL action this is
        is_destructive: Whether applying it may lose data
        description: Human-readable preview text
        entity_id: Owning entity id
        entity_kind: Owning entity kind
        entity_codename: Owning entity codename (display only)
        table_name: Physical table the change targets (child table for
            tabular changes)
        field_id: Field id, for field-level changes
        field_codename: Field codename (display only)
        column_name: Physical column name, for column-level changes
        parent_field_id: Owning TABLE field for tabular-part children
        old_value: Previous value (data type, nullability, target id...)
        new_value: New value
    """

    change_type: ChangeType
    is_destructive: bool
    description: str
    entity_id: str | None = None
    entity_kind: EntityKind | None = None
    entity_codename: str | None = None
    table_name: str | None = None
    field_id: str | None = None
    field_codename: str | None = None
    column_name: str | None = None
    parent_field_id: str | None = None
    old_value: Any = None
    new_value: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON shape stored in migration history."""
        return {
            "type": self.change_type.value,
            "entityId": self.entity_id,
            "entityKind": self.entity_kind.value if self.entity_kind else None,
            "entityCodename": self.entity_codename,
            "tableName": self.table_name,
            "fieldId": self.field_id,
            "fieldCodename": self.field_codename,
            "columnName": self.column_name,
            "parentFieldId": self.parent_field_id,
            "oldValue": self.old_value,
            "newValue": self.new_value,
            "isDestructive": self.is_destructive,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SchemaChange:
        """Create from a stored change record.

        Raises:
            UnknownChangeTypeError: If the record's type is not known
        """
        kind = data.get("entityKind")
        return cls(
            change_type=ChangeType.from_str(data["type"]),
            is_destructive=bool(data.get("isDestructive", False)),
            description=data.get("description", ""),
            entity_id=data.get("entityId"),
            entity_kind=EntityKind.from_str(kind) if kind else None,
            entity_codename=data.get("entityCodename"),
            table_name=data.get("tableName"),
            field_id=data.get("fieldId"),
            field_codename=data.get("fieldCodename"),
            column_name=data.get("columnName"),
            parent_field_id=data.get("parentFieldId"),
            old_value=data.get("oldValue"),
            new_value=data.get("newValue"),
        )


@dataclass
class SchemaDiff:
    """Classified difference between two schema states."""

    additive: list[SchemaChange] = field(default_factory=list)
    destructive: list[SchemaChange] = field(default_factory=list)
    has_changes: bool = False
    summary: str = ""

    def all_changes(self) -> list[SchemaChange]:
        """Destructive changes first, then additive (application order)."""
        return [*self.destructive, *self.additive]

    def to_dict(self) -> dict[str, Any]:
        return {
            "hasChanges": self.has_changes,
            "additive": [c.to_dict() for c in self.additive],
            "destructive": [c.to_dict() for c in self.destructive],
            "summary": self.summary,
        }


def build_summary(diff: SchemaDiff) -> str:
    parts = []
    if diff.additive:
        parts.append(f"{len(diff.additive)} additive change(s)")
    if diff.destructive:
        parts.append(f"{len(diff.destructive)} DESTRUCTIVE change(s)")
    return ", ".join(parts) if parts else "No changes"


def _entity_change(
    change_type: ChangeType,
    entity: EntityDefinition,
    table_name: str,
    description: str,
    is_destructive: bool,
) -> SchemaChange:
    return SchemaChange(
        change_type=change_type,
        is_destructive=is_destructive,
        description=description,
        entity_id=entity.id,
        entity_kind=entity.kind,
        entity_codename=entity.codename,
        table_name=table_name,
    )


def _add_table(entity: EntityDefinition, description: str | None = None, is_destructive: bool = False) -> SchemaChange:
    return _entity_change(
        ChangeType.ADD_TABLE,
        entity,
        generate_table_name(entity.id, entity.kind),
        description or f'Create table "{entity.codename}"',
        is_destructive,
    )


def _drop_table(entity_id: str, old: EntitySnapshot, suffix: str) -> SchemaChange:
    return SchemaChange(
        change_type=ChangeType.DROP_TABLE,
        is_destructive=True,
        description=f'Drop table "{old.codename}" {suffix}',
        entity_id=entity_id,
        entity_kind=old.kind,
        entity_codename=old.codename,
        table_name=old.table_name,
    )


def _drop_entity_tables(diff: SchemaDiff, entity_id: str, old: EntitySnapshot, suffix: str) -> None:
    """Drop an entity's child tables, then the entity table itself."""
    for field_id, old_f in old.fields.items():
        if not old_f.is_table:
            continue
        diff.destructive.append(
            SchemaChange(
                change_type=ChangeType.DROP_TABULAR_TABLE,
                is_destructive=True,
                description=f'Drop tabular part "{old_f.codename}" of "{old.codename}" {suffix}',
                entity_id=entity_id,
                entity_kind=old.kind,
                entity_codename=old.codename,
                table_name=old_f.child_table_name,
                field_id=field_id,
                field_codename=old_f.codename,
                old_value=AttributeDataType.TABLE.value,
            )
        )
    diff.destructive.append(_drop_table(entity_id, old, suffix))


def _field_change(
    change_type: ChangeType,
    entity: EntityDefinition,
    table_name: str,
    field_id: str,
    field_codename: str,
    column_name: str | None,
    description: str,
    is_destructive: bool,
    parent_field_id: str | None = None,
    old_value: Any = None,
    new_value: Any = None,
) -> SchemaChange:
    return SchemaChange(
        change_type=change_type,
        is_destructive=is_destructive,
        description=description,
        entity_id=entity.id,
        entity_kind=entity.kind,
        entity_codename=entity.codename,
        table_name=table_name,
        field_id=field_id,
        field_codename=field_codename,
        column_name=column_name,
        parent_field_id=parent_field_id,
        old_value=old_value,
        new_value=new_value,
    )


def _add_fk(
    entity: EntityDefinition,
    table_name: str,
    f: FieldDefinition,
    parent_field_id: str | None = None,
) -> SchemaChange:
    return _field_change(
        ChangeType.ADD_FK,
        entity,
        table_name,
        f.id,
        f.codename,
        generate_column_name(f.id),
        f'Add FK on "{f.codename}"',
        False,
        parent_field_id=parent_field_id,
        new_value=f.target_entity_id,
    )


def _drop_fk(
    entity: EntityDefinition,
    table_name: str,
    field_id: str,
    old_f: FieldSnapshot,
    parent_field_id: str | None = None,
) -> SchemaChange:
    return _field_change(
        ChangeType.DROP_FK,
        entity,
        table_name,
        field_id,
        old_f.codename,
        old_f.column_name,
        f'Drop FK on "{old_f.codename}"',
        True,
        parent_field_id=parent_field_id,
        old_value=old_f.target_entity_id,
    )


def _has_fk(data_type: AttributeDataType, target_entity_id: str | None) -> bool:
    return data_type is AttributeDataType.REF and bool(target_entity_id)


def _added_field(diff: SchemaDiff, entity: EntityDefinition, table_name: str, f: FieldDefinition) -> None:
    if f.is_table:
        child_table = generate_tabular_table_name(table_name, f.id)
        diff.additive.append(
            _field_change(
                ChangeType.ADD_TABULAR_TABLE,
                entity,
                child_table,
                f.id,
                f.codename,
                None,
                f'Create tabular part "{f.codename}" on "{entity.codename}"',
                False,
                new_value=AttributeDataType.TABLE.value,
            )
        )
        for child in entity.child_fields(f.id):
            if _has_fk(child.data_type, child.target_entity_id):
                diff.additive.append(_add_fk(entity, child_table, child, parent_field_id=f.id))
        return

    diff.additive.append(
        _field_change(
            ChangeType.ADD_COLUMN,
            entity,
            table_name,
            f.id,
            f.codename,
            generate_column_name(f.id),
            f'Add column "{f.codename}" ({f.data_type.value}) to "{entity.codename}"',
            False,
            new_value=f.data_type.value,
        )
    )
    if _has_fk(f.data_type, f.target_entity_id):
        diff.additive.append(_add_fk(entity, table_name, f))


def _removed_field(
    diff: SchemaDiff,
    entity: EntityDefinition,
    table_name: str,
    field_id: str,
    old_f: FieldSnapshot,
) -> None:
    if old_f.is_table:
        diff.destructive.append(
            _field_change(
                ChangeType.DROP_TABULAR_TABLE,
                entity,
                old_f.column_name,
                field_id,
                old_f.codename,
                None,
                f'Drop tabular part "{old_f.codename}" from "{entity.codename}" (DATA WILL BE LOST)',
                True,
                old_value=AttributeDataType.TABLE.value,
            )
        )
        return

    diff.destructive.append(
        _field_change(
            ChangeType.DROP_COLUMN,
            entity,
            table_name,
            field_id,
            old_f.codename,
            old_f.column_name,
            f'Drop column "{old_f.codename}" from "{entity.codename}" (DATA WILL BE LOST)',
            True,
            old_value=old_f.data_type.value,
        )
    )


def _diff_column(
    diff: SchemaDiff,
    entity: EntityDefinition,
    table_name: str,
    f: FieldDefinition,
    old_f: FieldSnapshot,
    parent: FieldDefinition | None = None,
) -> None:
    """Compare a retained column (top-level, or a child of a TABLE field)."""
    alter_type = ChangeType.ALTER_TABULAR_COLUMN if parent else ChangeType.ALTER_COLUMN
    location = f' in "{parent.codename}"' if parent else ""
    parent_id = parent.id if parent else None

    def change(change_type: ChangeType, description: str, destructive: bool, old: Any, new: Any) -> SchemaChange:
        return _field_change(
            change_type,
            entity,
            table_name,
            f.id,
            f.codename,
            old_f.column_name,
            description,
            destructive,
            parent_field_id=parent_id,
            old_value=old,
            new_value=new,
        )

    if old_f.data_type is not f.data_type:
        diff.destructive.append(
            change(
                alter_type,
                f'Change type of "{f.codename}"{location} from {old_f.data_type.value} to {f.data_type.value}',
                True,
                old_f.data_type.value,
                f.data_type.value,
            )
        )

    if not old_f.is_required and f.is_required:
        diff.destructive.append(
            change(
                alter_type,
                f'Make "{f.codename}"{location} required (may fail if NULLs exist)',
                True,
                NULLABLE,
                REQUIRED,
            )
        )
    elif old_f.is_required and not f.is_required:
        diff.additive.append(
            change(alter_type, f'Make "{f.codename}"{location} optional', False, REQUIRED, NULLABLE)
        )

    if old_f.target_entity_id != f.target_entity_id:
        if old_f.target_entity_id:
            diff.destructive.append(_drop_fk(entity, table_name, f.id, old_f, parent_field_id=parent_id))
        if _has_fk(f.data_type, f.target_entity_id):
            diff.additive.append(_add_fk(entity, table_name, f, parent_field_id=parent_id))
    elif old_f.target_entity_kind is not f.target_entity_kind:
        old_kind = old_f.target_entity_kind.value if old_f.target_entity_kind else None
        new_kind = f.target_entity_kind.value if f.target_entity_kind else None
        diff.additive.append(
            change(
                ChangeType.MODIFY_FIELD,
                f'Change target kind of "{f.codename}"{location} from {old_kind} to {new_kind}',
                False,
                old_kind,
                new_kind,
            )
        )


def _diff_tabular_children(
    diff: SchemaDiff,
    entity: EntityDefinition,
    table_field: FieldDefinition,
    old_table_field: FieldSnapshot,
) -> None:
    child_table = old_table_field.column_name
    old_children = old_table_field.child_fields or {}
    new_children = entity.child_fields(table_field.id)
    new_ids = {c.id for c in new_children}

    for child in new_children:
        if child.id in old_children:
            continue
        diff.additive.append(
            _field_change(
                ChangeType.ADD_TABULAR_COLUMN,
                entity,
                child_table,
                child.id,
                child.codename,
                generate_column_name(child.id),
                f'Add column "{child.codename}" ({child.data_type.value}) to tabular part "{table_field.codename}"',
                False,
                parent_field_id=table_field.id,
                new_value=child.data_type.value,
            )
        )
        if _has_fk(child.data_type, child.target_entity_id):
            diff.additive.append(_add_fk(entity, child_table, child, parent_field_id=table_field.id))

    for child_id, old_child in old_children.items():
        if child_id in new_ids:
            continue
        if old_child.target_entity_id:
            diff.destructive.append(
                _drop_fk(entity, child_table, child_id, old_child, parent_field_id=table_field.id)
            )
        diff.destructive.append(
            _field_change(
                ChangeType.DROP_TABULAR_COLUMN,
                entity,
                child_table,
                child_id,
                old_child.codename,
                old_child.column_name,
                f'Drop column "{old_child.codename}" from tabular part "{table_field.codename}" (DATA WILL BE LOST)',
                True,
                parent_field_id=table_field.id,
                old_value=old_child.data_type.value,
            )
        )

    for child in new_children:
        old_child = old_children.get(child.id)
        if old_child is not None:
            _diff_column(diff, entity, child_table, child, old_child, parent=table_field)


def _diff_entity_fields(diff: SchemaDiff, entity: EntityDefinition, old: EntitySnapshot) -> None:
    table_name = generate_table_name(entity.id, entity.kind)
    new_fields = entity.top_level_fields()
    new_ids = {f.id for f in new_fields}

    for f in new_fields:
        if f.id not in old.fields:
            _added_field(diff, entity, table_name, f)

    for field_id, old_f in old.fields.items():
        if field_id not in new_ids:
            _removed_field(diff, entity, table_name, field_id, old_f)

    for f in new_fields:
        old_f = old.fields.get(f.id)
        if old_f is None:
            continue
        if old_f.is_table != f.is_table:
            # Storage moves between a column and a child table
            _removed_field(diff, entity, table_name, f.id, old_f)
            _added_field(diff, entity, table_name, f)
        elif f.is_table:
            _diff_tabular_children(diff, entity, f, old_f)
        else:
            _diff_column(diff, entity, table_name, f, old_f)


def calculate_schema_diff(
    old_snapshot: SchemaSnapshot | None,
    new_entities: Iterable[EntityDefinition],
) -> SchemaDiff:
    """Compute the classified diff between a snapshot and new definitions.

    Args:
        old_snapshot: Last recorded snapshot, or None for a fresh schema
        new_entities: Current entity definitions

    Returns:
        SchemaDiff with additive and destructive changes

    Raises:
        EntityDefinitionError: If the new definitions are invalid
    """
    entities = list(new_entities)
    validate_entities(entities)
    physical = [e for e in entities if not e.is_enumeration]
    diff = SchemaDiff()

    if old_snapshot is None:
        diff.additive.extend(_add_table(entity) for entity in physical)
        diff.has_changes = len(diff.additive) > 0
        diff.summary = f"{len(diff.additive)} new table(s)"
        return diff

    old_entities = {
        entity_id: old
        for entity_id, old in old_snapshot.entities.items()
        if old.kind is not EntityKind.ENUMERATION
    }
    new_ids = {e.id for e in physical}

    for entity in physical:
        if entity.id not in old_entities:
            diff.additive.append(_add_table(entity))

    for entity_id, old in old_entities.items():
        if entity_id not in new_ids:
            _drop_entity_tables(diff, entity_id, old, "(DATA WILL BE LOST)")

    for entity in physical:
        old = old_entities.get(entity.id)
        if old is None:
            continue

        if old.kind is not entity.kind:
            _drop_entity_tables(diff, entity.id, old, "(kind changed)")
            diff.additive.append(
                _add_table(entity, f'Create table "{entity.codename}" (kind changed)', is_destructive=True)
            )
            continue

        if old.codename != entity.codename:
            logger.info(
                "Entity codename changed; physical table name unchanged",
                extra={
                    "entity_id": entity.id,
                    "old_codename": old.codename,
                    "new_codename": entity.codename,
                    "table_name": old.table_name,
                },
            )

        _diff_entity_fields(diff, entity, old)

    diff.has_changes = bool(diff.additive or diff.destructive)
    diff.summary = build_summary(diff)
    return diff
