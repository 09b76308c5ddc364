"""
Core type definitions for entity definitions.

This module defines the logical model supplied by the administrative
application:
- EntityKind: catalog, hub, document, enumeration
- AttributeDataType: field data types, including nested TABLE parts
- FieldDefinition: a single logical column (or tabular part)
- EntityDefinition: a logical table with ordered fields

Invariants:
    - Ids are canonical; codenames are labels only and may change freely
    - Enumeration entities have no physical table
    - A TABLE field's children carry parent_attribute_id; exactly one
      nesting level is supported (a child can never be TABLE-typed)

How to change safely:
    - Add new data types together with a PostgreSQL type mapping in the
      generator and a migrator handler for any new DDL they need
    - Never repurpose an existing enum value (it is stored in snapshots)

Example:
    >>> order = EntityDefinition(
    ...     id="0190a1b2-0000-7000-8000-000000000001",
    ...     codename="Order",
    ...     kind=EntityKind.CATALOG,
    ...     fields=(
    ...         FieldDefinition(
    ...             id="0190a1b2-0000-7000-8000-0000000000aa",
    ...             codename="title",
    ...             data_type=AttributeDataType.STRING,
    ...             is_required=True,
    ...         ),
    ...     ),
    ... )
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from enum import Enum
from typing import Any

from ..errors import EntityDefinitionError


class EntityKind(Enum):
    """Kinds of logical entities."""

    CATALOG = "catalog"
    HUB = "hub"
    DOCUMENT = "document"
    ENUMERATION = "enumeration"

    @classmethod
    def from_str(cls, value: str | EntityKind) -> EntityKind:
        """Convert string representation to EntityKind.

        Raises:
            EntityDefinitionError: If value is not a valid kind
        """
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        for kind in cls:
            if kind.value == normalized:
                return kind
        valid = [k.value for k in cls]
        raise EntityDefinitionError(f"Invalid entity kind '{value}'. Valid kinds: {valid}")


class AttributeDataType(Enum):
    """Supported field data types."""

    STRING = "STRING"
    NUMBER = "NUMBER"
    BOOLEAN = "BOOLEAN"
    DATE = "DATE"
    DATETIME = "DATETIME"
    REF = "REF"
    JSON = "JSON"
    TABLE = "TABLE"  # Tabular part stored in a child table

    @classmethod
    def from_str(cls, value: str | AttributeDataType) -> AttributeDataType:
        """Convert string representation to AttributeDataType.

        Raises:
            EntityDefinitionError: If value is not a valid data type
        """
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().upper()
        for data_type in cls:
            if data_type.value == normalized:
                return data_type
        valid = [d.value for d in cls]
        raise EntityDefinitionError(f"Invalid data type '{value}'. Valid types: {valid}")


def _get(data: dict[str, Any], camel: str, snake: str, default: Any = None) -> Any:
    if camel in data:
        return data[camel]
    return data.get(snake, default)


@dataclass(frozen=True)
class FieldDefinition:
    """Definition of a single field of an entity.

    Attributes:
        id: Stable UUID (physical column name derives from it)
        codename: Human-readable label (may change without DDL)
        data_type: The field data type
        is_required: Whether the column is NOT NULL
        target_entity_id: Referenced entity for REF fields
        target_entity_kind: Kind of the referenced entity; an enumeration
            target points at the shared values table
        parent_attribute_id: Owning TABLE field for tabular-part children
        presentation: Opaque presentation payload mirrored into metadata
        validation_rules: Opaque validation payload mirrored into metadata
        ui_config: Opaque UI payload mirrored into metadata
    """

    id: str
    codename: str
    data_type: AttributeDataType
    is_required: bool = False
    target_entity_id: str | None = None
    target_entity_kind: EntityKind | None = None
    parent_attribute_id: str | None = None
    presentation: dict[str, Any] = dataclass_field(default_factory=dict, compare=False)
    validation_rules: dict[str, Any] = dataclass_field(default_factory=dict, compare=False)
    ui_config: dict[str, Any] = dataclass_field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        """Validate field definition."""
        if not self.id:
            raise EntityDefinitionError("Field id cannot be empty")
        if not self.codename:
            raise EntityDefinitionError(f"Field {self.id} has an empty codename", field_id=self.id)

    @property
    def is_table(self) -> bool:
        return self.data_type is AttributeDataType.TABLE

    @property
    def is_child(self) -> bool:
        return self.parent_attribute_id is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "codename": self.codename,
            "dataType": self.data_type.value,
            "isRequired": self.is_required,
            "targetEntityId": self.target_entity_id,
            "targetEntityKind": self.target_entity_kind.value if self.target_entity_kind else None,
            "parentAttributeId": self.parent_attribute_id,
            "presentation": dict(self.presentation),
            "validationRules": dict(self.validation_rules),
            "uiConfig": dict(self.ui_config),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldDefinition:
        """Create from dictionary representation (camelCase or snake_case keys)."""
        target_kind = _get(data, "targetEntityKind", "target_entity_kind")
        return cls(
            id=str(data["id"]),
            codename=data["codename"],
            data_type=AttributeDataType.from_str(_get(data, "dataType", "data_type")),
            is_required=bool(_get(data, "isRequired", "is_required", False)),
            target_entity_id=_get(data, "targetEntityId", "target_entity_id"),
            target_entity_kind=EntityKind.from_str(target_kind) if target_kind else None,
            parent_attribute_id=_get(data, "parentAttributeId", "parent_attribute_id"),
            presentation=dict(data.get("presentation") or {}),
            validation_rules=dict(_get(data, "validationRules", "validation_rules") or {}),
            ui_config=dict(_get(data, "uiConfig", "ui_config") or {}),
        )


@dataclass(frozen=True)
class EntityDefinition:
    """Definition of a logical entity (table).

    Attributes:
        id: Stable UUID (physical table name derives from it)
        codename: Human-readable label (may change without DDL)
        kind: Entity kind; determines the table name prefix
        fields: Ordered fields, tabular-part children included (flat)
        presentation: Opaque presentation payload mirrored into metadata
        config: Opaque configuration payload mirrored into metadata
    """

    id: str
    codename: str
    kind: EntityKind
    fields: tuple[FieldDefinition, ...] = ()
    presentation: dict[str, Any] = dataclass_field(default_factory=dict, compare=False)
    config: dict[str, Any] = dataclass_field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        """Validate entity definition."""
        if not self.id:
            raise EntityDefinitionError("Entity id cannot be empty")
        if not self.codename:
            raise EntityDefinitionError(f"Entity {self.id} has an empty codename", entity_id=self.id)
        if not isinstance(self.fields, tuple):
            object.__setattr__(self, "fields", tuple(self.fields))

    @property
    def is_enumeration(self) -> bool:
        return self.kind is EntityKind.ENUMERATION

    def top_level_fields(self) -> list[FieldDefinition]:
        """Fields stored directly on the entity table (or as tabular parts)."""
        return [f for f in self.fields if f.parent_attribute_id is None]

    def child_fields(self, table_field_id: str) -> list[FieldDefinition]:
        """Children of a TABLE field, in definition order."""
        return [f for f in self.fields if f.parent_attribute_id == table_field_id]

    def get_field(self, field_id: str) -> FieldDefinition | None:
        for f in self.fields:
            if f.id == field_id:
                return f
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "codename": self.codename,
            "kind": self.kind.value,
            "fields": [f.to_dict() for f in self.fields],
            "presentation": dict(self.presentation),
            "config": dict(self.config),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntityDefinition:
        """Create from dictionary representation."""
        return cls(
            id=str(data["id"]),
            codename=data["codename"],
            kind=EntityKind.from_str(data["kind"]),
            fields=tuple(FieldDefinition.from_dict(f) for f in data.get("fields") or ()),
            presentation=dict(data.get("presentation") or {}),
            config=dict(data.get("config") or {}),
        )


def validate_entities(entities: Iterable[EntityDefinition]) -> None:
    """Validate a set of entity definitions.

    Checks id uniqueness and the single-level tabular nesting rule.

    Raises:
        EntityDefinitionError: On the first violation found
    """
    seen_entities: set[str] = set()
    for entity in entities:
        if entity.id in seen_entities:
            raise EntityDefinitionError(f"Duplicate entity id {entity.id}", entity_id=entity.id)
        seen_entities.add(entity.id)

        by_id: dict[str, FieldDefinition] = {}
        for f in entity.fields:
            if f.id in by_id:
                raise EntityDefinitionError(
                    f"Duplicate field id {f.id} in entity '{entity.codename}'",
                    entity_id=entity.id,
                    field_id=f.id,
                )
            by_id[f.id] = f

        for f in entity.fields:
            if f.parent_attribute_id is None:
                continue
            parent = by_id.get(f.parent_attribute_id)
            if parent is None:
                raise EntityDefinitionError(
                    f"Field '{f.codename}' references missing parent attribute "
                    f"{f.parent_attribute_id} in entity '{entity.codename}'",
                    entity_id=entity.id,
                    field_id=f.id,
                )
            if parent.parent_attribute_id is not None:
                raise EntityDefinitionError(
                    f"Field '{f.codename}' is nested more than one level deep "
                    f"in entity '{entity.codename}'",
                    entity_id=entity.id,
                    field_id=f.id,
                )
            if not parent.is_table:
                raise EntityDefinitionError(
                    f"Field '{f.codename}' has parent '{parent.codename}' which is not a TABLE field",
                    entity_id=entity.id,
                    field_id=f.id,
                )
            if f.is_table:
                raise EntityDefinitionError(
                    f"TABLE field '{f.codename}' cannot be nested inside TABLE field "
                    f"'{parent.codename}'",
                    entity_id=entity.id,
                    field_id=f.id,
                )


def load_entities(items: Iterable[dict[str, Any]]) -> list[EntityDefinition]:
    """Parse and validate a list of entity dictionaries."""
    entities = [EntityDefinition.from_dict(item) for item in items]
    validate_entities(entities)
    return entities
