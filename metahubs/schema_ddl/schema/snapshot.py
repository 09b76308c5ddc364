"""
Schema snapshots.

A snapshot is the immutable, serializable record of a schema's physical shape:
entity id -> {kind, codename, table name, field id -> field snapshot}. It is
the only state compared across time by the diff engine and is stored in
migration history as an audit artifact.

Serialized form (version 2):
    {
      "version": 2,
      "generatedAt": "2026-01-17T14:30:22.123456+00:00",
      "hasSystemTables": true,
      "entities": {
        "<entity id>": {
          "kind": "catalog", "codename": "Order", "tableName": "cat_...",
          "fields": {
            "<field id>": {
              "codename": "title", "columnName": "attr_...", "dataType": "STRING",
              "isRequired": true, "targetEntityId": null, "targetEntityKind": null,
              "childFields": {...}          # TABLE fields with children only
            }
          }
        }
      }
    }

For TABLE fields "columnName" holds the child table name.

Invariants:
    - Building is pure: equal input yields an equal structure
    - Older versions are upgraded on read; newer versions are rejected

How to change safely:
    - Bump CURRENT_SCHEMA_SNAPSHOT_VERSION and add an upgrade step in
      upgrade_snapshot_dict for every shape change
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..errors import SnapshotVersionError
from .naming import generate_column_name, generate_table_name, generate_tabular_table_name
from .types import AttributeDataType, EntityDefinition, EntityKind, FieldDefinition, validate_entities

CURRENT_SCHEMA_SNAPSHOT_VERSION = 2


@dataclass(frozen=True)
class FieldSnapshot:
    """Recorded state of one field."""

    codename: str
    column_name: str
    data_type: AttributeDataType
    is_required: bool = False
    target_entity_id: str | None = None
    target_entity_kind: EntityKind | None = None
    child_fields: dict[str, FieldSnapshot] | None = None

    @property
    def is_table(self) -> bool:
        return self.data_type is AttributeDataType.TABLE

    @property
    def child_table_name(self) -> str | None:
        return self.column_name if self.is_table else None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "codename": self.codename,
            "columnName": self.column_name,
            "dataType": self.data_type.value,
            "isRequired": self.is_required,
            "targetEntityId": self.target_entity_id,
            "targetEntityKind": self.target_entity_kind.value if self.target_entity_kind else None,
        }
        if self.child_fields:
            data["childFields"] = {fid: child.to_dict() for fid, child in self.child_fields.items()}
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldSnapshot:
        target_kind = data.get("targetEntityKind")
        children = data.get("childFields")
        return cls(
            codename=data["codename"],
            column_name=data["columnName"],
            data_type=AttributeDataType.from_str(data["dataType"]),
            is_required=bool(data.get("isRequired", False)),
            target_entity_id=data.get("targetEntityId"),
            target_entity_kind=EntityKind.from_str(target_kind) if target_kind else None,
            child_fields=(
                {fid: cls.from_dict(child) for fid, child in children.items()} if children else None
            ),
        )


@dataclass(frozen=True)
class EntitySnapshot:
    """Recorded state of one entity."""

    kind: EntityKind
    codename: str
    table_name: str
    fields: dict[str, FieldSnapshot] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "codename": self.codename,
            "tableName": self.table_name,
            "fields": {fid: f.to_dict() for fid, f in self.fields.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntitySnapshot:
        return cls(
            kind=EntityKind.from_str(data["kind"]),
            codename=data["codename"],
            table_name=data["tableName"],
            fields={fid: FieldSnapshot.from_dict(f) for fid, f in (data.get("fields") or {}).items()},
        )


@dataclass(frozen=True)
class SchemaSnapshot:
    """Versioned snapshot of a generated schema."""

    version: int
    generated_at: str
    has_system_tables: bool
    entities: dict[str, EntitySnapshot] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "generatedAt": self.generated_at,
            "hasSystemTables": self.has_system_tables,
            "entities": {eid: e.to_dict() for eid, e in self.entities.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SchemaSnapshot:
        """Load a snapshot of any supported version."""
        upgraded = upgrade_snapshot_dict(data)
        return cls(
            version=upgraded["version"],
            generated_at=upgraded["generatedAt"],
            has_system_tables=bool(upgraded["hasSystemTables"]),
            entities={eid: EntitySnapshot.from_dict(e) for eid, e in upgraded["entities"].items()},
        )


def _upgrade_v1_field(data: dict[str, Any]) -> dict[str, Any]:
    upgraded = dict(data)
    upgraded.setdefault("isRequired", False)
    upgraded.setdefault("targetEntityId", None)
    upgraded.setdefault("targetEntityKind", None)
    children = upgraded.get("childFields")
    if children:
        upgraded["childFields"] = {fid: _upgrade_v1_field(c) for fid, c in children.items()}
    else:
        upgraded.pop("childFields", None)
    return upgraded


def upgrade_snapshot_dict(data: dict[str, Any]) -> dict[str, Any]:
    """Bring a serialized snapshot up to CURRENT_SCHEMA_SNAPSHOT_VERSION.

    Version 1 payloads used "snapshotVersion"/"createdAt" and could omit
    required/target keys on fields.

    Raises:
        SnapshotVersionError: If the version is unknown or newer than supported
    """
    version = data.get("version", data.get("snapshotVersion", 1))
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        raise SnapshotVersionError(version)
    if version > CURRENT_SCHEMA_SNAPSHOT_VERSION:
        raise SnapshotVersionError(version)

    if version == CURRENT_SCHEMA_SNAPSHOT_VERSION:
        return data

    entities = {}
    for eid, entity in (data.get("entities") or {}).items():
        upgraded_entity = dict(entity)
        upgraded_entity["fields"] = {
            fid: _upgrade_v1_field(f) for fid, f in (entity.get("fields") or {}).items()
        }
        entities[eid] = upgraded_entity

    return {
        "version": CURRENT_SCHEMA_SNAPSHOT_VERSION,
        "generatedAt": data.get("generatedAt") or data.get("createdAt") or "",
        "hasSystemTables": bool(data.get("hasSystemTables", False)),
        "entities": entities,
    }


def _field_snapshot(f: FieldDefinition, column_name: str, children: dict[str, FieldSnapshot] | None) -> FieldSnapshot:
    return FieldSnapshot(
        codename=f.codename,
        column_name=column_name,
        data_type=f.data_type,
        is_required=f.is_required,
        target_entity_id=f.target_entity_id,
        target_entity_kind=f.target_entity_kind,
        child_fields=children or None,
    )


def build_entity_snapshot(entity: EntityDefinition) -> EntitySnapshot:
    table_name = generate_table_name(entity.id, entity.kind)
    fields: dict[str, FieldSnapshot] = {}
    for f in entity.top_level_fields():
        if f.is_table:
            children = {
                child.id: _field_snapshot(child, generate_column_name(child.id), None)
                for child in entity.child_fields(f.id)
            }
            fields[f.id] = _field_snapshot(f, generate_tabular_table_name(table_name, f.id), children)
        else:
            fields[f.id] = _field_snapshot(f, generate_column_name(f.id), None)
    return EntitySnapshot(
        kind=entity.kind,
        codename=entity.codename,
        table_name=table_name,
        fields=fields,
    )


def build_schema_snapshot(
    entities: Iterable[EntityDefinition],
    generated_at: datetime | None = None,
) -> SchemaSnapshot:
    """Build a snapshot from entity definitions. No database access."""
    entity_list = list(entities)
    validate_entities(entity_list)
    timestamp = (generated_at or datetime.now(timezone.utc)).isoformat()
    return SchemaSnapshot(
        version=CURRENT_SCHEMA_SNAPSHOT_VERSION,
        generated_at=timestamp,
        has_system_tables=True,
        entities={entity.id: build_entity_snapshot(entity) for entity in entity_list},
    )
