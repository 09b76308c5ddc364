"""
Migration history.

Every applied migration is stored as one row in <schema>._app_migrations:
- name: YYYYMMDD_HHMMSS_<sanitized description>
- applied_at: server timestamp
- meta: {snapshotBefore, snapshotAfter, changes, hasDestructive, summary,
         publicationSnapshotHash?, publicationId?, publicationVersionId?}
- publication_snapshot: opaque external payload (nullable)

The manager also answers "can the schema go back to migration X?" without
performing the rollback: it lists blockers (data-losing changes after X),
warnings, and the inverse changes that would undo the later migrations.

Invariants:
    - A missing schema or history table reads as empty history
    - Rollback analysis never returns inverse changes alongside blockers
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from ..schema.diff import ChangeType, SchemaChange, SchemaDiff
from ..schema.naming import validate_identifier, validate_schema_name
from ..schema.snapshot import SchemaSnapshot
from .database import qualified, transaction
from .system_tables import MIGRATIONS_TABLE

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 50

EXTRA_META_KEYS = ("publicationSnapshotHash", "publicationId", "publicationVersionId")

# Changes whose data cannot be restored by rolling back
_DATA_LOSS_TYPES = {
    ChangeType.DROP_TABLE.value,
    ChangeType.DROP_COLUMN.value,
    ChangeType.DROP_TABULAR_TABLE.value,
    ChangeType.DROP_TABULAR_COLUMN.value,
}
_ALTER_TYPES = {ChangeType.ALTER_COLUMN.value, ChangeType.ALTER_TABULAR_COLUMN.value}
_TABLE_CREATING_TYPES = {ChangeType.ADD_TABLE.value, ChangeType.ADD_TABULAR_TABLE.value}


def generate_migration_name(description: str, now: datetime | None = None) -> str:
    """Build a migration name: YYYYMMDD_HHMMSS_<sanitized description>.

    The date part is UTC and the time part is local time.
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    date = now.astimezone(timezone.utc).strftime("%Y%m%d")
    time = now.astimezone().strftime("%H%M%S")
    sanitized = re.sub(r"[^a-z0-9]+", "_", description.lower()).strip("_")[:MAX_DESCRIPTION_LENGTH]
    return f"{date}_{time}_{sanitized}"


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


@dataclass
class MigrationMeta:
    """Audit payload stored with each migration."""

    snapshot_before: SchemaSnapshot | None
    snapshot_after: SchemaSnapshot | None
    changes: list[dict[str, Any]] = field(default_factory=list)
    has_destructive: bool = False
    summary: str = ""
    publication_snapshot_hash: str | None = None
    publication_id: str | None = None
    publication_version_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "snapshotBefore": self.snapshot_before.to_dict() if self.snapshot_before else None,
            "snapshotAfter": self.snapshot_after.to_dict() if self.snapshot_after else None,
            "changes": list(self.changes),
            "hasDestructive": self.has_destructive,
            "summary": self.summary,
        }
        for key, value in (
            ("publicationSnapshotHash", self.publication_snapshot_hash),
            ("publicationId", self.publication_id),
            ("publicationVersionId", self.publication_version_id),
        ):
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> MigrationMeta:
        data = data or {}
        before = data.get("snapshotBefore")
        after = data.get("snapshotAfter")
        return cls(
            snapshot_before=SchemaSnapshot.from_dict(before) if before else None,
            snapshot_after=SchemaSnapshot.from_dict(after) if after else None,
            changes=list(data.get("changes") or []),
            has_destructive=bool(data.get("hasDestructive", False)),
            summary=data.get("summary", ""),
            publication_snapshot_hash=data.get("publicationSnapshotHash"),
            publication_id=data.get("publicationId"),
            publication_version_id=data.get("publicationVersionId"),
        )


@dataclass
class MigrationRecord:
    """One row of migration history."""

    id: str
    name: str
    applied_at: datetime
    meta: MigrationMeta
    publication_snapshot: dict[str, Any] | None = None

    @classmethod
    def from_row(cls, row: Any) -> MigrationRecord:
        return cls(
            id=str(row["id"]),
            name=row["name"],
            applied_at=row["applied_at"],
            meta=MigrationMeta.from_dict(_load_json(row["meta"])),
            publication_snapshot=_load_json(row["publication_snapshot"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "appliedAt": self.applied_at.isoformat() if self.applied_at else None,
            "meta": self.meta.to_dict(),
            "publicationSnapshot": self.publication_snapshot,
        }


@dataclass
class RollbackAnalysis:
    """Result of analyze_rollback_path."""

    can_rollback: bool = True
    blockers: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    rollback_changes: list[SchemaChange] = field(default_factory=list)


def inverse_change(change: dict[str, Any]) -> SchemaChange | None:
    """The change that undoes a recorded change, or None if it cannot be undone."""
    change_type = change.get("type")
    table = change.get("tableName")
    column = change.get("columnName")
    inverse = dict(change)

    if change_type == ChangeType.ADD_TABLE.value:
        inverse.update(
            type=ChangeType.DROP_TABLE.value,
            isDestructive=True,
            description=f'Drop table "{change.get("entityCodename")}"',
        )
    elif change_type == ChangeType.ADD_COLUMN.value:
        inverse.update(
            type=ChangeType.DROP_COLUMN.value,
            isDestructive=True,
            description=f'Drop column "{column}" from "{table}"',
        )
    elif change_type == ChangeType.ADD_TABULAR_TABLE.value:
        inverse.update(
            type=ChangeType.DROP_TABULAR_TABLE.value,
            isDestructive=True,
            description=f'Drop tabular table "{table}"',
        )
    elif change_type == ChangeType.ADD_TABULAR_COLUMN.value:
        inverse.update(
            type=ChangeType.DROP_TABULAR_COLUMN.value,
            isDestructive=True,
            description=f'Drop column "{column}" from "{table}"',
        )
    elif change_type == ChangeType.ADD_FK.value:
        inverse.update(
            type=ChangeType.DROP_FK.value,
            isDestructive=True,
            oldValue=change.get("newValue"),
            newValue=None,
            description=f'Drop FK on "{column}" in "{table}"',
        )
    elif change_type in _ALTER_TYPES and not change.get("isDestructive"):
        old, new = change.get("oldValue"), change.get("newValue")
        inverse.update(
            oldValue=new,
            newValue=old,
            isDestructive=old == "required",
            description=f'Revert column "{column}" in "{table}"',
        )
    else:
        return None

    return SchemaChange.from_dict(inverse)


class MigrationManager:
    """Records, lists and analyzes migrations of generated schemas.

    Example:
        >>> manager = MigrationManager(engine)
        >>> records, total = await manager.list_migrations("app_...")
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    @staticmethod
    def _table(schema_name: str) -> str:
        return qualified(validate_schema_name(schema_name), validate_identifier(MIGRATIONS_TABLE))

    async def _history_exists(self, conn: AsyncConnection, schema_name: str) -> bool:
        result = await conn.execute(
            text(
                "SELECT EXISTS (SELECT 1 FROM information_schema.tables "
                "WHERE table_schema = :schema AND table_name = :table)"
            ),
            {"schema": schema_name, "table": MIGRATIONS_TABLE},
        )
        return result.scalar() is True

    async def record_migration(
        self,
        schema_name: str,
        name: str,
        snapshot_before: SchemaSnapshot | None,
        snapshot_after: SchemaSnapshot,
        diff: SchemaDiff,
        conn: AsyncConnection | None = None,
        extra_meta: dict[str, Any] | None = None,
        publication_snapshot: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> str:
        """Insert a migration row and return its id."""
        extra = extra_meta or {}
        meta = MigrationMeta(
            snapshot_before=snapshot_before,
            snapshot_after=snapshot_after,
            changes=[change.to_dict() for change in diff.all_changes()],
            has_destructive=len(diff.destructive) > 0,
            summary=diff.summary,
            publication_snapshot_hash=extra.get("publicationSnapshotHash"),
            publication_id=extra.get("publicationId"),
            publication_version_id=extra.get("publicationVersionId"),
        )

        async with transaction(self.engine, conn) as c:
            result = await c.execute(
                text(
                    f"INSERT INTO {self._table(schema_name)} "
                    "(name, meta, publication_snapshot, _upl_created_by, _upl_updated_by) "
                    "VALUES (:name, CAST(:meta AS JSONB), CAST(:publication_snapshot AS JSONB), "
                    "CAST(:user_id AS uuid), CAST(:user_id AS uuid)) RETURNING id"
                ),
                {
                    "name": name,
                    "meta": json.dumps(meta.to_dict()),
                    "publication_snapshot": (
                        json.dumps(publication_snapshot) if publication_snapshot is not None else None
                    ),
                    "user_id": user_id,
                },
            )
            migration_id = str(result.scalar())

        logger.info(
            "Migration recorded",
            extra={
                "schema": schema_name,
                "migration_id": migration_id,
                "migration_name": name,
                "changes": len(meta.changes),
                "has_destructive": meta.has_destructive,
            },
        )
        return migration_id

    async def list_migrations(
        self,
        schema_name: str,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[MigrationRecord], int]:
        """Migrations newest first, with the total count."""
        table = self._table(schema_name)
        async with self.engine.connect() as conn:
            if not await self._history_exists(conn, schema_name):
                return [], 0
            total = (await conn.execute(text(f"SELECT count(*) FROM {table}"))).scalar() or 0
            result = await conn.execute(
                text(
                    f"SELECT id, name, applied_at, meta, publication_snapshot FROM {table} "
                    "ORDER BY applied_at DESC LIMIT :limit OFFSET :offset"
                ),
                {"limit": limit, "offset": offset},
            )
            rows = result.mappings().all()
        return [MigrationRecord.from_row(row) for row in rows], int(total)

    async def get_migration(self, schema_name: str, migration_id: str) -> MigrationRecord | None:
        table = self._table(schema_name)
        try:
            uuid.UUID(str(migration_id))
        except ValueError:
            return None
        async with self.engine.connect() as conn:
            if not await self._history_exists(conn, schema_name):
                return None
            result = await conn.execute(
                text(
                    f"SELECT id, name, applied_at, meta, publication_snapshot FROM {table} "
                    "WHERE id = CAST(:id AS uuid)"
                ),
                {"id": str(migration_id)},
            )
            row = result.mappings().first()
        return MigrationRecord.from_row(row) if row is not None else None

    async def get_latest_migration(self, schema_name: str) -> MigrationRecord | None:
        records, _ = await self.list_migrations(schema_name, limit=1)
        return records[0] if records else None

    async def delete_migration(
        self,
        schema_name: str,
        migration_id: str,
        conn: AsyncConnection | None = None,
    ) -> None:
        async with transaction(self.engine, conn) as c:
            await c.execute(
                text(f"DELETE FROM {self._table(schema_name)} WHERE id = CAST(:id AS uuid)"),
                {"id": str(migration_id)},
            )
        logger.info("Migration deleted", extra={"schema": schema_name, "migration_id": str(migration_id)})

    async def _migrations_after(self, schema_name: str, applied_at: datetime) -> list[MigrationRecord]:
        table = self._table(schema_name)
        async with self.engine.connect() as conn:
            result = await conn.execute(
                text(
                    f"SELECT id, name, applied_at, meta, publication_snapshot FROM {table} "
                    "WHERE applied_at > :applied_at ORDER BY applied_at DESC"
                ),
                {"applied_at": applied_at},
            )
            rows = result.mappings().all()
        return [MigrationRecord.from_row(row) for row in rows]

    async def analyze_rollback_path(self, schema_name: str, target_migration_id: str) -> RollbackAnalysis:
        """Decide whether the schema can be rolled back to a migration.

        Blocked by any data-losing change (DROP_* or destructive ALTER) in a
        later migration. Inverse changes are listed newest migration first,
        last change first, and only when nothing blocks.
        """
        target = await self.get_migration(schema_name, target_migration_id)
        if target is None:
            return RollbackAnalysis(can_rollback=False, blockers=["Target migration not found"])

        later = await self._migrations_after(schema_name, target.applied_at)
        if not later:
            return RollbackAnalysis(
                can_rollback=False,
                blockers=["No migrations to rollback - target is the latest migration"],
            )

        analysis = RollbackAnalysis()
        for migration in later:
            changes = migration.meta.changes
            for change in changes:
                change_type = change.get("type")
                description = change.get("description", "")
                if change_type in _DATA_LOSS_TYPES:
                    analysis.blockers.append(
                        f'Migration "{migration.name}" contains {change_type}: {description}'
                    )
                elif change_type in _ALTER_TYPES and change.get("isDestructive"):
                    analysis.blockers.append(
                        f'Migration "{migration.name}" contains destructive column alteration: {description}'
                    )

            for change in reversed(changes):
                if change.get("type") not in ChangeType._value2member_map_:
                    logger.warning(
                        "Unknown change type in migration history",
                        extra={"migration": migration.name, "change_type": change.get("type")},
                    )
                    continue
                inverse = inverse_change(change)
                if inverse is not None:
                    analysis.rollback_changes.append(inverse)

            if any(change.get("type") in _TABLE_CREATING_TYPES for change in changes):
                analysis.warnings.append(
                    f'Rolling back "{migration.name}" will drop tables and lose all data in them'
                )

        if analysis.blockers:
            analysis.can_rollback = False
            analysis.rollback_changes = []
        return analysis
