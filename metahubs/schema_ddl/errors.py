"""
Error types for the schema DDL engine.

This module defines the exceptions raised by the engine:
- SchemaDdlError: Base exception
- InvalidIdentifierError: Identifier rejected before reaching SQL
- EntityDefinitionError: Malformed entity/field definitions
- SnapshotVersionError: Snapshot payload with an unsupported version
- UnknownChangeTypeError: Change type without an apply handler
- ChangeApplicationError: A single change failed inside a migration
- MigrationRecordError: Migration history could not be recorded
- LockTimeoutError: Advisory lock not acquired in time

Runtime database failures during generation/migration are reported through
result objects (SchemaGenerationResult, MigrationResult); these exceptions
cover programming errors and invalid input.

Invariants:
    - All errors inherit from SchemaDdlError
    - Errors carry a stable code for programmatic handling
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .schema.diff import SchemaChange


class SchemaDdlError(Exception):
    """Base exception for all schema DDL errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "SCHEMA_DDL_ERROR"
        self.details = details or {}


class InvalidIdentifierError(SchemaDdlError):
    """Identifier failed validation.

    Raised when:
    - A schema name does not match a generated shape
    - A table/column/constraint name is outside the allow-list
    - A name exceeds the 63 character identifier limit
    """

    def __init__(self, identifier: str, reason: str) -> None:
        super().__init__(
            f"Invalid identifier {identifier!r}: {reason}",
            code="INVALID_IDENTIFIER",
            details={"identifier": identifier, "reason": reason},
        )
        self.identifier = identifier
        self.reason = reason


class EntityDefinitionError(SchemaDdlError):
    """Entity or field definition is invalid.

    Raised when:
    - A TABLE field is nested inside another TABLE field
    - A child field points at a missing or non-TABLE parent
    - Ids are duplicated
    - A kind or data type is unknown
    """

    def __init__(
        self,
        message: str,
        entity_id: str | None = None,
        field_id: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="INVALID_DEFINITION",
            details={"entity_id": entity_id, "field_id": field_id},
        )
        self.entity_id = entity_id
        self.field_id = field_id


class SnapshotVersionError(SchemaDdlError):
    """Snapshot version is not readable by this engine."""

    def __init__(self, version: Any) -> None:
        super().__init__(
            f"Unsupported schema snapshot version: {version!r}",
            code="SNAPSHOT_VERSION",
            details={"version": version},
        )
        self.version = version


class UnknownChangeTypeError(SchemaDdlError):
    """No apply handler exists for a change type."""

    def __init__(self, change_type: Any) -> None:
        super().__init__(
            f"Unknown change type: {change_type}",
            code="UNKNOWN_CHANGE_TYPE",
            details={"change_type": str(change_type)},
        )
        self.change_type = change_type


class ChangeApplicationError(SchemaDdlError):
    """A schema change failed while being applied.

    The message combines the change description with the driver message so
    the caller can tell which DDL statement aborted the transaction.
    """

    def __init__(self, change: SchemaChange, cause: BaseException) -> None:
        super().__init__(
            f"{change.description}: {cause}",
            code="CHANGE_FAILED",
            details={"change_type": change.change_type.value, "table_name": change.table_name},
        )
        self.change = change
        self.cause = cause


class MigrationRecordError(SchemaDdlError):
    """Migration history could not be recorded."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="MIGRATION_RECORD")


class LockTimeoutError(SchemaDdlError):
    """Advisory lock could not be acquired within the timeout."""

    def __init__(self, lock_key: int, timeout_ms: int) -> None:
        super().__init__(
            f"Could not acquire advisory lock {lock_key} within {timeout_ms}ms",
            code="LOCK_TIMEOUT",
            details={"lock_key": lock_key, "timeout_ms": timeout_ms},
        )
        self.lock_key = lock_key
        self.timeout_ms = timeout_ms
