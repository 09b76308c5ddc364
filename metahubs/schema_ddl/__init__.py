"""
Metahubs Schema DDL - dynamic PostgreSQL schema generation and migration.

This package turns abstract, versioned entity definitions (catalogs, hubs,
documents, enumerations and their fields) into physical PostgreSQL schemas and
keeps them in step as the definitions evolve:
- Naming maps stable UUIDs to physical schema/table/column names
- Snapshots record the physical shape of a schema as an audit artifact
- The diff engine classifies every change as additive or destructive
- The migrator applies a diff transactionally behind an advisory lock
- The migration manager records history and analyzes rollback safety
- The cloner copies a whole schema (structure, data, foreign keys)

Architecture:
    ┌──────────────┐     ┌──────────────┐     ┌──────────────────┐
    │   Entity     │────▶│  Diff Engine │────▶│  SchemaMigrator  │
    │ Definitions  │     │ (vs snapshot)│     │ (lock + 1 txn)   │
    └──────────────┘     └──────────────┘     └────────┬─────────┘
                                                       │
                        ┌──────────────────────────────┼──────────────┐
                        │                              │              │
                        ▼                              ▼              ▼
                 ┌─────────────┐              ┌──────────────┐ ┌─────────────┐
                 │  Generator  │              │  Migration   │ │  Advisory   │
                 │ (DDL + sys  │              │  Manager     │ │  Lock       │
                 │  metadata)  │              │ (_app_migr.) │ │  Manager    │
                 └─────────────┘              └──────────────┘ └─────────────┘

Invariants:
    - Physical names are pure functions of stable ids, never of codenames
    - Enumeration entities never get a physical table
    - Every identifier reaches SQL only as a validated TrustedIdentifier
    - Each generation/migration runs in exactly one database transaction

How to change safely:
    - Add new change types together with a migrator handler and a priority
    - Bump CURRENT_SCHEMA_SNAPSHOT_VERSION and extend the upgrade path when
      the snapshot shape changes
    - Never change naming functions for existing kinds (tables would orphan)
"""

from ._version import __version__

__all__ = ["__version__"]
