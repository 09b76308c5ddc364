"""
CLI tools for the schema DDL engine.

This module provides command-line tools for:
- Previewing snapshots and diffs from definition files
- Generating, migrating and cloning schemas
- Inspecting migration history and rollback paths

Invariants:
    - Offline commands never open a database connection
    - Destructive changes require explicit confirmation
"""

from .ddl_cli import DdlCLI

__all__ = ["DdlCLI"]
