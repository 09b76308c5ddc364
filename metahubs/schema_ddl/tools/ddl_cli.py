"""
Schema DDL command line tool.

Offline commands work on definition files only:
- snapshot: Print the snapshot a set of entity definitions would produce
- diff: Show the changes between a snapshot and entity definitions
- names: Print physical schema/table names for ids

Online commands connect to PostgreSQL (SCHEMA_DDL_DATABASE_URL):
- generate: Create a schema with all tables
- apply: Diff against the latest recorded migration and apply
- migrations list|show|rollback-check: Inspect migration history
- clone: Copy a schema with its data and foreign keys

Usage:
    schema-ddl snapshot --entities entities.yaml > snapshot.json
    schema-ddl diff --entities entities.yaml --old snapshot.json
    schema-ddl apply --schema app_<id> --entities entities.yaml --confirm-destructive

Invariants:
    - Destructive diffs are never applied without --confirm-destructive (exit 2)
    - Failures exit 1
    - JSON output is deterministic (sorted keys)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import yaml

from ..config import EngineConfig
from ..ddl.cloner import CloneOptions
from ..ddl.generator import GenerateSchemaOptions
from ..ddl.migrator import ApplyChangesOptions
from ..errors import SchemaDdlError
from ..main import DdlServices, setup_logging
from ..schema import (
    EntityDefinition,
    SchemaDiff,
    SchemaSnapshot,
    build_schema_snapshot,
    calculate_schema_diff,
    generate_branch_schema_name,
    generate_schema_name,
    generate_table_name,
    load_entities,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_NEEDS_CONFIRMATION = 2


def _read_document(path: str) -> Any:
    # YAML is a superset of JSON, so one loader covers both
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f)


def load_entities_file(path: str) -> list[EntityDefinition]:
    """Load entity definitions from a YAML or JSON file.

    The document is either a list of entities or a mapping with an
    "entities" list.
    """
    data = _read_document(path)
    if isinstance(data, dict):
        data = data.get("entities", [])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of entities")
    return load_entities(data)


def load_snapshot_file(path: str) -> SchemaSnapshot:
    """Load a snapshot, or the snapshotAfter of a migration record/meta."""
    data = _read_document(path)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a snapshot object")
    if "meta" in data:
        data = data["meta"]
    if "snapshotAfter" in data:
        data = data["snapshotAfter"]
    return SchemaSnapshot.from_dict(data)


def format_diff(diff: SchemaDiff) -> list[str]:
    if not diff.has_changes:
        return ["No changes detected"]
    lines = [diff.summary + ":"]
    for change in diff.all_changes():
        status = "DESTRUCTIVE" if change.is_destructive else "OK"
        lines.append(f"  [{status}] {change.change_type.value}: {change.description}")
    return lines


class DdlCLI:
    """CLI commands for the schema DDL engine.

    Offline commands return values; online commands take a DdlServices and
    return an exit code after printing their report.

    Example:
        >>> cli = DdlCLI()
        >>> print(cli.snapshot(load_entities_file("entities.yaml")))
    """

    def snapshot(self, entities: list[EntityDefinition]) -> str:
        return json.dumps(build_schema_snapshot(entities).to_dict(), indent=2, sort_keys=True)

    def diff(self, entities: list[EntityDefinition], old_path: str | None = None) -> SchemaDiff:
        old_snapshot = load_snapshot_file(old_path) if old_path else None
        return calculate_schema_diff(old_snapshot, entities)

    def names(
        self,
        entity_id: str | None = None,
        kind: str | None = None,
        schema_id: str | None = None,
        branch: int | None = None,
    ) -> dict[str, str]:
        names: dict[str, str] = {}
        if schema_id:
            names["schema"] = generate_schema_name(schema_id)
            names["branch_schema"] = generate_branch_schema_name(schema_id, branch)
        if entity_id:
            if not kind:
                raise ValueError("--kind is required with --entity-id")
            names["table"] = generate_table_name(entity_id, kind)
        return names

    async def generate(
        self,
        services: DdlServices,
        schema_name: str,
        entities: list[EntityDefinition],
        record: bool = False,
        description: str | None = None,
    ) -> int:
        result = await services.generator.generate_full_schema(
            schema_name,
            entities,
            GenerateSchemaOptions(record_migration=record, migration_description=description),
        )
        if not result.success:
            print(f"Schema generation failed for {schema_name}:")
            for error in result.errors:
                print(f"  - {error}")
            return EXIT_FAILED
        print(f"Schema {schema_name} generated with {len(result.tables_created)} table(s)")
        for table in result.tables_created:
            print(f"  {table}")
        return EXIT_OK

    async def apply(
        self,
        services: DdlServices,
        schema_name: str,
        entities: list[EntityDefinition],
        confirm_destructive: bool = False,
        record: bool = True,
        description: str | None = None,
    ) -> int:
        latest = await services.migration_manager.get_latest_migration(schema_name)
        old_snapshot = latest.meta.snapshot_after if latest else None
        diff = services.migrator.calculate_diff(old_snapshot, entities)

        for line in format_diff(diff):
            print(line)
        if not diff.has_changes:
            return EXIT_OK
        if diff.destructive and not confirm_destructive:
            print("Destructive changes found; re-run with --confirm-destructive to apply them")
            return EXIT_NEEDS_CONFIRMATION

        result = await services.migrator.apply_all_changes(
            schema_name,
            diff,
            entities,
            confirmed_destructive=confirm_destructive,
            options=ApplyChangesOptions(record_migration=record, migration_description=description),
        )
        if not result.success:
            print(f"Migration failed after {result.changes_applied} change(s):")
            for error in result.errors:
                print(f"  - {error}")
            return EXIT_FAILED
        print(f"Applied {result.changes_applied} change(s) to {schema_name}")
        return EXIT_OK

    async def list_migrations(
        self, services: DdlServices, schema_name: str, limit: int = 50, offset: int = 0
    ) -> int:
        migrations, total = await services.migration_manager.list_migrations(schema_name, limit, offset)
        print(f"{total} migration(s) in {schema_name}")
        for migration in migrations:
            destructive = " [DESTRUCTIVE]" if migration.meta.has_destructive else ""
            print(f"  {migration.id}  {migration.name}{destructive}  {migration.meta.summary}")
        return EXIT_OK

    async def show_migration(self, services: DdlServices, schema_name: str, migration_id: str) -> int:
        migration = await services.migration_manager.get_migration(schema_name, migration_id)
        if migration is None:
            print(f"Migration {migration_id} not found in {schema_name}")
            return EXIT_FAILED
        print(json.dumps(migration.to_dict(), indent=2, sort_keys=True, default=str))
        return EXIT_OK

    async def rollback_check(self, services: DdlServices, schema_name: str, migration_id: str) -> int:
        analysis = await services.migration_manager.analyze_rollback_path(schema_name, migration_id)
        if not analysis.can_rollback:
            print(f"Rollback to {migration_id} is blocked by {len(analysis.blockers)} issue(s):")
            for blocker in analysis.blockers:
                print(f"  - {blocker}")
            return EXIT_FAILED

        print(f"Rollback to {migration_id} is possible with {len(analysis.rollback_changes)} change(s):")
        for change in analysis.rollback_changes:
            print(f"  {change.change_type.value}: {change.description}")
        for warning in analysis.warnings:
            print(f"  WARNING: {warning}")
        return EXIT_OK

    async def clone(
        self,
        services: DdlServices,
        source: str,
        target: str,
        drop_target: bool = False,
        copy_data: bool = True,
    ) -> int:
        result = await services.cloner.clone(
            CloneOptions(
                source_schema=source,
                target_schema=target,
                drop_target_schema_if_exists=drop_target,
                copy_data=copy_data,
            )
        )
        print(
            f"Cloned {source} -> {target}: {result.tables_copied} table(s), "
            f"{result.rows_copied} row(s), {result.foreign_keys_created} foreign key(s)"
        )
        if result.tables_skipped:
            print(f"Skipped {result.tables_skipped} table(s) already present in {target}")
        return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Schema DDL management tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # snapshot command
    snapshot_parser = subparsers.add_parser("snapshot", help="Print the snapshot for entity definitions")
    snapshot_parser.add_argument("--entities", "-e", required=True, help="YAML/JSON entity file")
    snapshot_parser.add_argument("--output", "-o", help="Output file (default: stdout)")

    # diff command
    diff_parser = subparsers.add_parser("diff", help="Show changes between a snapshot and definitions")
    diff_parser.add_argument("--entities", "-e", required=True, help="YAML/JSON entity file")
    diff_parser.add_argument("--old", help="Previous snapshot (default: empty schema)")
    diff_parser.add_argument(
        "--format", choices=["text", "json"], default="text", help="Output format"
    )

    # names command
    names_parser = subparsers.add_parser("names", help="Print physical names for ids")
    names_parser.add_argument("--entity-id", help="Entity UUID")
    names_parser.add_argument("--kind", help="Entity kind (catalog, hub, document, enumeration)")
    names_parser.add_argument("--schema-id", help="Application or metahub UUID")
    names_parser.add_argument("--branch", type=int, help="Branch number for metahub schemas")

    # generate command
    generate_parser = subparsers.add_parser("generate", help="Create a schema with all tables")
    generate_parser.add_argument("--schema", "-s", required=True, help="Schema name")
    generate_parser.add_argument("--entities", "-e", required=True, help="YAML/JSON entity file")
    generate_parser.add_argument("--record", action="store_true", help="Record an initial migration")
    generate_parser.add_argument("--description", help="Migration name seed")

    # apply command
    apply_parser = subparsers.add_parser("apply", help="Apply definition changes to a schema")
    apply_parser.add_argument("--schema", "-s", required=True, help="Schema name")
    apply_parser.add_argument("--entities", "-e", required=True, help="YAML/JSON entity file")
    apply_parser.add_argument(
        "--confirm-destructive", action="store_true", help="Allow changes that lose data"
    )
    apply_parser.add_argument("--no-record", action="store_true", help="Do not record a migration")
    apply_parser.add_argument("--description", help="Migration name seed")

    # migrations command
    migrations_parser = subparsers.add_parser("migrations", help="Inspect migration history")
    migrations_sub = migrations_parser.add_subparsers(dest="migrations_command", required=True)
    list_parser = migrations_sub.add_parser("list", help="List migrations, newest first")
    list_parser.add_argument("--schema", "-s", required=True, help="Schema name")
    list_parser.add_argument("--limit", type=int, default=50)
    list_parser.add_argument("--offset", type=int, default=0)
    show_parser = migrations_sub.add_parser("show", help="Show one migration as JSON")
    show_parser.add_argument("--schema", "-s", required=True, help="Schema name")
    show_parser.add_argument("--id", required=True, help="Migration id")
    check_parser = migrations_sub.add_parser("rollback-check", help="Analyze rollback to a migration")
    check_parser.add_argument("--schema", "-s", required=True, help="Schema name")
    check_parser.add_argument("--id", required=True, help="Target migration id")

    # clone command
    clone_parser = subparsers.add_parser("clone", help="Clone a schema")
    clone_parser.add_argument("--source", required=True, help="Source schema")
    clone_parser.add_argument("--target", required=True, help="Target schema")
    clone_parser.add_argument("--drop-target", action="store_true", help="Drop the target schema first")
    clone_parser.add_argument("--no-data", action="store_true", help="Copy structure only")

    return parser


def _run_offline(cli: DdlCLI, args: argparse.Namespace) -> int:
    if args.command == "snapshot":
        output = cli.snapshot(load_entities_file(args.entities))
        if args.output:
            Path(args.output).write_text(output + "\n", encoding="utf-8")
            print(f"Snapshot written to {args.output}", file=sys.stderr)
        else:
            print(output)
        return EXIT_OK

    if args.command == "diff":
        diff = cli.diff(load_entities_file(args.entities), args.old)
        if args.format == "json":
            print(json.dumps(diff.to_dict(), indent=2, sort_keys=True))
        else:
            for line in format_diff(diff):
                print(line)
        return EXIT_NEEDS_CONFIRMATION if diff.destructive else EXIT_OK

    names = cli.names(args.entity_id, args.kind, args.schema_id, args.branch)
    if not names:
        print("Nothing to print: pass --entity-id/--kind or --schema-id")
        return EXIT_FAILED
    for key, value in names.items():
        print(f"{key}: {value}")
    return EXIT_OK


async def _run_online(cli: DdlCLI, args: argparse.Namespace, config: EngineConfig) -> int:
    async with DdlServices.create(config) as services:
        if args.command == "generate":
            return await cli.generate(
                services, args.schema, load_entities_file(args.entities), args.record, args.description
            )
        if args.command == "apply":
            return await cli.apply(
                services,
                args.schema,
                load_entities_file(args.entities),
                confirm_destructive=args.confirm_destructive,
                record=not args.no_record,
                description=args.description,
            )
        if args.command == "clone":
            return await cli.clone(services, args.source, args.target, args.drop_target, not args.no_data)
        if args.migrations_command == "list":
            return await cli.list_migrations(services, args.schema, args.limit, args.offset)
        if args.migrations_command == "show":
            return await cli.show_migration(services, args.schema, args.id)
        return await cli.rollback_check(services, args.schema, args.id)


def run(argv: list[str] | None = None) -> int:
    """Parse arguments and run one command. Returns the exit code."""
    args = build_parser().parse_args(argv)
    cli = DdlCLI()

    try:
        if args.command in ("snapshot", "diff", "names"):
            return _run_offline(cli, args)

        config = EngineConfig.from_env()
        setup_logging(config)
        config.log_config()
        return asyncio.run(_run_online(cli, args, config))
    except (SchemaDdlError, ValueError, OSError, yaml.YAMLError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED


def main() -> None:
    """CLI entry point for the schema DDL tool."""
    sys.exit(run())


if __name__ == "__main__":
    main()
