"""
DocForge CLI — Administration commands.

Commands:
- docforge init       — Create the metadata tables (doctypes, fields, permissions)
- docforge list       — List registered DocTypes
- docforge describe   — Show a DocType's fields, deadline and table columns
- docforge template   — Write the upload template workbook for a DocType
- docforge columns    — Show the physical columns of a table
- docforge logs       — Read the structured JSONL event logs
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date, timedelta
from pathlib import Path
from typing import Optional

from docforge.engine.errors import DocForgeError
from docforge.engine.logging import (
    OBJECT_TYPE_CATEGORIES,
    FileLogger,
    init_logging,
    log,
    log_system_event,
    shutdown_logging,
)

logger = logging.getLogger("docforge.cli")


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="docforge",
        description="DocForge — runtime-defined document types over SQL tables",
    )
    parser.add_argument(
        "--config", default=None, help="Path to docforge.yaml (default: auto-discover)"
    )
    parser.add_argument("--database-url", help="Override database.url from the config")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # docforge init
    subparsers.add_parser("init", help="Create the metadata tables")

    # docforge list
    list_parser = subparsers.add_parser("list", help="List registered DocTypes")
    list_parser.add_argument(
        "--active-only", action="store_true", help="Hide inactive DocTypes"
    )

    # docforge describe
    describe_parser = subparsers.add_parser("describe", help="Show a DocType")
    describe_parser.add_argument("slug", help="DocType slug (e.g., daily-sales)")

    # docforge template
    template_parser = subparsers.add_parser("template", help="Write the upload template")
    template_parser.add_argument("slug", help="DocType slug")
    template_parser.add_argument(
        "--output", "-o", help="Output file (default: template_upload_<slug>.xlsx)"
    )

    # docforge columns
    columns_parser = subparsers.add_parser("columns", help="Show a table's physical columns")
    columns_parser.add_argument("table", help="Table name (e.g., doc_daily_sales)")

    # docforge logs
    logs_parser = subparsers.add_parser("logs", help="Read the structured event logs")
    logs_parser.add_argument(
        "object_type", choices=sorted(OBJECT_TYPE_CATEGORIES), help="Log object type"
    )
    logs_parser.add_argument(
        "--category", default="execution", help="Log category (default: execution)"
    )
    logs_parser.add_argument(
        "--days", type=int, default=7, help="How many days back to read (default: 7)"
    )
    logs_parser.add_argument(
        "--limit", type=int, default=50, help="Maximum entries to show (default: 50)"
    )
    logs_parser.add_argument(
        "--filter", "-f", action="append", default=[], metavar="KEY=VALUE",
        help="Only entries whose KEY equals VALUE (repeatable)",
    )

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "init": cmd_init,
        "list": cmd_list,
        "describe": cmd_describe,
        "template": cmd_template,
        "columns": cmd_columns,
        "logs": cmd_logs,
    }
    try:
        return commands[args.command](args)
    except DocForgeError as e:
        print(f"[ERROR] {e.message}")
        return 1
    finally:
        shutdown_logging()


def _config(args: argparse.Namespace):
    from docforge.engine.config import load_config

    config = load_config(args.config)
    if args.database_url:
        config.database.url = args.database_url
    logging.basicConfig(level=getattr(logging, config.logging.level.upper(), logging.INFO))
    return config


def _database(args: argparse.Namespace):
    from docforge.db.session import Database

    config = _config(args)
    init_logging(
        log_dir=config.logging.directory,
        flush_interval_ms=config.logging.flush_interval_ms,
        flush_batch_size=config.logging.flush_batch_size,
        max_queue_size=config.logging.max_queue_size,
    )
    return config, Database.from_config(config.database)


def _registry(args: argparse.Namespace):
    from docforge.engine.context import EngineContext, StaticPermissionLookup
    from docforge.schema.registry import SchemaRegistry

    config, db = _database(args)
    return db, SchemaRegistry(EngineContext(db, StaticPermissionLookup(), config=config))


def cmd_init(args: argparse.Namespace) -> int:
    """
    Bootstrap the metadata store:
    1. Load config from docforge.yaml
    2. Check the database connection
    3. Create doctypes, doctype_fields and doctype_permissions
    """
    print("=" * 60)
    print("  DocForge Initialization")
    print("=" * 60)

    config, db = _database(args)
    try:
        if not db.health_check():
            print(f"[ERROR] Database connection failed: {config.database.url}")
            return 1
        print(f"[OK] Connected ({db.dialect_name})")
        db.create_all()
        print("[OK] Metadata tables ready")
        log(log_system_event("init", details={"dialect": db.dialect_name}))
        return 0
    finally:
        db.dispose()


def cmd_list(args: argparse.Namespace) -> int:
    db, registry = _registry(args)
    try:
        doctypes = registry.list(include_inactive=not args.active_only)
        if not doctypes:
            print("No DocTypes registered.")
            return 0
        for d in doctypes:
            deadline = (
                f"{d.upload_deadline_hour:02d}:{d.upload_deadline_minute:02d}"
                if d.upload_deadline_hour is not None
                else "-"
            )
            state = "active" if d.is_active else "inactive"
            print(f"{d.slug:<30} {d.table_name:<34} {len(d.fields):>3} fields  {deadline:>5}  {state}")
        return 0
    finally:
        db.dispose()


def cmd_describe(args: argparse.Namespace) -> int:
    db, registry = _registry(args)
    try:
        doctype = registry.get_by_slug(args.slug)
        print(f"{doctype.name} ({doctype.slug}) → {doctype.table_name}")
        if doctype.upload_deadline_hour is not None:
            print(
                f"  Upload deadline: "
                f"{doctype.upload_deadline_hour:02d}:{doctype.upload_deadline_minute:02d}"
            )
        print(f"  Uploads: {'enabled' if doctype.is_upload_active else 'disabled'}")
        print()
        for f in doctype.fields:
            flags = []
            if f.is_required:
                flags.append("required")
            if f.is_unique:
                flags.append("unique")
            if f.reference_table:
                flags.append(f"→ {f.reference_table}.{f.reference_field}")
            print(f"  {f.field_name:<24} {f.field_type.value:<10} {' '.join(flags)}")

        if registry.tables.table_exists(doctype.table_name):
            print()
            print("  Physical columns:")
            for col in registry.tables.get_table_columns(doctype.table_name):
                print(f"    {col.name:<24} {col.type:<16} {'NULL' if col.nullable else 'NOT NULL'}")
        else:
            print(f"\n[WARN] Table {doctype.table_name} does not exist")
        return 0
    finally:
        db.dispose()


def cmd_template(args: argparse.Namespace) -> int:
    from docforge.ingest.template import build_template, template_filename

    db, registry = _registry(args)
    try:
        doctype = registry.get_by_slug(args.slug)
        output = Path(args.output or template_filename(doctype))
        output.write_bytes(build_template(doctype))
        print(f"[OK] Template written: {output}")
        return 0
    finally:
        db.dispose()


def cmd_columns(args: argparse.Namespace) -> int:
    from docforge.schema.table_manager import TableManager

    _, db = _database(args)
    try:
        tables = TableManager(db)
        if not tables.table_exists(args.table):
            print(f"[ERROR] Table not found: {args.table}")
            return 1
        for col in tables.get_table_columns(args.table):
            print(f"{col.name:<24} {col.type:<16} {'NULL' if col.nullable else 'NOT NULL'}")
        return 0
    finally:
        db.dispose()


def _parse_filters(pairs: list) -> dict:
    filters = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise DocForgeError(f"filter must look like KEY=VALUE, got '{pair}'")
        # numbers and booleans match their JSON form
        try:
            filters[key] = json.loads(raw)
        except ValueError:
            filters[key] = raw
    return filters


def cmd_logs(args: argparse.Namespace) -> int:
    config = _config(args)
    if args.category not in OBJECT_TYPE_CATEGORIES[args.object_type]:
        allowed = ", ".join(OBJECT_TYPE_CATEGORIES[args.object_type])
        print(f"[ERROR] Unknown category '{args.category}' for {args.object_type} (use {allowed})")
        return 1

    end = date.today()
    entries = FileLogger(config.logging.directory).query(
        args.object_type,
        args.category,
        start_date=end - timedelta(days=max(args.days, 1) - 1),
        end_date=end,
        filters=_parse_filters(args.filter),
        limit=max(args.limit, 1),
    )
    if not entries:
        print("No log entries found.")
        return 0
    for entry in entries:
        print(json.dumps(entry, default=str, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
