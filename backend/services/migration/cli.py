"""
Command line entry point for the legacy migration.

    clinic-migrate                      # run every migration in order
    clinic-migrate clients --dry-run    # one migration, no writes
    clinic-migrate --list               # show the execution order
"""

import argparse
import asyncio
import logging
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from . import config
from .job import get_default_options
from .manager import CircularDependencyError, MigrationManager, MigrationNotFoundError
from .sources import JsonFileQueryExecutor

logger = logging.getLogger(__name__)
console = Console()

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clinic-migrate",
        description="Migrate the clinic's legacy MSSQL data into MongoDB",
    )
    parser.add_argument("migration", nargs="?", help="Run a single migration by key")
    parser.add_argument("--dry-run", action="store_true", help="Read, filter and validate without writing")
    parser.add_argument("--force", action="store_true", help="Continue after a failed migration")
    parser.add_argument("--list", action="store_true", help="List migrations in execution order and exit")
    parser.add_argument("--source-file", help="Read legacy tables from a JSON export instead of MSSQL")
    parser.add_argument("--batch-size", type=int, help="Destination write batch size")
    parser.add_argument(
        "--log-level",
        default=config.LOG_LEVEL,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    return parser


def build_manager(args: argparse.Namespace) -> MigrationManager:
    options = get_default_options().merged(dry_run=args.dry_run or None, batch_size=args.batch_size)
    source = JsonFileQueryExecutor(args.source_file) if args.source_file else None
    return MigrationManager(options=options, source=source)


def print_listing(listing: List[Dict[str, Any]]) -> None:
    table = Table(title="Migration execution order")
    table.add_column("#", justify="right")
    table.add_column("Key", style="cyan")
    table.add_column("Name")
    table.add_column("Priority", justify="right")
    table.add_column("Dependencies", style="dim")
    for entry in listing:
        table.add_row(
            str(entry["position"]),
            entry["key"],
            entry["name"],
            str(entry["priority"]),
            ", ".join(sorted(entry["dependencies"])) or "-",
        )
    console.print(table)


async def run(args: argparse.Namespace, manager: MigrationManager) -> bool:
    if args.migration:
        result = await manager.execute_migration(args.migration)
        return result.success
    outcome = await manager.execute_all(force=args.force)
    return outcome["success"]


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)

    if args.batch_size is not None and args.batch_size < 1:
        logger.error("--batch-size must be a positive integer")
        return 1

    manager = build_manager(args)
    try:
        if args.list:
            print_listing(manager.list_migrations())
            return 0
        success = asyncio.run(run(args, manager))
    except (MigrationNotFoundError, CircularDependencyError) as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.error(f"Migration execution failed: {e}", exc_info=True)
        return 1

    return 0 if success else 1
