"""
Command line entry point: ``python -m botstore <command>``.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from botstore.config import StoreConfig, load_config
from botstore.database.controller import DatabaseController
from botstore.database.migration import MigrationEngine
from botstore.di import build_container
from botstore.error_handling import BotStoreError
from botstore.logging_config import set_log_level

logger = logging.getLogger(__name__)


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(prog="botstore", description="Bot data store maintenance")
    parser.add_argument('--legacy-path', type=Path, help='Path to the legacy JSON database')
    parser.add_argument('--backup-dir', type=Path, help='Directory for migration backups')
    parser.add_argument('--batch-size', type=int, help='Users per migration batch')
    parser.add_argument('--strict', action='store_true', help='Abort migration on any validation problem')
    parser.add_argument('--no-backup', action='store_true', help='Skip the backup before migrating')
    parser.add_argument('--verbose', action='store_true', help='Enable verbose logging')

    commands = parser.add_subparsers(dest='command', required=True)
    commands.add_parser('status', help='Initialize the store and print its status')
    commands.add_parser('migrate', help='Migrate the legacy JSON database into PostgreSQL')
    commands.add_parser('force-migrate', help='Reset the migration marker and migrate again')
    verify = commands.add_parser('verify', help='Run a health check; exits non-zero when unhealthy')
    verify.add_argument(
        '--require-postgres',
        action='store_true',
        help='Treat the flat-file fallback as unhealthy'
    )

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> StoreConfig:
    config = load_config()
    overrides = {}
    if args.legacy_path:
        overrides["legacy_path"] = args.legacy_path
    if args.backup_dir:
        overrides["backup_dir"] = args.backup_dir
    if args.batch_size is not None:
        overrides["batch_size"] = args.batch_size
    if args.strict:
        overrides["strict_validation"] = True
    if args.no_backup:
        overrides["create_backup"] = False
    return config.with_overrides(**overrides) if overrides else config


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def run_status(config: StoreConfig) -> int:
    container = build_container(config, initialize=True)
    try:
        _print(container.get_typed("controller", DatabaseController).get_status())
    finally:
        container.shutdown()
    return 0


def run_migrate(config: StoreConfig) -> int:
    report = MigrationEngine(config).migrate()
    _print(report.to_dict())
    return 0 if report.success else 1


def run_force_migrate(config: StoreConfig) -> int:
    controller = DatabaseController(config)
    try:
        report = controller.force_migration()
    finally:
        controller.close()
    if report is None:
        logger.warning("Nothing was migrated")
        return 1
    _print(report.to_dict())
    return 0 if report.success else 1


def run_verify(config: StoreConfig, require_postgres: bool = False) -> int:
    container = build_container(config, initialize=True)
    controller = container.get_typed("controller", DatabaseController)
    try:
        health = controller.health_check()
    finally:
        container.shutdown()
    _print(health)
    if not health["healthy"]:
        return 1
    if require_postgres and controller.using_fallback:
        logger.error("Running on the flat-file fallback")
        return 1
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the command line."""
    args = parse_arguments(argv)
    try:
        config = build_config(args)
        if args.verbose:
            set_log_level("DEBUG", "console")

        if args.command == "status":
            return run_status(config)
        if args.command == "migrate":
            return run_migrate(config)
        if args.command == "force-migrate":
            return run_force_migrate(config)
        return run_verify(config, require_postgres=args.require_postgres)
    except BotStoreError as e:
        logger.error(f"{args.command} failed: {e.message}")
        _print({"error": e.to_dict()})
        return 1


if __name__ == "__main__":
    sys.exit(main())
