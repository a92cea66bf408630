"""Command line entry point: `fleet-backup {all|site|cleanup|list|restore}`."""

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from ._utils import human_size, logger
from .backup import BackupManager, RestoreManager, RetentionManager
from .backup.models import ArtifactKind, BackupScope, RunSummary
from .backup.restore import RestoreAbortedError
from .config import FleetConfig
from .exceptions import BackupError

LIST_LIMIT = 20


def configure_logging(verbose: bool = False) -> None:
    """Attach a stdout handler to the package logger."""
    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)
    logger.propagate = False
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(
        '%(asctime)s - [%(name)s] - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    logger.addHandler(handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fleet-backup",
        description="Back up, prune and restore WordPress fleet sites",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument(
        "--env",
        default=None,
        help="Environment file to load (default: .env in WPFLEET_ROOT or the current directory)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("all", help="Back up all active sites, then apply retention")

    site = commands.add_parser("site", help="Back up a single site")
    site.add_argument("domain")
    only = site.add_mutually_exclusive_group()
    only.add_argument("--database-only", action="store_true", help="Only dump the database")
    only.add_argument("--files-only", action="store_true", help="Only archive files and configuration")

    cleanup = commands.add_parser("cleanup", help="Apply the retention policy")
    cleanup.add_argument("--dry-run", action="store_true", help="Report without deleting")

    listing = commands.add_parser("list", help="List backup runs")
    listing.add_argument("domain", nargs="?", default=None)
    listing.add_argument("--limit", type=int, default=LIST_LIMIT)

    restore = commands.add_parser("restore", help="Restore a site from a backup run")
    restore.add_argument("domain")
    restore.add_argument("run_id", help="Run identifier, e.g. 20240115_030000")
    restore.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    restore.add_argument("--dry-run", action="store_true", help="Only show what would be restored")

    return parser


def load_environment(env_file: Optional[str]) -> None:
    if env_file:
        load_dotenv(env_file, override=True)
        return
    default = Path(os.getenv("WPFLEET_ROOT", ".")) / ".env"
    if default.is_file():
        load_dotenv(default)


def print_summary(summary: RunSummary) -> None:
    print(f"Run {summary.run_id}: {summary.succeeded} of {summary.attempted} site(s) backed up, "
          f"{summary.failed} failed, total size {summary.total_size}")
    for tenant in summary.tenants:
        status = "ok" if tenant.success else "FAILED"
        print(f"  - {tenant.domain}: {status}")
        for kind, error in tenant.errors.items():
            print(f"      {kind}: {error}")
    if summary.skipped:
        print(f"Skipped after cancellation: {', '.join(summary.skipped)}")


async def cmd_backup(config: FleetConfig, args: argparse.Namespace) -> int:
    manager = BackupManager(config)

    if args.command == "all":
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, manager.cancel)
        try:
            summary = await manager.run_backup(BackupScope.ALL)
        finally:
            for signum in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(signum)
    else:
        kinds: Optional[List[ArtifactKind]] = None
        if args.database_only:
            kinds = [ArtifactKind.DATABASE]
        elif args.files_only:
            kinds = [ArtifactKind.FILES, ArtifactKind.CONFIG]
        summary = await manager.run_backup(BackupScope.SITE, domain=args.domain, kinds=kinds)

    print_summary(summary)
    print(f"Backups written to {config.paths.backup_root / summary.run_id}")
    return BackupManager.exit_code(summary)


async def cmd_cleanup(config: FleetConfig, args: argparse.Namespace) -> int:
    retention = RetentionManager(config.retention, config.paths.backup_root)
    report = await retention.apply(dry_run=args.dry_run)

    verb = "Would delete" if report.dry_run else "Deleted"
    print(f"{verb} {len(report.deleted_runs)} run(s), freeing {human_size(report.freed_bytes)}")
    for run_id in report.deleted_runs:
        print(f"  - {run_id}")
    if report.skipped_incomplete:
        print(f"Skipped incomplete run(s): {', '.join(report.skipped_incomplete)}")
    return 0


async def cmd_list(config: FleetConfig, args: argparse.Namespace) -> int:
    runs = await BackupManager(config).list_runs(args.domain)
    if not runs:
        print("No backups found")
        return 0

    heading = f"Backups for site {args.domain}:" if args.domain else "Available backups:"
    print(heading)
    for run in runs[: args.limit]:
        state = "" if run.complete else "  (incomplete)"
        print(f"  {run.run_id}  {len(run.tenants):>3} site(s)  {human_size(run.size_bytes):>6}{state}")
    return 0


async def cmd_restore(config: FleetConfig, args: argparse.Namespace) -> int:
    manager = RestoreManager(config)
    try:
        plan = await manager.plan(args.domain, args.run_id)
    except RestoreAbortedError as e:
        if not args.dry_run:
            await manager.report(e.result)
        print(f"Restore failed: {e.result.describe()} {e.result.message or ''}".rstrip())
        return 1

    print(f"Restore {plan.domain} from backup {plan.run_id}")
    print(f"Steps: {' -> '.join(step.value for step in plan.steps)}")
    for target in plan.overwrites:
        print(f"  overwrites {target}")
    for warning in plan.warnings:
        print(f"  warning: {warning}")

    if args.dry_run:
        return 0

    if not args.yes:
        reply = input("This will overwrite existing data. Continue? (y/N) ")
        if reply.strip().lower() not in ("y", "yes"):
            print("Restore cancelled")
            return 0

    result = await manager.restore(args.domain, args.run_id, force=True)
    for warning in result.warnings:
        print(f"  warning: {warning}")
    if result.success:
        print("Site restored successfully!")
        return 0
    print(f"Restore failed: {result.describe()} {result.message or ''}".rstrip())
    return 1


COMMANDS = {
    "all": cmd_backup,
    "site": cmd_backup,
    "cleanup": cmd_cleanup,
    "list": cmd_list,
    "restore": cmd_restore,
}


async def run(config: FleetConfig, args: argparse.Namespace) -> int:
    try:
        return await COMMANDS[args.command](config, args)
    except BackupError as e:
        logger.error(e.describe())
        return 1


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    load_environment(args.env)

    try:
        config = FleetConfig.from_env()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    return asyncio.run(run(config, args))


if __name__ == "__main__":
    sys.exit(main())
