"""
DocVault CLI: bootstrap and maintenance commands.

Commands:
- docvault init          - Create the repository tables and the blob root
- docvault sweep         - Purge trash older than the retention window
- docvault check-config  - Validate docvault.yaml and print the effective settings
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional

logger = logging.getLogger("docvault.cli")


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="docvault",
        description="DocVault - document repository engine",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # docvault init
    init_parser = subparsers.add_parser("init", help="Create repository tables")
    init_parser.add_argument("--config", default=None, help="Path to docvault.yaml (default: auto-discover)")

    # docvault sweep
    sweep_parser = subparsers.add_parser("sweep", help="Purge expired trash")
    sweep_parser.add_argument("--config", default=None, help="Path to docvault.yaml (default: auto-discover)")
    sweep_parser.add_argument(
        "--retention-days", type=int, default=None,
        help="Override trash.retention_days for this run",
    )

    # docvault check-config
    check_parser = subparsers.add_parser("check-config", help="Validate docvault.yaml")
    check_parser.add_argument("--config", default=None, help="Path to docvault.yaml (default: auto-discover)")

    args = parser.parse_args(argv)

    if args.command == "init":
        return cmd_init(args)
    elif args.command == "sweep":
        return cmd_sweep(args)
    elif args.command == "check-config":
        return cmd_check_config(args)
    else:
        parser.print_help()
        return 0


def _load(config_path: Optional[str]):
    from docvault.engine.config import load_config
    from docvault.engine.errors import ConfigError

    try:
        return load_config(config_path)
    except ConfigError as e:
        print(f"[ERROR] {e.message}")
        return None


def cmd_init(args: argparse.Namespace) -> int:
    """Create tables and the blob store root."""
    from sqlalchemy.exc import SQLAlchemyError

    from docvault.db.session import init_repository_db
    from docvault.repository.blobs import LocalBlobStore

    config = _load(args.config)
    if config is None:
        return 1
    print("[OK] Configuration loaded")

    try:
        init_repository_db(config.database.url, create_tables=True)
        print("[OK] Repository tables created")
    except SQLAlchemyError as e:
        print(f"[ERROR] Failed to create tables: {e}")
        return 1

    store = LocalBlobStore(config.blob_store.root, config.blob_store.public_base_url)
    print(f"[OK] Blob store ready at {store.root}")
    return 0


def cmd_sweep(args: argparse.Namespace) -> int:
    """Run one retention sweep."""
    from sqlalchemy.exc import SQLAlchemyError

    from docvault.engine.logging import init_logging, shutdown_logging
    from docvault.process.retention import run_sweep

    config = _load(args.config)
    if config is None:
        return 1
    if args.retention_days is not None:
        if args.retention_days < 1:
            print("[ERROR] --retention-days must be a positive integer")
            return 1
        config.trash.retention_days = args.retention_days

    init_logging(
        log_dir=config.logging.directory,
        flush_interval_ms=config.logging.async_queue.flush_interval_ms,
        flush_batch_size=config.logging.async_queue.flush_batch_size,
        max_queue_size=config.logging.async_queue.max_queue_size,
        level=config.logging.level,
    )
    try:
        summary = run_sweep(config)
    except SQLAlchemyError as e:
        print(f"[ERROR] Sweep failed: {e}")
        return 1
    finally:
        shutdown_logging()

    print(f"[OK] Purged {summary['purged']} node(s) older than {summary['retention_days']} day(s)")
    if summary["failed_roots"]:
        print(f"[WARN] {len(summary['failed_roots'])} trash root(s) could not be purged")
        return 1
    return 0


def cmd_check_config(args: argparse.Namespace) -> int:
    """Validate configuration and print the effective settings."""
    from docvault.engine.errors import ConfigError
    from docvault.process.retention import build_beat_schedule

    config = _load(args.config)
    if config is None:
        return 1

    try:
        build_beat_schedule(config.trash.sweep_schedule)
    except ConfigError as e:
        print(f"[ERROR] {e.message}")
        return 1

    print(f"[OK] {config.name} ({config.environment})")
    print(f"  database:        {config.database.url.split('@')[-1]}")
    print(f"  blob store:      {config.blob_store.root}")
    print(f"  retention:       {config.trash.retention_days} day(s), batch {config.trash.cascade_batch_size}")
    print(f"  sweep schedule:  {config.trash.sweep_schedule}")
    print(f"  recent limit:    {config.listing.recent_limit}")
    print(f"  redis fan-out:   {'on' if config.fanout.redis_enabled else 'off'}")
    print(f"  log level:       {config.logging.level}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
