"""
Sync engine entry point.

Loads configuration, configures logging, and keeps one subject's counters and
notification feed in sync until interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog

from .config import load_config
from .engine import SyncEngine
from .identity import IdentityProvider


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """Configure structlog with the specified level and format."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.get_level_from_name(level)
        ),
    )


def run() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Care marketplace realtime sync")
    parser.add_argument(
        "-c", "--config",
        default="care-sync.yaml",
        help="Path to configuration file (default: care-sync.yaml)",
    )
    parser.add_argument(
        "-s", "--subject",
        required=True,
        help="User id whose counters and notifications to sync",
    )
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except Exception as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config.logging.level, config.logging.format)
    log = structlog.get_logger()
    log.info("sync.config_loaded", config_path=args.config, counters=len(config.counters))

    structlog.contextvars.bind_contextvars(subject=args.subject)
    try:
        engine = SyncEngine.from_config(config, identity=IdentityProvider(args.subject))
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    engine.counters.on_change(
        lambda: log.info("sync.counters", **engine.counters.values())
    )
    engine.feed.on_change(
        lambda: log.info(
            "sync.notifications",
            total=len(engine.feed.notifications()),
            unread=engine.feed.unread_count(),
        )
    )
    try:
        asyncio.run(engine.run_forever())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
