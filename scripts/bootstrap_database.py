#!/usr/bin/env python3
"""Create the HealthTracker visit tables in a fresh or existing database."""

from __future__ import annotations

import argparse
import sys
from dataclasses import replace

from healthtracker.db import (
    DatabaseSettings,
    create_database_engine,
    get_database_settings,
    initialise_schema,
)
from healthtracker.db.config import sqlite_path


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Initialise the HealthTracker database schema.",
    )
    parser.add_argument(
        "--database",
        "-d",
        help="Path to a SQLite database file (default: HEALTHTRACKER_DB_PATH or the user data dir)",
    )
    parser.add_argument(
        "--url",
        help="SQLAlchemy database URL; takes precedence over --database",
    )
    parser.add_argument("--echo", action="store_true", help="Log every SQL statement")
    return parser.parse_args()


def _resolve_settings(args: argparse.Namespace) -> DatabaseSettings:
    settings = get_database_settings()
    if args.url:
        settings = replace(settings, url=args.url)
    elif args.database:
        settings = replace(settings, url=f"sqlite:///{sqlite_path(args.database)}")
    return replace(settings, echo=args.echo or settings.echo)


def main() -> int:
    args = parse_args()
    settings = _resolve_settings(args)

    engine = create_database_engine(settings)
    try:
        initialise_schema(engine)
    finally:
        engine.dispose()

    print(f"Database initialised at {settings.url}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
