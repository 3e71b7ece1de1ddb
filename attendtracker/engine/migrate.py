"""Create the state_entries table used by PostgresStateStore."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any

from attendtracker.engine.config import configure_logging, load_settings

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("db_schema.sql")
SCHEMA_TABLES = ("state_entries",)


def apply_schema(conn: Any, schema_sql: str | None = None) -> list[str]:
    """Run the schema on an open connection and return the tables now present."""
    sql = schema_sql if schema_sql is not None else SCHEMA_PATH.read_text(encoding="utf-8")
    with conn.cursor() as cur:
        cur.execute(sql)
        cur.execute(
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = current_schema() AND table_name = ANY(%s)",
            (list(SCHEMA_TABLES),),
        )
        present = sorted(row[0] for row in cur.fetchall())
    conn.commit()
    return present


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Apply the attendtracker PostgreSQL schema")
    parser.add_argument("--database-url", default=None, help="Overrides ATTENDTRACKER_DATABASE_URL")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = load_settings()
    configure_logging(settings.log_level)
    database_url = args.database_url or settings.database_url
    if not database_url:
        print("ATTENDTRACKER_DATABASE_URL is required for migration", file=sys.stderr)
        return 1

    import psycopg

    with psycopg.connect(database_url) as conn:
        present = apply_schema(conn)

    missing = sorted(set(SCHEMA_TABLES) - set(present))
    if missing:
        logger.error("[migrate] schema applied but tables missing: %s", ", ".join(missing))
        return 1
    logger.info("[migrate] schema ready: %s", ", ".join(present))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
