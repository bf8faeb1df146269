#!/usr/bin/env python3
"""Apply the custody schema.

Runs the SQL in db/schema.sql against the database pointed to by DATABASE_URL.
Every statement is idempotent, so re-running is safe.

Usage:
  python -m db.init_db
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from sqlalchemy import create_engine

from core.storage.postgres.config import PostgresConfig

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"


def iter_sql_statements(sql: str) -> Iterable[str]:
    """Split a SQL script into executable statements.

    Handles `--` line comments and single-quoted strings (with '' escapes).
    Dollar quoting is not supported; schema.sql does not use it.
    """

    buf: list[str] = []
    in_quote = False
    i = 0
    n = len(sql)
    while i < n:
        ch = sql[i]

        if not in_quote and sql.startswith("--", i):
            newline = sql.find("\n", i)
            i = n if newline == -1 else newline
            continue

        if ch == "'":
            if in_quote and sql.startswith("''", i):
                buf.append("''")
                i += 2
                continue
            in_quote = not in_quote

        if ch == ";" and not in_quote:
            stmt = "".join(buf).strip()
            buf = []
            if stmt:
                yield stmt
        else:
            buf.append(ch)
        i += 1

    tail = "".join(buf).strip()
    if tail:
        yield tail


def apply_schema(database_url: str, schema_sql: str | None = None) -> int:
    """Execute every statement in the schema. Returns the number executed."""
    sql = schema_sql if schema_sql is not None else SCHEMA_PATH.read_text(encoding="utf-8")
    statements = [stmt for stmt in iter_sql_statements(sql) if stmt.upper() not in ("BEGIN", "COMMIT")]

    engine = create_engine(database_url, echo=False)
    raw = engine.raw_connection()
    try:
        cur = raw.cursor()
        for stmt in statements:
            cur.execute(stmt)
        raw.commit()
    finally:
        raw.close()

    return len(statements)


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    try:
        config = PostgresConfig.from_env()
    except ValueError as exc:
        raise SystemExit(str(exc)) from exc

    count = apply_schema(config.database_url)
    logger.info("Database schema applied (%d statements)", count)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
