#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.db.rls import PostgresRlsManager
from app.db.schema import PostgresSchemaManager


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Create the storefront schema and apply tenant row-level security policies"
    )
    parser.add_argument("--dsn", default=os.getenv("POSTGRES_DSN", ""), help="PostgreSQL DSN")
    parser.add_argument(
        "--tables",
        default="",
        help="comma-separated tenant-scoped tables; default covers every tenant-scoped table",
    )
    parser.add_argument("--skip-schema", action="store_true", help="only (re)apply functions and policies")
    args = parser.parse_args(argv)

    dsn = str(args.dsn or "").strip()
    if not dsn:
        raise SystemExit("POSTGRES_DSN is required (pass --dsn or set env)")

    tables: list[str] | None = None
    if args.tables.strip():
        tables = [x.strip() for x in args.tables.split(",") if x.strip()]

    schema_statements = 0
    if not args.skip_schema:
        schema_statements = PostgresSchemaManager(dsn).apply()
    applied = PostgresRlsManager(dsn, tables=tables).apply()
    print(
        json.dumps(
            {"schema_statements": schema_statements, "applied_tables": applied, "count": len(applied)},
            ensure_ascii=True,
            sort_keys=True,
            indent=2,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
