from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import Any

from app.db.memory import InMemoryDatabase
from app.db.postgres import PostgresDatabase
from app.db.rls import PostgresRlsManager
from app.db.schema import PostgresSchemaManager
from app.runtime_profile import env_flag, true_stack_required

logger = logging.getLogger(__name__)


def create_database_from_env(environ: Mapping[str, str] | None = None) -> Any:
    env = os.environ if environ is None else environ
    backend = env.get("SF_DB_BACKEND", "memory").strip().lower()
    if true_stack_required(env) and backend != "postgres":
        raise RuntimeError("SF_DB_BACKEND must be postgres when SF_REQUIRE_TRUESTACK=true")
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when SF_DB_BACKEND=postgres")
        if env_flag("POSTGRES_APPLY_SCHEMA", False, env):
            count = PostgresSchemaManager(dsn).apply()
            logger.info("postgres_schema_applied statements=%s", count)
        if env_flag("POSTGRES_APPLY_RLS", False, env):
            tables = PostgresRlsManager(dsn).apply()
            logger.info("postgres_rls_applied tables=%s", ",".join(tables))
        return PostgresDatabase(dsn)
    if backend != "memory":
        raise ValueError(f"unsupported SF_DB_BACKEND: {backend}")
    return InMemoryDatabase()
