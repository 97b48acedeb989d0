"""
Alembic migration environment for the Signatura Billing subscription store.

DATABASE_URL comes from Settings (rewritten to the asyncpg driver). Only the
billing tables declared in SQLModel metadata are compared on autogenerate;
Supabase-managed schemas and foreign tables in the same database are skipped.
"""

import asyncio
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel

# backend/ on the path so migrations run from a plain checkout
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from signatura_billing.config.settings import get_settings  # noqa: E402
from signatura_billing.infrastructure.db.database import normalize_database_url  # noqa: E402
from signatura_billing.infrastructure.db.models import (  # noqa: E402,F401
    ProcessedWebhookTransaction,
    SubscriptionEventModel,
    UserSubscriptionModel,
)

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = SQLModel.metadata

SUPABASE_SCHEMAS = frozenset({"auth", "storage", "realtime", "extensions", "graphql", "graphql_public"})


def include_object(obj, name, type_, reflected, compare_to) -> bool:
    """Autogenerate filter: billing tables only."""
    if type_ != "table":
        return True
    if getattr(obj, "schema", None) in SUPABASE_SCHEMAS:
        return False
    return not (reflected and name not in target_metadata.tables)


def migration_url() -> str:
    database_url = get_settings().database_url
    if not database_url:
        raise RuntimeError("DATABASE_URL must be set to run billing migrations")
    return normalize_database_url(database_url)


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        include_object=include_object,
        compare_type=True,
        **kwargs,
    )


def run_offline() -> None:
    """Emit SQL to stdout instead of connecting."""
    _configure(
        url=migration_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def _run_sync(connection: Connection) -> None:
    _configure(connection=connection, compare_server_default=True)
    with context.begin_transaction():
        context.run_migrations()


async def run_online() -> None:
    engine = create_async_engine(migration_url(), poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_run_sync)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_offline()
else:
    asyncio.run(run_online())
