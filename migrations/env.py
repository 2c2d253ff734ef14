"""
Alembic environment file, async (SQLAlchemy 2.0).

Reads DATABASE_URL from config.settings (or alembic.ini fallback), imports
the scheduler tables from *db/db.py*, and supports both offline (DDL script
generation) and online (direct DB) modes.
"""

from __future__ import annotations

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from config import settings
from db.db import Base, _build_url

# ---------------------------------------------------------------------
# 1. Logging
# ---------------------------------------------------------------------
config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# ---------------------------------------------------------------------
# 2. Model metadata
# ---------------------------------------------------------------------
target_metadata = Base.metadata

# ---------------------------------------------------------------------
# 3. Database URL helper
# ---------------------------------------------------------------------
def _database_url() -> str:
    url = (
        settings.DATABASE_URL
        or settings.DATABASE_PUBLIC_URL
        or config.get_main_option("sqlalchemy.url")
    )
    if not url:
        raise RuntimeError("DATABASE_URL not set and sqlalchemy.url missing from alembic.ini")
    return _build_url(url)

# ---------------------------------------------------------------------
# 4. Offline migrations (generate SQL only)
# ---------------------------------------------------------------------
def run_migrations_offline() -> None:
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,
    )

    with context.begin_transaction():
        context.run_migrations()

# ---------------------------------------------------------------------
# 5. Online migrations (run against DB)
# ---------------------------------------------------------------------
def _make_async_engine() -> AsyncEngine:
    return create_async_engine(_database_url(), poolclass=pool.NullPool)

def _do_run_migrations(sync_conn) -> None:
    context.configure(
        connection=sync_conn,
        target_metadata=target_metadata,
        render_as_batch=sync_conn.dialect.name == "sqlite",
    )
    with context.begin_transaction():
        context.run_migrations()

async def run_migrations_online() -> None:
    engine = _make_async_engine()
    async with engine.connect() as conn:
        await conn.run_sync(_do_run_migrations)
    await engine.dispose()

# ---------------------------------------------------------------------
# 6. Entrypoint
# ---------------------------------------------------------------------
if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
