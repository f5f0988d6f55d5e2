from __future__ import annotations

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from pixsettle.config import settings
from pixsettle.db import models  # noqa: F401  registers tables on Base.metadata
from pixsettle.db.base import Base

config = context.config
if config.config_file_name is not None and config.attributes.get("configure_logger", True):
    fileConfig(config.config_file_name, disable_existing_loggers=False)

DB_URL = config.get_main_option("sqlalchemy.url") or settings.db_url


def _options() -> dict:
    # SQLite cannot ALTER most constraints in place; batch mode rebuilds the table
    return {
        "target_metadata": Base.metadata,
        "compare_type": True,
        "render_as_batch": DB_URL.startswith("sqlite"),
    }


def run_offline() -> None:
    context.configure(url=DB_URL, literal_binds=True, dialect_opts={"paramstyle": "named"}, **_options())
    with context.begin_transaction():
        context.run_migrations()


def _migrate(connection: Connection) -> None:
    context.configure(connection=connection, **_options())
    with context.begin_transaction():
        context.run_migrations()


async def run_online() -> None:
    if not DB_URL:
        raise RuntimeError("DB_URL is not configured")
    engine = create_async_engine(DB_URL, poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_offline()
else:
    asyncio.run(run_online())
