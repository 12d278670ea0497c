"""Alembic environment for the message engine schema.

Migrations run over a synchronous psycopg2 connection. The URL comes from
DATABASE_URL_SYNC, else DATABASE_URL with the async driver swapped out, else
the default in alembic.ini. Settings() is not used here because it requires
CRON_SECRET, which migrations have no use for.
"""

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from rehabflow.database import Base
import rehabflow.models  # noqa: F401 - registers every table on Base.metadata

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _sync_url() -> str | None:
    url = os.getenv("DATABASE_URL_SYNC")
    if url:
        return url

    async_url = os.getenv("DATABASE_URL")
    if not async_url:
        return None
    if async_url.startswith("postgresql://"):
        return async_url.replace("postgresql://", "postgresql+psycopg2://", 1)
    return async_url.replace("+asyncpg", "+psycopg2")


url_override = _sync_url()
if url_override:
    config.set_main_option("sqlalchemy.url", url_override)


def run_migrations_offline() -> None:
    """Emit SQL to stdout instead of connecting."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
