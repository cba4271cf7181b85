"""Alembic migration environment configuration.

Migrations run with a synchronous psycopg engine against the URL from
PORTABILITY_DATABASE__URL (or DATABASE_URL), falling back to alembic.ini.
"""

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

# Importing the package registers every table on the shared metadata
from portability.db import to_async_url
from portability.db.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def get_url() -> str:
    """Get database URL from environment or config.

    Priority:
    1. PORTABILITY_DATABASE__URL environment variable
    2. DATABASE_URL environment variable
    3. sqlalchemy.url from alembic.ini
    """
    url = (
        os.environ.get("PORTABILITY_DATABASE__URL")
        or os.environ.get("DATABASE_URL")
        or config.get_main_option("sqlalchemy.url", "")
    )
    # psycopg 3 serves both sync and async engines under the same dialect name
    return to_async_url(url)


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (emit SQL without connecting)."""
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        compare_server_default=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode within a single transaction."""
    connectable = create_engine(get_url(), poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            compare_server_default=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
