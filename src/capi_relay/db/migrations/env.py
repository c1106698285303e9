"""Alembic environment for the capi-relay schema.

The database URL is taken from CAPI_RELAY_DATABASE__URL (or DATABASE_URL)
when set, otherwise from ``sqlalchemy.url`` in alembic.ini. Migrations run
on a synchronous psycopg connection without pooling.
"""

import os
from logging.config import fileConfig
from typing import Any

from alembic import context
from sqlalchemy import create_engine, pool

from capi_relay.db import to_psycopg_url
from capi_relay.db.models import metadata

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

URL_ENV_VARS = ("CAPI_RELAY_DATABASE__URL", "DATABASE_URL")


def database_url() -> str:
    """Resolve the migration target URL."""
    for name in URL_ENV_VARS:
        value = os.environ.get(name)
        if value:
            return to_psycopg_url(value)
    return to_psycopg_url(config.get_main_option("sqlalchemy.url", ""))


def _configure(**options: Any) -> None:
    # Autogenerate compares column types and server defaults too
    context.configure(
        target_metadata=metadata,
        compare_type=True,
        compare_server_default=True,
        **options,
    )


def run_migrations_offline() -> None:
    """Emit the migration SQL without connecting."""
    _configure(
        url=database_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply migrations over a single unpooled connection."""
    engine = create_engine(database_url(), poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            _configure(connection=connection)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
