"""Alembic environment configuration."""

from logging.config import fileConfig

from sqlalchemy import pool
from alembic import context

from subsync.config.settings import get_settings
from subsync.database.db import build_engine
from subsync.database.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

# DATABASE_URL from settings is the single source of truth
database_url = get_settings().database_url

# SQLite cannot ALTER most constraints in place
render_as_batch = database_url.startswith("sqlite")


def run_migrations_offline() -> None:
    """Emit migration SQL to stdout without connecting."""
    context.configure(
        url=database_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=render_as_batch,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations against the configured database."""
    connectable = build_engine(database_url, poolclass=pool.NullPool, echo=False)

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=render_as_batch,
            compare_type=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
