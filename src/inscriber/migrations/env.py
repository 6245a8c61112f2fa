"""
Alembic environment configuration for the inscriber database.
"""

import asyncio
import os
import sys
from logging.config import fileConfig
from pathlib import Path

import toml
from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel

# Add src to path for imports
src_root = Path(__file__).parent.parent.parent
project_root = src_root.parent
sys.path.insert(0, str(src_root))

# Import the inscriber models to ensure they're registered with SQLModel
from inscriber import models  # noqa: E402, F401

# this is the Alembic Config object
config = context.config

# Interpret the config file for Python logging.
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = SQLModel.metadata


def get_database_url():
    """Get database URL from the environment, inscriber.toml or alembic.ini."""
    db_url = os.getenv("DATABASE_URL") or os.getenv("INSCRIBER_DATABASE_URL")
    if db_url:
        return db_url

    for config_path in (
        project_root / "inscriber.toml",
        project_root / "config" / "inscriber.toml",
    ):
        if config_path.exists():
            db_url = toml.load(config_path).get("database_url")
            if db_url:
                return db_url

    return config.get_main_option("sqlalchemy.url")


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    url = get_database_url()
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    """Run migrations with database connection."""
    context.configure(connection=connection, target_metadata=target_metadata)

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Run migrations asynchronously."""
    url = get_database_url()

    # Convert to async URL if needed
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif url.startswith("sqlite://"):
        url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)

    connectable = create_async_engine(
        url,
        poolclass=pool.NullPool,
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
