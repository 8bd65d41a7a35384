"""Alembic environment for the billing tables (async engine, SQLModel metadata)."""

from __future__ import annotations

import asyncio
import logging
import os
import ssl
from logging.config import fileConfig
from typing import Any

import certifi
from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.ext.asyncio import async_engine_from_config
from sqlmodel import SQLModel

from app.config import settings
from app.models import subscription  # noqa: F401 - ensure models are imported

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("billing.alembic")
target_metadata = SQLModel.metadata

SUPABASE_POOLER_PORT = 6543


def _resolve_database_url() -> tuple[str, dict[str, Any]]:
    """Pick DATABASE_URL (env, then alembic.ini, then app settings) and its connect args."""
    candidates = [
        ("environment variable", os.environ.get("DATABASE_URL")),
        ("alembic.ini", config.get_main_option("sqlalchemy.url")),
        ("app settings", settings.database_url),
    ]
    for source, value in candidates:
        if not value:
            continue
        try:
            url = make_url(value)
        except ArgumentError:
            logger.warning("Unable to parse DATABASE_URL from %s; using it as-is.", source)
            return value, {}
        connect_args: dict[str, Any] = {}
        if "supabase.co" in (url.host or "").lower():
            # Supabase migrations go through the pooled port with verified TLS.
            query = {k: v for k, v in url.query.items() if k not in {"ssl", "sslmode"}}
            url = url.set(port=SUPABASE_POOLER_PORT, query=query)
            connect_args["ssl"] = ssl.create_default_context(cafile=certifi.where())
        logger.info(
            "Alembic resolved DATABASE_URL from %s: %s",
            source,
            url.render_as_string(hide_password=True),
        )
        return url.render_as_string(hide_password=False), connect_args
    raise RuntimeError("DATABASE_URL must be set to run migrations.")


def run_migrations_offline() -> None:
    url, _ = _resolve_database_url()
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    url, connect_args = _resolve_database_url()
    configuration = config.get_section(config.config_ini_section) or {}
    configuration["sqlalchemy.url"] = url
    connectable = async_engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
        connect_args=connect_args,
    )
    try:
        async with connectable.connect() as connection:
            await connection.run_sync(do_run_migrations)
    finally:
        await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
