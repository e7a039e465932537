import logging
from logging.config import fileConfig
from typing import Optional

from sqlalchemy import engine_from_config, pool
from alembic import context

from config import get_settings
from database import Base
import models  # noqa: F401  registers the tables on Base.metadata

config = context.config

if config.config_file_name is not None and config.attributes.get(
    "configure_logger", True
):
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata


def _database_url() -> str:
    """`alembic -x url=...` wins, then a caller-supplied URL, then settings."""
    url: Optional[str] = context.get_x_argument(as_dictionary=True).get("url")
    if not url:
        url = config.attributes.get("database_url")
    return url or get_settings().database_url


def _configure_options(dialect_name: str) -> dict:
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        # SQLite cannot ALTER constraints in place
        "render_as_batch": dialect_name == "sqlite",
    }


def run_migrations_offline(url: str) -> None:
    context.configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_options(url.split(":", 1)[0].split("+", 1)[0]),
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online(url: str) -> None:
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = url
    connectable = engine_from_config(
        section, prefix="sqlalchemy.", poolclass=pool.NullPool
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection, **_configure_options(connection.dialect.name)
        )
        with context.begin_transaction():
            logger.info(f"migrating: dialect={connection.dialect.name}")
            context.run_migrations()
    connectable.dispose()


url = _database_url()
if context.is_offline_mode():
    run_migrations_offline(url)
else:
    run_migrations_online(url)
