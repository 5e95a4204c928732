"""Alembic environment for the gallery schema.

``storage.upgrade_database`` hands its engine over through
``config.attributes["engine"]``; the ``alembic`` command line falls back to
the application engine.
"""

from __future__ import annotations

from logging.config import fileConfig

from alembic import context
from sqlalchemy.engine import Engine

from eventgallery import database
from eventgallery.models import Base

config = context.config
target_metadata = Base.metadata

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _engine() -> Engine:
    return config.attributes.get("engine") or database.engine


def _offline_url() -> str:
    return config.get_main_option("sqlalchemy.url") or str(_engine().url)


def run_offline() -> None:
    """Emit the migration SQL without touching a database."""
    context.configure(
        url=_offline_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_online() -> None:
    with _engine().connect() as connection:
        # SQLite cannot ALTER constraints in place; batch mode rebuilds tables.
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_offline()
else:
    run_online()
