"""Alembic environment for the flowsched schema.

Run from ``backend/``::

    alembic upgrade head
    alembic upgrade head --sql      # offline: print the DDL instead

The target database is taken from ``FLOW_DB_URL`` (converted to its
synchronous driver by ``Settings.sync_db_url``); the URL in alembic.ini is
only a placeholder.
"""

from __future__ import annotations

import os
import sys
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from flowsched.config import settings  # noqa: E402
from flowsched.db.models import Base  # noqa: E402

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

config.set_main_option("sqlalchemy.url", settings.sync_db_url())

_CONFIGURE_OPTS = {
    "target_metadata": Base.metadata,
    "compare_type": True,
    # SQLite has no ALTER TABLE for most changes; batch mode rebuilds tables.
    "render_as_batch": settings.is_sqlite,
}


def run_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_CONFIGURE_OPTS,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, **_CONFIGURE_OPTS)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_offline()
else:
    run_online()
