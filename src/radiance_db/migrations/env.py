"""Alembic environment for the radiance_db schema.

Alembic's runner is synchronous, so the plain ``postgresql://`` URL from
``get_sync_url()`` replaces whatever ``sqlalchemy.url`` alembic.ini holds.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from radiance_db.config import get_sync_url
from radiance_db.models import Base

config = context.config
config.set_main_option("sqlalchemy.url", get_sync_url())

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# radiance_db.models imports every model module, so both tables are here
target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Emit SQL to stdout without a database connection."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Connect and apply pending revisions."""
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
