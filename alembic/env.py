import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from ghl_sync.core.database import Base

# table modules register themselves on Base.metadata when imported
import ghl_sync.billing.models  # noqa: F401,E402
import ghl_sync.integrations.models  # noqa: F401,E402
import ghl_sync.sync.models  # noqa: F401,E402
import ghl_sync.workspace.models  # noqa: F401,E402

alembic_config = context.config
if alembic_config.config_file_name is not None:
    fileConfig(alembic_config.config_file_name)


def database_url() -> str:
    return os.getenv("DATABASE_URL") or alembic_config.get_main_option("sqlalchemy.url") or ""


def migrate_offline() -> None:
    context.configure(
        url=database_url(),
        target_metadata=Base.metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def migrate_online() -> None:
    options = dict(alembic_config.get_section(alembic_config.config_ini_section) or {})
    options["sqlalchemy.url"] = database_url()
    engine = engine_from_config(options, prefix="sqlalchemy.", poolclass=pool.NullPool)

    with engine.connect() as connection:
        context.configure(connection=connection, target_metadata=Base.metadata, compare_type=True)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    migrate_offline()
else:
    migrate_online()
