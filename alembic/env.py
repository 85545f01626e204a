from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool
from alembic import context

# Import models to ensure they're registered with the metadata
from bankrec.core.config import settings
from bankrec.core.database import Base
from bankrec.models import (  # noqa: F401
    BankAccount,
    BankImportHistory,
    BankStatement,
    BankStatementLine,
    FullReconcile,
    OpenDocument,
    PartialReconcile,
    ReconcileModel,
    ReconcileModelLine,
    ReconcileModelPartnerMapping,
)

# this is the Alembic Config object
config = context.config

# Interpret the config file for Python logging
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Set target metadata
target_metadata = Base.metadata

database_url = settings.DATABASE_URL_SYNC
# Ensure we use sync driver for migrations
if database_url.startswith("postgresql+asyncpg"):
    database_url = database_url.replace("postgresql+asyncpg", "postgresql+psycopg")

config.set_main_option("sqlalchemy.url", database_url)


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        compare_type=True,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
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
