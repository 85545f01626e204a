from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import UUID as PostgreSQLUUID, JSONB
from bankrec.core.config import settings


@compiles(PostgreSQLUUID, "sqlite")
def compile_postgresql_uuid_for_sqlite(_type, _compiler, **_kwargs):
    """Allow PostgreSQL UUID columns to be created in SQLite test databases."""
    return "CHAR(36)"


@compiles(JSONB, "sqlite")
def compile_postgresql_jsonb_for_sqlite(_type, _compiler, **_kwargs):
    """Allow PostgreSQL JSONB columns to be created in SQLite test databases."""
    return "JSON"


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str, **kwargs) -> AsyncEngine:
    """
    Async engine for a database URL.

    SQLite connections get foreign key enforcement so ON DELETE rules on
    statement lines and partial reconciles behave as on PostgreSQL.
    """
    kwargs.setdefault("echo", settings.DEBUG)
    async_engine = create_async_engine(url, future=True, **kwargs)
    if async_engine.dialect.name == "sqlite":
        event.listen(async_engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return async_engine


engine = build_engine(settings.DATABASE_URL)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass
