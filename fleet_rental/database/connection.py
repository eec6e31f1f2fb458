"""
Database engine management and partition selection.

Every tenant lives in its own partition of one shared database:
- PostgreSQL: one schema per tenant
- SQLite (local development and tests): one attached database file per tenant

Partition names are applied through SQLAlchemy's ``schema_translate_map``
on a single connection object and rendered as quoted identifiers, never
concatenated into SQL text.
"""
from pathlib import Path
from typing import Any

import structlog
from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from fleet_rental.config import Settings
from fleet_rental.core.exceptions import TenantScopeError
from fleet_rental.database.models import DIRECTORY_TABLES, TENANT_SCHEMA, Base

logger = structlog.get_logger(__name__)


def partition_dir(settings: Settings) -> Path:
    """
    Directory holding per-tenant SQLite files.

    Defaults to the directory of the main database file.
    """
    if settings.sqlite_partition_dir is not None:
        return Path(settings.sqlite_partition_dir)
    database = make_url(settings.database_url).database
    if not database or database == ":memory:":
        raise ValueError("SQLite partitions need a file database or sqlite_partition_dir")
    return Path(database).resolve().parent


def partition_path(settings: Settings, schema_name: str) -> Path:
    """Path of the SQLite file backing a tenant partition."""
    return partition_dir(settings) / f"{schema_name}.db"


def _install_sqlite_partitions(engine: AsyncEngine, settings: Settings) -> None:
    """
    Hook partition attachment and write transactions into SQLite connections.

    The driver's own transaction handling is disabled so that the unit of
    work can issue BEGIN IMMEDIATE. That takes the write lock at begin time
    and serialises writers the way SELECT ... FOR UPDATE does on PostgreSQL.
    The tenant file is attached before BEGIN, since ATTACH is not allowed
    inside a transaction.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        translate = conn.get_execution_options().get("schema_translate_map") or {}
        schema_name = translate.get(TENANT_SCHEMA)
        if schema_name is not None:
            attached = conn.info.setdefault("attached_partitions", set())
            if schema_name not in attached:
                path = partition_path(settings, schema_name)
                if not path.exists():
                    raise TenantScopeError(
                        f"Partition {schema_name} does not exist", schema_name=schema_name
                    )
                quoted = conn.dialect.identifier_preparer.quote_identifier(schema_name)
                try:
                    conn.exec_driver_sql(f"ATTACH DATABASE ? AS {quoted}", (str(path),))
                except DBAPIError as e:
                    raise TenantScopeError(
                        f"Failed to attach partition {schema_name}: {e}",
                        schema_name=schema_name,
                    ) from e
                attached.add(schema_name)
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """
    Create the database engine for the configured backend.

    Args:
        settings: Application settings

    Returns:
        AsyncEngine: SQLAlchemy async engine instance
    """
    if settings.is_sqlite:
        engine = create_async_engine(
            settings.database_url,
            echo=settings.database_echo,
            poolclass=NullPool,
            connect_args={"timeout": settings.database_lock_timeout_seconds},
        )
        _install_sqlite_partitions(engine, settings)
    else:
        engine = create_async_engine(
            settings.database_url,
            echo=settings.database_echo,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,  # Verify connections before using
            pool_recycle=3600,  # Recycle connections after 1 hour
        )

    logger.info(
        "database_engine_created",
        dialect=engine.dialect.name,
        pool=engine.pool.__class__.__name__,
    )
    return engine


async def select_partition(
    conn: AsyncConnection, schema_name: str, lock_timeout_seconds: float
) -> None:
    """
    Confirm the partition and bound lock waits for the open transaction.

    SQLite partitions are attached by the begin hook and lock waits are
    bounded by the driver's busy timeout. On PostgreSQL the schema must
    exist and ``lock_timeout`` is set transaction-locally.

    Raises:
        TenantScopeError: If the partition does not exist
    """
    if conn.dialect.name != "postgresql":
        return

    result = await conn.execute(
        text("SELECT 1 FROM pg_namespace WHERE nspname = :schema_name"),
        {"schema_name": schema_name},
    )
    if result.scalar_one_or_none() is None:
        raise TenantScopeError(
            f"Partition {schema_name} does not exist", schema_name=schema_name
        )

    await conn.execute(
        text("SELECT set_config('lock_timeout', :timeout, true)"),
        {"timeout": f"{int(lock_timeout_seconds * 1000)}ms"},
    )


async def init_db(engine: AsyncEngine) -> None:
    """
    Initialize the shared tenant directory.

    Tenant tables are created per partition by the provisioner.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, tables=DIRECTORY_TABLES)
    logger.info("tenant_directory_initialized")
