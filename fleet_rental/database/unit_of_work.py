"""
Transactional unit bound to one tenant partition.

The only gateway through which the booking and payment engines touch
storage.

Implements:
- One connection checkout per unit, partition applied to that connection only
- Commit iff the unit of work returns, rollback on any exception or cancellation
- Driver failures surfaced as StorageUnavailableError
"""
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar

import structlog
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from fleet_rental.config import Settings
from fleet_rental.core.exceptions import StorageUnavailableError
from fleet_rental.core.tenancy import validate_schema_name
from fleet_rental.database.connection import select_partition
from fleet_rental.database.models import TENANT_SCHEMA
from fleet_rental.monitoring.metrics import metrics
from fleet_rental.schemas import TenantContext

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# PostgreSQL lock_not_available, raised when lock_timeout expires
LOCK_NOT_AVAILABLE = "55P03"


def _is_unavailable(error: DBAPIError) -> bool:
    if isinstance(error, (OperationalError, InterfaceError)):
        return True
    orig = error.orig
    return LOCK_NOT_AVAILABLE in (getattr(orig, "sqlstate", None), getattr(orig, "pgcode", None))


class TransactionalUnit:
    """
    Runs caller-supplied work inside one tenant-scoped transaction.

    Example:
        unit = TransactionalUnit(engine, settings)
        booking_id = await unit.run(tenant, create_booking_work)
    """

    def __init__(self, engine: AsyncEngine, settings: Settings):
        """
        Initialize the unit.

        Args:
            engine: Shared async engine (its pool is the only shared resource)
            settings: Application settings
        """
        self.engine = engine
        self.settings = settings

    @asynccontextmanager
    async def session(self, tenant: TenantContext) -> AsyncIterator[AsyncSession]:
        """
        Open a tenant-scoped transaction and yield a session bound to it.

        Commits when the block exits normally; rolls back when it raises.

        Args:
            tenant: Resolved tenant

        Yields:
            AsyncSession: Session whose statements target the tenant partition

        Raises:
            TenantScopeError: Partition invalid or not selectable
            StorageUnavailableError: Connection, begin, commit or lock failure
        """
        schema_name = validate_schema_name(tenant.schema_name)
        started = time.monotonic()

        try:
            conn = await self.engine.connect()
        except (OperationalError, InterfaceError) as e:
            logger.error("storage_connect_failed", tenant_id=tenant.tenant_id, error=str(e))
            raise StorageUnavailableError(f"Could not connect to database: {e}") from e

        try:
            # Applies to this connection object only, never to the pool
            conn = await conn.execution_options(
                schema_translate_map={TENANT_SCHEMA: schema_name}
            )
            try:
                await conn.begin()
            except DBAPIError as e:
                raise StorageUnavailableError(f"Could not begin transaction: {e}") from e
            await select_partition(conn, schema_name, self.settings.database_lock_timeout_seconds)

            session = AsyncSession(bind=conn, expire_on_commit=False, autoflush=False)
            try:
                yield session
                await session.flush()
            except DBAPIError as e:
                await conn.rollback()
                if not _is_unavailable(e):
                    metrics.record_unit_of_work("rolled_back", time.monotonic() - started)
                    raise
                logger.warning(
                    "unit_of_work_storage_error", tenant_id=tenant.tenant_id, error=str(e)
                )
                metrics.record_unit_of_work("storage_error", time.monotonic() - started)
                raise StorageUnavailableError(f"Database unavailable: {e}") from e
            except BaseException:
                await conn.rollback()
                metrics.record_unit_of_work("rolled_back", time.monotonic() - started)
                raise
            finally:
                await session.close()

            try:
                await conn.commit()
            except DBAPIError as e:
                logger.error("unit_of_work_commit_failed", tenant_id=tenant.tenant_id, error=str(e))
                metrics.record_unit_of_work("commit_failed", time.monotonic() - started)
                raise StorageUnavailableError(f"Commit failed: {e}") from e

            metrics.record_unit_of_work("committed", time.monotonic() - started)
        finally:
            await conn.close()

    async def run(
        self,
        tenant: TenantContext,
        work: Callable[[AsyncSession], Awaitable[T]],
    ) -> T:
        """
        Execute `work` atomically inside the tenant partition.

        Args:
            tenant: Resolved tenant
            work: Coroutine function receiving the session

        Returns:
            T: Whatever `work` returns, after commit

        Raises:
            Whatever `work` raises (after rollback), TenantScopeError,
            StorageUnavailableError
        """
        async with self.session(tenant) as session:
            result = await work(session)
        return result
