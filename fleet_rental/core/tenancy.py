"""
Tenant scope resolution and provisioning.

Implements:
- Allow-list validation of partition names before they reach any statement
- Resolution of tenant id / subdomain / host to a TenantContext
- Provisioning of a partition (PostgreSQL schema or SQLite file) and its tables

There is no default partition: an identity that does not resolve is
rejected, never served from a shared schema.
"""
import re
from typing import Optional

import structlog
from sqlalchemy import or_, select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.schema import CreateSchema

from fleet_rental.config import Settings
from fleet_rental.core.exceptions import (
    ConflictError,
    StorageUnavailableError,
    TenantNotFoundError,
    TenantScopeError,
    ValidationError,
)
from fleet_rental.database.connection import partition_path
from fleet_rental.database.models import TENANT_SCHEMA, TENANT_TABLES, Base, Tenant
from fleet_rental.schemas import TenantContext

logger = structlog.get_logger(__name__)

SCHEMA_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]{0,62}$")
SUBDOMAIN_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,62}$")
RESERVED_SCHEMA_NAMES = frozenset(
    {"public", "information_schema", "pg_catalog", "pg_toast", "main", "temp", TENANT_SCHEMA}
)


def validate_schema_name(name: Optional[str]) -> str:
    """
    Check a partition name against the allow-list.

    Args:
        name: Candidate partition name

    Returns:
        str: The same name, safe to use as a quoted identifier

    Raises:
        TenantScopeError: If the name is not an allowed identifier
    """
    if not isinstance(name, str) or not SCHEMA_NAME_PATTERN.match(name):
        raise TenantScopeError(f"Invalid partition name: {name!r}", schema_name=str(name))
    if name in RESERVED_SCHEMA_NAMES or name.startswith("pg_"):
        raise TenantScopeError(f"Reserved partition name: {name!r}", schema_name=name)
    return name


def _to_context(tenant: Tenant) -> TenantContext:
    return TenantContext(
        tenant_id=tenant.id,
        subdomain=tenant.subdomain,
        schema_name=validate_schema_name(tenant.schema_name),
    )


class TenantResolver:
    """Maps an inbound identity to its partition through the tenant directory."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def resolve(self, identity: str) -> TenantContext:
        """
        Resolve a tenant id or subdomain.

        An exact tenant id match wins over a subdomain match, so an identity
        never lands on a different tenant than the one it names by id.

        Args:
            identity: Tenant id or subdomain

        Returns:
            TenantContext: Resolved tenant

        Raises:
            TenantNotFoundError: If no tenant matches
            TenantScopeError: If the stored partition name fails validation
            StorageUnavailableError: If the directory cannot be read
        """
        if not identity:
            raise TenantNotFoundError(identity)

        tenant = await self._lookup(Tenant.id == identity)
        if tenant is None:
            tenant = await self._lookup(Tenant.subdomain == identity.lower())
        if tenant is None:
            logger.info("tenant_not_found", identity=identity)
            raise TenantNotFoundError(identity)
        return _to_context(tenant)

    async def resolve_id(self, tenant_id: str) -> TenantContext:
        """Resolve by tenant id only. Used for identities carried by the processor."""
        tenant = await self._lookup(Tenant.id == tenant_id) if tenant_id else None
        if tenant is None:
            logger.info("tenant_not_found", tenant_id=tenant_id)
            raise TenantNotFoundError(tenant_id)
        return _to_context(tenant)

    async def _lookup(self, criterion) -> Optional[Tenant]:
        try:
            async with AsyncSession(self.engine) as session:
                result = await session.execute(select(Tenant).where(criterion))
                return result.scalar_one_or_none()
        except DBAPIError as e:
            logger.error("tenant_directory_unavailable", error=str(e))
            raise StorageUnavailableError(f"Tenant directory unavailable: {e}") from e

    async def resolve_host(self, host: str) -> TenantContext:
        """
        Resolve a request host such as ``acme.rentals.example.com:8443``.

        The first label is the tenant subdomain. Hosts without a subdomain
        (fewer than three labels) are rejected.
        """
        hostname = (host or "").split(":", 1)[0].strip().lower().rstrip(".")
        labels = hostname.split(".")
        if len(labels) < 3 or not labels[0]:
            raise TenantNotFoundError(host)
        return await self.resolve(labels[0])


class TenantProvisioner:
    """
    Creates tenants: partition, tables, then directory row.

    The directory row is written last so a partially provisioned tenant is
    never resolvable.
    """

    def __init__(self, engine: AsyncEngine, settings: Settings):
        self.engine = engine
        self.settings = settings

    async def provision(
        self,
        tenant_id: str,
        subdomain: str,
        schema_name: str,
        name: Optional[str] = None,
    ) -> TenantContext:
        """
        Provision a new tenant.

        Args:
            tenant_id: Opaque tenant identity
            subdomain: Subdomain used for host-based resolution
            schema_name: Partition name (validated)
            name: Display name

        Returns:
            TenantContext: The new tenant

        Raises:
            TenantScopeError: Invalid partition name
            ValidationError: Invalid tenant id or subdomain
            ConflictError: Tenant id, subdomain or partition already taken
        """
        schema_name = validate_schema_name(schema_name)
        subdomain = (subdomain or "").lower()
        if not tenant_id:
            raise ValidationError("tenant_id is required", field="tenant_id")
        if not SUBDOMAIN_PATTERN.match(subdomain):
            raise ValidationError(f"Invalid subdomain: {subdomain!r}", field="subdomain")
        await self._reject_identity_overlap(tenant_id, subdomain)

        await self._create_partition(schema_name)

        async with self.engine.connect() as conn:
            conn = await conn.execution_options(
                schema_translate_map={TENANT_SCHEMA: schema_name}
            )
            async with conn.begin():
                await conn.run_sync(Base.metadata.create_all, tables=TENANT_TABLES)

        try:
            async with AsyncSession(self.engine) as session:
                async with session.begin():
                    session.add(
                        Tenant(
                            id=tenant_id,
                            subdomain=subdomain,
                            schema_name=schema_name,
                            name=name,
                        )
                    )
        except IntegrityError as e:
            raise ConflictError(
                f"Tenant {tenant_id} ({subdomain}/{schema_name}) already exists",
                tenant_id=tenant_id,
            ) from e

        logger.info(
            "tenant_provisioned",
            tenant_id=tenant_id,
            subdomain=subdomain,
            schema_name=schema_name,
        )
        return TenantContext(tenant_id=tenant_id, subdomain=subdomain, schema_name=schema_name)

    async def _reject_identity_overlap(self, tenant_id: str, subdomain: str) -> None:
        # Ids and subdomains share one lookup namespace in resolve()
        async with AsyncSession(self.engine) as session:
            result = await session.execute(
                select(Tenant.id).where(
                    or_(Tenant.subdomain == tenant_id.lower(), Tenant.id == subdomain)
                )
            )
            taken = result.scalars().first()
        if taken is not None:
            raise ConflictError(
                f"Tenant {tenant_id} ({subdomain}) overlaps the identity of tenant {taken}",
                tenant_id=tenant_id,
            )

    async def _create_partition(self, schema_name: str) -> None:
        if self.engine.dialect.name == "sqlite":
            path = partition_path(self.settings, schema_name)
            path.parent.mkdir(parents=True, exist_ok=True)
            # An empty file is a valid empty SQLite database
            path.touch(exist_ok=True)
            return

        async with self.engine.begin() as conn:
            await conn.execute(CreateSchema(schema_name, if_not_exists=True))
