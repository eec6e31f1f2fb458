"""
Composition root.

Builds every component from one frozen Settings instance and owns their
lifecycle. Boundary code (HTTP handlers, workers, tests) talks to the core
through a RentalService.
"""
from typing import Optional

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from fleet_rental.config import Settings, get_settings
from fleet_rental.core.assets import AssetRegistry
from fleet_rental.core.bookings import BookingEngine
from fleet_rental.core.payments import PaymentEngine
from fleet_rental.core.tenancy import TenantProvisioner, TenantResolver
from fleet_rental.database.connection import create_engine_from_settings, init_db
from fleet_rental.database.unit_of_work import TransactionalUnit
from fleet_rental.integrations.stripe_client import StripeClient
from fleet_rental.integrations.webhook_dispatcher import WebhookNotifier
from fleet_rental.integrations.webhook_handler import StripeWebhookHandler
from fleet_rental.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


class RentalService:
    """
    Wires the rental core together.

    Example:
        service = RentalService(get_settings())
        await service.start()
        tenant = await service.resolver.resolve_host(request_host)
        receipt = await service.bookings.create_booking(tenant, car_id, customer_id, start, end)
        await service.stop()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        engine: Optional[AsyncEngine] = None,
        stripe_client: Optional[StripeClient] = None,
        webhook_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Build all components.

        Args:
            settings: Application settings (loaded once if omitted)
            engine: Database engine (created from settings if omitted)
            stripe_client: Processor client (created from settings if omitted)
            webhook_transport: Optional httpx transport for outbound webhooks
        """
        self.settings = settings or get_settings()
        self.engine = engine or create_engine_from_settings(self.settings)

        self.unit = TransactionalUnit(self.engine, self.settings)
        self.resolver = TenantResolver(self.engine)
        self.provisioner = TenantProvisioner(self.engine, self.settings)
        self.assets = AssetRegistry(self.unit)

        self.stripe_client = stripe_client or StripeClient(self.settings)
        self.webhook_handler = StripeWebhookHandler(self.settings)
        self.notifier = WebhookNotifier(self.unit, self.settings, transport=webhook_transport)

        self.payments = PaymentEngine(
            self.unit,
            self.resolver,
            self.stripe_client,
            self.webhook_handler,
            notifier=self.notifier,
        )
        self.bookings = BookingEngine(self.unit, self.payments, notifier=self.notifier)

    async def start(self) -> None:
        """Configure logging, create the tenant directory and start webhook workers."""
        setup_logging(self.settings)
        await init_db(self.engine)
        await self.notifier.start()
        logger.info("rental_service_started", app_env=self.settings.app_env)

    async def stop(self) -> None:
        """Drain notifications and release database connections."""
        await self.notifier.stop()
        await self.engine.dispose()
        logger.info("rental_service_stopped")
