"""
Outbound webhook notifier.

Implements:
- Fire-and-forget notification after a state change commits
- Bounded in-process queue drained by a fixed pool of worker tasks
- HMAC-SHA256 signed JSON POSTs to every active, subscribed registration
- Single attempt per endpoint; failures are logged and counted, never raised

Notifications are not part of the correctness contract: a full queue or a
failing endpoint never affects the request that triggered the event.
"""
import asyncio
import hashlib
import hmac
import json
import secrets
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fleet_rental.config import Settings
from fleet_rental.core.exceptions import ValidationError
from fleet_rental.database.models import Webhook
from fleet_rental.database.unit_of_work import TransactionalUnit
from fleet_rental.monitoring.metrics import metrics
from fleet_rental.schemas import Notification, TenantContext, WebhookRegistration

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Rental-Signature"
EVENT_HEADER = "X-Rental-Event"

BOOKING_CREATED = "booking.created"
BOOKING_COMPLETED = "booking.completed"
BOOKING_CANCELLED = "booking.cancelled"
PAYMENT_AUTHORIZED = "payment.authorized"

WEBHOOK_EVENTS = frozenset(
    {BOOKING_CREATED, BOOKING_COMPLETED, BOOKING_CANCELLED, PAYMENT_AUTHORIZED}
)


def sign_payload(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the body keyed by the registration secret."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def encode_notification(notification: Notification) -> bytes:
    """Serialize the delivered JSON body."""
    return json.dumps(
        {
            "event": notification.event_type,
            "timestamp": notification.timestamp.isoformat(),
            "data": notification.data,
        },
        default=str,
        sort_keys=True,
    ).encode("utf-8")


class WebhookNotifier:
    """
    Delivers state-change notifications to tenant-registered endpoints.

    Example:
        notifier = WebhookNotifier(unit, settings)
        await notifier.start()
        notifier.notify(tenant, "booking.created", {"booking_id": "..."})
        await notifier.stop()
    """

    def __init__(
        self,
        unit: TransactionalUnit,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize notifier.

        Args:
            unit: Transactional unit used to read registrations
            settings: Application settings (timeouts, pool and queue size)
            transport: Optional httpx transport
        """
        self.unit = unit
        self.settings = settings
        self._transport = transport
        self._queue: asyncio.Queue[Notification] = asyncio.Queue(
            maxsize=settings.webhook_queue_size
        )
        self._workers: List[asyncio.Task] = []
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def notify(self, tenant: TenantContext, event_type: str, data: Dict[str, Any]) -> None:
        """
        Queue a notification. Never blocks and never raises on a full queue.

        Args:
            tenant: Tenant whose registrations receive the event
            event_type: Event type, e.g. booking.created
            data: JSON-serializable payload
        """
        notification = Notification(
            tenant=tenant,
            event_type=event_type,
            data=data,
            timestamp=datetime.now(timezone.utc),
        )
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            metrics.record_notification_dropped()
            logger.warning(
                "webhook_notification_dropped",
                tenant_id=tenant.tenant_id,
                event_type=event_type,
                queue_size=self._queue.maxsize,
            )
            return
        metrics.set_webhook_queue_depth(self._queue.qsize())

    async def start(self) -> None:
        """Start the delivery workers."""
        if self.running:
            return

        self._client = httpx.AsyncClient(
            timeout=self.settings.webhook_timeout_seconds,
            headers={"User-Agent": self.settings.webhook_user_agent},
            transport=self._transport,
        )
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"webhook-worker-{i}")
            for i in range(self.settings.webhook_workers)
        ]
        logger.info("webhook_notifier_started", workers=len(self._workers))

    async def drain(self) -> None:
        """Wait until every queued notification has been handled."""
        await self._queue.join()

    async def stop(self, drain: bool = True, timeout: float = 30.0) -> None:
        """
        Stop the delivery workers.

        Args:
            drain: Deliver what is already queued first
            timeout: Max seconds to wait for the queue to drain
        """
        if drain and self.running:
            try:
                await asyncio.wait_for(self.drain(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("webhook_drain_timeout", pending=self._queue.qsize())

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        if self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("webhook_notifier_stopped")

    async def _worker(self, worker_id: int) -> None:
        while True:
            notification = await self._queue.get()
            try:
                await self._deliver(notification)
            except Exception as e:
                # Delivery failures never reach the request that raised the event
                logger.error(
                    "webhook_delivery_error",
                    worker_id=worker_id,
                    tenant_id=notification.tenant.tenant_id,
                    event_type=notification.event_type,
                    error=str(e),
                )
            finally:
                self._queue.task_done()
                metrics.set_webhook_queue_depth(self._queue.qsize())

    async def _deliver(self, notification: Notification) -> None:
        webhooks = await self._subscribers(notification.tenant, notification.event_type)
        if not webhooks:
            return

        body = encode_notification(notification)
        for webhook in webhooks:
            await self._post(webhook, notification, body)

    async def _subscribers(
        self, tenant: TenantContext, event_type: str
    ) -> List[WebhookRegistration]:
        async def work(session: AsyncSession) -> List[WebhookRegistration]:
            result = await session.execute(select(Webhook).where(Webhook.active.is_(True)))
            return [
                WebhookRegistration.model_validate(webhook)
                for webhook in result.scalars()
                if event_type in (webhook.events or [])
            ]

        return await self.unit.run(tenant, work)

    async def _post(
        self, webhook: WebhookRegistration, notification: Notification, body: bytes
    ) -> None:
        if self._client is None:
            raise RuntimeError("notifier not started")
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(webhook.secret_key, body),
            EVENT_HEADER: notification.event_type,
        }
        try:
            response = await self._client.post(webhook.url, content=body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            metrics.record_webhook_delivery(notification.event_type, "failed")
            logger.warning(
                "webhook_delivery_rejected",
                tenant_id=notification.tenant.tenant_id,
                webhook_id=str(webhook.id),
                url=webhook.url,
                status_code=e.response.status_code,
            )
            return
        except httpx.RequestError as e:
            metrics.record_webhook_delivery(notification.event_type, "failed")
            logger.warning(
                "webhook_delivery_failed",
                tenant_id=notification.tenant.tenant_id,
                webhook_id=str(webhook.id),
                url=webhook.url,
                error=str(e),
            )
            return

        metrics.record_webhook_delivery(notification.event_type, "delivered")
        logger.info(
            "webhook_delivered",
            tenant_id=notification.tenant.tenant_id,
            webhook_id=str(webhook.id),
            event_type=notification.event_type,
            status_code=response.status_code,
        )

    async def register_webhook(
        self, tenant: TenantContext, url: str, events: Iterable[str]
    ) -> WebhookRegistration:
        """
        Register an endpoint for the tenant.

        A 32-byte secret is generated for signing deliveries and returned
        once in the registration.

        Raises:
            ValidationError: Bad URL, no events or unknown event types
        """
        events = sorted(set(events or []))
        if not url or not url.startswith(("http://", "https://")):
            raise ValidationError(f"Invalid webhook URL: {url!r}", field="url")
        if not events:
            raise ValidationError("At least one event type is required", field="events")
        unknown = set(events) - WEBHOOK_EVENTS
        if unknown:
            raise ValidationError(f"Unknown event types: {sorted(unknown)}", field="events")

        async def work(session: AsyncSession) -> WebhookRegistration:
            webhook = Webhook(
                id=uuid.uuid4(),
                url=url,
                events=events,
                secret_key=secrets.token_hex(32),
                active=True,
            )
            session.add(webhook)
            await session.flush()
            return WebhookRegistration.model_validate(webhook)

        registration = await self.unit.run(tenant, work)
        logger.info(
            "webhook_registered",
            tenant_id=tenant.tenant_id,
            webhook_id=str(registration.id),
            events=events,
        )
        return registration

    async def list_webhooks(self, tenant: TenantContext) -> List[WebhookRegistration]:
        """List the tenant's registrations."""

        async def work(session: AsyncSession) -> List[WebhookRegistration]:
            result = await session.execute(select(Webhook).order_by(Webhook.created_at))
            return [WebhookRegistration.model_validate(w) for w in result.scalars()]

        return await self.unit.run(tenant, work)
