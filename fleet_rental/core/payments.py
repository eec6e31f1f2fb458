"""
Payment engine: two-phase authorize-then-capture bound 1:1 to a booking.

Implements:
- Idempotent authorization (one payment row per booking, keyed intents)
- Signed processor confirmation moving the payment to `authorized`
- Capture from inside the settlement transaction, idempotent by booking id
- Void of an uncaptured authorization when a booking is cancelled

Processor idempotency keys are derived from the booking id, so a retried
operation on the same booking never creates a second hold or charge.
"""
import uuid
from typing import Optional, Tuple

import stripe
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fleet_rental.core.exceptions import (
    InvalidStateError,
    NotFoundError,
    SettlementFailedError,
    TenantNotFoundError,
    ValidationError,
)
from fleet_rental.core.state_machine import (
    TERMINAL_BOOKING_STATUSES,
    BookingStatus,
    PaymentEvent,
    PaymentStatus,
    payment_machine,
)
from fleet_rental.core.tenancy import TenantResolver
from fleet_rental.database.models import Booking, Payment
from fleet_rental.database.unit_of_work import TransactionalUnit
from fleet_rental.integrations.stripe_client import StripeClient, StripeError
from fleet_rental.integrations.webhook_dispatcher import PAYMENT_AUTHORIZED, WebhookNotifier
from fleet_rental.integrations.webhook_handler import StripeWebhookHandler
from fleet_rental.schemas import AuthorizationHandle, TenantContext, WebhookAck

logger = structlog.get_logger(__name__)

AUTHORIZATION_CONFIRMED_EVENT = "payment_intent.amount_capturable_updated"


def authorize_key(booking_id: uuid.UUID) -> str:
    return f"authorize_{booking_id}"


def capture_key(booking_id: uuid.UUID) -> str:
    return f"capture_{booking_id}"


def cancel_key(booking_id: uuid.UUID) -> str:
    return f"cancel_{booking_id}"


class PaymentEngine:
    """
    Sole writer of payment status and amount.

    Example:
        handle = await payments.create_authorization(tenant, booking_id, 20000)
        ack = await payments.on_authorization_confirmed(raw_body, stripe_signature)
    """

    def __init__(
        self,
        unit: TransactionalUnit,
        resolver: TenantResolver,
        stripe_client: StripeClient,
        webhook_handler: StripeWebhookHandler,
        notifier: Optional[WebhookNotifier] = None,
    ):
        """
        Initialize payment engine.

        Args:
            unit: Transactional unit
            resolver: Resolves the tenant named in processor event metadata
            stripe_client: Processor client
            webhook_handler: Inbound event verifier/router
            notifier: Outbound webhook notifier
        """
        self.unit = unit
        self.resolver = resolver
        self.stripe_client = stripe_client
        self.webhook_handler = webhook_handler
        self.notifier = notifier

        webhook_handler.register_handler(
            AUTHORIZATION_CONFIRMED_EVENT, self._handle_authorization_confirmed
        )

    async def create_authorization(
        self, tenant: TenantContext, booking_id: uuid.UUID, amount_cents: int
    ) -> AuthorizationHandle:
        """
        Request a manual-capture hold for a booking.

        Re-entry for a booking that already has a payment returns the
        existing authorization instead of creating a second one.

        Args:
            tenant: Resolved tenant
            booking_id: Booking being paid for
            amount_cents: Amount to hold, in minor units

        Returns:
            AuthorizationHandle: Client secret for the payment UI

        Raises:
            ValidationError: Non-positive amount
            NotFoundError: Booking absent
            InvalidStateError: Booking already completed or cancelled
            SettlementFailedError: Processor call failed
        """
        if amount_cents <= 0:
            raise ValidationError("Amount must be positive", field="amount_cents")

        log = logger.bind(tenant_id=tenant.tenant_id, booking_id=str(booking_id))

        async def work(session: AsyncSession) -> AuthorizationHandle:
            result = await session.execute(
                select(Booking).where(Booking.id == booking_id).with_for_update()
            )
            booking = result.scalar_one_or_none()
            if booking is None:
                raise NotFoundError("Booking", booking_id)
            if BookingStatus(booking.status) in TERMINAL_BOOKING_STATUSES:
                raise InvalidStateError(
                    f"Booking {booking_id} is {booking.status}", current=booking.status
                )

            existing = await self._payment_for_booking(session, booking_id)
            try:
                if existing is not None:
                    intent = await self.stripe_client.retrieve_payment_intent(
                        existing.stripe_intent_id
                    )
                    log.info("authorization_reused", payment_intent_id=existing.stripe_intent_id)
                    return AuthorizationHandle(
                        booking_id=booking_id,
                        payment_intent_id=existing.stripe_intent_id,
                        client_secret=intent.client_secret,
                        amount_cents=existing.amount_cents,
                        status=existing.status,
                    )

                intent = await self.stripe_client.create_authorization(
                    amount_cents=amount_cents,
                    idempotency_key=authorize_key(booking_id),
                    metadata={"tenant_id": tenant.tenant_id, "booking_id": str(booking_id)},
                )
            except StripeError as e:
                log.error("authorization_failed", error=str(e), error_type=e.error_type.value)
                raise SettlementFailedError(
                    f"Authorization failed: {e}", booking_id=booking_id
                ) from e

            payment = Payment(
                booking_id=booking_id,
                stripe_intent_id=intent.id,
                amount_cents=amount_cents,
                status=PaymentStatus.PENDING_AUTH.value,
            )
            session.add(payment)
            await session.flush()

            log.info(
                "authorization_created",
                payment_intent_id=intent.id,
                amount_cents=amount_cents,
            )
            return AuthorizationHandle(
                booking_id=booking_id,
                payment_intent_id=intent.id,
                client_secret=intent.client_secret,
                amount_cents=amount_cents,
                status=payment.status,
            )

        return await self.unit.run(tenant, work)

    async def on_authorization_confirmed(
        self, payload: bytes, signature: Optional[str]
    ) -> WebhookAck:
        """
        Entry point for processor webhooks.

        Args:
            payload: Raw request body, verified before anything is read from it
            signature: Stripe-Signature header

        Returns:
            WebhookAck: applied or ignored

        Raises:
            WebhookRejectedError: Bad signature or malformed body
        """
        return await self.webhook_handler.process(payload, signature)

    async def _handle_authorization_confirmed(self, event: stripe.Event) -> WebhookAck:
        # StripeObject is not a mapping on current SDKs, so read a plain copy
        intent = event.data.object.to_dict()
        intent_id = intent.get("id")
        metadata = intent.get("metadata") or {}
        tenant_id = metadata.get("tenant_id")
        log = logger.bind(event_id=event.id, payment_intent_id=intent_id)

        # The caller is the processor, so the tenant comes from the intent itself
        if not tenant_id:
            log.warning("authorization_event_without_tenant")
            return WebhookAck(status="ignored", event_id=event.id, event_type=event.type)

        try:
            tenant = await self.resolver.resolve_id(tenant_id)
        except TenantNotFoundError:
            log.warning("authorization_event_unknown_tenant", tenant_id=tenant_id)
            return WebhookAck(status="ignored", event_id=event.id, event_type=event.type)

        async def work(session: AsyncSession) -> Tuple[Optional[Payment], bool]:
            result = await session.execute(
                select(Payment)
                .where(Payment.stripe_intent_id == intent_id)
                .with_for_update()
            )
            payment = result.scalar_one_or_none()
            if payment is None:
                return None, False
            current = PaymentStatus(payment.status)
            new_status = payment_machine.next_state(current, PaymentEvent.CONFIRM_AUTHORIZATION)
            payment.status = new_status.value
            return payment, new_status != current

        payment, changed = await self.unit.run(tenant, work)
        if payment is None:
            log.warning("authorization_event_unknown_intent", tenant_id=tenant_id)
            return WebhookAck(status="ignored", event_id=event.id, event_type=event.type)

        log.info(
            "authorization_confirmed",
            tenant_id=tenant_id,
            booking_id=str(payment.booking_id),
            status=payment.status,
            changed=changed,
        )
        if changed and self.notifier is not None:
            self.notifier.notify(
                tenant,
                PAYMENT_AUTHORIZED,
                {
                    "booking_id": str(payment.booking_id),
                    "payment_intent_id": payment.stripe_intent_id,
                    "amount_cents": payment.amount_cents,
                },
            )
        return WebhookAck(
            status="applied",
            event_id=event.id,
            event_type=event.type,
            payment_status=payment.status,
        )

    async def capture(
        self,
        session: AsyncSession,
        payment: Payment,
        amount_cents: int,
        idempotency_token: str,
    ) -> None:
        """
        Capture the final amount. Only valid inside the settlement unit.

        An already captured payment is left as is. Any processor failure
        propagates so the enclosing unit rolls back.

        Args:
            session: Session of the enclosing unit (holds the booking lock)
            payment: Locked payment row
            amount_cents: Final amount
            idempotency_token: Booking-derived processor key

        Raises:
            ValidationError: Non-positive amount
            InvalidStateError: Payment was voided
            SettlementFailedError: Processor capture failed
        """
        current = PaymentStatus(payment.status)
        if current is PaymentStatus.CAPTURED:
            logger.info(
                "capture_already_applied",
                booking_id=str(payment.booking_id),
                payment_intent_id=payment.stripe_intent_id,
            )
            return
        if amount_cents <= 0:
            raise ValidationError("Capture amount must be positive", field="amount_cents")
        new_status = payment_machine.next_state(current, PaymentEvent.CAPTURE)

        try:
            await self.stripe_client.capture_payment_intent(
                payment.stripe_intent_id, amount_cents, idempotency_token
            )
        except StripeError as e:
            logger.error(
                "capture_failed",
                booking_id=str(payment.booking_id),
                payment_intent_id=payment.stripe_intent_id,
                error=str(e),
                error_type=e.error_type.value,
            )
            raise SettlementFailedError(
                f"Capture failed: {e}", booking_id=payment.booking_id
            ) from e

        payment.status = new_status.value
        payment.amount_cents = amount_cents

    async def void(
        self, session: AsyncSession, payment: Payment, idempotency_token: str
    ) -> None:
        """
        Release an uncaptured authorization. Only valid inside a unit.

        Raises:
            InvalidStateError: Payment already captured
            SettlementFailedError: Processor cancel failed
        """
        current = PaymentStatus(payment.status)
        if current is PaymentStatus.VOIDED:
            return
        new_status = payment_machine.next_state(current, PaymentEvent.VOID)

        try:
            await self.stripe_client.cancel_payment_intent(
                payment.stripe_intent_id, idempotency_token
            )
        except StripeError as e:
            logger.error(
                "void_failed",
                booking_id=str(payment.booking_id),
                payment_intent_id=payment.stripe_intent_id,
                error=str(e),
            )
            raise SettlementFailedError(
                f"Void failed: {e}", booking_id=payment.booking_id
            ) from e

        payment.status = new_status.value

    @staticmethod
    async def _payment_for_booking(
        session: AsyncSession, booking_id: uuid.UUID
    ) -> Optional[Payment]:
        result = await session.execute(
            select(Payment).where(Payment.booking_id == booking_id).with_for_update()
        )
        return result.scalar_one_or_none()
