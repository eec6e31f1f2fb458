"""
Inbound Stripe webhook verification and routing.

Implements:
- Signature verification over the raw payload with the deployment-wide
  webhook secret, before any field is trusted
- Event type routing to registered handlers
- Acknowledgement of events nobody handles

Replays are safe because handlers apply idempotent state transitions;
no separate deduplication store is kept.
"""
from typing import Awaitable, Callable, Dict, Optional, Union

import stripe
import structlog

from fleet_rental.config import Settings
from fleet_rental.core.exceptions import WebhookRejectedError
from fleet_rental.monitoring.metrics import metrics
from fleet_rental.schemas import WebhookAck

logger = structlog.get_logger(__name__)

EventHandler = Callable[[stripe.Event], Awaitable[WebhookAck]]


class StripeWebhookHandler:
    """
    Handles Stripe webhook events.

    Features:
    - Signature verification using the Stripe webhook secret
    - Event type routing to appropriate handlers
    """

    def __init__(self, settings: Settings):
        """
        Initialize webhook handler.

        Args:
            settings: Application settings (holds the webhook secret)
        """
        self.settings = settings
        self.event_handlers: Dict[str, EventHandler] = {}

        logger.info("webhook_handler_initialized")

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Stripe event type (e.g., 'payment_intent.amount_capturable_updated')
            handler: Async callable receiving the verified event
        """
        self.event_handlers[event_type] = handler
        logger.info("webhook_handler_registered", event_type=event_type)

    def verify_signature(
        self, payload: Union[bytes, str], signature: Optional[str]
    ) -> stripe.Event:
        """
        Verify webhook signature and construct event.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header value

        Returns:
            stripe.Event: Verified Stripe event

        Raises:
            WebhookRejectedError: If the signature or the body is invalid
        """
        if not signature:
            metrics.record_stripe_event("unknown", "rejected")
            raise WebhookRejectedError("Missing Stripe-Signature header")

        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self.settings.stripe_webhook_secret,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_verification_failed", error=str(e))
            metrics.record_stripe_event("unknown", "rejected")
            raise WebhookRejectedError(f"Invalid webhook signature: {e}") from e
        except ValueError as e:
            logger.warning("webhook_payload_malformed", error=str(e))
            metrics.record_stripe_event("unknown", "rejected")
            raise WebhookRejectedError(f"Malformed webhook payload: {e}") from e

        logger.info(
            "webhook_signature_verified",
            event_id=event.id,
            event_type=event.type,
        )
        return event

    async def process(
        self, payload: Union[bytes, str], signature: Optional[str]
    ) -> WebhookAck:
        """
        Verify and process a webhook delivery.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header value

        Returns:
            WebhookAck: applied or ignored

        Raises:
            WebhookRejectedError: If verification fails
        """
        event = self.verify_signature(payload, signature)
        return await self.process_event(event)

    async def process_event(self, event: stripe.Event) -> WebhookAck:
        """
        Route a verified event to its handler.

        Args:
            event: Verified Stripe event

        Returns:
            WebhookAck: Handler result, or `ignored` when nobody handles the type
        """
        logger.info(
            "processing_webhook_event",
            event_id=event.id,
            event_type=event.type,
        )

        handler = self.event_handlers.get(event.type)
        if handler is None:
            logger.info(
                "webhook_no_handler",
                event_id=event.id,
                event_type=event.type,
            )
            metrics.record_stripe_event(event.type, "ignored")
            return WebhookAck(status="ignored", event_id=event.id, event_type=event.type)

        ack = await handler(event)
        metrics.record_stripe_event(event.type, ack.status)

        logger.info(
            "webhook_event_processed",
            event_id=event.id,
            event_type=event.type,
            status=ack.status,
        )
        return ack
