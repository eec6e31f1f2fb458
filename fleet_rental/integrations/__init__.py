"""External integrations: Stripe and outbound webhooks."""
from .stripe_client import CircuitBreaker, StripeClient, StripeError, StripeErrorType
from .webhook_dispatcher import WebhookNotifier
from .webhook_handler import StripeWebhookHandler

__all__ = [
    "CircuitBreaker",
    "StripeClient",
    "StripeError",
    "StripeErrorType",
    "StripeWebhookHandler",
    "WebhookNotifier",
]
