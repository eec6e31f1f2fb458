"""
Stripe API client for two-phase (authorize, then capture) payments.

Implements:
- Manual-capture PaymentIntents keyed by booking-derived idempotency keys
- Idempotent capture and cancel (already captured / canceled is success)
- Exponential backoff for transient and rate-limit errors only
- Circuit breaker pattern
- Blocking SDK calls run in a worker thread so the event loop keeps serving
"""
import asyncio
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from fleet_rental.config import Settings
from fleet_rental.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class StripeError(Exception):
    """Base exception for Stripe-related errors."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize Stripe error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original Stripe exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type in (StripeErrorType.TRANSIENT, StripeErrorType.RATE_LIMIT)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, StripeError) and error.retryable


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open
        # Calls run in worker threads; every read-modify-write of the state holds this
        self._lock = threading.Lock()

    def call(self, func: Callable[[], Any]) -> Any:
        """
        Execute function with circuit breaker protection.

        Only transient processor failures count against the circuit; a
        declined card or an invalid request says nothing about Stripe's health.

        Raises:
            StripeError: If circuit is open
        """
        with self._lock:
            if self.state == "open":
                if (
                    self.last_failure_time
                    and time.time() - self.last_failure_time > self.timeout
                ):
                    self._set_state("half_open")
                    self.success_count = 0
                else:
                    raise StripeError(
                        "Circuit breaker is open",
                        StripeErrorType.TRANSIENT,
                    )

        try:
            result = func()
        except (stripe.APIConnectionError, stripe.APIError, stripe.RateLimitError):
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        with self._lock:
            self.failure_count = 0
            if self.state == "half_open":
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self._set_state("closed")

    def on_failure(self) -> None:
        """Record failed call."""
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.time()
            if self.failure_count >= self.failure_threshold or self.state == "half_open":
                self._set_state("open")

    def _set_state(self, state: str) -> None:
        if state != self.state:
            logger.info("circuit_breaker_state_changed", old=self.state, new=state)
        self.state = state
        metrics.set_circuit_breaker_state(state)


class StripeClient:
    """
    Wrapper for Stripe API with production-grade error handling.

    The secret key is passed per request from the frozen settings; the
    SDK's module-level key is never mutated.
    """

    def __init__(self, settings: Settings, circuit_breaker: Optional[CircuitBreaker] = None):
        """
        Initialize Stripe client.

        Args:
            settings: Application settings
            circuit_breaker: Optional breaker (one per client by default)
        """
        self.settings = settings
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self._request_options: Dict[str, Any] = {
            "api_key": settings.stripe_secret_key,
            "stripe_version": settings.stripe_api_version,
        }

        logger.info(
            "stripe_client_initialized",
            api_version=settings.stripe_api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
                stripe.IdempotencyError,
            ),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    def _handle_stripe_error(self, operation: str, error: stripe.StripeError) -> StripeError:
        """
        Classify and log a Stripe error.

        Args:
            operation: API operation name
            error: Stripe error

        Returns:
            StripeError: Classified error for the caller to raise
        """
        error_type = self._classify_error(error)
        metrics.record_stripe_api_error(error_type.value)

        logger.error(
            "stripe_api_error",
            operation=operation,
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )

        return StripeError(
            message=str(error),
            error_type=error_type,
            original_error=error,
        )

    async def _call(self, operation: str, func: Callable[[], Any]) -> Any:
        started = time.monotonic()
        try:
            result = await asyncio.to_thread(self.circuit_breaker.call, func)
        except stripe.StripeError as e:
            metrics.record_stripe_api_call(operation, "error", time.monotonic() - started)
            raise self._handle_stripe_error(operation, e) from e
        metrics.record_stripe_api_call(operation, "success", time.monotonic() - started)
        return result

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(4),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        reraise=True,
    )
    async def create_authorization(
        self,
        amount_cents: int,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> stripe.PaymentIntent:
        """
        Create a manual-capture PaymentIntent (funds held, not taken).

        Args:
            amount_cents: Amount to hold, in minor units
            idempotency_key: Key derived from the booking
            metadata: tenant_id and booking_id, echoed back on webhook events

        Returns:
            stripe.PaymentIntent: Created payment intent

        Raises:
            StripeError: If creation fails
        """
        logger.info(
            "creating_authorization",
            amount_cents=amount_cents,
            currency=self.settings.currency,
            idempotency_key=idempotency_key,
        )

        def _create() -> stripe.PaymentIntent:
            return stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=self.settings.currency,
                capture_method="manual",
                automatic_payment_methods={"enabled": True},
                metadata=metadata or {},
                idempotency_key=idempotency_key,
                **self._request_options,
            )

        payment_intent = await self._call("authorize", _create)

        logger.info(
            "authorization_created",
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )
        return payment_intent

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(4),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        reraise=True,
    )
    async def retrieve_payment_intent(self, payment_intent_id: str) -> stripe.PaymentIntent:
        """
        Retrieve a PaymentIntent by ID.

        Raises:
            StripeError: If retrieval fails
        """
        logger.debug("retrieving_payment_intent", payment_intent_id=payment_intent_id)

        def _retrieve() -> stripe.PaymentIntent:
            return stripe.PaymentIntent.retrieve(payment_intent_id, **self._request_options)

        return await self._call("retrieve", _retrieve)

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(4),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        reraise=True,
    )
    async def capture_payment_intent(
        self,
        payment_intent_id: str,
        amount_cents: int,
        idempotency_key: str,
    ) -> stripe.PaymentIntent:
        """
        Capture held funds.

        Capturing an intent that already succeeded is treated as success, so
        a retried settlement never fails on (or repeats) an earlier capture.

        Args:
            payment_intent_id: Stripe PaymentIntent ID
            amount_cents: Final amount to capture
            idempotency_key: Key derived from the booking

        Returns:
            stripe.PaymentIntent: Captured payment intent

        Raises:
            StripeError: If capture fails
        """
        logger.info(
            "capturing_payment_intent",
            payment_intent_id=payment_intent_id,
            amount_cents=amount_cents,
            idempotency_key=idempotency_key,
        )

        def _capture() -> stripe.PaymentIntent:
            return stripe.PaymentIntent.capture(
                payment_intent_id,
                amount_to_capture=amount_cents,
                idempotency_key=idempotency_key,
                **self._request_options,
            )

        try:
            payment_intent = await self._call("capture", _capture)
        except StripeError as e:
            if not isinstance(e.original_error, stripe.InvalidRequestError):
                raise
            existing = await self.retrieve_payment_intent(payment_intent_id)
            if existing.status != "succeeded":
                raise
            logger.info("payment_intent_already_captured", payment_intent_id=payment_intent_id)
            return existing

        logger.info(
            "payment_intent_captured",
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )
        return payment_intent

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(4),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        reraise=True,
    )
    async def cancel_payment_intent(
        self, payment_intent_id: str, idempotency_key: str
    ) -> stripe.PaymentIntent:
        """
        Release held funds.

        Canceling an already canceled intent is treated as success.

        Raises:
            StripeError: If cancellation fails
        """
        logger.info("canceling_payment_intent", payment_intent_id=payment_intent_id)

        def _cancel() -> stripe.PaymentIntent:
            return stripe.PaymentIntent.cancel(
                payment_intent_id,
                idempotency_key=idempotency_key,
                **self._request_options,
            )

        try:
            payment_intent = await self._call("cancel", _cancel)
        except StripeError as e:
            if not isinstance(e.original_error, stripe.InvalidRequestError):
                raise
            existing = await self.retrieve_payment_intent(payment_intent_id)
            if existing.status != "canceled":
                raise
            return existing

        logger.info("payment_intent_canceled", payment_intent_id=payment_intent.id)
        return payment_intent
