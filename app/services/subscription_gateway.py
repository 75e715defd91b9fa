"""
Subscription gateway: the only module that talks to Stripe.

Thin, side-effect-free wrappers over the Stripe API. Every call goes through
a bounded retry loop; transient failures become GatewayUnavailable once the
attempts or the time budget are spent, and provider rejections become
GatewayRejected immediately.
"""
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import stripe

from app.core import config
from app.core.clock import to_timestamp
from app.core.errors import GatewayRejected, GatewayUnavailable, WebhookSignatureError
from app.services.subscription_mapping import (
    CheckoutSession,
    Subscription,
    SubscriptionSchedule,
    field_of,
    schedule_from_stripe,
    subscription_from_stripe,
)

logger = logging.getLogger(__name__)


def build_stripe_client(api_key: Optional[str] = None, timeout: Optional[float] = None) -> stripe.StripeClient:
    """
    Build the Stripe client once at startup.

    SDK-level retries are disabled; SubscriptionGateway owns retry policy.
    """
    api_key = api_key or config.STRIPE_SECRET_KEY
    if not api_key:
        raise ValueError("STRIPE_SECRET_KEY not configured")
    timeout = timeout or config.GATEWAY_TIMEOUT_SECONDS
    return stripe.StripeClient(
        api_key,
        http_client=stripe.RequestsClient(timeout=timeout),
        max_network_retries=0,
    )


def is_transient(exc: stripe.StripeError) -> bool:
    """Network failures, rate limiting and provider-side 5xx are worth retrying."""
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)):
        return True
    status = getattr(exc, "http_status", None)
    return status is not None and status >= 500


def compute_backoff(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff: base, 2*base, 4*base ... capped at cap (attempt is 1-based)."""
    return min(cap, base * (2 ** (attempt - 1)))


class SubscriptionGateway:
    """Stripe-backed subscription operations with retry and timeout policy."""

    def __init__(
        self,
        client: stripe.StripeClient,
        webhook_secret: Optional[str] = None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        deadline_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.webhook_secret = webhook_secret if webhook_secret is not None else config.STRIPE_WEBHOOK_SECRET
        self.max_attempts = max_attempts or config.GATEWAY_MAX_ATTEMPTS
        self.backoff_base = config.GATEWAY_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        self.backoff_max = config.GATEWAY_BACKOFF_MAX_SECONDS if backoff_max is None else backoff_max
        self.deadline_seconds = deadline_seconds or config.GATEWAY_TIMEOUT_SECONDS
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Retry core
    # ------------------------------------------------------------------

    def _call(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        started = self._clock()
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn(*args, **kwargs)
            except stripe.StripeError as e:
                if not is_transient(e):
                    logger.warning(
                        f"Stripe rejected {operation}: code={getattr(e, 'code', None)}, "
                        f"status={getattr(e, 'http_status', None)}, error={e.user_message or e}"
                    )
                    raise GatewayRejected(
                        f"Billing provider rejected {operation}: {e.user_message or e}",
                        provider_code=getattr(e, "code", None),
                    ) from e

                delay = compute_backoff(attempt, self.backoff_base, self.backoff_max)
                elapsed = self._clock() - started
                if attempt >= self.max_attempts or elapsed + delay > self.deadline_seconds:
                    logger.error(
                        f"Stripe {operation} failed after {attempt} attempt(s) "
                        f"in {elapsed:.2f}s: {type(e).__name__}: {e}"
                    )
                    raise GatewayUnavailable(
                        f"Billing provider unavailable during {operation}",
                        retry_after=max(1, int(round(delay))),
                    ) from e

                logger.info(
                    f"Stripe {operation} transient failure (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay:.2f}s: {type(e).__name__}"
                )
                self._sleep(delay)

    @staticmethod
    def _options(idempotency_key: Optional[str]) -> Dict[str, str]:
        return {"idempotency_key": idempotency_key} if idempotency_key else {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def fetch(self, subscription_id: str) -> Subscription:
        raw = self._call("fetch subscription", self.client.subscriptions.retrieve, subscription_id)
        return subscription_from_stripe(raw)

    def fetch_schedule(self, schedule_id: str) -> SubscriptionSchedule:
        raw = self._call("fetch schedule", self.client.subscription_schedules.retrieve, schedule_id)
        return schedule_from_stripe(raw)

    def estimate_proration(self, subscription: Subscription, new_price_id: str) -> int:
        """Amount (minor units) the customer would be charged now for switching to new_price_id."""
        params = {
            "customer": subscription.customer_id,
            "subscription": subscription.id,
            "subscription_details": {
                "items": [{"id": subscription.item_id, "price": new_price_id}],
                "proration_behavior": "create_prorations",
            },
        }
        preview = self._call("estimate proration", self.client.invoices.create_preview, params=params)
        return int(field_of(preview, "amount_due", 0) or 0)

    # ------------------------------------------------------------------
    # Mutations (all carry an idempotency key)
    # ------------------------------------------------------------------

    def upgrade_now(self, subscription: Subscription, new_price_id: str, idempotency_key: str) -> Subscription:
        """Swap the item price immediately, prorating the remainder of the period."""
        params = {
            "items": [{"id": subscription.item_id, "price": new_price_id}],
            "proration_behavior": "create_prorations",
            "payment_behavior": "error_if_incomplete",
            "billing_cycle_anchor": "unchanged",
            "cancel_at_period_end": False,
        }
        raw = self._call(
            "upgrade subscription",
            self.client.subscriptions.update,
            subscription.id,
            params=params,
            options=self._options(idempotency_key),
        )
        logger.info(f"Subscription upgraded: subscription_id={subscription.id}, price_id={new_price_id}")
        return subscription_from_stripe(raw)

    def schedule_change(
        self,
        subscription: Subscription,
        new_price_id: str,
        effective_at: datetime,
        idempotency_key: str,
    ) -> str:
        """
        Keep the current price until effective_at, then switch to new_price_id.

        Reuses the subscription's schedule when one is attached, otherwise
        creates one from the subscription. Returns the schedule id.
        """
        schedule_id = subscription.schedule_id
        if not schedule_id:
            created = self._call(
                "create schedule",
                self.client.subscription_schedules.create,
                params={"from_subscription": subscription.id},
                options=self._options(f"{idempotency_key}:create"),
            )
            schedule_id = field_of(created, "id")

        params = {
            "end_behavior": "release",
            "phases": [
                {
                    "items": [{"price": subscription.price_id, "quantity": 1}],
                    "start_date": to_timestamp(subscription.current_period_start),
                    "end_date": to_timestamp(effective_at),
                    "proration_behavior": "none",
                },
                {
                    "items": [{"price": new_price_id, "quantity": 1}],
                    "iterations": 1,
                    "proration_behavior": "none",
                },
            ],
        }
        self._call(
            "schedule change",
            self.client.subscription_schedules.update,
            schedule_id,
            params=params,
            options=self._options(f"{idempotency_key}:phases"),
        )
        logger.info(
            f"Plan change scheduled: subscription_id={subscription.id}, schedule_id={schedule_id}, "
            f"price_id={new_price_id}, effective_at={effective_at.isoformat()}"
        )
        return schedule_id

    def release_schedule(self, schedule_id: str, idempotency_key: str) -> None:
        """Detach a schedule, leaving the subscription on its current price."""
        self._call(
            "release schedule",
            self.client.subscription_schedules.release,
            schedule_id,
            options=self._options(idempotency_key),
        )
        logger.info(f"Subscription schedule released: schedule_id={schedule_id}")

    def cancel_at_period_end(self, subscription_id: str, idempotency_key: str) -> Subscription:
        raw = self._call(
            "cancel at period end",
            self.client.subscriptions.update,
            subscription_id,
            params={"cancel_at_period_end": True, "proration_behavior": "none"},
            options=self._options(idempotency_key),
        )
        logger.info(f"Subscription set to cancel at period end: subscription_id={subscription_id}")
        return subscription_from_stripe(raw)

    def cancel_now(self, subscription_id: str, idempotency_key: str) -> Subscription:
        raw = self._call(
            "cancel subscription",
            self.client.subscriptions.cancel,
            subscription_id,
            options=self._options(idempotency_key),
        )
        logger.info(f"Subscription canceled immediately: subscription_id={subscription_id}")
        return subscription_from_stripe(raw)

    def reactivate(self, subscription_id: str, idempotency_key: str) -> Subscription:
        """Undo a pending cancel_at_period_end."""
        raw = self._call(
            "reactivate subscription",
            self.client.subscriptions.update,
            subscription_id,
            params={"cancel_at_period_end": False},
            options=self._options(idempotency_key),
        )
        logger.info(f"Subscription reactivated: subscription_id={subscription_id}")
        return subscription_from_stripe(raw)

    def create_checkout_session(
        self,
        price_id: str,
        user_id: int,
        plan_id: str,
        success_url: str,
        cancel_url: str,
        idempotency_key: str,
        customer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        """Hosted checkout for a first paid subscription."""
        metadata = {"user_id": str(user_id), "plan_id": plan_id}
        params: Dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": str(user_id),
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email

        raw = self._call(
            "create checkout session",
            self.client.checkout.sessions.create,
            params=params,
            options=self._options(idempotency_key),
        )
        logger.info(f"Checkout session created: user_id={user_id}, plan={plan_id}, session_id={field_of(raw, 'id')}")
        return CheckoutSession(id=field_of(raw, "id"), url=field_of(raw, "url"))

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Any:
        """Verify a webhook delivery and return the parsed event."""
        if not self.webhook_secret:
            raise WebhookSignatureError("STRIPE_WEBHOOK_SECRET not configured")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            raise WebhookSignatureError(f"Invalid webhook payload: {e}") from e
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(f"Invalid webhook signature: {e}") from e
