"""
Billing webhook processing.

Webhooks are treated as "something changed, go look" signals: the payload is
only used to find the user and subscription, then the subscription is
re-fetched from Stripe and reconciled. Deliveries are recorded by event id
so replays are acknowledged without reprocessing.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import GatewayRejected
from app.core.logging_config import sanitize_log_data
from app.db.models.user import User
from app.db.models.webhook_event import WebhookEvent
from app.services.profile_cache import ProfileCache
from app.services.subscription_mapping import field_of, id_of
from app.services.subscription_sync import SubscriptionSync, lock_user_row

logger = logging.getLogger(__name__)

PROCESSED = "processed"
DUPLICATE = "duplicate"
IGNORED = "ignored"
UNMATCHED = "unmatched"
REJECTED = "rejected"

CHECKOUT_COMPLETED = "checkout.session.completed"

HANDLED_EVENTS = frozenset({
    CHECKOUT_COMPLETED,
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "invoice.paid",
    "invoice.payment_succeeded",
    "invoice.payment_failed",
})


@dataclass(frozen=True)
class WebhookOutcome:
    status: str
    event_id: str
    event_type: str
    user_id: Optional[int] = None


def subscription_id_from(event_type: str, obj: Any) -> Optional[str]:
    """Subscription referenced by an event's data object."""
    if event_type.startswith("customer.subscription."):
        return id_of(field_of(obj, "id"))
    if event_type.startswith("invoice."):
        direct = id_of(field_of(obj, "subscription"))
        if direct:
            return direct
        # Newer API versions nest it under parent.subscription_details
        details = field_of(field_of(obj, "parent"), "subscription_details")
        return id_of(field_of(details, "subscription"))
    return id_of(field_of(obj, "subscription"))


def user_id_hint(obj: Any) -> Optional[int]:
    raw = field_of(field_of(obj, "metadata"), "user_id") or field_of(obj, "client_reference_id")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


class BillingWebhookService:
    """Verifies, de-duplicates and applies Stripe webhook deliveries."""

    def __init__(self, gateway, cache: ProfileCache, sync: Optional[SubscriptionSync] = None):
        self.gateway = gateway
        self.cache = cache
        self.sync = sync or cache.sync

    def resolve_user(
        self,
        db: Session,
        subscription_id: Optional[str],
        customer_id: Optional[str],
        hinted_user_id: Optional[int],
    ) -> Optional[User]:
        """Subscription id first, then customer id, then the user id we put in metadata."""
        if subscription_id:
            user = db.query(User).filter(User.stripe_subscription_id == subscription_id).first()
            if user:
                return user
        if customer_id:
            user = db.query(User).filter(User.stripe_customer_id == customer_id).first()
            if user:
                return user
        if hinted_user_id is not None:
            return db.query(User).filter(User.id == hinted_user_id).first()
        return None

    def _already_processed(self, db: Session, event_id: str) -> bool:
        return db.query(WebhookEvent.id).filter(WebhookEvent.event_id == event_id).first() is not None

    def _record(self, db: Session, event_id: str, event_type: str, outcome: str, user_id: Optional[int]) -> None:
        db.add(WebhookEvent(event_id=event_id, event_type=event_type, outcome=outcome, user_id=user_id))
        try:
            db.commit()
        except IntegrityError:
            # Concurrent delivery of the same event recorded it first
            db.rollback()
            logger.info(f"Webhook event already recorded: event_id={event_id}")

    def handle(self, db: Session, payload: bytes, signature: Optional[str]) -> WebhookOutcome:
        event = self.gateway.construct_event(payload, signature)
        return self.process_event(db, event)

    def process_event(self, db: Session, event: Any) -> WebhookOutcome:
        event_id = field_of(event, "id")
        event_type = field_of(event, "type")
        obj = field_of(field_of(event, "data"), "object")

        if self._already_processed(db, event_id):
            logger.info(f"Duplicate webhook ignored: event_id={event_id}, type={event_type}")
            return WebhookOutcome(DUPLICATE, event_id, event_type)

        if event_type not in HANDLED_EVENTS:
            logger.debug(f"Unhandled webhook type: event_id={event_id}, type={event_type}")
            self._record(db, event_id, event_type, IGNORED, None)
            return WebhookOutcome(IGNORED, event_id, event_type)

        subscription_id = subscription_id_from(event_type, obj)
        customer_id = id_of(field_of(obj, "customer"))
        user = self.resolve_user(db, subscription_id, customer_id, user_id_hint(obj))

        if user is None:
            logger.warning(
                f"Webhook for unknown user: event_id={event_id}, type={event_type}, "
                f"subscription_id={subscription_id}, customer_id={customer_id}"
            )
            self._record(db, event_id, event_type, UNMATCHED, None)
            return WebhookOutcome(UNMATCHED, event_id, event_type)

        if event_type == CHECKOUT_COMPLETED:
            self._link_checkout(db, user, customer_id, subscription_id)

        subscription_id = subscription_id or user.stripe_subscription_id
        if not subscription_id:
            logger.info(f"Webhook without subscription: event_id={event_id}, type={event_type}, user_id={user.id}")
            self._record(db, event_id, event_type, IGNORED, user.id)
            return WebhookOutcome(IGNORED, event_id, event_type, user.id)

        try:
            subscription = self._authoritative_subscription(user, subscription_id, event_id)
        except GatewayRejected as e:
            # Redelivery cannot succeed (e.g. the subscription was deleted in Stripe)
            logger.warning(
                f"Webhook subscription rejected by Stripe: event_id={event_id}, type={event_type}, "
                f"user_id={user.id}, subscription_id={subscription_id}, code={e.provider_code}"
            )
            self._record(db, event_id, event_type, REJECTED, user.id)
            return WebhookOutcome(REJECTED, event_id, event_type, user.id)

        pending = self.sync.sync_user(db, user, subscription)

        fresh_entry = self.cache.build_entry(user, pending)
        self.cache.publish_invalidation(user.id, fresh_entry)

        self._record(db, event_id, event_type, PROCESSED, user.id)
        logger.info(
            f"Webhook processed: event_id={event_id}, type={event_type}, user_id={user.id}, "
            f"plan={user.plan_id}, status={user.plan_status}"
        )
        return WebhookOutcome(PROCESSED, event_id, event_type, user.id)

    def _authoritative_subscription(self, user: User, subscription_id: str, event_id: str):
        """The event's subscription, unless the user has moved on to another live one."""
        if user.stripe_subscription_id and subscription_id != user.stripe_subscription_id:
            current = self.gateway.fetch(user.stripe_subscription_id)
            if current.is_entitled:
                logger.info(
                    f"Webhook for superseded subscription: event_id={event_id}, user_id={user.id}, "
                    f"subscription_id={subscription_id}, current={current.id}"
                )
                return current
        return self.gateway.fetch(subscription_id)

    def _link_checkout(self, db: Session, user: User, customer_id: Optional[str], subscription_id: Optional[str]):
        """Attach the customer/subscription created by checkout to the user."""
        with self.sync.locks.hold(user.id):
            locked = lock_user_row(db, user.id) or user
            if customer_id:
                locked.stripe_customer_id = customer_id
            if subscription_id:
                locked.stripe_subscription_id = subscription_id
            db.commit()
        db.refresh(user)
        logger.info(
            "Checkout linked: %s",
            sanitize_log_data({
                "user_id": user.id,
                "customer_id": customer_id,
                "subscription_id": subscription_id,
            }),
        )
