"""
Typed mirrors of Stripe subscription objects.

Everything the rest of the service knows about a subscription passes through
subscription_from_stripe() / schedule_from_stripe(), which reject payloads
with missing fields or unknown statuses instead of guessing.
"""
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from app.core.clock import from_timestamp
from app.core.errors import GatewayResponseError

ACTIVE = "active"
TRIALING = "trialing"
PAST_DUE = "past_due"
CANCELED = "canceled"
INCOMPLETE = "incomplete"
INCOMPLETE_EXPIRED = "incomplete_expired"
UNPAID = "unpaid"
PAUSED = "paused"

SUBSCRIPTION_STATUSES = frozenset({
    ACTIVE, TRIALING, PAST_DUE, CANCELED, INCOMPLETE, INCOMPLETE_EXPIRED, UNPAID, PAUSED,
})

# Statuses that grant the paid plan's entitlements
ENTITLED_STATUSES = frozenset({ACTIVE, TRIALING, PAST_DUE})


@dataclass(frozen=True)
class Subscription:
    id: str
    customer_id: str
    status: str
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool
    item_id: str
    price_id: str
    product_id: Optional[str] = None
    schedule_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def is_entitled(self) -> bool:
        return self.status in ENTITLED_STATUSES

    @property
    def is_ended(self) -> bool:
        return self.status in (CANCELED, INCOMPLETE_EXPIRED)


@dataclass(frozen=True)
class SchedulePhase:
    price_id: str
    start: datetime
    end: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriptionSchedule:
    id: str
    subscription_id: Optional[str]
    status: str
    phases: List[SchedulePhase] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status in ("not_started", "active")

    def phase_after(self, moment: datetime) -> Optional[SchedulePhase]:
        """First phase starting at or after moment."""
        for phase in self.phases:
            if phase.start >= moment:
                return phase
        return None


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str


def field_of(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a Stripe object or a plain dict."""
    if obj is None:
        return default
    try:
        return obj[name]
    except (KeyError, TypeError, IndexError):
        if isinstance(obj, Mapping):
            return default
        return getattr(obj, name, default)


def id_of(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return field_of(value, "id")


def _as_dict(value: Any) -> Dict[str, str]:
    if not value:
        return {}
    if hasattr(value, "to_dict"):
        value = value.to_dict()
    return {str(k): str(v) for k, v in dict(value).items()}


def _first_item(subscription: Any) -> Any:
    items = field_of(field_of(subscription, "items"), "data") or []
    if not items:
        return None
    return items[0]


def _required(value: Any, name: str, object_id: Optional[str]) -> Any:
    if value is None or value == "":
        raise GatewayResponseError(
            f"Subscription payload missing '{name}'",
            detail={"subscription_id": object_id},
        )
    return value


def subscription_from_stripe(obj: Any) -> Subscription:
    """
    Map a Stripe subscription into a Subscription.

    Billing period fields live on the subscription in older API versions and
    on each subscription item in newer ones; both are accepted.
    """
    sub_id = _required(field_of(obj, "id"), "id", None)

    status = field_of(obj, "status")
    if status not in SUBSCRIPTION_STATUSES:
        raise GatewayResponseError(
            f"Unknown subscription status: {status}",
            detail={"subscription_id": sub_id},
        )

    item = _required(_first_item(obj), "items", sub_id)
    price = _required(field_of(item, "price"), "items.data[0].price", sub_id)
    price_id = _required(id_of(price), "items.data[0].price.id", sub_id)
    product_id = id_of(field_of(price, "product")) if not isinstance(price, str) else None

    period_start = field_of(obj, "current_period_start") or field_of(item, "current_period_start")
    period_end = field_of(obj, "current_period_end") or field_of(item, "current_period_end")

    return Subscription(
        id=sub_id,
        customer_id=_required(id_of(field_of(obj, "customer")), "customer", sub_id),
        status=status,
        current_period_start=from_timestamp(_required(period_start, "current_period_start", sub_id)),
        current_period_end=from_timestamp(_required(period_end, "current_period_end", sub_id)),
        cancel_at_period_end=bool(field_of(obj, "cancel_at_period_end", False)),
        item_id=_required(field_of(item, "id"), "items.data[0].id", sub_id),
        price_id=price_id,
        product_id=product_id,
        schedule_id=id_of(field_of(obj, "schedule")),
        metadata=_as_dict(field_of(obj, "metadata")),
    )


def schedule_from_stripe(obj: Any) -> SubscriptionSchedule:
    schedule_id = field_of(obj, "id")
    if not schedule_id:
        raise GatewayResponseError("Subscription schedule payload missing 'id'")

    phases = []
    for raw_phase in field_of(obj, "phases") or []:
        items = field_of(raw_phase, "items") or []
        if not items:
            raise GatewayResponseError(
                "Subscription schedule phase has no items",
                detail={"schedule_id": schedule_id},
            )
        start = field_of(raw_phase, "start_date")
        if start is None:
            raise GatewayResponseError(
                "Subscription schedule phase missing 'start_date'",
                detail={"schedule_id": schedule_id},
            )
        phases.append(SchedulePhase(
            price_id=id_of(field_of(items[0], "price")),
            start=from_timestamp(start),
            end=from_timestamp(field_of(raw_phase, "end_date")),
        ))

    return SubscriptionSchedule(
        id=schedule_id,
        subscription_id=id_of(field_of(obj, "subscription")),
        status=field_of(obj, "status") or "active",
        phases=phases,
    )
