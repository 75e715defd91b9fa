"""
Plan lifecycle states.

A user's state is derived from the authoritative subscription plus the local
pending-change record; it is never stored as such.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from app.core.clock import as_utc
from app.core.plan_catalog import PlanCatalog
from app.db.models.pending_plan_change import KIND_CANCEL, KIND_DOWNGRADE, PendingPlanChange
from app.services.subscription_mapping import Subscription


@dataclass(frozen=True)
class Free:
    plan_id: str
    name = "free"


@dataclass(frozen=True)
class Active:
    plan_id: str
    name = "active"


@dataclass(frozen=True)
class PendingDowngrade:
    plan_id: str
    target_plan_id: str
    effective_at: datetime
    name = "pending_downgrade"


@dataclass(frozen=True)
class PendingCancel:
    plan_id: str
    effective_at: datetime
    name = "pending_cancel"


@dataclass(frozen=True)
class Canceled:
    plan_id: str
    name = "canceled"


PlanState = Union[Free, Active, PendingDowngrade, PendingCancel, Canceled]


def has_pending_change(state: PlanState) -> bool:
    return isinstance(state, (PendingDowngrade, PendingCancel))


def derive_plan_state(
    catalog: PlanCatalog,
    subscription: Optional[Subscription],
    pending: Optional[PendingPlanChange],
) -> PlanState:
    """
    Combine provider truth and the local pending record into a PlanState.

    Assumes reconciliation already ran, so pending agrees with subscription.
    """
    free_id = catalog.free_plan.id
    if subscription is None:
        return Free(free_id)
    if subscription.is_ended:
        return Canceled(free_id)
    if not subscription.is_entitled:
        return Free(free_id)

    plan = catalog.for_subscription(subscription.price_id, subscription.product_id)
    plan_id = plan.id if plan else free_id

    if subscription.cancel_at_period_end:
        return PendingCancel(plan_id, subscription.current_period_end)
    if pending is not None and pending.kind == KIND_CANCEL:
        return PendingCancel(plan_id, as_utc(pending.effective_at))
    if pending is not None and pending.kind == KIND_DOWNGRADE:
        return PendingDowngrade(plan_id, pending.target_plan_id, as_utc(pending.effective_at))
    return Active(plan_id)
