"""
Reconciliation of local billing state against Stripe.

Stripe is authoritative. sync_user() fetches whatever extra provider data is
needed without holding the per-user lock, then applies it under the lock:
the profile row is overwritten and PendingPlanChange is created or removed so
that it agrees with the subscription. Disagreements are logged, never raised.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.core.clock import as_utc, utcnow
from app.core.errors import InconsistentState
from app.core.plan_catalog import PlanCatalog
from app.core.user_locks import UserLocks, user_locks
from app.db.models.pending_plan_change import KIND_CANCEL, KIND_DOWNGRADE, PendingPlanChange
from app.db.models.user import User
from app.services.subscription_mapping import Subscription, SubscriptionSchedule

logger = logging.getLogger(__name__)


def log_inconsistency(user_id: int, message: str, **fields):
    """Record a local/provider disagreement. The provider's view wins."""
    error = InconsistentState(message, detail=fields)
    extra = ", ".join(f"{k}={v}" for k, v in fields.items())
    logger.warning(f"{error.error_code}: user_id={user_id}, {error.message}" + (f", {extra}" if extra else ""))


def lock_user_row(db: Session, user_id: int) -> Optional[User]:
    """Re-read the profile row with SELECT ... FOR UPDATE (no-op on SQLite)."""
    return (
        db.query(User)
        .filter(User.id == user_id)
        .populate_existing()
        .with_for_update()
        .first()
    )


def get_pending_change(db: Session, user_id: int) -> Optional[PendingPlanChange]:
    return db.query(PendingPlanChange).filter(PendingPlanChange.user_id == user_id).first()


def clear_pending_change(db: Session, user_id: int) -> Optional[PendingPlanChange]:
    existing = get_pending_change(db, user_id)
    if existing is not None:
        db.delete(existing)
        db.flush()
    return existing


def replace_pending_change(
    db: Session,
    user_id: int,
    kind: str,
    target_plan_id: str,
    effective_at: datetime,
    schedule_id: Optional[str] = None,
) -> PendingPlanChange:
    """Pending changes are never updated in place: delete, then insert."""
    clear_pending_change(db, user_id)
    pending = PendingPlanChange(
        user_id=user_id,
        kind=kind,
        target_plan_id=target_plan_id,
        effective_at=effective_at,
        stripe_schedule_id=schedule_id,
    )
    db.add(pending)
    db.flush()
    return pending


class SubscriptionSync:
    """Applies authoritative subscription state to the local profile and pending change."""

    def __init__(self, catalog: PlanCatalog, gateway=None, locks: UserLocks = user_locks):
        self.catalog = catalog
        self.gateway = gateway
        self.locks = locks

    # ------------------------------------------------------------------
    # Profile row
    # ------------------------------------------------------------------

    def plan_id_for(self, subscription: Optional[Subscription]) -> str:
        """Plan a subscription entitles its owner to; free when not entitled."""
        if subscription is None or not subscription.is_entitled:
            return self.catalog.free_plan.id
        plan = self.catalog.for_subscription(subscription.price_id, subscription.product_id)
        if plan is None:
            logger.warning(
                f"Unmapped Stripe price on entitled subscription: subscription_id={subscription.id}, "
                f"price_id={subscription.price_id}, product_id={subscription.product_id}"
            )
            return self.catalog.free_plan.id
        return plan.id

    def apply_profile(self, user: User, subscription: Subscription) -> None:
        plan_id = self.plan_id_for(subscription)
        if user.plan_id != plan_id:
            logger.info(
                f"Profile plan updated from Stripe: user_id={user.id}, "
                f"{user.plan_id} -> {plan_id}, status={subscription.status}"
            )
        user.plan_id = plan_id
        user.plan_status = subscription.status
        user.stripe_customer_id = subscription.customer_id
        user.stripe_subscription_id = subscription.id
        user.stripe_price_id = subscription.price_id
        user.current_period_start = subscription.current_period_start
        user.current_period_end = subscription.current_period_end

    def apply_free(self, db: Session, user: User) -> None:
        """User no longer has a subscription at all."""
        user.plan_id = self.catalog.free_plan.id
        user.plan_status = None
        user.stripe_subscription_id = None
        user.stripe_price_id = None
        user.current_period_start = None
        user.current_period_end = None
        if clear_pending_change(db, user.id) is not None:
            log_inconsistency(user.id, "Pending change dropped: user has no subscription")

    # ------------------------------------------------------------------
    # Pending change
    # ------------------------------------------------------------------

    def load_schedule(self, subscription: Subscription) -> Optional[SubscriptionSchedule]:
        """Network half of reconciliation; call before taking the user lock."""
        if not subscription.schedule_id or self.gateway is None:
            return None
        return self.gateway.fetch_schedule(subscription.schedule_id)

    def reconcile_pending(
        self,
        db: Session,
        user: User,
        subscription: Subscription,
        schedule: Optional[SubscriptionSchedule],
        now: Optional[datetime] = None,
    ) -> Optional[PendingPlanChange]:
        now = now or utcnow()
        existing = get_pending_change(db, user.id)
        free_id = self.catalog.free_plan.id

        if subscription.is_ended or not subscription.is_entitled:
            if existing is not None:
                if existing.kind == KIND_CANCEL and subscription.is_ended:
                    logger.info(f"Scheduled cancellation took effect: user_id={user.id}")
                else:
                    log_inconsistency(
                        user.id, "Pending change dropped: subscription no longer active",
                        status=subscription.status, pending_kind=existing.kind,
                    )
                clear_pending_change(db, user.id)
            return None

        if subscription.cancel_at_period_end:
            if existing is not None and existing.kind == KIND_CANCEL:
                return existing
            log_inconsistency(
                user.id, "Subscription cancels at period end but no local pending cancel",
                subscription_id=subscription.id,
            )
            return replace_pending_change(
                db, user.id, KIND_CANCEL, free_id, subscription.current_period_end,
            )

        next_phase = None
        if schedule is not None and schedule.is_active:
            next_phase = schedule.phase_after(subscription.current_period_end)
            if next_phase is not None and next_phase.price_id == subscription.price_id:
                next_phase = None

        if next_phase is not None:
            target = self.catalog.by_price_id(next_phase.price_id)
            if target is None:
                logger.warning(
                    f"Scheduled price not in catalog: user_id={user.id}, schedule_id={schedule.id}, "
                    f"price_id={next_phase.price_id}"
                )
                return existing
            if (
                existing is not None
                and existing.kind == KIND_DOWNGRADE
                and existing.target_plan_id == target.id
                and existing.stripe_schedule_id == schedule.id
            ):
                return existing
            log_inconsistency(
                user.id, "Scheduled change missing locally",
                schedule_id=schedule.id, target_plan_id=target.id,
            )
            return replace_pending_change(
                db, user.id, KIND_DOWNGRADE, target.id, next_phase.start, schedule.id,
            )

        if existing is None:
            return None

        current_plan_id = self.plan_id_for(subscription)
        if existing.kind == KIND_DOWNGRADE and existing.target_plan_id == current_plan_id:
            logger.info(
                f"Scheduled downgrade took effect: user_id={user.id}, plan={current_plan_id}"
            )
        else:
            log_inconsistency(
                user.id, "Local pending change no longer backed by Stripe",
                pending_kind=existing.kind, target_plan_id=existing.target_plan_id,
                effective_at=as_utc(existing.effective_at).isoformat(),
            )
        clear_pending_change(db, user.id)
        return None

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def apply(
        self,
        db: Session,
        user: User,
        subscription: Subscription,
        schedule: Optional[SubscriptionSchedule] = None,
        now: Optional[datetime] = None,
    ) -> Optional[PendingPlanChange]:
        """Local half of reconciliation. Caller holds the user lock and commits."""
        self.apply_profile(user, subscription)
        return self.reconcile_pending(db, user, subscription, schedule, now)

    def sync_user(
        self,
        db: Session,
        user: User,
        subscription: Subscription,
        now: Optional[datetime] = None,
    ) -> Optional[PendingPlanChange]:
        """Fetch any schedule, then lock, apply and commit."""
        schedule = self.load_schedule(subscription)
        with self.locks.hold(user.id):
            locked = lock_user_row(db, user.id) or user
            pending = self.apply(db, locked, subscription, schedule, now)
            db.commit()
        db.refresh(user)
        return pending
