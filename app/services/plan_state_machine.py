"""
Plan lifecycle state machine.

Decides what a plan change request means (upgrade now, downgrade or cancel at
period end, checkout, reactivation, no-op), drives the subscription gateway
accordingly and records the outcome locally.

Every operation starts by re-fetching the subscription from Stripe. The
per-user lock guards local reads and writes only; it is released for the
duration of each gateway call.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core import config
from app.core.clock import utcnow
from app.core.errors import GatewayError, ValidationError
from app.core.plan_catalog import BILLING_PERIODS, Plan, PlanCatalog
from app.core.plan_state import (
    Canceled,
    Free,
    PendingCancel,
    PendingDowngrade,
    PlanState,
    derive_plan_state,
    has_pending_change,
)
from app.core.user_locks import UserLocks, user_locks
from app.db.models.pending_plan_change import KIND_CANCEL, KIND_DOWNGRADE, PendingPlanChange
from app.db.models.user import User
from app.services.profile_cache import PendingChangeSnapshot, ProfileCache
from app.services.subscription_mapping import Subscription
from app.services.subscription_sync import (
    SubscriptionSync,
    clear_pending_change,
    get_pending_change,
    lock_user_row,
    replace_pending_change,
)

logger = logging.getLogger(__name__)

UPGRADE = "upgrade"
DOWNGRADE_SCHEDULED = "downgrade_scheduled"
CANCEL_SCHEDULED = "cancel_scheduled"
CHECKOUT = "checkout"
PENDING_CHANGE_CANCELED = "pending_change_canceled"
NOOP = "noop"


@dataclass(frozen=True)
class TransitionResult:
    kind: str
    from_plan_id: str
    to_plan_id: str
    effective_at: Optional[datetime] = None
    proration_amount: Optional[int] = None
    checkout_url: Optional[str] = None
    pending_change: Optional[PendingChangeSnapshot] = None
    already_on_plan: bool = False
    message: str = ""


@dataclass(frozen=True)
class ChangePreview:
    kind: str
    from_plan_id: str
    to_plan_id: str
    effective_at: Optional[datetime]
    proration_amount: Optional[int] = None


class PlanStateMachine:
    """Coordinates Stripe and local state for plan changes."""

    def __init__(
        self,
        catalog: PlanCatalog,
        gateway,
        cache: ProfileCache,
        sync: Optional[SubscriptionSync] = None,
        locks: UserLocks = user_locks,
        clock: Callable[[], datetime] = utcnow,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ):
        self.catalog = catalog
        self.gateway = gateway
        self.cache = cache
        self.locks = locks
        self.sync = sync or SubscriptionSync(catalog, gateway, locks)
        self._clock = clock
        self.success_url = success_url or f"{config.FRONTEND_URL}/billing?checkout=success"
        self.cancel_url = cancel_url or f"{config.FRONTEND_URL}/plan?checkout=canceled"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _target(self, target_plan_id: str, billing_period: str) -> Plan:
        target = self.catalog.get(target_plan_id)
        if target is None:
            raise ValidationError(f"Unknown plan: {target_plan_id}", detail={"target_plan_id": target_plan_id})
        if billing_period not in BILLING_PERIODS:
            raise ValidationError(
                f"Unknown billing period: {billing_period}",
                detail={"billing_period": billing_period, "allowed": list(BILLING_PERIODS)},
            )
        return target

    def _price_for(self, plan: Plan, billing_period: str) -> str:
        price_id = plan.price_id_for(billing_period)
        if not price_id:
            raise ValidationError(
                f"No Stripe price configured for {plan.id} ({billing_period})",
                detail={"target_plan_id": plan.id, "billing_period": billing_period},
            )
        return price_id

    @staticmethod
    def _request_key(user: User, idempotency_key: Optional[str]) -> str:
        """
        Base for the Stripe idempotency keys of one request.

        A fresh token per request unless the caller supplied a key, so a
        repeated action (downgrade, undo, downgrade again) is a new Stripe
        request rather than a replay of the first one.
        """
        return idempotency_key or f"plan:{user.id}:{uuid.uuid4().hex}"

    def _refresh(
        self, db: Session, user: User, now: datetime
    ) -> Tuple[Optional[Subscription], Optional[PendingPlanChange]]:
        """Authoritative subscription plus reconciled pending change."""
        if not user.stripe_subscription_id:
            return None, get_pending_change(db, user.id)
        subscription = self.gateway.fetch(user.stripe_subscription_id)
        pending = self.sync.sync_user(db, user, subscription, now)
        return subscription, pending

    def _write_local(self, db: Session, user: User, operation: str, apply) -> Optional[PendingPlanChange]:
        """
        Apply a local write under the user lock.

        A failure here happens after Stripe already changed, so it is logged
        and left for reconciliation on the next read instead of failing the call.
        """
        pending = None
        try:
            with self.locks.hold(user.id):
                locked = lock_user_row(db, user.id) or user
                pending = apply(locked)
                db.commit()
            db.refresh(user)
        except SQLAlchemyError:
            db.rollback()
            logger.exception(
                f"Local write failed after Stripe {operation}: user_id={user.id}. "
                f"State will be reconciled on next read."
            )
        finally:
            self.cache.invalidate(user.id)
        return pending

    def _classify(self, subscription: Optional[Subscription], state: PlanState, current: Plan, target: Plan) -> str:
        if subscription is None or isinstance(state, (Free, Canceled)):
            return NOOP if target.is_free else CHECKOUT
        if target.id == current.id:
            return PENDING_CHANGE_CANCELED if has_pending_change(state) else NOOP
        if isinstance(state, PendingDowngrade) and state.target_plan_id == target.id:
            return NOOP
        if isinstance(state, PendingCancel) and target.is_free:
            return NOOP
        if target.tier_rank > current.tier_rank:
            return UPGRADE
        if target.is_free:
            return CANCEL_SCHEDULED
        return DOWNGRADE_SCHEDULED

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def current_state(self, db: Session, user: User) -> PlanState:
        subscription, pending = self._refresh(db, user, self._clock())
        return derive_plan_state(self.catalog, subscription, pending)

    def change_plan(
        self,
        db: Session,
        user: User,
        target_plan_id: str,
        billing_period: str = "monthly",
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Move user to target_plan_id.

        Upgrades apply immediately with proration; downgrades and moves to the
        free plan are deferred to the end of the current billing period.
        """
        now = now or self._clock()
        target = self._target(target_plan_id, billing_period)
        subscription, pending = self._refresh(db, user, now)
        state = derive_plan_state(self.catalog, subscription, pending)
        current = self.catalog.resolve(user.plan_id)
        kind = self._classify(subscription, state, current, target)

        logger.info(
            f"Plan change requested: user_id={user.id}, from={current.id}, to={target.id}, "
            f"period={billing_period}, state={state.name}, action={kind}"
        )

        if kind == NOOP:
            snapshot = PendingChangeSnapshot.from_row(pending)
            if target.id == current.id:
                message = f"Already on the {target.display_name} plan"
            else:
                message = f"Change to {target.display_name} is already scheduled"
            return TransitionResult(
                kind=NOOP,
                from_plan_id=current.id,
                to_plan_id=target.id,
                effective_at=snapshot.effective_at if snapshot else None,
                pending_change=snapshot,
                already_on_plan=True,
                message=message,
            )
        request_key = self._request_key(user, idempotency_key)
        if kind == PENDING_CHANGE_CANCELED:
            return self._cancel_pending(db, user, subscription, state, current, request_key, now)
        if kind == CHECKOUT:
            return self._checkout(user, current, target, billing_period, request_key, now)
        if kind == UPGRADE:
            return self._upgrade(db, user, subscription, current, target, billing_period, request_key, now)
        if kind == CANCEL_SCHEDULED:
            return self._schedule_cancel(db, user, subscription, current, target, request_key)
        return self._schedule_downgrade(db, user, subscription, current, target, billing_period, request_key)

    def cancel_pending_change(
        self,
        db: Session,
        user: User,
        idempotency_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Drop a scheduled downgrade or cancellation, keeping the current plan and period."""
        now = now or self._clock()
        subscription, pending = self._refresh(db, user, now)
        state = derive_plan_state(self.catalog, subscription, pending)
        current = self.catalog.resolve(user.plan_id)

        if not has_pending_change(state):
            return TransitionResult(
                kind=NOOP,
                from_plan_id=current.id,
                to_plan_id=current.id,
                message="No pending plan change",
            )
        request_key = self._request_key(user, idempotency_key)
        return self._cancel_pending(db, user, subscription, state, current, request_key, now)

    def preview_change(
        self,
        db: Session,
        user: User,
        target_plan_id: str,
        billing_period: str = "monthly",
        now: Optional[datetime] = None,
    ) -> ChangePreview:
        """What change_plan would do, without changing anything."""
        now = now or self._clock()
        target = self._target(target_plan_id, billing_period)
        subscription, pending = self._refresh(db, user, now)
        state = derive_plan_state(self.catalog, subscription, pending)
        current = self.catalog.resolve(user.plan_id)
        kind = self._classify(subscription, state, current, target)

        effective_at = None
        proration = None
        if kind in (UPGRADE, CHECKOUT, PENDING_CHANGE_CANCELED):
            effective_at = now
        elif kind in (DOWNGRADE_SCHEDULED, CANCEL_SCHEDULED):
            effective_at = subscription.current_period_end
        if kind == UPGRADE:
            proration = self.gateway.estimate_proration(subscription, self._price_for(target, billing_period))

        return ChangePreview(
            kind=kind,
            from_plan_id=current.id,
            to_plan_id=target.id,
            effective_at=effective_at,
            proration_amount=proration,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _checkout(
        self, user: User, current: Plan, target: Plan, billing_period: str,
        request_key: str, now: datetime,
    ) -> TransitionResult:
        price_id = self._price_for(target, billing_period)
        session = self.gateway.create_checkout_session(
            price_id=price_id,
            user_id=user.id,
            plan_id=target.id,
            success_url=self.success_url,
            cancel_url=self.cancel_url,
            idempotency_key=f"{request_key}:checkout",
            customer_id=user.stripe_customer_id,
            customer_email=user.email,
        )
        return TransitionResult(
            kind=CHECKOUT,
            from_plan_id=current.id,
            to_plan_id=target.id,
            effective_at=now,
            checkout_url=session.url,
            message="Complete checkout to activate the plan",
        )

    def _upgrade(
        self, db: Session, user: User, subscription: Subscription, current: Plan, target: Plan,
        billing_period: str, request_key: str, now: datetime,
    ) -> TransitionResult:
        price_id = self._price_for(target, billing_period)

        try:
            proration = self.gateway.estimate_proration(subscription, price_id)
        except GatewayError as e:
            logger.warning(f"Proration estimate unavailable: user_id={user.id}, error={e.message}")
            proration = None

        if subscription.schedule_id:
            self.gateway.release_schedule(
                subscription.schedule_id,
                f"{request_key}:release",
            )

        updated = self.gateway.upgrade_now(
            subscription, price_id, f"{request_key}:upgrade",
        )

        def apply(locked: User):
            clear_pending_change(db, locked.id)
            self.sync.apply_profile(locked, updated)
            return None

        self._write_local(db, user, "upgrade", apply)
        logger.info(
            f"Plan upgraded: user_id={user.id}, {current.id} -> {target.id}, proration={proration}"
        )
        return TransitionResult(
            kind=UPGRADE,
            from_plan_id=current.id,
            to_plan_id=target.id,
            effective_at=now,
            proration_amount=proration,
            message=f"Upgraded to {target.display_name}",
        )

    def _schedule_downgrade(
        self, db: Session, user: User, subscription: Subscription, current: Plan, target: Plan,
        billing_period: str, request_key: str,
    ) -> TransitionResult:
        price_id = self._price_for(target, billing_period)

        if subscription.cancel_at_period_end:
            subscription = self.gateway.reactivate(
                subscription.id, f"{request_key}:reactivate",
            )

        effective_at = subscription.current_period_end
        schedule_id = self.gateway.schedule_change(
            subscription, price_id, effective_at,
            f"{request_key}:downgrade",
        )

        def apply(locked: User):
            self.sync.apply_profile(locked, subscription)
            return replace_pending_change(db, locked.id, KIND_DOWNGRADE, target.id, effective_at, schedule_id)

        pending = self._write_local(db, user, "downgrade", apply)
        logger.info(
            f"Downgrade scheduled: user_id={user.id}, {current.id} -> {target.id}, "
            f"effective_at={effective_at.isoformat()}"
        )
        return TransitionResult(
            kind=DOWNGRADE_SCHEDULED,
            from_plan_id=current.id,
            to_plan_id=target.id,
            effective_at=effective_at,
            pending_change=PendingChangeSnapshot.from_row(pending),
            message=f"Your plan will change to {target.display_name} at the end of the billing period",
        )

    def _schedule_cancel(
        self, db: Session, user: User, subscription: Subscription, current: Plan, target: Plan,
        request_key: str,
    ) -> TransitionResult:
        if subscription.schedule_id:
            self.gateway.release_schedule(
                subscription.schedule_id,
                f"{request_key}:release",
            )

        updated = self.gateway.cancel_at_period_end(
            subscription.id, f"{request_key}:cancel",
        )
        effective_at = updated.current_period_end

        def apply(locked: User):
            self.sync.apply_profile(locked, updated)
            return replace_pending_change(db, locked.id, KIND_CANCEL, target.id, effective_at)

        pending = self._write_local(db, user, "cancel", apply)
        logger.info(
            f"Cancellation scheduled: user_id={user.id}, plan={current.id}, effective_at={effective_at.isoformat()}"
        )
        return TransitionResult(
            kind=CANCEL_SCHEDULED,
            from_plan_id=current.id,
            to_plan_id=target.id,
            effective_at=effective_at,
            pending_change=PendingChangeSnapshot.from_row(pending),
            message=f"Your subscription will end on {effective_at.date().isoformat()}",
        )

    def _cancel_pending(
        self, db: Session, user: User, subscription: Subscription, state: PlanState, current: Plan,
        request_key: str, now: datetime,
    ) -> TransitionResult:
        updated = subscription
        if isinstance(state, PendingCancel):
            updated = self.gateway.reactivate(
                subscription.id, f"{request_key}:reactivate",
            )
        elif subscription.schedule_id:
            self.gateway.release_schedule(
                subscription.schedule_id,
                f"{request_key}:release",
            )

        def apply(locked: User):
            clear_pending_change(db, locked.id)
            self.sync.apply_profile(locked, updated)
            return None

        self._write_local(db, user, "cancel pending change", apply)
        logger.info(f"Pending plan change canceled: user_id={user.id}, plan={current.id}, was={state.name}")
        return TransitionResult(
            kind=PENDING_CHANGE_CANCELED,
            from_plan_id=current.id,
            to_plan_id=current.id,
            effective_at=now,
            message=f"You will stay on the {current.display_name} plan",
        )
