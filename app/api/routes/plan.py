"""
Plan lifecycle endpoints.

Change plan, cancel a scheduled change, preview a change, and read the
current plan for display.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Header, status
from sqlalchemy.orm import Session

from app.core.auth_dependency import get_current_user_obj
from app.core.billing_dependency import get_catalog, get_profile_cache, get_state_machine
from app.core.errors import GatewayError
from app.core.plan_catalog import Plan, PlanCatalog
from app.db.models.user import User
from app.db.session import get_db
from app.schemas.plan import (
    ChangePlanRequest,
    CurrentPlanResponse,
    PendingChangeResponse,
    PlanDetails,
    PreviewResponse,
    TransitionResponse,
)
from app.services.plan_state_machine import PlanStateMachine, TransitionResult
from app.services.profile_cache import PendingChangeSnapshot, ProfileCache

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/plan", tags=["Plan"])


def _pending_response(snapshot: Optional[PendingChangeSnapshot]) -> Optional[PendingChangeResponse]:
    if snapshot is None:
        return None
    return PendingChangeResponse(
        kind=snapshot.kind,
        target_plan_id=snapshot.target_plan_id,
        effective_at=snapshot.effective_at,
    )


def _transition_response(result: TransitionResult) -> TransitionResponse:
    return TransitionResponse(
        kind=result.kind,
        from_plan_id=result.from_plan_id,
        to_plan_id=result.to_plan_id,
        effective_at=result.effective_at,
        proration_amount=result.proration_amount,
        checkout_url=result.checkout_url,
        already_on_plan=result.already_on_plan,
        message=result.message,
        pending_change=_pending_response(result.pending_change),
    )


def _plan_details(plan: Plan) -> PlanDetails:
    return PlanDetails(
        id=plan.id,
        display_name=plan.display_name,
        tier_rank=plan.tier_rank,
        monthly_question_limit=plan.monthly_question_limit,
        allowed_question_types=sorted(plan.allowed_question_types),
        allowed_document_types=sorted(plan.allowed_document_types),
        max_document_size_mb=plan.max_document_size_mb,
    )


@router.post("/change", response_model=TransitionResponse, status_code=status.HTTP_200_OK)
def change_plan(
    body: ChangePlanRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
    state_machine: PlanStateMachine = Depends(get_state_machine),
):
    """
    Change the authenticated user's plan.

    Upgrades take effect immediately with proration. Downgrades and moves to
    the free plan are scheduled for the end of the billing period. Free users
    moving to a paid plan get a checkout URL.
    """
    result = state_machine.change_plan(
        db, user, body.target_plan_id, body.billing_period, idempotency_key=idempotency_key,
    )
    return _transition_response(result)


@router.post("/cancel-pending-change", response_model=TransitionResponse, status_code=status.HTTP_200_OK)
def cancel_pending_change(
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
    state_machine: PlanStateMachine = Depends(get_state_machine),
):
    """Keep the current plan: drop a scheduled downgrade or cancellation."""
    result = state_machine.cancel_pending_change(db, user, idempotency_key=idempotency_key)
    return _transition_response(result)


@router.post("/preview", response_model=PreviewResponse, status_code=status.HTTP_200_OK)
def preview_change(
    body: ChangePlanRequest,
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
    state_machine: PlanStateMachine = Depends(get_state_machine),
):
    """Describe what a plan change would do, including the proration for upgrades."""
    preview = state_machine.preview_change(db, user, body.target_plan_id, body.billing_period)
    return PreviewResponse(
        kind=preview.kind,
        from_plan_id=preview.from_plan_id,
        to_plan_id=preview.to_plan_id,
        effective_at=preview.effective_at,
        proration_amount=preview.proration_amount,
    )


@router.get("", response_model=CurrentPlanResponse, status_code=status.HTTP_200_OK)
def get_current_plan(
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
    cache: ProfileCache = Depends(get_profile_cache),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """Current plan for display. Falls back to the stored profile if Stripe is unreachable."""
    try:
        entry = cache.get(db, user)
    except GatewayError as e:
        logger.warning(f"Plan refresh failed, serving stored profile: user_id={user.id}, error={e.message}")
        return CurrentPlanResponse(
            plan=_plan_details(catalog.resolve(user.plan_id)),
            status=user.plan_status,
            subscription_id=user.stripe_subscription_id,
            current_period_end=user.current_period_end,
            plan_known=False,
        )

    return CurrentPlanResponse(
        plan=_plan_details(catalog.resolve(entry.plan_id)),
        status=entry.status,
        subscription_id=entry.subscription_id,
        current_period_end=entry.current_period_end,
        pending_change=_pending_response(entry.pending_change),
    )
