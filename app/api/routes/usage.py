"""
Usage tracking endpoints.

Provides current-cycle usage and recent history for authenticated users.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.core.auth_dependency import get_current_user_obj
from app.core.billing_dependency import get_catalog, get_ledger, get_profile_cache
from app.core.errors import GatewayError
from app.core.plan_catalog import PlanCatalog
from app.db.models.user import User
from app.db.session import get_db
from app.schemas.usage import CycleUsageResponse, UsageHistoryResponse, UsageResponse
from app.services.profile_cache import ProfileCache
from app.services.quota_ledger import HISTORY_MONTHS, QuotaLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage", tags=["Usage"])


@router.get("", response_model=UsageResponse, status_code=status.HTTP_200_OK)
def get_usage(
    category: Optional[str] = Query(None, description="Only report this subject"),
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
    cache: ProfileCache = Depends(get_profile_cache),
    ledger: QuotaLedger = Depends(get_ledger),
    catalog: PlanCatalog = Depends(get_catalog),
):
    """
    Get current billing-cycle usage for the authenticated user.

    If billing cannot be reached to confirm the plan, the locally recorded
    usage is still returned but limit and remaining are null and
    usage_known is false.
    """
    try:
        entry = cache.get(db, user)
    except GatewayError as e:
        logger.warning(f"Usage served without plan confirmation: user_id={user.id}, error={e.message}")
        summary = ledger.usage_summary(db, user, category=category)
        return UsageResponse(
            plan=user.plan_id,
            monthly_limit=None,
            used=summary.used,
            remaining=None,
            cycle_id=summary.cycle_id,
            period_start=summary.period_start,
            period_end=summary.period_end,
            usage_known=False,
            per_category=summary.per_category,
        )

    summary = ledger.usage_summary(db, user, plan=catalog.resolve(entry.plan_id), category=category)
    logger.debug(f"Usage summary requested: user_id={user.id}, plan={summary.plan_id}, used={summary.used}")
    return UsageResponse(
        plan=summary.plan_id,
        monthly_limit=summary.limit,
        used=summary.used,
        remaining=summary.remaining,
        cycle_id=summary.cycle_id,
        period_start=summary.period_start,
        period_end=summary.period_end,
        usage_known=True,
        per_category=summary.per_category,
    )


@router.get("/history", response_model=UsageHistoryResponse, status_code=status.HTTP_200_OK)
def get_usage_history(
    months: int = Query(HISTORY_MONTHS, ge=1, le=24),
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
    ledger: QuotaLedger = Depends(get_ledger),
):
    """Per-cycle totals for the most recent cycles, newest first."""
    cycles = ledger.history(db, user.id, months=months)
    return UsageHistoryResponse(cycles=[
        CycleUsageResponse(
            cycle_id=cycle.cycle_id,
            period_start=cycle.period_start,
            total_questions=cycle.total_questions,
            limit=cycle.plan_limit_snapshot,
            per_category=cycle.per_category,
        )
        for cycle in cycles
    ])
