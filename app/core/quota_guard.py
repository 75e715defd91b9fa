"""
Quota and plan enforcement for question generation.

The generation pipeline calls authorize_generation() before any expensive
work and record_generation() only after questions were actually produced.

authorize_generation():
1. Validates question types / document against the user's plan
2. Checks the current cycle's usage against the plan limit
3. Raises AccessDenied (402) or QuotaExceeded (429) with structured detail

The plan is read from the persisted profile row, which reconciliation keeps
in step with Stripe; the profile cache is not consulted for enforcement.
"""
import logging
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from app.core.access_validator import validate_generation_request
from app.core.errors import AccessDenied, QuotaExceeded
from app.core.plan_catalog import PlanCatalog
from app.db.models.user import User
from app.services.quota_ledger import QuotaCheck, QuotaLedger

logger = logging.getLogger(__name__)


def authorize_generation(
    db: Session,
    user: User,
    catalog: PlanCatalog,
    ledger: QuotaLedger,
    question_types: Iterable[str],
    question_count: int,
    subject: Optional[str] = None,
    document_type: Optional[str] = None,
    document_size_bytes: Optional[int] = None,
    link: Optional[str] = None,
) -> QuotaCheck:
    """
    Raise unless the user may generate question_count questions of question_types.

    Returns the quota check so callers can show the remaining allowance.
    """
    plan = catalog.resolve(user.plan_id)
    question_types = list(question_types)

    decision = validate_generation_request(
        plan.id,
        question_types,
        document_type=document_type,
        document_size_bytes=document_size_bytes,
        link=link,
        catalog=catalog,
    )
    if not decision:
        logger.info(
            f"Generation denied by plan: user_id={user.id}, plan={plan.id}, "
            f"reason={decision.reason.value}, required_plan={decision.required_plan_id}"
        )
        raise AccessDenied(
            decision.message or "Not included in your plan",
            detail={
                "reason": decision.reason.value,
                "plan": plan.id,
                "required_plan_id": decision.required_plan_id,
            },
        )

    check = ledger.check_and_reserve(db, user.id, subject, question_count, plan=plan)
    if not check.allowed:
        logger.warning(
            f"Quota exceeded: user_id={user.id}, plan={plan.id}, cycle={check.cycle_id}, "
            f"limit={check.limit}, used={check.used}, requested={question_count}"
        )
        raise QuotaExceeded(
            f"You have {check.remaining} of {check.limit} questions left this cycle. "
            f"Upgrade your plan for more quota.",
            detail={
                "plan": plan.id,
                "limit": check.limit,
                "used": check.used,
                "remaining": check.remaining,
                "requested": question_count,
                "cycle_id": check.cycle_id,
            },
        )

    logger.debug(
        f"Generation authorized: user_id={user.id}, plan={plan.id}, "
        f"requested={question_count}, remaining={check.remaining}"
    )
    return check


def record_generation(
    db: Session,
    user: User,
    catalog: PlanCatalog,
    ledger: QuotaLedger,
    question_count: int,
    subject: Optional[str] = None,
) -> int:
    """Commit successfully generated questions to the ledger. Returns the new cycle total."""
    return ledger.commit(db, user.id, subject, question_count, plan=catalog.resolve(user.plan_id))
