"""
Generation gate endpoints used by the question generation pipeline.

preflight runs before any generation work; record runs after questions were
successfully produced.
"""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.core.auth_dependency import get_current_user_obj
from app.core.billing_dependency import get_catalog, get_ledger
from app.core.plan_catalog import PlanCatalog
from app.core.quota_guard import authorize_generation, record_generation
from app.db.models.user import User
from app.db.session import get_db
from app.schemas.usage import GenerationRecordRequest, GenerationRequest, QuotaCheckResponse
from app.services.quota_ledger import QuotaLedger

router = APIRouter(prefix="/generation", tags=["Generation"])


@router.post("/preflight", response_model=QuotaCheckResponse, status_code=status.HTTP_200_OK)
def preflight(
    body: GenerationRequest,
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
    catalog: PlanCatalog = Depends(get_catalog),
    ledger: QuotaLedger = Depends(get_ledger),
):
    """402 if the plan lacks a capability, 429 if the cycle quota would be exceeded."""
    check = authorize_generation(
        db,
        user,
        catalog,
        ledger,
        question_types=body.question_types,
        question_count=body.question_count,
        subject=body.subject,
        document_type=body.document_type,
        document_size_bytes=body.document_size_bytes,
        link=body.link,
    )
    return QuotaCheckResponse(
        allowed=check.allowed,
        remaining=check.remaining,
        limit=check.limit,
        used=check.used,
        cycle_id=check.cycle_id,
        plan=check.plan_id,
    )


@router.post("/record", status_code=status.HTTP_200_OK)
def record(
    body: GenerationRecordRequest,
    user: User = Depends(get_current_user_obj),
    db: Session = Depends(get_db),
    catalog: PlanCatalog = Depends(get_catalog),
    ledger: QuotaLedger = Depends(get_ledger),
):
    total = record_generation(db, user, catalog, ledger, body.question_count, subject=body.subject)
    return {"recorded": body.question_count, "total": total}
