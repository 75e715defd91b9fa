"""
Pydantic schemas for plan lifecycle endpoints.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field


class ChangePlanRequest(BaseModel):
    """Request schema for POST /plan/change."""
    target_plan_id: str = Field(..., description="Plan to move to (starter, basic, essentials, plus, advanced)")
    billing_period: str = Field("monthly", description="Billing period: 'monthly' or 'annual'", pattern="^(monthly|annual)$")

    class Config:
        json_schema_extra = {
            "example": {
                "target_plan_id": "plus",
                "billing_period": "monthly"
            }
        }


class PendingChangeResponse(BaseModel):
    kind: str = Field(..., description="downgrade | cancel")
    target_plan_id: str
    effective_at: datetime


class TransitionResponse(BaseModel):
    """Response schema for plan change operations."""
    kind: str = Field(..., description="upgrade | downgrade_scheduled | cancel_scheduled | checkout | pending_change_canceled | noop")
    from_plan_id: str
    to_plan_id: str
    effective_at: Optional[datetime] = Field(None, description="When the change takes effect")
    proration_amount: Optional[int] = Field(None, description="Prorated amount charged now, in minor currency units")
    checkout_url: Optional[str] = Field(None, description="Stripe Checkout URL for first paid subscription")
    already_on_plan: bool = False
    message: str = ""
    pending_change: Optional[PendingChangeResponse] = None

    class Config:
        json_schema_extra = {
            "example": {
                "kind": "downgrade_scheduled",
                "from_plan_id": "plus",
                "to_plan_id": "basic",
                "effective_at": "2026-11-01T00:00:00Z",
                "proration_amount": None,
                "checkout_url": None,
                "already_on_plan": False,
                "message": "Your plan will change to Basic at the end of the billing period",
                "pending_change": {
                    "kind": "downgrade",
                    "target_plan_id": "basic",
                    "effective_at": "2026-11-01T00:00:00Z"
                }
            }
        }


class PreviewResponse(BaseModel):
    """Response schema for POST /plan/preview."""
    kind: str
    from_plan_id: str
    to_plan_id: str
    effective_at: Optional[datetime] = None
    proration_amount: Optional[int] = None


class PlanDetails(BaseModel):
    id: str
    display_name: str
    tier_rank: int
    monthly_question_limit: int
    allowed_question_types: List[str]
    allowed_document_types: List[str]
    max_document_size_mb: int


class CurrentPlanResponse(BaseModel):
    """Response schema for GET /plan."""
    plan: PlanDetails
    status: Optional[str] = Field(None, description="Stripe subscription status, null for free users")
    subscription_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    pending_change: Optional[PendingChangeResponse] = None
    plan_known: bool = Field(True, description="False when billing data could not be refreshed")
