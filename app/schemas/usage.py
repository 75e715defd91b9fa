"""
Pydantic schemas for usage and generation endpoints.
"""
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field


class UsageResponse(BaseModel):
    """Response schema for GET /usage."""
    plan: str = Field(..., description="Current plan id")
    monthly_limit: Optional[int] = Field(None, description="Questions allowed this cycle (null when unknown)")
    used: int = Field(..., description="Questions generated this cycle")
    remaining: Optional[int] = Field(None, description="Questions left this cycle (null when unknown)")
    cycle_id: str = Field(..., description="Billing cycle key: UTC start of the cycle window")
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    usage_known: bool = Field(True, description="False when the plan could not be confirmed with billing")
    per_category: Dict[str, int] = Field(default_factory=dict, description="Questions per subject this cycle")

    class Config:
        json_schema_extra = {
            "example": {
                "plan": "basic",
                "monthly_limit": 50,
                "used": 48,
                "remaining": 2,
                "cycle_id": "2026-10-05T09:30:00Z",
                "period_start": "2026-10-05T09:30:00Z",
                "period_end": "2026-11-05T09:30:00Z",
                "usage_known": True,
                "per_category": {"biology": 30, "history": 18}
            }
        }


class CycleUsageResponse(BaseModel):
    cycle_id: str
    period_start: Optional[datetime] = None
    total_questions: int
    limit: int
    per_category: Dict[str, int] = Field(default_factory=dict)


class UsageHistoryResponse(BaseModel):
    """Response schema for GET /usage/history."""
    cycles: List[CycleUsageResponse]


class GenerationRequest(BaseModel):
    """Request schema for generation preflight."""
    question_types: List[str] = Field(..., min_length=1, description="Question types to generate")
    question_count: int = Field(..., gt=0, description="Number of questions requested")
    subject: Optional[str] = Field(None, description="Subject/category the questions belong to")
    document_type: Optional[str] = Field(None, description="Source document extension or MIME type")
    document_size_bytes: Optional[int] = Field(None, ge=0)
    link: Optional[str] = Field(None, description="Source URL, if generating from a link")

    class Config:
        json_schema_extra = {
            "example": {
                "question_types": ["multiple_choice", "true_false"],
                "question_count": 10,
                "subject": "biology",
                "document_type": "pdf",
                "document_size_bytes": 2048000
            }
        }


class GenerationRecordRequest(BaseModel):
    """Request schema for recording a completed generation."""
    question_count: int = Field(..., gt=0)
    subject: Optional[str] = None


class QuotaCheckResponse(BaseModel):
    allowed: bool
    remaining: int
    limit: int
    used: int
    cycle_id: str
    plan: str


class QuotaExceededResponse(BaseModel):
    """Error response schema for quota exceeded."""
    error: str = Field("quota_exceeded", description="Error code")
    plan: str = Field(..., description="User's current plan")
    limit: int = Field(..., description="Questions allowed this cycle")
    used: int = Field(..., description="Questions generated this cycle")
    remaining: int = Field(..., description="Questions left this cycle")
    message: str = Field(..., description="Human-readable error message")

    class Config:
        json_schema_extra = {
            "example": {
                "error": "quota_exceeded",
                "plan": "basic",
                "limit": 50,
                "used": 48,
                "remaining": 2,
                "message": "You have 2 of 50 questions left this cycle. Upgrade your plan for more quota."
            }
        }
