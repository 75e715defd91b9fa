"""
Database models module.

This module imports all database models to ensure they are registered with SQLAlchemy's Base.metadata
before table creation.

All models must be imported here to be included in database migrations and table creation.
"""
from app.db.models.user import User
from app.db.models.pending_plan_change import PendingPlanChange
from app.db.models.quota import QuotaCycle, QuotaSubjectCount
from app.db.models.webhook_event import WebhookEvent

__all__ = [
    "User",
    "PendingPlanChange",
    "QuotaCycle",
    "QuotaSubjectCount",
    "WebhookEvent",
]
