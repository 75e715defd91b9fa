from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.sql import func
from app.db.base import Base

KIND_DOWNGRADE = "downgrade"
KIND_CANCEL = "cancel"


class PendingPlanChange(Base):
    """
    A downgrade or cancellation scheduled for the end of the billing period.

    At most one per user. Rows are created and deleted, never updated;
    replacing a pending change means delete + insert.
    """
    __tablename__ = "pending_plan_changes"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    kind = Column(String, nullable=False)  # downgrade | cancel
    target_plan_id = Column(String, nullable=False)
    effective_at = Column(DateTime(timezone=True), nullable=False)
    stripe_schedule_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
