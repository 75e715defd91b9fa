from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.sql import func
from app.db.base import Base


class QuotaCycle(Base):
    """
    Question counter for one user and one billing-anchored monthly window.

    cycle_id is the UTC start instant of the window ("2026-10-05T09:30:00Z").
    total_questions only grows; rows are created lazily and never deleted.
    """
    __tablename__ = "quota_cycles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    cycle_id = Column(String(20), nullable=False)
    period_start = Column(DateTime(timezone=True), nullable=False)
    total_questions = Column(Integer, nullable=False, default=0, server_default="0")
    plan_limit_snapshot = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "cycle_id", name="uq_quota_cycles_user_cycle"),
    )


class QuotaSubjectCount(Base):
    """Per-subject breakdown of a QuotaCycle."""
    __tablename__ = "quota_subject_counts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    cycle_id = Column(String(20), nullable=False)
    subject = Column(String, nullable=False)
    count = Column(Integer, nullable=False, default=0, server_default="0")

    __table_args__ = (
        UniqueConstraint("user_id", "cycle_id", "subject", name="uq_quota_subject_counts_user_cycle_subject"),
        Index("idx_quota_subject_counts_user_cycle", "user_id", "cycle_id"),
    )
