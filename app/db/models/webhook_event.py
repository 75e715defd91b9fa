from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func
from app.db.base import Base


class WebhookEvent(Base):
    """Processed billing webhook deliveries, keyed by provider event id for replay detection."""
    __tablename__ = "billing_webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String, nullable=False, unique=True, index=True)
    event_type = Column(String, nullable=False)
    user_id = Column(Integer, nullable=True, index=True)
    outcome = Column(String, nullable=False)  # processed | ignored | unmatched | rejected
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
