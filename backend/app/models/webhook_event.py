"""
Webhook Event log model.

Records what the reconciler did with each inbound gateway delivery, and
which deliveries need an operator.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, Enum, Boolean
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.ledger_enums import WebhookOutcome


class WebhookEvent(Base):
    """
    Webhook Event table.
    Flagged rows are never retried automatically; they wait for review.
    """
    __tablename__ = "webhook_events"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    event_type = Column(String(100), nullable=True, index=True)
    checkout_id = Column(String(255), nullable=True, index=True)
    payment_id = Column(String(255), nullable=True, index=True)

    outcome = Column(Enum(WebhookOutcome), nullable=False, index=True)
    needs_review = Column(Boolean, default=False, nullable=False, index=True)
    detail = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)

    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(String(100), nullable=True)

    def __repr__(self):
        return f"<WebhookEvent(id={self.id}, type='{self.event_type}', outcome='{self.outcome}')>"
