"""
Audit Log Database Model.

Tracks disbursement and budget actions for compliance. Written in the same
atomic unit as the change it records.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from backend.app.db.session import Base


class AuditLog(Base):
    """
    Audit log model.

    Events logged:
    - PAYMENT_INITIATED / PAYMENT_COMPLETED / PAYMENT_FAILED / PAYMENT_CANCELLED
    - DISBURSEMENT_CREATED
    - BUDGET_ALLOCATED / BUDGET_ADJUSTED / BUDGET_EXPIRED
    - WITHDRAWAL_RECORDED
    """
    __tablename__ = "audit_logs"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who performed the action (None for webhook/system actions)
    actor_id = Column(Integer, index=True, nullable=True)
    actor_username = Column(String(100), nullable=True)

    # What action was performed
    action = Column(String(100), nullable=False, index=True)

    # What the action touched
    target_type = Column(String(50), nullable=True)
    target_id = Column(String(64), index=True, nullable=True)

    # Additional context (JSON for flexibility)
    meta_data = Column(JSON, nullable=True)

    # Timestamp
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', target={self.target_type}:{self.target_id})>"
