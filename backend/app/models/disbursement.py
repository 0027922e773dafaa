"""
Disbursement database model.

Terminal, irreversible transfer of funds for one application.
"""

from sqlalchemy import Column, Integer, BigInteger, String, Text, ForeignKey, DateTime, Enum
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.ledger_enums import DisbursementMethod


class Disbursement(Base):
    """
    Disbursement model.

    application_id is unique: a second disbursement for the same application
    cannot be written, whichever path (manual or webhook) attempts it.
    """
    __tablename__ = "disbursements"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    application_id = Column(Integer, ForeignKey('applications.id'), unique=True, nullable=False, index=True)
    budget_id = Column(Integer, ForeignKey('budgets.id'), nullable=True, index=True)
    payment_transaction_id = Column(Integer, ForeignKey('payment_transactions.id'), nullable=True)

    amount = Column(BigInteger, nullable=False)
    method = Column(Enum(DisbursementMethod), nullable=False)
    provider_name = Column(String(100), nullable=True)
    provider_reference = Column(String(255), nullable=True, index=True)
    receipt_path = Column(String(500), nullable=True)
    notes = Column(Text, nullable=True)

    disbursed_by = Column(String(100), nullable=True)
    disbursed_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Disbursement(id={self.id}, application_id={self.application_id}, amount={self.amount})>"
