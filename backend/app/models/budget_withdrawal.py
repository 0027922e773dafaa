"""
Budget Withdrawal database model.

Partner-school self-service deductions (no reservation phase).
"""

from sqlalchemy import Column, Integer, BigInteger, String, Text, ForeignKey, Date, DateTime
from sqlalchemy.sql import func
from backend.app.db.session import Base


class BudgetWithdrawal(Base):
    """
    Budget Withdrawal model.

    Each row is backed by exactly one disbursement LedgerTransaction and a
    stored proof document.
    """
    __tablename__ = "budget_withdrawals"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    budget_id = Column(Integer, ForeignKey('budgets.id'), nullable=False, index=True)
    school_id = Column(Integer, nullable=False, index=True)
    ledger_transaction_id = Column(Integer, ForeignKey('ledger_transactions.id'), nullable=False)

    amount = Column(BigInteger, nullable=False)
    purpose = Column(String(255), nullable=False)
    withdrawal_date = Column(Date, nullable=False)
    notes = Column(Text, nullable=True)
    proof_document_path = Column(String(500), nullable=False)
    recorded_by = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<BudgetWithdrawal(id={self.id}, school_id={self.school_id}, amount={self.amount})>"
