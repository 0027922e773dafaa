"""
Scholarship Application (funding request) database model.
"""

from sqlalchemy import Column, Integer, BigInteger, String, Text, ForeignKey, DateTime, Enum
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.ledger_enums import ApplicationStatus


class Application(Base):
    """
    Application model.

    Carries the funding lifecycle status driven by DisbursementWorkflow.
    reserved_amount is the hold currently placed against the budget for this
    application; it returns to zero on release or disbursement.
    """
    __tablename__ = "applications"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    application_number = Column(String(50), unique=True, index=True, nullable=False)

    # Funding source (NULL = unbudgeted / global pool)
    budget_id = Column(Integer, ForeignKey('budgets.id'), nullable=True, index=True)
    school_id = Column(Integer, nullable=True, index=True)

    # Student details used for checkout pre-fill and receipts
    student_id = Column(Integer, nullable=True, index=True)
    student_name = Column(String(255), nullable=True)
    student_email = Column(String(255), nullable=True)
    student_phone = Column(String(50), nullable=True)
    wallet_account_number = Column(String(100), nullable=True)
    preferred_wallet = Column(String(50), nullable=True)

    # Financials (minor units)
    amount = Column(BigInteger, nullable=False)
    reserved_amount = Column(BigInteger, default=0, nullable=False)

    status = Column(Enum(ApplicationStatus), default=ApplicationStatus.APPROVED, nullable=False, index=True)

    # Latest payment attempt and the terminal disbursement
    payment_transaction_id = Column(Integer, nullable=True)
    disbursement_id = Column(Integer, nullable=True)

    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<Application(id={self.id}, number='{self.application_number}', status='{self.status.value}')>"
