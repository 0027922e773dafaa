"""
Budget database model.

A bounded pool of money allocated to one partner school for one academic year.
"""

from sqlalchemy import (
    Column, Integer, BigInteger, String, Text, Date, DateTime, Enum,
    UniqueConstraint, CheckConstraint
)
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.ledger_enums import BudgetStatus


class Budget(Base):
    """
    Budget model.

    Balances are integer minor units (centavos). They are mutated only by
    LedgerStore inside a logged transaction, never edited in place.
    Invariant: allocated_amount >= disbursed_amount + reserved_amount >= 0.
    """
    __tablename__ = "budgets"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Scope
    school_id = Column(Integer, nullable=False, index=True)
    school_name = Column(String(255), nullable=True)
    academic_year = Column(String(20), nullable=False)

    # Balances
    allocated_amount = Column(BigInteger, default=0, nullable=False)
    disbursed_amount = Column(BigInteger, default=0, nullable=False)
    reserved_amount = Column(BigInteger, default=0, nullable=False)

    status = Column(Enum(BudgetStatus), default=BudgetStatus.ACTIVE, nullable=False, index=True)

    allocation_date = Column(Date, nullable=True)
    expiry_date = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)
    allocated_by = Column(String(100), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("school_id", "academic_year", name="uq_budgets_school_year"),
        CheckConstraint("disbursed_amount >= 0", name="ck_budgets_disbursed_non_negative"),
        CheckConstraint("reserved_amount >= 0", name="ck_budgets_reserved_non_negative"),
        CheckConstraint(
            "allocated_amount >= disbursed_amount + reserved_amount",
            name="ck_budgets_within_allocation"
        ),
    )

    @property
    def available_amount(self) -> int:
        return self.allocated_amount - self.disbursed_amount - self.reserved_amount

    def __repr__(self):
        return (
            f"<Budget(id={self.id}, school_id={self.school_id}, year='{self.academic_year}', "
            f"available={self.available_amount}, status='{self.status.value}')>"
        )
