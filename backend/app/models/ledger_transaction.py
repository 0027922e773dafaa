"""
Ledger Transaction database model.

Append-only record of every budget mutation.
"""

from sqlalchemy import Column, Integer, BigInteger, ForeignKey, DateTime, Enum, String
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.ledger_enums import LedgerTransactionType


class LedgerTransaction(Base):
    """
    Ledger Transaction model.

    Exactly one row per Budget mutation, written in the same atomic unit.
    `amount` is the signed change to the budget's available balance and
    balance_after == balance_before + amount.
    NO updates or deletions allowed; corrections are new offsetting entries.
    """
    __tablename__ = "ledger_transactions"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    budget_id = Column(Integer, ForeignKey('budgets.id'), nullable=False, index=True)
    transaction_type = Column(Enum(LedgerTransactionType), nullable=False, index=True)

    # Financials (minor units)
    amount = Column(BigInteger, nullable=False)
    balance_before = Column(BigInteger, nullable=False)
    balance_after = Column(BigInteger, nullable=False)

    # What caused the entry (e.g. application / withdrawal)
    reference_type = Column(String(50), nullable=True)
    reference_id = Column(String(64), nullable=True, index=True)

    # Replay guard; unique when present
    idempotency_key = Column(String(255), nullable=True, unique=True)

    notes = Column(String(255), nullable=True)
    performed_by = Column(String(100), nullable=True)

    # Timestamps (Immutable - no updated_at)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return (
            f"<LedgerTransaction(id={self.id}, type='{self.transaction_type.value}', "
            f"amount={self.amount}, balance_after={self.balance_after})>"
        )
