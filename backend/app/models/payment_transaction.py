"""
Payment Transaction database model.

One row per checkout session issued through the payment gateway.
"""

from sqlalchemy import Column, Integer, BigInteger, String, Text, ForeignKey, DateTime, Enum
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.ledger_enums import PaymentTransactionStatus


class PaymentTransaction(Base):
    """
    Payment Transaction model.

    idempotency_key is the provider checkout id; it is also the ledger key
    of the disbursement this payment produces.
    """
    __tablename__ = "payment_transactions"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    application_id = Column(Integer, ForeignKey('applications.id'), nullable=False, index=True)

    transaction_reference = Column(String(64), unique=True, nullable=False)

    # Provider identifiers
    provider_checkout_id = Column(String(255), unique=True, nullable=False, index=True)
    provider_payment_id = Column(String(255), nullable=True, index=True)
    provider_reference_number = Column(String(255), nullable=True, index=True)
    idempotency_key = Column(String(255), unique=True, nullable=False)

    status = Column(
        Enum(PaymentTransactionStatus),
        default=PaymentTransactionStatus.PENDING,
        nullable=False,
        index=True
    )
    amount = Column(BigInteger, nullable=False)

    checkout_url = Column(Text, nullable=True)
    failure_reason = Column(String(255), nullable=True)
    initiated_by = Column(String(100), nullable=True)

    initiated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return (
            f"<PaymentTransaction(id={self.id}, checkout='{self.provider_checkout_id}', "
            f"status='{self.status.value}')>"
        )
