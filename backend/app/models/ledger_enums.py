"""
Ledger, application and payment enumerations.
"""

import enum


class BudgetStatus(str, enum.Enum):
    """Budget status enumeration."""
    ACTIVE = "active"
    EXPIRED = "expired"  # Past expiry date; no new reservations or withdrawals
    DEPLETED = "depleted"  # Available amount reached zero


class LedgerTransactionType(str, enum.Enum):
    """Ledger transaction type enumeration."""
    ALLOCATION = "allocation"  # Initial allocation of funds to a budget
    ADJUSTMENT = "adjustment"  # Signed change to the allocated amount
    RESERVATION = "reservation"  # Hold for a pending application
    DISBURSEMENT = "disbursement"  # Irreversible outflow
    RELEASE = "release"  # Hold returned to available
    EXPIRY = "expiry"  # Budget closed for new commitments


class ApplicationStatus(str, enum.Enum):
    """Funding lifecycle of a scholarship application."""
    APPROVED = "approved"
    PENDING_DISBURSEMENT = "pending_disbursement"
    GRANTS_PROCESSING = "grants_processing"
    PAYMENT_FAILED = "payment_failed"
    GRANTS_DISBURSED = "grants_disbursed"


class PaymentTransactionStatus(str, enum.Enum):
    """Provider payment attempt status."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class DisbursementMethod(str, enum.Enum):
    """How the grant left the budget."""
    DIGITAL_WALLET = "digital_wallet"
    BANK_TRANSFER = "bank_transfer"
    CASH = "cash"
    CHECK = "check"
    MANUAL = "manual"


class WebhookOutcome(str, enum.Enum):
    """What the reconciler did with an inbound delivery."""
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"  # Event type we do not route
    UNMATCHED = "unmatched"  # No PaymentTransaction for the identifiers
    FLAGGED = "flagged"  # Needs an operator
