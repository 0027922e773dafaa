"""
Budget and Ledger Schemas.

All amounts are integer minor units (centavos).
"""

from pydantic import BaseModel, Field
from datetime import date, datetime
from typing import Optional
from backend.app.models.ledger_enums import BudgetStatus, LedgerTransactionType


class BudgetUpsertRequest(BaseModel):
    """Allocate a school/year budget, or move an existing allocation to a new total."""
    academic_year: str = Field(..., min_length=4, max_length=20)
    allocated_amount: int = Field(..., ge=0)
    school_name: Optional[str] = Field(None, max_length=255)
    expiry_date: Optional[date] = None
    notes: Optional[str] = None


class BudgetResponse(BaseModel):
    """Current budget snapshot."""
    id: int
    school_id: int
    school_name: Optional[str]
    academic_year: str
    allocated_amount: int
    disbursed_amount: int
    reserved_amount: int
    available_amount: int
    status: BudgetStatus
    allocation_date: Optional[date]
    expiry_date: Optional[date]
    notes: Optional[str]
    allocated_by: Optional[str]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class LedgerTransactionResponse(BaseModel):
    id: int
    budget_id: int
    transaction_type: LedgerTransactionType
    amount: int
    balance_before: int
    balance_after: int
    reference_type: Optional[str]
    reference_id: Optional[str]
    idempotency_key: Optional[str]
    notes: Optional[str]
    performed_by: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class BudgetWithdrawalResponse(BaseModel):
    id: int
    budget_id: int
    school_id: int
    ledger_transaction_id: int
    amount: int
    purpose: str
    withdrawal_date: date
    notes: Optional[str]
    proof_document_path: str
    recorded_by: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class WithdrawalRecordedResponse(BaseModel):
    """Withdrawal plus the budget it was deducted from."""
    withdrawal: BudgetWithdrawalResponse
    budget: BudgetResponse
    replayed: bool = False


class ExpireBudgetsResponse(BaseModel):
    expired_budget_ids: list[int]


class BudgetCheckResponse(BaseModel):
    """Whether the school's budget can cover a requested amount."""
    budget_id: int
    school_id: int
    academic_year: str
    allocated_amount: int
    disbursed_amount: int
    reserved_amount: int
    available_amount: int
    requested_amount: int
    has_sufficient_funds: bool
    shortfall: int
    status: BudgetStatus
    expiry_date: Optional[date]
