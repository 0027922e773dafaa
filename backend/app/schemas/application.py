"""
Application, Payment and Disbursement Schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional
from backend.app.models.ledger_enums import (
    ApplicationStatus, PaymentTransactionStatus, DisbursementMethod
)


class ApplicationCreate(BaseModel):
    """
    Register an approved funding request.

    school_id ties the request to that school's budget (academic_year picks
    the year, default the most recent); omit it for the global pool.
    """
    application_number: str = Field(..., min_length=1, max_length=50)
    amount: int = Field(..., gt=0)
    school_id: Optional[int] = None
    academic_year: Optional[str] = None
    student_id: Optional[int] = None
    student_name: Optional[str] = Field(None, max_length=255)
    student_email: Optional[str] = Field(None, max_length=255)
    student_phone: Optional[str] = Field(None, max_length=50)
    wallet_account_number: Optional[str] = Field(None, max_length=100)
    preferred_wallet: Optional[str] = Field(None, max_length=50)
    notes: Optional[str] = None


class ApplicationResponse(BaseModel):
    id: int
    application_number: str
    budget_id: Optional[int]
    school_id: Optional[int]
    student_id: Optional[int]
    student_name: Optional[str]
    amount: int
    reserved_amount: int
    status: ApplicationStatus
    payment_transaction_id: Optional[int]
    disbursement_id: Optional[int]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PaymentTransactionResponse(BaseModel):
    id: int
    application_id: int
    transaction_reference: str
    provider_checkout_id: str
    provider_payment_id: Optional[str]
    provider_reference_number: Optional[str]
    status: PaymentTransactionStatus
    amount: int
    checkout_url: Optional[str]
    failure_reason: Optional[str]
    initiated_at: datetime
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class CheckoutResponse(BaseModel):
    application: ApplicationResponse
    payment_transaction: PaymentTransactionResponse


class PaymentVerificationResponse(BaseModel):
    application: ApplicationResponse
    payment_status: str
    amount: Optional[int]
    provider_payment_id: Optional[str]


class DisbursementResponse(BaseModel):
    id: int
    application_id: int
    budget_id: Optional[int]
    payment_transaction_id: Optional[int]
    amount: int
    method: DisbursementMethod
    provider_name: Optional[str]
    provider_reference: Optional[str]
    receipt_path: Optional[str]
    notes: Optional[str]
    disbursed_by: Optional[str]
    disbursed_at: datetime

    class Config:
        from_attributes = True


class ManualDisbursementResponse(BaseModel):
    disbursement: DisbursementResponse
    already_disbursed: bool = False
