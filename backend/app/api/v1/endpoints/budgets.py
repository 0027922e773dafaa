"""
Budget API Endpoints.

Allocation and snapshots for scholarship staff; partner schools read their
own budget and record self-service withdrawals.
"""

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Header, Path, Query, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import ResourceNotFoundError, ValidationError
from backend.app.core.guards import require_role, enforce_school_access, actor_name
from backend.app.db.session import get_db
from backend.app.db.unit_of_work import UnitOfWork, run_atomic
from backend.app.domain.ledger.ledger_store import ledger_store
from backend.app.domain.ledger.withdrawals import WithdrawalRequest, withdrawal_service
from backend.app.domain.payments.receipts import read_upload, receipt_store, validate_upload
from backend.app.models.budget import Budget
from backend.app.models.enums import UserRole
from backend.app.schemas.budget import (
    BudgetUpsertRequest, BudgetResponse, BudgetCheckResponse, LedgerTransactionResponse,
    BudgetWithdrawalResponse, WithdrawalRecordedResponse
)
from backend.app.services.audit import log_event, AuditAction

router = APIRouter(prefix="/budgets", tags=["Budgets"])

STAFF = [UserRole.ADMIN, UserRole.SYSTEM]
ANY_ROLE = [UserRole.ADMIN, UserRole.SYSTEM, UserRole.PARTNER_SCHOOL]


async def _budget_for_school(db: AsyncSession, school_id: int, academic_year: Optional[str]) -> Budget:
    budget = await ledger_store.find_budget(db, school_id, academic_year)
    if budget is None:
        raise ResourceNotFoundError("Budget", school_id)
    return budget


@router.get("", response_model=List[BudgetResponse])
async def list_budgets(
    academic_year: Optional[str] = Query(None),
    current_user: dict = Depends(require_role(ANY_ROLE)),
    db: AsyncSession = Depends(get_db)
):
    """List budgets. Partner schools only see their own."""
    stmt = select(Budget).order_by(desc(Budget.academic_year), Budget.school_id)
    if academic_year:
        stmt = stmt.where(Budget.academic_year == academic_year)
    if current_user.get("role") == UserRole.PARTNER_SCHOOL.value:
        stmt = stmt.where(Budget.school_id == current_user.get("school_id"))
    result = await db.execute(stmt)
    return result.scalars().all()


@router.post("/{school_id}", response_model=BudgetResponse)
async def upsert_budget(
    payload: BudgetUpsertRequest,
    school_id: int = Path(..., description="Partner school ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """
    Allocate the school's budget for an academic year, or move an existing
    allocation to the new total.

    A reduction below disbursed + reserved is rejected with 400.
    """
    actor = actor_name(current_user)

    async def work(uow: UnitOfWork) -> Budget:
        existing = await ledger_store.find_budget(uow.session, school_id, payload.academic_year)

        if existing is None:
            if payload.allocated_amount <= 0:
                raise ValidationError(errors={"allocated_amount": ["Initial allocation must be positive"]})
            result = await ledger_store.allocate(
                uow, school_id, payload.academic_year, payload.allocated_amount,
                school_name=payload.school_name,
                expiry_date=payload.expiry_date,
                notes=payload.notes,
                allocated_by=actor,
            )
            action, metadata = AuditAction.BUDGET_ALLOCATED, {"allocated_amount": payload.allocated_amount}
            budget = result.budget
        else:
            budget = await ledger_store.lock_budget(uow, existing.id)
            previous = budget.allocated_amount
            result = await ledger_store.adjust(
                uow, budget.id, payload.allocated_amount,
                notes=payload.notes,
                performed_by=actor,
            )
            if result is not None:
                budget = result.budget
            if payload.school_name is not None:
                budget.school_name = payload.school_name
            if payload.expiry_date is not None:
                budget.expiry_date = payload.expiry_date
            if payload.notes is not None:
                budget.notes = payload.notes
            action = AuditAction.BUDGET_ADJUSTED
            metadata = {"previous_allocated": previous, "allocated_amount": payload.allocated_amount}

        await uow.session.flush()
        await log_event(
            uow.session,
            action=action,
            actor_id=current_user.get("user_id"),
            actor_username=actor,
            target_type="budget",
            target_id=budget.id,
            metadata=dict(metadata, school_id=school_id, academic_year=payload.academic_year),
        )
        return budget

    budget = await run_atomic(db, work)
    await db.refresh(budget)
    return budget


@router.get("/{school_id}", response_model=BudgetResponse)
async def get_budget(
    school_id: int = Path(..., description="Partner school ID"),
    academic_year: Optional[str] = Query(None, description="Defaults to the most recent year"),
    current_user: dict = Depends(require_role(ANY_ROLE)),
    db: AsyncSession = Depends(get_db)
):
    """Current budget snapshot (allocated / disbursed / reserved / available / status)."""
    enforce_school_access(school_id, current_user)
    return await _budget_for_school(db, school_id, academic_year)


@router.get("/{school_id}/check", response_model=BudgetCheckResponse)
async def check_budget(
    school_id: int = Path(..., description="Partner school ID"),
    amount: int = Query(0, ge=0, description="Requested amount in minor units"),
    academic_year: Optional[str] = Query(None),
    current_user: dict = Depends(require_role(ANY_ROLE)),
    db: AsyncSession = Depends(get_db)
):
    """
    Whether the budget can cover `amount`, and the shortfall if not.

    Advisory only: nothing is reserved.
    """
    enforce_school_access(school_id, current_user)
    budget = await _budget_for_school(db, school_id, academic_year)
    check = ledger_store.check_funds(budget, amount)
    snapshot = check.snapshot
    return BudgetCheckResponse(
        budget_id=snapshot.budget_id,
        school_id=snapshot.school_id,
        academic_year=snapshot.academic_year,
        allocated_amount=snapshot.allocated_amount,
        disbursed_amount=snapshot.disbursed_amount,
        reserved_amount=snapshot.reserved_amount,
        available_amount=snapshot.available_amount,
        requested_amount=check.requested_amount,
        has_sufficient_funds=check.has_sufficient_funds,
        shortfall=check.shortfall,
        status=snapshot.status,
        expiry_date=snapshot.expiry_date,
    )


@router.get("/{school_id}/transactions", response_model=List[LedgerTransactionResponse])
async def list_budget_transactions(
    school_id: int = Path(..., description="Partner school ID"),
    academic_year: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(require_role(ANY_ROLE)),
    db: AsyncSession = Depends(get_db)
):
    """Ledger transaction log for the budget, oldest first."""
    enforce_school_access(school_id, current_user)
    budget = await _budget_for_school(db, school_id, academic_year)
    return await ledger_store.list_transactions(db, budget.id, limit=limit, offset=offset)


@router.post("/{school_id}/withdrawals", response_model=WithdrawalRecordedResponse, status_code=201)
async def record_withdrawal(
    school_id: int = Path(..., description="Partner school ID"),
    amount: Optional[int] = Form(None),
    purpose: Optional[str] = Form(None),
    withdrawal_date: Optional[date] = Form(None),
    notes: Optional[str] = Form(None),
    proof_document: Optional[UploadFile] = File(None),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    current_user: dict = Depends(require_role([UserRole.PARTNER_SCHOOL, UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """
    Record a self-service withdrawal: immediate deduction, no reservation.

    Rejects with 400 if the amount exceeds the available balance.
    """
    enforce_school_access(school_id, current_user)

    errors = {}
    if amount is None or amount < 1:
        errors["amount"] = ["Amount must be a positive integer (minor units)"]
    if not purpose or not purpose.strip():
        errors["purpose"] = ["Purpose is required"]
    elif len(purpose) > 255:
        errors["purpose"] = ["Purpose must be at most 255 characters"]
    if withdrawal_date is None:
        errors["withdrawal_date"] = ["Withdrawal date is required"]
    content, content_type = await read_upload(proof_document)
    errors.update(validate_upload(content, content_type, "proof_document"))
    if errors:
        raise ValidationError(errors=errors)

    result = await withdrawal_service.record(
        db, school_id,
        WithdrawalRequest(
            amount=amount,
            purpose=purpose.strip(),
            withdrawal_date=withdrawal_date,
            proof_content=content,
            proof_content_type=content_type,
            notes=notes,
            idempotency_key=idempotency_key,
        ),
        actor=current_user,
    )
    return WithdrawalRecordedResponse(
        withdrawal=BudgetWithdrawalResponse.model_validate(result.withdrawal),
        budget=BudgetResponse.model_validate(result.budget),
        replayed=result.replayed,
    )


@router.get("/{school_id}/withdrawals", response_model=List[BudgetWithdrawalResponse])
async def list_withdrawals(
    school_id: int = Path(..., description="Partner school ID"),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(require_role(ANY_ROLE)),
    db: AsyncSession = Depends(get_db)
):
    """Withdrawal history for the school, most recent first."""
    enforce_school_access(school_id, current_user)
    return await withdrawal_service.list_for_school(db, school_id, limit=limit)


@router.get("/{school_id}/withdrawals/{withdrawal_id}", response_model=BudgetWithdrawalResponse)
async def get_withdrawal(
    school_id: int = Path(..., description="Partner school ID"),
    withdrawal_id: int = Path(..., description="Withdrawal ID"),
    current_user: dict = Depends(require_role(ANY_ROLE)),
    db: AsyncSession = Depends(get_db)
):
    enforce_school_access(school_id, current_user)
    return await withdrawal_service.get_for_school(db, school_id, withdrawal_id)


@router.get("/{school_id}/withdrawals/{withdrawal_id}/proof")
async def download_withdrawal_proof(
    school_id: int = Path(..., description="Partner school ID"),
    withdrawal_id: int = Path(..., description="Withdrawal ID"),
    current_user: dict = Depends(require_role(ANY_ROLE)),
    db: AsyncSession = Depends(get_db)
):
    """Download the proof document stored with the withdrawal."""
    enforce_school_access(school_id, current_user)
    withdrawal = await withdrawal_service.get_for_school(db, school_id, withdrawal_id)
    path = receipt_store.stored_file(withdrawal.proof_document_path, kind="proof")
    return FileResponse(path, filename=path.name)
