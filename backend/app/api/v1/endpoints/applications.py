"""
Application Funding API Endpoints.

Drives the disbursement workflow: reserve funds, start a gateway checkout,
verify or cancel it, or record a manual disbursement.
"""

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Path, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import ResourceNotFoundError, ValidationError
from backend.app.core.guards import require_role, enforce_school_access
from backend.app.db.session import get_db
from backend.app.db.unit_of_work import UnitOfWork, run_atomic
from backend.app.domain.disbursement.workflow import ManualDisbursementInput, disbursement_workflow
from backend.app.domain.ledger.ledger_store import ledger_store
from backend.app.domain.payments.gateway import get_payment_gateway
from backend.app.domain.payments.receipts import read_upload, receipt_store, validate_upload
from backend.app.models.application import Application
from backend.app.models.disbursement import Disbursement
from backend.app.models.enums import UserRole
from backend.app.models.ledger_enums import ApplicationStatus, DisbursementMethod
from backend.app.schemas.application import (
    ApplicationCreate, ApplicationResponse, PaymentTransactionResponse,
    CheckoutResponse, PaymentVerificationResponse,
    DisbursementResponse, ManualDisbursementResponse
)

router = APIRouter(prefix="/applications", tags=["Applications"])

STAFF = [UserRole.ADMIN, UserRole.SYSTEM]
ANY_ROLE = [UserRole.ADMIN, UserRole.SYSTEM, UserRole.PARTNER_SCHOOL]


async def _get_application(db: AsyncSession, application_id: int, current_user: dict) -> Application:
    application = await db.get(Application, application_id, populate_existing=True)
    if application is None:
        raise ResourceNotFoundError("Application", application_id)
    if application.school_id is not None:
        enforce_school_access(application.school_id, current_user)
    elif current_user.get("role") == UserRole.PARTNER_SCHOOL.value:
        raise ResourceNotFoundError("Application", application_id)
    return application


async def _get_disbursement(db: AsyncSession, application_id: int, current_user: dict) -> Disbursement:
    await _get_application(db, application_id, current_user)
    result = await db.execute(select(Disbursement).where(Disbursement.application_id == application_id))
    disbursement = result.scalar_one_or_none()
    if disbursement is None:
        raise ResourceNotFoundError("Disbursement")
    return disbursement


@router.post("", response_model=ApplicationResponse, status_code=201)
async def create_application(
    payload: ApplicationCreate,
    current_user: dict = Depends(require_role(STAFF)),
    db: AsyncSession = Depends(get_db)
):
    """Register an approved funding request against a school budget or the global pool."""
    budget_id = None
    if payload.school_id is not None:
        budget = await ledger_store.find_budget(db, payload.school_id, payload.academic_year)
        if budget is None:
            raise ResourceNotFoundError("Budget", payload.school_id)
        budget_id = budget.id

    async def work(uow: UnitOfWork) -> Application:
        application = Application(
            application_number=payload.application_number,
            budget_id=budget_id,
            school_id=payload.school_id,
            student_id=payload.student_id,
            student_name=payload.student_name,
            student_email=payload.student_email,
            student_phone=payload.student_phone,
            wallet_account_number=payload.wallet_account_number,
            preferred_wallet=payload.preferred_wallet,
            amount=payload.amount,
            reserved_amount=0,
            status=ApplicationStatus.APPROVED,
            notes=payload.notes,
        )
        uow.session.add(application)
        try:
            await uow.session.flush()
        except IntegrityError:
            raise ValidationError(
                message="Application number already exists",
                errors={"application_number": [payload.application_number]}
            )
        return application

    return await run_atomic(db, work)


@router.get("/{application_id}", response_model=ApplicationResponse)
async def get_application(
    application_id: int = Path(..., description="Application ID"),
    current_user: dict = Depends(require_role(ANY_ROLE)),
    db: AsyncSession = Depends(get_db)
):
    return await _get_application(db, application_id, current_user)


@router.post("/{application_id}/reserve", response_model=ApplicationResponse)
async def reserve_funds(
    application_id: int = Path(..., description="Application ID"),
    current_user: dict = Depends(require_role(STAFF)),
    db: AsyncSession = Depends(get_db)
):
    """approved -> pending_disbursement. 400 if the budget cannot cover the amount."""
    return await disbursement_workflow.reserve(db, application_id, actor=current_user)


@router.post("/{application_id}/checkout", response_model=CheckoutResponse)
async def start_checkout(
    application_id: int = Path(..., description="Application ID"),
    current_user: dict = Depends(require_role(STAFF)),
    db: AsyncSession = Depends(get_db),
    gateway=Depends(get_payment_gateway),
):
    """
    Create a payment gateway checkout for the application.

    503 if the gateway is unavailable (status unchanged, retry later);
    502 if it rejected the request (status payment_failed).
    """
    application, transaction = await disbursement_workflow.start_payment(
        db, gateway, application_id, actor=current_user
    )
    return CheckoutResponse(
        application=ApplicationResponse.model_validate(application),
        payment_transaction=PaymentTransactionResponse.model_validate(transaction),
    )


@router.post("/{application_id}/payment/verify", response_model=PaymentVerificationResponse)
async def verify_payment(
    application_id: int = Path(..., description="Application ID"),
    current_user: dict = Depends(require_role(STAFF)),
    db: AsyncSession = Depends(get_db),
    gateway=Depends(get_payment_gateway),
):
    """Poll the gateway and apply a paid/failed result like the webhook would."""
    application, status = await disbursement_workflow.verify_payment(db, gateway, application_id)
    return PaymentVerificationResponse(
        application=ApplicationResponse.model_validate(application),
        payment_status=status.status,
        amount=status.amount,
        provider_payment_id=status.provider_payment_id,
    )


@router.post("/{application_id}/payment/cancel", response_model=ApplicationResponse)
async def cancel_payment(
    application_id: int = Path(..., description="Application ID"),
    current_user: dict = Depends(require_role(STAFF)),
    db: AsyncSession = Depends(get_db)
):
    """Checkout abandoned: release the hold and revert to approved."""
    return await disbursement_workflow.cancel_payment(db, application_id, actor=current_user)


@router.post("/{application_id}/disburse", response_model=ManualDisbursementResponse)
async def manual_disburse(
    application_id: int = Path(..., description="Application ID"),
    method: Optional[str] = Form(None),
    provider_name: Optional[str] = Form(None, alias="providerName"),
    reference_number: Optional[str] = Form(None, alias="referenceNumber"),
    notes: Optional[str] = Form(None),
    receipt_file: Optional[UploadFile] = File(None, alias="receiptFile"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """
    Record a manual disbursement (admin-entered reference and receipt).

    422 with field errors if a field or the receipt is missing or invalid, or
    if the application is not pending_disbursement, grants_processing or
    payment_failed.
    An already disbursed application returns its existing disbursement.
    """
    errors = {}
    disbursement_method = None
    if not method or not method.strip():
        errors["method"] = ["Method is required"]
    else:
        try:
            disbursement_method = DisbursementMethod(method.strip().lower())
        except ValueError:
            errors["method"] = [f"Method must be one of: {', '.join(m.value for m in DisbursementMethod)}"]
    if not provider_name or not provider_name.strip():
        errors["providerName"] = ["Provider name is required"]
    if not reference_number or not reference_number.strip():
        errors["referenceNumber"] = ["Reference number is required"]
    content, content_type = await read_upload(receipt_file)
    errors.update(validate_upload(content, content_type, "receiptFile"))
    if errors:
        raise ValidationError(errors=errors)

    disbursement, already = await disbursement_workflow.manual_disburse(
        db, application_id,
        ManualDisbursementInput(
            method=disbursement_method,
            provider_name=provider_name.strip(),
            reference_number=reference_number.strip(),
            receipt_content=content,
            receipt_content_type=content_type,
            notes=notes,
        ),
        actor=current_user,
    )
    return ManualDisbursementResponse(
        disbursement=DisbursementResponse.model_validate(disbursement),
        already_disbursed=already,
    )


@router.get("/{application_id}/disbursement", response_model=DisbursementResponse)
async def get_disbursement(
    application_id: int = Path(..., description="Application ID"),
    current_user: dict = Depends(require_role(ANY_ROLE)),
    db: AsyncSession = Depends(get_db)
):
    return await _get_disbursement(db, application_id, current_user)


@router.get("/{application_id}/disbursement/receipt")
async def download_receipt(
    application_id: int = Path(..., description="Application ID"),
    current_user: dict = Depends(require_role(ANY_ROLE)),
    db: AsyncSession = Depends(get_db)
):
    """Download the uploaded or generated receipt for the disbursement."""
    disbursement = await _get_disbursement(db, application_id, current_user)
    path = receipt_store.stored_file(disbursement.receipt_path)
    return FileResponse(path, filename=path.name)
