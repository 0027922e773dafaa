"""
Disbursement History API Endpoints.

Read-only search over completed disbursements, manual and gateway alike.
Partner schools only see disbursements for their own applications.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import ValidationError
from backend.app.core.guards import require_role, enforce_school_access
from backend.app.db.session import get_db
from backend.app.models.application import Application
from backend.app.models.disbursement import Disbursement
from backend.app.models.enums import UserRole
from backend.app.models.ledger_enums import DisbursementMethod
from backend.app.schemas.application import DisbursementResponse

router = APIRouter(prefix="/disbursements", tags=["Disbursements"])

ANY_ROLE = [UserRole.ADMIN, UserRole.SYSTEM, UserRole.PARTNER_SCHOOL]


def _start_of(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


@router.get("", response_model=List[DisbursementResponse])
async def list_disbursements(
    application_id: Optional[int] = Query(None),
    student_id: Optional[int] = Query(None),
    school_id: Optional[int] = Query(None),
    method: Optional[DisbursementMethod] = Query(None),
    reference: Optional[str] = Query(None, description="Provider reference, exact match"),
    date_from: Optional[date] = Query(None, description="Disbursed on or after (UTC)"),
    date_to: Optional[date] = Query(None, description="Disbursed on or before (UTC)"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(require_role(ANY_ROLE)),
    db: AsyncSession = Depends(get_db)
):
    """Disbursement history, most recent first."""
    if date_from and date_to and date_from > date_to:
        raise ValidationError(errors={"date_to": ["date_to must not be before date_from"]})

    stmt = (
        select(Disbursement)
        .join(Application, Application.id == Disbursement.application_id)
        .order_by(desc(Disbursement.disbursed_at), desc(Disbursement.id))
    )
    if current_user.get("role") == UserRole.PARTNER_SCHOOL.value:
        if school_id is not None:
            enforce_school_access(school_id, current_user)
        school_id = current_user.get("school_id")
        if school_id is None:
            return []
    if school_id is not None:
        stmt = stmt.where(Application.school_id == school_id)
    if application_id is not None:
        stmt = stmt.where(Disbursement.application_id == application_id)
    if student_id is not None:
        stmt = stmt.where(Application.student_id == student_id)
    if method is not None:
        stmt = stmt.where(Disbursement.method == method)
    if reference:
        stmt = stmt.where(Disbursement.provider_reference == reference.strip())
    if date_from:
        stmt = stmt.where(Disbursement.disbursed_at >= _start_of(date_from))
    if date_to:
        stmt = stmt.where(Disbursement.disbursed_at < _start_of(date_to + timedelta(days=1)))

    result = await db.execute(stmt.offset(offset).limit(limit))
    return result.scalars().all()
