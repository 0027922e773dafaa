"""
Receipt and proof-document storage.

Uploaded files (manual disbursement receipts, withdrawal proofs) are
validated and written under the configured storage directories. Webhook
disbursements get a generated plain-text receipt.
"""

import logging
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from fastapi import UploadFile
from fastapi.concurrency import run_in_threadpool

from backend.app.core.config import settings
from backend.app.core.exceptions import ResourceNotFoundError
from backend.app.models.application import Application
from backend.app.models.payment_transaction import PaymentTransaction

logger = logging.getLogger(__name__)

# Leading bytes for each accepted content type
_SIGNATURES = {
    "application/pdf": (b"%PDF",),
    "image/png": (b"\x89PNG\r\n\x1a\n",),
    "image/jpeg": (b"\xff\xd8\xff",),
}

_EXTENSIONS = {
    "application/pdf": ".pdf",
    "image/png": ".png",
    "image/jpeg": ".jpg",
}


def format_amount(amount: int, currency: str = "PHP") -> str:
    """Minor units to a display string, e.g. 3000050 -> 'PHP 30,000.50'."""
    sign = "-" if amount < 0 else ""
    major, minor = divmod(abs(amount), 100)
    return f"{sign}{currency} {major:,}.{minor:02d}"


async def read_upload(upload: Optional[UploadFile]) -> Tuple[Optional[bytes], Optional[str]]:
    """Content and declared type of a multipart file, read up to one byte past the size limit."""
    if upload is None:
        return None, None
    content = await upload.read(settings.max_upload_bytes + 1)
    return content, upload.content_type


def validate_upload(
    content: Optional[bytes],
    content_type: Optional[str],
    field: str,
) -> Dict[str, List[str]]:
    """
    Field-level errors for an uploaded document; empty when valid.

    The declared content type must be allowed and must match the file's
    leading bytes.
    """
    if not content:
        return {field: [f"{field} is required"]}

    errors = []
    if len(content) > settings.max_upload_bytes:
        errors.append(f"File exceeds the maximum size of {settings.max_upload_bytes} bytes")

    if content_type not in settings.allowed_upload_types:
        errors.append(f"File type {content_type or 'unknown'} is not allowed")
    elif not content.startswith(_SIGNATURES.get(content_type, (b"",))):
        errors.append("File content does not match its declared type")

    return {field: errors} if errors else {}


class ReceiptStore:

    def __init__(self, receipt_dir: Optional[str] = None, withdrawal_dir: Optional[str] = None):
        self.receipt_dir = Path(receipt_dir or settings.receipt_storage_dir)
        self.withdrawal_dir = Path(withdrawal_dir or settings.withdrawal_storage_dir)

    @staticmethod
    def _safe_name(value: str) -> str:
        return re.sub(r"[^A-Za-z0-9_.-]", "_", value)[:80]

    @staticmethod
    def _write_file(directory: Path, filename: str, content: bytes) -> str:
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / filename
        path.write_bytes(content)
        return str(path)

    async def _write(self, directory: Path, filename: str, content: bytes) -> str:
        # Callers hold ledger locks; keep disk IO off the event loop
        return await run_in_threadpool(self._write_file, directory, filename, content)

    async def save_receipt(self, application: Application, content: bytes, content_type: str) -> str:
        """Store an admin-uploaded receipt and return its path."""
        extension = _EXTENSIONS.get(content_type, "")
        filename = (
            f"receipt_{self._safe_name(application.application_number)}_"
            f"{uuid.uuid4().hex[:12]}{extension}"
        )
        return await self._write(self.receipt_dir, filename, content)

    async def save_withdrawal_proof(self, school_id: int, content: bytes, content_type: str) -> str:
        extension = _EXTENSIONS.get(content_type, "")
        filename = f"withdrawal_{school_id}_{uuid.uuid4().hex[:12]}{extension}"
        return await self._write(self.withdrawal_dir, filename, content)

    async def generate_receipt(
        self,
        application: Application,
        transaction: PaymentTransaction,
        amount: int,
        provider_name: str,
        payment_id: Optional[str],
        reference_number: Optional[str],
    ) -> str:
        """Write a receipt for a gateway-completed disbursement and return its path."""
        disbursed_at = datetime.now(timezone.utc)
        lines = [
            "SCHOLARSHIP GRANT DISBURSEMENT RECEIPT",
            "",
            f"Reference Number:   {reference_number or transaction.transaction_reference}",
            f"Application Number: {application.application_number}",
            f"Student:            {application.student_name or '-'}",
            f"Student ID:         {application.student_id if application.student_id is not None else '-'}",
            f"Wallet Account:     {application.wallet_account_number or '-'}",
            f"Amount:             {format_amount(amount, settings.payment_currency)}",
            f"Method:             Digital Wallet ({provider_name})",
            f"Provider Payment:   {payment_id or '-'}",
            f"Checkout Session:   {transaction.provider_checkout_id}",
            f"Disbursed At:       {disbursed_at.strftime('%Y-%m-%d %H:%M:%S %Z')}",
        ]
        filename = (
            f"receipt_{self._safe_name(reference_number or application.application_number)}_"
            f"{int(disbursed_at.timestamp())}_{uuid.uuid4().hex[:6]}.txt"
        )
        path = await self._write(self.receipt_dir, filename, ("\n".join(lines) + "\n").encode("utf-8"))
        logger.info("Receipt generated", extra={"application_id": application.id, "receipt_path": path})
        return path

    def stored_file(self, path: Optional[str], kind: str = "receipt") -> Path:
        """
        Resolve a stored receipt or proof path for download.

        Raises:
            ResourceNotFoundError: no path recorded, the file is gone, or it
                lies outside the storage directory for `kind`
        """
        directory = self.withdrawal_dir if kind == "proof" else self.receipt_dir
        if not path:
            raise ResourceNotFoundError("File")
        resolved = Path(path).resolve()
        if directory.resolve() not in resolved.parents or not resolved.is_file():
            logger.warning("Stored file not available", extra={"path": path, "kind": kind})
            raise ResourceNotFoundError("File")
        return resolved

    @staticmethod
    def discard(path: Optional[str]) -> None:
        """Delete a stored file (rollback cleanup). Missing files are ignored."""
        if path:
            Path(path).unlink(missing_ok=True)


receipt_store = ReceiptStore()
