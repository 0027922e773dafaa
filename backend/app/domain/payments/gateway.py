"""
Payment Gateway Adapter.

Thin client over the PayMongo checkout API. Normalizes its response shapes
into CheckoutSession / PaymentStatus and maps transport and HTTP failures onto
GatewayUnavailableError (retryable) and GatewayRejectedError (not retryable).
Calls are retried with backoff and guarded by a circuit breaker.

Never call the gateway while holding a ledger lock.
"""

import base64
import logging
import re
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Optional

import httpx

from backend.app.core.config import settings
from backend.app.core.exceptions import GatewayRejectedError, GatewayUnavailableError
from backend.app.core.reliability import CircuitBreaker, CircuitOpenError, retry_with_backoff
from backend.app.domain.payments.webhook_payload import parse_webhook_payment
from backend.app.models.application import Application

logger = logging.getLogger(__name__)


@dataclass
class CheckoutSession:
    id: str
    url: Optional[str]
    reference_number: Optional[str]


@dataclass
class PaymentStatus:
    status: str  # paid | pending | failed
    amount: Optional[int] = None
    provider_payment_id: Optional[str] = None
    reference_number: Optional[str] = None
    failure_reason: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.status == "paid"


def format_phone_number(phone: Optional[str]) -> Optional[str]:
    """
    Local Philippine mobile number as the checkout page expects it.

    Non-digits, a leading 63 country code and a leading 0 are stripped;
    the checkout page adds +63 itself.
    """
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    if digits.startswith("63"):
        digits = digits[2:]
    if digits.startswith("0"):
        digits = digits[1:]
    return digits or None


def build_billing_info(application: Application) -> Dict[str, str]:
    """Checkout pre-fill from the application's student details. Empty fields are omitted."""
    billing = {}
    if application.student_name and application.student_name.strip():
        billing["name"] = application.student_name.strip()
    if application.student_email and "@" in application.student_email:
        billing["email"] = application.student_email.strip()
    phone = format_phone_number(application.student_phone)
    if phone:
        billing["phone"] = phone
    return billing


def payment_method_types(preferred_wallet: Optional[str]) -> List[str]:
    """Card is always offered; the student's wallet is added when the provider supports it."""
    methods = ["card"]
    wallet = (preferred_wallet or "").strip().lower()
    if wallet == "gcash":
        methods.append("gcash")
    elif wallet in ("paymaya", "maya"):
        methods.append("paymaya")
    elif wallet in ("grab_pay", "grabpay"):
        methods.append("grab_pay")
    else:
        methods.append("gcash")
    return methods


def _resource(body: Any) -> Dict[str, Any]:
    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, dict) or not data.get("id"):
        raise GatewayRejectedError(
            "Unexpected payment gateway response shape",
            details={"keys": sorted(body.keys()) if isinstance(body, dict) else None}
        )
    return data


class PaymentGatewayAdapter:
    """PayMongo checkout sessions over httpx."""

    provider_name = "PayMongo"

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry_attempts: Optional[int] = None,
        retry_backoff_seconds: Optional[float] = None,
        currency: Optional[str] = None,
        frontend_url: Optional[str] = None,
    ):
        self.secret_key = secret_key if secret_key is not None else (settings.paymongo_secret_key or "")
        self.base_url = (base_url or settings.paymongo_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.gateway_timeout_seconds
        self.client = client
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.gateway_circuit_failure_threshold,
            reset_timeout=settings.gateway_circuit_reset_seconds,
            failure_exceptions=(GatewayUnavailableError,)
        )
        self.retry_attempts = retry_attempts if retry_attempts is not None else settings.gateway_retry_attempts
        self.retry_backoff_seconds = (
            retry_backoff_seconds if retry_backoff_seconds is not None
            else settings.gateway_retry_backoff_seconds
        )
        self.currency = currency or settings.payment_currency
        self.frontend_url = (frontend_url or settings.frontend_url).rstrip("/")

    parse_webhook = staticmethod(parse_webhook_payment)

    async def create_checkout(
        self,
        application: Application,
        billing_info: Optional[Dict[str, str]] = None,
    ) -> CheckoutSession:
        """
        Create a checkout session for the application's amount (minor units).

        Raises:
            GatewayUnavailableError: timeout, transport error, 5xx or open circuit
            GatewayRejectedError: provider refused the request
        """
        billing = billing_info if billing_info is not None else build_billing_info(application)
        attributes = {
            "amount": application.amount,
            "currency": self.currency,
            "description": f"Scholarship Grant - Application #{application.application_number}",
            "reference_number": application.application_number,
            "line_items": [{
                "name": f"Scholarship Grant - {application.application_number}",
                "quantity": 1,
                "amount": application.amount,
                "currency": self.currency,
            }],
            "payment_method_types": payment_method_types(application.preferred_wallet),
            "success_url": f"{self.frontend_url}/admin/school-aid/payment/success?application_id={application.id}",
            "cancel_url": f"{self.frontend_url}/admin/school-aid/payment/cancel?application_id={application.id}",
            "metadata": {
                "application_id": str(application.id),
                "application_number": application.application_number,
                "student_id": str(application.student_id) if application.student_id is not None else None,
            },
        }
        if billing:
            attributes["billing"] = billing
        else:
            logger.warning(
                "No billing information available for checkout pre-fill",
                extra={"application_id": application.id}
            )

        body = await self._call("POST", "/checkout_sessions", json={"data": {"attributes": attributes}})
        resource = _resource(body)
        resource_attributes = resource.get("attributes") or {}

        session = CheckoutSession(
            id=resource["id"],
            url=resource_attributes.get("checkout_url"),
            reference_number=resource_attributes.get("reference_number") or application.application_number,
        )
        logger.info(
            "Checkout session created",
            extra={"application_id": application.id, "checkout_id": session.id, "amount": application.amount}
        )
        return session

    async def verify_checkout(self, session_id: str) -> PaymentStatus:
        """Current payment status of a checkout session."""
        body = await self._call("GET", f"/checkout_sessions/{session_id}")
        resource = _resource(body)
        attributes = resource.get("attributes") or {}

        payments = [p for p in (attributes.get("payments") or []) if isinstance(p, dict)]
        for payment in payments:
            payment_attributes = payment.get("attributes") or {}
            if payment_attributes.get("status") == "paid":
                amount = payment_attributes.get("amount")
                return PaymentStatus(
                    status="paid",
                    amount=amount if isinstance(amount, int) and not isinstance(amount, bool) else None,
                    provider_payment_id=payment.get("id"),
                    reference_number=attributes.get("reference_number"),
                )

        failed = [p for p in payments if (p.get("attributes") or {}).get("status") == "failed"]
        if attributes.get("status") == "expired" or failed:
            reason = None
            if failed:
                failed_attributes = failed[-1].get("attributes") or {}
                reason = failed_attributes.get("failed_message") or failed_attributes.get("failure_reason")
            return PaymentStatus(
                status="failed",
                reference_number=attributes.get("reference_number"),
                failure_reason=reason or f"Checkout session {attributes.get('status') or 'failed'}",
            )

        return PaymentStatus(status="pending", reference_number=attributes.get("reference_number"))

    async def _call(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        return await retry_with_backoff(
            self._guarded_request, method, path,
            attempts=self.retry_attempts,
            backoff_seconds=self.retry_backoff_seconds,
            retry_on=(GatewayUnavailableError,),
            **kwargs
        )

    async def _guarded_request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            return await self.circuit_breaker.call(self._request, method, path, **kwargs)
        except CircuitOpenError:
            raise GatewayUnavailableError(
                "Payment gateway circuit is open",
                details={"path": path}
            )

    @asynccontextmanager
    async def _http(self):
        if self.client is not None:
            yield self.client
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    def _headers(self) -> Dict[str, str]:
        token = base64.b64encode(f"{self.secret_key}:".encode("utf-8")).decode("ascii")
        return {
            "Authorization": f"Basic {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with self._http() as client:
                response = await client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException:
            logger.warning("Payment gateway timed out", extra={"method": method, "path": path})
            raise GatewayUnavailableError("Payment gateway timed out", details={"path": path})
        except httpx.TransportError as e:
            logger.warning("Payment gateway unreachable", extra={"method": method, "path": path, "error": str(e)})
            raise GatewayUnavailableError("Payment gateway unreachable", details={"path": path})

        if response.status_code >= 500:
            raise GatewayUnavailableError(
                f"Payment gateway error {response.status_code}",
                details={"path": path, "status_code": response.status_code}
            )

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            detail = "Unknown error"
            errors = body.get("errors") if isinstance(body, dict) else None
            if isinstance(errors, list) and errors and isinstance(errors[0], dict):
                detail = errors[0].get("detail") or detail
            logger.error(
                "Payment gateway rejected request",
                extra={"method": method, "path": path, "status_code": response.status_code, "detail": detail}
            )
            raise GatewayRejectedError(
                f"Payment gateway rejected request: {detail}",
                details={"path": path, "status_code": response.status_code}
            )

        if not isinstance(body, dict):
            raise GatewayUnavailableError("Payment gateway returned a non-JSON response", details={"path": path})
        return body


class MockPaymentGateway:
    """In-process stand-in for local development; every checkout verifies as paid."""

    provider_name = "PayMongo (mock)"

    def __init__(self, frontend_url: Optional[str] = None):
        self.frontend_url = (frontend_url or settings.frontend_url).rstrip("/")
        self.sessions: Dict[str, int] = {}

    parse_webhook = staticmethod(parse_webhook_payment)

    async def create_checkout(
        self,
        application: Application,
        billing_info: Optional[Dict[str, str]] = None,
    ) -> CheckoutSession:
        session_id = f"cs_mock_{uuid.uuid4().hex[:24]}"
        self.sessions[session_id] = application.amount
        return CheckoutSession(
            id=session_id,
            url=f"{self.frontend_url}/mock-checkout/{session_id}",
            reference_number=f"MOCK-{application.application_number}",
        )

    async def verify_checkout(self, session_id: str) -> PaymentStatus:
        return PaymentStatus(
            status="paid",
            amount=self.sessions.get(session_id),
            provider_payment_id=f"pay_mock_{session_id[-12:]}",
        )


@lru_cache()
def get_payment_gateway():
    """FastAPI dependency: the configured gateway (one instance per process)."""
    if settings.payment_mock_enabled:
        logger.info("Using mock payment gateway")
        return MockPaymentGateway()
    return PaymentGatewayAdapter()
