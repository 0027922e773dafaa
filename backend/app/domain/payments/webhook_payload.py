"""
PayMongo webhook payload handling.

The provider nests the payment resource under different key paths depending
on the event type. The parser tries a fixed list of shapes in order and
fails closed instead of guessing.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from backend.app.core.exceptions import UnparsablePayloadError

logger = logging.getLogger(__name__)

PAID_EVENTS = ("payment.paid", "checkout_session.payment.paid")
FAILED_EVENTS = ("payment.failed", "checkout_session.payment.failed")

# Candidate locations of the payment resource, most specific first.
# The flag marks shallow paths that may also hold the event envelope.
PAYMENT_SHAPES: Tuple[Tuple[Tuple[str, ...], bool], ...] = (
    (("data", "attributes", "data"), False),
    (("data", "data", "attributes", "data"), False),
    (("data", "data"), True),
    (("data", "attributes"), True),
    (("data",), True),
)

RESOURCE_TYPES = ("payment", "checkout_session")
RESOURCE_ID_PREFIXES = ("pay_", "cs_")


@dataclass
class NormalizedPayment:
    """Identifiers and amount pulled out of one webhook payload."""
    payment_id: Optional[str]
    checkout_id: Optional[str]
    amount: Optional[int]
    reference_number: Optional[str]
    status: Optional[str] = None
    failure_reason: Optional[str] = None


def _dig(obj: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def extract_event_type(payload: Any) -> Optional[str]:
    """Event type from data.attributes.type, data.type or type, in that order."""
    for path in (("data", "attributes", "type"), ("data", "type"), ("type",)):
        value = _dig(payload, *path)
        if isinstance(value, str) and value:
            return value
    return None


def is_livemode(payload: Any) -> bool:
    return _dig(payload, "data", "attributes", "livemode") is True


def _is_payment_resource(candidate: Any, shallow: bool) -> bool:
    if not isinstance(candidate, dict):
        return False
    resource_id = candidate.get("id")
    if not isinstance(resource_id, str) or not resource_id:
        return False
    resource_type = candidate.get("type")
    if resource_type == "event" or resource_id.startswith("evt_"):
        return False
    if shallow:
        return resource_type in RESOURCE_TYPES or resource_id.startswith(RESOURCE_ID_PREFIXES)
    return True


def parse_webhook_payment(payload: Any) -> NormalizedPayment:
    """
    Find the payment resource in a webhook payload and normalize it.

    A candidate is accepted only if it is a payment or checkout_session
    object with an `id`; the event envelope itself is never taken for one. A
    checkout_session resource yields the checkout id directly and the payment
    from its first entry in `payments`.

    Raises:
        UnparsablePayloadError: no known shape matched, or the amount is not
            integer minor units
    """
    if not isinstance(payload, dict):
        raise UnparsablePayloadError("Webhook payload is not a JSON object")

    resource = None
    matched_path = None
    for path, shallow in PAYMENT_SHAPES:
        candidate = _dig(payload, *path)
        if _is_payment_resource(candidate, shallow):
            resource = candidate
            matched_path = path
            break

    if resource is None:
        raise UnparsablePayloadError(
            "No payment resource found in webhook payload",
            details={"top_level_keys": sorted(payload.keys())}
        )

    attributes = _as_dict(resource.get("attributes"))

    if resource.get("type") == "checkout_session" or resource["id"].startswith("cs_"):
        checkout_id = resource["id"]
        payments = attributes.get("payments") or []
        payment = payments[0] if isinstance(payments, list) and payments and isinstance(payments[0], dict) else {}
        payment_id = payment.get("id") if isinstance(payment.get("id"), str) else None
        payment_attributes = _as_dict(payment.get("attributes"))
        reference_number = (
            attributes.get("reference_number")
            or payment_attributes.get("external_reference_number")
        )
    else:
        payment_id = resource["id"]
        payment_attributes = attributes
        checkout_id = payment_attributes.get("checkout_session_id")
        reference_number = (
            payment_attributes.get("reference_number")
            or payment_attributes.get("external_reference_number")
        )

    amount = payment_attributes.get("amount")
    if amount is not None and (isinstance(amount, bool) or not isinstance(amount, int)):
        raise UnparsablePayloadError(
            "Payment amount is not an integer number of minor units",
            details={"amount": repr(amount), "payment_id": payment_id}
        )

    if not checkout_id and not payment_id:
        raise UnparsablePayloadError(
            "Webhook payload carries neither a checkout id nor a payment id",
            details={"matched_path": ".".join(matched_path)}
        )

    logger.debug(
        "Webhook payment parsed",
        extra={"matched_path": ".".join(matched_path), "payment_id": payment_id, "checkout_id": checkout_id}
    )

    return NormalizedPayment(
        payment_id=payment_id,
        checkout_id=checkout_id if isinstance(checkout_id, str) else None,
        amount=amount,
        reference_number=reference_number if isinstance(reference_number, str) else None,
        status=payment_attributes.get("status"),
        failure_reason=payment_attributes.get("failed_message") or payment_attributes.get("failure_reason"),
    )


def _parse_signature_header(header: str) -> Dict[str, str]:
    parts = {}
    for part in header.split(","):
        if "=" in part:
            key, value = part.split("=", 1)
            parts[key.strip()] = value.strip()
    return parts


def verify_webhook_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: str,
    livemode: bool = False,
) -> bool:
    """
    Verify a `Paymongo-Signature: t=<ts>,te=<test sig>,li=<live sig>` header.

    The signature is HMAC-SHA256 of "<t>.<raw body>" keyed by the webhook
    secret; `li` is checked for live events and `te` otherwise.
    """
    if not signature_header:
        return False

    parts = _parse_signature_header(signature_header)
    timestamp = parts.get("t")
    signature = parts.get("li") if livemode else parts.get("te")
    if not timestamp or not signature:
        return False

    expected = hmac.new(
        secret.encode("utf-8"),
        timestamp.encode("utf-8") + b"." + raw_body,
        hashlib.sha256
    ).hexdigest()

    # Constant-time comparison
    return hmac.compare_digest(expected.lower(), signature.lower())
