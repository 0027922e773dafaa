"""
Payment Gateway Adapter Tests.

The PayMongo client runs against httpx.MockTransport; payload parsing and
signature checks are pure functions.
"""

import hashlib
import hmac
import json

import httpx
import pytest

from backend.app.core.exceptions import (
    GatewayRejectedError,
    GatewayUnavailableError,
    UnparsablePayloadError,
)
from backend.app.core.reliability import CircuitBreaker
from backend.app.domain.payments.gateway import (
    MockPaymentGateway,
    PaymentGatewayAdapter,
    build_billing_info,
    format_phone_number,
    payment_method_types,
)
from backend.app.domain.payments.webhook_payload import (
    extract_event_type,
    parse_webhook_payment,
    verify_webhook_signature,
)
from backend.app.models.application import Application

from conftest import failed_event, paid_event


def make_adapter(handler, **kwargs) -> PaymentGatewayAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("retry_attempts", 3)
    kwargs.setdefault("retry_backoff_seconds", 0)
    return PaymentGatewayAdapter(
        secret_key="sk_test_123",
        base_url="https://api.paymongo.test/v1",
        client=client,
        frontend_url="https://aid.example",
        **kwargs
    )


def sample_application(**overrides) -> Application:
    fields = dict(
        id=7,
        application_number="APP-0007",
        student_id=55,
        student_name="Maria Santos",
        student_email="maria@example.edu",
        student_phone="+63 917-555-0101",
        preferred_wallet="paymaya",
        amount=3000050,
    )
    fields.update(overrides)
    return Application(**fields)


async def test_create_checkout_sends_minor_units_and_billing():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        return httpx.Response(200, json={
            "data": {
                "id": "cs_abc123",
                "type": "checkout_session",
                "attributes": {"checkout_url": "https://checkout.paymongo.test/cs_abc123", "reference_number": "APP-0007"},
            }
        })

    adapter = make_adapter(handler)
    session = await adapter.create_checkout(sample_application())

    assert session.id == "cs_abc123"
    assert session.url == "https://checkout.paymongo.test/cs_abc123"

    request = seen["request"]
    assert request.method == "POST"
    assert request.url.path == "/v1/checkout_sessions"
    assert request.headers["Authorization"].startswith("Basic ")
    attributes = json.loads(request.content)["data"]["attributes"]
    assert attributes["line_items"][0]["amount"] == 3000050
    assert attributes["reference_number"] == "APP-0007"
    assert attributes["billing"] == {"name": "Maria Santos", "email": "maria@example.edu", "phone": "9175550101"}
    assert attributes["payment_method_types"] == ["card", "paymaya"]
    assert "application_id=7" in attributes["success_url"]


async def test_server_errors_are_retried_then_unavailable():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503, json={"errors": [{"detail": "maintenance"}]})

    adapter = make_adapter(handler, retry_attempts=3)

    with pytest.raises(GatewayUnavailableError):
        await adapter.create_checkout(sample_application())
    assert len(calls) == 3


async def test_transient_failure_recovers_on_retry():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectTimeout("timed out", request=request)
        return httpx.Response(200, json={"data": {"id": "cs_retry", "attributes": {}}})

    adapter = make_adapter(handler)
    session = await adapter.create_checkout(sample_application())

    assert session.id == "cs_retry"
    assert session.reference_number == "APP-0007"
    assert len(calls) == 2


async def test_client_errors_are_rejected_without_retry():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"errors": [{"code": "parameter_below_minimum", "detail": "amount cannot be less than 2000."}]})

    adapter = make_adapter(handler)

    with pytest.raises(GatewayRejectedError) as exc_info:
        await adapter.create_checkout(sample_application(amount=100))
    assert "amount cannot be less than 2000." in exc_info.value.message
    assert len(calls) == 1


async def test_open_circuit_short_circuits_calls():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500)

    breaker = CircuitBreaker(failure_threshold=2, reset_timeout=60, failure_exceptions=(GatewayUnavailableError,))
    adapter = make_adapter(handler, circuit_breaker=breaker, retry_attempts=1)

    for _ in range(2):
        with pytest.raises(GatewayUnavailableError):
            await adapter.verify_checkout("cs_1")
    assert breaker.state == "OPEN"

    with pytest.raises(GatewayUnavailableError) as exc_info:
        await adapter.verify_checkout("cs_1")
    assert "circuit" in exc_info.value.message
    assert len(calls) == 2


async def test_rejections_do_not_trip_the_breaker():
    def handler(request):
        return httpx.Response(404, json={"errors": [{"detail": "No such checkout_session"}]})

    breaker = CircuitBreaker(failure_threshold=1, reset_timeout=60, failure_exceptions=(GatewayUnavailableError,))
    adapter = make_adapter(handler, circuit_breaker=breaker)

    with pytest.raises(GatewayRejectedError):
        await adapter.verify_checkout("cs_missing")
    assert breaker.state == "CLOSED"


@pytest.mark.parametrize("attributes, expected", [
    ({"status": "active", "payments": [{"id": "pay_1", "attributes": {"status": "paid", "amount": 30000}}]}, "paid"),
    ({"status": "active", "payments": []}, "pending"),
    ({"status": "expired", "payments": []}, "failed"),
    ({"status": "active", "payments": [{"id": "pay_2", "attributes": {"status": "failed", "failed_message": "Declined"}}]}, "failed"),
])
async def test_verify_checkout_statuses(attributes, expected):
    def handler(request):
        assert request.url.path == "/v1/checkout_sessions/cs_42"
        return httpx.Response(200, json={"data": {"id": "cs_42", "attributes": attributes}})

    status = await make_adapter(handler).verify_checkout("cs_42")

    assert status.status == expected
    if expected == "paid":
        assert (status.amount, status.provider_payment_id) == (30000, "pay_1")


async def test_mock_gateway_verifies_everything_as_paid():
    gateway = MockPaymentGateway(frontend_url="https://aid.example")
    session = await gateway.create_checkout(sample_application(amount=5000))

    status = await gateway.verify_checkout(session.id)
    assert status.is_paid
    assert status.amount == 5000


@pytest.mark.parametrize("raw, expected", [
    ("+63 917-555-0101", "9175550101"),
    ("09175550101", "9175550101"),
    ("9175550101", "9175550101"),
    ("", None),
    (None, None),
])
def test_format_phone_number(raw, expected):
    assert format_phone_number(raw) == expected


def test_billing_info_omits_missing_fields():
    application = sample_application(student_email="not-an-email", student_phone=None)
    assert build_billing_info(application) == {"name": "Maria Santos"}


def test_payment_method_types_default_to_gcash():
    assert payment_method_types(None) == ["card", "gcash"]
    assert payment_method_types("GrabPay") == ["card", "grab_pay"]


# Webhook payload parsing

def test_parse_checkout_session_paid_event():
    payment = parse_webhook_payment(paid_event("cs_abc", 30000, payment_id="pay_xyz", reference="APP-1"))

    assert payment.checkout_id == "cs_abc"
    assert payment.payment_id == "pay_xyz"
    assert payment.amount == 30000
    assert payment.reference_number == "APP-1"


def test_parse_payment_failed_event():
    payment = parse_webhook_payment(failed_event("APP-2", 15000, payment_id="pay_f"))

    assert payment.payment_id == "pay_f"
    assert payment.checkout_id is None
    assert payment.reference_number == "APP-2"
    assert payment.failure_reason == "Card declined"


def test_parse_nested_data_data_shape():
    payload = {"data": {"data": {"attributes": {"data": {
        "id": "pay_deep", "attributes": {"amount": 100, "checkout_session_id": "cs_deep"}
    }}}}}

    payment = parse_webhook_payment(payload)
    assert (payment.payment_id, payment.checkout_id, payment.amount) == ("pay_deep", "cs_deep", 100)


def test_parse_flat_data_shape():
    payload = {"type": "payment.paid", "data": {"id": "pay_flat", "attributes": {"amount": 2500}}}

    payment = parse_webhook_payment(payload)
    assert payment.payment_id == "pay_flat"
    assert extract_event_type(payload) == "payment.paid"


@pytest.mark.parametrize("payload", [
    {},
    {"data": {"attributes": {"type": "payment.paid"}}},
    {"data": {"attributes": {"data": {"id": "pay_1", "attributes": {"amount": 300.5}}}}},
    {"data": {"attributes": {"data": {"id": "pay_1", "attributes": {"amount": "30000"}}}}},
    ["not", "an", "object"],
    {"data": {"id": "evt_abc", "type": "event", "attributes": {"type": "payment.paid"}}},
    {"data": {"id": "evt_abc", "attributes": {"type": "payment.paid", "data": {"id": "evt_inner"}}}},
    {"data": {"id": "src_1", "attributes": {"amount": 100}}},
])
def test_unparsable_payloads_fail_closed(payload):
    with pytest.raises(UnparsablePayloadError):
        parse_webhook_payment(payload)


def _signature(secret: str, timestamp: str, body: bytes) -> str:
    return hmac.new(secret.encode(), timestamp.encode() + b"." + body, hashlib.sha256).hexdigest()


def test_signature_verification():
    body = b'{"data": {}}'
    signature = _signature("whsk_test", "1700000000", body)

    assert verify_webhook_signature(body, f"t=1700000000,te={signature},li=", "whsk_test")
    assert not verify_webhook_signature(body, f"t=1700000000,te={signature},li=", "whsk_test", livemode=True)
    assert verify_webhook_signature(body, f"t=1700000000,te=,li={signature}", "whsk_test", livemode=True)
    assert not verify_webhook_signature(body + b" ", f"t=1700000000,te={signature}", "whsk_test")
    assert not verify_webhook_signature(body, None, "whsk_test")
    assert not verify_webhook_signature(body, "garbage", "whsk_test")
