"""
Budget API Tests.

Allocation, school-scoped access and partner-school withdrawals.
"""

import os
import threading

import pytest

from backend.app.core.config import settings
from backend.app.domain.payments.receipts import ReceiptStore

PDF = b"%PDF-1.4\n1 0 obj\n<<>>\nendobj\n"
PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


async def allocate(client, headers, school_id=5, amount=100000, **extra):
    payload = {"academic_year": "2025-2026", "allocated_amount": amount, "school_name": "Rizal High"}
    payload.update(extra)
    return await client.post(f"/v1/budgets/{school_id}", json=payload, headers=headers)


def withdrawal_form(amount="5000", purpose="Library books", withdrawal_date="2026-01-15"):
    return {"amount": amount, "purpose": purpose, "withdrawal_date": withdrawal_date}


async def test_admin_allocates_budget(client, admin_headers):
    response = await allocate(client, admin_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["school_id"] == 5
    assert data["allocated_amount"] == 100000
    assert data["available_amount"] == 100000
    assert data["status"] == "active"
    assert data["allocated_by"] == "finance.admin"


async def test_allocation_requires_admin(client, partner_headers):
    response = await allocate(client, partner_headers(5))
    assert response.status_code == 403


async def test_requests_without_token_are_refused(client):
    response = await client.get("/v1/budgets/5")
    assert response.status_code in (401, 403)


async def test_invalid_token_is_unauthorized(client):
    response = await client.get("/v1/budgets/5", headers={"Authorization": "Bearer not-a-jwt"})

    assert response.status_code == 401
    assert response.json()["error_code"] == "ERR_AUTH_001"


async def test_adjusting_allocation_records_signed_delta(client, admin_headers):
    await allocate(client, admin_headers, amount=100000)

    response = await allocate(client, admin_headers, amount=120000, notes="Top-up")
    assert response.status_code == 200
    assert response.json()["allocated_amount"] == 120000

    transactions = (await client.get("/v1/budgets/5/transactions", headers=admin_headers)).json()
    assert [t["transaction_type"] for t in transactions] == ["allocation", "adjustment"]
    assert transactions[1]["amount"] == 20000
    assert transactions[1]["balance_after"] == 120000


async def test_reduction_below_commitments_is_rejected(client, admin_headers, partner_headers):
    await allocate(client, admin_headers, amount=100000)
    await client.post(
        "/v1/budgets/5/withdrawals",
        data=withdrawal_form(amount="60000"),
        files={"proof_document": ("proof.pdf", PDF, "application/pdf")},
        headers=partner_headers(5),
    )

    response = await allocate(client, admin_headers, amount=50000)

    assert response.status_code == 400
    assert response.json()["error_code"] == "ERR_FUNDS_001"
    budget = (await client.get("/v1/budgets/5", headers=admin_headers)).json()
    assert budget["allocated_amount"] == 100000


async def test_initial_allocation_must_be_positive(client, admin_headers):
    response = await allocate(client, admin_headers, amount=0)
    assert response.status_code == 422


async def test_partner_sees_only_own_budget(client, admin_headers, partner_headers):
    await allocate(client, admin_headers, school_id=5)
    await allocate(client, admin_headers, school_id=6)

    own = await client.get("/v1/budgets/5", headers=partner_headers(5))
    assert own.status_code == 200
    assert own.json()["available_amount"] == 100000

    other = await client.get("/v1/budgets/6", headers=partner_headers(5))
    assert other.status_code == 403
    assert other.json()["error_code"] == "ERR_PERM_001"

    listing = await client.get("/v1/budgets", headers=partner_headers(5))
    assert [b["school_id"] for b in listing.json()] == [5]


async def test_missing_budget_is_not_found(client, admin_headers):
    response = await client.get("/v1/budgets/404", headers=admin_headers)

    assert response.status_code == 404
    assert response.json()["error_code"] == "ERR_NOT_FOUND_001"


async def test_withdrawal_deducts_immediately(client, admin_headers, partner_headers, storage):
    await allocate(client, admin_headers)

    response = await client.post(
        "/v1/budgets/5/withdrawals",
        data=withdrawal_form(amount="15000"),
        files={"proof_document": ("proof.png", PNG, "image/png")},
        headers=partner_headers(5),
    )

    assert response.status_code == 201
    data = response.json()
    assert data["withdrawal"]["amount"] == 15000
    assert data["withdrawal"]["recorded_by"] == "registrar5"
    assert data["budget"]["disbursed_amount"] == 15000
    assert data["budget"]["reserved_amount"] == 0
    assert data["budget"]["available_amount"] == 85000
    assert os.path.exists(data["withdrawal"]["proof_document_path"])

    history = await client.get("/v1/budgets/5/withdrawals", headers=partner_headers(5))
    assert [w["purpose"] for w in history.json()] == ["Library books"]


async def test_withdrawal_over_available_is_rejected(client, admin_headers, partner_headers, storage):
    await allocate(client, admin_headers, amount=10000)

    response = await client.post(
        "/v1/budgets/5/withdrawals",
        data=withdrawal_form(amount="10001"),
        files={"proof_document": ("proof.pdf", PDF, "application/pdf")},
        headers=partner_headers(5),
    )

    assert response.status_code == 400
    assert response.json()["details"]["available"] == 10000
    budget = (await client.get("/v1/budgets/5", headers=admin_headers)).json()
    assert budget["disbursed_amount"] == 0
    # The stored proof was cleaned up with the rolled-back unit
    assert not os.listdir(storage / "withdrawals")


async def test_withdrawal_field_errors(client, admin_headers, partner_headers):
    await allocate(client, admin_headers)

    response = await client.post(
        "/v1/budgets/5/withdrawals",
        data={"amount": "0", "purpose": " "},
        headers=partner_headers(5),
    )

    assert response.status_code == 422
    errors = response.json()["details"]["errors"]
    assert set(errors) == {"amount", "purpose", "withdrawal_date", "proof_document"}


@pytest.mark.parametrize("filename, content, content_type", [
    ("notes.txt", b"plain text", "text/plain"),
    ("fake.pdf", b"not really a pdf", "application/pdf"),
])
async def test_withdrawal_rejects_bad_proof(client, admin_headers, partner_headers, filename, content, content_type):
    await allocate(client, admin_headers)

    response = await client.post(
        "/v1/budgets/5/withdrawals",
        data=withdrawal_form(),
        files={"proof_document": (filename, content, content_type)},
        headers=partner_headers(5),
    )

    assert response.status_code == 422
    assert "proof_document" in response.json()["details"]["errors"]


async def test_withdrawal_rejects_oversized_proof(client, admin_headers, partner_headers, monkeypatch):
    await allocate(client, admin_headers)
    monkeypatch.setattr(settings, "max_upload_bytes", 16)

    response = await client.post(
        "/v1/budgets/5/withdrawals",
        data=withdrawal_form(),
        files={"proof_document": ("big.pdf", PDF + b"0" * 64, "application/pdf")},
        headers=partner_headers(5),
    )

    assert response.status_code == 422


async def test_withdrawal_for_other_school_is_forbidden(client, admin_headers, partner_headers):
    await allocate(client, admin_headers, school_id=6)

    response = await client.post(
        "/v1/budgets/6/withdrawals",
        data=withdrawal_form(),
        files={"proof_document": ("proof.pdf", PDF, "application/pdf")},
        headers=partner_headers(5),
    )

    assert response.status_code == 403


async def test_withdrawal_idempotency_key_replays(client, admin_headers, partner_headers):
    await allocate(client, admin_headers)
    headers = dict(partner_headers(5), **{"Idempotency-Key": "wd-2026-01-15-books"})

    first = await client.post(
        "/v1/budgets/5/withdrawals",
        data=withdrawal_form(amount="7000"),
        files={"proof_document": ("proof.pdf", PDF, "application/pdf")},
        headers=headers,
    )
    second = await client.post(
        "/v1/budgets/5/withdrawals",
        data=withdrawal_form(amount="7000"),
        files={"proof_document": ("proof.pdf", PDF, "application/pdf")},
        headers=headers,
    )

    assert first.status_code == second.status_code == 201
    assert second.json()["replayed"] is True
    assert second.json()["withdrawal"]["id"] == first.json()["withdrawal"]["id"]
    budget = (await client.get("/v1/budgets/5", headers=admin_headers)).json()
    assert budget["disbursed_amount"] == 7000


async def test_withdrawal_idempotency_key_with_other_amount_is_rejected(client, admin_headers, partner_headers):
    await allocate(client, admin_headers)
    headers = dict(partner_headers(5), **{"Idempotency-Key": "wd-2026-01-15-books"})

    await client.post(
        "/v1/budgets/5/withdrawals",
        data=withdrawal_form(amount="7000"),
        files={"proof_document": ("proof.pdf", PDF, "application/pdf")},
        headers=headers,
    )
    second = await client.post(
        "/v1/budgets/5/withdrawals",
        data=withdrawal_form(amount="9000"),
        files={"proof_document": ("proof.pdf", PDF, "application/pdf")},
        headers=headers,
    )

    assert second.status_code == 422
    assert "idempotency_key" in second.json()["details"]["errors"]
    budget = (await client.get("/v1/budgets/5", headers=admin_headers)).json()
    assert budget["disbursed_amount"] == 7000


async def test_withdrawal_proof_is_written_off_the_event_loop(client, admin_headers, partner_headers, mocker):
    await allocate(client, admin_headers)
    write_threads = []
    original_write = ReceiptStore._write_file

    def recording_write(directory, filename, content):
        write_threads.append(threading.current_thread())
        return original_write(directory, filename, content)

    mocker.patch.object(ReceiptStore, "_write_file", side_effect=recording_write)

    response = await client.post(
        "/v1/budgets/5/withdrawals",
        data=withdrawal_form(),
        files={"proof_document": ("proof.pdf", PDF, "application/pdf")},
        headers=partner_headers(5),
    )

    assert response.status_code == 201
    assert len(write_threads) == 1
    assert write_threads[0] is not threading.main_thread()
    assert os.path.exists(response.json()["withdrawal"]["proof_document_path"])


async def record_withdrawal(client, headers, school_id=5, amount="5000"):
    response = await client.post(
        f"/v1/budgets/{school_id}/withdrawals",
        data=withdrawal_form(amount=amount),
        files={"proof_document": ("proof.pdf", PDF, "application/pdf")},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()["withdrawal"]


async def test_withdrawal_detail_and_proof_download(client, admin_headers, partner_headers):
    await allocate(client, admin_headers)
    withdrawal = await record_withdrawal(client, partner_headers(5))

    detail = await client.get(f"/v1/budgets/5/withdrawals/{withdrawal['id']}", headers=partner_headers(5))
    assert detail.status_code == 200
    assert detail.json()["purpose"] == "Library books"
    assert detail.json()["amount"] == 5000

    proof = await client.get(f"/v1/budgets/5/withdrawals/{withdrawal['id']}/proof", headers=admin_headers)
    assert proof.status_code == 200
    assert proof.content == PDF
    assert proof.headers["content-type"] == "application/pdf"


async def test_withdrawal_detail_is_scoped_to_school(client, admin_headers, partner_headers):
    await allocate(client, admin_headers, school_id=5)
    await allocate(client, admin_headers, school_id=6)
    withdrawal = await record_withdrawal(client, partner_headers(6), school_id=6)

    other_school = await client.get(f"/v1/budgets/6/withdrawals/{withdrawal['id']}", headers=partner_headers(5))
    assert other_school.status_code == 403

    wrong_path = await client.get(f"/v1/budgets/5/withdrawals/{withdrawal['id']}", headers=partner_headers(5))
    assert wrong_path.status_code == 404

    missing = await client.get("/v1/budgets/6/withdrawals/999/proof", headers=admin_headers)
    assert missing.status_code == 404


async def test_missing_proof_file_is_not_found(client, admin_headers, partner_headers):
    await allocate(client, admin_headers)
    withdrawal = await record_withdrawal(client, partner_headers(5))
    os.remove(withdrawal["proof_document_path"])

    response = await client.get(f"/v1/budgets/5/withdrawals/{withdrawal['id']}/proof", headers=admin_headers)

    assert response.status_code == 404
    assert response.json()["error_code"] == "ERR_NOT_FOUND_001"


async def test_budget_check_reports_shortfall(client, admin_headers, partner_headers):
    await allocate(client, admin_headers)
    await record_withdrawal(client, partner_headers(5), amount="40000")

    enough = await client.get("/v1/budgets/5/check", params={"amount": 60000}, headers=partner_headers(5))
    short = await client.get("/v1/budgets/5/check", params={"amount": 75000}, headers=admin_headers)

    assert enough.status_code == 200
    assert enough.json()["has_sufficient_funds"] is True
    assert enough.json()["shortfall"] == 0
    assert enough.json()["available_amount"] == 60000
    assert short.json()["has_sufficient_funds"] is False
    assert short.json()["requested_amount"] == 75000
    assert short.json()["shortfall"] == 15000
    budget = (await client.get("/v1/budgets/5", headers=admin_headers)).json()
    assert budget["reserved_amount"] == 0


async def test_budget_check_access_and_validation(client, admin_headers, partner_headers):
    await allocate(client, admin_headers, school_id=6)

    assert (await client.get("/v1/budgets/6/check?amount=100", headers=partner_headers(5))).status_code == 403
    assert (await client.get("/v1/budgets/6/check?amount=-1", headers=admin_headers)).status_code == 422
    assert (await client.get("/v1/budgets/7/check?amount=100", headers=admin_headers)).status_code == 404


async def test_expired_budget_has_no_sufficient_funds(client, admin_headers, system_headers):
    await allocate(client, admin_headers, expiry_date="2020-06-30")
    await client.post("/v1/admin/ops/expire-budgets", headers=system_headers)

    response = await client.get("/v1/budgets/5/check?amount=100", headers=admin_headers)

    assert response.json()["status"] == "expired"
    assert response.json()["has_sufficient_funds"] is False
    assert response.json()["shortfall"] == 0


async def test_expire_budgets_endpoint(client, admin_headers, system_headers):
    await allocate(client, admin_headers, expiry_date="2020-06-30")
    await allocate(client, admin_headers, school_id=6, expiry_date="2999-06-30")

    response = await client.post("/v1/admin/ops/expire-budgets", headers=system_headers)

    assert response.status_code == 200
    assert len(response.json()["expired_budget_ids"]) == 1
    expired = (await client.get("/v1/budgets/5", headers=admin_headers)).json()
    assert expired["status"] == "expired"

    blocked = await client.post(
        "/v1/budgets/5/withdrawals",
        data=withdrawal_form(),
        files={"proof_document": ("proof.pdf", PDF, "application/pdf")},
        headers=admin_headers,
    )
    assert blocked.status_code == 422
    assert blocked.json()["error_code"] == "ERR_STATE_001"
