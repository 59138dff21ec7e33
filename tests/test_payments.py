"""Payments API: purpose dispatch, idempotency, refunds, history."""

from decimal import Decimal
from uuid import uuid4

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import add_enrollment


async def _enroll_with_tuition(client: AsyncClient, db: AsyncSession, seed, headers, admission_no="P001") -> str:
    enrollment_id = str((await add_enrollment(db, seed, admission_no)).id)
    response = await client.post(
        "/api/v1/fee-balances",
        json={"enrollment_id": enrollment_id, "fee_kind": "TUITION"},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return enrollment_id


def _term_payment(enrollment_id: str, amount: str, key: str, term: int = 1, **extra) -> dict:
    body = {
        "purpose": {"kind": "TUITION_TERM", "term": term},
        "amount": amount,
        "enrollment_id": enrollment_id,
        "payment_method": "UPI",
        "idempotency_key": key,
    }
    body.update(extra)
    return body


@pytest.mark.asyncio
async def test_tuition_term_payment(client: AsyncClient, db_session: AsyncSession, seed, auth_headers) -> None:
    enrollment_id = await _enroll_with_tuition(client, db_session, seed, auth_headers)
    response = await client.post(
        "/api/v1/payments",
        json=_term_payment(enrollment_id, "8000", "tp-1", transaction_reference="UPI-991"),
        headers=auth_headers,
    )
    assert response.status_code == 200, response.text
    data = response.json()
    assert data["purpose_kind"] == "TUITION_TERM"
    assert data["direction"] == "RECEIPT"
    assert data["replayed"] is False
    assert data["allocations"] == [{"term_number": 1, "applied": "8000.00"}]
    assert data["fee_balance"]["terms"][0]["status"] == "PAID"
    assert Decimal(data["fee_balance"]["overall_balance_fee"]) == Decimal("12000")


@pytest.mark.asyncio
async def test_term_payment_via_fee_balances_route(
    client: AsyncClient, db_session: AsyncSession, seed, auth_headers
) -> None:
    enrollment_id = await _enroll_with_tuition(client, db_session, seed, auth_headers)
    response = await client.patch(
        "/api/v1/fee-balances/term-payment",
        json={
            "enrollment_id": enrollment_id,
            "fee_kind": "TUITION",
            "amount": "10000",
            "idempotency_key": "tp-route",
        },
        headers=auth_headers,
    )
    assert response.status_code == 200, response.text
    data = response.json()
    assert [a["term_number"] for a in data["allocations"]] == [1, 2]
    assert data["fee_balance"]["terms"][1]["status"] == "PARTIAL"


@pytest.mark.asyncio
async def test_retry_with_same_key_replays(client: AsyncClient, db_session: AsyncSession, seed, auth_headers) -> None:
    enrollment_id = await _enroll_with_tuition(client, db_session, seed, auth_headers)
    body = _term_payment(enrollment_id, "5000", "retry-me")
    first = (await client.post("/api/v1/payments", json=body, headers=auth_headers)).json()
    second = await client.post("/api/v1/payments", json=body, headers=auth_headers)

    assert second.status_code == 200
    replay = second.json()
    assert replay["replayed"] is True
    assert replay["payment_event_id"] == first["payment_event_id"]
    assert Decimal(replay["fee_balance"]["overall_balance_fee"]) == Decimal("15000")

    history = (await client.get(f"/api/v1/payments/enrollment/{enrollment_id}", headers=auth_headers)).json()
    assert len(history["events"]) == 1
    assert Decimal(history["total_received"]) == Decimal("5000")


@pytest.mark.asyncio
async def test_same_key_different_payment_is_rejected(
    client: AsyncClient, db_session: AsyncSession, seed, auth_headers
) -> None:
    enrollment_id = await _enroll_with_tuition(client, db_session, seed, auth_headers)
    await client.post("/api/v1/payments", json=_term_payment(enrollment_id, "5000", "k-1"), headers=auth_headers)
    response = await client.post(
        "/api/v1/payments", json=_term_payment(enrollment_id, "5001", "k-1"), headers=auth_headers
    )
    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_IDEMPOTENCY_KEY_REUSED"


@pytest.mark.asyncio
async def test_book_fee_payment(client: AsyncClient, db_session: AsyncSession, seed, auth_headers) -> None:
    enrollment_id = await _enroll_with_tuition(client, db_session, seed, auth_headers)
    response = await client.post(
        "/api/v1/payments",
        json={
            "purpose": {"kind": "BOOK_FEE"},
            "amount": "2000",
            "enrollment_id": enrollment_id,
            "idempotency_key": "book-api",
        },
        headers=auth_headers,
    )
    assert response.status_code == 200, response.text
    data = response.json()
    assert Decimal(data["book_applied"]) == Decimal("1500")
    assert Decimal(data["overpayment_applied"]) == Decimal("500")
    assert data["fee_kind"] == "TUITION"


@pytest.mark.asyncio
async def test_other_payment_is_logged_without_allocation(
    client: AsyncClient, db_session: AsyncSession, seed, auth_headers
) -> None:
    enrollment_id = await _enroll_with_tuition(client, db_session, seed, auth_headers)
    response = await client.post(
        "/api/v1/payments",
        json={
            "purpose": {"kind": "OTHER", "description": "Lab coat"},
            "amount": "350",
            "enrollment_id": enrollment_id,
            "idempotency_key": "other-1",
        },
        headers=auth_headers,
    )
    assert response.status_code == 200, response.text
    data = response.json()
    assert data["purpose_kind"] == "OTHER"
    assert data["allocations"] == []
    assert data["fee_balance"] is None

    balance = (await client.get(f"/api/v1/fee-balances/{enrollment_id}/TUITION", headers=auth_headers)).json()
    assert Decimal(balance["overall_balance_fee"]) == Decimal("20000")
    assert Decimal(balance["overpayment_balance"]) == Decimal("0")


@pytest.mark.asyncio
async def test_unknown_purpose_kind_is_a_request_error(
    client: AsyncClient, db_session: AsyncSession, seed, auth_headers
) -> None:
    enrollment_id = await _enroll_with_tuition(client, db_session, seed, auth_headers)
    response = await client.post(
        "/api/v1/payments",
        json={
            "purpose": {"kind": "CANTEEN"},
            "amount": "100",
            "enrollment_id": enrollment_id,
            "idempotency_key": "bad-purpose",
        },
        headers=auth_headers,
    )
    assert response.status_code == 422
    assert response.json()["error_code"] == "ERR_REQUEST_VALIDATION"


@pytest.mark.asyncio
async def test_term_purpose_needs_enrollment(client: AsyncClient, seed, auth_headers) -> None:
    response = await client.post(
        "/api/v1/payments",
        json={"purpose": {"kind": "TRANSPORT_TERM", "term": 1}, "amount": "100", "idempotency_key": "no-enr"},
        headers=auth_headers,
    )
    assert response.status_code == 400
    assert response.json()["details"]["field"] == "enrollment_id"


@pytest.mark.asyncio
async def test_transport_payment_without_row(client: AsyncClient, db_session: AsyncSession, seed, auth_headers) -> None:
    enrollment_id = await _enroll_with_tuition(client, db_session, seed, auth_headers)
    response = await client.post(
        "/api/v1/payments",
        json={
            "purpose": {"kind": "TRANSPORT_TERM", "term": 1},
            "amount": "100",
            "enrollment_id": enrollment_id,
            "idempotency_key": "no-transport",
        },
        headers=auth_headers,
    )
    assert response.status_code == 404
    assert response.json()["error_code"] == "ERR_BALANCE_NOT_FOUND"


@pytest.mark.asyncio
async def test_amount_with_three_decimals(client: AsyncClient, db_session: AsyncSession, seed, auth_headers) -> None:
    enrollment_id = await _enroll_with_tuition(client, db_session, seed, auth_headers)
    response = await client.post(
        "/api/v1/payments", json=_term_payment(enrollment_id, "10.005", "dec-3"), headers=auth_headers
    )
    assert response.status_code == 422
    assert response.json()["error_code"] == "ERR_INVALID_AMOUNT"


@pytest.mark.asyncio
async def test_amount_beyond_money_column(client: AsyncClient, db_session: AsyncSession, seed, auth_headers) -> None:
    enrollment_id = await _enroll_with_tuition(client, db_session, seed, auth_headers)
    response = await client.post(
        "/api/v1/payments", json=_term_payment(enrollment_id, "10000000000", "huge"), headers=auth_headers
    )
    assert response.status_code == 422
    body = response.json()
    assert body["error_code"] == "ERR_INVALID_AMOUNT"
    assert body["details"]["enrollment_id"] == enrollment_id

    concession = await client.patch(
        "/api/v1/fee-balances/concession",
        json={"enrollment_id": enrollment_id, "fee_kind": "TUITION", "concession_amount": "10000000000"},
        headers=auth_headers,
    )
    assert concession.status_code == 422
    assert concession.json()["error_code"] == "ERR_INVALID_AMOUNT"


@pytest.mark.asyncio
async def test_refund_and_history(client: AsyncClient, db_session: AsyncSession, seed, auth_headers) -> None:
    enrollment_id = await _enroll_with_tuition(client, db_session, seed, auth_headers)
    receipt = (
        await client.post("/api/v1/payments", json=_term_payment(enrollment_id, "8000", "r-pay"), headers=auth_headers)
    ).json()

    response = await client.post(
        "/api/v1/payments/refund",
        json={
            "enrollment_id": enrollment_id,
            "fee_kind": "TUITION",
            "amount": "3000",
            "reverses_event_id": receipt["payment_event_id"],
            "reason": "duplicate deposit",
            "idempotency_key": "r-refund",
        },
        headers=auth_headers,
    )
    assert response.status_code == 200, response.text
    data = response.json()
    assert data["direction"] == "REFUND"
    assert data["allocations"] == [{"term_number": 1, "applied": "3000.00"}]
    assert data["fee_balance"]["terms"][0]["status"] == "PARTIAL"

    history = (await client.get(f"/api/v1/payments/enrollment/{enrollment_id}", headers=auth_headers)).json()
    assert Decimal(history["total_received"]) == Decimal("8000")
    assert Decimal(history["total_refunded"]) == Decimal("3000")
    refund_event = [e for e in history["events"] if e["direction"] == "REFUND"][0]
    assert refund_event["reverses_event_id"] == receipt["payment_event_id"]
    assert refund_event["purpose_description"] == "duplicate deposit"


@pytest.mark.asyncio
async def test_refund_of_unknown_receipt(client: AsyncClient, db_session: AsyncSession, seed, auth_headers) -> None:
    enrollment_id = await _enroll_with_tuition(client, db_session, seed, auth_headers)
    await client.post("/api/v1/payments", json=_term_payment(enrollment_id, "500", "u-pay"), headers=auth_headers)
    response = await client.post(
        "/api/v1/payments/refund",
        json={
            "enrollment_id": enrollment_id,
            "fee_kind": "TUITION",
            "amount": "100",
            "reverses_event_id": str(uuid4()),
            "idempotency_key": "u-refund",
        },
        headers=auth_headers,
    )
    assert response.status_code == 404
    assert response.json()["details"]["resource"] == "Receipt"


@pytest.mark.asyncio
async def test_history_for_unknown_enrollment(client: AsyncClient, seed, auth_headers) -> None:
    response = await client.get(f"/api/v1/payments/enrollment/{uuid4()}", headers=auth_headers)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_refund_key_reused_with_another_reason(
    client: AsyncClient, db_session: AsyncSession, seed, auth_headers
) -> None:
    enrollment_id = await _enroll_with_tuition(client, db_session, seed, auth_headers)
    await client.post("/api/v1/payments", json=_term_payment(enrollment_id, "4000", "rr-pay"), headers=auth_headers)
    body = {
        "enrollment_id": enrollment_id,
        "fee_kind": "TUITION",
        "amount": "1000",
        "reason": "duplicate deposit",
        "idempotency_key": "rr-refund",
    }
    first = await client.post("/api/v1/payments/refund", json=body, headers=auth_headers)
    assert first.status_code == 200, first.text

    again = await client.post("/api/v1/payments/refund", json=body, headers=auth_headers)
    assert again.json()["replayed"] is True

    reused = await client.post(
        "/api/v1/payments/refund", json={**body, "reason": "fee waived"}, headers=auth_headers
    )
    assert reused.status_code == 409
    assert reused.json()["error_code"] == "ERR_IDEMPOTENCY_KEY_REUSED"
