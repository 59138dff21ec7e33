"""Auth, permissions, error envelope and routing of the HTTP surface."""

from uuid import uuid4

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import add_enrollment, make_token


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


async def _tuition_row(client: AsyncClient, db: AsyncSession, seed, headers, admission_no="H001") -> str:
    enrollment_id = str((await add_enrollment(db, seed, admission_no)).id)
    response = await client.post(
        "/api/v1/fee-balances", json={"enrollment_id": enrollment_id, "fee_kind": "TUITION"}, headers=headers
    )
    assert response.status_code == 201, response.text
    return enrollment_id


@pytest.mark.asyncio
async def test_missing_token(client: AsyncClient, seed) -> None:
    response = await client.get("/api/v1/fee-balances")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_invalid_token(client: AsyncClient, seed) -> None:
    response = await client.get("/api/v1/fee-balances", headers=_bearer("not-a-jwt"))
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_missing_permission(client: AsyncClient, seed) -> None:
    token = make_token(seed, permissions={"fees": {"read": True}})
    read = await client.get("/api/v1/fee-balances", headers=_bearer(token))
    assert read.status_code == 200

    write = await client.post(
        "/api/v1/fee-balances",
        json={"enrollment_id": str(uuid4()), "fee_kind": "TUITION"},
        headers=_bearer(token),
    )
    assert write.status_code == 403


@pytest.mark.asyncio
async def test_super_admin_bypasses_permission_map(client: AsyncClient, seed) -> None:
    token = make_token(seed, role="SUPER_ADMIN", permissions={})
    response = await client.get("/api/v1/fee-balances/dashboard", headers=_bearer(token))
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_closed_academic_year_blocks_writes(
    client: AsyncClient, db_session: AsyncSession, seed, auth_headers
) -> None:
    enrollment_id = await _tuition_row(client, db_session, seed, auth_headers)
    closed = _bearer(make_token(seed, academic_year_status="CLOSED"))

    payment = await client.patch(
        "/api/v1/fee-balances/term-payment",
        json={"enrollment_id": enrollment_id, "fee_kind": "TUITION", "amount": "100", "idempotency_key": "closed"},
        headers=closed,
    )
    assert payment.status_code == 403

    read = await client.get(f"/api/v1/fee-balances/{enrollment_id}/TUITION", headers=closed)
    assert read.status_code == 200


@pytest.mark.asyncio
async def test_service_error_envelope_and_correlation_id(client: AsyncClient, seed, auth_headers) -> None:
    enrollment_id = str(uuid4())
    response = await client.get(
        f"/api/v1/fee-balances/{enrollment_id}/TRANSPORT",
        headers={**auth_headers, "X-Correlation-ID": "req-42"},
    )
    assert response.status_code == 404
    assert response.headers["X-Correlation-ID"] == "req-42"
    assert response.json() == {
        "error_code": "ERR_BALANCE_NOT_FOUND",
        "message": f"No TRANSPORT fee balance for enrollment {enrollment_id}",
        "details": {"resource": "Fee balance", "enrollment_id": enrollment_id, "fee_kind": "TRANSPORT"},
    }


@pytest.mark.asyncio
async def test_correlation_id_is_generated(client: AsyncClient, seed, auth_headers) -> None:
    response = await client.get("/api/v1/fee-balances", headers=auth_headers)
    assert response.headers["X-Correlation-ID"]
    assert "X-Process-Time" in response.headers


@pytest.mark.asyncio
async def test_unknown_fee_kind_in_path(client: AsyncClient, seed, auth_headers) -> None:
    response = await client.get(f"/api/v1/fee-balances/{uuid4()}/HOSTEL", headers=auth_headers)
    assert response.status_code == 422
    assert response.json()["error_code"] == "ERR_REQUEST_VALIDATION"


@pytest.mark.asyncio
async def test_duplicate_row_is_conflict(client: AsyncClient, db_session: AsyncSession, seed, auth_headers) -> None:
    enrollment_id = await _tuition_row(client, db_session, seed, auth_headers)
    response = await client.post(
        "/api/v1/fee-balances", json={"enrollment_id": enrollment_id, "fee_kind": "TUITION"}, headers=auth_headers
    )
    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_ALREADY_EXISTS"


@pytest.mark.asyncio
async def test_read_routes(client: AsyncClient, db_session: AsyncSession, seed, auth_headers) -> None:
    enrollment_id = await _tuition_row(client, db_session, seed, auth_headers, admission_no="ADM-7")

    by_enrollment = await client.get(f"/api/v1/fee-balances/enrollment/{enrollment_id}", headers=auth_headers)
    assert by_enrollment.status_code == 200
    assert [b["fee_kind"] for b in by_enrollment.json()] == ["TUITION"]

    by_admission = await client.get("/api/v1/fee-balances/admission/ADM-7", headers=auth_headers)
    assert by_admission.status_code == 200
    assert by_admission.json()[0]["enrollment_id"] == enrollment_id

    missing = await client.get("/api/v1/fee-balances/admission/NOPE", headers=auth_headers)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_concession_lock_flow(
    client: AsyncClient, db_session: AsyncSession, seed, auth_headers, admin_headers
) -> None:
    enrollment_id = await _tuition_row(client, db_session, seed, auth_headers)
    ref = {"enrollment_id": enrollment_id, "fee_kind": "TUITION"}

    conceded = await client.patch(
        "/api/v1/fee-balances/concession", json={**ref, "concession_amount": "5000"}, headers=auth_headers
    )
    assert conceded.status_code == 200, conceded.text
    assert [t["amount"] for t in conceded.json()["terms"]] == ["6000.00", "4500.00", "4500.00"]

    locked = await client.post("/api/v1/fee-balances/concession/lock", json=ref, headers=auth_headers)
    assert locked.json()["concession_lock"] is True

    blocked = await client.patch(
        "/api/v1/fee-balances/concession", json={**ref, "concession_amount": "6000"}, headers=auth_headers
    )
    assert blocked.status_code == 409
    assert blocked.json()["error_code"] == "ERR_LOCKED"

    denied = await client.post("/api/v1/fee-balances/concession/unlock", json=ref, headers=auth_headers)
    assert denied.status_code == 403
    assert denied.json()["error_code"] == "ERR_FORBIDDEN"

    unlocked = await client.post(
        "/api/v1/fee-balances/concession/unlock", json={**ref, "remarks": "revised"}, headers=admin_headers
    )
    assert unlocked.status_code == 200
    assert unlocked.json()["concession_lock"] is False


@pytest.mark.asyncio
async def test_cancel_needs_delete_permission(
    client: AsyncClient, db_session: AsyncSession, seed, auth_headers
) -> None:
    enrollment_id = await _tuition_row(client, db_session, seed, auth_headers)
    body = {"enrollment_id": enrollment_id, "fee_kind": "TUITION", "reason": "transferred"}

    no_delete = _bearer(make_token(seed, permissions={"fees": {"read": True, "update": True}}))
    assert (await client.post("/api/v1/fee-balances/cancel", json=body, headers=no_delete)).status_code == 403

    cancelled = await client.post("/api/v1/fee-balances/cancel", json=body, headers=auth_headers)
    assert cancelled.status_code == 200
    assert cancelled.json()["state"] == "CANCELLED"

    payment = await client.patch(
        "/api/v1/fee-balances/term-payment",
        json={"enrollment_id": enrollment_id, "fee_kind": "TUITION", "amount": "100", "idempotency_key": "late"},
        headers=auth_headers,
    )
    assert payment.status_code == 409
    assert payment.json()["error_code"] == "ERR_BALANCE_CANCELLED"
