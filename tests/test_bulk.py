from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.fee_balances import bulk, ledger
from app.core.enums import FeeKind
from app.core.exceptions import TransientError
from app.core.models import FeeBalance, SchoolClass

from conftest import add_enrollment


async def _row_count(db: AsyncSession, **filters) -> int:
    stmt = select(func.count()).select_from(FeeBalance)
    for name, value in filters.items():
        stmt = stmt.where(getattr(FeeBalance, name) == value)
    return (await db.execute(stmt)).scalar_one()


@pytest.mark.asyncio
async def test_cohort_creates_missing_rows_and_skips_existing(db_session: AsyncSession, seed) -> None:
    ids = [(await add_enrollment(db_session, seed, f"B{i:03d}")).id for i in range(30)]
    for enrollment_id in ids[:5]:
        await bulk.initialize_enrollment(
            db_session, seed.branch_id, seed.academic_year_id, enrollment_id, FeeKind.TUITION
        )

    result = await bulk.initialize_for_cohort(db_session, seed.branch_id, seed.academic_year_id, seed.class_id)
    assert result.total_requested == 30
    assert result.created_count == 25
    assert sorted(result.skipped_enrollment_ids) == sorted(ids[:5])
    assert result.failed == []
    assert await _row_count(db_session, fee_kind="TUITION") == 30

    rerun = await bulk.initialize_for_cohort(db_session, seed.branch_id, seed.academic_year_id, seed.class_id)
    assert rerun.created_count == 0
    assert len(rerun.skipped_enrollment_ids) == 30
    assert len(set(rerun.skipped_enrollment_ids)) == 30


@pytest.mark.asyncio
async def test_existing_rows_are_not_touched(db_session: AsyncSession, seed) -> None:
    enrollment_id = (await add_enrollment(db_session, seed, "B100")).id
    await bulk.initialize_enrollment(
        db_session, seed.branch_id, seed.academic_year_id, enrollment_id, FeeKind.TUITION, Decimal("4000")
    )
    await bulk.initialize_for_cohort(db_session, seed.branch_id, seed.academic_year_id, seed.class_id)
    balance = await ledger.get(db_session, seed.branch_id, seed.academic_year_id, enrollment_id, FeeKind.TUITION)
    assert balance.concession_amount == Decimal("4000.00")
    assert balance.version == 1


@pytest.mark.asyncio
async def test_transport_rows_only_for_assigned_enrollments(db_session: AsyncSession, seed) -> None:
    await add_enrollment(db_session, seed, "T001", with_transport=True)
    await add_enrollment(db_session, seed, "T002")
    await add_enrollment(db_session, seed, "T003")

    result = await bulk.initialize_for_cohort(db_session, seed.branch_id, seed.academic_year_id, seed.class_id)
    assert result.created_count == 4
    assert await _row_count(db_session, fee_kind="TRANSPORT") == 1
    assert await _row_count(db_session, fee_kind="TUITION") == 3


@pytest.mark.asyncio
async def test_fee_kind_filter(db_session: AsyncSession, seed) -> None:
    await add_enrollment(db_session, seed, "K001", with_transport=True)
    await add_enrollment(db_session, seed, "K002")

    result = await bulk.initialize_for_cohort(
        db_session, seed.branch_id, seed.academic_year_id, seed.class_id, fee_kind=FeeKind.TRANSPORT
    )
    assert result.total_requested == 2
    assert result.created_count == 1
    assert result.skipped_enrollment_ids == []
    assert await _row_count(db_session, fee_kind="TUITION") == 0


@pytest.mark.asyncio
async def test_only_active_enrollments_count(db_session: AsyncSession, seed) -> None:
    await add_enrollment(db_session, seed, "S001")
    await add_enrollment(db_session, seed, "S002", status="LEFT")

    result = await bulk.initialize_for_cohort(db_session, seed.branch_id, seed.academic_year_id, seed.class_id)
    assert result.total_requested == 1
    assert result.created_count == 1


@pytest.mark.asyncio
async def test_class_without_structure_reports_failures(db_session: AsyncSession, seed) -> None:
    other = SchoolClass(branch_id=seed.branch_id, name="11th")
    db_session.add(other)
    await db_session.commit()
    class_id = other.id
    await add_enrollment(db_session, seed, "F001", class_id=class_id)
    await add_enrollment(db_session, seed, "F002", class_id=class_id)

    result = await bulk.initialize_for_cohort(db_session, seed.branch_id, seed.academic_year_id, class_id)
    assert result.created_count == 0
    assert len(result.failed) == 2
    assert {f.error_code for f in result.failed} == {"ERR_NOT_FOUND"}
    assert {f.fee_kind for f in result.failed} == {FeeKind.TUITION}


@pytest.mark.asyncio
async def test_fee_structure_resolved_once_per_placement(db_session: AsyncSession, seed, monkeypatch) -> None:
    for i in range(6):
        await add_enrollment(db_session, seed, f"M{i:03d}")
    calls = []
    real_resolve = bulk.resolve_tuition

    async def counting_resolve(*args, **kwargs):
        calls.append(args[3:])
        return await real_resolve(*args, **kwargs)

    monkeypatch.setattr(bulk, "resolve_tuition", counting_resolve)
    result = await bulk.initialize_for_cohort(db_session, seed.branch_id, seed.academic_year_id, seed.class_id)
    assert result.created_count == 6
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_transient_failure_aborts_batch(db_session: AsyncSession, seed, monkeypatch) -> None:
    for i in range(5):
        await add_enrollment(db_session, seed, f"X{i:03d}")
    real_create = ledger.create
    attempts = []

    async def flaky_create(*args, **kwargs):
        attempts.append(args[3])
        if len(attempts) == 3:
            raise TransientError("create fee balance timed out", {"timeout_seconds": 10.0})
        return await real_create(*args, **kwargs)

    monkeypatch.setattr(ledger, "create", flaky_create)
    with pytest.raises(TransientError) as exc:
        await bulk.initialize_for_cohort(db_session, seed.branch_id, seed.academic_year_id, seed.class_id)
    assert exc.value.details["created_count"] == 2
    assert exc.value.details["aborted_at_enrollment_id"] == str(attempts[2])
    assert await _row_count(db_session) == 2


@pytest.mark.asyncio
async def test_bulk_endpoint(client: AsyncClient, db_session: AsyncSession, seed, auth_headers) -> None:
    for i in range(3):
        await add_enrollment(db_session, seed, f"E{i:03d}")
    response = await client.post(
        "/api/v1/fee-balances/bulk",
        json={"class_id": str(seed.class_id), "fee_kind": "TUITION"},
        headers=auth_headers,
    )
    assert response.status_code == 200, response.text
    assert response.json() == {
        "created_count": 3,
        "skipped_enrollment_ids": [],
        "total_requested": 3,
        "failed": [],
    }

    listing = (
        await client.get("/api/v1/fee-balances", params={"page_size": 2}, headers=auth_headers)
    ).json()
    assert listing["total"] == 3
    assert len(listing["items"]) == 2
