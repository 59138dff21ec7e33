from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.fee_balances import bulk, concessions, ledger, payments
from app.core.enums import FeeKind, TermStatus
from app.core.exceptions import (
    BalanceCancelledError,
    InvalidAmountError,
    InvalidConcessionError,
    LockedError,
    PermissionDeniedError,
)
from app.core.models import FeeAuditLog

from conftest import add_enrollment


async def _open_tuition(db: AsyncSession, seed, admission_no: str = "C001", concession=Decimal("0")):
    enrollment_id = (await add_enrollment(db, seed, admission_no)).id
    await bulk.initialize_enrollment(
        db, seed.branch_id, seed.academic_year_id, enrollment_id, FeeKind.TUITION, concession
    )
    return enrollment_id


async def _concede(db, seed, enrollment_id, amount, role="ACCOUNTANT"):
    return await concessions.apply_concession(
        db, seed.branch_id, seed.academic_year_id, enrollment_id, FeeKind.TUITION,
        Decimal(amount), actor_id=uuid4(), actor_role=role,
    )


def test_build_initial_figures_validates_bound() -> None:
    figures = concessions.build_initial_figures(FeeKind.TUITION, Decimal("20000"), Decimal("5000"), book_fee=Decimal("1500"))
    assert figures.concession_amount == Decimal("5000.00")
    assert figures.term_percentages == [Decimal("40"), Decimal("30"), Decimal("30")]
    with pytest.raises(InvalidConcessionError):
        concessions.build_initial_figures(FeeKind.TUITION, Decimal("20000"), Decimal("20000.01"))
    with pytest.raises(InvalidAmountError):
        concessions.build_initial_figures(FeeKind.TUITION, Decimal("20000"), Decimal("-1"))


@pytest.mark.asyncio
async def test_concession_resplits_terms_then_lock_blocks_changes(db_session: AsyncSession, seed) -> None:
    enrollment_id = await _open_tuition(db_session, seed)

    balance = await _concede(db_session, seed, enrollment_id, "5000")
    assert balance.total_fee == Decimal("15000.00")
    assert [t.amount for t in balance.terms] == [Decimal("6000.00"), Decimal("4500.00"), Decimal("4500.00")]
    assert balance.overall_balance_fee == Decimal("15000.00")

    locked = await concessions.lock_concession(
        db_session, seed.branch_id, seed.academic_year_id, enrollment_id, FeeKind.TUITION,
    )
    assert locked.concession_lock is True

    with pytest.raises(LockedError) as exc:
        await _concede(db_session, seed, enrollment_id, "6000")
    assert exc.value.status_code == 409


@pytest.mark.asyncio
async def test_concession_at_creation(db_session: AsyncSession, seed) -> None:
    enrollment_id = await _open_tuition(db_session, seed, concession=Decimal("2000"))
    balance = await ledger.get(db_session, seed.branch_id, seed.academic_year_id, enrollment_id, FeeKind.TUITION)
    assert balance.concession_amount == Decimal("2000.00")
    assert [t.amount for t in balance.terms] == [Decimal("7200.00"), Decimal("5400.00"), Decimal("5400.00")]


@pytest.mark.asyncio
async def test_concession_above_actual_fee_leaves_row_unchanged(
    db_session: AsyncSession, session_factory, seed
) -> None:
    enrollment_id = await _open_tuition(db_session, seed)
    with pytest.raises(InvalidConcessionError) as exc:
        await _concede(db_session, seed, enrollment_id, "25000")
    assert exc.value.details["actual_fee"] == "20000.00"

    async with session_factory() as fresh:
        balance = await ledger.get(fresh, seed.branch_id, seed.academic_year_id, enrollment_id, FeeKind.TUITION)
    assert balance.concession_amount == Decimal("0.00")
    assert balance.total_fee == Decimal("20000.00")
    assert balance.version == 1


@pytest.mark.asyncio
async def test_negative_concession(db_session: AsyncSession, seed) -> None:
    enrollment_id = await _open_tuition(db_session, seed)
    with pytest.raises(InvalidAmountError):
        await _concede(db_session, seed, enrollment_id, "-10")


@pytest.mark.asyncio
async def test_concession_after_payment_moves_excess_to_overpayment(db_session: AsyncSession, seed) -> None:
    enrollment_id = await _open_tuition(db_session, seed)
    await payments.post(
        db_session, seed.branch_id, seed.academic_year_id, enrollment_id, FeeKind.TUITION,
        Decimal("8000"), idempotency_key="pay-term-1",
    )

    balance = await _concede(db_session, seed, enrollment_id, "5000")
    terms = balance.terms
    assert (terms[0].amount, terms[0].paid, terms[0].status) == (Decimal("6000.00"), Decimal("6000.00"), TermStatus.PAID)
    assert (terms[1].paid, terms[1].status) == (Decimal("0.00"), TermStatus.PENDING)
    assert (terms[2].paid, terms[2].status) == (Decimal("0.00"), TermStatus.PENDING)
    assert balance.overpayment_balance == Decimal("2000.00")
    assert balance.overall_balance_fee == Decimal("9000.00")


@pytest.mark.asyncio
async def test_concession_caps_every_overpaid_term(db_session: AsyncSession, seed) -> None:
    enrollment_id = await _open_tuition(db_session, seed)
    await payments.post(
        db_session, seed.branch_id, seed.academic_year_id, enrollment_id, FeeKind.TUITION,
        Decimal("18000"), idempotency_key="pay-most",
    )
    balance = await _concede(db_session, seed, enrollment_id, "4000")
    assert balance.total_fee == Decimal("16000.00")
    assert [(t.amount, t.paid) for t in balance.terms] == [
        (Decimal("6400.00"), Decimal("6400.00")),
        (Decimal("4800.00"), Decimal("4800.00")),
        (Decimal("4800.00"), Decimal("4000.00")),
    ]
    assert balance.terms[2].status == TermStatus.PARTIAL
    assert balance.overpayment_balance == Decimal("2800.00")
    assert balance.overall_balance_fee == Decimal("800.00")


@pytest.mark.asyncio
async def test_concession_leaves_existing_overpayment_alone(db_session: AsyncSession, seed) -> None:
    enrollment_id = await _open_tuition(db_session, seed)
    receipt = await payments.post_book_fee(
        db_session, seed.branch_id, seed.academic_year_id, enrollment_id, Decimal("2500"),
        idempotency_key="books-extra",
    )
    assert receipt.overpayment_applied == Decimal("1000.00")

    balance = await _concede(db_session, seed, enrollment_id, "0")
    assert all(t.paid == Decimal("0.00") for t in balance.terms)
    assert balance.terms[0].status == TermStatus.PENDING
    assert balance.overpayment_balance == Decimal("1000.00")
    assert balance.book_paid == Decimal("1500.00")


@pytest.mark.asyncio
async def test_concession_with_more_than_two_decimals(db_session: AsyncSession, seed) -> None:
    enrollment_id = await _open_tuition(db_session, seed)
    with pytest.raises(InvalidAmountError):
        await _concede(db_session, seed, enrollment_id, "1000.005")
    with pytest.raises(InvalidAmountError):
        concessions.validate_concession(Decimal("10.125"), Decimal("20000"))


@pytest.mark.asyncio
async def test_lock_is_idempotent_and_unlock_needs_elevated_role(db_session: AsyncSession, seed) -> None:
    enrollment_id = await _open_tuition(db_session, seed)
    first = await concessions.lock_concession(
        db_session, seed.branch_id, seed.academic_year_id, enrollment_id, FeeKind.TUITION,
    )
    again = await concessions.lock_concession(
        db_session, seed.branch_id, seed.academic_year_id, enrollment_id, FeeKind.TUITION,
    )
    assert again.concession_lock is True
    assert again.version == first.version

    with pytest.raises(PermissionDeniedError):
        await concessions.unlock_concession(
            db_session, seed.branch_id, seed.academic_year_id, enrollment_id, FeeKind.TUITION,
            actor_role="ACCOUNTANT",
        )

    unlocked = await concessions.unlock_concession(
        db_session, seed.branch_id, seed.academic_year_id, enrollment_id, FeeKind.TUITION,
        actor_id=uuid4(), actor_role="ADMIN", remarks="approved by principal",
    )
    assert unlocked.concession_lock is False
    balance = await _concede(db_session, seed, enrollment_id, "1000")
    assert balance.concession_amount == Decimal("1000.00")


@pytest.mark.asyncio
async def test_lock_and_unlock_are_audited(db_session: AsyncSession, seed) -> None:
    enrollment_id = await _open_tuition(db_session, seed)
    await concessions.lock_concession(
        db_session, seed.branch_id, seed.academic_year_id, enrollment_id, FeeKind.TUITION,
    )
    admin_id = uuid4()
    await concessions.unlock_concession(
        db_session, seed.branch_id, seed.academic_year_id, enrollment_id, FeeKind.TUITION,
        actor_id=admin_id, actor_role="ADMIN", remarks="fee waiver revised",
    )
    row = await ledger.find_row(db_session, seed.branch_id, seed.academic_year_id, enrollment_id, FeeKind.TUITION)
    unlock = (
        await db_session.execute(
            select(FeeAuditLog).where(FeeAuditLog.reference_id == row.id, FeeAuditLog.action_type == "UNLOCK")
        )
    ).scalar_one()
    assert unlock.changed_by == admin_id
    assert unlock.changed_by_role == "ADMIN"
    assert unlock.remarks == "fee waiver revised"
    assert unlock.old_value["concession_lock"] is True
    assert unlock.new_value["concession_lock"] is False


@pytest.mark.asyncio
async def test_concession_on_cancelled_row(db_session: AsyncSession, seed) -> None:
    enrollment_id = await _open_tuition(db_session, seed)
    await ledger.cancel(db_session, seed.branch_id, seed.academic_year_id, enrollment_id, FeeKind.TUITION, "left")
    with pytest.raises(BalanceCancelledError):
        await _concede(db_session, seed, enrollment_id, "100")
