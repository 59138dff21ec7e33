"""Reservation fee snapshots: capture at reservation, collect application/reservation fees, convert on admission."""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.api.v1.fee_balances import ledger
from app.api.v1.fee_balances.concessions import build_initial_figures, validate_concession
from app.api.v1.fee_balances.payments import (
    check_replay,
    event_to_result,
    find_event,
    new_event,
    request_fingerprint,
    validate_amount,
)
from app.api.v1.fee_balances.schemas import PostingResult
from app.api.v1.fee_structures.resolver import resolve, to_money
from app.core.enums import FeeKind, PaymentMethod, PaymentPurposeKind, ReservationStatus
from app.core.exceptions import (
    AlreadyExistsError,
    InvalidAmountError,
    LockedError,
    NotFoundError,
    ValidationError,
)
from app.core.models import ReservationFeeSnapshot
from app.core.reliability import row_locks, run_atomic

from .schemas import ReservationConvertResult, ReservationSnapshotCreate, ReservationSnapshotResponse

logger = logging.getLogger("fee_ledger.reservations")

RESERVATION_PURPOSES = {
    PaymentPurposeKind.APPLICATION_FEE: ("application_fee", "application_fee_paid"),
    PaymentPurposeKind.RESERVATION_FEE: ("reservation_fee", "reservation_fee_paid"),
}


def _snapshot_to_response(s: ReservationFeeSnapshot) -> ReservationSnapshotResponse:
    return ReservationSnapshotResponse.model_validate(s)


def _reservation_key(reservation_id: UUID):
    return ("reservation", reservation_id)


async def _load(
    db: AsyncSession, branch_id: UUID, reservation_id: UUID, *, for_update: bool = False
) -> ReservationFeeSnapshot:
    stmt = select(ReservationFeeSnapshot).where(
        ReservationFeeSnapshot.branch_id == branch_id,
        ReservationFeeSnapshot.reservation_id == reservation_id,
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    snapshot = (await db.execute(stmt)).scalar_one_or_none()
    if not snapshot:
        raise NotFoundError("Reservation fee snapshot", reservation_id)
    return snapshot


async def create_snapshot(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    payload: ReservationSnapshotCreate,
    actor_id: Optional[UUID] = None,
) -> ReservationSnapshotResponse:
    """Freeze projected fees for a reservation from current master data and the agreed concessions."""
    structure = await resolve(
        db,
        branch_id,
        academic_year_id,
        payload.class_id,
        group_id=payload.group_id,
        course_id=payload.course_id,
        transport_route_id=payload.transport_route_id,
        distance_slab_id=payload.distance_slab_id,
    )
    ref = {"reservation_id": str(payload.reservation_id)}
    tuition_concession = validate_concession(
        payload.tuition_concession, structure.tuition_fee, dict(ref, fee_kind=FeeKind.TUITION.value)
    )
    transport_fee = structure.transport_fee or Decimal("0.00")
    transport_concession = validate_concession(
        payload.transport_concession, transport_fee, dict(ref, fee_kind=FeeKind.TRANSPORT.value)
    )

    now = datetime.utcnow()
    snapshot = ReservationFeeSnapshot(
        branch_id=branch_id,
        academic_year_id=academic_year_id,
        reservation_id=payload.reservation_id,
        reservation_no=payload.reservation_no,
        student_name=payload.student_name,
        class_id=payload.class_id,
        group_id=payload.group_id,
        course_id=payload.course_id,
        transport_route_id=payload.transport_route_id,
        distance_slab_id=payload.distance_slab_id,
        application_fee=to_money(payload.application_fee),
        application_fee_paid=Decimal("0.00"),
        reservation_fee=to_money(payload.reservation_fee),
        reservation_fee_paid=Decimal("0.00"),
        tuition_fee=structure.tuition_fee,
        tuition_concession=tuition_concession,
        book_fee=structure.book_fee,
        transport_fee=transport_fee,
        transport_concession=transport_concession,
        status=ReservationStatus.OPEN.value,
        created_at=now,
        created_by=actor_id,
        updated_at=now,
    )
    try:
        db.add(snapshot)
        await db.flush()
        await ledger.log_fee_audit(
            db, branch_id, "reservation_fee_snapshots", snapshot.id, "CREATE", None,
            {
                "reservation_id": str(payload.reservation_id),
                "tuition_fee": str(snapshot.tuition_fee),
                "tuition_concession": str(tuition_concession),
                "transport_fee": str(transport_fee),
                "transport_concession": str(transport_concession),
            },
            actor_id,
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise AlreadyExistsError("Fee snapshot already exists for this reservation", ref)
    logger.info("captured fee snapshot for reservation %s", payload.reservation_id)
    return _snapshot_to_response(snapshot)


async def get_snapshot(db: AsyncSession, branch_id: UUID, reservation_id: UUID) -> ReservationSnapshotResponse:
    return _snapshot_to_response(await _load(db, branch_id, reservation_id))


async def post_reservation_payment(
    db: AsyncSession,
    branch_id: UUID,
    reservation_id: UUID,
    purpose_kind: PaymentPurposeKind,
    amount: Decimal,
    *,
    idempotency_key: str,
    payment_method: PaymentMethod = PaymentMethod.CASH,
    income_date: Optional[date] = None,
    transaction_reference: Optional[str] = None,
    actor_id: Optional[UUID] = None,
) -> PostingResult:
    """Collect an application or reservation fee against the snapshot; cannot exceed what is due."""
    purpose_kind = PaymentPurposeKind(purpose_kind)
    if purpose_kind not in RESERVATION_PURPOSES:
        raise ValidationError("Not a reservation payment purpose", {"purpose_kind": purpose_kind.value})
    fee_field, paid_field = RESERVATION_PURPOSES[purpose_kind]
    ref = {"reservation_id": str(reservation_id), "purpose_kind": purpose_kind.value}
    amount = validate_amount(amount, **ref)
    fingerprint = request_fingerprint({
        "op": "reservation_payment",
        "reservation_id": reservation_id,
        "purpose_kind": purpose_kind.value,
        "amount": amount,
        "payment_method": PaymentMethod(payment_method).value,
        "income_date": income_date,
        "transaction_reference": transaction_reference,
    })

    async def _op() -> PostingResult:
        existing = await find_event(db, branch_id, idempotency_key)
        if existing:
            check_replay(existing, fingerprint)
            return event_to_result(existing, replayed=True)
        snapshot = await _load(db, branch_id, reservation_id, for_update=True)
        if snapshot.status != ReservationStatus.OPEN.value:
            raise LockedError("Reservation is already converted", dict(ref, status=snapshot.status))
        due = to_money(getattr(snapshot, fee_field)) - to_money(getattr(snapshot, paid_field))
        if amount > due:
            raise InvalidAmountError(
                f"Amount exceeds the outstanding {fee_field.replace('_', ' ')}",
                dict(ref, amount=str(amount), outstanding=str(due)),
            )
        setattr(snapshot, paid_field, to_money(getattr(snapshot, paid_field)) + amount)
        snapshot.updated_at = datetime.utcnow()
        event = new_event(
            branch_id=branch_id,
            academic_year_id=snapshot.academic_year_id,
            reservation_id=reservation_id,
            purpose_kind=purpose_kind.value,
            amount=amount,
            payment_method=PaymentMethod(payment_method).value,
            transaction_reference=transaction_reference,
            income_date=income_date,
            idempotency_key=idempotency_key,
            request_fingerprint=fingerprint,
            allocation={"terms": [], paid_field: str(amount)},
            collected_by=actor_id,
        )
        db.add(event)
        await db.flush()
        return event_to_result(event)

    async with row_locks.hold(_reservation_key(reservation_id)):
        result = await run_atomic(
            db, _op,
            description="post reservation payment",
            retry_on=(StaleDataError, IntegrityError),
            context=ref,
        )
    logger.info("%s %s for reservation %s%s", purpose_kind.value, amount, reservation_id, " (replayed)" if result.replayed else "")
    return result


async def convert(
    db: AsyncSession,
    branch_id: UUID,
    reservation_id: UUID,
    enrollment_id: UUID,
    actor_id: Optional[UUID] = None,
) -> ReservationConvertResult:
    """
    Seed the enrollment's ledger rows from the snapshot figures, not from master data,
    so the concession agreed at reservation carries over. Application and reservation fees
    stay on the reservation. All rows and the status change commit together.
    """
    ref = {"reservation_id": str(reservation_id), "enrollment_id": str(enrollment_id)}

    async def _op():
        snapshot = await _load(db, branch_id, reservation_id, for_update=True)
        if snapshot.status != ReservationStatus.OPEN.value:
            raise AlreadyExistsError(
                "Reservation is already converted",
                dict(ref, converted_enrollment_id=str(snapshot.converted_enrollment_id)),
            )
        academic_year_id = snapshot.academic_year_id
        rows = [
            await ledger.create_row(
                db, branch_id, academic_year_id, enrollment_id, FeeKind.TUITION,
                build_initial_figures(
                    FeeKind.TUITION,
                    snapshot.tuition_fee,
                    snapshot.tuition_concession,
                    book_fee=snapshot.book_fee,
                ),
                actor_id,
            )
        ]
        if snapshot.transport_route_id is not None:
            rows.append(
                await ledger.create_row(
                    db, branch_id, academic_year_id, enrollment_id, FeeKind.TRANSPORT,
                    build_initial_figures(
                        FeeKind.TRANSPORT,
                        snapshot.transport_fee,
                        snapshot.transport_concession,
                        transport_route_id=snapshot.transport_route_id,
                        distance_slab_id=snapshot.distance_slab_id,
                    ),
                    actor_id,
                )
            )
        snapshot.status = ReservationStatus.CONVERTED.value
        snapshot.converted_enrollment_id = enrollment_id
        snapshot.converted_at = datetime.utcnow()
        snapshot.updated_at = snapshot.converted_at
        await ledger.log_fee_audit(
            db, branch_id, "reservation_fee_snapshots", snapshot.id, "CONVERT",
            {"status": ReservationStatus.OPEN.value},
            {"status": snapshot.status, "enrollment_id": str(enrollment_id),
             "fee_balance_ids": [str(r.id) for r in rows]},
            actor_id,
        )
        return snapshot, rows

    async with row_locks.hold(_reservation_key(reservation_id)):
        async with row_locks.hold(ledger.row_key(enrollment_id, FeeKind.TUITION)):
            async with row_locks.hold(ledger.row_key(enrollment_id, FeeKind.TRANSPORT)):
                snapshot, rows = await run_atomic(db, _op, description="convert reservation", context=ref)
    logger.info("converted reservation %s into enrollment %s (%d rows)", reservation_id, enrollment_id, len(rows))
    return ReservationConvertResult(
        reservation=_snapshot_to_response(snapshot),
        fee_balances=[ledger.balance_to_response(r) for r in rows],
    )
