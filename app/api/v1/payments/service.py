"""Payments service: route a payment by its purpose, refunds, per-enrollment history."""

from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.fee_balances import payments as poster
from app.api.v1.fee_balances.schemas import PostingResult
from app.api.v1.fee_structures.resolver import to_money
from app.api.v1.reservations import service as reservations
from app.core.enums import FeeKind, PaymentDirection, PaymentPurposeKind
from app.core.exceptions import ValidationError

from .schemas import (
    ApplicationFeePurpose,
    BookFeePurpose,
    OtherPurpose,
    PaymentCreate,
    PaymentEventResponse,
    PaymentHistoryResponse,
    RefundCreate,
    ReservationFeePurpose,
    TransportTermPurpose,
    TuitionTermPurpose,
)


def _require(value, field: str, purpose: str):
    if value is None:
        raise ValidationError(f"{field} is required for a {purpose} payment", {"field": field, "purpose": purpose})
    return value


async def post_payment(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    payload: PaymentCreate,
    actor_id: Optional[UUID] = None,
    actor_role: Optional[str] = None,
) -> PostingResult:
    purpose = payload.purpose
    common = dict(
        idempotency_key=payload.idempotency_key,
        payment_method=payload.payment_method,
        income_date=payload.income_date,
        transaction_reference=payload.transaction_reference,
    )

    if isinstance(purpose, (TuitionTermPurpose, TransportTermPurpose)):
        fee_kind = FeeKind.TUITION if isinstance(purpose, TuitionTermPurpose) else FeeKind.TRANSPORT
        enrollment_id = _require(payload.enrollment_id, "enrollment_id", purpose.kind)
        return await poster.post(
            db, branch_id, academic_year_id, enrollment_id, fee_kind, payload.amount,
            term_hint=purpose.term, actor_id=actor_id, actor_role=actor_role, **common,
        )
    if isinstance(purpose, BookFeePurpose):
        enrollment_id = _require(payload.enrollment_id, "enrollment_id", purpose.kind)
        return await poster.post_book_fee(
            db, branch_id, academic_year_id, enrollment_id, payload.amount,
            actor_id=actor_id, actor_role=actor_role, **common,
        )
    if isinstance(purpose, (ApplicationFeePurpose, ReservationFeePurpose)):
        reservation_id = _require(payload.reservation_id, "reservation_id", purpose.kind)
        return await reservations.post_reservation_payment(
            db, branch_id, reservation_id, PaymentPurposeKind(purpose.kind), payload.amount,
            actor_id=actor_id, **common,
        )
    if isinstance(purpose, OtherPurpose):
        enrollment_id = _require(payload.enrollment_id, "enrollment_id", purpose.kind)
        return await poster.record_other(
            db, branch_id, academic_year_id, enrollment_id, payload.amount, purpose.description,
            actor_id=actor_id, **common,
        )
    raise ValidationError("Unsupported payment purpose", {"purpose": getattr(purpose, "kind", None)})


async def refund(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    payload: RefundCreate,
    actor_id: Optional[UUID] = None,
    actor_role: Optional[str] = None,
) -> PostingResult:
    return await poster.refund(
        db,
        branch_id,
        academic_year_id,
        payload.enrollment_id,
        payload.fee_kind,
        payload.amount,
        idempotency_key=payload.idempotency_key,
        reverses_event_id=payload.reverses_event_id,
        reason=payload.reason,
        payment_method=payload.payment_method,
        income_date=payload.income_date,
        transaction_reference=payload.transaction_reference,
        actor_id=actor_id,
        actor_role=actor_role,
    )


async def payment_history(
    db: AsyncSession, branch_id: UUID, academic_year_id: UUID, enrollment_id: UUID
) -> PaymentHistoryResponse:
    events = await poster.list_for_enrollment(db, branch_id, academic_year_id, enrollment_id)
    received = refunded = Decimal("0.00")
    for e in events:
        if e.direction == PaymentDirection.REFUND.value:
            refunded += to_money(e.amount)
        else:
            received += to_money(e.amount)
    return PaymentHistoryResponse(
        enrollment_id=enrollment_id,
        total_received=received,
        total_refunded=refunded,
        events=[PaymentEventResponse.model_validate(e) for e in events],
    )
