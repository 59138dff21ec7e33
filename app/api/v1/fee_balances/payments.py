"""
Payment poster: applies receipts and refunds to a fee balance row.

Every posting is keyed by a client idempotency key (unique per branch). A retried key
replays the original result without crediting again; the same key with a different
request is rejected. The PaymentEvent and the row mutation commit together.
"""

import hashlib
import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.api.v1.fee_structures.resolver import MAX_MONEY, to_money
from app.core.enums import FeeKind, PaymentDirection, PaymentMethod, PaymentPurposeKind
from app.core.exceptions import (
    IdempotencyKeyConflictError,
    InvalidAmountError,
    NotFoundError,
    ValidationError,
)
from app.core.models import FeeBalance, PaymentEvent
from app.core.reliability import row_locks, run_atomic

from . import ledger
from .schemas import PostingResult, TermAllocation

logger = logging.getLogger("fee_ledger.payments")

ZERO = Decimal("0.00")
TERM_PURPOSE = {
    FeeKind.TUITION: PaymentPurposeKind.TUITION_TERM,
    FeeKind.TRANSPORT: PaymentPurposeKind.TRANSPORT_TERM,
}


# --- Idempotency ---
def request_fingerprint(payload: Dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


async def find_event(db: AsyncSession, branch_id: UUID, idempotency_key: str) -> Optional[PaymentEvent]:
    result = await db.execute(
        select(PaymentEvent).where(
            PaymentEvent.branch_id == branch_id,
            PaymentEvent.idempotency_key == idempotency_key,
        )
    )
    return result.scalar_one_or_none()


def check_replay(event: PaymentEvent, fingerprint: str) -> None:
    if event.request_fingerprint != fingerprint:
        raise IdempotencyKeyConflictError(
            "Idempotency key was already used for a different payment",
            {"idempotency_key": event.idempotency_key, "payment_event_id": str(event.id)},
        )


def validate_amount(amount, **details) -> Decimal:
    if amount is None or Decimal(str(amount)) <= 0:
        raise InvalidAmountError("Amount must be greater than zero", dict(details, amount=str(amount), rule="amount > 0"))
    if to_money(amount) != Decimal(str(amount)):
        raise InvalidAmountError("Amount cannot have more than 2 decimal places", dict(details, amount=str(amount)))
    if to_money(amount) > MAX_MONEY:
        raise InvalidAmountError(
            "Amount is too large", dict(details, amount=str(amount), rule=f"amount <= {MAX_MONEY}")
        )
    return to_money(amount)


def new_event(**fields) -> PaymentEvent:
    fields.setdefault("income_date", None)
    if fields["income_date"] is None:
        fields["income_date"] = date.today()
    fields.setdefault("direction", PaymentDirection.RECEIPT.value)
    return PaymentEvent(created_at=datetime.utcnow(), **fields)


def event_to_result(
    event: PaymentEvent, row: Optional[FeeBalance] = None, replayed: bool = False
) -> PostingResult:
    alloc = event.allocation or {}
    return PostingResult(
        payment_event_id=event.id,
        direction=event.direction,
        purpose_kind=event.purpose_kind,
        amount=to_money(event.amount),
        enrollment_id=event.enrollment_id,
        reservation_id=event.reservation_id,
        fee_kind=event.fee_kind,
        allocations=[TermAllocation(**a) for a in alloc.get("terms", [])],
        book_applied=to_money(alloc.get("book_applied")),
        overpayment_applied=to_money(alloc.get("overpayment_applied")),
        replayed=replayed,
        fee_balance=ledger.balance_to_response(row) if row is not None else None,
    )


def _allocation(terms: List, book_applied: Decimal = ZERO, overpayment_applied: Decimal = ZERO) -> Dict[str, Any]:
    return {
        "terms": [{"term_number": n, "applied": str(a)} for n, a in terms],
        "book_applied": str(to_money(book_applied)),
        "overpayment_applied": str(to_money(overpayment_applied)),
    }


async def _post_to_row(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    enrollment_id: UUID,
    fee_kind: FeeKind,
    *,
    idempotency_key: str,
    fingerprint: str,
    description: str,
    mutate: Callable[[FeeBalance], Awaitable[Dict[str, Any]]],
    event_fields: Dict[str, Any],
    audit_action: str,
    actor_id: Optional[UUID],
    actor_role: Optional[str],
) -> PostingResult:
    """Shared transaction shape of every row posting: replay check, locked load, mutate, event, audit."""
    key = ledger.row_key(enrollment_id, fee_kind)
    context = {"enrollment_id": str(enrollment_id), "fee_kind": key[1].value, "idempotency_key": idempotency_key}

    async def _op() -> PostingResult:
        existing = await find_event(db, branch_id, idempotency_key)
        if existing:
            check_replay(existing, fingerprint)
            row = await ledger.find_row(db, branch_id, academic_year_id, enrollment_id, fee_kind)
            return event_to_result(existing, row, replayed=True)

        row = await ledger.load_for_update(db, branch_id, academic_year_id, enrollment_id, fee_kind)
        ledger.ensure_active(row)
        old = ledger.snapshot(row)
        allocation = await mutate(row)
        ledger.finalize(row, actor_id)
        event = new_event(
            branch_id=branch_id,
            academic_year_id=academic_year_id,
            enrollment_id=enrollment_id,
            fee_balance_id=row.id,
            fee_kind=key[1].value,
            idempotency_key=idempotency_key,
            request_fingerprint=fingerprint,
            allocation=allocation,
            collected_by=actor_id,
            **event_fields,
        )
        db.add(event)
        await db.flush()
        await ledger.log_fee_audit(
            db, branch_id, "fee_balances", row.id, audit_action, old, ledger.snapshot(row),
            actor_id, actor_role, remarks=f"payment_event:{event.id}",
        )
        return event_to_result(event, row)

    async with row_locks.hold(key):
        result = await run_atomic(
            db, _op,
            description=description,
            retry_on=(StaleDataError, IntegrityError),
            context=context,
        )
    if result.replayed:
        logger.info("replayed idempotency key %s (payment event %s)", idempotency_key, result.payment_event_id)
    else:
        logger.info(
            "%s %s on %s fee balance of enrollment %s: terms=%s overpayment=%s",
            description, result.amount, key[1].value, enrollment_id,
            [(a.term_number, str(a.applied)) for a in result.allocations], result.overpayment_applied,
        )
    return result


async def post(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    enrollment_id: UUID,
    fee_kind: FeeKind,
    amount: Decimal,
    *,
    idempotency_key: str,
    term_hint: Optional[int] = None,
    payment_method: PaymentMethod = PaymentMethod.CASH,
    income_date: Optional[date] = None,
    transaction_reference: Optional[str] = None,
    actor_id: Optional[UUID] = None,
    actor_role: Optional[str] = None,
) -> PostingResult:
    """
    Apply a receipt to the (enrollment, fee_kind) row.

    Credit goes to term_hint first when that term is open, otherwise to the earliest open
    term, then across the remaining open terms; whatever is left once every term is PAID
    lands in overpayment_balance. The result itemizes the per-term allocation.
    """
    fee_kind = FeeKind(fee_kind)
    ref = {"enrollment_id": str(enrollment_id), "fee_kind": fee_kind.value}
    amount = validate_amount(amount, **ref)
    purpose = TERM_PURPOSE[fee_kind]
    fingerprint = request_fingerprint({
        "op": "term_payment",
        "enrollment_id": enrollment_id,
        "fee_kind": fee_kind.value,
        "term": term_hint,
        "amount": amount,
        "payment_method": PaymentMethod(payment_method).value,
        "income_date": income_date,
        "transaction_reference": transaction_reference,
    })

    async def _mutate(row: FeeBalance) -> Dict[str, Any]:
        if term_hint is not None and term_hint not in {t.term_number for t in row.terms}:
            raise ValidationError(
                f"Term {term_hint} does not exist on this fee balance",
                dict(ref, term=term_hint, terms=[t.term_number for t in row.terms]),
            )
        terms, remainder = ledger.apply_to_terms(row, amount, term_hint)
        row.overpayment_balance = to_money(row.overpayment_balance) + remainder
        return _allocation(terms, overpayment_applied=remainder)

    return await _post_to_row(
        db, branch_id, academic_year_id, enrollment_id, fee_kind,
        idempotency_key=idempotency_key,
        fingerprint=fingerprint,
        description="post payment",
        mutate=_mutate,
        event_fields={
            "purpose_kind": purpose.value,
            "purpose_term": term_hint,
            "amount": amount,
            "payment_method": PaymentMethod(payment_method).value,
            "transaction_reference": transaction_reference,
            "income_date": income_date,
        },
        audit_action="PAYMENT",
        actor_id=actor_id,
        actor_role=actor_role,
    )


async def post_book_fee(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    enrollment_id: UUID,
    amount: Decimal,
    *,
    idempotency_key: str,
    payment_method: PaymentMethod = PaymentMethod.CASH,
    income_date: Optional[date] = None,
    transaction_reference: Optional[str] = None,
    actor_id: Optional[UUID] = None,
    actor_role: Optional[str] = None,
) -> PostingResult:
    """Book fee is carried on the TUITION row; anything above the book balance goes to overpayment."""
    amount = validate_amount(amount, enrollment_id=str(enrollment_id), fee_kind=FeeKind.TUITION.value)
    fingerprint = request_fingerprint({
        "op": "book_fee",
        "enrollment_id": enrollment_id,
        "amount": amount,
        "payment_method": PaymentMethod(payment_method).value,
        "income_date": income_date,
        "transaction_reference": transaction_reference,
    })

    async def _mutate(row: FeeBalance) -> Dict[str, Any]:
        applied = min(amount, to_money(row.book_balance))
        row.book_paid = to_money(row.book_paid) + applied
        remainder = amount - applied
        row.overpayment_balance = to_money(row.overpayment_balance) + remainder
        return _allocation([], book_applied=applied, overpayment_applied=remainder)

    return await _post_to_row(
        db, branch_id, academic_year_id, enrollment_id, FeeKind.TUITION,
        idempotency_key=idempotency_key,
        fingerprint=fingerprint,
        description="post book fee",
        mutate=_mutate,
        event_fields={
            "purpose_kind": PaymentPurposeKind.BOOK_FEE.value,
            "amount": amount,
            "payment_method": PaymentMethod(payment_method).value,
            "transaction_reference": transaction_reference,
            "income_date": income_date,
        },
        audit_action="PAYMENT",
        actor_id=actor_id,
        actor_role=actor_role,
    )


async def _refundable_for(db: AsyncSession, branch_id: UUID, row: FeeBalance, event_id: UUID) -> Decimal:
    receipt = await db.get(PaymentEvent, event_id)
    if (
        not receipt
        or receipt.branch_id != branch_id
        or receipt.fee_balance_id != row.id
        or receipt.direction != PaymentDirection.RECEIPT.value
    ):
        raise NotFoundError("Receipt", event_id, {"enrollment_id": str(row.enrollment_id), "fee_kind": row.fee_kind})
    refunded = (
        await db.execute(
            select(func.coalesce(func.sum(PaymentEvent.amount), 0)).where(
                PaymentEvent.reverses_event_id == event_id,
                PaymentEvent.direction == PaymentDirection.REFUND.value,
            )
        )
    ).scalar_one()
    return to_money(receipt.amount) - to_money(refunded)


async def refund(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    enrollment_id: UUID,
    fee_kind: FeeKind,
    amount: Decimal,
    *,
    idempotency_key: str,
    reverses_event_id: Optional[UUID] = None,
    reason: Optional[str] = None,
    payment_method: PaymentMethod = PaymentMethod.CASH,
    income_date: Optional[date] = None,
    transaction_reference: Optional[str] = None,
    actor_id: Optional[UUID] = None,
    actor_role: Optional[str] = None,
) -> PostingResult:
    """
    Return money held on a row: overpayment first, then the latest terms, then book fee paid.
    A refund can move a PAID term back to PARTIAL or PENDING.
    """
    fee_kind = FeeKind(fee_kind)
    ref = {"enrollment_id": str(enrollment_id), "fee_kind": fee_kind.value}
    amount = validate_amount(amount, **ref)
    fingerprint = request_fingerprint({
        "op": "refund",
        "enrollment_id": enrollment_id,
        "fee_kind": fee_kind.value,
        "amount": amount,
        "reverses_event_id": reverses_event_id,
        "reason": reason,
        "payment_method": PaymentMethod(payment_method).value,
        "income_date": income_date,
        "transaction_reference": transaction_reference,
    })

    async def _mutate(row: FeeBalance) -> Dict[str, Any]:
        held = (
            to_money(row.overpayment_balance)
            + sum((to_money(t.paid) for t in row.terms), ZERO)
            + to_money(row.book_paid)
        )
        if amount > held:
            raise InvalidAmountError(
                "Refund exceeds the amount held on this fee balance",
                dict(ref, amount=str(amount), held=str(held), rule="refund <= paid + overpayment"),
            )
        if reverses_event_id is not None:
            refundable = await _refundable_for(db, branch_id, row, reverses_event_id)
            if amount > refundable:
                raise InvalidAmountError(
                    "Refund exceeds the unrefunded amount of the receipt",
                    dict(ref, amount=str(amount), refundable=str(refundable),
                         reverses_event_id=str(reverses_event_id)),
                )

        remaining = amount
        from_overpayment = min(remaining, to_money(row.overpayment_balance))
        row.overpayment_balance = to_money(row.overpayment_balance) - from_overpayment
        remaining -= from_overpayment

        terms = []
        for t in sorted(row.terms, key=lambda t: t.term_number, reverse=True):
            if remaining <= 0:
                break
            taken = min(remaining, to_money(t.paid))
            if taken > 0:
                t.paid = to_money(t.paid) - taken
                remaining -= taken
                terms.append((t.term_number, taken))

        from_book = min(remaining, to_money(row.book_paid))
        row.book_paid = to_money(row.book_paid) - from_book
        return _allocation(terms, book_applied=from_book, overpayment_applied=from_overpayment)

    return await _post_to_row(
        db, branch_id, academic_year_id, enrollment_id, fee_kind,
        idempotency_key=idempotency_key,
        fingerprint=fingerprint,
        description="refund",
        mutate=_mutate,
        event_fields={
            "purpose_kind": TERM_PURPOSE[fee_kind].value,
            "purpose_description": reason,
            "direction": PaymentDirection.REFUND.value,
            "amount": amount,
            "payment_method": PaymentMethod(payment_method).value,
            "transaction_reference": transaction_reference,
            "income_date": income_date,
            "reverses_event_id": reverses_event_id,
        },
        audit_action="REFUND",
        actor_id=actor_id,
        actor_role=actor_role,
    )


async def record_other(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    enrollment_id: UUID,
    amount: Decimal,
    description: str,
    *,
    idempotency_key: str,
    payment_method: PaymentMethod = PaymentMethod.CASH,
    income_date: Optional[date] = None,
    transaction_reference: Optional[str] = None,
    actor_id: Optional[UUID] = None,
) -> PostingResult:
    """Money received for a purpose not tied to a fee balance. Logged, never allocated."""
    amount = validate_amount(amount, enrollment_id=str(enrollment_id))
    description = (description or "").strip()
    if not description:
        raise ValidationError("Description is required for an OTHER payment", {"enrollment_id": str(enrollment_id)})
    fingerprint = request_fingerprint({
        "op": "other",
        "enrollment_id": enrollment_id,
        "description": description,
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
        await ledger.get_enrollment(db, branch_id, academic_year_id, enrollment_id)
        event = new_event(
            branch_id=branch_id,
            academic_year_id=academic_year_id,
            enrollment_id=enrollment_id,
            purpose_kind=PaymentPurposeKind.OTHER.value,
            purpose_description=description,
            amount=amount,
            payment_method=PaymentMethod(payment_method).value,
            transaction_reference=transaction_reference,
            income_date=income_date,
            idempotency_key=idempotency_key,
            request_fingerprint=fingerprint,
            allocation=None,
            collected_by=actor_id,
        )
        db.add(event)
        await db.flush()
        return event_to_result(event)

    async with row_locks.hold(("payment", branch_id, idempotency_key)):
        result = await run_atomic(
            db, _op,
            description="record payment",
            retry_on=(IntegrityError,),
            context={"enrollment_id": str(enrollment_id), "idempotency_key": idempotency_key},
        )
    logger.info("recorded OTHER payment %s for enrollment %s", result.amount, enrollment_id)
    return result


async def list_for_enrollment(
    db: AsyncSession, branch_id: UUID, academic_year_id: UUID, enrollment_id: UUID
) -> List[PaymentEvent]:
    await ledger.get_enrollment(db, branch_id, academic_year_id, enrollment_id)
    result = await db.execute(
        select(PaymentEvent)
        .where(
            PaymentEvent.branch_id == branch_id,
            PaymentEvent.enrollment_id == enrollment_id,
        )
        .order_by(PaymentEvent.created_at, PaymentEvent.id)
    )
    return list(result.scalars().all())
