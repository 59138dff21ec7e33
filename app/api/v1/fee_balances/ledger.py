"""
Fee balance ledger: one row per (enrollment, fee kind).

Owns the derived figures of a row. Every mutation goes through a locked, versioned,
bounded transaction (see app.core.reliability) and leaves the row satisfying:
  total_fee = actual_fee - concession_amount
  term.balance = term.amount - term.paid >= 0, term.status derived from paid/amount
  overall_balance_fee = total_fee - sum(term.paid)
  overpayment_balance >= 0
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.fee_structures.resolver import split_amount, to_money
from app.core.enums import BalanceState, FeeKind, TermStatus
from app.core.exceptions import (
    AlreadyExistsError,
    BalanceCancelledError,
    NotFoundError,
    RowNotFoundError,
    ServiceError,
)
from app.core.models import Enrollment, FeeAuditLog, FeeBalance, FeeBalanceTerm
from app.core.reliability import row_locks, run_atomic

from .schemas import (
    FeeBalanceListResponse,
    FeeBalanceResponse,
    FeeBalanceTermResponse,
    InitialFigures,
)

logger = logging.getLogger("fee_ledger.ledger")

ZERO = Decimal("0.00")


def _to_uuid(val):
    if val is None:
        return None
    return val if isinstance(val, UUID) else UUID(str(val))


def row_key(enrollment_id: UUID, fee_kind: FeeKind) -> Tuple[UUID, FeeKind]:
    return (_to_uuid(enrollment_id), FeeKind(fee_kind))


# --- Derived figures ---
def term_status(amount: Decimal, paid: Decimal) -> TermStatus:
    if paid >= amount:
        return TermStatus.PAID
    if paid == 0:
        return TermStatus.PENDING
    return TermStatus.PARTIAL


def recompute(row: FeeBalance) -> None:
    """Rederive total, per-term balance/status and overall balance from amounts and paid."""
    row.total_fee = to_money(row.actual_fee) - to_money(row.concession_amount)
    paid_sum = ZERO
    for t in row.terms:
        amount, paid = to_money(t.amount), to_money(t.paid)
        t.amount, t.paid = amount, paid
        t.balance = max(ZERO, amount - paid)
        t.status = term_status(amount, paid).value
        paid_sum += paid
    row.overall_balance_fee = row.total_fee - paid_sum
    row.overpayment_balance = to_money(row.overpayment_balance)
    row.book_paid = to_money(row.book_paid)


def apply_to_terms(
    row: FeeBalance, amount: Decimal, term_hint: Optional[int] = None
) -> Tuple[List[Tuple[int, Decimal]], Decimal]:
    """
    Credit amount to the row's open terms; returns ([(term_number, applied)], remainder).

    Starts at term_hint when that term is still open, else at the earliest open term, then
    walks the remaining open terms in term order (wrapping to earlier ones). Only once
    every term is PAID is anything left over.
    """
    remaining = to_money(amount)
    terms = sorted(row.terms, key=lambda t: t.term_number)
    start = 0
    if term_hint is not None:
        for i, t in enumerate(terms):
            if t.term_number == term_hint and to_money(t.paid) < to_money(t.amount):
                start = i
                break
    ordered = terms[start:] + terms[:start] if start else terms

    allocations: List[Tuple[int, Decimal]] = []
    for t in ordered:
        if remaining <= 0:
            break
        open_amount = to_money(t.amount) - to_money(t.paid)
        if open_amount <= 0:
            continue
        applied = min(remaining, open_amount)
        t.paid = to_money(t.paid) + applied
        t.balance = to_money(t.amount) - t.paid
        t.status = term_status(to_money(t.amount), t.paid).value
        remaining -= applied
        allocations.append((t.term_number, applied))
    return allocations, remaining


def check_invariants(row: FeeBalance) -> List[str]:
    """Names of violated ledger rules; empty when the row is consistent."""
    problems = []
    actual, concession = to_money(row.actual_fee), to_money(row.concession_amount)
    if actual < 0:
        problems.append("actual_fee >= 0")
    if concession < 0 or concession > actual:
        problems.append("0 <= concession_amount <= actual_fee")
    if to_money(row.total_fee) != actual - concession:
        problems.append("total_fee = actual_fee - concession_amount")
    if sum((to_money(t.amount) for t in row.terms), ZERO) != to_money(row.total_fee):
        problems.append("sum(term.amount) = total_fee")
    for t in row.terms:
        if to_money(t.paid) < 0 or to_money(t.balance) < 0:
            problems.append(f"term {t.term_number}: paid >= 0 and balance >= 0")
        if to_money(t.balance) != max(ZERO, to_money(t.amount) - to_money(t.paid)):
            problems.append(f"term {t.term_number}: balance = amount - paid")
        if t.status != term_status(to_money(t.amount), to_money(t.paid)).value:
            problems.append(f"term {t.term_number}: status")
    paid_sum = sum((to_money(t.paid) for t in row.terms), ZERO)
    if to_money(row.overall_balance_fee) != to_money(row.total_fee) - paid_sum:
        problems.append("overall_balance_fee = total_fee - sum(term.paid)")
    if to_money(row.overpayment_balance) < 0:
        problems.append("overpayment_balance >= 0")
    if to_money(row.book_paid) < 0:
        problems.append("book_paid >= 0")
    return problems


def finalize(row: FeeBalance, actor_id: Optional[UUID]) -> None:
    """Recompute, verify and stamp a mutated row before commit."""
    recompute(row)
    problems = check_invariants(row)
    if problems:
        raise ServiceError(
            "Fee balance would violate ledger rules",
            details={"enrollment_id": str(row.enrollment_id), "fee_kind": row.fee_kind, "violations": problems},
        )
    row.updated_at = datetime.utcnow()
    row.updated_by = actor_id


def ensure_active(row: FeeBalance) -> None:
    if row.is_cancelled:
        raise BalanceCancelledError(
            "Fee balance is cancelled and cannot be changed",
            {"enrollment_id": str(row.enrollment_id), "fee_kind": row.fee_kind},
        )


def snapshot(row: FeeBalance) -> Dict[str, Any]:
    """JSON-safe figures for the audit trail."""
    return {
        "actual_fee": str(row.actual_fee),
        "concession_amount": str(row.concession_amount),
        "total_fee": str(row.total_fee),
        "overall_balance_fee": str(row.overall_balance_fee),
        "overpayment_balance": str(row.overpayment_balance),
        "book_paid": str(row.book_paid),
        "concession_lock": bool(row.concession_lock),
        "state": row.state,
        "terms": [
            {"term_number": t.term_number, "amount": str(t.amount), "paid": str(t.paid), "status": t.status}
            for t in row.terms
        ],
    }


# --- Audit helper ---
async def log_fee_audit(
    db: AsyncSession,
    branch_id: UUID,
    reference_table: str,
    reference_id: UUID,
    action_type: str,
    old_value: Optional[dict],
    new_value: Optional[dict],
    changed_by: Optional[UUID],
    changed_by_role: Optional[str] = None,
    remarks: Optional[str] = None,
) -> None:
    log = FeeAuditLog(
        branch_id=branch_id,
        reference_table=reference_table,
        reference_id=reference_id,
        action_type=action_type,
        old_value=old_value,
        new_value=new_value,
        changed_by=changed_by,
        changed_by_role=changed_by_role,
        remarks=remarks,
    )
    db.add(log)


def balance_to_response(row: FeeBalance) -> FeeBalanceResponse:
    return FeeBalanceResponse(
        id=_to_uuid(row.id),
        branch_id=_to_uuid(row.branch_id),
        academic_year_id=_to_uuid(row.academic_year_id),
        enrollment_id=_to_uuid(row.enrollment_id),
        fee_kind=row.fee_kind,
        class_id=row.class_id,
        section_id=row.section_id,
        group_id=row.group_id,
        course_id=row.course_id,
        transport_route_id=row.transport_route_id,
        distance_slab_id=row.distance_slab_id,
        actual_fee=to_money(row.actual_fee),
        concession_amount=to_money(row.concession_amount),
        total_fee=to_money(row.total_fee),
        overall_balance_fee=to_money(row.overall_balance_fee),
        overpayment_balance=to_money(row.overpayment_balance),
        book_fee=to_money(row.book_fee),
        book_paid=to_money(row.book_paid),
        book_balance=to_money(row.book_balance),
        terms=[
            FeeBalanceTermResponse(
                term_number=t.term_number,
                percentage=Decimal(t.percentage),
                amount=to_money(t.amount),
                paid=to_money(t.paid),
                balance=to_money(t.balance),
                status=t.status,
            )
            for t in row.terms
        ],
        concession_lock=bool(row.concession_lock),
        state=row.state,
        cancel_reason=row.cancel_reason,
        cancelled_at=row.cancelled_at,
        version=row.version,
        created_at=row.created_at,
        created_by=row.created_by,
        updated_at=row.updated_at,
        updated_by=row.updated_by,
    )


# --- Reads ---
async def get_enrollment(
    db: AsyncSession, branch_id: UUID, academic_year_id: UUID, enrollment_id: UUID
) -> Enrollment:
    enrollment = await db.get(Enrollment, enrollment_id)
    if (
        not enrollment
        or enrollment.branch_id != branch_id
        or enrollment.academic_year_id != academic_year_id
    ):
        raise NotFoundError("Enrollment", enrollment_id)
    return enrollment


async def find_row(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    enrollment_id: UUID,
    fee_kind: FeeKind,
    *,
    for_update: bool = False,
) -> Optional[FeeBalance]:
    stmt = select(FeeBalance).where(
        FeeBalance.branch_id == branch_id,
        FeeBalance.academic_year_id == academic_year_id,
        FeeBalance.enrollment_id == enrollment_id,
        FeeBalance.fee_kind == FeeKind(fee_kind).value,
    )
    if for_update:
        # Reload over whatever the identity map holds; a retried attempt must see committed figures.
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return (await db.execute(stmt)).scalar_one_or_none()


async def load_for_update(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    enrollment_id: UUID,
    fee_kind: FeeKind,
) -> FeeBalance:
    """SELECT ... FOR UPDATE the row inside the caller's transaction."""
    row = await find_row(db, branch_id, academic_year_id, enrollment_id, fee_kind, for_update=True)
    if not row:
        raise RowNotFoundError(enrollment_id, fee_kind)
    return row


async def get(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    enrollment_id: UUID,
    fee_kind: FeeKind,
) -> FeeBalanceResponse:
    row = await find_row(db, branch_id, academic_year_id, enrollment_id, fee_kind)
    if not row:
        raise RowNotFoundError(enrollment_id, fee_kind)
    return balance_to_response(row)


async def list_for_enrollment(
    db: AsyncSession, branch_id: UUID, academic_year_id: UUID, enrollment_id: UUID
) -> List[FeeBalanceResponse]:
    await get_enrollment(db, branch_id, academic_year_id, enrollment_id)
    result = await db.execute(
        select(FeeBalance)
        .where(
            FeeBalance.branch_id == branch_id,
            FeeBalance.academic_year_id == academic_year_id,
            FeeBalance.enrollment_id == enrollment_id,
        )
        .order_by(FeeBalance.fee_kind)
    )
    return [balance_to_response(r) for r in result.scalars().all()]


async def list_by_admission_no(
    db: AsyncSession, branch_id: UUID, academic_year_id: UUID, admission_no: str
) -> List[FeeBalanceResponse]:
    admission_no = admission_no.strip()
    enrollment_ids = (
        await db.execute(
            select(Enrollment.id).where(
                Enrollment.branch_id == branch_id,
                Enrollment.academic_year_id == academic_year_id,
                Enrollment.admission_no == admission_no,
            )
        )
    ).scalars().all()
    if not enrollment_ids:
        raise NotFoundError("Enrollment", details={"admission_no": admission_no})
    result = await db.execute(
        select(FeeBalance)
        .where(
            FeeBalance.branch_id == branch_id,
            FeeBalance.enrollment_id.in_(enrollment_ids),
        )
        .order_by(FeeBalance.enrollment_id, FeeBalance.fee_kind)
    )
    return [balance_to_response(r) for r in result.scalars().all()]


async def list_balances(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    *,
    class_id: Optional[UUID] = None,
    group_id: Optional[UUID] = None,
    course_id: Optional[UUID] = None,
    section_id: Optional[UUID] = None,
    fee_kind: Optional[FeeKind] = None,
    state: Optional[BalanceState] = None,
    page: int = 1,
    page_size: int = 50,
) -> FeeBalanceListResponse:
    filters = [
        FeeBalance.branch_id == branch_id,
        FeeBalance.academic_year_id == academic_year_id,
    ]
    if class_id is not None:
        filters.append(FeeBalance.class_id == class_id)
    if group_id is not None:
        filters.append(FeeBalance.group_id == group_id)
    if course_id is not None:
        filters.append(FeeBalance.course_id == course_id)
    if section_id is not None:
        filters.append(FeeBalance.section_id == section_id)
    if fee_kind is not None:
        filters.append(FeeBalance.fee_kind == FeeKind(fee_kind).value)
    if state is not None:
        filters.append(FeeBalance.state == BalanceState(state).value)

    total = (await db.execute(select(func.count()).select_from(FeeBalance).where(*filters))).scalar_one()
    result = await db.execute(
        select(FeeBalance)
        .where(*filters)
        .order_by(FeeBalance.created_at, FeeBalance.enrollment_id, FeeBalance.fee_kind)
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return FeeBalanceListResponse(
        items=[balance_to_response(r) for r in result.scalars().all()],
        total=total,
        page=page,
        page_size=page_size,
    )


# --- Create ---
async def create_row(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    enrollment_id: UUID,
    fee_kind: FeeKind,
    figures: InitialFigures,
    actor_id: Optional[UUID] = None,
) -> FeeBalance:
    """Insert a row inside the caller's transaction. AlreadyExistsError when the key is taken."""
    fee_kind = FeeKind(fee_kind)
    enrollment = await get_enrollment(db, branch_id, academic_year_id, enrollment_id)
    existing = await find_row(db, branch_id, academic_year_id, enrollment_id, fee_kind)
    if existing:
        raise AlreadyExistsError(
            f"{fee_kind.value} fee balance already exists for this enrollment",
            {"enrollment_id": str(enrollment_id), "fee_kind": fee_kind.value},
        )

    actual = to_money(figures.actual_fee)
    concession = to_money(figures.concession_amount)
    total = actual - concession
    percentages = [Decimal(p) for p in figures.term_percentages]
    amounts = split_amount(total, percentages)
    now = datetime.utcnow()

    row = FeeBalance(
        branch_id=branch_id,
        academic_year_id=academic_year_id,
        enrollment_id=enrollment_id,
        fee_kind=fee_kind.value,
        class_id=figures.class_id or enrollment.class_id,
        section_id=figures.section_id or enrollment.section_id,
        group_id=figures.group_id or enrollment.group_id,
        course_id=figures.course_id or enrollment.course_id,
        transport_route_id=figures.transport_route_id,
        distance_slab_id=figures.distance_slab_id,
        actual_fee=actual,
        concession_amount=concession,
        total_fee=total,
        overall_balance_fee=total,
        overpayment_balance=ZERO,
        book_fee=to_money(figures.book_fee) if fee_kind == FeeKind.TUITION else ZERO,
        book_paid=ZERO,
        concession_lock=False,
        state=BalanceState.ACTIVE.value,
        created_at=now,
        created_by=actor_id,
        updated_at=now,
        updated_by=actor_id,
        terms=[
            FeeBalanceTerm(term_number=i + 1, percentage=pct, amount=amount, paid=ZERO, balance=amount)
            for i, (pct, amount) in enumerate(zip(percentages, amounts))
        ],
    )
    finalize(row, actor_id)
    db.add(row)
    try:
        await db.flush()
    except IntegrityError:
        raise AlreadyExistsError(
            f"{fee_kind.value} fee balance already exists for this enrollment",
            {"enrollment_id": str(enrollment_id), "fee_kind": fee_kind.value},
        )
    await log_fee_audit(
        db, branch_id, "fee_balances", row.id, "CREATE", None, snapshot(row), actor_id,
    )
    return row


async def create(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    enrollment_id: UUID,
    fee_kind: FeeKind,
    figures: InitialFigures,
    actor_id: Optional[UUID] = None,
) -> FeeBalance:
    """Create and commit one ledger row."""
    key = row_key(enrollment_id, fee_kind)

    async def _op() -> FeeBalance:
        return await create_row(db, branch_id, academic_year_id, enrollment_id, fee_kind, figures, actor_id)

    async with row_locks.hold(key):
        row = await run_atomic(
            db, _op,
            description="create fee balance",
            context={"enrollment_id": str(enrollment_id), "fee_kind": key[1].value},
        )
    logger.info(
        "created %s fee balance for enrollment %s (total_fee=%s)",
        key[1].value, enrollment_id, row.total_fee,
    )
    return row


# --- Cancel ---
async def cancel(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    enrollment_id: UUID,
    fee_kind: FeeKind,
    reason: str,
    actor_id: Optional[UUID] = None,
    actor_role: Optional[str] = None,
) -> FeeBalanceResponse:
    """Move a row to the terminal CANCELLED state. The row and its history stay."""
    key = row_key(enrollment_id, fee_kind)

    async def _op() -> FeeBalance:
        row = await load_for_update(db, branch_id, academic_year_id, enrollment_id, fee_kind)
        ensure_active(row)
        old = snapshot(row)
        row.state = BalanceState.CANCELLED.value
        row.cancel_reason = reason.strip()
        row.cancelled_at = datetime.utcnow()
        row.cancelled_by = actor_id
        finalize(row, actor_id)
        await log_fee_audit(
            db, branch_id, "fee_balances", row.id, "CANCEL", old, snapshot(row),
            actor_id, actor_role, remarks=row.cancel_reason,
        )
        return row

    async with row_locks.hold(key):
        row = await run_atomic(
            db, _op,
            description="cancel fee balance",
            context={"enrollment_id": str(enrollment_id), "fee_kind": key[1].value},
        )
    logger.info("cancelled %s fee balance for enrollment %s", key[1].value, enrollment_id)
    return balance_to_response(row)
