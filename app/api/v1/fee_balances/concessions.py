"""
Concession authority.
Concession reduces actual_fee before term splitting: terms are percentages of total_fee.
Once concession_lock is set only an elevated actor can unlock it, and unlocking is audited.
"""

import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.fee_structures.resolver import MAX_MONEY, split_amount, term_split_for, to_money
from app.auth.schemas import ELEVATED_ROLES
from app.core.enums import FeeKind
from app.core.exceptions import (
    InvalidAmountError,
    InvalidConcessionError,
    LockedError,
    PermissionDeniedError,
)
from app.core.models import FeeBalance
from app.core.reliability import row_locks, run_atomic

from . import ledger
from .schemas import FeeBalanceResponse, InitialFigures

logger = logging.getLogger("fee_ledger.concessions")


def check_concession_amount(amount, details: Optional[dict] = None) -> Decimal:
    """Shape of a concession amount on its own: zero or more, at most 2 decimals."""
    details = dict(details or {})
    if amount is None:
        amount = Decimal("0")
    amount = Decimal(str(amount)) if not isinstance(amount, Decimal) else amount
    if amount < 0:
        raise InvalidAmountError(
            "Concession amount cannot be negative",
            dict(details, concession_amount=str(amount), rule="concession_amount >= 0"),
        )
    if to_money(amount) != amount:
        raise InvalidAmountError(
            "Concession amount cannot have more than 2 decimal places",
            dict(details, concession_amount=str(amount)),
        )
    if amount > MAX_MONEY:
        raise InvalidAmountError(
            "Concession amount is too large",
            dict(details, concession_amount=str(amount), rule=f"concession_amount <= {MAX_MONEY}"),
        )
    return to_money(amount)


def validate_concession(amount, actual_fee, details: Optional[dict] = None) -> Decimal:
    amount = check_concession_amount(amount, details)
    actual_fee = to_money(actual_fee)
    if amount > actual_fee:
        raise InvalidConcessionError(
            "Concession cannot exceed the actual fee",
            dict(
                details or {},
                concession_amount=str(amount),
                actual_fee=str(actual_fee),
                rule="concession_amount <= actual_fee",
            ),
        )
    return amount


def build_initial_figures(
    fee_kind: FeeKind,
    actual_fee: Decimal,
    concession_amount: Decimal = Decimal("0"),
    *,
    book_fee: Decimal = Decimal("0"),
    **placement,
) -> InitialFigures:
    """Opening figures for a new row: resolved fee, validated concession, configured split."""
    concession = validate_concession(concession_amount, actual_fee, {"fee_kind": FeeKind(fee_kind).value})
    return InitialFigures(
        actual_fee=to_money(actual_fee),
        concession_amount=concession,
        term_percentages=term_split_for(fee_kind),
        book_fee=to_money(book_fee),
        **placement,
    )


def _resplit(row: FeeBalance) -> None:
    """Re-split total_fee over the row's term percentages; paid above a term's new amount moves to overpayment."""
    total = to_money(row.actual_fee) - to_money(row.concession_amount)
    terms = sorted(row.terms, key=lambda t: t.term_number)
    amounts = split_amount(total, [Decimal(t.percentage) for t in terms])
    excess = Decimal("0.00")
    for t, amount in zip(terms, amounts):
        t.amount = amount
        paid = to_money(t.paid)
        if paid > amount:
            excess += paid - amount
            t.paid = amount
    row.overpayment_balance = to_money(row.overpayment_balance) + excess


async def apply_concession(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    enrollment_id: UUID,
    fee_kind: FeeKind,
    amount: Decimal,
    actor_id: Optional[UUID] = None,
    actor_role: Optional[str] = None,
) -> FeeBalanceResponse:
    ref = {"enrollment_id": str(enrollment_id), "fee_kind": FeeKind(fee_kind).value}
    if amount is None:
        raise InvalidAmountError("Concession amount is required", dict(ref, rule="concession_amount >= 0"))
    check_concession_amount(amount, ref)
    key = ledger.row_key(enrollment_id, fee_kind)

    async def _op() -> FeeBalance:
        row = await ledger.load_for_update(db, branch_id, academic_year_id, enrollment_id, fee_kind)
        ledger.ensure_active(row)
        if row.concession_lock:
            raise LockedError("Concession is locked for this fee balance", dict(ref, rule="concession_lock = false"))
        concession = validate_concession(amount, row.actual_fee, ref)
        old = ledger.snapshot(row)
        row.concession_amount = concession
        _resplit(row)
        ledger.finalize(row, actor_id)
        await ledger.log_fee_audit(
            db, branch_id, "fee_balances", row.id, "CONCESSION", old, ledger.snapshot(row),
            actor_id, actor_role,
        )
        return row

    async with row_locks.hold(key):
        row = await run_atomic(db, _op, description="apply concession", context=ref)
    logger.info(
        "concession %s applied to %s fee balance of enrollment %s (total_fee=%s)",
        row.concession_amount, ref["fee_kind"], enrollment_id, row.total_fee,
    )
    return ledger.balance_to_response(row)


async def _set_lock(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    enrollment_id: UUID,
    fee_kind: FeeKind,
    locked: bool,
    actor_id: Optional[UUID],
    actor_role: Optional[str],
    remarks: Optional[str],
) -> FeeBalanceResponse:
    ref = {"enrollment_id": str(enrollment_id), "fee_kind": FeeKind(fee_kind).value}
    key = ledger.row_key(enrollment_id, fee_kind)
    action = "LOCK" if locked else "UNLOCK"

    async def _op() -> FeeBalance:
        row = await ledger.load_for_update(db, branch_id, academic_year_id, enrollment_id, fee_kind)
        ledger.ensure_active(row)
        if bool(row.concession_lock) == locked:
            return row
        old = ledger.snapshot(row)
        row.concession_lock = locked
        ledger.finalize(row, actor_id)
        await ledger.log_fee_audit(
            db, branch_id, "fee_balances", row.id, action, old, ledger.snapshot(row),
            actor_id, actor_role, remarks=remarks,
        )
        return row

    async with row_locks.hold(key):
        row = await run_atomic(db, _op, description=f"{action.lower()} concession", context=ref)
    logger.info("concession %s on %s fee balance of enrollment %s by %s", action, ref["fee_kind"], enrollment_id, actor_id)
    return ledger.balance_to_response(row)


async def lock_concession(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    enrollment_id: UUID,
    fee_kind: FeeKind,
    actor_id: Optional[UUID] = None,
    actor_role: Optional[str] = None,
    remarks: Optional[str] = None,
) -> FeeBalanceResponse:
    """Freeze the concession. Locking an already locked row is a no-op."""
    return await _set_lock(
        db, branch_id, academic_year_id, enrollment_id, fee_kind, True, actor_id, actor_role, remarks
    )


async def unlock_concession(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    enrollment_id: UUID,
    fee_kind: FeeKind,
    actor_id: Optional[UUID] = None,
    actor_role: Optional[str] = None,
    remarks: Optional[str] = None,
) -> FeeBalanceResponse:
    if actor_role not in ELEVATED_ROLES:
        raise PermissionDeniedError(
            "Only Admin can unlock a concession",
            {"enrollment_id": str(enrollment_id), "fee_kind": FeeKind(fee_kind).value, "role": actor_role},
        )
    return await _set_lock(
        db, branch_id, academic_year_id, enrollment_id, fee_kind, False, actor_id, actor_role, remarks
    )
