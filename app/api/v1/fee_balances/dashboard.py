"""
Read-only aggregates over ledger rows.

Totals are computed from a single SELECT (rows joined with their terms), so one statement
snapshot backs the whole result and no row locks are taken. Any failure reports
"stats unavailable" rather than partial figures.
"""

import logging
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.fee_structures.resolver import to_money
from app.core.enums import BalanceState, FeeKind, TermStatus
from app.core.exceptions import StatsUnavailableError
from app.core.models import FeeBalance, FeeBalanceTerm

from .schemas import DashboardStats, FeeTotals, UnpaidTermItem

logger = logging.getLogger("fee_ledger.dashboard")


def _scope_filters(
    branch_id: UUID,
    academic_year_id: UUID,
    class_id: Optional[UUID],
    section_id: Optional[UUID],
    transport_route_id: Optional[UUID],
    fee_kind: Optional[FeeKind],
) -> list:
    filters = [
        FeeBalance.branch_id == branch_id,
        FeeBalance.academic_year_id == academic_year_id,
    ]
    if class_id is not None:
        filters.append(FeeBalance.class_id == class_id)
    if section_id is not None:
        filters.append(FeeBalance.section_id == section_id)
    if transport_route_id is not None:
        filters.append(FeeBalance.transport_route_id == transport_route_id)
    if fee_kind is not None:
        filters.append(FeeBalance.fee_kind == FeeKind(fee_kind).value)
    return filters


def _add_row(totals: FeeTotals, row) -> None:
    totals.row_count += 1
    totals.total_actual_fee += to_money(row.actual_fee)
    totals.total_concession += to_money(row.concession_amount)
    totals.total_net_fee += to_money(row.total_fee)
    totals.total_outstanding += to_money(row.overall_balance_fee)
    totals.total_overpayment += to_money(row.overpayment_balance)
    totals.total_book_fee += to_money(row.book_fee)
    totals.total_book_paid += to_money(row.book_paid)
    totals.total_book_outstanding += max(Decimal("0.00"), to_money(row.book_fee) - to_money(row.book_paid))


def _add_term(totals: FeeTotals, paid, status: str) -> None:
    totals.total_paid += to_money(paid)
    totals.term_status_counts[TermStatus(status)] += 1


async def dashboard(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    *,
    class_id: Optional[UUID] = None,
    section_id: Optional[UUID] = None,
    transport_route_id: Optional[UUID] = None,
    fee_kind: Optional[FeeKind] = None,
) -> DashboardStats:
    """Totals over ACTIVE rows in scope; cancelled rows are only counted."""
    stmt = (
        select(
            FeeBalance.id,
            FeeBalance.fee_kind,
            FeeBalance.state,
            FeeBalance.actual_fee,
            FeeBalance.concession_amount,
            FeeBalance.total_fee,
            FeeBalance.overall_balance_fee,
            FeeBalance.overpayment_balance,
            FeeBalance.book_fee,
            FeeBalance.book_paid,
            FeeBalanceTerm.term_number,
            FeeBalanceTerm.paid.label("term_paid"),
            FeeBalanceTerm.status.label("term_status"),
        )
        .outerjoin(FeeBalanceTerm, FeeBalanceTerm.fee_balance_id == FeeBalance.id)
        .where(*_scope_filters(branch_id, academic_year_id, class_id, section_id, transport_route_id, fee_kind))
        .order_by(FeeBalance.id, FeeBalanceTerm.term_number)
    )
    try:
        rows = (await db.execute(stmt)).all()
    except SQLAlchemyError as exc:
        logger.error("dashboard query failed: %s", exc)
        raise StatsUnavailableError(details={"reason": type(exc).__name__})

    try:
        stats = DashboardStats()
        per_kind: Dict[FeeKind, FeeTotals] = {}
        seen = set()
        cancelled = set()
        for r in rows:
            if r.state == BalanceState.CANCELLED.value:
                cancelled.add(r.id)
                continue
            kind = FeeKind(r.fee_kind)
            kind_totals = per_kind.setdefault(kind, FeeTotals())
            if r.id not in seen:
                seen.add(r.id)
                _add_row(stats, r)
                _add_row(kind_totals, r)
            if r.term_number is not None:
                _add_term(stats, r.term_paid, r.term_status)
                _add_term(kind_totals, r.term_paid, r.term_status)
        stats.cancelled_count = len(cancelled)
        stats.by_fee_kind = per_kind
    except (ArithmeticError, ValueError, KeyError) as exc:
        logger.error("dashboard aggregation failed: %s", exc)
        raise StatsUnavailableError(details={"reason": type(exc).__name__})
    return stats


async def unpaid_terms(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    *,
    class_id: Optional[UUID] = None,
    section_id: Optional[UUID] = None,
    transport_route_id: Optional[UUID] = None,
    fee_kind: Optional[FeeKind] = None,
) -> List[UnpaidTermItem]:
    """Per fee kind and term: how many ACTIVE rows have that term not PAID, and the amount still due."""
    stmt = (
        select(
            FeeBalance.fee_kind,
            FeeBalanceTerm.term_number,
            func.count(FeeBalanceTerm.id),
            func.sum(FeeBalanceTerm.balance),
        )
        .join(FeeBalanceTerm, FeeBalanceTerm.fee_balance_id == FeeBalance.id)
        .where(
            *_scope_filters(branch_id, academic_year_id, class_id, section_id, transport_route_id, fee_kind),
            FeeBalance.state == BalanceState.ACTIVE.value,
            FeeBalanceTerm.status != TermStatus.PAID.value,
        )
        .group_by(FeeBalance.fee_kind, FeeBalanceTerm.term_number)
        .order_by(FeeBalance.fee_kind, FeeBalanceTerm.term_number)
    )
    try:
        rows = (await db.execute(stmt)).all()
    except SQLAlchemyError as exc:
        logger.error("unpaid terms report failed: %s", exc)
        raise StatsUnavailableError(details={"reason": type(exc).__name__})
    return [
        UnpaidTermItem(
            fee_kind=kind,
            term_number=term_number,
            unpaid_count=count,
            outstanding_amount=to_money(outstanding),
        )
        for kind, term_number, count, outstanding in rows
    ]
