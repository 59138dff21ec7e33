"""
Initialize ledger rows for enrollments: one at a time or for a whole cohort.

Fees come from the resolver (cached per placement within a batch), concession from the
concession authority. Each row commits on its own; an existing row is skipped and never
touched, so re-running a cohort only fills in what is missing.
"""

import logging
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.fee_structures.resolver import resolve_transport, resolve_tuition
from app.core.enums import EnrollmentStatus, FeeKind
from app.core.exceptions import AlreadyExistsError, NotFoundError, ServiceError, TransientError
from app.core.models import Enrollment, FeeBalance, TransportAssignment

from . import ledger
from .concessions import build_initial_figures
from .schemas import BulkFailure, BulkInitResult, FeeBalanceResponse, InitialFigures

logger = logging.getLogger("fee_ledger.bulk")


class _Placement:
    """Plain copy of the enrollment fields a batch needs; ORM instances expire on rollback."""

    __slots__ = ("enrollment_id", "class_id", "section_id", "group_id", "course_id", "route_id", "slab_id")

    def __init__(self, enrollment: Enrollment, assignment: Optional[TransportAssignment] = None):
        self.enrollment_id = enrollment.id
        self.class_id = enrollment.class_id
        self.section_id = enrollment.section_id
        self.group_id = enrollment.group_id
        self.course_id = enrollment.course_id
        self.route_id = assignment.route_id if assignment else None
        self.slab_id = assignment.distance_slab_id if assignment else None


class _FigureCache:
    """Resolved fees per placement, so a cohort of one class resolves master data once."""

    def __init__(self, db: AsyncSession, branch_id: UUID, academic_year_id: UUID):
        self.db = db
        self.branch_id = branch_id
        self.academic_year_id = academic_year_id
        self._tuition: Dict[Tuple, Tuple[Decimal, Decimal]] = {}
        self._transport: Dict[Tuple, Decimal] = {}

    async def figures(
        self, placement: _Placement, fee_kind: FeeKind, concession_amount: Decimal = Decimal("0")
    ) -> InitialFigures:
        snapshot = {
            "class_id": placement.class_id,
            "section_id": placement.section_id,
            "group_id": placement.group_id,
            "course_id": placement.course_id,
        }
        if fee_kind == FeeKind.TUITION:
            key = (placement.class_id, placement.group_id, placement.course_id)
            if key not in self._tuition:
                self._tuition[key] = await resolve_tuition(
                    self.db, self.branch_id, self.academic_year_id, *key
                )
            tuition_fee, book_fee = self._tuition[key]
            return build_initial_figures(
                FeeKind.TUITION, tuition_fee, concession_amount, book_fee=book_fee, **snapshot
            )

        if placement.route_id is None:
            raise NotFoundError(
                "Transport assignment", details={"enrollment_id": str(placement.enrollment_id)}
            )
        key = (placement.route_id, placement.slab_id)
        if key not in self._transport:
            self._transport[key] = await resolve_transport(
                self.db, self.branch_id, self.academic_year_id, *key
            )
        return build_initial_figures(
            FeeKind.TRANSPORT,
            self._transport[key],
            concession_amount,
            transport_route_id=placement.route_id,
            distance_slab_id=placement.slab_id,
            **snapshot,
        )


async def _active_assignments(db: AsyncSession, enrollment_ids: List[UUID]) -> Dict[UUID, TransportAssignment]:
    if not enrollment_ids:
        return {}
    result = await db.execute(
        select(TransportAssignment).where(
            TransportAssignment.enrollment_id.in_(enrollment_ids),
            TransportAssignment.is_active.is_(True),
        )
    )
    return {a.enrollment_id: a for a in result.scalars().all()}


async def initialize_enrollment(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    enrollment_id: UUID,
    fee_kind: FeeKind,
    concession_amount: Decimal = Decimal("0"),
    actor_id: Optional[UUID] = None,
) -> FeeBalanceResponse:
    """Single-row create: resolve the enrollment's fees and open its ledger row."""
    fee_kind = FeeKind(fee_kind)
    enrollment = await ledger.get_enrollment(db, branch_id, academic_year_id, enrollment_id)
    assignment = None
    if fee_kind == FeeKind.TRANSPORT:
        assignment = (await _active_assignments(db, [enrollment.id])).get(enrollment.id)
    placement = _Placement(enrollment, assignment)
    figures = await _FigureCache(db, branch_id, academic_year_id).figures(placement, fee_kind, concession_amount)
    row = await ledger.create(db, branch_id, academic_year_id, enrollment_id, fee_kind, figures, actor_id)
    return ledger.balance_to_response(row)


async def initialize_for_cohort(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    class_id: UUID,
    group_id: Optional[UUID] = None,
    course_id: Optional[UUID] = None,
    *,
    section_id: Optional[UUID] = None,
    fee_kind: Optional[FeeKind] = None,
    actor_id: Optional[UUID] = None,
) -> BulkInitResult:
    """
    Create missing TUITION rows (and TRANSPORT rows for enrollments with an active transport
    assignment) for every ACTIVE enrollment of the cohort. group_id / course_id / section_id
    narrow the cohort when given.

    Enrollments with an existing row are reported in skipped_enrollment_ids; per-enrollment
    failures (e.g. no fee structure) are reported in failed. A TransientError aborts the batch.
    """
    filters = [
        Enrollment.branch_id == branch_id,
        Enrollment.academic_year_id == academic_year_id,
        Enrollment.class_id == class_id,
        Enrollment.status == EnrollmentStatus.ACTIVE.value,
    ]
    if group_id is not None:
        filters.append(Enrollment.group_id == group_id)
    if course_id is not None:
        filters.append(Enrollment.course_id == course_id)
    if section_id is not None:
        filters.append(Enrollment.section_id == section_id)
    enrollments = (
        await db.execute(select(Enrollment).where(*filters).order_by(Enrollment.admission_no, Enrollment.id))
    ).scalars().all()

    kinds = [FeeKind(fee_kind)] if fee_kind is not None else [FeeKind.TUITION, FeeKind.TRANSPORT]
    ids = [e.id for e in enrollments]
    assignments = await _active_assignments(db, ids) if FeeKind.TRANSPORT in kinds else {}
    placements = [_Placement(e, assignments.get(e.id)) for e in enrollments]

    existing: Set[Tuple[UUID, str]] = set()
    if ids:
        result = await db.execute(
            select(FeeBalance.enrollment_id, FeeBalance.fee_kind).where(
                FeeBalance.branch_id == branch_id,
                FeeBalance.academic_year_id == academic_year_id,
                FeeBalance.enrollment_id.in_(ids),
            )
        )
        existing = {(eid, kind) for eid, kind in result.all()}
    # Release the read transaction; each create below runs in its own.
    await db.commit()

    cache = _FigureCache(db, branch_id, academic_year_id)
    created_count = 0
    skipped: List[UUID] = []
    failed: List[BulkFailure] = []

    for p in placements:
        was_skipped = False
        for kind in kinds:
            if kind == FeeKind.TRANSPORT and p.route_id is None:
                continue
            if (p.enrollment_id, kind.value) in existing:
                was_skipped = True
                continue
            try:
                figures = await cache.figures(p, kind)
                await ledger.create(db, branch_id, academic_year_id, p.enrollment_id, kind, figures, actor_id)
                created_count += 1
            except AlreadyExistsError:
                was_skipped = True
            except TransientError as exc:
                logger.error(
                    "bulk initialize aborted at enrollment %s after %d rows: %s",
                    p.enrollment_id, created_count, exc.message,
                )
                raise TransientError(
                    exc.message,
                    dict(exc.details, created_count=created_count, aborted_at_enrollment_id=str(p.enrollment_id)),
                )
            except ServiceError as exc:
                await db.rollback()
                failed.append(
                    BulkFailure(
                        enrollment_id=p.enrollment_id,
                        fee_kind=kind,
                        error_code=exc.error_code,
                        message=exc.message,
                    )
                )
        if was_skipped:
            skipped.append(p.enrollment_id)

    logger.info(
        "bulk initialize class %s: requested=%d created=%d skipped=%d failed=%d",
        class_id, len(placements), created_count, len(skipped), len(failed),
    )
    return BulkInitResult(
        created_count=created_count,
        skipped_enrollment_ids=skipped,
        total_requested=len(placements),
        failed=failed,
    )
