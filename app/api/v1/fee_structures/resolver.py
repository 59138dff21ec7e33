"""
Resolve nominal fees for a placement from master data.
Tuition: class (+ group/course for colleges) -> tuition_fee_structures row, split by TUITION_TERM_SPLIT.
Transport: route + distance slab -> slab fee_amount, split by TRANSPORT_TERM_SPLIT.
Book fee: single lump from the tuition structure, not termed.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.enums import FeeKind
from app.core.exceptions import NotFoundError, ValidationError
from app.core.models import ClassGroup, Course, DistanceSlab, SchoolClass, TransportRoute, TuitionFeeStructure

from .schemas import FeeStructure, TermSplit

CENT = Decimal("0.01")
HUNDRED = Decimal("100")
# Largest value a Numeric(12, 2) money column holds.
MAX_MONEY = Decimal("9999999999.99")


def to_money(val) -> Decimal:
    if val is None:
        return Decimal("0.00")
    if not isinstance(val, Decimal):
        val = Decimal(str(val))
    return val.quantize(CENT, rounding=ROUND_HALF_UP)


def split_amount(total: Decimal, percentages: Sequence[Decimal]) -> List[Decimal]:
    """Split total by percentages; the last term absorbs rounding so the parts always sum to total."""
    total = to_money(total)
    parts: List[Decimal] = []
    allocated = Decimal("0.00")
    for i, pct in enumerate(percentages):
        if i == len(percentages) - 1:
            parts.append(total - allocated)
        else:
            part = to_money(total * Decimal(pct) / HUNDRED)
            parts.append(part)
            allocated += part
    return parts


def term_split_for(fee_kind: FeeKind) -> List[Decimal]:
    if FeeKind(fee_kind) == FeeKind.TRANSPORT:
        return settings.transport_split
    return settings.tuition_split


def build_terms(total: Decimal, percentages: Sequence[Decimal]) -> List[TermSplit]:
    return [
        TermSplit(term_number=i + 1, percentage=Decimal(pct), amount=amount)
        for i, (pct, amount) in enumerate(zip(percentages, split_amount(total, percentages)))
    ]


def _match(column, value: Optional[UUID]):
    return column.is_(None) if value is None else column == value


async def _get_active(db: AsyncSession, model, obj_id: UUID, branch_id: UUID, label: str):
    obj = await db.get(model, obj_id)
    if not obj or obj.branch_id != branch_id or not obj.is_active:
        raise NotFoundError(label, obj_id)
    return obj


async def resolve_tuition(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    class_id: UUID,
    group_id: Optional[UUID] = None,
    course_id: Optional[UUID] = None,
) -> Tuple[Decimal, Decimal]:
    """(tuition_fee, book_fee) for the placement."""
    await _get_active(db, SchoolClass, class_id, branch_id, "Class")
    if group_id is not None:
        group = await _get_active(db, ClassGroup, group_id, branch_id, "Group")
        if group.class_id != class_id:
            raise NotFoundError("Group", group_id, {"class_id": str(class_id)})
    if course_id is not None:
        course = await _get_active(db, Course, course_id, branch_id, "Course")
        if group_id is not None and course.group_id != group_id:
            raise NotFoundError("Course", course_id, {"group_id": str(group_id)})

    structure = (
        await db.execute(
            select(TuitionFeeStructure).where(
                TuitionFeeStructure.branch_id == branch_id,
                TuitionFeeStructure.academic_year_id == academic_year_id,
                TuitionFeeStructure.class_id == class_id,
                _match(TuitionFeeStructure.group_id, group_id),
                _match(TuitionFeeStructure.course_id, course_id),
                TuitionFeeStructure.is_active.is_(True),
            )
        )
    ).scalar_one_or_none()
    if not structure:
        raise NotFoundError(
            "Tuition fee structure",
            details={
                "class_id": str(class_id),
                "group_id": str(group_id) if group_id else None,
                "course_id": str(course_id) if course_id else None,
                "academic_year_id": str(academic_year_id),
            },
        )
    return to_money(structure.tuition_fee), to_money(structure.book_fee)


async def resolve_transport(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    transport_route_id: UUID,
    distance_slab_id: UUID,
) -> Decimal:
    await _get_active(db, TransportRoute, transport_route_id, branch_id, "Transport route")
    slab = await _get_active(db, DistanceSlab, distance_slab_id, branch_id, "Distance slab")
    if slab.academic_year_id != academic_year_id:
        raise NotFoundError("Distance slab", distance_slab_id, {"academic_year_id": str(academic_year_id)})
    return to_money(slab.fee_amount)


async def resolve(
    db: AsyncSession,
    branch_id: UUID,
    academic_year_id: UUID,
    class_id: UUID,
    group_id: Optional[UUID] = None,
    course_id: Optional[UUID] = None,
    transport_route_id: Optional[UUID] = None,
    distance_slab_id: Optional[UUID] = None,
) -> FeeStructure:
    """Read-only; safe to call repeatedly and concurrently."""
    if (transport_route_id is None) != (distance_slab_id is None):
        raise ValidationError(
            "transport_route_id and distance_slab_id must be given together",
            {"transport_route_id": str(transport_route_id) if transport_route_id else None,
             "distance_slab_id": str(distance_slab_id) if distance_slab_id else None},
        )

    tuition_fee, book_fee = await resolve_tuition(
        db, branch_id, academic_year_id, class_id, group_id, course_id
    )
    transport_fee: Optional[Decimal] = None
    transport_terms: List[TermSplit] = []
    if transport_route_id is not None:
        transport_fee = await resolve_transport(
            db, branch_id, academic_year_id, transport_route_id, distance_slab_id
        )
        transport_terms = build_terms(transport_fee, settings.transport_split)

    return FeeStructure(
        class_id=class_id,
        group_id=group_id,
        course_id=course_id,
        transport_route_id=transport_route_id,
        distance_slab_id=distance_slab_id,
        tuition_fee=tuition_fee,
        tuition_terms=build_terms(tuition_fee, settings.tuition_split),
        book_fee=book_fee,
        transport_fee=transport_fee,
        transport_terms=transport_terms,
    )
