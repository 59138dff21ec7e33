"""Fee structure router: resolve nominal fees for a placement."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_user, require_academic_year
from app.auth.rbac import check_permission
from app.auth.schemas import CurrentUser
from app.db.session import get_db

from .schemas import FeeStructure
from . import resolver

router = APIRouter(prefix="/api/v1/fee-structures", tags=["fee-structures"])


@router.get(
    "/resolve",
    response_model=FeeStructure,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def resolve_fee_structure(
    class_id: UUID,
    group_id: Optional[UUID] = Query(None),
    course_id: Optional[UUID] = Query(None),
    transport_route_id: Optional[UUID] = Query(None),
    distance_slab_id: Optional[UUID] = Query(None),
    academic_year_id: UUID = Depends(require_academic_year),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> FeeStructure:
    return await resolver.resolve(
        db,
        current_user.branch_id,
        academic_year_id,
        class_id,
        group_id=group_id,
        course_id=course_id,
        transport_route_id=transport_route_id,
        distance_slab_id=distance_slab_id,
    )
