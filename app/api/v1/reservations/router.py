"""Reservations router: fee snapshot capture, lookup and conversion to enrollment."""

from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_user, require_writable_academic_year
from app.auth.rbac import check_permission
from app.auth.schemas import CurrentUser
from app.db.session import get_db

from .schemas import (
    ReservationConvertRequest,
    ReservationConvertResult,
    ReservationSnapshotCreate,
    ReservationSnapshotResponse,
)
from . import service

router = APIRouter(prefix="/api/v1/reservations", tags=["reservations"])


@router.post(
    "/fee-snapshots",
    response_model=ReservationSnapshotResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(check_permission("fees", "create"))],
)
async def create_fee_snapshot(
    payload: ReservationSnapshotCreate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_writable_academic_year),
) -> ReservationSnapshotResponse:
    return await service.create_snapshot(
        db, current_user.branch_id, current_user.academic_year_id, payload, actor_id=current_user.id
    )


@router.get(
    "/{reservation_id}/fee-snapshot",
    response_model=ReservationSnapshotResponse,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_fee_snapshot(
    reservation_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> ReservationSnapshotResponse:
    return await service.get_snapshot(db, current_user.branch_id, reservation_id)


@router.post(
    "/{reservation_id}/convert",
    response_model=ReservationConvertResult,
    dependencies=[Depends(check_permission("fees", "create"))],
)
async def convert_reservation(
    reservation_id: UUID,
    payload: ReservationConvertRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_writable_academic_year),
) -> ReservationConvertResult:
    return await service.convert(
        db, current_user.branch_id, reservation_id, payload.enrollment_id, actor_id=current_user.id
    )
