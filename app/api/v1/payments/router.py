"""Payments router: post by purpose, refund, history."""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.fee_balances.schemas import PostingResult
from app.auth.dependencies import get_current_user, require_academic_year, require_writable_academic_year
from app.auth.rbac import check_permission
from app.auth.schemas import CurrentUser
from app.db.session import get_db

from .schemas import PaymentCreate, PaymentHistoryResponse, RefundCreate
from . import service

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


@router.post(
    "",
    response_model=PostingResult,
    dependencies=[Depends(check_permission("fees", "update"))],
)
async def create_payment(
    payload: PaymentCreate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_writable_academic_year),
) -> PostingResult:
    return await service.post_payment(
        db,
        current_user.branch_id,
        current_user.academic_year_id,
        payload,
        actor_id=current_user.id,
        actor_role=current_user.role,
    )


@router.post(
    "/refund",
    response_model=PostingResult,
    dependencies=[Depends(check_permission("fees", "update"))],
)
async def refund_payment(
    payload: RefundCreate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_writable_academic_year),
) -> PostingResult:
    return await service.refund(
        db,
        current_user.branch_id,
        current_user.academic_year_id,
        payload,
        actor_id=current_user.id,
        actor_role=current_user.role,
    )


@router.get(
    "/enrollment/{enrollment_id}",
    response_model=PaymentHistoryResponse,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def read_payment_history(
    enrollment_id: UUID,
    academic_year_id: UUID = Depends(require_academic_year),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> PaymentHistoryResponse:
    return await service.payment_history(db, current_user.branch_id, academic_year_id, enrollment_id)
