"""Fee balances router: ledger rows, term payments, concessions, bulk init, dashboard."""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_user, require_academic_year, require_writable_academic_year
from app.auth.rbac import check_permission
from app.auth.schemas import CurrentUser
from app.core.enums import BalanceState, FeeKind
from app.db.session import get_db

from .schemas import (
    BulkInitRequest,
    BulkInitResult,
    CancelRequest,
    ConcessionLockRequest,
    ConcessionRequest,
    DashboardStats,
    FeeBalanceCreate,
    FeeBalanceListResponse,
    FeeBalanceResponse,
    PostingResult,
    TermPaymentRequest,
    UnpaidTermItem,
)
from . import bulk, concessions, dashboard, ledger, payments

router = APIRouter(prefix="/api/v1/fee-balances", tags=["fee-balances"])


# --- Reads ---
@router.get(
    "",
    response_model=FeeBalanceListResponse,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def list_fee_balances(
    class_id: Optional[UUID] = Query(None),
    group_id: Optional[UUID] = Query(None),
    course_id: Optional[UUID] = Query(None),
    section_id: Optional[UUID] = Query(None),
    fee_kind: Optional[FeeKind] = Query(None),
    state: Optional[BalanceState] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    academic_year_id: UUID = Depends(require_academic_year),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> FeeBalanceListResponse:
    return await ledger.list_balances(
        db,
        current_user.branch_id,
        academic_year_id,
        class_id=class_id,
        group_id=group_id,
        course_id=course_id,
        section_id=section_id,
        fee_kind=fee_kind,
        state=state,
        page=page,
        page_size=page_size,
    )


@router.get(
    "/dashboard",
    response_model=DashboardStats,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def fee_dashboard(
    class_id: Optional[UUID] = Query(None),
    section_id: Optional[UUID] = Query(None),
    transport_route_id: Optional[UUID] = Query(None),
    fee_kind: Optional[FeeKind] = Query(None),
    academic_year_id: UUID = Depends(require_academic_year),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> DashboardStats:
    return await dashboard.dashboard(
        db,
        current_user.branch_id,
        academic_year_id,
        class_id=class_id,
        section_id=section_id,
        transport_route_id=transport_route_id,
        fee_kind=fee_kind,
    )


@router.get(
    "/reports/unpaid-terms",
    response_model=List[UnpaidTermItem],
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def unpaid_terms_report(
    class_id: Optional[UUID] = Query(None),
    section_id: Optional[UUID] = Query(None),
    transport_route_id: Optional[UUID] = Query(None),
    fee_kind: Optional[FeeKind] = Query(None),
    academic_year_id: UUID = Depends(require_academic_year),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[UnpaidTermItem]:
    return await dashboard.unpaid_terms(
        db,
        current_user.branch_id,
        academic_year_id,
        class_id=class_id,
        section_id=section_id,
        transport_route_id=transport_route_id,
        fee_kind=fee_kind,
    )


@router.get(
    "/enrollment/{enrollment_id}",
    response_model=List[FeeBalanceResponse],
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_enrollment_balances(
    enrollment_id: UUID,
    academic_year_id: UUID = Depends(require_academic_year),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[FeeBalanceResponse]:
    return await ledger.list_for_enrollment(db, current_user.branch_id, academic_year_id, enrollment_id)


@router.get(
    "/admission/{admission_no}",
    response_model=List[FeeBalanceResponse],
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_balances_by_admission_no(
    admission_no: str,
    academic_year_id: UUID = Depends(require_academic_year),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[FeeBalanceResponse]:
    return await ledger.list_by_admission_no(db, current_user.branch_id, academic_year_id, admission_no)


@router.get(
    "/{enrollment_id}/{fee_kind}",
    response_model=FeeBalanceResponse,
    dependencies=[Depends(check_permission("fees", "read"))],
)
async def get_fee_balance(
    enrollment_id: UUID,
    fee_kind: FeeKind,
    academic_year_id: UUID = Depends(require_academic_year),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> FeeBalanceResponse:
    return await ledger.get(db, current_user.branch_id, academic_year_id, enrollment_id, fee_kind)


# --- Create ---
@router.post(
    "",
    response_model=FeeBalanceResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(check_permission("fees", "create"))],
)
async def create_fee_balance(
    payload: FeeBalanceCreate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_writable_academic_year),
) -> FeeBalanceResponse:
    return await bulk.initialize_enrollment(
        db,
        current_user.branch_id,
        current_user.academic_year_id,
        payload.enrollment_id,
        payload.fee_kind,
        concession_amount=payload.concession_amount,
        actor_id=current_user.id,
    )


@router.post(
    "/bulk",
    response_model=BulkInitResult,
    dependencies=[Depends(check_permission("fees", "create"))],
)
async def bulk_create_fee_balances(
    payload: BulkInitRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_writable_academic_year),
) -> BulkInitResult:
    return await bulk.initialize_for_cohort(
        db,
        current_user.branch_id,
        current_user.academic_year_id,
        payload.class_id,
        payload.group_id,
        payload.course_id,
        section_id=payload.section_id,
        fee_kind=payload.fee_kind,
        actor_id=current_user.id,
    )


# --- Mutations ---
@router.patch(
    "/term-payment",
    response_model=PostingResult,
    dependencies=[Depends(check_permission("fees", "update"))],
)
async def post_term_payment(
    payload: TermPaymentRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_writable_academic_year),
) -> PostingResult:
    return await payments.post(
        db,
        current_user.branch_id,
        current_user.academic_year_id,
        payload.enrollment_id,
        payload.fee_kind,
        payload.amount,
        idempotency_key=payload.idempotency_key,
        term_hint=payload.term_number,
        payment_method=payload.payment_method,
        income_date=payload.income_date,
        transaction_reference=payload.transaction_reference,
        actor_id=current_user.id,
        actor_role=current_user.role,
    )


@router.patch(
    "/concession",
    response_model=FeeBalanceResponse,
    dependencies=[Depends(check_permission("fees", "update"))],
)
async def apply_concession(
    payload: ConcessionRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_writable_academic_year),
) -> FeeBalanceResponse:
    return await concessions.apply_concession(
        db,
        current_user.branch_id,
        current_user.academic_year_id,
        payload.enrollment_id,
        payload.fee_kind,
        payload.concession_amount,
        actor_id=current_user.id,
        actor_role=current_user.role,
    )


@router.post(
    "/concession/lock",
    response_model=FeeBalanceResponse,
    dependencies=[Depends(check_permission("fees", "update"))],
)
async def lock_concession(
    payload: ConcessionLockRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_writable_academic_year),
) -> FeeBalanceResponse:
    return await concessions.lock_concession(
        db,
        current_user.branch_id,
        current_user.academic_year_id,
        payload.enrollment_id,
        payload.fee_kind,
        actor_id=current_user.id,
        actor_role=current_user.role,
        remarks=payload.remarks,
    )


@router.post(
    "/concession/unlock",
    response_model=FeeBalanceResponse,
    dependencies=[Depends(check_permission("fees", "update"))],
)
async def unlock_concession(
    payload: ConcessionLockRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_writable_academic_year),
) -> FeeBalanceResponse:
    return await concessions.unlock_concession(
        db,
        current_user.branch_id,
        current_user.academic_year_id,
        payload.enrollment_id,
        payload.fee_kind,
        actor_id=current_user.id,
        actor_role=current_user.role,
        remarks=payload.remarks,
    )


@router.post(
    "/cancel",
    response_model=FeeBalanceResponse,
    dependencies=[Depends(check_permission("fees", "delete"))],
)
async def cancel_fee_balance(
    payload: CancelRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_writable_academic_year),
) -> FeeBalanceResponse:
    return await ledger.cancel(
        db,
        current_user.branch_id,
        current_user.academic_year_id,
        payload.enrollment_id,
        payload.fee_kind,
        payload.reason,
        actor_id=current_user.id,
        actor_role=current_user.role,
    )
