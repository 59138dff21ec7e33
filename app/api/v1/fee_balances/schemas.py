"""Fee balance schemas."""

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.core.enums import BalanceState, FeeKind, PaymentDirection, PaymentMethod, TermStatus


# --- Ledger rows ---
class FeeBalanceTermResponse(BaseModel):
    term_number: int
    percentage: Decimal
    amount: Decimal
    paid: Decimal
    balance: Decimal
    status: TermStatus


class FeeBalanceResponse(BaseModel):
    id: UUID
    branch_id: UUID
    academic_year_id: UUID
    enrollment_id: UUID
    fee_kind: FeeKind

    class_id: Optional[UUID] = None
    section_id: Optional[UUID] = None
    group_id: Optional[UUID] = None
    course_id: Optional[UUID] = None
    transport_route_id: Optional[UUID] = None
    distance_slab_id: Optional[UUID] = None

    actual_fee: Decimal
    concession_amount: Decimal
    total_fee: Decimal
    overall_balance_fee: Decimal
    overpayment_balance: Decimal
    book_fee: Decimal
    book_paid: Decimal
    book_balance: Decimal
    terms: List[FeeBalanceTermResponse]

    concession_lock: bool
    state: BalanceState
    cancel_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    version: int
    created_at: datetime
    created_by: Optional[UUID] = None
    updated_at: datetime
    updated_by: Optional[UUID] = None


class FeeBalanceListResponse(BaseModel):
    items: List[FeeBalanceResponse]
    total: int
    page: int
    page_size: int


class InitialFigures(BaseModel):
    """Opening figures of a ledger row, produced from the resolved structure and the agreed concession."""

    actual_fee: Decimal = Field(..., ge=0)
    concession_amount: Decimal = Field(Decimal("0"), ge=0)
    term_percentages: List[Decimal]
    book_fee: Decimal = Field(Decimal("0"), ge=0)

    class_id: Optional[UUID] = None
    section_id: Optional[UUID] = None
    group_id: Optional[UUID] = None
    course_id: Optional[UUID] = None
    transport_route_id: Optional[UUID] = None
    distance_slab_id: Optional[UUID] = None


class FeeBalanceCreate(BaseModel):
    enrollment_id: UUID
    fee_kind: FeeKind
    concession_amount: Decimal = Decimal("0")


class BalanceRef(BaseModel):
    enrollment_id: UUID
    fee_kind: FeeKind


# --- Payments ---
class TermPaymentRequest(BalanceRef):
    amount: Decimal
    term_number: Optional[int] = Field(None, ge=1, description="Term to apply to first; earliest unpaid term when omitted")
    payment_method: PaymentMethod = PaymentMethod.CASH
    income_date: Optional[date] = None
    transaction_reference: Optional[str] = Field(None, max_length=100)
    idempotency_key: str = Field(..., min_length=1, max_length=100)


class TermAllocation(BaseModel):
    term_number: int
    applied: Decimal


class PostingResult(BaseModel):
    """Itemized outcome of one receipt or refund; what a receipt generator prints."""

    payment_event_id: UUID
    direction: PaymentDirection
    purpose_kind: str
    amount: Decimal
    enrollment_id: Optional[UUID] = None
    reservation_id: Optional[UUID] = None
    fee_kind: Optional[FeeKind] = None
    allocations: List[TermAllocation] = []
    book_applied: Decimal = Decimal("0.00")
    overpayment_applied: Decimal = Decimal("0.00")
    replayed: bool = False
    fee_balance: Optional[FeeBalanceResponse] = None


# --- Concession ---
class ConcessionRequest(BalanceRef):
    concession_amount: Decimal


class ConcessionLockRequest(BalanceRef):
    remarks: Optional[str] = None


class CancelRequest(BalanceRef):
    reason: str = Field(..., min_length=1)


# --- Bulk ---
class BulkInitRequest(BaseModel):
    class_id: UUID
    group_id: Optional[UUID] = None
    course_id: Optional[UUID] = None
    section_id: Optional[UUID] = None
    fee_kind: Optional[FeeKind] = Field(None, description="Only create rows of this kind; both kinds when omitted")


class BulkFailure(BaseModel):
    enrollment_id: UUID
    fee_kind: FeeKind
    error_code: str
    message: str


class BulkInitResult(BaseModel):
    created_count: int
    skipped_enrollment_ids: List[UUID]
    total_requested: int
    failed: List[BulkFailure] = []


# --- Dashboard / reports ---
class FeeTotals(BaseModel):
    row_count: int = 0
    total_actual_fee: Decimal = Decimal("0.00")
    total_concession: Decimal = Decimal("0.00")
    total_net_fee: Decimal = Decimal("0.00")
    total_paid: Decimal = Decimal("0.00")
    total_outstanding: Decimal = Decimal("0.00")
    total_overpayment: Decimal = Decimal("0.00")
    total_book_fee: Decimal = Decimal("0.00")
    total_book_paid: Decimal = Decimal("0.00")
    total_book_outstanding: Decimal = Decimal("0.00")
    term_status_counts: Dict[TermStatus, int] = Field(
        default_factory=lambda: {s: 0 for s in TermStatus}
    )


class DashboardStats(FeeTotals):
    cancelled_count: int = 0
    by_fee_kind: Dict[FeeKind, FeeTotals] = {}


class UnpaidTermItem(BaseModel):
    fee_kind: FeeKind
    term_number: int
    unpaid_count: int
    outstanding_amount: Decimal
