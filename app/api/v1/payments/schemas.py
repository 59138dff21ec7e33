"""Payment schemas. Purpose is a closed variant tagged by `kind`."""

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, List, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field

from app.core.enums import FeeKind, PaymentDirection, PaymentMethod, PaymentPurposeKind


class TuitionTermPurpose(BaseModel):
    kind: Literal["TUITION_TERM"] = "TUITION_TERM"
    term: int = Field(..., ge=1)


class TransportTermPurpose(BaseModel):
    kind: Literal["TRANSPORT_TERM"] = "TRANSPORT_TERM"
    term: int = Field(..., ge=1)


class BookFeePurpose(BaseModel):
    kind: Literal["BOOK_FEE"] = "BOOK_FEE"


class ApplicationFeePurpose(BaseModel):
    kind: Literal["APPLICATION_FEE"] = "APPLICATION_FEE"


class ReservationFeePurpose(BaseModel):
    kind: Literal["RESERVATION_FEE"] = "RESERVATION_FEE"


class OtherPurpose(BaseModel):
    kind: Literal["OTHER"] = "OTHER"
    description: str = Field(..., min_length=1, max_length=500)


PaymentPurpose = Annotated[
    Union[
        TuitionTermPurpose,
        TransportTermPurpose,
        BookFeePurpose,
        ApplicationFeePurpose,
        ReservationFeePurpose,
        OtherPurpose,
    ],
    Field(discriminator="kind"),
]


class PaymentCreate(BaseModel):
    """
    Enrollment payments (term, book fee, other) need enrollment_id;
    application/reservation fee payments need reservation_id.
    """

    purpose: PaymentPurpose
    amount: Decimal
    enrollment_id: Optional[UUID] = None
    reservation_id: Optional[UUID] = None
    payment_method: PaymentMethod = PaymentMethod.CASH
    income_date: Optional[date] = None
    transaction_reference: Optional[str] = Field(None, max_length=100)
    idempotency_key: str = Field(..., min_length=1, max_length=100)


class RefundCreate(BaseModel):
    enrollment_id: UUID
    fee_kind: FeeKind
    amount: Decimal
    reverses_event_id: Optional[UUID] = Field(None, description="Receipt being refunded, if any")
    reason: Optional[str] = Field(None, max_length=500)
    payment_method: PaymentMethod = PaymentMethod.CASH
    income_date: Optional[date] = None
    transaction_reference: Optional[str] = Field(None, max_length=100)
    idempotency_key: str = Field(..., min_length=1, max_length=100)


class PaymentEventResponse(BaseModel):
    id: UUID
    enrollment_id: Optional[UUID] = None
    reservation_id: Optional[UUID] = None
    fee_kind: Optional[FeeKind] = None
    purpose_kind: PaymentPurposeKind
    purpose_term: Optional[int] = None
    purpose_description: Optional[str] = None
    direction: PaymentDirection
    amount: Decimal
    payment_method: PaymentMethod
    transaction_reference: Optional[str] = None
    income_date: date
    idempotency_key: str
    reverses_event_id: Optional[UUID] = None
    allocation: Optional[dict] = None
    collected_by: Optional[UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PaymentHistoryResponse(BaseModel):
    enrollment_id: UUID
    total_received: Decimal
    total_refunded: Decimal
    events: List[PaymentEventResponse]
