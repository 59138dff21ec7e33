"""Reservation fee snapshot schemas."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.api.v1.fee_balances.schemas import FeeBalanceResponse
from app.core.enums import ReservationStatus


class ReservationSnapshotCreate(BaseModel):
    reservation_id: UUID
    reservation_no: Optional[str] = Field(None, max_length=50)
    student_name: Optional[str] = Field(None, max_length=255)
    class_id: UUID
    group_id: Optional[UUID] = None
    course_id: Optional[UUID] = None
    transport_route_id: Optional[UUID] = None
    distance_slab_id: Optional[UUID] = None
    application_fee: Decimal = Field(Decimal("0"), ge=0)
    reservation_fee: Decimal = Field(Decimal("0"), ge=0)
    tuition_concession: Decimal = Decimal("0")
    transport_concession: Decimal = Decimal("0")


class ReservationSnapshotResponse(BaseModel):
    id: UUID
    branch_id: UUID
    academic_year_id: UUID
    reservation_id: UUID
    reservation_no: Optional[str] = None
    student_name: Optional[str] = None
    class_id: UUID
    group_id: Optional[UUID] = None
    course_id: Optional[UUID] = None
    transport_route_id: Optional[UUID] = None
    distance_slab_id: Optional[UUID] = None
    application_fee: Decimal
    application_fee_paid: Decimal
    reservation_fee: Decimal
    reservation_fee_paid: Decimal
    tuition_fee: Decimal
    tuition_concession: Decimal
    book_fee: Decimal
    transport_fee: Decimal
    transport_concession: Decimal
    status: ReservationStatus
    converted_enrollment_id: Optional[UUID] = None
    converted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ReservationConvertRequest(BaseModel):
    enrollment_id: UUID


class ReservationConvertResult(BaseModel):
    reservation: ReservationSnapshotResponse
    fee_balances: List[FeeBalanceResponse]
