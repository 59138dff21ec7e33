"""Reservation fee snapshot: fees agreed at reservation time, carried into the ledger on admission."""

import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.dialects.postgresql import UUID

from app.core.enums import ReservationStatus
from app.db.session import Base


class ReservationFeeSnapshot(Base):
    """
    Frozen pre-admission figures. Conversion seeds FeeBalance rows from these values directly,
    so a concession agreed at reservation survives later changes to master fee structures.
    """

    __tablename__ = "reservation_fee_snapshots"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    branch_id = Column(UUID(as_uuid=True), ForeignKey("branches.id"), nullable=False, index=True)
    academic_year_id = Column(
        UUID(as_uuid=True),
        ForeignKey("academic_years.id", ondelete="RESTRICT"),
        nullable=False,
    )
    reservation_id = Column(UUID(as_uuid=True), nullable=False, unique=True)
    reservation_no = Column(String(50), nullable=True)
    student_name = Column(String(255), nullable=True)

    class_id = Column(UUID(as_uuid=True), nullable=False)
    group_id = Column(UUID(as_uuid=True), nullable=True)
    course_id = Column(UUID(as_uuid=True), nullable=True)
    transport_route_id = Column(UUID(as_uuid=True), nullable=True)
    distance_slab_id = Column(UUID(as_uuid=True), nullable=True)

    application_fee = Column(Numeric(12, 2), nullable=False, default=0)
    application_fee_paid = Column(Numeric(12, 2), nullable=False, default=0)
    reservation_fee = Column(Numeric(12, 2), nullable=False, default=0)
    reservation_fee_paid = Column(Numeric(12, 2), nullable=False, default=0)

    tuition_fee = Column(Numeric(12, 2), nullable=False, default=0)
    tuition_concession = Column(Numeric(12, 2), nullable=False, default=0)
    book_fee = Column(Numeric(12, 2), nullable=False, default=0)
    transport_fee = Column(Numeric(12, 2), nullable=False, default=0)
    transport_concession = Column(Numeric(12, 2), nullable=False, default=0)

    status = Column(String(20), nullable=False, default=ReservationStatus.OPEN.value)
    converted_enrollment_id = Column(UUID(as_uuid=True), ForeignKey("enrollments.id"), nullable=True)
    converted_at = Column(DateTime(timezone=True), nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    created_by = Column(UUID(as_uuid=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}
