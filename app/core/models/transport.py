"""Transport masters (routes, distance slabs) and per-enrollment transport assignments."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.db.session import Base


class TransportRoute(Base):
    __tablename__ = "transport_routes"
    __table_args__ = (
        UniqueConstraint("branch_id", "route_no", name="uq_transport_route_branch_no"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    branch_id = Column(UUID(as_uuid=True), ForeignKey("branches.id"), nullable=False, index=True)
    route_no = Column(String(20), nullable=False)
    route_name = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)


class DistanceSlab(Base):
    """Yearly transport fee by distance band. fee_amount is the full-year transport fee."""

    __tablename__ = "distance_slabs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    branch_id = Column(UUID(as_uuid=True), ForeignKey("branches.id"), nullable=False, index=True)
    academic_year_id = Column(UUID(as_uuid=True), ForeignKey("academic_years.id", ondelete="RESTRICT"), nullable=False)
    slab_name = Column(String(100), nullable=False)
    min_distance_km = Column(Numeric(6, 2), nullable=False, default=0)
    max_distance_km = Column(Numeric(6, 2), nullable=True)
    fee_amount = Column(Numeric(12, 2), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)


class TransportAssignment(Base):
    """Bus route taken by an enrollment. Only active assignments get a TRANSPORT balance."""

    __tablename__ = "transport_assignments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    enrollment_id = Column(UUID(as_uuid=True), ForeignKey("enrollments.id", ondelete="CASCADE"), nullable=False, index=True)
    route_id = Column(UUID(as_uuid=True), ForeignKey("transport_routes.id"), nullable=False)
    distance_slab_id = Column(UUID(as_uuid=True), ForeignKey("distance_slabs.id"), nullable=False)
    pickup_point = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    route = relationship("TransportRoute")
    distance_slab = relationship("DistanceSlab")
