"""Fee balance: one ledger row per (enrollment, fee kind) with its per-term breakdown. Never deleted."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.core.enums import BalanceState, TermStatus
from app.db.session import Base


class FeeBalance(Base):
    """
    Billed / concessed / paid figures for one fee kind of one enrollment.

    total_fee = actual_fee - concession_amount
    overall_balance_fee = total_fee - sum(term.paid)
    Class/group/course/route are snapshotted at creation so reporting never joins master data.
    """

    __tablename__ = "fee_balances"
    __table_args__ = (
        UniqueConstraint("enrollment_id", "fee_kind", name="uq_fee_balance_enrollment_kind"),
        CheckConstraint("fee_kind IN ('TUITION','TRANSPORT')", name="chk_fee_balance_kind"),
        CheckConstraint("state IN ('ACTIVE','CANCELLED')", name="chk_fee_balance_state"),
        CheckConstraint(
            "concession_amount >= 0 AND concession_amount <= actual_fee",
            name="chk_fee_balance_concession_bound",
        ),
        CheckConstraint("overpayment_balance >= 0", name="chk_fee_balance_overpayment"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    branch_id = Column(UUID(as_uuid=True), ForeignKey("branches.id"), nullable=False, index=True)
    academic_year_id = Column(
        UUID(as_uuid=True),
        ForeignKey("academic_years.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    enrollment_id = Column(UUID(as_uuid=True), ForeignKey("enrollments.id", ondelete="RESTRICT"), nullable=False)
    fee_kind = Column(String(20), nullable=False)

    class_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    section_id = Column(UUID(as_uuid=True), nullable=True)
    group_id = Column(UUID(as_uuid=True), nullable=True)
    course_id = Column(UUID(as_uuid=True), nullable=True)
    transport_route_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    distance_slab_id = Column(UUID(as_uuid=True), nullable=True)

    actual_fee = Column(Numeric(12, 2), nullable=False)
    concession_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total_fee = Column(Numeric(12, 2), nullable=False)
    overall_balance_fee = Column(Numeric(12, 2), nullable=False)
    overpayment_balance = Column(Numeric(12, 2), nullable=False, default=0)
    # Book fee rides on the TUITION row only; single lump, not termed.
    book_fee = Column(Numeric(12, 2), nullable=False, default=0)
    book_paid = Column(Numeric(12, 2), nullable=False, default=0)

    concession_lock = Column(Boolean, nullable=False, default=False)
    state = Column(String(20), nullable=False, default=BalanceState.ACTIVE.value)
    cancel_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(UUID(as_uuid=True), nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    created_by = Column(UUID(as_uuid=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    updated_by = Column(UUID(as_uuid=True), nullable=True)

    terms = relationship(
        "FeeBalanceTerm",
        back_populates="fee_balance",
        order_by="FeeBalanceTerm.term_number",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def book_balance(self) -> Decimal:
        return max(Decimal("0"), Decimal(self.book_fee or 0) - Decimal(self.book_paid or 0))

    @property
    def is_cancelled(self) -> bool:
        return self.state == BalanceState.CANCELLED.value


class FeeBalanceTerm(Base):
    """One billing term of a fee balance. balance = amount - paid, never negative."""

    __tablename__ = "fee_balance_terms"
    __table_args__ = (
        UniqueConstraint("fee_balance_id", "term_number", name="uq_fee_balance_term_number"),
        CheckConstraint("paid >= 0", name="chk_fee_balance_term_paid"),
        CheckConstraint("balance >= 0", name="chk_fee_balance_term_balance"),
        CheckConstraint("status IN ('PENDING','PARTIAL','PAID')", name="chk_fee_balance_term_status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    fee_balance_id = Column(
        UUID(as_uuid=True),
        ForeignKey("fee_balances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    term_number = Column(Integer, nullable=False)
    percentage = Column(Numeric(5, 2), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    paid = Column(Numeric(12, 2), nullable=False, default=0)
    balance = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), nullable=False, default=TermStatus.PENDING.value)

    fee_balance = relationship("FeeBalance", back_populates="terms")
