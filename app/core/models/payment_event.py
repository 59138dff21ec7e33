"""Payment event: append-only record of money received (or refunded) and how it was allocated."""

import uuid
from datetime import datetime

from sqlalchemy import JSON, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID

from app.core.enums import PaymentDirection
from app.db.session import Base


class PaymentEvent(Base):
    """
    Immutable once posted. Corrections are new events (a REFUND references the receipt it reverses).
    allocation holds the per-term itemization produced by the payment poster.
    """

    __tablename__ = "payment_events"
    __table_args__ = (
        UniqueConstraint("branch_id", "idempotency_key", name="uq_payment_event_branch_idempotency_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    branch_id = Column(UUID(as_uuid=True), ForeignKey("branches.id"), nullable=False, index=True)
    academic_year_id = Column(
        UUID(as_uuid=True),
        ForeignKey("academic_years.id", ondelete="RESTRICT"),
        nullable=False,
    )
    enrollment_id = Column(UUID(as_uuid=True), ForeignKey("enrollments.id", ondelete="RESTRICT"), nullable=True, index=True)
    reservation_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    fee_balance_id = Column(UUID(as_uuid=True), ForeignKey("fee_balances.id", ondelete="RESTRICT"), nullable=True, index=True)
    fee_kind = Column(String(20), nullable=True)

    purpose_kind = Column(String(30), nullable=False)  # TUITION_TERM, TRANSPORT_TERM, BOOK_FEE, ...
    purpose_term = Column(Integer, nullable=True)
    purpose_description = Column(Text, nullable=True)
    direction = Column(String(10), nullable=False, default=PaymentDirection.RECEIPT.value)
    amount = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(String(30), nullable=False)  # CASH, UPI, CARD, BANK, CHEQUE
    transaction_reference = Column(String(100), nullable=True)
    income_date = Column(Date, nullable=False)

    idempotency_key = Column(String(100), nullable=False)
    request_fingerprint = Column(String(64), nullable=False)
    allocation = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=True)
    reverses_event_id = Column(UUID(as_uuid=True), ForeignKey("payment_events.id"), nullable=True)

    collected_by = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
