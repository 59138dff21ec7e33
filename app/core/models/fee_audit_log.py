"""Fee audit log: immutable financial change tracking for audit safety."""

import uuid
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID

from app.db.session import Base


class FeeAuditLog(Base):
    """Immutable audit trail for ledger changes (create, payment, concession, lock/unlock, cancel)."""

    __tablename__ = "fee_audit_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    branch_id = Column(UUID(as_uuid=True), ForeignKey("branches.id"), nullable=False, index=True)
    reference_table = Column(String(50), nullable=False)
    reference_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    action_type = Column(String(30), nullable=False)  # CREATE, PAYMENT, REFUND, CONCESSION, LOCK, UNLOCK, CANCEL
    old_value = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=True)
    new_value = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=True)
    changed_by = Column(UUID(as_uuid=True), nullable=True)
    changed_by_role = Column(String(50), nullable=True)
    remarks = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
