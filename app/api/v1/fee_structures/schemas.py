"""Fee structure schemas."""

from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel


class TermSplit(BaseModel):
    term_number: int
    percentage: Decimal
    amount: Decimal


class FeeStructure(BaseModel):
    """Nominal (pre-concession) fees for one enrollment placement. Pure value."""

    class_id: UUID
    group_id: Optional[UUID] = None
    course_id: Optional[UUID] = None
    transport_route_id: Optional[UUID] = None
    distance_slab_id: Optional[UUID] = None

    tuition_fee: Decimal
    tuition_terms: List[TermSplit]
    book_fee: Decimal = Decimal("0")
    transport_fee: Optional[Decimal] = None
    transport_terms: List[TermSplit] = []

    @property
    def has_transport(self) -> bool:
        return self.transport_fee is not None
