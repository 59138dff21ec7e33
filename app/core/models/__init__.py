from app.core.models.branch import Branch
from app.core.models.academic_year import AcademicYear
from app.core.models.class_model import ClassGroup, Course, SchoolClass
from app.core.models.enrollment import Enrollment
from app.core.models.transport import DistanceSlab, TransportAssignment, TransportRoute
from app.core.models.tuition_fee_structure import TuitionFeeStructure
from app.core.models.fee_balance import FeeBalance, FeeBalanceTerm
from app.core.models.payment_event import PaymentEvent
from app.core.models.reservation_fee_snapshot import ReservationFeeSnapshot
from app.core.models.fee_audit_log import FeeAuditLog

__all__ = [
    "AcademicYear",
    "Branch",
    "ClassGroup",
    "Course",
    "DistanceSlab",
    "Enrollment",
    "FeeAuditLog",
    "FeeBalance",
    "FeeBalanceTerm",
    "PaymentEvent",
    "ReservationFeeSnapshot",
    "SchoolClass",
    "TransportAssignment",
    "TransportRoute",
    "TuitionFeeStructure",
]
