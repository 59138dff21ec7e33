from enum import Enum


class FeeKind(str, Enum):
    TUITION = "TUITION"
    TRANSPORT = "TRANSPORT"


class TermStatus(str, Enum):
    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    PAID = "PAID"


class BalanceState(str, Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"


class EnrollmentStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PROMOTED = "PROMOTED"
    LEFT = "LEFT"


class PaymentPurposeKind(str, Enum):
    TUITION_TERM = "TUITION_TERM"
    TRANSPORT_TERM = "TRANSPORT_TERM"
    BOOK_FEE = "BOOK_FEE"
    APPLICATION_FEE = "APPLICATION_FEE"
    RESERVATION_FEE = "RESERVATION_FEE"
    OTHER = "OTHER"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    UPI = "UPI"
    CARD = "CARD"
    BANK = "BANK"
    CHEQUE = "CHEQUE"


class PaymentDirection(str, Enum):
    RECEIPT = "RECEIPT"
    REFUND = "REFUND"


class ReservationStatus(str, Enum):
    OPEN = "OPEN"
    CONVERTED = "CONVERTED"
