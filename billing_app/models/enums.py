from enum import Enum


class AgreementStatus(str, Enum):
    ACTIVE = "Active"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    ON_HOLD = "OnHold"


class PaymentRecordStatus(str, Enum):
    PENDING = "Pending"
    OVERDUE = "Overdue"
    PAID = "Paid"
    PARTIAL = "Partial"


OUTSTANDING_STATUSES = frozenset(
    {
        PaymentRecordStatus.PENDING,
        PaymentRecordStatus.OVERDUE,
        PaymentRecordStatus.PARTIAL,
    }
)


class PaymentSource(str, Enum):
    MANUAL = "manual"
    GATEWAY = "gateway"


class PaymentMethod(str, Enum):
    CASH = "Cash"
    BANK_TRANSFER = "Bank Transfer"
    CARD = "Card"
    UPI = "UPI"
    USSD = "USSD"
    GATEWAY = "Gateway"
    OTHER = "Other"
    CREDIT = "Credit"


class NotificationKind(str, Enum):
    UPCOMING_DUE = "upcoming_due"
    DUE_TODAY = "due_today"
    OVERDUE = "overdue"
    CONSOLIDATED = "consolidated"
    INVOICE = "invoice"


class AgreementEventType(str, Enum):
    AGREEMENT_CREATED = "AGREEMENT_CREATED"
    RECORDS_GENERATED = "RECORDS_GENERATED"
    PAYMENT_APPLIED = "PAYMENT_APPLIED"
    INVOICE_ASSIGNED = "INVOICE_ASSIGNED"
    STATUS_CHANGED = "STATUS_CHANGED"


ALLOWED_STATUS_TRANSITIONS = {
    AgreementStatus.ACTIVE: {
        AgreementStatus.ON_HOLD,
        AgreementStatus.CANCELLED,
        AgreementStatus.COMPLETED,
    },
    AgreementStatus.ON_HOLD: {AgreementStatus.ACTIVE, AgreementStatus.CANCELLED},
    AgreementStatus.COMPLETED: set(),
    AgreementStatus.CANCELLED: set(),
}
