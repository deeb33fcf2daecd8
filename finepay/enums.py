from dataclasses import dataclass
from enum import Enum, IntEnum


class PaymentStatus(IntEnum):
    IN_PROGRESS = 0
    COMPLETED = 1
    CANCELED = 2
    PAID = 3                    # Paid, waiting for ILS registration
    PAYMENT_FAILED = 4
    REGISTRATION_FAILED = 5
    REGISTRATION_EXPIRED = 6
    REGISTRATION_RESOLVED = 7   # Resolved manually by an operator
    FINES_UPDATED = 8           # ILS fines changed between payment and registration


STATUS_LABELS = {
    PaymentStatus.IN_PROGRESS: "In Progress",
    PaymentStatus.COMPLETED: "Completed",
    PaymentStatus.CANCELED: "Canceled",
    PaymentStatus.PAID: "Waiting for ILS Registration",
    PaymentStatus.PAYMENT_FAILED: "Payment Failed",
    PaymentStatus.REGISTRATION_FAILED: "ILS Registration Failed",
    PaymentStatus.REGISTRATION_EXPIRED: "ILS Registration Expired",
    PaymentStatus.REGISTRATION_RESOLVED: "ILS Registration Resolved",
    PaymentStatus.FINES_UPDATED: "ILS Fines Updated",
}

# Statuses an operator may mark as resolved
RESOLVABLE_STATUSES = (
    PaymentStatus.REGISTRATION_FAILED,
    PaymentStatus.REGISTRATION_EXPIRED,
    PaymentStatus.FINES_UPDATED,
)


class AuditEventType(str, Enum):
    ILS = "ils"
    PAYMENT = "payment"
    USER = "user"


class AuditEventSubtype(str, Enum):
    # Payment
    PAYMENT = "payment"
    PAYMENT_NOTIFY_HANDLER = "payment_notify_handler"
    PAYMENT_RECEIPT = "payment_receipt"
    PAYMENT_REGISTRATION = "payment_registration"
    PAYMENT_RESPONSE_HANDLER = "payment_response_handler"

    # ILS
    CANCEL_HOLDS = "cancel_holds"
    PLACE_HOLD = "place_hold"
    RENEW_LOANS = "renew_loans"

    # User
    LOGIN = "login"
    LOGIN_FAILURE = "login_fail"
    LOGOUT = "logout"
    PASSWORD_CHANGED = "password_changed"


@dataclass(frozen=True)
class CustomEvent:
    """An event type or subtype outside the built-in enums."""

    value: str

    def __post_init__(self):
        if not self.value or len(self.value) > 50:
            raise ValueError("Custom event name must be 1-50 characters")


def event_value(item: AuditEventType | AuditEventSubtype | CustomEvent) -> str:
    if isinstance(item, (AuditEventType, AuditEventSubtype, CustomEvent)):
        return item.value
    raise TypeError(f"Unsupported event type: {item!r}")
