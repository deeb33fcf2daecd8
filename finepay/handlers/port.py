"""Payment handler port.

Every gateway integration implements `PaymentHandler`. Handlers share
behaviour through `PaymentSupport` (composition), not a common base class.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum

import httpx
from starlette.responses import RedirectResponse

from finepay.audit import AuditEventService
from finepay.i18n import Translator
from finepay.models import Payment, User
from finepay.store import PaymentStore


class PaymentResult(IntEnum):
    SUCCESS = 0
    CANCEL = 1
    FAILURE = 2
    PENDING = 3     # Still in progress; local status is left alone


@dataclass(frozen=True)
class CallbackRequest:
    """What a gateway sent to the return or notify URL."""

    params: dict[str, str] = field(default_factory=dict)   # Query merged with form body
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class HandlerContext:
    """Collaborators a handler needs for the lifetime of one request."""

    store: PaymentStore
    audit: AuditEventService
    http: httpx.Client
    translator: Translator
    locale: str = "en"
    site_name: str = "finepay"


class PaymentHandler(ABC):
    name: str = ""

    def __init__(self, context: HandlerContext):
        self.context = context

    @abstractmethod
    def init(self, config: dict) -> None:
        """Parse handler configuration."""
        ...

    @abstractmethod
    def start_payment(
        self,
        return_base_url: str,
        notify_base_url: str,
        user: User,
        patron: dict,
        amount: int,
        fines: list[dict],
        payment_param: str,
    ) -> RedirectResponse:
        """Create the payment with the gateway, store it and redirect the user there."""
        ...

    @abstractmethod
    def process_payment_response(self, payment: Payment, request: CallbackRequest) -> PaymentResult:
        """Validate a gateway callback and classify its outcome."""
        ...

    def get_callback_local_identifier(self, request: CallbackRequest) -> str | None:
        """Payment a callback without a local identifier parameter refers to.

        Only gateways that deliver to one fixed URL (webhooks) can answer.
        """
        return None
