from datetime import datetime

from pydantic import BaseModel, ConfigDict

from finepay.enums import PaymentStatus, STATUS_LABELS


class StartPaymentRequest(BaseModel):
    cat_username: str | None = None
    selected_fine_ids: list[str] | None = None
    # Amount the patron saw when confirming; rejected if the fines changed since
    expected_amount: int | None = None


class PaymentOut(BaseModel):
    id: int
    local_identifier: str
    remote_identifier: str | None
    source_ils: str
    cat_username: str
    amount: int
    service_fee: int
    currency: str
    status: str
    status_label: str
    status_message: str
    created: datetime
    paid: datetime | None
    registered: datetime | None
    reported: datetime | None

    @classmethod
    def from_payment(cls, payment) -> "PaymentOut":
        status = PaymentStatus(payment.status)
        return cls(
            id=payment.id,
            local_identifier=payment.local_identifier,
            remote_identifier=payment.remote_identifier,
            source_ils=payment.source_ils,
            cat_username=payment.cat_username,
            amount=payment.amount,
            service_fee=payment.service_fee,
            currency=payment.currency,
            status=status.name,
            status_label=STATUS_LABELS[status],
            status_message=payment.status_message or "",
            created=payment.created,
            paid=payment.paid,
            registered=payment.registered,
            reported=payment.reported,
        )


class PaymentFeeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    fine_id: str
    type: str
    title: str
    description: str
    organization: str
    amount: int
    tax_percent: int
    currency: str


class AuditEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    date: datetime
    type: str
    subtype: str
    username: str | None
    message: str | None
    data: dict | None


class CallbackResponse(BaseModel):
    local_identifier: str
    result: str | None
    status: str
    message: str | None
    registered: bool


class PaymentListResponse(BaseModel):
    items: list[PaymentOut]
    total: int
    page: int | None
    limit: int
    sources: list[str]


class PaymentDetailsResponse(BaseModel):
    payment: PaymentOut
    fees: list[PaymentFeeOut]
    events: list[AuditEventOut]
