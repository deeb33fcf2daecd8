"""Operator views over online payments."""

import csv
import io
from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from finepay.auth import require_admin
from finepay.dependencies import get_manager
from finepay.enums import PaymentStatus, RESOLVABLE_STATUSES, STATUS_LABELS
from finepay.manager import OnlinePaymentManager
from finepay.schemas import AuditEventOut, PaymentDetailsResponse, PaymentFeeOut, PaymentListResponse, PaymentOut

router = APIRouter(prefix="/admin/payments", dependencies=[Depends(require_admin)])

CSV_COLUMNS = [
    "id",
    "local_identifier",
    "remote_identifier",
    "source_ils",
    "cat_username",
    "amount",
    "service_fee",
    "currency",
    "status",
    "status_message",
    "created",
    "paid",
    "registered",
    "reported",
]


def _day(value: date | None) -> datetime | None:
    return datetime.combine(value, datetime.min.time()) if value is not None else None


def _statuses(values: list[int] | None) -> list[PaymentStatus] | None:
    if not values:
        return None
    try:
        return [PaymentStatus(value) for value in values]
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid status")


def _filters(
    status: list[int] | None = Query(None),
    local_identifier: str | None = None,
    remote_identifier: str | None = None,
    source_ils: str | None = None,
    cat_username: str | None = None,
    created_from: date | None = None,
    created_until: date | None = None,
    paid_from: date | None = None,
    paid_until: date | None = None,
) -> dict:
    """Listing filters; identifiers accept leading or trailing `*` wildcards."""
    return {
        "statuses": _statuses(status),
        "local_identifier": local_identifier or None,
        "remote_identifier": remote_identifier or None,
        "source_ils": source_ils or None,
        "cat_username": cat_username or None,
        "created_from": _day(created_from),
        "created_until": _day(created_until),
        "paid_from": _day(paid_from),
        "paid_until": _day(paid_until),
    }


@router.get("", response_model=PaymentListResponse)
def list_payments(
    filters: dict = Depends(_filters),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=500),
    manager: OnlinePaymentManager = Depends(get_manager),
):
    result = manager.store.get_payment_page(page=page, limit=limit, **filters)
    return PaymentListResponse(
        items=[PaymentOut.from_payment(p) for p in result.items],
        total=result.total,
        page=result.page,
        limit=result.limit,
        sources=manager.store.get_unique_source_ils_list(),
    )


@router.get("/export")
def export_payments(
    filters: dict = Depends(_filters),
    manager: OnlinePaymentManager = Depends(get_manager),
):
    result = manager.store.get_payment_page(**filters)
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_COLUMNS)
    for payment in result.items:
        row = PaymentOut.from_payment(payment).model_dump()
        row["status"] = STATUS_LABELS[PaymentStatus(payment.status)]
        writer.writerow(["" if row[column] is None else row[column] for column in CSV_COLUMNS])
    return Response(
        content=output.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="payments.csv"'},
    )


@router.get("/{payment_id}", response_model=PaymentDetailsResponse)
def payment_details(payment_id: int, manager: OnlinePaymentManager = Depends(get_manager)):
    payment = manager.store.get_payment_by_id(payment_id)
    if payment is None:
        raise HTTPException(status_code=404, detail="Payment not found")
    return PaymentDetailsResponse(
        payment=PaymentOut.from_payment(payment),
        fees=[PaymentFeeOut.model_validate(fee) for fee in manager.store.get_fees_for_payment(payment)],
        events=[AuditEventOut.model_validate(e) for e in manager.audit.get_events(payment=payment, sort=["id ASC"])],
    )


@router.post("/{payment_id}/resolve", response_model=PaymentOut)
def resolve_payment(payment_id: int, manager: OnlinePaymentManager = Depends(get_manager)):
    payment = manager.store.get_payment_by_id(payment_id)
    if payment is None:
        raise HTTPException(status_code=404, detail="Payment not found")
    if payment.status not in RESOLVABLE_STATUSES or not manager.resolve(payment):
        raise HTTPException(status_code=409, detail="Payment can not be resolved")
    return PaymentOut.from_payment(manager.store.refresh(payment))
