from urllib.parse import parse_qsl

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import HTMLResponse
from starlette.concurrency import run_in_threadpool

from finepay.dependencies import get_current_user, get_manager
from finepay.enums import PaymentStatus
from finepay.exceptions import PaymentException, PaymentNotFound, PaymentRequestFailed
from finepay.handlers import CallbackRequest, PaymentResult
from finepay.handlers.support import add_query_params
from finepay.manager import OnlinePaymentManager
from finepay.models import User
from finepay.schemas import CallbackResponse, PaymentOut, StartPaymentRequest
from finepay.store import REGISTRATION_TIMEOUT, utcnow

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/payments")

PAYMENT_PARAM = "local_payment_id"

RESULT_MESSAGES = {
    PaymentResult.SUCCESS: "Payment::Payment Successful",
    PaymentResult.CANCEL: "Payment::Payment Canceled",
    PaymentResult.FAILURE: "Payment::error_payment_request_failed",
}


async def read_callback(request: Request) -> CallbackRequest:
    """Collect query and form parameters of a gateway callback."""
    body = await request.body()
    params = {}
    if request.headers.get("content-type", "").startswith("application/x-www-form-urlencoded"):
        params.update(parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True))
    params.update(request.query_params.items())
    headers = {key.lower(): value for key, value in request.headers.items()}
    return CallbackRequest(params=params, body=body, headers=headers)


@router.post("/start")
def start_payment(
    payload: StartPaymentRequest,
    request: Request,
    user: User = Depends(get_current_user),
    manager: OnlinePaymentManager = Depends(get_manager),
):
    cat_username = payload.cat_username or user.cat_username
    patron = manager.ils.get_patron(user, cat_username) if cat_username else None
    if not patron:
        raise HTTPException(status_code=400, detail="Payment::error_payment_request_failed")
    patron.setdefault("cat_username", cat_username)

    payment_config = manager.get_and_validate_online_payment_config(patron)
    if not payment_config:
        raise HTTPException(status_code=400, detail="Online payment not enabled")

    if manager.store.get_paid_payment_in_progress_for_patron(patron["cat_username"]):
        raise HTTPException(status_code=409, detail="Payment::registration_failed")

    fines = manager.ils.get_my_fines(patron)
    details = manager.get_and_check_online_payment_details(patron, fines, payload.selected_fine_ids)
    if not details["payable"] or not details["amount"]:
        raise HTTPException(status_code=400, detail=details.get("reason") or "Payment::minimum_payment")

    balance_checked = payment_config.get("exactBalanceRequired", True) or payment_config.get("creditUnsupported")
    if balance_checked and payload.expected_amount is not None and payload.expected_amount != details["amount"]:
        raise HTTPException(status_code=409, detail="Payment::error_fines_changed")

    return_url = str(request.url_for("payment_return"))
    # Notify is a back-channel request without the user's session
    notify_url = add_query_params(str(request.url_for("payment_notify")), {"lng": manager.locale})
    try:
        return manager.start_payment(
            return_url,
            notify_url,
            user,
            patron,
            details["amount"],
            details["fines"],
            PAYMENT_PARAM,
        )
    except PaymentRequestFailed as e:
        raise HTTPException(status_code=502, detail=e.message_key)
    except PaymentException as e:
        logger.error("Could not start payment", error=str(e), context=e.context, cat_username=cat_username)
        raise HTTPException(status_code=500, detail=e.message_key)


@router.get("/return", name="payment_return", response_model=CallbackResponse)
async def payment_return(
    request: Request,
    local_payment_id: str | None = None,
    manager: OnlinePaymentManager = Depends(get_manager),
):
    if not local_payment_id:
        raise HTTPException(status_code=400, detail="local_payment_id missing")
    callback = await read_callback(request)
    try:
        outcome = await run_in_threadpool(manager.handle_callback, local_payment_id, callback, False)
    except PaymentNotFound as e:
        raise HTTPException(status_code=400, detail=e.message_key)
    except PaymentException as e:
        raise HTTPException(status_code=500, detail="Payment::error_payment_request_failed") from e

    message_key = RESULT_MESSAGES.get(outcome.result)
    return CallbackResponse(
        local_identifier=local_payment_id,
        result=outcome.result.name if outcome.result is not None else None,
        status=PaymentStatus(outcome.payment.status).name,
        message=manager.translator.translate(message_key) if message_key else None,
        registered=outcome.payment.is_registered(),
    )


@router.api_route("/notify", methods=["GET", "POST"], name="payment_notify")
async def payment_notify(
    request: Request,
    local_payment_id: str | None = None,
    manager: OnlinePaymentManager = Depends(get_manager),
):
    callback = await read_callback(request)
    local_identifier = local_payment_id or callback.params.get(PAYMENT_PARAM)
    if not local_identifier:
        # Webhooks posted to a fixed URL identify the payment in their signed body
        local_identifier = await run_in_threadpool(manager.find_callback_local_identifier, callback)
    if not local_identifier:
        logger.error("Error processing payment: local_payment_id not provided", params=callback.params)
        return Response(status_code=400)
    try:
        await run_in_threadpool(manager.handle_callback, local_identifier, callback, True)
    except PaymentNotFound:
        return Response(status_code=400)
    except Exception:
        # Logged and recorded by the manager; the gateway will retry
        return Response(status_code=500)
    return Response(status_code=200)


@router.post("/register")
async def register_payment(
    request: Request,
    localIdentifier: str | None = None,
    manager: OnlinePaymentManager = Depends(get_manager),
):
    """Register a paid payment with the ILS (asynchronous follow-up of a return)."""
    callback = await read_callback(request)
    local_identifier = localIdentifier or callback.params.get("localIdentifier")
    if not local_identifier:
        return Response(status_code=400)
    payment = manager.store.get_payment_by_local_identifier(local_identifier)
    if payment is None:
        return Response(status_code=400)
    if payment.is_registered():
        return Response(status_code=200)
    if not payment.is_registration_needed():
        return Response(status_code=500)
    if payment.is_registration_in_progress(utcnow(), REGISTRATION_TIMEOUT):
        return Response(status_code=500)

    registered = await run_in_threadpool(manager.register_payment_with_ils, payment)
    return Response(status_code=200 if registered else 500)


@router.get("/status", response_model=PaymentOut)
def payment_status(
    local_payment_id: str,
    user: User = Depends(get_current_user),
    manager: OnlinePaymentManager = Depends(get_manager),
):
    payment = manager.store.get_payment_by_local_identifier(local_payment_id)
    if payment is None or payment.user_id != user.id:
        raise HTTPException(status_code=404, detail="Payment not found")
    return PaymentOut.from_payment(payment)


@router.get("/overview")
def payment_overview(
    source: str = "default",
    user: User = Depends(get_current_user),
    manager: OnlinePaymentManager = Depends(get_manager),
):
    """Payments the fines page needs to know about for the user's current card."""
    if not user.cat_username:
        raise HTTPException(status_code=400, detail="No library card")
    payment_config = manager.get_online_payment_config(source)
    max_duration = int(payment_config.get("paymentMaxDuration", 15))
    store = manager.store

    def out(payment):
        return PaymentOut.from_payment(payment) if payment is not None else None

    last_paid = store.get_last_paid_payment_for_patron(user.cat_username)
    return {
        "enabled": manager.is_enabled(source),
        "last_paid": out(last_paid),
        "receipt_available": bool(payment_config.get("receipt") and last_paid is not None),
        "paid_in_progress": out(store.get_paid_payment_in_progress_for_patron(user.cat_username)),
        "started": out(store.get_started_payment_for_patron(user.cat_username, max_duration)),
    }


@router.get("/receipt", response_class=HTMLResponse)
def payment_receipt(
    source: str = "default",
    user: User = Depends(get_current_user),
    manager: OnlinePaymentManager = Depends(get_manager),
):
    """Receipt of the last paid payment of the user's current card."""
    payment_config = manager.get_online_payment_config(source)
    if not payment_config.get("receipt") or not user.cat_username:
        raise HTTPException(status_code=404, detail="Receipt not available")
    payment = manager.store.get_last_paid_payment_for_patron(user.cat_username)
    if payment is None or payment.user_id != user.id:
        raise HTTPException(status_code=404, detail="Receipt not available")

    receipt = manager.receipts.create_receipt(payment, payment_config)
    return HTMLResponse(
        receipt["html"],
        headers={"Content-Disposition": f'inline; filename="{receipt["filename"]}"'},
    )
