"""Request-scoped service construction for the HTTP layer."""

import httpx
from fastapi import Depends, HTTPException, Request

from finepay.audit import AuditEventService, RequestContext
from finepay.auth import verify_token
from finepay.config import (
    devtools_enabled,
    get_enabled_audit_event_types,
    get_http_timeout,
    get_smtp_settings,
    load_payment_config,
)
from finepay.database import SessionLocal
from finepay.ils import get_ils
from finepay.manager import OnlinePaymentManager
from finepay.models import User
from finepay.receipt import SmtpReceiptMailer
from finepay.store import PaymentStore


def get_store() -> PaymentStore:
    return PaymentStore(SessionLocal)


def get_audit(request: Request) -> AuditEventService:
    return AuditEventService(SessionLocal, get_enabled_audit_event_types(), RequestContext.from_request(request))


def get_payment_config() -> dict[str, dict]:
    return load_payment_config()


def get_http_client():
    with httpx.Client(timeout=get_http_timeout()) as client:
        yield client


def get_receipt_mailer() -> SmtpReceiptMailer | None:
    settings = get_smtp_settings()
    if not settings["host"]:
        return None
    return SmtpReceiptMailer(settings["host"], settings["port"], settings["sender"])


def get_manager(
    request: Request,
    store: PaymentStore = Depends(get_store),
    audit: AuditEventService = Depends(get_audit),
    payment_config: dict = Depends(get_payment_config),
    http: httpx.Client = Depends(get_http_client),
    receipt_mailer: SmtpReceiptMailer | None = Depends(get_receipt_mailer),
) -> OnlinePaymentManager:
    # Notify callbacks carry the user's language in the URL
    locale = request.query_params.get("lng") or "en"
    return OnlinePaymentManager(
        store,
        audit,
        get_ils(),
        payment_config,
        http,
        locale=locale,
        test_handler_usable=devtools_enabled(),
        receipt_mailer=receipt_mailer,
    )


def get_current_user(claims: dict = Depends(verify_token)) -> User:
    try:
        user_id = int(claims["sub"])
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    with SessionLocal() as db:
        user = db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return user
