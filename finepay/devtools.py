"""Echo payment service for development and integration tests.

Mimics a hosted payment page: `init` registers a payment and returns the
page URL, `handle` lets the user pick an outcome, which is stored, sent to
the notify URL and echoed back to the return URL, and `status` reports the
stored outcome. All parameters are signed the way `finepay.handlers.echo`
expects. Sessions live in memory for five minutes.
"""

import secrets
import threading
from html import escape
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
import structlog
from cachetools import TTLCache
from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from finepay.config import get_devtools_secret, get_http_timeout
from finepay.handlers.echo import calculate_signature, verify_signature

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/devtools/payment")

CACHE_LIFETIME = 300
OUTCOMES = ("success", "failure", "cancel", "pending", "notify")

_sessions = TTLCache(maxsize=1024, ttl=CACHE_LIFETIME)
_lock = threading.Lock()


def get_notify_client():
    with httpx.Client(timeout=get_http_timeout()) as client:
        yield client


def _json(data: dict, status_code: int = 200) -> JSONResponse:
    return JSONResponse({"data": data}, status_code=status_code)


def _get_session(request_id: str | None) -> dict | None:
    if not request_id:
        return None
    with _lock:
        session = _sessions.get(request_id)
        return dict(session) if session is not None else None


def _put_session(request_id: str, session: dict) -> None:
    with _lock:
        _sessions[request_id] = session


def add_signature(url: str, secret: str) -> str:
    parts = urlsplit(url)
    params = dict(parse_qsl(parts.query, keep_blank_values=True))
    params["signature"] = calculate_signature(params, secret)
    return urlunsplit(parts._replace(query=urlencode(params)))


async def _form(request: Request) -> dict:
    body = await request.body()
    return dict(parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True))


@router.post("/init")
async def init_payment(request: Request):
    params = await _form(request)
    if not verify_signature(params, get_devtools_secret()):
        return _json({"error": "Bad signature"}, 400)
    session = {}
    for name in ("returnUrl", "notifyUrl"):
        if not params.get(name):
            return _json({"error": f"Missing parameter: {name}"}, 400)
        session[name] = params[name]
    session["status"] = "pending"

    request_id = secrets.token_hex(16)
    _put_session(request_id, session)
    payment_url = str(request.url_for("devtools_payment_handle").include_query_params(requestId=request_id))
    return _json({"requestId": request_id, "paymentUrl": payment_url})


@router.get("/handle", name="devtools_payment_handle", response_class=HTMLResponse)
def payment_page(requestId: str | None = None):
    if _get_session(requestId) is None:
        return HTMLResponse("Invalid request ID", status_code=400)
    buttons = "".join(
        f'<button type="submit" name="status" value="{outcome}">{outcome.capitalize()}</button>'
        for outcome in OUTCOMES
    )
    return HTMLResponse(
        "<html><body><h1>Test payment service</h1>"
        f'<form method="post" action="?requestId={escape(requestId)}">{buttons}</form>'
        "</body></html>"
    )


@router.post("/handle")
async def handle_payment(
    request: Request,
    requestId: str | None = None,
    http: httpx.Client = Depends(get_notify_client),
):
    session = _get_session(requestId)
    if session is None:
        return HTMLResponse("Invalid request ID", status_code=400)
    outcome = (await _form(request)).get("status")
    if outcome not in OUTCOMES:
        return HTMLResponse("Invalid status", status_code=400)

    session["status"] = "success" if outcome == "notify" else outcome
    _put_session(requestId, session)

    secret = get_devtools_secret()
    notify_url = add_signature(session["notifyUrl"], secret)
    response = await run_in_threadpool(http.get, notify_url)
    if response.status_code != 200:
        logger.error("Failed to call notify handler", url=session["notifyUrl"], status=response.status_code)
        return HTMLResponse("Notify failed", status_code=502)
    if outcome == "notify":
        # Notify only; the user never returns
        return HTMLResponse("Notify done")
    return RedirectResponse(add_signature(session["returnUrl"], secret), status_code=302)


@router.post("/status")
async def payment_status(request: Request):
    params = await _form(request)
    if not verify_signature(params, get_devtools_secret()):
        return _json({"error": "Bad signature"}, 400)
    session = _get_session(params.get("requestId"))
    if session is None:
        return _json({"error": "Invalid request ID"}, 400)
    return _json({"status": session["status"]})
