import json

import httpx
import pytest

from conftest import FINES, event_messages
from finepay.exceptions import ConfigurationError, PaymentException, PaymentRequestFailed, SignatureError
from finepay.handlers import CallbackRequest, HandlerContext, PaymentResult
from finepay.handlers.paytrail import PaytrailHandler, calculate_hmac, validate_hmac
from finepay.i18n import Translator
from finepay.models import User

SECRET = "SAIPPUAKAUPPIAS"
CONFIG = {
    "merchantId": "375917",
    "secret": SECRET,
    "apiUrl": "https://paytrail.test",
    "currency": "EUR",
    "productCodeMappings": "Overdue=ODUE:Lost=LOST",
    "organizationMerchantIdMappings": "main=695861:branch=695874",
    "serviceFee": 100,
    "serviceFeeProductCode": "FEE",
    "serviceFeeTaxRate": 2400,
}
PATRON = {"cat_username": "catuser", "source": "default"}


def gateway_response(payload, status_code=201, sign=True, secret=SECRET):
    body = json.dumps(payload)
    headers = {"content-type": "application/json", "checkout-transaction-id": payload.get("transactionId", "")}
    if sign:
        headers["signature"] = calculate_hmac(secret, headers, body)
    return httpx.Response(status_code, content=body.encode("utf-8"), headers=headers)


class Gateway:
    """Records requests and answers with a canned response."""

    def __init__(self, response):
        self.response = response
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        return self.response


def make_handler(store, audit, gateway, config=None, locale="fi"):
    http = httpx.Client(transport=httpx.MockTransport(gateway))
    context = HandlerContext(store=store, audit=audit, http=http, translator=Translator("en"), locale=locale)
    handler = PaytrailHandler(context)
    handler.init(dict(CONFIG if config is None else config))
    return handler


def callback_params(payment, status="ok", secret=SECRET):
    params = {
        "checkout-account": "375917",
        "checkout-algorithm": "sha256",
        "checkout-amount": "1600",
        "checkout-stamp": payment.local_identifier,
        "checkout-reference": f"{payment.local_identifier} - catuser",
        "checkout-transaction-id": "tx-1",
        "checkout-status": status,
        "checkout-provider": "nordea",
    }
    params["signature"] = calculate_hmac(secret, params)
    return params


def test_hmac_covers_checkout_params_and_body():
    params = {"checkout-b": "2", "checkout-a": "1", "other": "x"}

    signature = calculate_hmac("secret", params, "{}")

    assert signature == calculate_hmac("secret", {"checkout-a": "1", "checkout-b": "2"}, "{}")
    assert signature != calculate_hmac("secret", params, "")
    assert len(calculate_hmac("secret", params, algorithm="sha512")) == 128
    validate_hmac("secret", params, signature, "{}")
    with pytest.raises(SignatureError):
        validate_hmac("secret", {**params, "checkout-a": "9"}, signature, "{}")
    with pytest.raises(SignatureError):
        calculate_hmac("secret", params, algorithm="md5")


def test_start_payment_creates_shop_in_shop_payment(store, audit, user):
    gateway = Gateway(gateway_response({"transactionId": "tx-1", "href": "https://pay.paytrail.test/tx-1"}))
    handler = make_handler(store, audit, gateway)

    response = handler.start_payment(
        "http://app/payments/return", "http://app/payments/notify", user, PATRON, 1500, FINES, "local_payment_id"
    )

    assert response.status_code == 302
    assert response.headers["location"] == "https://pay.paytrail.test/tx-1"

    [request] = gateway.requests
    assert str(request.url) == "https://paytrail.test/payments"
    assert request.headers["checkout-account"] == "375917"
    assert request.headers["checkout-transaction-type"] == "shop-in-shop"
    assert request.headers["signature"] == calculate_hmac(SECRET, dict(request.headers), request.content.decode())

    body = json.loads(request.content)
    local_identifier = body["stamp"]
    assert body["reference"] == f"{local_identifier} - catuser"
    assert body["amount"] == 1600
    assert body["currency"] == "EUR"
    assert body["language"] == "FI"
    assert body["customer"]["email"] == "patron@example.com"
    assert body["redirectUrls"]["success"] == f"http://app/payments/return?local_payment_id={local_identifier}"
    assert body["callbackUrls"]["cancel"] == f"http://app/payments/notify?local_payment_id={local_identifier}"
    assert [(i["productCode"], i["merchant"], i["unitPrice"]) for i in body["items"][:2]] == [
        ("ODUE", "695861", 1000),
        ("LOST", "695874", 500),
    ]
    assert body["items"][1]["vatPercentage"] == 24.0
    assert body["items"][0]["description"] == "Overdue (Journey to the Centre of the Earth)"
    fee = body["items"][2]
    assert (fee["productCode"], fee["unitPrice"], fee["vatPercentage"]) == ("FEE", 100, 24.0)
    assert fee["description"] == "Service Fee"

    payment = store.get_payment_by_local_identifier(local_identifier)
    assert payment.remote_identifier == "tx-1"
    assert payment.amount == 1500
    assert payment.service_fee == 100
    assert event_messages(audit, payment) == ["Payment created", "Redirected to payment gateway"]


def test_start_payment_without_merchant_mappings_is_plain_payment(store, audit, user):
    gateway = Gateway(gateway_response({"transactionId": "tx-2", "href": "https://pay.paytrail.test/tx-2"}))
    config = {k: v for k, v in CONFIG.items() if k not in ("organizationMerchantIdMappings", "productCodeMappings")}
    config.pop("serviceFeeProductCode")
    handler = make_handler(store, audit, gateway, config, locale="en-gb")

    handler.start_payment("http://app/return", "http://app/notify", user, PATRON, 1500, FINES, "local_payment_id")

    [request] = gateway.requests
    assert "checkout-transaction-type" not in request.headers
    body = json.loads(request.content)
    assert body["language"] == "EN"
    assert "items" not in body


def test_start_payment_requires_email(store, audit):
    gateway = Gateway(gateway_response({}))
    handler = make_handler(store, audit, gateway)
    user = User(username="noemail", cat_username="catuser")

    with pytest.raises(PaymentException) as excinfo:
        handler.start_payment("http://app/return", "http://app/notify", user, PATRON, 1500, FINES, "local_payment_id")
    assert excinfo.value.message_key == "email_address_missing"
    assert gateway.requests == []


@pytest.mark.parametrize(
    "response",
    [
        gateway_response({"status": "error", "message": "Invalid signature"}, status_code=401),
        gateway_response({"transactionId": "tx-3", "href": "https://pay"}, secret="wrong"),
        gateway_response({"transactionId": "tx-4"}),
        gateway_response({"href": "https://pay"}),
    ],
)
def test_gateway_errors_are_request_failures(store, audit, user, response):
    handler = make_handler(store, audit, Gateway(response))

    with pytest.raises(PaymentRequestFailed):
        handler.start_payment("http://app/return", "http://app/notify", user, PATRON, 1500, FINES, "local_payment_id")
    assert store.get_payment_page().total == 0


def test_missing_credentials_are_configuration_errors(store, audit, user):
    config = dict(CONFIG)
    del config["merchantId"]
    gateway = Gateway(gateway_response({}))
    handler = make_handler(store, audit, gateway, config)

    with pytest.raises(ConfigurationError):
        handler.start_payment("http://app/return", "http://app/notify", user, PATRON, 1500, FINES, "local_payment_id")
    assert gateway.requests == []


@pytest.mark.parametrize(
    "status, expected",
    [
        ("ok", PaymentResult.SUCCESS),
        ("fail", PaymentResult.CANCEL),
        ("new", PaymentResult.PENDING),
        ("pending", PaymentResult.PENDING),
        ("delayed", PaymentResult.PENDING),
    ],
)
def test_callback_status_mapping(store, audit, make_payment, status, expected):
    payment = make_payment()
    handler = make_handler(store, audit, Gateway(None))

    assert handler.process_payment_response(payment, CallbackRequest(callback_params(payment, status))) == expected


def test_unknown_callback_status_is_failure(store, audit, make_payment):
    payment = make_payment()
    handler = make_handler(store, audit, Gateway(None))

    result = handler.process_payment_response(payment, CallbackRequest(callback_params(payment, "refunded")))

    assert result == PaymentResult.FAILURE
    assert event_messages(audit, payment) == ["Received unknown status"]


def test_callback_with_bad_signature_is_rejected(store, audit, make_payment):
    payment = make_payment()
    handler = make_handler(store, audit, Gateway(None))

    with pytest.raises(SignatureError):
        handler.process_payment_response(payment, CallbackRequest(callback_params(payment, secret="forged")))


def test_callback_with_missing_param_is_rejected(store, audit, make_payment):
    payment = make_payment()
    handler = make_handler(store, audit, Gateway(None))
    params = callback_params(payment)
    del params["checkout-status"]

    with pytest.raises(SignatureError):
        handler.process_payment_response(payment, CallbackRequest(params))


def test_callback_for_other_payment_is_rejected(store, audit, make_payment):
    payment = make_payment()
    other = make_payment()
    handler = make_handler(store, audit, Gateway(None))

    with pytest.raises(SignatureError):
        handler.process_payment_response(payment, CallbackRequest(callback_params(other)))
