"""Test payment handler.

Talks to the development echo payment service (finepay.devtools) over HTTP
with the same signed-parameter scheme the service uses for its callbacks,
so the whole payment flow can run without an external gateway.
"""

import hashlib
import hmac
import json

from starlette.responses import RedirectResponse

from finepay.enums import AuditEventSubtype
from finepay.exceptions import ConfigurationError, PaymentException, PaymentRequestFailed, SignatureError
from finepay.handlers.port import CallbackRequest, PaymentHandler, PaymentResult
from finepay.handlers.support import PaymentSupport, add_query_params
from finepay.models import Payment, User

STATUS_RESULTS = {
    "success": PaymentResult.SUCCESS,
    "failure": PaymentResult.FAILURE,
    "cancel": PaymentResult.CANCEL,
    "pending": PaymentResult.PENDING,
}


def calculate_signature(params: dict, secret: str) -> str:
    payload = {k: v for k, v in params.items() if k != "signature"}
    message = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(params: dict, secret: str) -> bool:
    signature = params.get("signature") or ""
    return hmac.compare_digest(signature, calculate_signature(params, secret))


class EchoHandler(PaymentHandler):
    name = "test"

    def init(self, config: dict) -> None:
        self.support = PaymentSupport(self.context, config)

    @property
    def secret(self) -> str:
        secret = self.support.config.get("secret")
        if not secret:
            raise ConfigurationError("Configuration missing: secret")
        return secret

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
        local_identifier = self.support.generate_unique_local_identifier(patron)
        return_url = add_query_params(return_base_url, {payment_param: local_identifier})
        notify_url = add_query_params(notify_base_url, {payment_param: local_identifier})

        # The echo service has no use for amounts or line items
        payment_request = {"returnUrl": return_url, "notifyUrl": notify_url}
        try:
            result = self._get_json_response("init", payment_request)
            request_id = result["data"].get("requestId")
            payment_url = result["data"].get("paymentUrl")
            if not request_id or not payment_url:
                raise PaymentException("Payment service response invalid", {"data": result["data"]})
        except ConfigurationError:
            raise
        except Exception as e:
            self.support.log_payment_error(
                f"Exception sending payment: {e}",
                {"user": user, "patron": patron, "fines": fines, "request": payment_request},
            )
            raise PaymentRequestFailed({"error": str(e)}) from e

        payment = self.support.create_payment(
            local_identifier,
            request_id,
            user,
            patron,
            amount,
            fines,
        )
        return self.support.redirect_to_payment(payment_url, payment)

    def process_payment_response(self, payment: Payment, request: CallbackRequest) -> PaymentResult:
        if not verify_signature(request.params, self.secret):
            self.support.log_payment_error("Bad signature", {"params": request.params})
            raise SignatureError("Bad signature", {"params": request.params})
        try:
            result = self._get_json_response("status", {"requestId": payment.remote_identifier})
        except Exception as e:
            self.support.log_payment_error(f"Status request failed: {e}", {"payment": payment})
            return PaymentResult.FAILURE

        status = result["data"].get("status")
        if status in STATUS_RESULTS:
            return STATUS_RESULTS[status]

        self.support.log_payment_error(f"Unknown status {status}")
        self.support.add_payment_event(
            payment,
            AuditEventSubtype.PAYMENT_RESPONSE_HANDLER,
            "Received unknown status",
            {"status": status},
        )
        return PaymentResult.FAILURE

    def _get_json_response(self, function: str, params: dict) -> dict:
        url = self.support.config.get("url")
        if not url:
            raise ConfigurationError("'url' missing from payment configuration")
        params = dict(params)
        params["signature"] = calculate_signature(params, self.secret)
        response = self.context.http.post(f"{url.rstrip('/')}/{function}", data=params)
        try:
            result = response.json()
        except ValueError:
            raise PaymentException("Payment service response invalid", {"body": response.text})
        if not isinstance(result, dict) or not isinstance(result.get("data"), dict):
            raise PaymentException("Payment service response invalid", {"body": response.text})
        error = result["data"].get("error")
        if error:
            raise PaymentException(f"Payment service error: {error}")
        return result
