"""Paytrail hosted checkout handler.

Uses the Paytrail Payment API directly over HTTP. When
`organizationMerchantIdMappings` is configured the payment is created as a
shop-in-shop payment and each item is assigned to the merchant of the
organization that levied the fine.
"""

import hashlib
import hmac
import json
import uuid
from datetime import datetime, timezone

from starlette.responses import RedirectResponse

from finepay.enums import AuditEventSubtype
from finepay.exceptions import ConfigurationError, PaymentException, PaymentRequestFailed, SignatureError
from finepay.handlers.port import CallbackRequest, PaymentHandler, PaymentResult
from finepay.handlers.support import PaymentSupport, add_query_params, parse_mappings
from finepay.models import Payment, User

API_URL = "https://services.paytrail.com"

ALGORITHMS = {
    "sha256": hashlib.sha256,
    "sha512": hashlib.sha512,
}

LANGUAGE_MAP = {
    "fi": "FI",
    "sv": "SV",
    "en": "EN",
}

REQUIRED_RESPONSE_PARAMS = (
    "checkout-reference",
    "checkout-stamp",
    "checkout-status",
    "signature",
)


def calculate_hmac(secret: str, params: dict, body: str = "", algorithm: str = "sha256") -> str:
    """Paytrail signature over the `checkout-*` parameters and the body."""
    digest = ALGORITHMS.get(algorithm)
    if digest is None:
        raise SignatureError(f"Unsupported signature algorithm {algorithm}")
    lines = [f"{key}:{params[key]}" for key in sorted(params) if key.startswith("checkout-")]
    lines.append(body)
    return hmac.new(secret.encode("utf-8"), "\n".join(lines).encode("utf-8"), digest).hexdigest()


def validate_hmac(secret: str, params: dict, signature: str, body: str = "") -> None:
    algorithm = params.get("checkout-algorithm", "sha256")
    expected = calculate_hmac(secret, params, body, algorithm)
    if not hmac.compare_digest(expected, signature or ""):
        raise SignatureError("HMAC signature is invalid")


class PaytrailHandler(PaymentHandler):
    name = "paytrail"

    def init(self, config: dict) -> None:
        self.support = PaymentSupport(self.context, config)
        self.organization_merchant_id_mappings = parse_mappings(config.get("organizationMerchantIdMappings"))

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
        email = user.email or patron.get("email")
        if not email:
            raise PaymentException("email_address_missing")
        local_identifier = self.support.generate_unique_local_identifier(patron)

        return_url = add_query_params(return_base_url, {payment_param: local_identifier})
        notify_url = add_query_params(notify_base_url, {payment_param: local_identifier})

        language = LANGUAGE_MAP.get(self.support.get_current_language_code(), "EN")
        payment_request = {
            "stamp": local_identifier,
            "reference": f"{local_identifier} - {patron['cat_username']}",
            "amount": amount + self.support.get_service_fee(),
            "currency": self.support.get_currency_code(),
            "language": language,
            "customer": {
                "email": email.strip(),
                "firstName": user.firstname or None,
                "lastName": user.lastname or None,
            },
            "redirectUrls": {"success": return_url, "cancel": return_url},
            "callbackUrls": {"success": notify_url, "cancel": notify_url},
        }

        items = self._get_items(local_identifier, fines)
        if items:
            payment_request["items"] = items

        try:
            response = self._request("POST", "/payments", payment_request)
            transaction_id = response.get("transactionId")
            href = response.get("href")
            if not transaction_id or not href:
                raise PaymentException("Payment response invalid", {"response": response})
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
            transaction_id,
            user,
            patron,
            amount,
            fines,
        )
        return self.support.redirect_to_payment(href, payment)

    def _get_items(self, local_identifier: str, fines: list[dict]) -> list[dict]:
        items = []
        for fine in fines:
            code = self.support.get_fine_product_code(fine)
            if code is None:
                # Fines without a product code are not itemized
                continue
            item_id = str(fine.get("fine_id") or fine.get("id") or "")
            item = {
                "unitPrice": int(round(fine["balance"])),
                "units": 1,
                "vatPercentage": float(fine.get("tax_percent") or 0) / 100.0,
                "productCode": code[:100],
                "description": self.support.get_fine_description(fine, 100),
                "stamp": f"{local_identifier} {item_id}"[:200],
                "reference": item_id[:200],
            }
            merchant = self.organization_merchant_id_mappings.get(fine.get("organization") or "")
            if merchant:
                item["merchant"] = merchant
            items.append(item)

        service_fee = self.support.get_service_fee()
        service_fee_code = self.support.get_service_fee_product_code()
        if service_fee and service_fee_code:
            items.append({
                "unitPrice": service_fee,
                "units": 1,
                "vatPercentage": float(self.support.get_service_fee_tax_rate() or 0) / 100.0,
                "productCode": service_fee_code,
                "description": self.context.translator.translate("Payment::Service Fee"),
                "stamp": f"{local_identifier} service_fee"[:200],
                "reference": "service_fee",
            })
        return items

    def process_payment_response(self, payment: Payment, request: CallbackRequest) -> PaymentResult:
        params = self.get_payment_response_params(request)
        if params is None:
            raise SignatureError("Could not get payment response params")

        # Make sure the transaction IDs match
        if payment.local_identifier != params["checkout-stamp"]:
            raise SignatureError("Payment stamp mismatch", {"stamp": params["checkout-stamp"]})

        status = params["checkout-status"]
        if status == "ok":
            return PaymentResult.SUCCESS
        if status == "fail":
            return PaymentResult.CANCEL
        if status in ("new", "pending", "delayed"):
            return PaymentResult.PENDING

        self.support.log_payment_error(f"Unknown status {status}")
        self.support.add_payment_event(
            payment,
            AuditEventSubtype.PAYMENT_RESPONSE_HANDLER,
            "Received unknown status",
            {"status": status},
        )
        return PaymentResult.FAILURE

    def get_payment_response_params(self, request: CallbackRequest) -> dict | None:
        params = request.params
        for name in REQUIRED_RESPONSE_PARAMS:
            if not params.get(name):
                self.support.log_payment_error(
                    f"Missing or empty parameter {name} in payment response",
                    {"params": params},
                )
                return None
        try:
            validate_hmac(self._config_value("secret"), params, params["signature"])
        except SignatureError as e:
            self.support.log_payment_error(
                f"Parameter signature validation failed: {e}",
                {"params": params},
            )
            return None
        return params

    def _config_value(self, key: str) -> str:
        value = self.support.config.get(key)
        if value is None or value == "":
            self.support.log_payment_error(f"Missing payment configuration {key}")
            raise ConfigurationError("Missing payment configuration", {"key": key})
        return str(value)

    def _request(self, method: str, path: str, payload: dict) -> dict:
        merchant_id = self._config_value("merchantId")
        secret = self._config_value("secret")
        body = json.dumps(payload, separators=(",", ":"))
        headers = {
            "checkout-account": merchant_id,
            "checkout-algorithm": "sha256",
            "checkout-method": method,
            "checkout-nonce": uuid.uuid4().hex,
            "checkout-timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "platform-name": self.context.site_name,
        }
        if self.organization_merchant_id_mappings:
            headers["checkout-transaction-type"] = "shop-in-shop"
        headers["signature"] = calculate_hmac(secret, headers, body)
        headers["content-type"] = "application/json; charset=utf-8"

        url = self.support.config.get("apiUrl") or API_URL
        response = self.context.http.request(method, url + path, content=body, headers=headers)
        response.raise_for_status()

        response_signature = response.headers.get("signature")
        if response_signature:
            response_params = {k.lower(): v for k, v in response.headers.items()}
            validate_hmac(secret, response_params, response_signature, response.text)
        return response.json()
