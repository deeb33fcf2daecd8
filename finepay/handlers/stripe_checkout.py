"""Stripe Checkout handler.

Each payment is a Checkout Session. The callback itself carries nothing we
trust: the outcome is always read back from Stripe with the session id we
stored as the remote identifier.

Webhooks arrive at the notify URL set up in the Stripe dashboard, without a
local identifier; the signed event names the payment in the session's
`client_reference_id`.
"""

import stripe
from starlette.responses import RedirectResponse

from finepay.enums import AuditEventSubtype
from finepay.exceptions import ConfigurationError, PaymentException, PaymentRequestFailed, SignatureError
from finepay.handlers.port import CallbackRequest, PaymentHandler, PaymentResult
from finepay.handlers.support import PaymentSupport, add_query_params, parse_mappings
from finepay.models import Payment, User


class StripeHandler(PaymentHandler):
    name = "stripe"

    def init(self, config: dict) -> None:
        self.support = PaymentSupport(self.context, config)
        self.tax_percent_to_tax_code_mappings = parse_mappings(config.get("taxPercentToTaxCodeMappings"))

    @property
    def api_key(self) -> str:
        api_key = self.support.config.get("apiKey")
        if not api_key:
            raise ConfigurationError("Configuration missing: apiKey")
        return api_key

    def get_tax_code(self, tax_percent) -> str | None:
        """Tax code for a tax percent given in 1/100ths of a percent."""
        return self.tax_percent_to_tax_code_mappings.get(str(int(tax_percent or 0)))

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
        api_key = self.api_key
        local_identifier = self.support.generate_unique_local_identifier(patron)
        return_url = add_query_params(return_base_url, {payment_param: local_identifier})

        session_settings = {
            "mode": "payment",
            "client_reference_id": local_identifier,
            "success_url": return_url,
            "cancel_url": return_url,
            "line_items": self._get_line_items(fines),
            "locale": self.support.get_current_locale(),
            "customer_creation": "if_required",
        }
        if user.email:
            session_settings["customer_email"] = user.email

        try:
            session = stripe.checkout.Session.create(api_key=api_key, **session_settings)
        except stripe.StripeError as e:
            self.support.log_payment_error(
                f"Exception creating a Stripe session: {e}",
                {"user": user, "patron": patron, "fines": fines, "request": session_settings},
            )
            raise PaymentRequestFailed({"error": str(e)}) from e

        payment = self.support.create_payment(
            local_identifier,
            session.id,
            user,
            patron,
            amount,
            fines,
        )
        return self.support.redirect_to_payment(session.url, payment)

    def _get_line_items(self, fines: list[dict]) -> list[dict]:
        currency = self.support.get_currency_code()
        line_items = []
        for fine in fines:
            code = self.support.get_fine_product_code(fine)
            if code is None:
                self.support.log_payment_error("Fine type could not be determined", {"fine": fine})
                raise PaymentException("Fine type could not be determined")
            product_data = {
                "name": code[:100],
                "description": self.support.get_fine_description(fine, 255),
            }
            tax_code = self.get_tax_code(fine.get("tax_percent"))
            if tax_code is not None:
                product_data["tax_code"] = tax_code
            line_items.append({
                "price_data": {
                    "currency": currency,
                    "product_data": product_data,
                    "unit_amount": int(round(fine["balance"])),
                },
                "quantity": 1,
            })

        service_fee = self.support.get_service_fee()
        if service_fee:
            product_data = {
                "name": self.support.get_service_fee_product_code()
                or self.support.get_default_product_code()
                or "service_fee",
                "description": self.context.translator.translate("Payment::Service Fee"),
            }
            tax_code = self.get_tax_code(self.support.get_service_fee_tax_rate())
            if tax_code is not None:
                product_data["tax_code"] = tax_code
            line_items.append({
                "price_data": {
                    "currency": currency,
                    "product_data": product_data,
                    "unit_amount": service_fee,
                },
                "quantity": 1,
            })
        return line_items

    def process_payment_response(self, payment: Payment, request: CallbackRequest) -> PaymentResult:
        api_key = self.api_key
        self._verify_webhook(request)

        try:
            session = stripe.checkout.Session.retrieve(payment.remote_identifier, api_key=api_key)
        except stripe.StripeError as e:
            self.support.log_payment_error(f"Could not retrieve Stripe session: {e}", {"payment": payment})
            return PaymentResult.FAILURE

        if session.client_reference_id != payment.local_identifier:
            self.support.log_payment_error(
                "Session reference mismatch",
                {"payment": payment, "client_reference_id": session.client_reference_id},
            )
            raise SignatureError("Session reference mismatch")

        if session.payment_status in ("paid", "no_payment_required"):
            return PaymentResult.SUCCESS
        if session.status in ("open", "expired"):
            return PaymentResult.CANCEL
        if session.status == "complete" and session.payment_status == "unpaid":
            # Delayed payment methods settle later
            return PaymentResult.PENDING

        self.support.log_payment_error(
            f"Unknown session state {session.status}/{session.payment_status}",
            {"payment": payment},
        )
        self.support.add_payment_event(
            payment,
            AuditEventSubtype.PAYMENT_RESPONSE_HANDLER,
            "Received unknown status",
            {"status": session.status, "payment_status": session.payment_status},
        )
        return PaymentResult.FAILURE

    def get_callback_local_identifier(self, request: CallbackRequest) -> str | None:
        event = self._verify_webhook(request)
        if event is None or not event["type"].startswith("checkout.session."):
            return None
        return event["data"]["object"]["client_reference_id"] or None

    def _verify_webhook(self, request: CallbackRequest):
        """Check the Stripe-Signature header of webhook deliveries when a
        webhook secret is configured; returns the verified event, if any."""
        webhook_secret = self.support.config.get("webhookSecret")
        signature = request.headers.get("stripe-signature")
        if not webhook_secret or not signature:
            return None
        try:
            return stripe.Webhook.construct_event(request.body, signature, webhook_secret)
        except ValueError as e:
            raise SignatureError("Invalid webhook payload") from e
        except stripe.SignatureVerificationError as e:
            self.support.log_payment_error(f"Webhook signature verification failed: {e}")
            raise SignatureError("Invalid webhook signature") from e
