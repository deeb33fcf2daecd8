"""Online payment orchestration.

Status changes are compare-and-set updates through `PaymentStore.transition`,
so the return and notify callbacks may run concurrently for one payment in
any order and any number of times. When they disagree, Success wins: a
payment recorded as Canceled or PaymentFailed is moved to Paid if the
gateway later reports it paid, while Cancel or Failure arriving after Paid
is only logged and recorded as an anomaly.

Audit events are written after the status change they describe and never
inside the same transaction (see `add_payment_event_safely`).
"""

from dataclasses import dataclass

import httpx
import structlog

from finepay.audit import AuditEventService, add_payment_event_safely
from finepay.enums import AuditEventSubtype, PaymentStatus, RESOLVABLE_STATUSES
from finepay.exceptions import ConfigurationError, PaymentNotFound, SignatureError
from finepay.handlers import CallbackRequest, HandlerContext, PaymentHandler, PaymentResult, get_handler_class
from finepay.i18n import Translator
from finepay.ils import IlsConnector
from finepay.models import Payment, User
from finepay.receipt import ReceiptService
from finepay.store import PaymentStore, utcnow

logger = structlog.get_logger(__name__)

REGISTRABLE_STATUSES = (PaymentStatus.PAID, PaymentStatus.REGISTRATION_FAILED)

TEST_HANDLER_UNAVAILABLE = "Test handler not available (devtools not enabled)"
PENDING_MESSAGE = "Payment still pending"


@dataclass
class CallbackOutcome:
    payment: Payment
    result: PaymentResult | None = None
    marked_as_paid: bool = False
    registration_requested: bool = False
    registered: bool = False
    already_registered: bool = False


def get_source_ils(patron: dict) -> str:
    return patron.get("source") or "default"


class OnlinePaymentManager:
    def __init__(
        self,
        store: PaymentStore,
        audit: AuditEventService,
        ils: IlsConnector,
        payment_config: dict[str, dict],
        http: httpx.Client,
        translator: Translator | None = None,
        locale: str = "en",
        test_handler_usable: bool = False,
        receipt_mailer=None,
    ):
        self.store = store
        self.audit = audit
        self.ils = ils
        self.payment_config = payment_config
        self.http = http
        self.translator = translator or Translator(locale)
        self.locale = locale
        self.test_handler_usable = test_handler_usable
        self.receipts = ReceiptService(store, self.translator, receipt_mailer)

    # Configuration

    def get_online_payment_config(self, source_ils: str) -> dict:
        return self.payment_config.get(source_ils) or {}

    def get_handler_name(self, source_ils: str) -> str:
        return self.get_online_payment_config(source_ils).get("handler") or ""

    def is_enabled(self, source_ils: str) -> bool:
        return bool(self.get_online_payment_config(source_ils).get("enabled", False))

    def get_handler(self, source_ils: str) -> PaymentHandler:
        handler_name = self.get_handler_name(source_ils)
        if not handler_name:
            raise ConfigurationError(f"Online payment handler not defined for '{source_ils}'")
        try:
            handler_class = get_handler_class(handler_name)
        except ValueError:
            raise ConfigurationError(f"Online payment handler '{handler_name}' not found for '{source_ils}'")

        context = HandlerContext(
            store=self.store,
            audit=self.audit,
            http=self.http,
            translator=self.translator,
            locale=self.locale,
        )
        handler = handler_class(context)
        handler.init(self.get_online_payment_config(source_ils))
        return handler

    def get_and_validate_online_payment_config(self, patron: dict) -> dict:
        """Payment config for the patron's ILS, or {} if online payment is unavailable."""
        source_ils = get_source_ils(patron)
        config = self.get_online_payment_config(source_ils)
        if not config.get("enabled", False):
            return {}
        if not config.get("handler"):
            logger.error("Mandatory setting 'handler' missing from payment configuration", source_ils=source_ils)
            return {}
        return config

    def get_and_check_online_payment_details(
        self,
        patron: dict,
        fines: list[dict],
        selected_fine_ids: list[str] | None,
    ) -> dict:
        if not fines:
            return {"payable": False, "amount": 0, "fines": [], "reason": "Payment::minimum_payment"}

        details = self.ils.get_online_payment_details(patron, fines, selected_fine_ids)
        if details.get("payable"):
            source_ils = get_source_ils(patron)
            config = self.get_online_payment_config(source_ils)
            service_fee = int(config.get("serviceFee") or 0)
            minimum_fee = int(config.get("minimumFee") or 0)
            if details["amount"] + service_fee < minimum_fee:
                details["payable"] = False
                details["reason"] = "Payment::minimum_payment"
            if self.get_handler_name(source_ils) == "test" and not self.test_handler_usable:
                details["payable"] = False
                details["reason"] = TEST_HANDLER_UNAVAILABLE
        return details

    # Starting a payment

    def start_payment(
        self,
        return_base_url: str,
        notify_base_url: str,
        user: User,
        patron: dict,
        amount: int,
        fines: list[dict],
        payment_param: str = "local_payment_id",
    ):
        handler = self.get_handler(get_source_ils(patron))
        patron_profile = {**patron, **self.ils.get_my_profile(patron)}
        return handler.start_payment(
            return_base_url,
            notify_base_url,
            user,
            patron_profile,
            amount,
            fines,
            payment_param,
        )

    # Callbacks

    def find_callback_local_identifier(self, request: CallbackRequest) -> str | None:
        """Ask each enabled handler whether it recognizes a callback that came
        without a local identifier."""
        for source_ils, config in self.payment_config.items():
            if not config.get("enabled", False) or not config.get("handler"):
                continue
            try:
                local_identifier = self.get_handler(source_ils).get_callback_local_identifier(request)
            except SignatureError:
                # Signed for another source
                continue
            except ConfigurationError as e:
                logger.error("Cannot check callback against payment configuration", source_ils=source_ils, error=str(e))
                continue
            if local_identifier:
                return local_identifier
        return None

    def handle_callback(self, local_identifier: str, request: CallbackRequest, from_notify: bool) -> CallbackOutcome:
        """Process a return or notify callback and register the payment if it became paid."""
        payment = self.store.get_payment_by_local_identifier(local_identifier)
        if payment is None:
            logger.error("Error processing payment: payment not found", local_identifier=local_identifier)
            raise PaymentNotFound("Payment::error_payment_request_failed", {"local_identifier": local_identifier})

        subtype = AuditEventSubtype.PAYMENT_NOTIFY_HANDLER if from_notify else AuditEventSubtype.PAYMENT_RESPONSE_HANDLER
        self.add_payment_event(payment, subtype, "Handler called")

        if payment.is_registered():
            self.add_payment_event(payment, subtype, "Payment already registered")
            return CallbackOutcome(payment, PaymentResult.SUCCESS, already_registered=True)

        try:
            result, marked_as_paid = self.process_payment_handler_response(payment, request, from_notify)
        except Exception as e:
            logger.exception(
                "Error processing payment callback",
                source_ils=payment.source_ils,
                local_identifier=local_identifier,
                from_notify=from_notify,
            )
            self.add_payment_event(payment, subtype, "Exception processing request", {"error": str(e)})
            raise

        outcome = CallbackOutcome(payment, result, marked_as_paid)
        if result != PaymentResult.SUCCESS:
            return outcome

        # Reload and check whether registration is still needed
        payment = self.store.refresh(payment)
        outcome.payment = payment
        if payment.is_registration_needed():
            outcome.registration_requested = True
            self.add_payment_event(payment, AuditEventSubtype.PAYMENT_REGISTRATION, "Registration requested")
            outcome.registered = self.register_payment_with_ils(payment)
            outcome.payment = self.store.refresh(payment)
        return outcome

    def process_payment_handler_response(
        self,
        payment: Payment,
        request: CallbackRequest,
        from_notify: bool,
    ) -> tuple[PaymentResult, bool]:
        """Apply the gateway's verdict; returns (result, marked_as_paid)."""
        handler = self.get_handler(payment.source_ils)
        result = handler.process_payment_response(payment, request)
        channel = "notify" if from_notify else "return"
        logger.debug(
            "Online payment callback result",
            channel=channel,
            local_identifier=payment.local_identifier,
            result=result.name,
        )

        if result == PaymentResult.SUCCESS:
            marked_as_paid = self._mark_paid(payment, channel)
            if marked_as_paid:
                self.send_receipt(payment)
            return result, marked_as_paid
        if result == PaymentResult.CANCEL:
            self._mark_unpaid(payment, PaymentStatus.CANCELED, "Payment marked as canceled", result, channel)
        elif result == PaymentResult.FAILURE:
            self._mark_unpaid(payment, PaymentStatus.PAYMENT_FAILED, "Payment marked as failed", result, channel)
        elif not self.audit.get_events(payment=payment, subtype=AuditEventSubtype.PAYMENT, message=PENDING_MESSAGE):
            # Gateways keep calling while a payment is pending; record it once
            self.add_payment_event(payment, AuditEventSubtype.PAYMENT, PENDING_MESSAGE, {"channel": channel})
        return result, False

    def _mark_paid(self, payment: Payment, channel: str) -> bool:
        if self.store.transition(payment.id, [PaymentStatus.IN_PROGRESS], PaymentStatus.PAID, paid=utcnow()):
            self.add_payment_event(payment, AuditEventSubtype.PAYMENT, "Payment marked as paid", {"channel": channel})
            return True

        # Success overrides an earlier cancel or failure
        for previous in (PaymentStatus.CANCELED, PaymentStatus.PAYMENT_FAILED):
            if self.store.transition(payment.id, [previous], PaymentStatus.PAID, paid=utcnow()):
                logger.warning(
                    "Payment reported paid after being recorded as unpaid",
                    local_identifier=payment.local_identifier,
                    previous_status=previous.name,
                    channel=channel,
                )
                self.add_payment_event(
                    payment,
                    AuditEventSubtype.PAYMENT,
                    "Payment marked as paid",
                    {"channel": channel, "previous_status": previous.name},
                )
                return True

        # Already paid (or further along)
        return False

    def _mark_unpaid(
        self,
        payment: Payment,
        status: PaymentStatus,
        message: str,
        result: PaymentResult,
        channel: str,
    ) -> None:
        if self.store.transition(payment.id, [PaymentStatus.IN_PROGRESS], status):
            self.add_payment_event(payment, AuditEventSubtype.PAYMENT, message, {"channel": channel})
            return

        current = self.store.refresh(payment)
        if current is None or current.status == status:
            return
        logger.warning(
            "Conflicting payment result ignored",
            local_identifier=payment.local_identifier,
            result=result.name,
            current_status=PaymentStatus(current.status).name,
            channel=channel,
        )
        self.add_payment_event(
            payment,
            AuditEventSubtype.PAYMENT,
            "Conflicting payment result ignored",
            {"result": result.name, "status": PaymentStatus(current.status).name, "channel": channel},
        )

    # Registration

    def get_patron_for_payment(self, payment: Payment) -> dict | None:
        if payment.user is None:
            return None
        try:
            patron = self.ils.get_patron(payment.user, payment.cat_username)
        except Exception:
            logger.exception("Patron login error", local_identifier=payment.local_identifier)
            return None
        if patron is not None:
            patron.setdefault("source", payment.source_ils)
        return patron

    def register_payment_with_ils(self, payment: Payment) -> bool:
        patron = self.get_patron_for_payment(payment)
        if patron is None:
            logger.error(
                "Error processing payment: patron login error",
                payment_id=payment.id,
                cat_username=payment.cat_username,
                user_id=payment.user_id,
            )
            self._registration_failed(payment, "patron login error", "Patron login failed")
            return False
        return self.register_payment_for_patron(payment, patron)

    def register_payment_for_patron(self, payment: Payment, patron: dict) -> bool:
        if not self.store.start_registration(payment.id):
            logger.debug("Payment already being registered", local_identifier=payment.local_identifier)
            self.add_payment_event(payment, AuditEventSubtype.PAYMENT_REGISTRATION, "Payment already being registered")
            return False
        self.add_payment_event(payment, AuditEventSubtype.PAYMENT_REGISTRATION, "Started registration")

        config = self.get_online_payment_config(payment.source_ils)
        fine_ids = self.store.get_fine_ids_for_payment(payment)

        exact = config.get("exactBalanceRequired", True)
        no_credit = exact or bool(config.get("creditUnsupported"))
        if no_credit:
            try:
                fines = self.ils.get_my_fines(patron)
                details = self.get_and_check_online_payment_details(patron, fines, fine_ids or None)
            except Exception as e:
                logger.exception("Failed to process fine details", local_identifier=payment.local_identifier)
                self._registration_failed(
                    payment,
                    "Failed to process fine details",
                    "Registration failed: could not process fine details",
                    {"error": str(e)},
                )
                return False

            if details.get("payable") and details.get("amount") and (
                (exact and payment.amount != details["amount"])
                or payment.amount > details["amount"]
            ):
                logger.error(
                    "Payable sum updated",
                    local_identifier=payment.local_identifier,
                    paid_amount=payment.amount,
                    payable_amount=details["amount"],
                )
                self._fines_updated(payment)
                return False

        try:
            result = self.ils.register_payment(
                patron,
                payment.amount,
                payment.local_identifier,
                payment.remote_identifier,
                payment.id,
                fine_ids if config.get("selectFines") else None,
            )
        except Exception as e:
            logger.exception("Payment registration error", local_identifier=payment.local_identifier)
            self._registration_failed(payment, str(e), "Registration failed", {"error": str(e)})
            return False

        if not result.success:
            reason = result.reason or "no error information"
            logger.error("registerPayment failed", local_identifier=payment.local_identifier, reason=reason)
            if result.fines_changed:
                self._fines_updated(payment)
            else:
                self._registration_failed(payment, f"Failed to mark fees paid: {reason}", f"Registration failed: {reason}")
            return False

        if not self.store.transition(
            payment.id,
            REGISTRABLE_STATUSES,
            PaymentStatus.COMPLETED,
            registered=utcnow(),
            status_message="",
        ):
            logger.warning("Payment status changed during registration", local_identifier=payment.local_identifier)
            return False
        self.add_payment_event(payment, AuditEventSubtype.PAYMENT_REGISTRATION, "Successfully registered")
        logger.debug("Registration successful", local_identifier=payment.local_identifier)
        return True

    def _registration_failed(self, payment: Payment, status_message: str, event_message: str, data: dict | None = None):
        self.store.transition(
            payment.id,
            REGISTRABLE_STATUSES,
            PaymentStatus.REGISTRATION_FAILED,
            status_message=status_message[:255],
            registration_started=None,
        )
        self.add_payment_event(payment, AuditEventSubtype.PAYMENT_REGISTRATION, event_message, data)

    def _fines_updated(self, payment: Payment):
        self.store.transition(
            payment.id,
            REGISTRABLE_STATUSES,
            PaymentStatus.FINES_UPDATED,
            registration_started=None,
        )
        self.add_payment_event(payment, AuditEventSubtype.PAYMENT_REGISTRATION, "Registration failed: fines updated")

    # Receipts

    def send_receipt(self, payment: Payment) -> None:
        """E-mail the receipt of a freshly paid payment if the source wants one.

        Failures are recorded; they never affect the payment itself.
        """
        config = self.get_online_payment_config(payment.source_ils)
        if not config.get("receipt"):
            return
        patron = self.get_patron_for_payment(payment)
        if patron is None:
            return
        try:
            profile = {**patron, **self.ils.get_my_profile(patron)}
            sent = self.receipts.send_email(payment.user, profile, self.store.refresh(payment), config)
        except Exception as e:
            logger.exception("Failed to send email receipt", local_identifier=payment.local_identifier)
            self.add_payment_event(payment, AuditEventSubtype.PAYMENT_RECEIPT, "Sending of receipt failed", {"error": str(e)})
            return
        self.add_payment_event(
            payment,
            AuditEventSubtype.PAYMENT_RECEIPT,
            "Receipt sent" if sent else "Receipt not sent (no email address)",
        )

    # Operator and reconciliation actions

    def mark_expired(self, payment: Payment) -> bool:
        if not self.store.transition(
            payment.id,
            REGISTRABLE_STATUSES,
            PaymentStatus.REGISTRATION_EXPIRED,
            registration_started=None,
        ):
            return False
        self.add_payment_event(payment, AuditEventSubtype.PAYMENT_REGISTRATION, "Marked as expired")
        return True

    def resolve(self, payment: Payment) -> bool:
        if not self.store.transition(payment.id, RESOLVABLE_STATUSES, PaymentStatus.REGISTRATION_RESOLVED):
            return False
        self.add_payment_event(payment, AuditEventSubtype.PAYMENT, "Payment marked as resolved")
        return True

    def mark_reported(self, payments: list[Payment]) -> None:
        self.store.mark_reported([p.id for p in payments])

    def add_payment_event(self, payment: Payment, subtype: AuditEventSubtype, message: str = "", data: dict | None = None):
        add_payment_event_safely(self.audit, payment, subtype, message, data)
