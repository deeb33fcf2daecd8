"""Reconciliation of paid but unregistered payments.

Run periodically (see `finepay monitor`). Each run retries registration of
payments stuck in Paid or RegistrationFailed, expires those that have been
retried for too long, and reports payments that need manual attention to the
per-source error address.
"""

import smtplib
from collections import defaultdict
from dataclasses import dataclass
from datetime import timedelta
from email.message import EmailMessage

import structlog

from finepay.enums import AuditEventSubtype
from finepay.manager import OnlinePaymentManager
from finepay.models import Payment
from finepay.store import PaymentStore, utcnow

logger = structlog.get_logger(__name__)

MINIMUM_PAID_AGE = 120  # seconds
RETRY_MINUTES = 120
REPORT_INTERVAL = 120  # minutes


@dataclass
class MonitorResult:
    registered: int = 0
    expired: int = 0
    failed: int = 0
    reported: int = 0


class SmtpReporter:
    """Send a short alert about unresolved payments by e-mail."""

    def __init__(self, host: str, port: int = 25, sender: str = "noreply@localhost", admin_url: str = ""):
        self.host = host
        self.port = port
        self.sender = sender
        self.admin_url = admin_url

    def __call__(self, recipient: str, source: str, payments: list[Payment]) -> None:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = recipient
        message["Subject"] = f"Online payment alert: {len(payments)} unresolved payments ({source})"
        lines = [
            f"{len(payments)} paid online payments for {source} could not be registered",
            "and need to be resolved manually.",
            "",
        ]
        lines.extend(f"{p.local_identifier}  {p.cat_username}  {p.amount} {p.currency}" for p in payments)
        if self.admin_url:
            lines.extend(["", f"Payments can be reviewed at {self.admin_url}"])
        message.set_content("\n".join(lines))

        with smtplib.SMTP(self.host, self.port, timeout=30) as smtp:
            smtp.send_message(message)


class PaymentMonitor:
    def __init__(
        self,
        store: PaymentStore,
        manager: OnlinePaymentManager,
        reporter=None,
        minimum_paid_age: int = MINIMUM_PAID_AGE,
        retry_minutes: int = RETRY_MINUTES,
        report_interval: int = REPORT_INTERVAL,
    ):
        if minimum_paid_age < 10:
            raise ValueError("Minimum paid age must be at least 10 seconds")
        self.store = store
        self.manager = manager
        self.reporter = reporter
        self.minimum_paid_age = minimum_paid_age
        self.retry_minutes = retry_minutes
        self.report_interval = report_interval

    def run(self) -> MonitorResult:
        logger.info("Online payment monitor started")
        result = MonitorResult()
        for payment in self.store.get_failed_payments(self.minimum_paid_age):
            self.process_payment(payment, result)

        # Paid and unregistered payments whose registration can not be retried
        unresolved = self.store.get_unresolved_payments_to_report(self.report_interval)

        logger.info(
            "Online payment monitor totals",
            registered=result.registered,
            expired=result.expired,
            failed=result.failed,
            to_report=len(unresolved),
        )
        if self.reporter is not None and unresolved:
            result.reported = self.send_reports(unresolved)

        logger.info("Online payment monitor completed")
        return result

    def process_payment(self, payment: Payment, result: MonitorResult) -> None:
        logger.info(
            "Registering payment",
            payment_id=payment.id,
            local_identifier=payment.local_identifier,
            status=payment.status,
            status_message=payment.status_message,
            paid=payment.paid.isoformat() if payment.paid else None,
        )

        if utcnow() - payment.paid > timedelta(minutes=self.retry_minutes):
            if self.manager.mark_expired(payment):
                logger.info("Payment marked as expired", local_identifier=payment.local_identifier)
                result.expired += 1
            return

        try:
            if self.manager.register_payment_with_ils(payment):
                result.registered += 1
            else:
                result.failed += 1
        except Exception as e:
            logger.exception(
                "Exception while processing payment",
                payment_id=payment.id,
                user_id=payment.user_id,
                cat_username=payment.cat_username,
            )
            self.manager.add_payment_event(
                payment,
                AuditEventSubtype.PAYMENT_REGISTRATION,
                "Exception processing payment",
                {"error": str(e)},
            )
            result.failed += 1

    def send_reports(self, payments: list[Payment]) -> int:
        """Report payments grouped by source ILS; returns the number reported."""
        by_source = defaultdict(list)
        for payment in payments:
            by_source[payment.source_ils].append(payment)

        reported = 0
        for source, source_payments in by_source.items():
            recipient = self.manager.get_online_payment_config(source).get("errorEmail")
            if not recipient:
                logger.error(
                    "No error email for expired payments defined",
                    source_ils=source,
                    error_count=len(source_payments),
                )
                continue
            logger.info("Reporting expired payments", source_ils=source, count=len(source_payments), recipient=recipient)
            try:
                self.reporter(recipient, source, source_payments)
            except Exception:
                logger.exception("Failed to send error report", source_ils=source, recipient=recipient)
                continue
            self.manager.mark_reported(source_payments)
            reported += len(source_payments)
        return reported
