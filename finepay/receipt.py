"""Payment receipts.

A receipt is an HTML breakdown of a paid payment: each fee with its tax
share, the service fee, and the business id and contact details of the
library that was paid. Patrons can fetch the receipt of their last paid
payment, and when a source has `receipt` enabled it is also e-mailed to them
as soon as the payment is marked paid.
"""

import smtplib
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from html import escape

import structlog

from finepay.exceptions import ConfigurationError
from finepay.handlers.support import parse_mappings
from finepay.i18n import Translator
from finepay.models import Payment, PaymentFee, User
from finepay.store import PaymentStore

logger = structlog.get_logger(__name__)


def format_amount(amount: int, currency: str) -> str:
    return f"{amount / 100:.2f} {currency}"


def format_tax_percent(tax_percent: int) -> str:
    return f"{tax_percent / 100:g} %"


@dataclass
class ReceiptLine:
    description: str
    organization: str
    business_id: str
    amount: int
    amount_excluding_tax: int
    tax: int
    tax_percent: int   # 1/100ths of a percent


@dataclass
class Receipt:
    local_identifier: str
    source_ils: str
    source_name: str
    paid: datetime | None
    currency: str
    lines: list[ReceiptLine]
    service_fee: int
    total: int
    business_id: str = ""
    contact_info: str = ""

    @property
    def tax(self) -> int:
        return sum(line.tax for line in self.lines)

    @property
    def fee_specific_organizations(self) -> bool:
        """Fees were levied by organizations with business ids of their own."""
        return any(line.business_id for line in self.lines)


class SmtpReceiptMailer:
    def __init__(self, host: str, port: int = 25, sender: str = "noreply@localhost"):
        self.host = host
        self.port = port
        self.sender = sender

    def __call__(self, recipients: list[str], subject: str, text: str, html: str, filename: str) -> None:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = ", ".join(recipients)
        message["Subject"] = subject
        message.set_content(text)
        message.add_attachment(html, subtype="html", filename=filename)

        with smtplib.SMTP(self.host, self.port, timeout=30) as smtp:
            smtp.send_message(message)


class ReceiptService:
    def __init__(self, store: PaymentStore, translator: Translator, mailer=None):
        self.store = store
        self.translator = translator
        self.mailer = mailer

    def get_source_name(self, source_ils: str) -> str:
        key = f"source_{source_ils}"
        name = self.translator.translate(key)
        return source_ils if name == key else name

    def build_receipt(self, payment: Payment, payment_config: dict) -> Receipt:
        business_ids = parse_mappings(payment_config.get("organizationBusinessIdMappings"))
        lines = [
            ReceiptLine(
                description=self._describe(fee),
                organization=fee.organization,
                business_id=business_ids.get(fee.organization, ""),
                amount=fee.amount,
                amount_excluding_tax=fee.amount_excluding_tax(),
                tax=fee.tax(),
                tax_percent=fee.tax_percent,
            )
            for fee in self.store.get_fees_for_payment(payment)
        ]
        return Receipt(
            local_identifier=payment.local_identifier,
            source_ils=payment.source_ils,
            source_name=self.get_source_name(payment.source_ils),
            paid=payment.paid,
            currency=payment.currency,
            lines=lines,
            service_fee=payment.service_fee,
            total=payment.amount + payment.service_fee,
            business_id=payment_config.get("businessId", ""),
            contact_info=payment_config.get("contactInfo", ""),
        )

    def _describe(self, fee: PaymentFee) -> str:
        if fee.description:
            return fee.description
        description = self.translator.translate(fee.type) if fee.type else ""
        if fee.title:
            description = f"{description} ({fee.title})" if description else fee.title
        return description

    def get_filename(self, receipt: Receipt) -> str:
        title = self.translator.translate("Payment::breakdown_title")
        if receipt.paid is None:
            return f"{title}.html"
        return f"{title} - {receipt.paid:%Y-%m-%d %H-%M}.html"

    def render_html(self, receipt: Receipt) -> str:
        t = self.translator.translate
        title = escape(t("Payment::breakdown_title"))
        rows = []
        for line in receipt.lines:
            organization = escape(line.organization)
            if receipt.fee_specific_organizations and line.business_id:
                organization += f"<br>{escape(t('Payment::Business ID'))}: {escape(line.business_id)}"
            rows.append(
                "<tr>"
                f"<td>{escape(line.description)}</td>"
                f"<td>{organization}</td>"
                f"<td>{format_amount(line.amount_excluding_tax, receipt.currency)}</td>"
                f"<td>{format_tax_percent(line.tax_percent)}</td>"
                f"<td>{format_amount(line.tax, receipt.currency)}</td>"
                f"<td>{format_amount(line.amount, receipt.currency)}</td>"
                "</tr>"
            )
        if receipt.service_fee:
            rows.append(
                f"<tr><td colspan=\"5\">{escape(t('Payment::Service Fee'))}</td>"
                f"<td>{format_amount(receipt.service_fee, receipt.currency)}</td></tr>"
            )

        header = [f"<h1>{title}</h1>", f"<p>{escape(receipt.source_name)}"]
        if receipt.business_id:
            header.append(f"<br>{escape(t('Payment::Business ID'))}: {escape(receipt.business_id)}")
        header.append("</p>")
        paid = f"{receipt.paid:%Y-%m-%d %H:%M}" if receipt.paid else ""
        footer = []
        if receipt.contact_info:
            footer.append(f"<p>{escape(receipt.contact_info)}</p>")

        return (
            "<!DOCTYPE html>\n"
            "<html><head><meta charset=\"utf-8\">"
            f"<meta name=\"filename\" content=\"{escape(self.get_filename(receipt))}\">"
            f"<title>{title}</title></head><body>"
            + "".join(header)
            + f"<p>{paid} {escape(receipt.local_identifier)}</p>"
            + "<table>" + "".join(rows) + "</table>"
            + f"<p>{escape(t('Payment::Tax'))}: {format_amount(receipt.tax, receipt.currency)}</p>"
            + f"<p><strong>{escape(t('Payment::Total'))}: {format_amount(receipt.total, receipt.currency)}</strong></p>"
            + "".join(footer)
            + "</body></html>\n"
        )

    def create_receipt(self, payment: Payment, payment_config: dict) -> dict:
        receipt = self.build_receipt(payment, payment_config)
        return {"receipt": receipt, "html": self.render_html(receipt), "filename": self.get_filename(receipt)}

    def send_email(self, user: User, patron_profile: dict, payment: Payment, payment_config: dict) -> bool:
        """E-mail the receipt to the patron; False if there is no address to send it to."""
        recipients = []
        for address in (patron_profile.get("email"), user.email if user else None):
            address = (address or "").strip()
            if address and address not in recipients:
                recipients.append(address)
        if not recipients:
            return False
        if self.mailer is None:
            raise ConfigurationError("Receipt e-mail is not configured (SMTP_HOST)")

        data = self.create_receipt(payment, payment_config)
        receipt = data["receipt"]
        text = self.translator.translate("Payment::receipt_intro")
        if receipt.contact_info:
            text += "\n\n" + receipt.contact_info
        subject = f"{self.translator.translate('Payment::breakdown_title')} - {receipt.source_name}"
        self.mailer(recipients, subject, text, data["html"], data["filename"])
        logger.info("Receipt sent", local_identifier=payment.local_identifier, recipients=len(recipients))
        return True
