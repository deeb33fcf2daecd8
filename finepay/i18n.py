"""Translation lookups for gateway line items and user-facing messages."""

DEFAULT_STRINGS = {
    "en": {
        "Payment::Service Fee": "Service Fee",
        "Payment::Payment Successful": "Payment successful",
        "Payment::Payment Canceled": "Payment canceled",
        "Payment::error_payment_request_failed": "Payment request failed",
        "Payment::error_fines_changed": "Your fines have changed, please review them before paying",
        "Payment::minimum_payment": "Minimum payment not reached",
        "Payment::registration_failed": "Payment registration failed",
        "Payment::breakdown_title": "Payment breakdown",
        "Payment::receipt_intro": "Thank you for your payment. The breakdown of the payment is attached.",
        "Payment::Total": "Total",
        "Payment::Tax": "VAT",
        "Payment::Business ID": "Business ID",
        "Overdue": "Overdue",
        "Lost": "Lost item",
        "Damaged": "Damaged item",
    },
}


class Translator:
    """Pure key lookup; unknown keys come back unchanged."""

    def __init__(self, locale: str = "en", strings: dict[str, dict[str, str]] | None = None):
        self.locale = locale
        self.strings = strings if strings is not None else DEFAULT_STRINGS

    def translate(self, key: str) -> str:
        language = self.locale.split("-", 1)[0].lower()
        for candidate in (self.locale, language, "en"):
            table = self.strings.get(candidate)
            if table and key in table:
                return table[key]
        return key
