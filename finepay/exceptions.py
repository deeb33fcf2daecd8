"""Payment errors.

`message_key` is what a user may see (it is run through the translator);
`context` carries diagnostic data and only ever goes to logs.
"""


class PaymentException(Exception):
    def __init__(self, message_key: str, context: dict | None = None):
        super().__init__(message_key)
        self.message_key = message_key
        self.context = context or {}


class ConfigurationError(PaymentException):
    """Handler configuration is missing or invalid."""


class SignatureError(PaymentException):
    """Callback parameters failed signature validation."""


class PaymentRequestFailed(PaymentException):
    """The gateway refused or failed to create a payment."""

    def __init__(self, context: dict | None = None):
        super().__init__("Payment::error_payment_request_failed", context)


class PaymentNotFound(PaymentException):
    pass


class LocalIdentifierCollision(Exception):
    """A freshly generated local identifier is already in use."""
