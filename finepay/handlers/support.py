"""Helpers shared by all payment handlers.

Product code and description derivation is pure: the same fine and mapping
tables always give the same result.
"""

import hashlib
import secrets
import time
from urllib.parse import urlencode

import structlog
from starlette.responses import RedirectResponse

from finepay.audit import add_payment_event_safely, scrub_secrets
from finepay.enums import AuditEventSubtype
from finepay.exceptions import LocalIdentifierCollision, PaymentRequestFailed
from finepay.handlers.port import HandlerContext
from finepay.models import Payment, User
from finepay.retry import call_with_retries

logger = structlog.get_logger(__name__)


def parse_mappings(mappings: str | None) -> dict[str, str]:
    """Parse `key=value:key=value`; malformed entries are skipped."""
    if not mappings:
        return {}
    result = {}
    for item in mappings.split(":"):
        parts = item.split("=", 1)
        if len(parts) != 2:
            continue
        key, value = parts[0].strip(), parts[1].strip()
        if key and value:
            result[key] = value
    return result


def add_query_params(url: str, params: dict) -> str:
    return url + ("&" if "?" in url else "?") + urlencode(params)


def dump_data(data, level: int = 0) -> str:
    """Readable multi-line dump for error logs."""
    # Don't go too deep
    if level > 3:
        return ""
    indent = "  " * level
    results = []
    for key, value in data.items():
        if hasattr(value, "__table__"):
            value = scrub_secrets({c.name: getattr(value, c.name) for c in value.__table__.columns})
        if isinstance(value, dict):
            results.append(f"{key}: {{\n{dump_data(value, level + 1)}\n{indent}}}")
        else:
            results.append(f"{key}: {value!r}")
    return indent + f",\n{indent}".join(results)


class PaymentSupport:
    def __init__(self, context: HandlerContext, config: dict):
        self.context = context
        self.config = config
        self.product_code_mappings = parse_mappings(config.get("productCodeMappings"))
        self.organization_product_code_prefix_mappings = parse_mappings(
            config.get("organizationProductCodePrefixMappings")
        )

    # Configuration

    def get_currency_code(self) -> str:
        return self.config.get("currency") or "USD"

    def get_service_fee(self) -> int:
        return int(self.config.get("serviceFee") or 0)

    def get_default_product_code(self) -> str | None:
        return self.config.get("productCode") or None

    def get_service_fee_product_code(self) -> str | None:
        return self.config.get("serviceFeeProductCode") or None

    def get_service_fee_tax_rate(self) -> int | None:
        """Tax rate in 1/100ths of a percent, or None if not configured."""
        rate = self.config.get("serviceFeeTaxRate")
        return None if rate is None else int(rate)

    def get_current_locale(self) -> str:
        """User's locale as e.g. `en` or `en-GB`."""
        parts = self.context.locale.split("-", 1)
        return f"{parts[0]}-{parts[1].upper()}" if len(parts) == 2 else parts[0]

    def get_current_language_code(self) -> str:
        return self.get_current_locale().split("-", 1)[0]

    # Identifiers

    def generate_local_identifier(self, patron: dict) -> str:
        seed = f"{patron['cat_username']}_{time.time_ns()}_{secrets.token_hex(8)}"
        return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:32]

    def _new_local_identifier(self, patron: dict) -> str:
        identifier = self.generate_local_identifier(patron)
        if self.context.store.local_identifier_exists(identifier):
            raise LocalIdentifierCollision(identifier)
        return identifier

    def generate_unique_local_identifier(self, patron: dict) -> str:
        return call_with_retries(self._new_local_identifier, patron)

    # Line items

    def get_fine_product_code(self, fine: dict) -> str | None:
        # Without any mappings there are no products
        if (
            not self.product_code_mappings
            and not self.organization_product_code_prefix_mappings
            and not self.get_default_product_code()
            and fine.get("product_code") is None
        ):
            return None

        fine_type = fine.get("type") or ""
        code = fine.get("product_code")
        if code is None:
            code = self.product_code_mappings.get(fine_type)
        if code is None:
            code = self.get_default_product_code()
        if code is None:
            code = fine_type

        prefix = self.organization_product_code_prefix_mappings.get(fine.get("organization") or "")
        if prefix is not None:
            code = prefix + code
        return code

    def get_fine_description(self, fine: dict, max_length: int) -> str:
        """Fine type and record title, at most `max_length` characters."""
        description = fine.get("description") or ""
        if description:
            return description[:max_length]

        description = ""
        fine_type = fine.get("type") or ""
        if fine_type:
            description = self.context.translator.translate(fine_type)[:max_length]
        title = fine.get("title") or ""
        if title:
            room = max_length - 4 - len(description)
            if room > 0:
                description += f" ({title[:room]})"
        return description

    # Payment records

    def create_payment(
        self,
        local_identifier: str,
        remote_identifier: str | None,
        user: User,
        patron: dict,
        amount: int,
        fines: list[dict],
    ) -> Payment:
        try:
            payment = self.context.store.create_in_progress_payment(
                local_identifier,
                remote_identifier,
                user,
                patron,
                amount,
                self.get_currency_code(),
                self.get_service_fee(),
                fines,
            )
        except LocalIdentifierCollision as e:
            # The gateway already knows this identifier, so it cannot be replaced
            self.log_payment_error(
                f"Local identifier {local_identifier} was taken before the payment could be saved",
                {"remote_identifier": remote_identifier, "patron": patron},
            )
            raise PaymentRequestFailed({"local_identifier": local_identifier}) from e
        self.add_payment_event(payment, AuditEventSubtype.PAYMENT, "Payment created")
        return payment

    def redirect_to_payment(self, url: str, payment: Payment) -> RedirectResponse:
        self.add_payment_event(payment, AuditEventSubtype.PAYMENT, "Redirected to payment gateway")
        return RedirectResponse(url, status_code=302)

    def add_payment_event(self, payment: Payment, subtype: AuditEventSubtype, message: str = "", data: dict | None = None):
        add_payment_event_safely(self.context.audit, payment, subtype, message, data)

    def log_payment_error(self, msg: str, data: dict | None = None) -> None:
        msg = f"Online payment: {msg}"
        if data:
            msg += ". Additional data:\n" + dump_data(scrub_secrets(data))
        logger.error(msg)
