from finepay.handlers.echo import EchoHandler
from finepay.handlers.paytrail import PaytrailHandler
from finepay.handlers.port import CallbackRequest, HandlerContext, PaymentHandler, PaymentResult
from finepay.handlers.stripe_checkout import StripeHandler

HANDLERS = {
    EchoHandler.name: EchoHandler,
    PaytrailHandler.name: PaytrailHandler,
    StripeHandler.name: StripeHandler,
}


def get_handler_class(name: str) -> type[PaymentHandler]:
    try:
        return HANDLERS[name]
    except KeyError:
        raise ValueError(f"Unknown payment handler: {name}") from None


__all__ = [
    "CallbackRequest",
    "HandlerContext",
    "PaymentHandler",
    "PaymentResult",
    "get_handler_class",
]
