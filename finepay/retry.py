"""Bounded retries for generating probabilistically unique tokens."""

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt

from finepay.exceptions import LocalIdentifierCollision

DEFAULT_ATTEMPTS = 5


def call_with_retries(func, *args, attempts: int = DEFAULT_ATTEMPTS, retry_on=(LocalIdentifierCollision,), **kwargs):
    """Call `func` until it stops raising `retry_on`, at most `attempts` times.

    The error from the final attempt is re-raised unchanged.
    """
    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        retry=retry_if_exception_type(retry_on),
        reraise=True,
    )
    return retrying(func, *args, **kwargs)
