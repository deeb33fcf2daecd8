"""
Maintenance commands for the payment service.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

import click
import httpx

from finepay.audit import AuditEventService
from finepay.config import get_enabled_audit_event_types, get_http_timeout, get_smtp_settings, load_payment_config
from finepay.ils import get_ils
from finepay.logging import setup_logging
from finepay.manager import OnlinePaymentManager
from finepay.monitor import MINIMUM_PAID_AGE, REPORT_INTERVAL, RETRY_MINUTES, PaymentMonitor, SmtpReporter
from finepay.store import PaymentStore, utcnow


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    session_factory: Callable
    ils_factory: Callable
    payment_config: Callable[[], dict]
    reporter_factory: Callable


def _default_reporter():
    settings = get_smtp_settings()
    if not settings["host"]:
        return None
    return SmtpReporter(settings["host"], settings["port"], settings["sender"], settings["admin_url"])


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    from finepay.database import SessionLocal

    return CLIDependencies(
        session_factory=SessionLocal,
        ils_factory=get_ils,
        payment_config=load_payment_config,
        reporter_factory=_default_reporter,
    )


@click.group()
def cli() -> None:
    """Library fine payment service CLI."""
    setup_logging()


@cli.command()
@click.option("--report-interval", default=REPORT_INTERVAL, show_default=True,
              help="Interval for re-sending reports of unresolved payments (minutes)")
@click.option("--minimum-paid-age", default=MINIMUM_PAID_AGE, show_default=True,
              help="Minimum age of payments in 'paid' status until they are considered failed (seconds)")
@click.option("--retry-duration", default=RETRY_MINUTES, show_default=True,
              help="Duration of registration retry attempts (minutes); unregistered payments expire after it")
@click.option("--no-email", is_flag=True, help="Disable sending of any email messages")
def monitor(report_interval: int, minimum_paid_age: int, retry_duration: int, no_email: bool) -> None:
    """Validate unregistered online payments and send error notifications."""
    if minimum_paid_age < 10:
        raise click.BadParameter("must be at least 10 seconds", param_hint="--minimum-paid-age")

    deps = _get_cli_dependencies()
    store = PaymentStore(deps.session_factory)
    audit = AuditEventService(deps.session_factory, get_enabled_audit_event_types())
    with httpx.Client(timeout=get_http_timeout()) as http:
        manager = OnlinePaymentManager(store, audit, deps.ils_factory(), deps.payment_config(), http)
        reporter = None if no_email else deps.reporter_factory()
        result = PaymentMonitor(
            store,
            manager,
            reporter,
            minimum_paid_age=minimum_paid_age,
            retry_minutes=retry_duration,
            report_interval=report_interval,
        ).run()

    click.echo(
        f"Registered: {result.registered}, expired: {result.expired}, "
        f"failed: {result.failed}, reported: {result.reported}"
    )


@cli.command()
@click.option("--days", default=365, show_default=True, help="Delete audit events older than this many days")
@click.option("--batch-size", default=1000, show_default=True, help="Events deleted per transaction")
def expire_audit_events(days: int, batch_size: int) -> None:
    """Delete old audit events in batches."""
    if days < 1:
        raise click.BadParameter("must be at least 1", param_hint="--days")

    deps = _get_cli_dependencies()
    audit = AuditEventService(deps.session_factory, get_enabled_audit_event_types())
    date_limit = utcnow() - timedelta(days=days)
    total = 0
    while True:
        count = audit.delete_expired(date_limit, batch_size)
        if not count:
            break
        total += count
    click.echo(f"{total} expired audit events deleted")


if __name__ == "__main__":
    cli()
