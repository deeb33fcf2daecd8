"""Append-only audit event log.

Events are written in their own short transaction, separate from whatever
primary operation they describe. Storage errors propagate from here; code
observing a payment goes through add_payment_event_safely().
"""

import inspect
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import delete, select

from finepay.enums import AuditEventSubtype, AuditEventType, CustomEvent, event_value
from finepay.models import AuditEvent, Payment, User
from finepay.store import utcnow

logger = structlog.get_logger(__name__)

SCRUBBED = "***"


@dataclass(frozen=True)
class RequestContext:
    """Caller details captured once per request and stamped on every event."""

    session_id: str | None = None
    client_ip: str | None = None
    server_ip: str | None = None
    server_name: str | None = None
    request_uri: str | None = None

    @classmethod
    def from_request(cls, request) -> "RequestContext":
        server = request.scope.get("server") or (None, None)
        return cls(
            session_id=request.cookies.get("session") or request.headers.get("x-session-id"),
            client_ip=request.client.host if request.client else None,
            server_ip=server[0],
            server_name=request.url.hostname,
            request_uri=str(request.url),
        )


def scrub_secrets(data):
    """Replace values of `csrf` and `*password*` keys at any depth."""
    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if key == "csrf" or "password" in str(key):
                result[key] = SCRUBBED
            else:
                result[key] = scrub_secrets(value)
        return result
    if isinstance(data, (list, tuple)):
        return [scrub_secrets(item) for item in data]
    return data


def _caller_of_parent() -> str:
    """Name the first function outside this module on the call stack."""
    frame = inspect.currentframe()
    try:
        while frame is not None and frame.f_globals.get("__name__") == __name__:
            frame = frame.f_back
        if frame is None:
            return ""
        owner = frame.f_locals.get("self")
        name = frame.f_code.co_name
        return f"{type(owner).__name__}::{name}" if owner is not None else name
    finally:
        del frame


class AuditEventService:
    def __init__(self, session_factory, enabled_event_types: list[str], context: RequestContext | None = None):
        self.session_factory = session_factory
        self.enabled_event_types = set(enabled_event_types)
        self.context = context or RequestContext()

    def is_enabled(self, event_type: AuditEventType | CustomEvent) -> bool:
        return event_value(event_type) in self.enabled_event_types

    def add_event(
        self,
        event_type: AuditEventType | CustomEvent,
        subtype: AuditEventSubtype | CustomEvent,
        user: User | None = None,
        message: str | None = None,
        data: dict | None = None,
    ) -> AuditEvent | None:
        """Store an event; returns None when the type is not enabled."""
        if not self.is_enabled(event_type):
            return None
        data = scrub_secrets(data or {})
        data["__method"] = _caller_of_parent()
        return self._store(event_type, subtype, user, None, message, data)

    def add_payment_event(
        self,
        payment: Payment,
        subtype: AuditEventSubtype | CustomEvent,
        message: str = "",
        data: dict | None = None,
    ) -> AuditEvent | None:
        if not self.is_enabled(AuditEventType.PAYMENT):
            return None
        data = scrub_secrets(data or {})
        data["__method"] = _caller_of_parent()
        data["__request_uri"] = self.context.request_uri
        return self._store(AuditEventType.PAYMENT, subtype, payment.user, payment, message, data)

    def _store(self, event_type, subtype, user, payment, message, data) -> AuditEvent:
        event = AuditEvent(
            date=utcnow(),
            type=event_value(event_type),
            subtype=event_value(subtype),
            user_id=user.id if user is not None else None,
            username=user.username if user is not None else None,
            payment_id=payment.id if payment is not None else None,
            session_id=self.context.session_id,
            client_ip=self.context.client_ip,
            server_ip=self.context.server_ip,
            server_name=self.context.server_name,
            message=message[:255] if message else message,
            data=data,
        )
        with self.session_factory() as db:
            db.add(event)
            db.commit()
        return event

    def get_events(
        self,
        from_date: datetime | None = None,
        until_date: datetime | None = None,
        event_type: AuditEventType | CustomEvent | None = None,
        subtype: AuditEventSubtype | CustomEvent | None = None,
        user: User | int | None = None,
        username: str | None = None,
        client_ip: str | None = None,
        server_ip: str | None = None,
        server_name: str | None = None,
        payment: Payment | None = None,
        message: str | None = None,
        sort: list[str] | None = None,
    ) -> list[AuditEvent]:
        query = select(AuditEvent)
        if from_date is not None:
            query = query.where(AuditEvent.date >= from_date)
        if until_date is not None:
            query = query.where(AuditEvent.date <= until_date)
        if event_type is not None:
            query = query.where(AuditEvent.type == event_value(event_type))
        if subtype is not None:
            query = query.where(AuditEvent.subtype == event_value(subtype))
        if user is not None:
            query = query.where(AuditEvent.user_id == (user.id if isinstance(user, User) else user))
        if username is not None:
            query = query.where(AuditEvent.username == username)
        if client_ip is not None:
            query = query.where(AuditEvent.client_ip == client_ip)
        if server_ip is not None:
            query = query.where(AuditEvent.server_ip == server_ip)
        if server_name is not None:
            query = query.where(AuditEvent.server_name == server_name)
        if payment is not None:
            query = query.where(AuditEvent.payment_id == payment.id)
        if message is not None:
            query = query.where(AuditEvent.message == message)

        query = query.order_by(*self._order_by(sort or ["date DESC", "id DESC"]))
        with self.session_factory() as db:
            return list(db.scalars(query))

    @staticmethod
    def _order_by(sort: list[str]):
        clauses = []
        for item in sort:
            field, _, direction = item.partition(" ")
            column = getattr(AuditEvent, field, None)
            if column is None:
                raise ValueError(f"Unknown sort field: {field}")
            clauses.append(column.desc() if direction.strip().upper() == "DESC" else column.asc())
        return clauses

    def delete_expired(self, date_limit: datetime, limit: int | None = None) -> int:
        """Delete events older than date_limit, at most `limit` per call.

        Call repeatedly until it returns 0 to keep each lock short.
        """
        ids = select(AuditEvent.id).where(AuditEvent.date < date_limit)
        if limit:
            ids = ids.limit(limit)
        with self.session_factory() as db:
            batch = list(db.scalars(ids))
            if not batch:
                return 0
            result = db.execute(delete(AuditEvent).where(AuditEvent.id.in_(batch)))
            db.commit()
            return result.rowcount

    def purge_events(self) -> None:
        with self.session_factory() as db:
            db.execute(delete(AuditEvent))
            db.commit()
        logger.warning("Audit events purged")


def add_payment_event_safely(
    audit: AuditEventService,
    payment: Payment,
    subtype: AuditEventSubtype | CustomEvent,
    message: str = "",
    data: dict | None = None,
) -> None:
    """Record a payment event without letting a storage failure escape.

    Payment state is written first and is authoritative; the event is a
    separate, later write. Do not fold the two into one transaction: an
    unavailable audit table must never stop a payment from being recorded.
    """
    try:
        audit.add_payment_event(payment, subtype, message, data)
    except Exception:
        logger.exception(
            "Failed to write payment audit event",
            payment_id=payment.id,
            local_identifier=payment.local_identifier,
            event_message=message,
        )
