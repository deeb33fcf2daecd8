"""Payment persistence.

All timestamps are naive UTC datetimes. "Now" is taken when each query runs,
never cached on the store, so long-running jobs see a moving clock.

Status changes go through `transition()`, a single conditional UPDATE: the
row changes only if its status is still one of the expected ones, and the
caller learns from the return value whether its write won.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from finepay.enums import PaymentStatus
from finepay.exceptions import LocalIdentifierCollision
from finepay.models import Payment, PaymentFee, User

logger = structlog.get_logger(__name__)

REGISTRATION_TIMEOUT = 120  # seconds

PAID_STATUSES = (
    PaymentStatus.COMPLETED,
    PaymentStatus.PAID,
    PaymentStatus.REGISTRATION_FAILED,
    PaymentStatus.REGISTRATION_EXPIRED,
    PaymentStatus.REGISTRATION_RESOLVED,
    PaymentStatus.FINES_UPDATED,
)

PAID_UNREGISTERED_STATUSES = (
    PaymentStatus.PAID,
    PaymentStatus.REGISTRATION_FAILED,
    PaymentStatus.REGISTRATION_EXPIRED,
    PaymentStatus.FINES_UPDATED,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def sanitize(value, length: int = 255) -> str:
    """Drop invalid UTF-8 and cut to column length."""
    if value is None:
        return ""
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="ignore")
    value = str(value).encode("utf-8", errors="ignore").decode("utf-8")
    return value[:length]


def like_pattern(value: str) -> str:
    """Turn leading/trailing `*` wildcards into SQL LIKE wildcards."""
    if value.startswith("*"):
        value = "%" + value[1:]
    if value.endswith("*"):
        value = value[:-1] + "%"
    return value


@dataclass
class PaymentPage:
    items: list[Payment]
    total: int
    page: int | None
    limit: int


class PaymentStore:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    # Creation

    def create_in_progress_payment(
        self,
        local_identifier: str,
        remote_identifier: str | None,
        user: User,
        patron: dict,
        amount: int,
        currency: str,
        service_fee: int,
        fines: list[dict],
    ) -> Payment:
        """Persist a new in-progress payment and its fees in one transaction."""
        payment = Payment(
            local_identifier=local_identifier,
            remote_identifier=remote_identifier,
            user_id=user.id,
            source_ils=patron.get("source") or "default",
            cat_username=patron["cat_username"],
            amount=amount,
            currency=currency,
            service_fee=service_fee,
            status=PaymentStatus.IN_PROGRESS,
            status_message="",
            created=utcnow(),
        )
        with self.session_factory() as db:
            try:
                db.add(payment)
                db.flush()
                for fine in fines:
                    db.add(PaymentFee(
                        payment_id=payment.id,
                        fine_id=str(fine.get("fine_id") or ""),
                        type=sanitize(fine.get("type")),
                        title=sanitize(fine.get("title")),
                        description=sanitize(fine.get("description")),
                        organization=sanitize(fine.get("organization")),
                        amount=int(round(fine["balance"])),
                        tax_percent=int(fine.get("tax_percent") or 0),
                        currency=currency,
                    ))
                db.commit()
            except IntegrityError as e:
                db.rollback()
                if self.local_identifier_exists(local_identifier):
                    raise LocalIdentifierCollision(local_identifier) from e
                raise
            except Exception:
                db.rollback()
                raise
            payment.user = db.get(User, user.id)
        return payment

    # Lookups

    def get_payment_by_id(self, payment_id: int) -> Payment | None:
        with self.session_factory() as db:
            return db.get(Payment, payment_id)

    def get_payment_by_local_identifier(self, local_identifier: str) -> Payment | None:
        return self._first(select(Payment).where(Payment.local_identifier == local_identifier))

    def local_identifier_exists(self, local_identifier: str) -> bool:
        query = select(func.count(Payment.id)).where(Payment.local_identifier == local_identifier)
        with self.session_factory() as db:
            return db.scalar(query) > 0

    def refresh(self, payment: Payment) -> Payment:
        """Return a fresh copy of the payment from the database."""
        return self.get_payment_by_id(payment.id)

    def get_last_paid_payment_for_patron(self, cat_username: str) -> Payment | None:
        return self._first(
            select(Payment)
            .where(Payment.cat_username == cat_username, Payment.status.in_(PAID_STATUSES))
            .order_by(Payment.paid.desc())
        )

    def get_paid_payment_in_progress_for_patron(self, cat_username: str) -> Payment | None:
        """Latest payment that is paid but not (yet) registered with the ILS."""
        return self._first(
            select(Payment)
            .where(Payment.cat_username == cat_username, Payment.status.in_(PAID_UNREGISTERED_STATUSES))
            .order_by(Payment.created.desc())
        )

    def get_started_payment_for_patron(self, cat_username: str, payment_max_duration: int) -> Payment | None:
        """Latest in-progress payment that has been running for at least
        `payment_max_duration` minutes, i.e. one the patron abandoned.

        A duration of 0 disables the lookup.
        """
        if payment_max_duration <= 0:
            return None
        limit = utcnow() - timedelta(minutes=payment_max_duration)
        return self._first(
            select(Payment)
            .where(
                Payment.cat_username == cat_username,
                Payment.status == PaymentStatus.IN_PROGRESS,
                Payment.created <= limit,
            )
            .order_by(Payment.created.desc())
        )

    def get_failed_payments(self, minimum_paid_age: int = 120) -> list[Payment]:
        """Payments whose registration failed, or that have sat in Paid for
        more than `minimum_paid_age` seconds."""
        paid_limit = utcnow() - timedelta(seconds=minimum_paid_age)
        query = (
            select(Payment)
            .where(
                Payment.paid.is_not(None),
                or_(
                    Payment.status == PaymentStatus.REGISTRATION_FAILED,
                    (Payment.status == PaymentStatus.PAID) & (Payment.paid < paid_limit),
                ),
            )
            .order_by(Payment.created)
        )
        with self.session_factory() as db:
            return list(db.scalars(query))

    def get_unresolved_payments_to_report(self, interval: int) -> list[Payment]:
        """Unresolvable payments not reported within the last `interval` minutes."""
        reported_limit = utcnow() - timedelta(minutes=interval)
        query = (
            select(Payment)
            .where(
                Payment.status.in_((PaymentStatus.FINES_UPDATED, PaymentStatus.REGISTRATION_EXPIRED)),
                Payment.paid.is_not(None),
                or_(Payment.reported.is_(None), Payment.reported < reported_limit),
            )
            .order_by(Payment.created)
        )
        with self.session_factory() as db:
            return list(db.scalars(query))

    def get_payment_page(
        self,
        statuses: list[PaymentStatus] | None = None,
        local_identifier: str | None = None,
        remote_identifier: str | None = None,
        source_ils: str | None = None,
        cat_username: str | None = None,
        created_from: datetime | None = None,
        created_until: datetime | None = None,
        paid_from: datetime | None = None,
        paid_until: datetime | None = None,
        page: int | None = None,
        limit: int = 20,
    ) -> PaymentPage:
        """Filtered listing for operators; `*_until` dates include the whole day."""
        conditions = []
        if statuses:
            conditions.append(Payment.status.in_([int(s) for s in statuses]))
        if local_identifier is not None:
            conditions.append(Payment.local_identifier.like(like_pattern(local_identifier)))
        if remote_identifier is not None:
            conditions.append(Payment.remote_identifier.like(like_pattern(remote_identifier)))
        if source_ils is not None:
            conditions.append(Payment.source_ils.like(like_pattern(source_ils)))
        if cat_username is not None:
            conditions.append(Payment.cat_username.like(like_pattern(cat_username)))
        if created_from is not None:
            conditions.append(Payment.created >= created_from)
        if created_until is not None:
            conditions.append(Payment.created < created_until + timedelta(days=1))
        if paid_from is not None:
            conditions.append(Payment.paid >= paid_from)
        if paid_until is not None:
            conditions.append(Payment.paid < paid_until + timedelta(days=1))

        query = select(Payment).where(*conditions).order_by(Payment.created.desc(), Payment.id.desc())
        count_query = select(func.count(Payment.id)).where(*conditions)
        if page is not None:
            query = query.limit(limit).offset(limit * (max(page, 1) - 1))
        with self.session_factory() as db:
            total = db.scalar(count_query)
            items = list(db.scalars(query))
        return PaymentPage(items=items, total=total, page=page, limit=limit)

    def get_unique_source_ils_list(self) -> list[str]:
        query = select(Payment.source_ils).distinct().order_by(Payment.source_ils)
        with self.session_factory() as db:
            return list(db.scalars(query))

    def get_fees_for_payment(self, payment: Payment) -> list[PaymentFee]:
        query = select(PaymentFee).where(PaymentFee.payment_id == payment.id).order_by(PaymentFee.id)
        with self.session_factory() as db:
            return list(db.scalars(query))

    def get_fine_ids_for_payment(self, payment: Payment) -> list[str]:
        query = (
            select(PaymentFee.fine_id)
            .where(PaymentFee.payment_id == payment.id, PaymentFee.fine_id != "")
            .order_by(PaymentFee.id)
        )
        with self.session_factory() as db:
            return list(db.scalars(query))

    # Atomic updates

    def transition(self, payment_id: int, from_statuses, to_status: PaymentStatus, **values) -> bool:
        """Set the status only if it is currently one of `from_statuses`.

        Returns True when this call made the change.
        """
        statement = (
            update(Payment)
            .where(Payment.id == payment_id, Payment.status.in_([int(s) for s in from_statuses]))
            .values(status=int(to_status), **values)
            .execution_options(synchronize_session=False)
        )
        with self.session_factory() as db:
            result = db.execute(statement)
            db.commit()
        changed = result.rowcount == 1
        logger.debug(
            "Payment status transition",
            payment_id=payment_id,
            to_status=to_status.name,
            changed=changed,
        )
        return changed

    def start_registration(self, payment_id: int, timeout: int = REGISTRATION_TIMEOUT) -> bool:
        """Claim the payment for registration unless someone else claimed it
        within the last `timeout` seconds."""
        now = utcnow()
        statement = (
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.status.in_((PaymentStatus.PAID, PaymentStatus.REGISTRATION_FAILED)),
                or_(
                    Payment.registration_started.is_(None),
                    Payment.registration_started < now - timedelta(seconds=timeout),
                ),
            )
            .values(registration_started=now)
            .execution_options(synchronize_session=False)
        )
        with self.session_factory() as db:
            result = db.execute(statement)
            db.commit()
        return result.rowcount == 1

    def mark_reported(self, payment_ids: list[int]) -> None:
        if not payment_ids:
            return
        statement = (
            update(Payment)
            .where(Payment.id.in_(payment_ids))
            .values(reported=utcnow())
            .execution_options(synchronize_session=False)
        )
        with self.session_factory() as db:
            db.execute(statement)
            db.commit()

    def _first(self, query) -> Payment | None:
        with self.session_factory() as db:
            return db.scalars(query.limit(1)).first()
