from datetime import datetime, timedelta

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, JSON, String
from sqlalchemy.orm import relationship

from finepay.database import Base
from finepay.enums import PaymentStatus


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    username = Column(String(255), unique=True, nullable=False)
    email = Column(String(255))
    firstname = Column(String(255))
    lastname = Column(String(255))
    cat_username = Column(String(50))          # Patron's current library card


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index("payment_status_cat_username_created_idx", "status", "cat_username", "created"),
        Index("payment_paid_reported_idx", "paid", "reported"),
    )

    id = Column(Integer, primary_key=True)
    local_identifier = Column(String(255), unique=True, nullable=False, index=True)
    remote_identifier = Column(String(255))    # Assigned by the gateway
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    source_ils = Column(String(255), nullable=False)
    cat_username = Column(String(50), nullable=False)
    amount = Column(Integer, nullable=False)   # Minor units, excluding service fee
    currency = Column(String(3), nullable=False)
    service_fee = Column(Integer, nullable=False, default=0)
    status = Column(Integer, nullable=False, default=PaymentStatus.IN_PROGRESS)
    status_message = Column(String(255), nullable=False, default="")
    created = Column(DateTime, nullable=False)
    paid = Column(DateTime)
    registration_started = Column(DateTime)
    registered = Column(DateTime)
    reported = Column(DateTime)

    user = relationship("User", lazy="joined")

    def get_status(self) -> PaymentStatus:
        return PaymentStatus(self.status)

    def is_in_progress(self) -> bool:
        return self.status == PaymentStatus.IN_PROGRESS

    def is_registered(self) -> bool:
        return self.status == PaymentStatus.COMPLETED

    def is_registration_needed(self) -> bool:
        return self.status in (PaymentStatus.PAID, PaymentStatus.REGISTRATION_FAILED)

    def is_registration_in_progress(self, now: datetime, timeout: int) -> bool:
        """Registration was claimed less than `timeout` seconds before `now`."""
        return (
            self.registration_started is not None
            and now - self.registration_started < timedelta(seconds=timeout)
        )


class PaymentFee(Base):
    __tablename__ = "payment_fees"

    id = Column(Integer, primary_key=True)
    payment_id = Column(Integer, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    fine_id = Column(String(1024), nullable=False, default="")   # Identifier in the ILS
    type = Column(String(255), nullable=False, default="")
    title = Column(String(255), nullable=False, default="")
    description = Column(String(255), nullable=False, default="")
    organization = Column(String(255), nullable=False, default="")
    amount = Column(Integer, nullable=False, default=0)
    tax_percent = Column(Integer, nullable=False, default=0)   # 1/100ths of a percent
    currency = Column(String(3), nullable=False)

    def amount_excluding_tax(self) -> int:
        return int(round(self.amount / (1 + self.tax_percent / 10000.0)))

    def tax(self) -> int:
        return self.amount - self.amount_excluding_tax()


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True)
    date = Column(DateTime, nullable=False, index=True)
    type = Column(String(50), nullable=False)
    subtype = Column(String(50), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), index=True)
    username = Column(String(255))             # Kept when the user is deleted
    payment_id = Column(Integer, ForeignKey("payments.id", ondelete="CASCADE"), index=True)
    session_id = Column(String(128))
    client_ip = Column(String(255))
    server_ip = Column(String(255))
    server_name = Column(String(255))
    message = Column(String(255))
    data = Column(JSON)
