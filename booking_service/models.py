from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    text,
)

from shared.database import Base

from .status import BookingStatus, JobRequestStatus, PaymentStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _enum(enum_cls):
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


Money = Numeric(12, 2)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True)

    customer_id = Column(String, nullable=False, index=True)
    service_id = Column(String, nullable=False, index=True)
    service_category = Column(String, nullable=True)
    provider_id = Column(String, nullable=True, index=True)
    # provider that held the booking before it left the assigned statuses
    previous_provider_id = Column(String, nullable=True)

    status = Column(_enum(BookingStatus), nullable=False, index=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)
    scheduled_at = Column(UTCDateTime, nullable=True)  # null = instant
    matching_expires_at = Column(UTCDateTime, nullable=True, index=True)
    accept_deadline_at = Column(UTCDateTime, nullable=True)
    accepted_at = Column(UTCDateTime, nullable=True)
    work_completed_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)

    total_amount = Column(Money, nullable=False)
    cancellation_reason = Column(String, nullable=True)
    cancellation_notes = Column(Text, nullable=True)
    cancellation_fee = Column(Money, nullable=True)
    refund_amount = Column(Money, nullable=False, default=0)
    refund_reference_id = Column(String, nullable=True)

    customer_ref = Column(String, nullable=True)
    payment_reference_id = Column(String, nullable=True)
    payment_status = Column(_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)

    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    address = Column(String, nullable=True)
    urgency = Column(String, nullable=False, default="normal")

    search_radius_km = Column(Float, nullable=True)
    search_wave = Column(Integer, nullable=False, default=0)

    customer_rating = Column(Integer, nullable=True)
    customer_review = Column(Text, nullable=True)

    needs_manual_review = Column(Boolean, nullable=False, default=False)
    automation_halted = Column(Boolean, nullable=False, default=False)


class JobRequest(Base):
    __tablename__ = "job_requests"
    __table_args__ = (
        # a provider is offered a given booking at most once
        UniqueConstraint("booking_id", "provider_id", name="uq_job_requests_booking_provider"),
        Index(
            "uq_job_requests_one_accepted",
            "booking_id",
            unique=True,
            postgresql_where=text("status = 'accepted'"),
            sqlite_where=text("status = 'accepted'"),
        ),
        Index("ix_job_requests_status_expires", "status", "expires_at"),
    )

    id = Column(String(36), primary_key=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    provider_id = Column(String, nullable=False, index=True)

    status = Column(_enum(JobRequestStatus), nullable=False)
    wave = Column(Integer, nullable=False, default=1)
    priority = Column(Integer, nullable=False, default=3)

    sent_at = Column(UTCDateTime, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    responded_at = Column(UTCDateTime, nullable=True)

    distance_km = Column(Float, nullable=False)
    quoted_price = Column(Money, nullable=True)


class Cancellation(Base):
    """One row per processed cancel idempotency key; the recorded outcome is replayed verbatim."""

    __tablename__ = "cancellations"
    __table_args__ = (
        UniqueConstraint("booking_id", "idempotency_key", name="uq_cancellations_booking_key"),
    )

    id = Column(String(36), primary_key=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    idempotency_key = Column(String, nullable=False)

    actor_id = Column(String, nullable=True)
    actor_role = Column(String, nullable=False)
    reason = Column(String, nullable=False)
    notes = Column(Text, nullable=True)

    previous_status = Column(_enum(BookingStatus), nullable=False)
    new_status = Column(_enum(BookingStatus), nullable=False)
    cancellation_fee = Column(Money, nullable=False)
    refund_amount = Column(Money, nullable=False)
    payment_operation_id = Column(String(36), nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class Receipt(Base):
    __tablename__ = "receipts"

    id = Column(String(36), primary_key=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, unique=True)
    receipt_number = Column(String, nullable=False, unique=True)
    snapshot = Column(JSON, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class PaymentOperation(Base):
    """
    Capture/refund calls owed to the payment gateway.

    Rows are written in the same unit of work as the money decision; the call
    itself happens afterwards and is retried with backoff until it succeeds or
    runs out of attempts.
    """

    __tablename__ = "payment_operations"
    __table_args__ = (
        Index("ix_payment_operations_due", "status", "next_attempt_at"),
    )

    id = Column(String(36), primary_key=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    kind = Column(String(16), nullable=False)  # capture / refund
    amount = Column(Money, nullable=False)
    reason = Column(String, nullable=True)

    status = Column(String(16), nullable=False, default="pending")  # pending/retry/succeeded/dead/voided
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(UTCDateTime, nullable=True)
    reference_id = Column(String, nullable=True)
    last_error = Column(String, nullable=True)

    cancellation_id = Column(String(36), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)
