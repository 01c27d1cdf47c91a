"""
Booking lifecycle vocabulary and the one transition table every caller uses.

Forward chain::

    created -> requested -> matching -> matched -> accepted -> enroute -> arrived
        -> started -> in_progress -> work_completed -> completed

Any non-terminal status may also move to ``payment_failed``, and to
``cancelled`` until the work is underway (``in_progress`` or later).
``refunded`` is only reached from ``cancelled`` or ``completed`` through the
post-hoc refund operation, never through a plain transition request.
"""
import enum


class BookingStatus(str, enum.Enum):
    CREATED = "created"
    REQUESTED = "requested"
    MATCHING = "matching"
    MATCHED = "matched"
    ACCEPTED = "accepted"
    ENROUTE = "enroute"
    ARRIVED = "arrived"
    STARTED = "started"
    IN_PROGRESS = "in_progress"
    WORK_COMPLETED = "work_completed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PAYMENT_FAILED = "payment_failed"
    REFUNDED = "refunded"

    def __str__(self) -> str:
        return self.value


class ActorRole(str, enum.Enum):
    CUSTOMER = "customer"
    PROVIDER = "provider"
    SYSTEM = "system"
    ADMIN = "admin"

    def __str__(self) -> str:
        return self.value


class JobRequestStatus(str, enum.Enum):
    SENT = "sent"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"

    def __str__(self) -> str:
        return self.value


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    CAPTURED = "captured"
    CAPTURE_FAILED = "capture_failed"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"
    NOT_REQUIRED = "not_required"
    RECONCILIATION_REQUIRED = "reconciliation_required"

    def __str__(self) -> str:
        return self.value


FORWARD_CHAIN = (
    BookingStatus.CREATED,
    BookingStatus.REQUESTED,
    BookingStatus.MATCHING,
    BookingStatus.MATCHED,
    BookingStatus.ACCEPTED,
    BookingStatus.ENROUTE,
    BookingStatus.ARRIVED,
    BookingStatus.STARTED,
    BookingStatus.IN_PROGRESS,
    BookingStatus.WORK_COMPLETED,
    BookingStatus.COMPLETED,
)

TERMINAL_STATUSES = frozenset({
    BookingStatus.COMPLETED,
    BookingStatus.CANCELLED,
    BookingStatus.REFUNDED,
    BookingStatus.PAYMENT_FAILED,
})

FAILURE_STATUSES = frozenset({BookingStatus.CANCELLED, BookingStatus.PAYMENT_FAILED})

# once work is underway a booking can only finish or fail on payment
WORK_UNDERWAY = frozenset({BookingStatus.IN_PROGRESS, BookingStatus.WORK_COMPLETED})

# statuses in which a provider is attached to the booking
ASSIGNED_STATUSES = frozenset({
    BookingStatus.ACCEPTED,
    BookingStatus.ENROUTE,
    BookingStatus.ARRIVED,
    BookingStatus.STARTED,
    BookingStatus.IN_PROGRESS,
    BookingStatus.WORK_COMPLETED,
    BookingStatus.COMPLETED,
})

PROVIDER_DRIVEN = frozenset({
    BookingStatus.ACCEPTED,
    BookingStatus.ENROUTE,
    BookingStatus.ARRIVED,
    BookingStatus.STARTED,
    BookingStatus.IN_PROGRESS,
    BookingStatus.WORK_COMPLETED,
})

AUTOMATION_DRIVEN = frozenset({
    BookingStatus.REQUESTED,
    BookingStatus.MATCHING,
    BookingStatus.MATCHED,
    BookingStatus.COMPLETED,
    BookingStatus.PAYMENT_FAILED,
})

PRE_ACCEPTANCE = frozenset({
    BookingStatus.CREATED,
    BookingStatus.REQUESTED,
    BookingStatus.MATCHING,
    BookingStatus.MATCHED,
})

# searching for a provider, no one assigned yet
MATCHING_PHASE = frozenset({BookingStatus.MATCHING, BookingStatus.MATCHED})


def _build_transitions() -> dict:
    table = {}
    for current, nxt in zip(FORWARD_CHAIN, FORWARD_CHAIN[1:]):
        failures = {BookingStatus.PAYMENT_FAILED} if current in WORK_UNDERWAY else FAILURE_STATUSES
        table[current] = frozenset({nxt, *failures})
    for status in TERMINAL_STATUSES:
        table[status] = frozenset()
    return table


TRANSITIONS: dict = _build_transitions()

POST_HOC_REFUND_SOURCES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})


def position(status: BookingStatus) -> int:
    """Index in the forward chain; failure states sort after everything."""
    try:
        return FORWARD_CHAIN.index(status)
    except ValueError:
        return len(FORWARD_CHAIN)


def precedes(status: BookingStatus, other: BookingStatus) -> bool:
    return position(status) < position(other)


def is_valid_edge(current: BookingStatus, requested: BookingStatus) -> bool:
    return requested in TRANSITIONS.get(current, frozenset())
