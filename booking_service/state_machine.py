"""
Authoritative transition engine for booking status.

Every status change is one conditional write::

    UPDATE bookings SET status = :new, ... WHERE id = :id AND status = :expected

so two writers racing on the same booking cannot both succeed; the loser sees
zero affected rows and gets a ``ConflictError``. Validation (edge, role,
deadlines) happens on a snapshot read in its own short session before the
write.
"""
import logging
from dataclasses import dataclass

from sqlalchemy import update

from .errors import (
    AuthorizationError,
    ConflictError,
    ExpiryError,
    InvariantViolation,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from .models import Booking, utcnow
from .status import (
    ASSIGNED_STATUSES,
    AUTOMATION_DRIVEN,
    PROVIDER_DRIVEN,
    TERMINAL_STATUSES,
    ActorRole,
    BookingStatus,
    is_valid_edge,
    precedes,
)

logger = logging.getLogger(__name__)

TIMESTAMP_FIELDS = {
    BookingStatus.ACCEPTED: "accepted_at",
    BookingStatus.WORK_COMPLETED: "work_completed_at",
    BookingStatus.COMPLETED: "completed_at",
    BookingStatus.CANCELLED: "cancelled_at",
}


@dataclass(frozen=True)
class Actor:
    id: str | None
    role: ActorRole

    @classmethod
    def of(cls, actor_id, actor_role) -> "Actor":
        try:
            role = ActorRole(actor_role)
        except ValueError:
            raise AuthorizationError(f"Invalid user role {actor_role!r}")
        return cls(actor_id, role)


SYSTEM_ACTOR = Actor("system", ActorRole.SYSTEM)


def coerce_status(value) -> BookingStatus:
    try:
        return BookingStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown booking status {value!r}", reason="unknown_status")


class BookingStateMachine:
    def __init__(self, session_factory, notifier=None, clock=utcnow):
        self.session_factory = session_factory
        self.notifier = notifier
        self.clock = clock
        # collaborators wired by BookingCore; they call back into apply()
        self.assignment = None
        self.cancellation = None
        self.receipts = None

    async def get(self, booking_id: str) -> Booking:
        async with self.session_factory() as session:
            booking = await session.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found", reason="booking_not_found")
        return booking

    # ---- validation ----

    def check_edge(self, booking: Booking, requested: BookingStatus) -> None:
        if booking.status in TERMINAL_STATUSES:
            raise TransitionError(
                booking.status, requested, f"Booking is already {booking.status} and cannot change status"
            )
        if not is_valid_edge(booking.status, requested):
            raise TransitionError(booking.status, requested)

    def authorize(self, booking: Booking, requested: BookingStatus, actor: Actor) -> None:
        role = actor.role

        if booking.automation_halted and role is not ActorRole.ADMIN:
            raise InvariantViolation("Booking is halted pending manual correction")

        if role is ActorRole.ADMIN:
            return

        if role is ActorRole.SYSTEM:
            if requested in AUTOMATION_DRIVEN or requested is BookingStatus.CANCELLED:
                return
            raise AuthorizationError(f"Automated processes cannot set status {requested}")

        if role is ActorRole.PROVIDER:
            if requested not in PROVIDER_DRIVEN:
                raise AuthorizationError(f"Service providers cannot set status {requested}")
            # acceptance is checked against the provider's job request by the claim
            if requested is not BookingStatus.ACCEPTED and booking.provider_id != actor.id:
                raise AuthorizationError("Not assigned to this order")
            return

        if role is ActorRole.CUSTOMER:
            if booking.customer_id != actor.id:
                raise AuthorizationError("Not your order")
            if requested is BookingStatus.ACCEPTED:
                raise AuthorizationError("Only assigned provider can accept this order")
            if requested is not BookingStatus.CANCELLED:
                raise AuthorizationError("Customers can only cancel orders")
            if not precedes(booking.status, BookingStatus.IN_PROGRESS):
                raise AuthorizationError("Orders already in progress cannot be cancelled by the customer")
            return

        raise AuthorizationError("Invalid user role")

    def check_deadlines(self, booking: Booking, requested: BookingStatus, now) -> None:
        if requested in (BookingStatus.MATCHING, BookingStatus.MATCHED):
            if booking.matching_expires_at is not None and now >= booking.matching_expires_at:
                raise ExpiryError("Matching period has expired", reason="matching_expired")
        if requested is BookingStatus.ACCEPTED:
            if booking.accept_deadline_at is not None and now >= booking.accept_deadline_at:
                raise ExpiryError("Acceptance deadline has passed", reason="accept_deadline_passed")

    def validate(self, booking: Booking, requested: BookingStatus, actor: Actor, now=None) -> None:
        self.check_edge(booking, requested)
        self.authorize(booking, requested, actor)
        self.check_deadlines(booking, requested, now or self.clock())

    # ---- entry point ----

    async def transition(
        self,
        booking_id: str,
        requested_status,
        actor_id: str | None,
        actor_role,
        *,
        reason: str | None = None,
        notes: str | None = None,
        job_request_id: str | None = None,
    ) -> Booking:
        actor = Actor.of(actor_id, actor_role)
        requested = coerce_status(requested_status)
        booking = await self.get(booking_id)
        now = self.clock()

        if requested is BookingStatus.ACCEPTED and booking.status in ASSIGNED_STATUSES:
            # a late acceptance lost the race; not a malformed request
            raise ConflictError("Booking already assigned to another provider", reason="already_assigned")
        if requested is BookingStatus.CANCELLED and booking.status not in TERMINAL_STATUSES:
            # the fee/refund decision is written together with the status;
            # the policy itself refuses work that is underway
            await self.cancellation.cancel(
                booking_id,
                actor.id,
                actor.role,
                reason or "status_update",
                notes,
                idempotency_key=f"transition:{booking_id}",
            )
            return await self.get(booking_id)

        self.check_edge(booking, requested)
        self.authorize(booking, requested, actor)

        if requested is BookingStatus.ACCEPTED:
            if actor.role is ActorRole.PROVIDER:
                return await self.assignment.claim(booking_id, job_request_id, actor.id)
            if not job_request_id:
                raise ValidationError("jobRequestId is required to assign a provider", reason="job_request_required")
            return await self.assignment.claim(booking_id, job_request_id, None, actor=actor)

        self.check_deadlines(booking, requested, now)
        return await self.apply(booking, requested, actor, now=now)

    # ---- conditional write ----

    def guarded_update(
        self,
        booking: Booking,
        requested: BookingStatus,
        actor: Actor,
        *,
        now,
        expected: BookingStatus | None = None,
        values: dict | None = None,
        conditions=(),
    ):
        data = {"status": requested, "updated_at": now}
        if requested not in ASSIGNED_STATUSES and booking.provider_id is not None:
            data["provider_id"] = None
            data["previous_provider_id"] = booking.provider_id
        field = TIMESTAMP_FIELDS.get(requested)
        if field:
            data[field] = now
        data.update(values or {})

        where = [Booking.id == booking.id, Booking.status == (expected or booking.status), *conditions]
        if actor.role is not ActorRole.ADMIN:
            where.append(Booking.automation_halted.is_(False))
        if actor.role is ActorRole.PROVIDER and requested is not BookingStatus.ACCEPTED:
            where.append(Booking.provider_id == actor.id)

        return (
            update(Booking)
            .where(*where)
            .values(**data)
            .execution_options(synchronize_session=False)
        )

    async def apply(
        self,
        booking: Booking,
        requested: BookingStatus,
        actor: Actor,
        *,
        now=None,
        expected: BookingStatus | None = None,
        values: dict | None = None,
        conditions=(),
        session=None,
    ) -> Booking | None:
        """
        Perform the guarded write. With an outer ``session`` the write joins the
        caller's unit of work and the caller commits and runs ``after_commit``;
        otherwise the write commits here and the fresh booking is returned.
        """
        now = now or self.clock()
        stmt = self.guarded_update(
            booking, requested, actor, now=now, expected=expected, values=values, conditions=conditions
        )

        if session is not None:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                raise self._conflict(booking, requested, expected)
            return None

        async with self.session_factory() as own:
            result = await own.execute(stmt)
            if result.rowcount != 1:
                await own.rollback()
                raise self._conflict(booking, requested, expected)
            await own.commit()

        updated = await self.get(booking.id)
        await self.after_commit(updated, expected or booking.status, actor)
        return updated

    def _conflict(self, booking: Booking, requested: BookingStatus, expected) -> ConflictError:
        return ConflictError(
            f"Booking {booking.id} is no longer {expected or booking.status}; cannot move to {requested}",
            reason="status_changed",
        )

    async def after_commit(self, booking: Booking, old_status, actor: Actor) -> None:
        logger.info(
            "booking %s: %s -> %s by %s:%s", booking.id, old_status, booking.status, actor.role, actor.id
        )
        if self.notifier is not None:
            self.notifier.status_changed(booking, old_status, booking.status, actor.role)

        if booking.status is BookingStatus.COMPLETED and self.receipts is not None:
            try:
                await self.receipts.generate(booking.id)
            except Exception:
                # the receipt endpoint creates it on demand
                logger.exception("receipt generation failed for booking %s", booking.id)

        if booking.status is BookingStatus.PAYMENT_FAILED and self.cancellation is not None:
            await self.cancellation.settle_payment_failure(booking)
