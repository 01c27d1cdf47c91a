import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from .errors import AuthorizationError, NotCancellableError, TransitionError, ValidationError
from .models import Booking, Cancellation, JobRequest, utcnow
from .state_machine import Actor
from .status import (
    POST_HOC_REFUND_SOURCES,
    PRE_ACCEPTANCE,
    TERMINAL_STATUSES,
    WORK_UNDERWAY,
    ActorRole,
    BookingStatus,
    JobRequestStatus,
    PaymentStatus,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

NOT_CANCELLABLE = WORK_UNDERWAY | TERMINAL_STATUSES


@dataclass(frozen=True)
class CancellationOutcome:
    booking_id: str
    previous_status: BookingStatus
    new_status: BookingStatus
    cancellation_fee: Decimal
    refund_amount: Decimal
    refund_id: str | None
    idempotency_key: str

    @classmethod
    def from_record(cls, record: Cancellation) -> "CancellationOutcome":
        return cls(
            booking_id=record.booking_id,
            previous_status=record.previous_status,
            new_status=record.new_status,
            cancellation_fee=Decimal(record.cancellation_fee).quantize(CENT),
            refund_amount=Decimal(record.refund_amount).quantize(CENT),
            refund_id=record.payment_operation_id,
            idempotency_key=record.idempotency_key,
        )

    def to_dict(self) -> dict:
        return {
            "bookingId": self.booking_id,
            "previousStatus": str(self.previous_status),
            "newStatus": str(self.new_status),
            "cancellationFee": str(self.cancellation_fee),
            "refundAmount": str(self.refund_amount),
            "refundId": self.refund_id,
        }


class CancellationPolicyEngine:
    """
    Computes the cancellation fee and refund, and commits them together with
    the move to ``cancelled`` and the idempotency record. The refund call to
    the gateway happens only after that commit.
    """

    def __init__(
        self,
        session_factory,
        state_machine,
        payments,
        *,
        fee_percent: Decimal = Decimal("20"),
        free_lead_seconds: int = 2 * 60 * 60,
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.state_machine = state_machine
        self.payments = payments
        self.fee_percent = Decimal(fee_percent)
        self.free_lead = timedelta(seconds=free_lead_seconds)
        self.clock = clock

    def compute_fee(self, booking: Booking, now) -> Decimal:
        if booking.status in PRE_ACCEPTANCE:
            return Decimal("0.00")
        if booking.status is BookingStatus.ACCEPTED and booking.scheduled_at is not None:
            if booking.scheduled_at - now >= self.free_lead:
                return Decimal("0.00")
        # instant bookings and providers already on their way always pay the fee
        total = Decimal(booking.total_amount)
        return (total * self.fee_percent / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)

    async def _recorded(self, booking_id: str, idempotency_key: str) -> Cancellation | None:
        async with self.session_factory() as session:
            res = await session.execute(
                select(Cancellation).where(
                    Cancellation.booking_id == booking_id,
                    Cancellation.idempotency_key == idempotency_key,
                )
            )
            return res.scalar_one_or_none()

    def _replay(self, record: Cancellation) -> CancellationOutcome:
        logger.info("cancel of booking %s replayed for key %s", record.booking_id, record.idempotency_key)
        return CancellationOutcome.from_record(record)

    async def cancel(
        self,
        booking_id: str,
        actor_id: str | None,
        actor_role,
        reason: str,
        notes: str | None = None,
        idempotency_key: str | None = None,
    ) -> CancellationOutcome:
        actor = Actor.of(actor_id, actor_role)
        idempotency_key = idempotency_key or f"cancel:{booking_id}"
        if not reason:
            raise ValidationError("A cancellation reason is required", reason="reason_required")

        recorded = await self._recorded(booking_id, idempotency_key)
        if recorded is not None:
            return self._replay(recorded)

        booking = await self.state_machine.get(booking_id)
        if booking.status in NOT_CANCELLABLE:
            raise NotCancellableError(f"Order cannot be cancelled in status {booking.status}")
        self.state_machine.check_edge(booking, BookingStatus.CANCELLED)
        self.state_machine.authorize(booking, BookingStatus.CANCELLED, actor)

        now = self.clock()
        fee = self.compute_fee(booking, now)
        total = Decimal(booking.total_amount).quantize(CENT)
        refund = total - fee

        record = Cancellation(
            id=str(uuid.uuid4()),
            booking_id=booking_id,
            idempotency_key=idempotency_key,
            actor_id=actor.id,
            actor_role=str(actor.role),
            reason=reason,
            notes=notes,
            previous_status=booking.status,
            new_status=BookingStatus.CANCELLED,
            cancellation_fee=fee,
            refund_amount=refund,
            created_at=now,
        )
        op = None
        values = {
            "cancellation_reason": reason,
            "cancellation_notes": notes,
            "cancellation_fee": fee,
            "refund_amount": refund,
        }
        if refund > 0:
            op = self.payments.refund_operation(booking_id, refund, reason, now, cancellation_id=record.id)
            record.payment_operation_id = op.id
            values["payment_status"] = PaymentStatus.REFUND_PENDING
        else:
            values["payment_status"] = PaymentStatus.NOT_REQUIRED if total == 0 else booking.payment_status

        async with self.session_factory() as session:
            session.add(record)
            if op is not None:
                session.add(op)
            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                recorded = await self._recorded(booking_id, idempotency_key)
                if recorded is None:
                    raise
                return self._replay(recorded)

            await self.state_machine.apply(
                booking,
                BookingStatus.CANCELLED,
                actor,
                now=now,
                values=values,
                session=session,
            )

            await self._close_offers(session, booking_id, now)
            await session.commit()

        logger.info(
            "booking %s cancelled by %s:%s (%s): fee=%s refund=%s",
            booking_id, actor.role, actor.id, reason, fee, refund,
        )
        updated = await self.state_machine.get(booking_id)
        await self.state_machine.after_commit(updated, booking.status, actor)

        if op is not None and updated.payment_reference_id:
            await self.payments.attempt(op.id)

        return CancellationOutcome.from_record(await self._recorded(booking_id, idempotency_key))

    async def _close_offers(self, session, booking_id: str, now) -> None:
        await session.execute(
            update(JobRequest)
            .where(JobRequest.booking_id == booking_id, JobRequest.status == JobRequestStatus.SENT)
            .values(status=JobRequestStatus.SUPERSEDED, responded_at=now)
            .execution_options(synchronize_session=False)
        )

    async def settle_payment_failure(self, booking: Booking) -> None:
        """Close the offers of a booking that failed on payment."""
        now = self.clock()
        async with self.session_factory() as session:
            await self._close_offers(session, booking.id, now)
            await session.commit()

    async def refund(
        self,
        booking_id: str,
        actor_id: str | None,
        actor_role,
        amount: Decimal | None = None,
        reason: str | None = None,
    ) -> Booking:
        """Post-hoc refund of a completed or cancelled booking; admins only."""
        actor = Actor.of(actor_id, actor_role)
        if actor.role is not ActorRole.ADMIN:
            raise AuthorizationError("Only admins can issue refunds")

        booking = await self.state_machine.get(booking_id)
        if booking.status not in POST_HOC_REFUND_SOURCES:
            raise TransitionError(booking.status, BookingStatus.REFUNDED)

        total = Decimal(booking.total_amount).quantize(CENT)
        already = Decimal(booking.refund_amount or 0).quantize(CENT)
        available = total - already
        amount = available if amount is None else Decimal(amount).quantize(CENT)
        if amount <= 0 or amount > available:
            raise ValidationError(
                f"Refund amount must be between 0.01 and {available}", reason="invalid_refund_amount"
            )

        now = self.clock()
        op = self.payments.refund_operation(booking_id, amount, reason or "post_hoc_refund", now)
        async with self.session_factory() as session:
            session.add(op)
            await session.flush()
            await self.state_machine.apply(
                booking,
                BookingStatus.REFUNDED,
                actor,
                now=now,
                values={
                    "refund_amount": already + amount,
                    "payment_status": PaymentStatus.REFUND_PENDING,
                },
                session=session,
            )
            await session.commit()

        logger.info("booking %s refunded %s by admin %s", booking_id, amount, actor.id)
        updated = await self.state_machine.get(booking_id)
        await self.state_machine.after_commit(updated, booking.status, actor)
        if updated.payment_reference_id:
            await self.payments.attempt(op.id)
        return await self.state_machine.get(booking_id)
