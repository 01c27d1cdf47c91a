"""
Payment capture/refund outbox.

Money decisions are written as ``payment_operations`` rows in the same unit of
work as the booking change. The gateway is called afterwards, outside any
transaction, and failed calls are retried with exponential backoff by the
reconciliation loop until they succeed or run out of attempts.
"""
import asyncio
import logging
import uuid
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import or_, select, update

from .errors import ConflictError, ExternalServiceError
from .models import Booking, PaymentOperation, utcnow
from .state_machine import SYSTEM_ACTOR
from .status import TERMINAL_STATUSES, BookingStatus, PaymentStatus

logger = logging.getLogger(__name__)

CAPTURE = "capture"
REFUND = "refund"

PENDING_STATUSES = ("pending", "retry")


class PaymentProcessor:
    def __init__(
        self,
        session_factory,
        gateway,
        *,
        max_attempts: int = 5,
        base_backoff_seconds: int = 30,
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.max_attempts = max_attempts
        self.base_backoff_seconds = base_backoff_seconds
        self.clock = clock
        self.state_machine = None

    def backoff(self, attempts: int) -> timedelta:
        return timedelta(seconds=self.base_backoff_seconds * 2 ** max(0, attempts - 1))

    # ---- enqueue ----

    def capture_operation(self, booking: Booking, now=None) -> PaymentOperation:
        now = now or self.clock()
        return PaymentOperation(
            id=str(uuid.uuid4()),
            booking_id=booking.id,
            kind=CAPTURE,
            amount=booking.total_amount,
            reason="booking_requested",
            status="pending",
            attempts=0,
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
        )

    def refund_operation(
        self,
        booking_id: str,
        amount: Decimal,
        reason: str | None,
        now=None,
        cancellation_id: str | None = None,
    ) -> PaymentOperation:
        now = now or self.clock()
        return PaymentOperation(
            id=str(uuid.uuid4()),
            booking_id=booking_id,
            kind=REFUND,
            amount=amount,
            reason=reason,
            status="pending",
            attempts=0,
            next_attempt_at=now,
            cancellation_id=cancellation_id,
            created_at=now,
            updated_at=now,
        )

    # ---- delivery ----

    async def _load(self, op_id: str):
        async with self.session_factory() as session:
            op = await session.get(PaymentOperation, op_id)
            booking = await session.get(Booking, op.booking_id) if op is not None else None
        return op, booking

    async def _capture_state(self, booking_id: str) -> str | None:
        async with self.session_factory() as session:
            res = await session.execute(
                select(PaymentOperation.status)
                .where(PaymentOperation.booking_id == booking_id, PaymentOperation.kind == CAPTURE)
                .order_by(PaymentOperation.created_at.desc())
            )
            return res.scalars().first()

    async def _set_op(self, op_id: str, attempts: int | None = None, **values) -> bool:
        where = [PaymentOperation.id == op_id]
        if attempts is not None:
            where.append(PaymentOperation.attempts == attempts)
        else:
            where.append(PaymentOperation.status.in_(PENDING_STATUSES))
        async with self.session_factory() as session:
            result = await session.execute(
                update(PaymentOperation)
                .where(*where)
                .values(updated_at=self.clock(), **values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    async def attempt(self, op_id: str) -> PaymentOperation | None:
        """
        Make one gateway call for an operation if it is due. Never raises for
        gateway failures; the outcome is recorded on the row.
        """
        now = self.clock()
        op, booking = await self._load(op_id)
        if op is None or op.status not in PENDING_STATUSES:
            return op

        if op.kind == REFUND and not booking.payment_reference_id:
            capture = await self._capture_state(booking.id)
            if capture in (None, "dead", "voided"):
                # nothing was ever taken from the customer
                await self._set_op(op.id, status="voided", next_attempt_at=None, last_error="no_capture")
                await self._flag(booking.id, payment_status=PaymentStatus.NOT_REQUIRED)
                logger.info("refund %s for booking %s voided: no capture", op.id, booking.id)
            else:
                await self._set_op(op.id, next_attempt_at=now + self.backoff(1))
                logger.debug("refund %s for booking %s waits for capture", op.id, booking.id)
            return (await self._load(op_id))[0]

        # lease the attempt so a concurrent reconciler skips it
        attempts = op.attempts + 1
        if not await self._lease(op, attempts, now):
            return (await self._load(op_id))[0]

        try:
            if op.kind == CAPTURE:
                reference = await self.gateway.capture(op.amount, booking.customer_ref, op.id)
            else:
                reference = await self.gateway.refund(booking.payment_reference_id, op.amount, op.reason, op.id)
        except ExternalServiceError as e:
            await self._record_failure(op, booking, attempts, e)
        else:
            await self._record_success(op, booking, attempts, reference)
        return (await self._load(op_id))[0]

    async def _lease(self, op: PaymentOperation, attempts: int, now) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                update(PaymentOperation)
                .where(
                    PaymentOperation.id == op.id,
                    PaymentOperation.attempts == op.attempts,
                    PaymentOperation.status.in_(PENDING_STATUSES),
                )
                .values(attempts=attempts, next_attempt_at=now + self.backoff(attempts), updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    async def _record_success(self, op: PaymentOperation, booking: Booking, attempts: int, reference: str):
        await self._set_op(
            op.id,
            attempts=attempts,
            status="succeeded",
            reference_id=reference,
            next_attempt_at=None,
            last_error=None,
        )
        now = self.clock()
        async with self.session_factory() as session:
            if op.kind == CAPTURE:
                await session.execute(
                    update(Booking)
                    .where(Booking.id == booking.id, Booking.payment_reference_id.is_(None))
                    .values(payment_reference_id=reference, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                await session.execute(
                    update(Booking)
                    .where(Booking.id == booking.id, Booking.payment_status == PaymentStatus.PENDING)
                    .values(payment_status=PaymentStatus.CAPTURED)
                    .execution_options(synchronize_session=False)
                )
            else:
                await session.execute(
                    update(Booking)
                    .where(Booking.id == booking.id)
                    .values(refund_reference_id=reference, payment_status=PaymentStatus.REFUNDED, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            await session.commit()
        logger.info("%s %s for booking %s succeeded: %s", op.kind, op.id, booking.id, reference)

    async def _record_failure(self, op: PaymentOperation, booking: Booking, attempts: int, error: Exception):
        now = self.clock()
        last_error = getattr(error, "reason", None) or type(error).__name__
        if attempts < self.max_attempts:
            await self._set_op(
                op.id,
                attempts=attempts,
                status="retry",
                last_error=last_error,
                next_attempt_at=now + self.backoff(attempts),
            )
            logger.warning(
                "%s %s for booking %s failed (attempt %s/%s): %s",
                op.kind, op.id, booking.id, attempts, self.max_attempts, last_error,
            )
            return

        await self._set_op(op.id, attempts=attempts, status="dead", last_error=last_error, next_attempt_at=None)
        logger.error(
            "%s %s for booking %s exhausted %s attempts; manual reconciliation required",
            op.kind, op.id, booking.id, attempts,
        )
        if op.kind == CAPTURE:
            await self._capture_exhausted(booking.id)
        else:
            await self._flag(
                booking.id, payment_status=PaymentStatus.RECONCILIATION_REQUIRED, needs_manual_review=True
            )

    async def _capture_exhausted(self, booking_id: str) -> None:
        async with self.session_factory() as session:
            booking = await session.get(Booking, booking_id)
        if booking.status in TERMINAL_STATUSES or self.state_machine is None:
            await self._flag(
                booking_id, payment_status=PaymentStatus.RECONCILIATION_REQUIRED, needs_manual_review=True
            )
            return
        try:
            await self.state_machine.apply(
                booking,
                BookingStatus.PAYMENT_FAILED,
                SYSTEM_ACTOR,
                values={"payment_status": PaymentStatus.CAPTURE_FAILED, "needs_manual_review": True},
            )
        except ConflictError:
            # status moved underneath us or the booking is halted
            await self._flag(
                booking_id, payment_status=PaymentStatus.RECONCILIATION_REQUIRED, needs_manual_review=True
            )

    async def _flag(self, booking_id: str, **values) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(Booking)
                .where(Booking.id == booking_id)
                .values(updated_at=self.clock(), **values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    # ---- reconciliation ----

    async def due(self, limit: int = 50) -> list[str]:
        now = self.clock()
        async with self.session_factory() as session:
            res = await session.execute(
                select(PaymentOperation.id)
                .where(
                    PaymentOperation.status.in_(PENDING_STATUSES),
                    or_(PaymentOperation.next_attempt_at.is_(None), PaymentOperation.next_attempt_at <= now),
                )
                .order_by(PaymentOperation.created_at)
                .limit(limit)
            )
            return list(res.scalars())

    async def process_due(self, limit: int = 50) -> int:
        processed = 0
        for op_id in await self.due(limit):
            await self.attempt(op_id)
            processed += 1
        return processed

    async def run(self, stop_event: asyncio.Event, interval: float = 10.0):
        while not stop_event.is_set():
            try:
                await self.process_due()
            except Exception:
                logger.exception("payment reconciliation pass failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
