"""
Background sweep over time-boxed state.

Each pass expires lapsed offers, cancels bookings whose matching window ran
out, draws the next wave for bookings still matching, auto-completes work
nobody confirmed, and audits the one-accepted-offer invariant. Every change
is a conditional write, so overlapping or repeated sweeps are harmless.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import func, select

from .errors import BookingError
from .models import Booking, JobRequest, utcnow
from .state_machine import SYSTEM_ACTOR
from .status import MATCHING_PHASE, BookingStatus, JobRequestStatus

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    offers_expired: int = 0
    bookings_expired: int = 0
    bookings_advanced: int = 0
    bookings_completed: int = 0
    bookings_halted: int = 0


class ExpirySweeper:
    def __init__(
        self,
        session_factory,
        state_machine,
        dispatcher,
        cancellation,
        assignment,
        *,
        completion_timeout_seconds: int = 24 * 60 * 60,
        batch_size: int = 100,
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.state_machine = state_machine
        self.dispatcher = dispatcher
        self.cancellation = cancellation
        self.assignment = assignment
        self.completion_timeout = timedelta(seconds=completion_timeout_seconds)
        self.batch_size = batch_size
        self.clock = clock

    async def _ids(self, *where):
        """Yield every matching booking id, one page of ``batch_size`` at a time."""
        last_id = None
        while True:
            query = select(Booking.id).where(*where, Booking.automation_halted.is_(False))
            if last_id is not None:
                query = query.where(Booking.id > last_id)
            async with self.session_factory() as session:
                res = await session.execute(query.order_by(Booking.id).limit(self.batch_size))
                page = list(res.scalars())
            for booking_id in page:
                yield booking_id
            if len(page) < self.batch_size:
                return
            last_id = page[-1]

    async def expire_matching(self, now) -> int:
        count = 0
        async for booking_id in self._ids(
            Booking.status.in_(list(MATCHING_PHASE)),
            Booking.provider_id.is_(None),
            Booking.matching_expires_at <= now,
        ):
            try:
                outcome = await self.cancellation.cancel(
                    booking_id,
                    SYSTEM_ACTOR.id,
                    SYSTEM_ACTOR.role,
                    "no_provider_available",
                    None,
                    idempotency_key=f"matching-expired:{booking_id}",
                )
            except BookingError as e:
                logger.debug("booking %s not expired: %s", booking_id, e.reason)
                continue
            logger.info("booking %s: matching window exhausted (%s)", booking_id, outcome.new_status)
            count += 1
        return count

    async def advance_matching(self, now) -> int:
        count = 0
        async for booking_id in self._ids(
            Booking.status.in_(list(MATCHING_PHASE)),
            Booking.provider_id.is_(None),
            Booking.matching_expires_at > now,
        ):
            try:
                sent = await self.dispatcher.advance(booking_id)
            except BookingError as e:
                logger.warning("matching step for booking %s failed: %s", booking_id, e.reason)
                continue
            if sent:
                count += 1
        return count

    async def complete_overdue(self, now) -> int:
        count = 0
        async for booking_id in self._ids(
            Booking.status == BookingStatus.WORK_COMPLETED,
            Booking.work_completed_at <= now - self.completion_timeout,
        ):
            try:
                booking = await self.state_machine.get(booking_id)
                self.state_machine.validate(booking, BookingStatus.COMPLETED, SYSTEM_ACTOR, now)
                await self.state_machine.apply(booking, BookingStatus.COMPLETED, SYSTEM_ACTOR, now=now)
            except BookingError as e:
                logger.debug("booking %s not auto-completed: %s", booking_id, e.reason)
                continue
            count += 1
        return count

    async def audit(self) -> int:
        async with self.session_factory() as session:
            res = await session.execute(
                select(JobRequest.booking_id)
                .join(Booking, Booking.id == JobRequest.booking_id)
                .where(JobRequest.status == JobRequestStatus.ACCEPTED, Booking.automation_halted.is_(False))
                .group_by(JobRequest.booking_id)
                .having(func.count() > 1)
            )
            suspects = list(res.scalars())
        halted = 0
        for booking_id in suspects:
            if not await self.assignment.audit(booking_id):
                halted += 1
        return halted

    async def sweep_once(self) -> SweepResult:
        now = self.clock()
        result = SweepResult()
        result.offers_expired = len(await self.dispatcher.expire_offers(now))
        result.bookings_expired = await self.expire_matching(now)
        result.bookings_advanced = await self.advance_matching(now)
        result.bookings_completed = await self.complete_overdue(now)
        result.bookings_halted = await self.audit()
        if result.offers_expired or result.bookings_expired or result.bookings_completed:
            logger.info("sweep: %s", result)
        return result

    async def run(self, stop_event: asyncio.Event, interval: float = 5.0):
        while not stop_event.is_set():
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("expiry sweep failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
