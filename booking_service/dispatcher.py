import logging
import uuid
from datetime import timedelta

from sqlalchemy import func, select, update

from .errors import BookingError, ConflictError
from .models import Booking, JobRequest, utcnow
from .ranking import Location
from .state_machine import SYSTEM_ACTOR
from .status import MATCHING_PHASE, BookingStatus, JobRequestStatus

logger = logging.getLogger(__name__)

PRIORITY_BY_URGENCY = {
    "urgent": 1,
    "high": 2,
    "normal": 3,
    "low": 4,
}


def priority_for(urgency: str | None) -> int:
    return PRIORITY_BY_URGENCY.get((urgency or "normal").lower(), 3)


class JobRequestDispatcher:
    """
    Fans a booking out to ranked providers in waves of time-boxed offers.

    A wave is the top ``fanout`` candidates not offered yet. The next wave is
    drawn only once no offer of the current one is still open. When ranking
    yields nobody new, the search radius widens step by step; once it is at
    its maximum and every candidate has been offered, the booking is
    cancelled with ``no_provider_accepted``.
    """

    def __init__(
        self,
        session_factory,
        state_machine,
        ranker,
        cancellation=None,
        notifier=None,
        *,
        offer_window_seconds: int = 120,
        fanout: int = 5,
        initial_radius_km: float = 15.0,
        max_radius_km: float = 40.0,
        radius_step_km: float = 10.0,
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.state_machine = state_machine
        self.ranker = ranker
        self.cancellation = cancellation
        self.notifier = notifier
        self.offer_window_seconds = offer_window_seconds
        self.fanout = fanout
        self.initial_radius_km = initial_radius_km
        self.max_radius_km = max_radius_km
        self.radius_step_km = radius_step_km
        self.clock = clock

    async def job_requests(self, booking_id: str) -> list[JobRequest]:
        async with self.session_factory() as session:
            res = await session.execute(
                select(JobRequest)
                .where(JobRequest.booking_id == booking_id)
                .order_by(JobRequest.wave, JobRequest.sent_at, JobRequest.distance_km, JobRequest.provider_id)
            )
            return list(res.scalars())

    async def _offered_provider_ids(self, booking_id: str) -> set[str]:
        async with self.session_factory() as session:
            res = await session.execute(select(JobRequest.provider_id).where(JobRequest.booking_id == booking_id))
            return set(res.scalars())

    async def open_offer_count(self, booking_id: str, now) -> int:
        async with self.session_factory() as session:
            return await session.scalar(
                select(func.count())
                .select_from(JobRequest)
                .where(
                    JobRequest.booking_id == booking_id,
                    JobRequest.status == JobRequestStatus.SENT,
                    JobRequest.expires_at > now,
                )
            ) or 0

    async def expire_offers(self, now=None, booking_id: str | None = None) -> list[JobRequest]:
        """Conditionally move lapsed ``sent`` offers to ``expired``; safe to repeat."""
        now = now or self.clock()
        where = [JobRequest.status == JobRequestStatus.SENT, JobRequest.expires_at <= now]
        if booking_id is not None:
            where.append(JobRequest.booking_id == booking_id)

        async with self.session_factory() as session:
            res = await session.execute(select(JobRequest).where(*where))
            candidates = list(res.scalars())

        expired = []
        for job_request in candidates:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(JobRequest)
                    .where(JobRequest.id == job_request.id, JobRequest.status == JobRequestStatus.SENT)
                    .values(status=JobRequestStatus.EXPIRED, responded_at=now)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
            if result.rowcount == 1:
                job_request.status = JobRequestStatus.EXPIRED
                job_request.responded_at = now
                expired.append(job_request)
                if self.notifier is not None:
                    self.notifier.job_request_event("job_request.expired", job_request)
        return expired

    async def decline(self, job_request_id: str, provider_id: str) -> JobRequest:
        now = self.clock()
        async with self.session_factory() as session:
            result = await session.execute(
                update(JobRequest)
                .where(
                    JobRequest.id == job_request_id,
                    JobRequest.provider_id == provider_id,
                    JobRequest.status == JobRequestStatus.SENT,
                )
                .values(status=JobRequestStatus.DECLINED, responded_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                raise ConflictError("Job request is no longer open", reason="job_request_closed")
            await session.commit()
            job_request = await session.get(JobRequest, job_request_id)

        logger.info("provider %s declined job request %s", provider_id, job_request_id)
        return job_request

    async def dispatch(
        self,
        booking_id: str,
        ranked_candidates,
        offer_window_seconds: int | None = None,
        fanout: int | None = None,
    ) -> list[JobRequest]:
        """
        Send one wave of offers. Returns the new job requests, or an empty list
        when another wave is still open, nobody new is left, or another
        dispatcher got there first.
        """
        offer_window = offer_window_seconds or self.offer_window_seconds
        fanout = fanout or self.fanout
        now = self.clock()

        booking = await self.state_machine.get(booking_id)
        if booking.status not in MATCHING_PHASE or booking.provider_id is not None:
            return []
        if await self.open_offer_count(booking_id, now):
            return []

        offered = await self._offered_provider_ids(booking_id)
        fresh = [c for c in ranked_candidates if c.id not in offered][:fanout]
        if not fresh:
            return []

        wave = booking.search_wave + 1
        expires_at = now + timedelta(seconds=offer_window)
        priority = priority_for(booking.urgency)
        requests = [
            JobRequest(
                id=str(uuid.uuid4()),
                booking_id=booking_id,
                provider_id=candidate.id,
                status=JobRequestStatus.SENT,
                wave=wave,
                priority=priority,
                sent_at=now,
                expires_at=expires_at,
                distance_km=round(candidate.distance_km, 3),
                quoted_price=booking.total_amount,
            )
            for candidate in fresh
        ]
        wave_values = {"search_wave": wave, "accept_deadline_at": expires_at}
        # the wave counter doubles as the guard against concurrent dispatchers
        wave_guard = (Booking.search_wave == booking.search_wave, Booking.provider_id.is_(None))

        entered_matched = booking.status is BookingStatus.MATCHING
        async with self.session_factory() as session:
            try:
                if entered_matched:
                    self.state_machine.validate(booking, BookingStatus.MATCHED, SYSTEM_ACTOR, now)
                    await self.state_machine.apply(
                        booking,
                        BookingStatus.MATCHED,
                        SYSTEM_ACTOR,
                        now=now,
                        values=wave_values,
                        conditions=wave_guard,
                        session=session,
                    )
                else:
                    if booking.matching_expires_at is not None and now >= booking.matching_expires_at:
                        return []
                    result = await session.execute(
                        update(Booking)
                        .where(
                            Booking.id == booking_id,
                            Booking.status == BookingStatus.MATCHED,
                            Booking.automation_halted.is_(False),
                            *wave_guard,
                        )
                        .values(updated_at=now, **wave_values)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        raise ConflictError("wave already dispatched", reason="status_changed")
                session.add_all(requests)
                await session.commit()
            except BookingError as e:
                await session.rollback()
                logger.debug("wave %s for booking %s not sent: %s", wave, booking_id, e.reason)
                return []

        logger.info(
            "booking %s wave %s: offered to %s provider(s) until %s",
            booking_id, wave, len(requests), expires_at.isoformat(),
        )
        if entered_matched:
            await self.state_machine.after_commit(
                await self.state_machine.get(booking_id), BookingStatus.MATCHING, SYSTEM_ACTOR
            )
        if self.notifier is not None:
            for job_request in requests:
                self.notifier.job_request_event("job_request.sent", job_request)
        return requests

    async def _widen_radius(self, booking: Booking, radius: float) -> bool:
        if radius >= self.max_radius_km:
            return False
        wider = min(radius + self.radius_step_km, self.max_radius_km)
        async with self.session_factory() as session:
            result = await session.execute(
                update(Booking)
                .where(
                    Booking.id == booking.id,
                    Booking.status.in_(list(MATCHING_PHASE)),
                    Booking.search_radius_km == booking.search_radius_km,
                )
                .values(search_radius_km=wider, updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount == 1:
            logger.info("booking %s: search radius widened %.1f -> %.1f km", booking.id, radius, wider)
        return True

    async def advance(self, booking_id: str) -> list[JobRequest]:
        """
        Drive matching one step: rank, send the next wave, widen the radius, or
        give up when every reachable candidate has been offered.
        """
        now = self.clock()
        booking = await self.state_machine.get(booking_id)
        if booking.status not in MATCHING_PHASE or booking.provider_id is not None or booking.automation_halted:
            return []
        if booking.matching_expires_at is not None and now >= booking.matching_expires_at:
            # the sweep cancels it as no_provider_available
            return []

        await self.expire_offers(now, booking_id=booking_id)
        if await self.open_offer_count(booking_id, now):
            return []

        radius = booking.search_radius_km or self.initial_radius_km
        ranked = await self.ranker.rank(
            booking.service_id,
            Location(booking.latitude, booking.longitude),
            radius,
            booking.scheduled_at or now,
        )
        offered = await self._offered_provider_ids(booking_id)
        remaining = [c for c in ranked if c.id not in offered]
        if remaining:
            return await self.dispatch(booking_id, remaining)

        if await self._widen_radius(booking, radius):
            return []

        if offered and self.cancellation is not None:
            logger.info("booking %s: ranked list exhausted without acceptance", booking_id)
            try:
                await self.cancellation.cancel(
                    booking_id,
                    SYSTEM_ACTOR.id,
                    SYSTEM_ACTOR.role,
                    "no_provider_accepted",
                    None,
                    idempotency_key=f"exhausted:{booking_id}",
                )
            except ConflictError:
                logger.debug("booking %s changed before exhaustion cancel", booking_id)
        return []
