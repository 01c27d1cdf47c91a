import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select

from .errors import AuthorizationError, ExternalServiceError, NotFoundError, ValidationError
from .models import Booking, JobRequest, utcnow
from .ranking import Location, rank_candidates
from .scheduling import ServiceSchedule
from .state_machine import SYSTEM_ACTOR, Actor
from .status import ActorRole, BookingStatus, FAILURE_STATUSES

logger = logging.getLogger(__name__)

# bookings that no longer hold a place in a service slot
RELEASED_STATUSES = frozenset({*FAILURE_STATUSES, BookingStatus.REFUNDED})


class BookingService:
    """Customer and provider facing operations, composed from the core components."""

    def __init__(
        self,
        session_factory,
        state_machine,
        ranker,
        dispatcher,
        validator,
        catalog,
        payments,
        *,
        matching_window_seconds: int = 300,
        initial_radius_km: float = 15.0,
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.state_machine = state_machine
        self.ranker = ranker
        self.dispatcher = dispatcher
        self.validator = validator
        self.catalog = catalog
        self.payments = payments
        self.matching_window = timedelta(seconds=matching_window_seconds)
        self.initial_radius_km = initial_radius_km
        self.clock = clock

    async def _booked_in_slot(self, service_id: str, start: datetime, end: datetime) -> int:
        async with self.session_factory() as session:
            return await session.scalar(
                select(func.count())
                .select_from(Booking)
                .where(
                    Booking.service_id == service_id,
                    Booking.scheduled_at >= start,
                    Booking.scheduled_at < end,
                    Booking.status.not_in(list(RELEASED_STATUSES)),
                )
            ) or 0

    async def create(
        self,
        customer_id: str,
        service_id: str,
        total_amount: Decimal,
        latitude: float,
        longitude: float,
        *,
        scheduled_at: datetime | None = None,
        address: str | None = None,
        urgency: str = "normal",
        customer_ref: str | None = None,
    ) -> Booking:
        """
        Validate the requested time, store the booking and push it through
        created -> requested -> matching, then send the first wave of offers.
        """
        if Decimal(total_amount) < 0:
            raise ValidationError("totalAmount cannot be negative", reason="invalid_amount")

        now = self.clock()
        schedule = ServiceSchedule.from_payload(service_id, await self.catalog.get_service(service_id))
        slot = self.validator.validate_booking_time(scheduled_at, schedule, now)
        if slot is not None and slot.max_bookings is not None:
            start, end = slot.bounds(scheduled_at or now)
            self.validator.check_capacity(slot, await self._booked_in_slot(service_id, start, end))

        booking = Booking(
            id=str(uuid.uuid4()),
            customer_id=customer_id,
            service_id=service_id,
            service_category=schedule.category,
            status=BookingStatus.CREATED,
            created_at=now,
            updated_at=now,
            scheduled_at=scheduled_at,
            total_amount=Decimal(total_amount),
            refund_amount=Decimal("0"),
            customer_ref=customer_ref or customer_id,
            latitude=latitude,
            longitude=longitude,
            address=address,
            urgency=(urgency or "normal").lower(),
            search_radius_km=self.initial_radius_km,
            search_wave=0,
            needs_manual_review=False,
            automation_halted=False,
        )
        async with self.session_factory() as session:
            session.add(booking)
            await session.commit()
        logger.info("booking %s created for customer %s (service %s)", booking.id, customer_id, service_id)

        capture = self.payments.capture_operation(booking, now)
        async with self.session_factory() as session:
            await self.state_machine.apply(booking, BookingStatus.REQUESTED, SYSTEM_ACTOR, now=now, session=session)
            session.add(capture)
            await session.commit()
        booking = await self.state_machine.get(booking.id)
        await self.state_machine.after_commit(booking, BookingStatus.CREATED, SYSTEM_ACTOR)

        self.state_machine.validate(booking, BookingStatus.MATCHING, SYSTEM_ACTOR, now)
        await self.state_machine.apply(
            booking,
            BookingStatus.MATCHING,
            SYSTEM_ACTOR,
            now=now,
            values={"matching_expires_at": now + self.matching_window},
        )

        await self.payments.attempt(capture.id)

        try:
            await self.dispatcher.advance(booking.id)
        except ExternalServiceError as e:
            # the sweep retries matching on its next pass
            logger.warning("initial dispatch for booking %s failed: %s", booking.id, e.reason)

        return await self.state_machine.get(booking.id)

    # ---- reads ----

    def ensure_visible(self, booking: Booking, actor: Actor, offered: bool = False) -> None:
        if actor.role in (ActorRole.ADMIN, ActorRole.SYSTEM):
            return
        if actor.role is ActorRole.CUSTOMER and booking.customer_id == actor.id:
            return
        if actor.role is ActorRole.PROVIDER and (
            offered or actor.id in (booking.provider_id, booking.previous_provider_id)
        ):
            return
        raise AuthorizationError("Not your order")

    async def get(self, booking_id: str, actor: Actor) -> Booking:
        booking = await self.state_machine.get(booking_id)
        offered = False
        if actor.role is ActorRole.PROVIDER and actor.id != booking.provider_id:
            async with self.session_factory() as session:
                offered = bool(await session.scalar(
                    select(func.count())
                    .select_from(JobRequest)
                    .where(JobRequest.booking_id == booking_id, JobRequest.provider_id == actor.id)
                ))
        self.ensure_visible(booking, actor, offered)
        return booking

    async def get_job_request(self, job_request_id: str) -> JobRequest:
        async with self.session_factory() as session:
            job_request = await session.get(JobRequest, job_request_id)
        if job_request is None:
            raise NotFoundError(f"Job request {job_request_id} not found", reason="job_request_not_found")
        return job_request

    async def list_job_requests(self, booking_id: str, actor: Actor) -> list[JobRequest]:
        booking = await self.state_machine.get(booking_id)
        if actor.role is ActorRole.PROVIDER:
            raise AuthorizationError("Providers cannot list the offers of an order")
        self.ensure_visible(booking, actor)
        return await self.dispatcher.job_requests(booking_id)

    async def find_providers(
        self,
        service_id: str,
        latitude: float,
        longitude: float,
        max_distance_km: float,
        *,
        at: datetime | None = None,
        provider_id: str | None = None,
    ):
        location = Location(latitude, longitude)
        candidates = await self.ranker.candidates(service_id, location)
        if provider_id is not None:
            match = next((c for c in candidates if c.id == provider_id), None)
            if match is None:
                raise NotFoundError(f"Provider {provider_id} not found", reason="provider_not_found")
            self.validator.validate_provider(provider_id, match.blackouts, at)
            candidates = [match]
        return rank_candidates(candidates, service_id, max_distance_km, at)

    # ---- provider responses ----

    async def accept_job_request(self, job_request_id: str, actor: Actor) -> Booking:
        if actor.role is not ActorRole.PROVIDER:
            raise AuthorizationError("Only providers can accept job requests")
        job_request = await self.get_job_request(job_request_id)
        return await self.state_machine.transition(
            job_request.booking_id,
            BookingStatus.ACCEPTED,
            actor.id,
            actor.role,
            job_request_id=job_request.id,
        )

    async def decline_job_request(self, job_request_id: str, actor: Actor) -> JobRequest:
        if actor.role is not ActorRole.PROVIDER:
            raise AuthorizationError("Only providers can decline job requests")
        job_request = await self.get_job_request(job_request_id)
        if job_request.provider_id != actor.id:
            raise AuthorizationError("Job request was offered to another provider")
        return await self.dispatcher.decline(job_request_id, actor.id)

    # ---- completion ----

    async def confirm_completion(
        self,
        booking_id: str,
        actor: Actor,
        rating: int | None = None,
        review: str | None = None,
    ) -> Booking:
        """The customer signs off on finished work; the system records the completion."""
        booking = await self.state_machine.get(booking_id)
        if actor.role is not ActorRole.ADMIN:
            if actor.role is not ActorRole.CUSTOMER or booking.customer_id != actor.id:
                raise AuthorizationError("Only the customer can confirm completion")
        if rating is not None and not 1 <= rating <= 5:
            raise ValidationError("rating must be between 1 and 5", reason="invalid_rating")

        now = self.clock()
        self.state_machine.validate(booking, BookingStatus.COMPLETED, SYSTEM_ACTOR, now)
        return await self.state_machine.apply(
            booking,
            BookingStatus.COMPLETED,
            SYSTEM_ACTOR,
            now=now,
            values={"customer_rating": rating, "customer_review": review},
        )
