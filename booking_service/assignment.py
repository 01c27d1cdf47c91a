import logging

from sqlalchemy import exists, func, or_, select, update

from .errors import ConflictError, ExpiryError, NotFoundError
from .models import Booking, JobRequest, utcnow
from .state_machine import Actor
from .status import ActorRole, BookingStatus, JobRequestStatus

logger = logging.getLogger(__name__)


class AssignmentCoordinator:
    """
    Resolves concurrent acceptances of one booking.

    The claim is a single conditional write on the booking row, guarded by
    "no provider yet, still awaiting acceptance, offer still open", followed in
    the same transaction by accepting the winning job request and superseding
    its open siblings. First committer wins; everybody else gets ConflictError.
    """

    def __init__(self, session_factory, state_machine, notifier=None, clock=utcnow):
        self.session_factory = session_factory
        self.state_machine = state_machine
        self.notifier = notifier
        self.clock = clock

    async def _job_request(self, job_request_id: str) -> JobRequest:
        async with self.session_factory() as session:
            job_request = await session.get(JobRequest, job_request_id)
        if job_request is None:
            raise NotFoundError(f"Job request {job_request_id} not found", reason="job_request_not_found")
        return job_request

    async def _open_request_for(self, booking_id: str, provider_id: str) -> JobRequest:
        async with self.session_factory() as session:
            res = await session.execute(
                select(JobRequest).where(
                    JobRequest.booking_id == booking_id,
                    JobRequest.provider_id == provider_id,
                )
            )
            job_request = res.scalar_one_or_none()
        if job_request is None:
            raise NotFoundError("No job request was offered to this provider", reason="job_request_not_found")
        return job_request

    async def claim(
        self,
        booking_id: str,
        job_request_id: str | None,
        provider_id: str | None,
        actor: Actor | None = None,
    ) -> Booking:
        if job_request_id is None:
            job_request = await self._open_request_for(booking_id, provider_id)
        else:
            job_request = await self._job_request(job_request_id)

        if job_request.booking_id != booking_id:
            raise NotFoundError("Job request does not belong to this booking", reason="job_request_not_found")
        if provider_id is not None and job_request.provider_id != provider_id:
            raise NotFoundError("Job request was not offered to this provider", reason="job_request_not_found")

        provider_id = job_request.provider_id
        actor = actor or Actor(provider_id, ActorRole.PROVIDER)
        now = self.clock()

        booking = await self.state_machine.get(booking_id)
        if booking.provider_id is not None or booking.status is not BookingStatus.MATCHED:
            raise self._lost(booking_id, provider_id)
        if job_request.status is not JobRequestStatus.SENT:
            raise ConflictError(f"Job request is already {job_request.status}", reason="job_request_closed")
        if job_request.expires_at <= now:
            raise ExpiryError("Job request has expired", reason="job_request_expired")
        self.state_machine.authorize(booking, BookingStatus.ACCEPTED, actor)
        self.state_machine.check_deadlines(booking, BookingStatus.ACCEPTED, now)

        offer_open = exists().where(
            JobRequest.id == job_request.id,
            JobRequest.booking_id == booking_id,
            JobRequest.provider_id == provider_id,
            JobRequest.status == JobRequestStatus.SENT,
            JobRequest.expires_at > now,
        )

        async with self.session_factory() as session:
            try:
                await self.state_machine.apply(
                    booking,
                    BookingStatus.ACCEPTED,
                    actor,
                    now=now,
                    expected=BookingStatus.MATCHED,
                    values={"provider_id": provider_id},
                    conditions=(
                        Booking.provider_id.is_(None),
                        or_(Booking.accept_deadline_at.is_(None), Booking.accept_deadline_at > now),
                        offer_open,
                    ),
                    session=session,
                )
            except ConflictError:
                await session.rollback()
                raise self._lost(booking_id, provider_id)

            accepted = await session.execute(
                update(JobRequest)
                .where(JobRequest.id == job_request.id, JobRequest.status == JobRequestStatus.SENT)
                .values(status=JobRequestStatus.ACCEPTED, responded_at=now)
                .execution_options(synchronize_session=False)
            )
            if accepted.rowcount != 1:
                await session.rollback()
                raise self._lost(booking_id, provider_id)

            await session.execute(
                update(JobRequest)
                .where(
                    JobRequest.booking_id == booking_id,
                    JobRequest.id != job_request.id,
                    JobRequest.status == JobRequestStatus.SENT,
                )
                .values(status=JobRequestStatus.SUPERSEDED, responded_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        logger.info("booking %s claimed by provider %s via job request %s", booking_id, provider_id, job_request.id)

        updated = await self.state_machine.get(booking_id)
        await self.state_machine.after_commit(updated, BookingStatus.MATCHED, actor)
        await self._notify_superseded(booking_id, now)
        await self.audit(booking_id)
        return updated

    def _lost(self, booking_id: str, provider_id: str) -> ConflictError:
        # routine outcome of the race, not a fault
        logger.debug("provider %s lost the claim on booking %s", provider_id, booking_id)
        return ConflictError("Booking already assigned to another provider", reason="already_assigned")

    async def _notify_superseded(self, booking_id: str, now) -> None:
        if self.notifier is None:
            return
        async with self.session_factory() as session:
            res = await session.execute(
                select(JobRequest).where(
                    JobRequest.booking_id == booking_id,
                    JobRequest.status == JobRequestStatus.SUPERSEDED,
                    JobRequest.responded_at == now,
                )
            )
            for job_request in res.scalars():
                self.notifier.job_request_event("job_request.superseded", job_request)

    async def audit(self, booking_id: str) -> bool:
        """
        Detect more than one accepted job request for a booking. Never repaired
        automatically: the booking is halted and flagged for an admin.
        """
        async with self.session_factory() as session:
            accepted = await session.scalar(
                select(func.count())
                .select_from(JobRequest)
                .where(JobRequest.booking_id == booking_id, JobRequest.status == JobRequestStatus.ACCEPTED)
            )
        if (accepted or 0) <= 1:
            return True

        logger.critical(
            "invariant violated: booking %s has %s accepted job requests; halting automation",
            booking_id,
            accepted,
        )
        async with self.session_factory() as session:
            await session.execute(
                update(Booking)
                .where(Booking.id == booking_id)
                .values(automation_halted=True, needs_manual_review=True, updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return False
