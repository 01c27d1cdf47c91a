import asyncio

import pytest
from sqlalchemy import text, update
from sqlalchemy.exc import IntegrityError

from booking_service.errors import ConflictError, ExpiryError, InvariantViolation, NotFoundError
from booking_service.models import Booking, JobRequest
from booking_service.status import BookingStatus, JobRequestStatus


@pytest.mark.anyio
@pytest.mark.parametrize("n", [2, 5])
async def test_concurrent_claims_have_exactly_one_winner(core, seed, seed_offer, job_requests_of, n):
    booking = await seed(BookingStatus.MATCHED)
    offers = [await seed_offer(booking.id, f"prov-{i}") for i in range(n)]

    results = await asyncio.gather(
        *(core.assignment.claim(booking.id, jr.id, jr.provider_id) for jr in offers),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, Booking)]
    losers = [r for r in results if isinstance(r, ConflictError)]
    assert len(winners) == 1
    assert len(losers) == n - 1

    final = await core.state_machine.get(booking.id)
    assert final.status is BookingStatus.ACCEPTED
    assert final.provider_id == winners[0].provider_id
    assert final.accepted_at is not None

    statuses = sorted(str(jr.status) for jr in await job_requests_of(booking.id))
    assert statuses == ["accepted"] + ["superseded"] * (n - 1)


@pytest.mark.anyio
async def test_late_claim_reports_already_assigned(core, seed, seed_offer, publisher):
    booking = await seed(BookingStatus.MATCHED)
    first = await seed_offer(booking.id, "prov-a")
    second = await seed_offer(booking.id, "prov-b")

    await core.assignment.claim(booking.id, first.id, "prov-a")
    with pytest.raises(ConflictError) as exc:
        await core.assignment.claim(booking.id, second.id, "prov-b")
    assert exc.value.reason == "already_assigned"

    await core.notifier.drain()
    superseded = publisher.events("job_request.superseded")
    assert [e["data"]["provider_id"] for e in superseded] == ["prov-b"]


@pytest.mark.anyio
async def test_provider_transition_resolves_its_offer(core, seed, seed_offer):
    booking = await seed(BookingStatus.MATCHED)
    await seed_offer(booking.id, "prov-a")

    updated = await core.state_machine.transition(booking.id, "accepted", "prov-a", "provider")

    assert updated.status is BookingStatus.ACCEPTED
    assert updated.provider_id == "prov-a"

    with pytest.raises(ConflictError):
        await core.state_machine.transition(booking.id, "accepted", "prov-b", "provider")


@pytest.mark.anyio
async def test_claim_without_an_offer(core, seed):
    booking = await seed(BookingStatus.MATCHED)

    with pytest.raises(NotFoundError):
        await core.assignment.claim(booking.id, None, "prov-x")


@pytest.mark.anyio
async def test_claim_of_someone_elses_offer(core, seed, seed_offer):
    booking = await seed(BookingStatus.MATCHED)
    offer = await seed_offer(booking.id, "prov-a")

    with pytest.raises(NotFoundError):
        await core.assignment.claim(booking.id, offer.id, "prov-b")


@pytest.mark.anyio
async def test_expired_offer_cannot_be_claimed(core, seed, seed_offer, clock):
    booking = await seed(BookingStatus.MATCHED)
    offer = await seed_offer(booking.id, "prov-a", expires_in=60)
    clock.advance(61)

    with pytest.raises(ExpiryError):
        await core.assignment.claim(booking.id, offer.id, "prov-a")
    assert (await core.state_machine.get(booking.id)).provider_id is None


@pytest.mark.anyio
async def test_admin_assigns_through_an_offer(core, seed, seed_offer):
    booking = await seed(BookingStatus.MATCHED)
    offer = await seed_offer(booking.id, "prov-a")

    updated = await core.state_machine.transition(
        booking.id, "accepted", "admin-1", "admin", job_request_id=offer.id
    )

    assert updated.provider_id == "prov-a"


@pytest.mark.anyio
async def test_two_accepted_offers_halt_the_booking(core, seed, seed_offer, session_factory):
    booking = await seed(BookingStatus.ACCEPTED, provider_id="prov-a")
    await seed_offer(booking.id, "prov-a", status=JobRequestStatus.ACCEPTED)
    rogue = await seed_offer(booking.id, "prov-b")
    # simulate corruption that bypassed the partial unique index
    async with session_factory() as session:
        await session.execute(text("DROP INDEX uq_job_requests_one_accepted"))
        await session.commit()
    async with session_factory() as session:
        await session.execute(
            update(JobRequest).where(JobRequest.id == rogue.id).values(status=JobRequestStatus.ACCEPTED)
        )
        await session.commit()

    assert await core.assignment.audit(booking.id) is False

    halted = await core.state_machine.get(booking.id)
    assert halted.automation_halted is True
    assert halted.needs_manual_review is True
    with pytest.raises(InvariantViolation):
        await core.state_machine.transition(booking.id, "enroute", "prov-a", "provider")


@pytest.mark.anyio
async def test_database_refuses_a_second_accepted_offer(core, seed, seed_offer, session_factory):
    booking = await seed(BookingStatus.ACCEPTED, provider_id="prov-a")
    await seed_offer(booking.id, "prov-a", status=JobRequestStatus.ACCEPTED)
    other = await seed_offer(booking.id, "prov-b")

    async with session_factory() as session:
        with pytest.raises(IntegrityError):
            await session.execute(
                update(JobRequest).where(JobRequest.id == other.id).values(status=JobRequestStatus.ACCEPTED)
            )
