import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from booking_service.cancellation import CancellationPolicyEngine
from booking_service.errors import (
    AuthorizationError,
    NotCancellableError,
    TransitionError,
    ValidationError,
)
from booking_service.models import Cancellation
from booking_service.status import BookingStatus, PaymentStatus


@pytest.mark.anyio
async def test_cancel_before_acceptance_is_free(core, seed, gateway, clock):
    booking = await seed(BookingStatus.MATCHED, scheduled_at=clock() + timedelta(days=2))

    outcome = await core.cancellation.cancel(booking.id, "cust-1", "customer", "changed_mind")

    assert outcome.cancellation_fee == Decimal("0.00")
    assert outcome.refund_amount == Decimal("100.00")
    assert outcome.previous_status is BookingStatus.MATCHED
    assert outcome.new_status is BookingStatus.CANCELLED
    assert [r[1] for r in gateway.refunds] == [Decimal("100.00")]
    # the refund id is the idempotency key the gateway saw
    assert outcome.refund_id == gateway.refunds[0][3]

    final = await core.state_machine.get(booking.id)
    assert final.status is BookingStatus.CANCELLED
    assert final.payment_status is PaymentStatus.REFUNDED
    assert final.refund_reference_id == f"ref-{outcome.refund_id[:8]}"
    assert final.cancelled_at == clock()


@pytest.mark.anyio
async def test_late_cancel_after_acceptance_pays_the_fee(core, seed, clock):
    booking = await seed(BookingStatus.ACCEPTED, scheduled_at=clock() + timedelta(hours=1))

    outcome = await core.cancellation.cancel(booking.id, "cust-1", "customer", "changed_mind")

    assert outcome.cancellation_fee == Decimal("20.00")
    assert outcome.refund_amount == Decimal("80.00")
    final = await core.state_machine.get(booking.id)
    assert final.cancellation_fee == Decimal("20.00")
    assert final.refund_amount == Decimal("80.00")
    assert final.provider_id is None
    assert final.previous_provider_id == "prov-1"


@pytest.mark.anyio
async def test_early_cancel_after_acceptance_is_free(core, seed, clock):
    booking = await seed(BookingStatus.ACCEPTED, scheduled_at=clock() + timedelta(hours=2))

    outcome = await core.cancellation.cancel(booking.id, "cust-1", "customer", "changed_mind")

    assert outcome.cancellation_fee == Decimal("0.00")


@pytest.mark.anyio
@pytest.mark.parametrize("status", [BookingStatus.ENROUTE, BookingStatus.STARTED])
async def test_provider_on_the_way_always_costs(core, seed, clock, status):
    booking = await seed(status, scheduled_at=clock() + timedelta(days=3))

    outcome = await core.cancellation.cancel(booking.id, "admin-1", "admin", "customer_no_show")

    assert outcome.cancellation_fee == Decimal("20.00")


def test_fee_rounds_half_up():
    class Stub:
        status = BookingStatus.ENROUTE
        scheduled_at = None
        total_amount = Decimal("33.33")

    engine = CancellationPolicyEngine(None, None, None)
    assert engine.compute_fee(Stub(), None) == Decimal("6.67")


@pytest.mark.anyio
async def test_work_in_progress_cannot_be_cancelled(core, seed, gateway):
    booking = await seed(BookingStatus.IN_PROGRESS)

    with pytest.raises(NotCancellableError) as exc:
        await core.cancellation.cancel(booking.id, "admin-1", "admin", "changed_mind")

    assert "cannot be cancelled" in exc.value.message
    assert (await core.state_machine.get(booking.id)).status is BookingStatus.IN_PROGRESS
    assert gateway.refunds == []


@pytest.mark.anyio
async def test_replay_returns_the_recorded_outcome(core, seed, gateway):
    booking = await seed(BookingStatus.MATCHED)

    first = await core.cancellation.cancel(booking.id, "cust-1", "customer", "changed_mind", idempotency_key="k1")
    second = await core.cancellation.cancel(booking.id, "cust-1", "customer", "changed_mind", idempotency_key="k1")

    assert second.to_dict() == first.to_dict()
    assert len(gateway.refunds) == 1


@pytest.mark.anyio
async def test_replay_is_unchanged_after_a_retried_refund(core, seed, gateway, clock):
    booking = await seed(BookingStatus.MATCHED)
    gateway.fail_refunds = 1

    first = await core.cancellation.cancel(booking.id, "cust-1", "customer", "changed_mind", idempotency_key="k1")
    assert (await core.state_machine.get(booking.id)).payment_status is PaymentStatus.REFUND_PENDING

    clock.advance(3600)
    assert await core.payments.process_due() == 1

    second = await core.cancellation.cancel(booking.id, "cust-1", "customer", "changed_mind", idempotency_key="k1")

    assert second.to_dict() == first.to_dict()
    assert first.refund_id is not None
    assert len(gateway.refunds) == 2
    final = await core.state_machine.get(booking.id)
    assert final.payment_status is PaymentStatus.REFUNDED
    assert final.refund_reference_id == f"ref-{first.refund_id[:8]}"


@pytest.mark.anyio
async def test_new_key_on_cancelled_booking_is_rejected(core, seed):
    booking = await seed(BookingStatus.MATCHED)
    await core.cancellation.cancel(booking.id, "cust-1", "customer", "changed_mind", idempotency_key="k1")

    with pytest.raises(NotCancellableError):
        await core.cancellation.cancel(booking.id, "cust-1", "customer", "changed_mind", idempotency_key="k2")


@pytest.mark.anyio
async def test_concurrent_cancels_with_one_key_refund_once(core, seed, gateway, session_factory):
    booking = await seed(BookingStatus.ACCEPTED)

    outcomes = await asyncio.gather(
        *(core.cancellation.cancel(booking.id, "cust-1", "customer", "changed_mind", idempotency_key="same")
          for _ in range(3))
    )

    assert len({(o.cancellation_fee, o.refund_amount, o.new_status) for o in outcomes}) == 1
    assert len(gateway.refunds) == 1
    async with session_factory() as session:
        count = await session.scalar(select(func.count()).select_from(Cancellation))
    assert count == 1


@pytest.mark.anyio
async def test_reason_is_required(core, seed):
    booking = await seed(BookingStatus.MATCHED)

    with pytest.raises(ValidationError):
        await core.cancellation.cancel(booking.id, "cust-1", "customer", "")


@pytest.mark.anyio
async def test_other_provider_cannot_cancel(core, seed):
    booking = await seed(BookingStatus.ACCEPTED)

    with pytest.raises(AuthorizationError):
        await core.cancellation.cancel(booking.id, "prov-2", "provider", "sick")


@pytest.mark.anyio
async def test_free_booking_needs_no_refund(core, seed, gateway):
    booking = await seed(BookingStatus.MATCHED, total_amount=Decimal("0"), payment_status=PaymentStatus.NOT_REQUIRED)

    outcome = await core.cancellation.cancel(booking.id, "cust-1", "customer", "changed_mind")

    assert outcome.refund_amount == Decimal("0.00")
    assert gateway.refunds == []
    assert (await core.state_machine.get(booking.id)).payment_status is PaymentStatus.NOT_REQUIRED


@pytest.mark.anyio
async def test_refund_without_capture_is_voided(core, seed, gateway):
    booking = await seed(BookingStatus.MATCHED, payment_reference_id=None, payment_status=PaymentStatus.PENDING)

    outcome = await core.cancellation.cancel(booking.id, "cust-1", "customer", "changed_mind")
    assert outcome.refund_id is not None

    # the reconciler finds no capture for it and voids the refund
    await core.payments.process_due()

    assert gateway.refunds == []
    assert (await core.state_machine.get(booking.id)).payment_status is PaymentStatus.NOT_REQUIRED


@pytest.mark.anyio
async def test_post_hoc_refund_of_completed_booking(core, seed, gateway, clock):
    booking = await seed(BookingStatus.COMPLETED, completed_at=clock())

    updated = await core.cancellation.refund(booking.id, "admin-1", "admin", Decimal("30"), "poor_quality")

    assert updated.status is BookingStatus.REFUNDED
    assert updated.refund_amount == Decimal("30.00")
    assert updated.payment_status is PaymentStatus.REFUNDED
    assert [(r[0], r[1], r[2]) for r in gateway.refunds] == [("cap-seed", Decimal("30.00"), "poor_quality")]

    with pytest.raises(TransitionError):
        await core.cancellation.refund(booking.id, "admin-1", "admin", Decimal("10"))


@pytest.mark.anyio
async def test_post_hoc_refund_rules(core, seed, clock):
    completed = await seed(BookingStatus.COMPLETED, completed_at=clock())
    active = await seed(BookingStatus.ACCEPTED)
    cancelled = await seed(BookingStatus.CANCELLED, refund_amount=Decimal("80.00"))

    with pytest.raises(AuthorizationError):
        await core.cancellation.refund(completed.id, "cust-1", "customer")
    with pytest.raises(ValidationError) as exc:
        await core.cancellation.refund(completed.id, "admin-1", "admin", Decimal("100.01"))
    assert exc.value.reason == "invalid_refund_amount"
    with pytest.raises(TransitionError):
        await core.cancellation.refund(active.id, "admin-1", "admin")

    # only what the cancellation kept is still refundable
    with pytest.raises(ValidationError):
        await core.cancellation.refund(cancelled.id, "admin-1", "admin", Decimal("20.01"))
    updated = await core.cancellation.refund(cancelled.id, "admin-1", "admin")
    assert updated.refund_amount == Decimal("100.00")
