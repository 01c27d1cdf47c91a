import logging
import uuid
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .errors import ConflictError, NotFoundError
from .models import Booking, Receipt, utcnow
from .status import BookingStatus

logger = logging.getLogger(__name__)


def _iso(value):
    return value.isoformat() if value is not None else None


def _money(value):
    return str(Decimal(value).quantize(Decimal("0.01"))) if value is not None else None


def build_snapshot(booking: Booking) -> dict:
    total = Decimal(booking.total_amount)
    fee = Decimal(booking.cancellation_fee or 0)
    return {
        "booking_id": booking.id,
        "service_id": booking.service_id,
        "service_category": booking.service_category,
        "customer_id": booking.customer_id,
        "provider_id": booking.provider_id or booking.previous_provider_id,
        "amounts": {
            "total_amount": _money(total),
            "cancellation_fee": _money(fee),
            "refund_amount": _money(booking.refund_amount or 0),
            "amount_charged": _money(total - Decimal(booking.refund_amount or 0)),
        },
        "payment": {
            "payment_reference_id": booking.payment_reference_id,
            "refund_reference_id": booking.refund_reference_id,
            "payment_status": str(booking.payment_status) if booking.payment_status else None,
        },
        "timestamps": {
            "created_at": _iso(booking.created_at),
            "scheduled_at": _iso(booking.scheduled_at),
            "accepted_at": _iso(booking.accepted_at),
            "work_completed_at": _iso(booking.work_completed_at),
            "completed_at": _iso(booking.completed_at),
        },
        "address": booking.address,
        "rating": booking.customer_rating,
        "review": booking.customer_review,
    }


class ReceiptGenerator:
    """One immutable receipt per completed booking; repeat calls return the stored one."""

    def __init__(self, session_factory, clock=utcnow):
        self.session_factory = session_factory
        self.clock = clock

    async def get(self, booking_id: str) -> Receipt | None:
        async with self.session_factory() as session:
            res = await session.execute(select(Receipt).where(Receipt.booking_id == booking_id))
            return res.scalar_one_or_none()

    async def generate(self, booking_id: str) -> Receipt:
        existing = await self.get(booking_id)
        if existing is not None:
            return existing

        async with self.session_factory() as session:
            booking = await session.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found", reason="booking_not_found")
        # a refunded booking keeps the receipt it got on completion
        if booking.completed_at is None or booking.status not in (BookingStatus.COMPLETED, BookingStatus.REFUNDED):
            raise ConflictError("Receipts are only issued for completed orders", reason="not_completed")

        now = self.clock()
        receipt = Receipt(
            id=str(uuid.uuid4()),
            booking_id=booking_id,
            receipt_number=f"RCPT-{now:%Y%m%d}-{uuid.uuid4().hex[:10].upper()}",
            snapshot=build_snapshot(booking),
            created_at=now,
        )
        async with self.session_factory() as session:
            session.add(receipt)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self.get(booking_id)
                if existing is None:
                    raise
                return existing

        logger.info("receipt %s issued for booking %s", receipt.receipt_number, booking_id)
        return receipt
