from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class LocationIn(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class CreateOrderRequest(CamelModel):
    service_id: str = Field(alias="serviceId")
    total_amount: Decimal = Field(alias="totalAmount", ge=0, decimal_places=2)
    location: LocationIn
    scheduled_at: datetime | None = Field(default=None, alias="scheduledAt")
    address: str | None = None
    urgency: str = "normal"
    customer_ref: str | None = Field(default=None, alias="customerRef")


class UpdateStatusRequest(CamelModel):
    new_status: str = Field(alias="newStatus")
    job_request_id: str | None = Field(default=None, alias="jobRequestId")
    reason: str | None = None
    notes: str | None = None


class FindProvidersRequest(CamelModel):
    service_id: str = Field(alias="serviceId")
    location: LocationIn
    max_distance_km: float = Field(alias="maxDistanceKm", gt=0)
    at: datetime | None = None
    provider_id: str | None = Field(default=None, alias="providerId")


class CancelRequest(CamelModel):
    reason: str
    notes: str | None = None
    idempotency_key: str | None = Field(default=None, alias="idempotencyKey")


class ConfirmCompletionRequest(CamelModel):
    rating: int | None = Field(default=None, ge=1, le=5)
    review: str | None = None


class RefundRequest(CamelModel):
    amount: Decimal | None = Field(default=None, gt=0)
    reason: str | None = None


class OrderResponse(BaseModel):
    id: str
    customerId: str
    serviceId: str
    providerId: str | None = None
    status: str
    createdAt: datetime
    scheduledAt: datetime | None = None
    matchingExpiresAt: datetime | None = None
    acceptDeadlineAt: datetime | None = None
    acceptedAt: datetime | None = None
    completedAt: datetime | None = None
    cancelledAt: datetime | None = None
    totalAmount: str
    cancellationReason: str | None = None
    cancellationFee: str | None = None
    refundAmount: str
    refundReferenceId: str | None = None
    paymentStatus: str
    urgency: str
    needsManualReview: bool
    automationHalted: bool

    @classmethod
    def of(cls, booking) -> "OrderResponse":
        return cls(
            id=booking.id,
            customerId=booking.customer_id,
            serviceId=booking.service_id,
            providerId=booking.provider_id,
            status=str(booking.status),
            createdAt=booking.created_at,
            scheduledAt=booking.scheduled_at,
            matchingExpiresAt=booking.matching_expires_at,
            acceptDeadlineAt=booking.accept_deadline_at,
            acceptedAt=booking.accepted_at,
            completedAt=booking.completed_at,
            cancelledAt=booking.cancelled_at,
            totalAmount=str(booking.total_amount),
            cancellationReason=booking.cancellation_reason,
            cancellationFee=str(booking.cancellation_fee) if booking.cancellation_fee is not None else None,
            refundAmount=str(booking.refund_amount or 0),
            refundReferenceId=booking.refund_reference_id,
            paymentStatus=str(booking.payment_status),
            urgency=booking.urgency,
            needsManualReview=booking.needs_manual_review,
            automationHalted=booking.automation_halted,
        )


class ProviderCandidateResponse(BaseModel):
    id: str
    distanceKm: float
    rating: float
    lastAcceptTime: datetime | None = None
    available: bool


class JobRequestResponse(BaseModel):
    id: str
    bookingId: str
    providerId: str
    status: str
    wave: int
    priority: int
    sentAt: datetime
    expiresAt: datetime
    respondedAt: datetime | None = None
    distanceKm: float
    quotedPrice: str | None = None

    @classmethod
    def of(cls, job_request) -> "JobRequestResponse":
        return cls(
            id=job_request.id,
            bookingId=job_request.booking_id,
            providerId=job_request.provider_id,
            status=str(job_request.status),
            wave=job_request.wave,
            priority=job_request.priority,
            sentAt=job_request.sent_at,
            expiresAt=job_request.expires_at,
            respondedAt=job_request.responded_at,
            distanceKm=job_request.distance_km,
            quotedPrice=str(job_request.quoted_price) if job_request.quoted_price is not None else None,
        )


class CancelResponse(BaseModel):
    bookingId: str
    previousStatus: str
    newStatus: str
    cancellationFee: str
    refundAmount: str
    refundId: str | None = None


class ReceiptResponse(BaseModel):
    receiptNumber: str
    bookingId: str
    createdAt: datetime
    snapshot: dict
