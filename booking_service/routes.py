from fastapi import APIRouter, Depends, Header, Request

from .schemas import (
    CancelRequest,
    CancelResponse,
    ConfirmCompletionRequest,
    CreateOrderRequest,
    FindProvidersRequest,
    JobRequestResponse,
    OrderResponse,
    ProviderCandidateResponse,
    ReceiptResponse,
    RefundRequest,
    UpdateStatusRequest,
)
from .security import get_actor, require_role
from .state_machine import Actor

router = APIRouter()


def get_core(request: Request):
    return request.app.state.core


@router.post("/orders", response_model=OrderResponse, status_code=201)
async def create_order(data: CreateOrderRequest, actor: Actor = Depends(get_actor), core=Depends(get_core)):
    require_role(actor, ["customer", "admin"])
    booking = await core.service.create(
        actor.id,
        data.service_id,
        data.total_amount,
        data.location.latitude,
        data.location.longitude,
        scheduled_at=data.scheduled_at,
        address=data.address,
        urgency=data.urgency,
        customer_ref=data.customer_ref,
    )
    return OrderResponse.of(booking)


@router.post("/orders/find-providers", response_model=list[ProviderCandidateResponse])
async def find_providers(data: FindProvidersRequest, actor: Actor = Depends(get_actor), core=Depends(get_core)):
    ranked = await core.service.find_providers(
        data.service_id,
        data.location.latitude,
        data.location.longitude,
        data.max_distance_km,
        at=data.at,
        provider_id=data.provider_id,
    )
    return [
        ProviderCandidateResponse(
            id=c.id,
            distanceKm=round(c.distance_km, 2),
            rating=c.rating,
            lastAcceptTime=c.last_accept_time,
            available=c.available,
        )
        for c in ranked
    ]


@router.get("/orders/{booking_id}", response_model=OrderResponse)
async def get_order(booking_id: str, actor: Actor = Depends(get_actor), core=Depends(get_core)):
    return OrderResponse.of(await core.service.get(booking_id, actor))


@router.patch("/orders/{booking_id}/status", response_model=OrderResponse)
async def update_status(
    booking_id: str,
    data: UpdateStatusRequest,
    actor: Actor = Depends(get_actor),
    core=Depends(get_core),
):
    booking = await core.state_machine.transition(
        booking_id,
        data.new_status,
        actor.id,
        actor.role,
        reason=data.reason,
        notes=data.notes,
        job_request_id=data.job_request_id,
    )
    return OrderResponse.of(booking)


@router.post("/orders/{booking_id}/cancel", response_model=CancelResponse)
async def cancel_order(
    booking_id: str,
    data: CancelRequest,
    idempotency_key: str | None = Header(default=None),
    actor: Actor = Depends(get_actor),
    core=Depends(get_core),
):
    outcome = await core.cancellation.cancel(
        booking_id,
        actor.id,
        actor.role,
        data.reason,
        data.notes,
        idempotency_key=idempotency_key or data.idempotency_key,
    )
    return CancelResponse(**outcome.to_dict())


@router.post("/orders/{booking_id}/receipt", response_model=ReceiptResponse)
async def order_receipt(booking_id: str, actor: Actor = Depends(get_actor), core=Depends(get_core)):
    await core.service.get(booking_id, actor)
    receipt = await core.receipts.generate(booking_id)
    return ReceiptResponse(
        receiptNumber=receipt.receipt_number,
        bookingId=receipt.booking_id,
        createdAt=receipt.created_at,
        snapshot=receipt.snapshot,
    )


@router.post("/orders/{booking_id}/confirm-completion", response_model=OrderResponse)
async def confirm_completion(
    booking_id: str,
    data: ConfirmCompletionRequest,
    actor: Actor = Depends(get_actor),
    core=Depends(get_core),
):
    booking = await core.service.confirm_completion(booking_id, actor, data.rating, data.review)
    return OrderResponse.of(booking)


@router.post("/orders/{booking_id}/refund", response_model=OrderResponse)
async def refund_order(
    booking_id: str,
    data: RefundRequest,
    actor: Actor = Depends(get_actor),
    core=Depends(get_core),
):
    booking = await core.cancellation.refund(booking_id, actor.id, actor.role, data.amount, data.reason)
    return OrderResponse.of(booking)


@router.get("/orders/{booking_id}/job-requests", response_model=list[JobRequestResponse])
async def list_job_requests(booking_id: str, actor: Actor = Depends(get_actor), core=Depends(get_core)):
    return [JobRequestResponse.of(jr) for jr in await core.service.list_job_requests(booking_id, actor)]


@router.post("/job-requests/{job_request_id}/accept", response_model=OrderResponse)
async def accept_job_request(job_request_id: str, actor: Actor = Depends(get_actor), core=Depends(get_core)):
    return OrderResponse.of(await core.service.accept_job_request(job_request_id, actor))


@router.post("/job-requests/{job_request_id}/decline", response_model=JobRequestResponse)
async def decline_job_request(job_request_id: str, actor: Actor = Depends(get_actor), core=Depends(get_core)):
    return JobRequestResponse.of(await core.service.decline_job_request(job_request_id, actor))
