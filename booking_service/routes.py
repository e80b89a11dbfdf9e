from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from .core import BookingCore
from .models import Booking, Payment
from .rbac import CUSTOMER_ROLE, Caller, require_role
from .schemas import (
    BookingResponse,
    ConfirmReservationRequest,
    CreateReservationRequest,
    PaymentHistoryItem,
    PaymentResponse,
    ReservationResponse,
    RescheduleRequest,
    SlotsResponse,
    StatusUpdateRequest,
    WebhookResponse,
)
from .security import get_current_user

router = APIRouter()


def get_core(request: Request) -> BookingCore:
    return request.app.state.core


def _payment_response(payment: Payment) -> PaymentResponse:
    return PaymentResponse(
        payment_id=payment.payment_id,
        amount=payment.amount,
        currency=payment.currency,
        status=payment.status.value,
        payment_method=payment.payment_method,
        external_payment_reference=payment.external_payment_reference,
        paid_at=payment.paid_at,
    )


async def _booking_response(core: BookingCore, booking: Booking) -> BookingResponse:
    payment = await core.payment_for(booking.booking_id)
    return BookingResponse(
        booking_id=booking.booking_id,
        service_id=booking.service_id,
        provider_id=booking.provider_id,
        customer_id=booking.customer_id,
        service_name=booking.service_name,
        start_at=booking.start_at,
        end_at=booking.end_at,
        duration_minutes=booking.duration_minutes,
        status=booking.status.value,
        payment_status=booking.payment_status.value,
        total_price=booking.total_price,
        currency=booking.currency,
        location=booking.location,
        address=booking.address,
        confirmed_at=booking.confirmed_at,
        payment=_payment_response(payment) if payment else None,
    )


@router.get("/services/{service_id}/slots", response_model=SlotsResponse)
async def list_slots(
    service_id: str,
    day: date = Query(alias="date"),
    booking_id: str | None = None,
    core: BookingCore = Depends(get_core),
):
    slots = await core.get_available_slots(service_id, day, exclude_booking_id=booking_id)
    return SlotsResponse(service_id=service_id, date=day, slots=slots)


@router.post("/reservations", response_model=ReservationResponse, status_code=201)
async def create_reservation(
    data: CreateReservationRequest,
    caller: Caller = Depends(get_current_user),
    core: BookingCore = Depends(get_core),
):
    require_role(caller, [CUSTOMER_ROLE])

    ticket = await core.create_reservation(
        customer_id=caller.user_id,
        service_id=data.service_id,
        provider_id=data.provider_id,
        day=data.date,
        slot=data.slot,
        currency=data.currency,
        location=data.location,
        address=data.address,
    )
    return ReservationResponse(
        reservation_id=ticket.reservation_id,
        payment_intent_id=ticket.payment_intent_id,
        client_secret=ticket.client_secret,
        expires_at=ticket.expires_at,
        start=ticket.start,
        end=ticket.end,
        amount=ticket.amount,
        currency=ticket.currency,
    )


@router.post("/reservations/{reservation_id}/confirm", response_model=BookingResponse)
async def confirm_reservation(
    reservation_id: str,
    data: ConfirmReservationRequest,
    caller: Caller = Depends(get_current_user),
    core: BookingCore = Depends(get_core),
):
    booking = await core.confirm_reservation(
        reservation_id,
        data.payment_intent_id,
        customer_id=None if caller.is_admin else caller.user_id,
    )
    return await _booking_response(core, booking)


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    caller: Caller = Depends(get_current_user),
    core: BookingCore = Depends(get_core),
):
    booking = await core.get_booking(booking_id, caller)
    return await _booking_response(core, booking)


@router.post("/bookings/{booking_id}/reschedule", response_model=BookingResponse)
async def reschedule_booking(
    booking_id: str,
    data: RescheduleRequest,
    caller: Caller = Depends(get_current_user),
    core: BookingCore = Depends(get_core),
):
    booking = await core.reschedule(booking_id, data.new_date, data.new_slot, caller)
    return await _booking_response(core, booking)


@router.patch("/bookings/{booking_id}/status", response_model=BookingResponse)
async def update_booking_status(
    booking_id: str,
    data: StatusUpdateRequest,
    caller: Caller = Depends(get_current_user),
    core: BookingCore = Depends(get_core),
):
    booking = await core.change_status(booking_id, data.status, caller)
    return await _booking_response(core, booking)


@router.get("/provider/bookings", response_model=list[BookingResponse])
async def list_provider_bookings(
    provider_id: str | None = None,
    caller: Caller = Depends(get_current_user),
    core: BookingCore = Depends(get_core),
):
    bookings = await core.list_provider_bookings(caller, provider_id)
    return [await _booking_response(core, b) for b in bookings]


@router.get("/customer/bookings", response_model=list[BookingResponse])
async def list_customer_bookings(
    caller: Caller = Depends(get_current_user),
    core: BookingCore = Depends(get_core),
):
    bookings = await core.list_customer_bookings(caller)
    return [await _booking_response(core, b) for b in bookings]


@router.get("/payments/history", response_model=list[PaymentHistoryItem])
async def payment_history(
    caller: Caller = Depends(get_current_user),
    core: BookingCore = Depends(get_core),
):
    rows = await core.payment_history(caller)
    return [
        PaymentHistoryItem(
            **_payment_response(payment).model_dump(),
            booking_id=booking.booking_id,
            service_id=booking.service_id,
            service_name=booking.service_name,
            provider_id=booking.provider_id,
            start_at=booking.start_at,
            end_at=booking.end_at,
            booking_status=booking.status.value,
        )
        for payment, booking in rows
    ]


@router.post("/payments/webhook", response_model=WebhookResponse)
async def payment_webhook(request: Request, core: BookingCore = Depends(get_core)):
    if core.reconciler is None:
        raise HTTPException(status_code=503, detail="Payment reconciliation is not configured")

    payload = await request.body()
    outcome = await core.handle_payment_event(payload, request.headers.get("Stripe-Signature"))
    return WebhookResponse(outcome=outcome)
