import datetime as dt
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from .states import BookingStatus


class SlotsResponse(BaseModel):
    service_id: str
    date: dt.date
    slots: list[str]


class CreateReservationRequest(BaseModel):
    service_id: str
    provider_id: str | None = None
    date: dt.date
    slot: str = Field(min_length=1)
    currency: str = Field(default="usd", min_length=3, max_length=3)
    location: Literal["home", "salon", "studio"] = "salon"
    address: str | None = None

    @model_validator(mode="after")
    def _address_for_home(self):
        if self.location == "home" and not (self.address or "").strip():
            raise ValueError("address is required for home appointments")
        return self


class ReservationResponse(BaseModel):
    reservation_id: str
    payment_intent_id: str
    client_secret: str
    expires_at: datetime
    start: datetime
    end: datetime
    amount: Decimal
    currency: str


class ConfirmReservationRequest(BaseModel):
    payment_intent_id: str = Field(min_length=1)


class RescheduleRequest(BaseModel):
    new_date: dt.date
    new_slot: str = Field(min_length=1)


class StatusUpdateRequest(BaseModel):
    status: BookingStatus


class PaymentResponse(BaseModel):
    payment_id: str
    amount: Decimal
    currency: str
    status: str
    payment_method: str
    external_payment_reference: str
    paid_at: datetime | None = None


class BookingResponse(BaseModel):
    booking_id: str
    service_id: str
    provider_id: str
    customer_id: str
    service_name: str | None = None
    start_at: datetime
    end_at: datetime
    duration_minutes: int
    status: str
    payment_status: str
    total_price: Decimal
    currency: str
    location: str
    address: str | None = None
    confirmed_at: datetime | None = None
    payment: PaymentResponse | None = None


class WebhookResponse(BaseModel):
    received: bool = True
    outcome: str


class PaymentHistoryItem(PaymentResponse):
    booking_id: str
    service_id: str
    service_name: str | None = None
    provider_id: str
    start_at: datetime
    end_at: datetime
    booking_status: str
