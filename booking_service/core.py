import asyncio
import json
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal

from .catalog import ServiceInfo
from .conflicts import PROVIDER_SCOPE, has_conflict
from .confirmation import BookingConfirmer
from .errors import ConflictError, InvalidRequestError, PaymentGatewayError
from .intervals import parse_slot
from .lifecycle import (
    change_status,
    get_booking,
    list_customer_bookings,
    list_provider_bookings,
    payment_for,
    payment_history,
)
from .locking import ScopeLocks
from .models import Booking, Payment
from .rbac import Caller
from .reconciliation import PaymentReconciler
from .reschedule import reschedule_booking
from .reservations import ReservationHolder, utcnow
from .slots import WorkingHours, available_slots, slot_end
from .states import BookingStatus
from .webhook_security import verify_stripe_signature

LOCATIONS = ("home", "salon", "studio")


@dataclass(frozen=True)
class ReservationTicket:
    reservation_id: str
    payment_intent_id: str
    client_secret: str
    expires_at: datetime
    start: datetime
    end: datetime
    amount: Decimal
    currency: str


def check_location(location: str, address: str | None):
    if location not in LOCATIONS:
        raise InvalidRequestError(f"location must be one of {', '.join(LOCATIONS)}")
    if location == "home" and not (address or "").strip():
        raise InvalidRequestError("address is required for home appointments")


class BookingCore:
    """Operations the HTTP layer calls; owns the reservation holder and scope locks."""

    def __init__(
        self,
        session_factory,
        catalog,
        gateway,
        notifier,
        ledger=None,
        *,
        hours: WorkingHours | None = None,
        scope: str = PROVIDER_SCOPE,
        reservation_ttl: timedelta = timedelta(minutes=30),
        gateway_timeout: float = 10.0,
        webhook_secret: str | None = None,
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.catalog = catalog
        self.gateway = gateway
        self.notifier = notifier
        self.hours = hours or WorkingHours()
        self.scope = scope
        self.gateway_timeout = gateway_timeout
        self.webhook_secret = webhook_secret
        self._clock = clock

        self.holder = ReservationHolder(max_age=reservation_ttl, clock=clock)
        self.locks = ScopeLocks()
        self.confirmer = BookingConfirmer(
            session_factory,
            self.holder,
            gateway,
            notifier,
            self.locks,
            scope=scope,
            gateway_timeout=gateway_timeout,
            clock=clock,
        )
        self.reconciler = PaymentReconciler(self.confirmer, ledger) if ledger is not None else None

    async def get_available_slots(
        self,
        service_id: str,
        day: date,
        exclude_booking_id: str | None = None,
    ) -> list[str]:
        service = await self.catalog.get_service(service_id)
        async with self.session_factory() as db:
            return await available_slots(
                db, service, day, self.hours,
                exclude_booking_id=exclude_booking_id,
                scope=self.scope,
            )

    async def create_reservation(
        self,
        customer_id: str,
        service_id: str,
        provider_id: str | None,
        day: date,
        slot: str,
        amount: Decimal | None = None,
        currency: str = "usd",
        location: str = "salon",
        address: str | None = None,
    ) -> ReservationTicket:
        """
        Hold a slot and open a payment intent for it.

        The conflict check here only gives early feedback; confirm_reservation
        decides. amount defaults to the service's base price.
        """
        service: ServiceInfo = await self.catalog.get_service(service_id)
        if provider_id and provider_id != service.provider_id:
            raise InvalidRequestError("Service is not offered by this provider")
        check_location(location, address)

        start = parse_slot(day, slot)
        end = slot_end(start, service.duration_minutes)
        self.hours.validate(start, end)

        amount = service.base_price if amount is None else Decimal(str(amount))
        if amount <= 0:
            raise InvalidRequestError("amount must be positive")

        async with self.session_factory() as db:
            if await has_conflict(
                db, service.provider_id, service.service_id, start, end, scope=self.scope
            ):
                raise ConflictError()

        reservation_id = await self.holder.reserve(
            customer_id=customer_id,
            service_id=service.service_id,
            provider_id=service.provider_id,
            start=start,
            end=end,
            amount=amount,
            currency=currency.lower(),
            location=location,
            address=address,
            service_name=service.name,
        )
        reservation = await self.holder.retrieve(reservation_id)

        try:
            intent = await asyncio.wait_for(
                self.gateway.create_intent(amount, reservation.currency, reservation.to_metadata()),
                timeout=self.gateway_timeout,
            )
        except asyncio.TimeoutError:
            await self.holder.release(reservation_id)
            raise PaymentGatewayError("Timeout creating payment")
        except Exception:
            await self.holder.release(reservation_id)
            raise

        await self.holder.attach_intent(reservation_id, intent.intent_id)

        return ReservationTicket(
            reservation_id=reservation_id,
            payment_intent_id=intent.intent_id,
            client_secret=intent.client_secret,
            expires_at=self.holder.expires_at(reservation),
            start=start,
            end=end,
            amount=amount,
            currency=reservation.currency,
        )

    async def confirm_reservation(
        self,
        reservation_id: str,
        payment_intent_id: str,
        customer_id: str | None = None,
    ) -> Booking:
        return await self.confirmer.confirm(reservation_id, payment_intent_id, customer_id=customer_id)

    async def reschedule(self, booking_id: str, new_date: date, new_slot: str, caller: Caller) -> Booking:
        new_start = parse_slot(new_date, new_slot)
        return await reschedule_booking(
            self.session_factory,
            self.locks,
            self.notifier,
            booking_id,
            new_start,
            caller,
            hours=self.hours,
            scope=self.scope,
        )

    async def change_status(self, booking_id: str, status: BookingStatus, caller: Caller) -> Booking:
        return await change_status(
            self.session_factory, self.notifier, booking_id, status, caller, clock=self._clock
        )

    async def get_booking(self, booking_id: str, caller: Caller) -> Booking:
        return await get_booking(self.session_factory, booking_id, caller)

    async def payment_for(self, booking_id: str) -> Payment | None:
        return await payment_for(self.session_factory, booking_id)

    async def list_provider_bookings(self, caller: Caller, provider_id: str | None = None) -> list[Booking]:
        return await list_provider_bookings(self.session_factory, caller, provider_id)

    async def list_customer_bookings(self, caller: Caller) -> list[Booking]:
        return await list_customer_bookings(self.session_factory, caller)

    async def payment_history(self, caller: Caller) -> list[tuple[Payment, Booking]]:
        return await payment_history(self.session_factory, caller)

    async def handle_payment_event(self, payload: bytes, signature_header: str | None) -> str:
        """Verify and apply one gateway webhook delivery."""
        if self.reconciler is None:
            raise RuntimeError("Payment reconciliation requires REDIS_URL")

        verify_stripe_signature(payload, signature_header, self.webhook_secret)
        try:
            event = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise InvalidRequestError("Webhook body is not valid JSON")
        if not isinstance(event, dict):
            raise InvalidRequestError("Webhook body must be a JSON object")

        return await self.reconciler.handle_event(event)

    async def sweep_expired(self) -> list[str]:
        return await self.holder.sweep_expired()

    async def close(self) -> int:
        return await self.holder.drain()
