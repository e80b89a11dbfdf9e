"""
Reservation -> confirmed Booking + paid Payment.

BookingConfirmer is the only writer of paid bookings. The conflict re-check,
the Booking insert and the Payment insert run in one transaction while the
calendar's scope lock is held, so two overlapping confirmations cannot both
commit.
"""

import asyncio
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .conflicts import PROVIDER_SCOPE, has_conflict, scope_key
from .config import SERVICE_NAME
from .errors import ConflictError, NotFoundError, PaymentGatewayError, PaymentNotCompleted
from .gateway import IntentStatus, to_minor_units
from .intervals import format_minutes, minutes_into_day
from .locking import ScopeLocks, lock_scope_in_transaction
from .models import Booking, Payment
from .rbac import ADMIN_ROLE
from .reservations import Reservation, ReservationHolder, utcnow
from .states import BookingPaymentStatus, BookingStatus, PaymentStatus

logger = logging.getLogger(__name__)


def booking_summary(booking: Booking) -> dict:
    return {
        "booking_id": booking.booking_id,
        "service_id": booking.service_id,
        "provider_id": booking.provider_id,
        "customer_id": booking.customer_id,
        "start_at": booking.start_at.isoformat(),
        "end_at": booking.end_at.isoformat(),
        "status": booking.status.value,
        "total_price": str(booking.total_price),
        "currency": booking.currency,
    }


def describe_slot(booking: Booking) -> str:
    day = booking.start_at.date()
    return f"{day.isoformat()} at {format_minutes(minutes_into_day(day, booking.start_at))}"


class BookingConfirmer:
    def __init__(
        self,
        session_factory,
        holder: ReservationHolder,
        gateway,
        notifier,
        locks: ScopeLocks,
        *,
        scope: str = PROVIDER_SCOPE,
        gateway_timeout: float = 10.0,
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.holder = holder
        self.gateway = gateway
        self.notifier = notifier
        self.locks = locks
        self.scope = scope
        self.gateway_timeout = gateway_timeout
        self._clock = clock

    async def confirm(self, reservation_id: str, payment_intent_id: str, customer_id: str | None = None) -> Booking:
        # a second confirm of the same reservation finds it gone
        reservation = await self.holder.claim(reservation_id)

        try:
            if customer_id is not None and reservation.customer_id != customer_id:
                raise NotFoundError("reservation")
            await self._verify_payment(reservation, payment_intent_id)
            booking, created = await self._commit(reservation, payment_intent_id)
        except ConflictError:
            await self.holder.release(reservation_id)
            raise
        else:
            await self.holder.release(reservation_id)
        finally:
            await self.holder.unclaim(reservation_id)

        if created:
            await self._announce(booking)
        return booking

    async def confirm_recovered(self, reservation: Reservation, payment_intent_id: str) -> tuple[Booking, bool]:
        """
        Confirm from a reservation rebuilt out of gateway records.

        Returns (booking, created); created is False when the payment was
        already recorded. A hold still live in the holder is left for the
        client's own confirm, which finds this booking by payment reference
        and releases it.
        """
        await self._verify_payment(reservation, payment_intent_id)
        booking, created = await self._commit(reservation, payment_intent_id)
        if created:
            await self._announce(booking)
        return booking, created

    async def find_by_reference(self, payment_intent_id: str) -> Booking | None:
        async with self.session_factory() as db:
            return await self._booking_for_reference(db, payment_intent_id)

    async def _verify_payment(self, reservation: Reservation, payment_intent_id: str):
        if reservation.payment_intent_id and reservation.payment_intent_id != payment_intent_id:
            raise PaymentNotCompleted("payment does not belong to this reservation")

        try:
            status = await asyncio.wait_for(
                self.gateway.verify_intent(payment_intent_id),
                timeout=self.gateway_timeout,
            )
        except asyncio.TimeoutError:
            raise PaymentGatewayError("Timeout verifying payment")

        self._check_intent(reservation, status)

    @staticmethod
    def _check_intent(reservation: Reservation, status: IntentStatus):
        if not status.succeeded:
            raise PaymentNotCompleted()

        owner = status.metadata.get("reservation_id")
        if owner and owner != reservation.reservation_id:
            raise PaymentNotCompleted("payment does not belong to this reservation")

        if status.amount_minor is not None:
            if status.amount_minor != to_minor_units(reservation.amount, reservation.currency):
                raise PaymentNotCompleted("payment amount does not match the reservation")
        if status.currency and status.currency.lower() != reservation.currency.lower():
            raise PaymentNotCompleted("payment currency does not match the reservation")

    async def _commit(self, reservation: Reservation, payment_intent_id: str) -> tuple[Booking, bool]:
        key = scope_key(self.scope, reservation.provider_id, reservation.service_id)

        async with self.locks.hold(key):
            try:
                return await self._insert(reservation, payment_intent_id, key)
            except IntegrityError:
                # lost a race to another worker: same payment, or an overlapping row
                existing = await self.find_by_reference(payment_intent_id)
                if existing is not None:
                    return existing, False
                raise ConflictError()

    async def _insert(self, reservation: Reservation, payment_intent_id: str, key: str) -> tuple[Booking, bool]:
        async with self.session_factory() as db:
            async with db.begin():
                await lock_scope_in_transaction(db, key)

                existing = await self._booking_for_reference(db, payment_intent_id)
                if existing is not None:
                    return existing, False

                if await has_conflict(
                    db,
                    reservation.provider_id,
                    reservation.service_id,
                    reservation.start,
                    reservation.end,
                    scope=self.scope,
                ):
                    raise ConflictError()

                now = self._clock()
                booking = Booking(
                    booking_id=f"bk_{uuid.uuid4().hex}",
                    reservation_id=reservation.reservation_id,
                    service_id=reservation.service_id,
                    provider_id=reservation.provider_id,
                    customer_id=reservation.customer_id,
                    service_name=reservation.service_name,
                    start_at=reservation.start,
                    end_at=reservation.end,
                    duration_minutes=reservation.duration_minutes,
                    status=BookingStatus.CONFIRMED,
                    payment_status=BookingPaymentStatus.PAID,
                    total_price=reservation.amount,
                    currency=reservation.currency,
                    location=reservation.location,
                    address=reservation.address,
                    confirmed_at=now,
                )
                db.add(booking)
                await db.flush()

                db.add(
                    Payment(
                        payment_id=f"pay_{uuid.uuid4().hex}",
                        booking_id=booking.booking_id,
                        customer_id=reservation.customer_id,
                        provider_id=reservation.provider_id,
                        service_id=reservation.service_id,
                        amount=reservation.amount,
                        currency=reservation.currency,
                        status=PaymentStatus.PAID,
                        payment_method=getattr(self.gateway, "method_name", "stripe"),
                        external_payment_reference=payment_intent_id,
                        paid_at=now,
                    )
                )

        logger.info(
            "[%s] booking %s confirmed for provider %s (%s)",
            SERVICE_NAME, booking.booking_id, booking.provider_id, payment_intent_id,
        )
        return booking, True

    @staticmethod
    async def _booking_for_reference(db, payment_intent_id: str) -> Booking | None:
        stmt = (
            select(Booking)
            .join(Payment, Payment.booking_id == Booking.booking_id)
            .where(Payment.external_payment_reference == payment_intent_id)
        )
        res = await db.execute(stmt)
        return res.scalar_one_or_none()

    async def _announce(self, booking: Booking):
        data = booking_summary(booking)
        service = booking.service_name or "your service"
        when = describe_slot(booking)

        await self.notifier.notify(
            booking.customer_id,
            booking.provider_id,
            f"New booking for {service} on {when}",
            "booking_confirmation",
            data,
        )
        await self.notifier.notify_role(
            booking.customer_id,
            ADMIN_ROLE,
            f"Booking {booking.booking_id} confirmed for {service} on {when}",
            "admin_booking_alert",
            data,
        )
        await self.notifier.publish_event("booking.confirmed", data)
