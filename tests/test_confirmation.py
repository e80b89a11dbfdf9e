import asyncio
import random
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from booking_service.errors import (
    ConflictError,
    InvalidRequestError,
    InvalidSlotError,
    NotFoundError,
    PaymentGatewayError,
    PaymentNotCompleted,
)
from booking_service.gateway import MockPaymentGateway
from booking_service.intervals import overlaps
from booking_service.models import Booking, Payment
from booking_service.states import BookingPaymentStatus, BookingStatus, PaymentStatus

from .conftest import MONDAY


async def all_rows(session_factory, model):
    async with session_factory() as db:
        res = await db.execute(select(model))
        return res.scalars().all()


async def test_confirm_creates_booking_and_payment(core, session_factory):
    ticket = await core.create_reservation("cust-1", "svc-cut", "prov-1", MONDAY, "10:00")
    booking = await core.confirm_reservation(ticket.reservation_id, ticket.payment_intent_id)

    assert booking.status == BookingStatus.CONFIRMED
    assert booking.payment_status == BookingPaymentStatus.PAID
    assert booking.confirmed_at is not None
    assert booking.duration_minutes == 60
    assert booking.total_price == Decimal("50.00")

    payments = await all_rows(session_factory, Payment)
    assert len(payments) == 1
    assert payments[0].booking_id == booking.booking_id
    assert payments[0].status == PaymentStatus.PAID
    assert payments[0].external_payment_reference == ticket.payment_intent_id

    with pytest.raises(NotFoundError):
        await core.holder.retrieve(ticket.reservation_id)


async def test_reservation_is_embedded_in_intent(core, gateway):
    ticket = await core.create_reservation("cust-1", "svc-cut", None, MONDAY, "11:00")

    intent = gateway.intent(ticket.payment_intent_id)
    assert intent["metadata"]["reservation_id"] == ticket.reservation_id
    assert intent["metadata"]["provider_id"] == "prov-1"
    assert intent["amount"] == 5000


async def test_confirming_unknown_reservation(core):
    with pytest.raises(NotFoundError):
        await core.confirm_reservation("res_missing", "mock_pi_missing")


async def test_second_confirm_does_not_duplicate(core, session_factory):
    ticket = await core.create_reservation("cust-1", "svc-cut", None, MONDAY, "10:00")
    await core.confirm_reservation(ticket.reservation_id, ticket.payment_intent_id)

    with pytest.raises(NotFoundError):
        await core.confirm_reservation(ticket.reservation_id, ticket.payment_intent_id)

    assert len(await all_rows(session_factory, Booking)) == 1
    assert len(await all_rows(session_factory, Payment)) == 1


async def test_concurrent_confirms_for_same_slot(core, session_factory):
    first = await core.create_reservation("cust-1", "svc-cut", None, MONDAY, "10:00")
    second = await core.create_reservation("cust-2", "svc-cut", None, MONDAY, "10:00")

    results = await asyncio.gather(
        core.confirm_reservation(first.reservation_id, first.payment_intent_id),
        core.confirm_reservation(second.reservation_id, second.payment_intent_id),
        return_exceptions=True,
    )

    bookings = [r for r in results if isinstance(r, Booking)]
    conflicts = [r for r in results if isinstance(r, ConflictError)]
    assert len(bookings) == 1
    assert len(conflicts) == 1
    assert len(await all_rows(session_factory, Booking)) == 1


async def test_concurrent_duplicate_confirm_of_one_reservation(core, session_factory):
    ticket = await core.create_reservation("cust-1", "svc-cut", None, MONDAY, "10:00")

    results = await asyncio.gather(
        core.confirm_reservation(ticket.reservation_id, ticket.payment_intent_id),
        core.confirm_reservation(ticket.reservation_id, ticket.payment_intent_id),
        return_exceptions=True,
    )

    assert sum(isinstance(r, Booking) for r in results) == 1
    assert sum(isinstance(r, NotFoundError) for r in results) == 1
    assert len(await all_rows(session_factory, Payment)) == 1


async def test_confirmed_bookings_never_overlap(core, session_factory):
    rng = random.Random(7)
    tickets = []
    for i in range(12):
        service_id = rng.choice(["svc-cut", "svc-color"])
        slots = await core.get_available_slots(service_id, MONDAY)
        slot = rng.choice(slots or ["09:00"])
        try:
            tickets.append(await core.create_reservation(f"cust-{i}", service_id, None, MONDAY, slot))
        except ConflictError:
            continue

    rng.shuffle(tickets)
    await asyncio.gather(
        *(core.confirm_reservation(t.reservation_id, t.payment_intent_id) for t in tickets),
        return_exceptions=True,
    )

    bookings = [b for b in await all_rows(session_factory, Booking) if b.provider_id == "prov-1"]
    assert bookings
    for i, a in enumerate(bookings):
        for b in bookings[i + 1:]:
            assert not overlaps(a.start_at, a.end_at, b.start_at, b.end_at)


async def test_conflict_releases_reservation(core, book):
    ticket = await core.create_reservation("cust-2", "svc-cut", None, MONDAY, "10:00")
    await book("cust-1", "svc-color", "09:30")

    with pytest.raises(ConflictError):
        await core.confirm_reservation(ticket.reservation_id, ticket.payment_intent_id)
    with pytest.raises(NotFoundError):
        await core.holder.retrieve(ticket.reservation_id)


async def test_unpaid_intent_is_rejected(core, gateway, session_factory):
    ticket = await core.create_reservation("cust-1", "svc-cut", None, MONDAY, "10:00")
    gateway.decline(ticket.payment_intent_id)

    with pytest.raises(PaymentNotCompleted):
        await core.confirm_reservation(ticket.reservation_id, ticket.payment_intent_id)

    assert await all_rows(session_factory, Booking) == []
    # the hold survives so the customer can pay again
    assert (await core.holder.retrieve(ticket.reservation_id)).reservation_id == ticket.reservation_id


async def test_intent_from_another_reservation_is_rejected(core):
    first = await core.create_reservation("cust-1", "svc-cut", None, MONDAY, "10:00")
    second = await core.create_reservation("cust-1", "svc-cut", None, MONDAY, "12:00")

    with pytest.raises(PaymentNotCompleted):
        await core.confirm_reservation(first.reservation_id, second.payment_intent_id)


async def test_other_customer_cannot_confirm(core):
    ticket = await core.create_reservation("cust-1", "svc-cut", None, MONDAY, "10:00")

    with pytest.raises(NotFoundError):
        await core.confirm_reservation(ticket.reservation_id, ticket.payment_intent_id, customer_id="cust-2")
    booking = await core.confirm_reservation(ticket.reservation_id, ticket.payment_intent_id, customer_id="cust-1")
    assert booking.customer_id == "cust-1"


async def test_expired_reservation_cannot_be_confirmed(core):
    ticket = await core.create_reservation("cust-1", "svc-cut", None, MONDAY, "10:00")
    core.holder.max_age = timedelta(0)

    with pytest.raises(NotFoundError):
        await core.confirm_reservation(ticket.reservation_id, ticket.payment_intent_id)


class SlowGateway(MockPaymentGateway):
    async def verify_intent(self, intent_id):
        await asyncio.sleep(1)
        return await super().verify_intent(intent_id)


async def test_gateway_timeout_keeps_reservation(core):
    core.gateway = core.confirmer.gateway = SlowGateway()
    core.confirmer.gateway_timeout = 0.05
    ticket = await core.create_reservation("cust-1", "svc-cut", None, MONDAY, "10:00")

    with pytest.raises(PaymentGatewayError):
        await core.confirm_reservation(ticket.reservation_id, ticket.payment_intent_id)
    assert (await core.holder.claim(ticket.reservation_id)).reservation_id == ticket.reservation_id


async def test_confirmation_notifies_provider_and_admins(core, publisher):
    ticket = await core.create_reservation("cust-1", "svc-cut", None, MONDAY, "10:00")
    booking = await core.confirm_reservation(ticket.reservation_id, ticket.payment_intent_id)

    [to_provider] = publisher.of_type("booking_confirmation")
    assert to_provider["receiver_id"] == "prov-1"
    assert to_provider["data"]["booking_id"] == booking.booking_id

    [to_admins] = publisher.of_type("admin_booking_alert")
    assert to_admins["receiver_role"] == "admin"

    assert publisher.events("booking.confirmed")[0]["booking_id"] == booking.booking_id


async def test_publish_failure_does_not_undo_booking(core, publisher, session_factory):
    async def broken(routing_key, message_body):
        raise RuntimeError("broker down")

    publisher.publish = broken
    ticket = await core.create_reservation("cust-1", "svc-cut", None, MONDAY, "10:00")
    await core.confirm_reservation(ticket.reservation_id, ticket.payment_intent_id)

    assert len(await all_rows(session_factory, Booking)) == 1


async def test_reservation_precheck_reports_conflict(core, book):
    await book("cust-1", "svc-cut", "10:00")

    with pytest.raises(ConflictError):
        await core.create_reservation("cust-2", "svc-cut", None, MONDAY, "10:00")


async def test_reservation_validation(core):
    with pytest.raises(InvalidSlotError):
        await core.create_reservation("cust-1", "svc-cut", None, MONDAY, "17:30")
    with pytest.raises(InvalidRequestError):
        await core.create_reservation("cust-1", "svc-cut", "prov-2", MONDAY, "10:00")
    with pytest.raises(InvalidRequestError):
        await core.create_reservation("cust-1", "svc-cut", None, MONDAY, "10:00", location="home")
    with pytest.raises(InvalidRequestError):
        await core.create_reservation("cust-1", "svc-cut", None, MONDAY, "10:00", location="park")
    assert len(core.holder) == 0
