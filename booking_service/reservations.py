"""
In-memory holds on slots while the payment round-trip is in flight.

A reservation is never a conflict for anyone else: two customers may hold
overlapping reservations and the confirmation transaction decides between
them. Entries live only in this process; the essentials are also embedded in
the payment intent metadata so a webhook can rebuild a lost entry.
"""

import asyncio
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from dateutil import parser

from .errors import NotFoundError
from .intervals import as_utc


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


RESERVATION_TTL = timedelta(minutes=30)

_METADATA_FIELDS = (
    "reservation_id",
    "customer_id",
    "service_id",
    "provider_id",
    "start",
    "end",
    "amount",
    "currency",
    "location",
)


@dataclass
class Reservation:
    reservation_id: str
    customer_id: str
    service_id: str
    provider_id: str
    start: datetime
    end: datetime
    amount: Decimal
    currency: str
    location: str
    address: str | None = None
    service_name: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    payment_intent_id: str | None = None

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    def to_metadata(self) -> dict[str, str]:
        metadata = {
            "reservation_id": self.reservation_id,
            "customer_id": self.customer_id,
            "service_id": self.service_id,
            "provider_id": self.provider_id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "amount": str(self.amount),
            "currency": self.currency,
            "location": self.location,
        }
        if self.address:
            metadata["address"] = self.address
        if self.service_name:
            metadata["service_name"] = self.service_name
        return metadata

    @classmethod
    def from_metadata(cls, metadata: dict, payment_intent_id: str) -> "Reservation":
        """Rebuild a reservation from payment intent metadata; ValueError if incomplete."""
        missing = [k for k in _METADATA_FIELDS if not metadata.get(k)]
        if missing:
            raise ValueError(f"payment intent metadata missing {', '.join(missing)}")

        try:
            start = as_utc(parser.isoparse(metadata["start"]))
            end = as_utc(parser.isoparse(metadata["end"]))
            amount = Decimal(metadata["amount"])
        except (ArithmeticError, OverflowError) as e:
            raise ValueError(f"payment intent metadata is malformed: {e}")

        return cls(
            reservation_id=metadata["reservation_id"],
            customer_id=metadata["customer_id"],
            service_id=metadata["service_id"],
            provider_id=metadata["provider_id"],
            start=start,
            end=end,
            amount=amount,
            currency=metadata["currency"],
            location=metadata["location"],
            address=metadata.get("address"),
            service_name=metadata.get("service_name"),
            payment_intent_id=payment_intent_id,
        )


class ReservationHolder:
    def __init__(self, max_age: timedelta = RESERVATION_TTL, clock=utcnow):
        self.max_age = max_age
        self._clock = clock
        self._entries: dict[str, Reservation] = {}
        self._in_flight: set[str] = set()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, reservation: Reservation, max_age: timedelta | None = None) -> bool:
        return self._clock() - reservation.created_at >= (max_age or self.max_age)

    def expires_at(self, reservation: Reservation) -> datetime:
        return reservation.created_at + self.max_age

    async def reserve(
        self,
        customer_id: str,
        service_id: str,
        provider_id: str,
        start: datetime,
        end: datetime,
        amount: Decimal,
        currency: str,
        location: str,
        address: str | None = None,
        service_name: str | None = None,
    ) -> str:
        reservation_id = f"res_{uuid.uuid4().hex}"
        reservation = Reservation(
            reservation_id=reservation_id,
            customer_id=customer_id,
            service_id=service_id,
            provider_id=provider_id,
            start=start,
            end=end,
            amount=amount,
            currency=currency,
            location=location,
            address=address,
            service_name=service_name,
            created_at=self._clock(),
        )
        async with self._lock:
            self._entries[reservation_id] = reservation
        return reservation_id

    async def attach_intent(self, reservation_id: str, payment_intent_id: str):
        async with self._lock:
            reservation = self._entries.get(reservation_id)
            if reservation is None:
                raise NotFoundError("reservation")
            reservation.payment_intent_id = payment_intent_id

    async def retrieve(self, reservation_id: str) -> Reservation:
        async with self._lock:
            return replace(self._get_fresh(reservation_id))

    async def claim(self, reservation_id: str) -> Reservation:
        """
        Take exclusive use of a reservation for one confirmation attempt.

        A second claim while the first is in flight sees the reservation as gone.
        """
        async with self._lock:
            if reservation_id in self._in_flight:
                raise NotFoundError("reservation")
            reservation = self._get_fresh(reservation_id)
            self._in_flight.add(reservation_id)
            return replace(reservation)

    async def unclaim(self, reservation_id: str):
        async with self._lock:
            self._in_flight.discard(reservation_id)

    async def release(self, reservation_id: str):
        async with self._lock:
            self._entries.pop(reservation_id, None)
            self._in_flight.discard(reservation_id)

    async def sweep_expired(self, max_age: timedelta | None = None) -> list[str]:
        async with self._lock:
            expired = [
                rid for rid, res in self._entries.items()
                if rid not in self._in_flight and self._expired(res, max_age)
            ]
            for rid in expired:
                del self._entries[rid]
        return expired

    async def drain(self) -> int:
        async with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._in_flight.clear()
        return count

    def _get_fresh(self, reservation_id: str) -> Reservation:
        # caller holds self._lock
        reservation = self._entries.get(reservation_id)
        if reservation is None:
            raise NotFoundError("reservation")
        if reservation_id not in self._in_flight and self._expired(reservation):
            del self._entries[reservation_id]
            raise NotFoundError("reservation")
        return reservation
