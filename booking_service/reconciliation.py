"""
Gateway webhook replay.

If the process dies between a captured charge and the confirmation commit,
the in-memory reservation is gone but the payment intent still carries the
reservation's fields in its metadata. The gateway's payment_intent.succeeded
webhook rebuilds the reservation from there and runs the same confirmation.
"""

import logging

from marketplace_shared.idempotency import EventLedger

from .config import SERVICE_NAME
from .confirmation import BookingConfirmer
from .errors import ConflictError, PaymentNotCompleted
from .reservations import Reservation

logger = logging.getLogger(__name__)

INTENT_SUCCEEDED = "payment_intent.succeeded"
INTENT_FAILED = "payment_intent.payment_failed"

DUPLICATE = "duplicate"
IGNORED = "ignored"
CONFIRMED = "confirmed"
ALREADY_CONFIRMED = "already_confirmed"
CONFLICT = "conflict"
REJECTED = "rejected"


class PaymentReconciler:
    def __init__(self, confirmer: BookingConfirmer, ledger: EventLedger):
        self.confirmer = confirmer
        self.ledger = ledger

    async def handle_event(self, event: dict) -> str:
        event_id = event.get("id")
        event_type = event.get("type")
        intent = ((event.get("data") or {}).get("object")) or {}
        intent_id = intent.get("id")

        if not event_id or not intent_id:
            return IGNORED

        if not await self.ledger.claim(event_id):
            return DUPLICATE

        if event_type == INTENT_FAILED:
            logger.info("[%s] payment %s failed at the gateway", SERVICE_NAME, intent_id)
            return IGNORED
        if event_type != INTENT_SUCCEEDED:
            return IGNORED

        try:
            return await self._reconcile(intent_id, intent.get("metadata") or {})
        except Exception:
            # let the gateway's retry of this event through
            await self.ledger.forget(event_id)
            raise

    async def _reconcile(self, intent_id: str, metadata: dict) -> str:
        if await self.confirmer.find_by_reference(intent_id) is not None:
            return ALREADY_CONFIRMED

        try:
            reservation = Reservation.from_metadata(metadata, payment_intent_id=intent_id)
        except ValueError as e:
            logger.warning("[%s] payment %s cannot be reconciled: %s", SERVICE_NAME, intent_id, e)
            return IGNORED

        try:
            booking, created = await self.confirmer.confirm_recovered(reservation, intent_id)
        except ConflictError:
            logger.warning(
                "[%s] payment %s captured but slot is taken (reservation %s); refund required",
                SERVICE_NAME, intent_id, reservation.reservation_id,
            )
            return CONFLICT
        except PaymentNotCompleted as e:
            logger.warning("[%s] payment %s rejected during reconciliation: %s", SERVICE_NAME, intent_id, e.detail)
            return REJECTED

        if created:
            logger.info("[%s] recovered booking %s from payment %s", SERVICE_NAME, booking.booking_id, intent_id)
            return CONFIRMED
        return ALREADY_CONFIRMED
