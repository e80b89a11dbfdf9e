import asyncio
import logging

from .config import SERVICE_NAME

logger = logging.getLogger(__name__)


async def expiry_loop(holder, stop_event: asyncio.Event, interval_seconds: float = 300.0):
    while not stop_event.is_set():
        expired = await holder.sweep_expired()
        if expired:
            logger.info("[%s] swept %d expired reservations", SERVICE_NAME, len(expired))
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue
