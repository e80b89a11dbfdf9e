import logging

from marketplace_shared.events import build_event, to_json

from .config import SERVICE_NAME

logger = logging.getLogger(__name__)

NOTIFICATION_ROUTING_KEY = "notification.requested"


class Notifier:
    """
    Fire-and-forget notification requests and domain events.

    Delivery belongs to the notification service; nothing here raises.
    """

    def __init__(self, publisher):
        self.publisher = publisher

    async def notify(
        self,
        sender_id: str,
        receiver_id: str,
        message: str,
        notification_type: str,
        data: dict | None = None,
    ):
        await self._publish(
            NOTIFICATION_ROUTING_KEY,
            {
                "sender_id": sender_id,
                "receiver_id": receiver_id,
                "message": message,
                "type": notification_type,
                "data": data or {},
            },
        )

    async def notify_role(
        self,
        sender_id: str,
        role: str,
        message: str,
        notification_type: str,
        data: dict | None = None,
    ):
        await self._publish(
            NOTIFICATION_ROUTING_KEY,
            {
                "sender_id": sender_id,
                "receiver_role": role,
                "message": message,
                "type": notification_type,
                "data": data or {},
            },
        )

    async def publish_event(self, event_type: str, data: dict):
        await self._publish(event_type, data)

    async def _publish(self, routing_key: str, data: dict):
        try:
            await self.publisher.publish(routing_key, to_json(build_event(routing_key, data)))
        except Exception:
            logger.exception("[%s] failed to publish %s", SERVICE_NAME, routing_key)
