PROCESSED_TTL_SECONDS = 86400


def processed_key(event_id: str) -> str:
    return f"processed_event:{event_id}"


class EventLedger:
    """
    Redis-backed record of processed event ids.

    claim() is a single SET NX so two replays racing each other cannot both win.
    """

    def __init__(self, redis_client, ttl_seconds: int = PROCESSED_TTL_SECONDS):
        self._redis = redis_client
        self.ttl_seconds = ttl_seconds

    async def claim(self, event_id: str) -> bool:
        ok = await self._redis.set(processed_key(event_id), "1", ex=self.ttl_seconds, nx=True)
        return bool(ok)

    async def forget(self, event_id: str):
        await self._redis.delete(processed_key(event_id))
