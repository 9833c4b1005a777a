import json
import logging
from redis.asyncio import Redis, from_url as redis_from_url
from hospital_scheduling.platform.ports.event_bus import EventBusPort
from hospital_scheduling.core.config import settings

log = logging.getLogger("bus.redis")

class RedisEventBus(EventBusPort):
    """Appends scheduling events to a Redis stream, optionally one stream per hospital."""

    def __init__(self, client: Redis | None = None):
        if client is None:
            if not settings.REDIS_URL:
                raise RuntimeError("REDIS_URL not configured")
            client = redis_from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
        self.redis = client
        self.stream = settings.REDIS_STREAM or "scheduling.events"

    def stream_for(self, headers: dict) -> str:
        hospital = headers.get("hospital_id")
        if settings.REDIS_STREAM_PER_HOSPITAL and hospital:
            return f"{self.stream}:{hospital}"
        return self.stream

    async def publish(self, topic: str, key: str, value: dict, headers: dict | None = None) -> None:
        headers = headers or {}
        stream = self.stream_for(headers)
        entry = {
            "topic": topic,
            "key": key,
            "event_type": headers.get("event_type") or value.get("event_type", ""),
            "value": json.dumps(value, default=str),
            "headers": json.dumps(headers),
        }
        entry_id = await self.redis.xadd(stream, entry, maxlen=settings.REDIS_STREAM_MAXLEN, approximate=True)
        log.debug("XADD stream=%s id=%s event=%s key=%s", stream, entry_id, entry["event_type"], key)

    async def close(self) -> None:
        await self.redis.aclose()
