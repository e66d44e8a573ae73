import json
import logging
from redis.asyncio import from_url as redis_from_url
from consentvault.platform.ports.event_bus import EventBusPort
from consentvault.core.config import settings

log = logging.getLogger("bus.redis")

class RedisEventBus(EventBusPort):
    def __init__(self):
        if not settings.REDIS_URL:
            raise RuntimeError("REDIS_URL not configured")
        self.redis = redis_from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
        self.stream = settings.REDIS_STREAM or "consent.events"

    async def publish(self, topic: str, key: str, value: dict, headers: dict | None = None) -> None:
        entry = {
            "topic": topic,
            "key": key,
            "event_type": value.get("event_type", "-"),
            "value": json.dumps(value),
            "headers": json.dumps(headers or {}),
        }
        await self.redis.xadd(self.stream, entry, maxlen=settings.REDIS_STREAM_MAXLEN, approximate=True)
        log.debug("[REDIS BUS] XADD stream=%s topic=%s key=%s", self.stream, topic, key)

    async def close(self) -> None:
        await self.redis.aclose()
