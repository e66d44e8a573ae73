from consentvault.core.config import settings
from consentvault.platform.ports.event_bus import EventBusPort
from consentvault.platform.adapters.bus_noop import NoopEventBus

class ProviderRegistry:
    _event_bus: EventBusPort | None = None

    @classmethod
    def event_bus(cls) -> EventBusPort:
        if cls._event_bus is None:
            prov = (settings.EVENT_BUS_PROVIDER or "noop").lower()
            if prov == "redis":
                from consentvault.platform.adapters.bus_redis import RedisEventBus
                cls._event_bus = RedisEventBus()
            elif prov == "noop":
                cls._event_bus = NoopEventBus()
            else:
                raise RuntimeError(f"Unknown EVENT_BUS_PROVIDER: {settings.EVENT_BUS_PROVIDER}")
        return cls._event_bus

    @classmethod
    def use_event_bus(cls, bus: EventBusPort | None) -> None:
        cls._event_bus = bus

    @classmethod
    async def close(cls) -> None:
        if cls._event_bus is not None:
            await cls._event_bus.close()
            cls._event_bus = None

registry = ProviderRegistry()
