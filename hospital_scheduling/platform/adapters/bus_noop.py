import json
import logging
from hospital_scheduling.platform.ports.event_bus import EventBusPort

log = logging.getLogger("bus.noop")

class NoopEventBus(EventBusPort):
    def __init__(self):
        # last published messages, handy when nothing downstream consumes them
        self.published: list[dict] = []

    async def publish(self, topic: str, key: str, value: dict, headers: dict | None = None) -> None:
        self.published.append({"topic": topic, "key": key, "value": value, "headers": headers or {}})
        del self.published[:-100]
        log.info(f"[NOOP BUS] topic={topic} key={key} value={json.dumps(value)} headers={headers or {}}")
