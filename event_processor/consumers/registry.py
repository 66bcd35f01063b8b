"""ConsumerRegistry: explicit consumer name -> consumer mapping."""

import logging

from event_processor.consumers.contract import Consumer

logger = logging.getLogger(__name__)


class ConsumerRegistry:
    """Holds consumers by name. Lookups of unknown names return None."""

    def __init__(self) -> None:
        self._consumers: dict[str, Consumer] = {}

    def register(self, consumer: Consumer) -> None:
        if not isinstance(consumer, Consumer):
            raise TypeError(f"{consumer!r} does not implement the Consumer protocol")
        if consumer.name in self._consumers:
            raise ValueError(f"Consumer {consumer.name!r} is already registered")
        self._consumers[consumer.name] = consumer
        logger.debug("registry: %s -> %s", consumer.name, consumer.event_type)

    def get(self, name: str) -> Consumer | None:
        return self._consumers.get(name)

    def names(self) -> list[str]:
        return sorted(self._consumers)

    def __contains__(self, name: object) -> bool:
        return name in self._consumers

    def __len__(self) -> int:
        return len(self._consumers)
