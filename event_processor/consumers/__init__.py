"""Consumers: named event handlers and the registry the run loop dispatches through."""

from event_processor.consumers.cold_agent_enroller import ColdAgentEnroller
from event_processor.consumers.contract import Consumer, ConsumerError
from event_processor.consumers.registry import ConsumerRegistry
from event_processor.crm.repository import CrmRepository
from event_processor.events.bus import EventBusClient


def build_registry(bus: EventBusClient, crm: CrmRepository) -> ConsumerRegistry:
    """Registry with every built-in consumer wired to bus and crm."""
    registry = ConsumerRegistry()
    registry.register(ColdAgentEnroller(bus, crm))
    return registry


__all__ = [
    "ColdAgentEnroller",
    "Consumer",
    "ConsumerError",
    "ConsumerRegistry",
    "build_registry",
]
