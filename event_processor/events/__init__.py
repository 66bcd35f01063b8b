"""Event bus: durable event store with claim semantics and the client used by consumers."""

from event_processor.events.bus import EventBusClient, TenantConfigSource
from event_processor.events.models import (
    AutopilotMode,
    ClaimResult,
    EmitRequest,
    EmitResult,
    Event,
    EventStatus,
    FailureResult,
)
from event_processor.events.store import EventStore
from event_processor.events.types import EventTypes

__all__ = [
    "AutopilotMode",
    "ClaimResult",
    "EmitRequest",
    "EmitResult",
    "Event",
    "EventBusClient",
    "EventStatus",
    "EventStore",
    "EventTypes",
    "FailureResult",
    "TenantConfigSource",
]
