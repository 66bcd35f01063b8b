"""Consumer protocol: one named handler bound to one event type."""

from typing import Protocol, runtime_checkable

from event_processor.events.models import Event


class ConsumerError(Exception):
    """Expected per-event failure. The run loop marks the event failed and moves on."""


@runtime_checkable
class Consumer(Protocol):
    """Processes one claimed event.

    Implementations must be idempotent: an event can be delivered again after a
    release, a stale reclaim or a retry.
    """

    @property
    def name(self) -> str:
        """Registry key, e.g. 'cold_agent_enroller'."""

    @property
    def event_type(self) -> str:
        """The event type this consumer handles."""

    async def process(self, event: Event) -> str:
        """Apply side effects for event. Return a short effect label; raise on failure."""
