"""Event model and bus result types."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

__all__ = [
    "AutopilotMode",
    "ClaimResult",
    "EmitRequest",
    "EmitResult",
    "Event",
    "EventStatus",
    "FailureResult",
]


class EventStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"


class AutopilotMode(str, Enum):
    """Per-tenant automation level. MANUAL is the conservative fallback."""

    MANUAL = "MANUAL"
    ASSISTED = "ASSISTED"
    FULL = "FULL"


@dataclass(frozen=True)
class Event:
    """Immutable event passed to consumers."""

    id: str
    event_type: str
    entity_type: str
    entity_id: str
    payload: dict[str, Any]
    status: str = EventStatus.PENDING.value
    attempts: int = 0
    tenant_id: str | None = None
    idempotency_key: str | None = None
    emitted_by: str | None = None
    created_at: float = 0.0
    # Status the event had before the current claim (pending, failed or a stale processing)
    claimed_from: str | None = None


@dataclass(frozen=True)
class EmitRequest:
    """Arguments for emitting a new event onto the bus."""

    event_type: str
    entity_type: str
    entity_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    emitted_by: str | None = None
    tenant_id: str | None = None
    idempotency_key: str | None = None


@dataclass(frozen=True)
class EmitResult:
    """Outcome of an insert. duplicate=True when the idempotency key already existed."""

    event_id: str
    duplicate: bool = False


@dataclass(frozen=True)
class ClaimResult:
    """Claimed batch, or an error string when the store could not be reached."""

    events: list[Event] = field(default_factory=list)
    error: str | None = None


@dataclass(frozen=True)
class FailureResult:
    """Outcome of mark_failed."""

    dead_lettered: bool
    attempts: int = 0
    next_attempt_at: float | None = None
