"""Event bus client: the claim/mark/emit surface used by the run loop and consumers."""

import logging
from typing import Protocol, runtime_checkable

from event_processor.events.models import (
    AutopilotMode,
    ClaimResult,
    EmitRequest,
    EmitResult,
    FailureResult,
)
from event_processor.events.store import EventStore

logger = logging.getLogger(__name__)


@runtime_checkable
class TenantConfigSource(Protocol):
    """Read-only per-tenant configuration."""

    async def fetch_autopilot_mode(self, tenant_id: str) -> str | None:
        """Raw autopilot mode value for tenant, or None when not configured."""


class EventBusClient:
    """Thin wrapper over EventStore plus the tenant autopilot configuration."""

    def __init__(self, store: EventStore, tenant_config: TenantConfigSource | None = None) -> None:
        self._store = store
        self._tenant_config = tenant_config

    @property
    def store(self) -> EventStore:
        return self._store

    async def claim_events(self, consumer_name: str, event_type: str, limit: int) -> ClaimResult:
        """Claim up to limit events. Store failures come back as ClaimResult.error, not raised."""
        try:
            events = await self._store.claim(consumer_name, event_type, limit)
        except Exception as e:
            logger.exception(
                "event_bus: claim failed for %s:%s: %s", consumer_name, event_type, e
            )
            return ClaimResult(events=[], error=str(e) or type(e).__name__)
        return ClaimResult(events=events)

    async def mark_processed(self, event_id: str, consumer_name: str) -> None:
        """processing -> processed. Calling it twice is harmless."""
        updated = await self._store.mark_processed(event_id, consumer_name)
        if not updated:
            logger.debug("event_bus: %s already left processing, mark_processed no-op", event_id)

    async def mark_failed(
        self, event_id: str, consumer_name: str, error_message: str
    ) -> FailureResult:
        return await self._store.mark_failed(event_id, consumer_name, error_message)

    async def release_events(self, event_ids: list[str], refund_attempt: bool = False) -> int:
        """Hand claimed events back to pending.

        refund_attempt=True also takes back the attempt the claim counted, for
        events that were never dispatched to their consumer.
        """
        return await self._store.release(list(event_ids), refund_attempt=refund_attempt)

    async def emit_event(self, request: EmitRequest) -> EmitResult:
        """Insert a pending event. A repeated idempotency key is success, not a new row."""
        result = await self._store.insert(
            event_type=request.event_type,
            entity_type=request.entity_type,
            entity_id=request.entity_id,
            payload=dict(request.payload),
            emitted_by=request.emitted_by,
            tenant_id=request.tenant_id,
            idempotency_key=request.idempotency_key,
        )
        if result.duplicate:
            logger.info(
                "event_bus: %s coalesced into existing event %s (key=%s)",
                request.event_type,
                result.event_id,
                request.idempotency_key,
            )
        else:
            logger.info(
                "event_bus: emitted %s %s for %s/%s",
                request.event_type,
                result.event_id,
                request.entity_type,
                request.entity_id,
            )
        return result

    async def get_autopilot_mode(self, tenant_id: str | None) -> AutopilotMode:
        """Tenant autopilot mode. Any error, gap or unknown value resolves to MANUAL."""
        if not tenant_id or self._tenant_config is None:
            return AutopilotMode.MANUAL
        try:
            raw = await self._tenant_config.fetch_autopilot_mode(tenant_id)
        except Exception as e:
            logger.warning(
                "event_bus: autopilot mode lookup failed for tenant %s, using MANUAL: %s",
                tenant_id,
                e,
            )
            return AutopilotMode.MANUAL
        if not raw:
            return AutopilotMode.MANUAL
        try:
            return AutopilotMode(str(raw).strip().upper())
        except ValueError:
            logger.warning(
                "event_bus: unknown autopilot mode %r for tenant %s, using MANUAL",
                raw,
                tenant_id,
            )
            return AutopilotMode.MANUAL
