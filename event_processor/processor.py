"""Budgeted run loop: claim a batch, dispatch to a consumer, release what was not handled.

Every claimed event ends the run either handled (processed, failed or skipped)
or released back to pending. The wall-clock budget is checked only between
events, so one slow consumer call can overrun max_ms.
"""

import logging
import time
from enum import Enum
from typing import Callable

from pydantic import BaseModel, Field

from event_processor.consumers.contract import Consumer
from event_processor.consumers.registry import ConsumerRegistry
from event_processor.events.bus import EventBusClient
from event_processor.events.models import Event
from event_processor.run_log import RunLogger

logger = logging.getLogger(__name__)

DEFAULT_MAX_LIMIT = 100
DEFAULT_MAX_MS_CEILING = 55000


class StoppedReason(str, Enum):
    COMPLETED = "completed"
    NO_EVENTS = "no_events"
    CLAIM_ERROR = "claim_error"
    TIMEOUT = "timeout"
    LIMIT_REACHED = "limit_reached"
    ERROR = "error"


class RunError(BaseModel):
    event_id: str | None = None
    message: str


class RunSummary(BaseModel):
    """Result of one run; serialized as the HTTP response body."""

    success: bool = True
    run_id: str
    consumer: str
    event_type: str
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    released: int = 0
    dead_lettered: int = 0
    stopped_reason: StoppedReason = StoppedReason.COMPLETED
    elapsed_ms: int = 0
    errors: list[RunError] = Field(default_factory=list)

    # Bookkeeping for the no-abandonment invariant; not part of the response.
    claimed_ids: list[str] = Field(default_factory=list, exclude=True)
    handled_ids: list[str] = Field(default_factory=list, exclude=True)
    released_ids: list[str] = Field(default_factory=list, exclude=True)


def clamp_limit(limit: int, max_limit: int = DEFAULT_MAX_LIMIT) -> int:
    return max(1, min(int(limit), max_limit))


def clamp_max_ms(max_ms: int, ceiling: int = DEFAULT_MAX_MS_CEILING) -> int:
    return max(0, min(int(max_ms), ceiling))


class EventProcessor:
    """Runs one bounded batch for a named consumer."""

    def __init__(
        self,
        bus: EventBusClient,
        registry: ConsumerRegistry,
        run_log: RunLogger,
        clock: Callable[[], float] = time.monotonic,
        max_limit: int = DEFAULT_MAX_LIMIT,
        max_ms_ceiling: int = DEFAULT_MAX_MS_CEILING,
    ) -> None:
        self._bus = bus
        self._registry = registry
        self._log = run_log
        self._clock = clock
        self._max_limit = max_limit
        self._max_ms_ceiling = max_ms_ceiling

    def _elapsed_ms(self, start: float) -> int:
        return int((self._clock() - start) * 1000)

    async def run(
        self,
        run_id: str,
        consumer_name: str,
        event_type: str,
        limit: int,
        max_ms: int,
        start_time: float | None = None,
    ) -> RunSummary:
        """Claim, dispatch and account for up to limit events within max_ms."""
        start = start_time if start_time is not None else self._clock()
        limit = clamp_limit(limit, self._max_limit)
        max_ms = clamp_max_ms(max_ms, self._max_ms_ceiling)
        summary = RunSummary(run_id=run_id, consumer=consumer_name, event_type=event_type)
        self._log.log_run(
            "run_started",
            run_id=run_id,
            consumer=consumer_name,
            event_type=event_type,
            limit=limit,
            max_ms=max_ms,
        )

        consumer = self._registry.get(consumer_name)
        if consumer is not None and consumer.event_type != event_type:
            # Claiming would hand another consumer's events to this one.
            message = (
                f"consumer {consumer_name} handles {consumer.event_type}, not {event_type}"
            )
            summary.success = False
            summary.stopped_reason = StoppedReason.ERROR
            summary.errors.append(RunError(message=message))
            self._log.log_error(
                "consumer_mismatch",
                run_id=run_id,
                consumer=consumer_name,
                event_type=event_type,
                error=message,
            )
            return self._finish(summary, start)

        claim = await self._bus.claim_events(consumer_name, event_type, limit)
        if claim.error is not None:
            summary.success = False
            summary.stopped_reason = StoppedReason.CLAIM_ERROR
            summary.errors.append(RunError(message=f"claim: {claim.error}"))
            self._log.log_error(
                "claim_error",
                run_id=run_id,
                consumer=consumer_name,
                event_type=event_type,
                error=claim.error,
            )
            return self._finish(summary, start)

        if not claim.events:
            summary.stopped_reason = StoppedReason.NO_EVENTS
            return self._finish(summary, start)

        summary.claimed_ids = [e.id for e in claim.events]
        if consumer is None:
            logger.warning("processor: unknown consumer %s, skipping claimed events", consumer_name)

        for event in claim.events:
            if self._elapsed_ms(start) >= max_ms:
                summary.stopped_reason = StoppedReason.TIMEOUT
                break
            if summary.processed + summary.failed >= limit:
                summary.stopped_reason = StoppedReason.LIMIT_REACHED
                break
            await self._handle(event, consumer, summary)

        if summary.stopped_reason in (StoppedReason.TIMEOUT, StoppedReason.LIMIT_REACHED):
            await self._release_unhandled(summary)
        return self._finish(summary, start)

    async def _handle(self, event: Event, consumer: Consumer | None, summary: RunSummary) -> None:
        t0 = self._clock()
        if consumer is None:
            await self._skip(event, summary, t0)
            return

        try:
            effect = await consumer.process(event)
        except Exception as e:
            logger.warning(
                "processor: %s failed on event %s: %s", summary.consumer, event.id, e
            )
            await self._record_failure(event, str(e) or type(e).__name__, summary, t0)
            return

        try:
            await self._bus.mark_processed(event.id, summary.consumer)
        except Exception as e:
            logger.exception("processor: mark_processed failed for event %s", event.id)
            await self._record_failure(event, f"mark_processed: {e}", summary, t0)
            return

        summary.processed += 1
        summary.handled_ids.append(event.id)
        self._log.log_event(
            run_id=summary.run_id,
            consumer=summary.consumer,
            event_type=summary.event_type,
            event_id=event.id,
            outcome="processed",
            prior_status=event.claimed_from,
            attempts=event.attempts,
            duration_ms=self._elapsed_ms(t0),
            effect=effect,
        )

    async def _skip(self, event: Event, summary: RunSummary, t0: float) -> None:
        """No consumer under this name: hand the event back, attempt refunded, for a real consumer."""
        error = None
        try:
            await self._bus.release_events([event.id], refund_attempt=True)
        except Exception as e:
            error = f"skip release: {e}"
            logger.exception("processor: could not hand back skipped event %s", event.id)
        summary.skipped += 1
        summary.handled_ids.append(event.id)
        self._log.log_event(
            run_id=summary.run_id,
            consumer=summary.consumer,
            event_type=summary.event_type,
            event_id=event.id,
            outcome="skipped",
            prior_status=event.claimed_from,
            attempts=event.attempts,
            duration_ms=self._elapsed_ms(t0),
            error=error,
            level="ERROR" if error else "INFO",
            reason="unknown_consumer",
        )

    async def _record_failure(
        self, event: Event, message: str, summary: RunSummary, t0: float
    ) -> None:
        summary.failed += 1
        summary.handled_ids.append(event.id)
        summary.errors.append(RunError(event_id=event.id, message=message))

        dead_lettered = False
        try:
            result = await self._bus.mark_failed(event.id, summary.consumer, message)
            dead_lettered = result.dead_lettered
        except Exception as e:
            # The event stays in processing until the stale-claim policy picks it up.
            logger.exception("processor: mark_failed failed for event %s", event.id)
            self._log.log_error(
                "mark_failed_error",
                run_id=summary.run_id,
                consumer=summary.consumer,
                event_type=summary.event_type,
                error=str(e) or type(e).__name__,
                event_id=event.id,
            )

        self._log.log_event(
            run_id=summary.run_id,
            consumer=summary.consumer,
            event_type=summary.event_type,
            event_id=event.id,
            outcome="failed",
            prior_status=event.claimed_from,
            attempts=event.attempts,
            duration_ms=self._elapsed_ms(t0),
            error=message,
            level="ERROR",
            dead_lettered=dead_lettered,
        )
        if dead_lettered:
            summary.dead_lettered += 1
            self._log.log_run(
                "dead_lettered",
                run_id=summary.run_id,
                consumer=summary.consumer,
                event_type=summary.event_type,
                level="WARN",
                event_id=event.id,
                attempts=event.attempts,
                error=message,
            )

    async def _release_unhandled(self, summary: RunSummary) -> None:
        handled = set(summary.handled_ids)
        unhandled = [event_id for event_id in summary.claimed_ids if event_id not in handled]
        if not unhandled:
            return
        try:
            summary.released = await self._bus.release_events(unhandled)
        except Exception as e:
            logger.exception("processor: release of %d events failed", len(unhandled))
            self._log.log_error(
                "release_failed",
                run_id=summary.run_id,
                consumer=summary.consumer,
                event_type=summary.event_type,
                error=str(e) or type(e).__name__,
                event_ids=unhandled,
            )
            return
        summary.released_ids = unhandled

    def _finish(self, summary: RunSummary, start: float) -> RunSummary:
        summary.elapsed_ms = self._elapsed_ms(start)
        self._log.log_run(
            "run_completed",
            run_id=summary.run_id,
            consumer=summary.consumer,
            event_type=summary.event_type,
            level="INFO" if summary.success else "ERROR",
            success=summary.success,
            stopped_reason=summary.stopped_reason.value,
            processed=summary.processed,
            failed=summary.failed,
            skipped=summary.skipped,
            released=summary.released,
            dead_lettered=summary.dead_lettered,
            elapsed_ms=summary.elapsed_ms,
        )
        return summary
