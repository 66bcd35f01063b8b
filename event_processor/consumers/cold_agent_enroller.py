"""Cold agent enroller: routes new leads into cold outreach or the approval queue.

MANUAL tenants get a human-approval queue entry. ASSISTED and FULL tenants are
enrolled straight into the oldest active cold_outreach sequence, audited, and a
cold_sequence_enrolled event is emitted with a key derived from
(lead_id, sequence_id). Every mutating write is preceded by an existence
check, and uniqueness collisions count as success, so redelivery is harmless.
"""

import logging

from event_processor.consumers.contract import ConsumerError
from event_processor.consumers.payloads import LeadCreatedPayload, decode_lead_created
from event_processor.crm.repository import (
    CrmRepository,
    DuplicateRecordError,
    EnrollmentRecord,
    SequenceRecord,
)
from event_processor.events.bus import EventBusClient
from event_processor.events.models import AutopilotMode, EmitRequest, Event
from event_processor.events.types import EventTypes, cold_enrollment_key

logger = logging.getLogger(__name__)

CONSUMER_NAME = "cold_agent_enroller"
APPROVAL_ACTION = "approve_cold_enrollment"
COLD_TRIGGER = "cold_outreach"
RECOMMENDED_SEQUENCE = "default_cold"


class ColdAgentEnroller:
    """Consumer for lead_created events."""

    name = CONSUMER_NAME
    event_type = EventTypes.LEAD_CREATED

    def __init__(self, bus: EventBusClient, crm: CrmRepository) -> None:
        self._bus = bus
        self._crm = crm

    async def process(self, event: Event) -> str:
        payload = decode_lead_created(event.payload)
        lead_id = payload.lead_id or event.entity_id
        if not lead_id:
            raise ConsumerError(f"Event {event.id} carries no lead id")

        mode = await self._bus.get_autopilot_mode(event.tenant_id)
        logger.info("cold_agent_enroller: lead %s, autopilot mode %s", lead_id, mode.value)

        if mode is AutopilotMode.MANUAL:
            return await self._queue_for_approval(event, lead_id, payload)
        return await self._enroll(event, lead_id, payload, mode)

    async def _queue_for_approval(
        self, event: Event, lead_id: str, payload: LeadCreatedPayload
    ) -> str:
        existing = await self._crm.find_open_approval(APPROVAL_ACTION, lead_id)
        if existing:
            logger.info(
                "cold_agent_enroller: approval %s (%s) already open for lead %s",
                existing.id,
                existing.status,
                lead_id,
            )
            return "approval_exists"

        snapshot: dict = {
            "lead_id": lead_id,
            "source": payload.source,
            "recommended_sequence": RECOMMENDED_SEQUENCE,
        }
        snapshot.update(payload.utm_fields())
        if payload.consent_status is not None:
            snapshot["consent_status"] = payload.consent_status.model_dump()
        if payload.lead_score is not None:
            snapshot["lead_score"] = payload.lead_score

        try:
            await self._crm.insert_approval(
                action_type=APPROVAL_ACTION,
                target_type="lead",
                target_id=lead_id,
                payload=snapshot,
                tenant_id=event.tenant_id,
                priority="normal",
                source="event_processor",
                reasoning=(
                    f"New lead {lead_id} requires CEO approval for cold sequence "
                    "enrollment (MANUAL mode)."
                ),
            )
        except DuplicateRecordError:
            # A concurrent run queued it between the check and the insert.
            logger.info("cold_agent_enroller: approval for lead %s queued concurrently", lead_id)
            return "approval_exists"

        logger.info("cold_agent_enroller: queued approval for lead %s", lead_id)
        return "queued_for_approval"

    async def _enroll(
        self,
        event: Event,
        lead_id: str,
        payload: LeadCreatedPayload,
        mode: AutopilotMode,
    ) -> str:
        lead_score = payload.lead_score if payload.lead_score is not None else 0
        sequence = await self._crm.first_active_sequence(COLD_TRIGGER)
        if sequence is None:
            await self._crm.record_action(
                action_table="sequence_enrollments",
                action_id=event.id,
                action_type="enrollment_skipped",
                target_type="lead",
                target_id=lead_id,
                actor_module=CONSUMER_NAME,
                new_state={
                    "reason": "no_active_sequence",
                    "lead_score": lead_score,
                    "autopilot_mode": mode.value,
                },
            )
            logger.info("cold_agent_enroller: no active cold sequence, skipped lead %s", lead_id)
            return "enrollment_skipped"

        enrollment = await self._crm.find_enrollment(lead_id, sequence.id)
        if enrollment is not None:
            # Re-emit so an earlier attempt that died before emitting still gets its event;
            # the idempotency key coalesces it otherwise.
            await self._emit_enrolled(event, lead_id, sequence, enrollment)
            logger.info(
                "cold_agent_enroller: lead %s already enrolled in %s", lead_id, sequence.id
            )
            return "already_enrolled"

        try:
            enrollment = await self._crm.insert_enrollment(
                lead_id, sequence.id, tenant_id=event.tenant_id
            )
        except DuplicateRecordError:
            logger.info(
                "cold_agent_enroller: lead %s enrolled concurrently in %s", lead_id, sequence.id
            )
            return "already_enrolled"

        logger.info(
            "cold_agent_enroller: enrolled lead %s in %s (%s)", lead_id, sequence.name, sequence.id
        )
        await self._crm.record_action(
            action_table="sequence_enrollments",
            action_id=enrollment.id,
            action_type="cold_enrollment",
            target_type="lead",
            target_id=lead_id,
            actor_module=CONSUMER_NAME,
            new_state={
                "sequence_id": sequence.id,
                "sequence_name": sequence.name,
                "lead_score": lead_score,
                "autopilot_mode": mode.value,
            },
        )
        await self._emit_enrolled(event, lead_id, sequence, enrollment)
        return "enrolled"

    async def _emit_enrolled(
        self,
        event: Event,
        lead_id: str,
        sequence: SequenceRecord,
        enrollment: EnrollmentRecord,
    ) -> None:
        await self._bus.emit_event(
            EmitRequest(
                event_type=EventTypes.COLD_SEQUENCE_ENROLLED,
                entity_type="sequence_enrollment",
                entity_id=enrollment.id,
                payload={
                    "lead_id": lead_id,
                    "sequence_id": sequence.id,
                    "sequence_name": sequence.name,
                    "enrolled_by": CONSUMER_NAME,
                },
                emitted_by=CONSUMER_NAME,
                tenant_id=event.tenant_id,
                idempotency_key=cold_enrollment_key(lead_id, sequence.id),
            )
        )
