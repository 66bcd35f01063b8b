"""Tests for the cold_agent_enroller consumer: approval queue, enrollment, idempotency."""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from event_processor.consumers import ColdAgentEnroller, ConsumerError
from event_processor.crm import CrmDb, CrmRepository
from event_processor.events import Event, EventBusClient, EventStore


@pytest.fixture
async def store(tmp_path: Path) -> EventStore:
    s = EventStore(tmp_path / "crm.db")
    yield s
    await s.close()


@pytest.fixture
async def crm(tmp_path: Path) -> CrmRepository:
    repo = CrmRepository(CrmDb(tmp_path / "crm.db"))
    yield repo
    await repo.close()


@pytest.fixture
def bus(store: EventStore, crm: CrmRepository) -> EventBusClient:
    return EventBusClient(store, tenant_config=crm)


@pytest.fixture
def enroller(bus: EventBusClient, crm: CrmRepository) -> ColdAgentEnroller:
    return ColdAgentEnroller(bus, crm)


def _lead_event(lead_id: str = "lead-1", tenant_id: str | None = "t1", **payload) -> Event:
    return Event(
        id=f"evt-{lead_id}",
        event_type="lead_created",
        entity_type="lead",
        entity_id=lead_id,
        payload={"lead_id": lead_id, **payload},
        status="processing",
        attempts=1,
        tenant_id=tenant_id,
    )


class TestManualMode:
    """MANUAL tenants (or unknown configuration) queue a human approval."""

    @pytest.mark.asyncio
    async def test_queues_approval_with_snapshot(
        self, enroller: ColdAgentEnroller, crm: CrmRepository
    ) -> None:
        event = _lead_event(
            source="webform",
            utm_source="google",
            utm_campaign="spring",
            utm_medium="",
            consent_status={"call": True, "sms": False, "email": True},
            lead_score=72,
        )
        effect = await enroller.process(event)
        assert effect == "queued_for_approval"

        approvals = await crm.list_approvals("lead-1")
        assert len(approvals) == 1
        approval = approvals[0]
        assert approval.action_type == "approve_cold_enrollment"
        assert approval.status == "pending"
        assert approval.priority == "normal"
        assert approval.source == "event_processor"
        assert approval.tenant_id == "t1"
        assert approval.payload == {
            "lead_id": "lead-1",
            "source": "webform",
            "recommended_sequence": "default_cold",
            "utm_source": "google",
            "utm_campaign": "spring",
            "consent_status": {"call": True, "sms": False, "email": True},
            "lead_score": 72,
        }

    @pytest.mark.asyncio
    async def test_second_delivery_does_not_duplicate(
        self, enroller: ColdAgentEnroller, crm: CrmRepository
    ) -> None:
        assert await enroller.process(_lead_event()) == "queued_for_approval"
        assert await enroller.process(_lead_event()) == "approval_exists"
        assert len(await crm.list_approvals("lead-1")) == 1

    @pytest.mark.asyncio
    async def test_unique_collision_counts_as_success(
        self, enroller: ColdAgentEnroller, crm: CrmRepository
    ) -> None:
        await enroller.process(_lead_event())
        # Simulate a concurrent run that passed the existence check before our insert landed.
        crm.find_open_approval = AsyncMock(return_value=None)
        assert await enroller.process(_lead_event()) == "approval_exists"
        assert len(await crm.list_approvals("lead-1")) == 1

    @pytest.mark.asyncio
    async def test_mode_lookup_error_falls_back_to_manual(
        self, enroller: ColdAgentEnroller, crm: CrmRepository
    ) -> None:
        await crm.add_sequence("Cold A", "cold_outreach")
        crm.fetch_autopilot_mode = AsyncMock(side_effect=RuntimeError("config table missing"))
        assert await enroller.process(_lead_event()) == "queued_for_approval"
        assert await crm.list_enrollments("lead-1") == []

    @pytest.mark.asyncio
    async def test_entity_id_used_when_payload_has_no_lead_id(
        self, enroller: ColdAgentEnroller, crm: CrmRepository
    ) -> None:
        event = Event(
            id="evt-x",
            event_type="lead_created",
            entity_type="lead",
            entity_id="lead-from-entity",
            payload={},
            tenant_id=None,
        )
        assert await enroller.process(event) == "queued_for_approval"
        assert len(await crm.list_approvals("lead-from-entity")) == 1


class TestAutomaticModes:
    """ASSISTED and FULL tenants are enrolled directly."""

    @pytest.mark.asyncio
    async def test_no_sequence_records_skip(
        self, enroller: ColdAgentEnroller, crm: CrmRepository, store: EventStore
    ) -> None:
        await crm.set_autopilot_mode("t1", "ASSISTED")
        assert await enroller.process(_lead_event(lead_score=10)) == "enrollment_skipped"

        actions = await crm.list_actions("lead-1")
        assert [a.action_type for a in actions] == ["enrollment_skipped"]
        assert actions[0].new_state == {
            "reason": "no_active_sequence",
            "lead_score": 10,
            "autopilot_mode": "ASSISTED",
        }
        assert await store.list_events("cold_sequence_enrolled") == []

    @pytest.mark.asyncio
    async def test_enrolls_in_oldest_active_sequence(
        self, enroller: ColdAgentEnroller, crm: CrmRepository, store: EventStore
    ) -> None:
        await crm.set_autopilot_mode("t1", "FULL")
        await crm.add_sequence("Inactive", "cold_outreach", is_active=False, created_at=1.0)
        oldest = await crm.add_sequence("Oldest", "cold_outreach", created_at=2.0)
        await crm.add_sequence("Newer", "cold_outreach", created_at=3.0)
        await crm.add_sequence("Warm", "warm_followup", created_at=0.5)

        assert await enroller.process(_lead_event()) == "enrolled"

        enrollments = await crm.list_enrollments("lead-1")
        assert len(enrollments) == 1
        assert enrollments[0].sequence_id == oldest.id
        assert enrollments[0].status == "active"
        assert enrollments[0].current_step == 0

        actions = await crm.list_actions("lead-1")
        assert [a.action_type for a in actions] == ["cold_enrollment"]
        assert actions[0].action_id == enrollments[0].id
        assert actions[0].new_state["sequence_name"] == "Oldest"

        emitted = await store.list_events("cold_sequence_enrolled")
        assert len(emitted) == 1
        assert emitted[0].idempotency_key == f"cold_sequence_enrolled:lead-1:{oldest.id}"
        assert emitted[0].entity_id == enrollments[0].id
        assert emitted[0].tenant_id == "t1"
        assert emitted[0].payload == {
            "lead_id": "lead-1",
            "sequence_id": oldest.id,
            "sequence_name": "Oldest",
            "enrolled_by": "cold_agent_enroller",
        }

    @pytest.mark.asyncio
    async def test_reprocessing_is_idempotent(
        self, enroller: ColdAgentEnroller, crm: CrmRepository, store: EventStore
    ) -> None:
        await crm.set_autopilot_mode("t1", "FULL")
        await crm.add_sequence("Cold", "cold_outreach")

        assert await enroller.process(_lead_event()) == "enrolled"
        assert await enroller.process(_lead_event()) == "already_enrolled"

        assert len(await crm.list_enrollments("lead-1")) == 1
        assert len(await store.list_events("cold_sequence_enrolled")) == 1
        assert len(await crm.list_actions("lead-1")) == 1

    @pytest.mark.asyncio
    async def test_existing_enrollment_restores_missing_follow_up(
        self, enroller: ColdAgentEnroller, crm: CrmRepository, store: EventStore
    ) -> None:
        await crm.set_autopilot_mode("t1", "FULL")
        sequence = await crm.add_sequence("Cold", "cold_outreach")
        # An earlier attempt enrolled the lead but died before emitting.
        await crm.insert_enrollment("lead-1", sequence.id, tenant_id="t1")

        assert await enroller.process(_lead_event()) == "already_enrolled"
        emitted = await store.list_events("cold_sequence_enrolled")
        assert [e.idempotency_key for e in emitted] == [
            f"cold_sequence_enrolled:lead-1:{sequence.id}"
        ]


class TestPayloadValidation:
    @pytest.mark.asyncio
    async def test_invalid_payload_raises_consumer_error(
        self, enroller: ColdAgentEnroller
    ) -> None:
        event = _lead_event(lead_score="not-a-number")
        with pytest.raises(ConsumerError):
            await enroller.process(event)

    @pytest.mark.asyncio
    async def test_missing_lead_id_raises_consumer_error(
        self, enroller: ColdAgentEnroller
    ) -> None:
        event = Event(id="e", event_type="lead_created", entity_type="lead", entity_id="", payload={})
        with pytest.raises(ConsumerError):
            await enroller.process(event)
