"""HTTP tests: run endpoint end to end, CORS preflight, error mapping, emit and stats."""

from pathlib import Path
from unittest.mock import AsyncMock

import httpx
import pytest

from event_processor.api import create_app
from event_processor.events import ClaimResult
from event_processor.services import ProcessorServices, build_services
from event_processor.settings import get_default_settings


@pytest.fixture
async def services(tmp_path: Path) -> ProcessorServices:
    settings = get_default_settings()
    settings["database"]["path"] = str(tmp_path / "api.db")
    svc = build_services(settings, tmp_path)
    yield svc
    await svc.close()


@pytest.fixture
async def client(services: ProcessorServices) -> httpx.AsyncClient:
    app = create_app(services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _emit_lead(client: httpx.AsyncClient, lead_id: str = "lead-42") -> str:
    resp = await client.post(
        "/events",
        json={
            "event_type": "lead_created",
            "entity_type": "lead",
            "entity_id": lead_id,
            "payload": {"lead_id": lead_id, "source": "webform", "lead_score": 55},
            "tenant_id": "t1",
            "emitted_by": "test",
        },
    )
    assert resp.status_code == 200
    return resp.json()["event_id"]


class TestRunEndpoint:
    @pytest.mark.asyncio
    async def test_full_autopilot_run_enrolls_lead(
        self, client: httpx.AsyncClient, services: ProcessorServices
    ) -> None:
        await services.crm.set_autopilot_mode("t1", "FULL")
        sequence = await services.crm.add_sequence("Cold Intro", "cold_outreach")
        await _emit_lead(client)

        resp = await client.get(
            "/event-processor",
            params={"consumer": "cold_agent_enroller", "event_type": "lead_created", "run_id": "r-1"},
        )

        assert resp.status_code == 200
        assert resp.headers["access-control-allow-origin"] == "*"
        body = resp.json()
        assert body["success"] is True
        assert body["run_id"] == "r-1"
        assert body["processed"] == 1
        assert body["failed"] == 0
        assert body["released"] == 0
        assert body["stopped_reason"] == "completed"
        assert "claimed_ids" not in body

        enrollments = await services.crm.list_enrollments("lead-42")
        assert [(e.lead_id, e.sequence_id) for e in enrollments] == [("lead-42", sequence.id)]
        followups = await services.store.list_events("cold_sequence_enrolled")
        assert [e.idempotency_key for e in followups] == [
            f"cold_sequence_enrolled:lead-42:{sequence.id}"
        ]

    @pytest.mark.asyncio
    async def test_redelivery_does_not_duplicate_side_effects(
        self, client: httpx.AsyncClient, services: ProcessorServices
    ) -> None:
        await services.crm.set_autopilot_mode("t1", "FULL")
        await services.crm.add_sequence("Cold Intro", "cold_outreach")
        event_id = await _emit_lead(client)
        assert (await client.post("/event-processor")).json()["processed"] == 1

        conn = await services.store.ensure_conn()
        await conn.execute(
            "UPDATE system_events SET status = 'pending' WHERE id = ?", (event_id,)
        )
        await conn.commit()

        body = (await client.post("/event-processor")).json()
        assert body["processed"] == 1
        assert len(await services.crm.list_enrollments("lead-42")) == 1
        assert len(await services.store.list_events("cold_sequence_enrolled")) == 1

    @pytest.mark.asyncio
    async def test_manual_tenant_defaults(
        self, client: httpx.AsyncClient, services: ProcessorServices
    ) -> None:
        await _emit_lead(client)
        body = (await client.get("/event-processor")).json()
        assert body["consumer"] == "cold_agent_enroller"
        assert body["event_type"] == "lead_created"
        assert body["processed"] == 1
        approvals = await services.crm.list_approvals("lead-42")
        assert [a.action_type for a in approvals] == ["approve_cold_enrollment"]

    @pytest.mark.asyncio
    async def test_empty_consumer_is_not_replaced_by_default(
        self, client: httpx.AsyncClient, services: ProcessorServices
    ) -> None:
        event_id = await _emit_lead(client)
        body = (await client.get("/event-processor", params={"consumer": ""})).json()
        assert body["consumer"] == ""
        assert body["skipped"] == 1
        assert body["processed"] == 0
        event = await services.store.get(event_id)
        assert event.status == "pending"
        assert await services.crm.list_approvals("lead-42") == []

    @pytest.mark.asyncio
    async def test_mismatched_event_type_is_rejected(
        self, client: httpx.AsyncClient, services: ProcessorServices
    ) -> None:
        body = (
            await client.get(
                "/event-processor",
                params={"consumer": "cold_agent_enroller", "event_type": "cold_sequence_enrolled"},
            )
        ).json()
        assert body["success"] is False
        assert body["stopped_reason"] == "error"

    @pytest.mark.asyncio
    async def test_no_events(self, client: httpx.AsyncClient) -> None:
        body = (await client.get("/event-processor")).json()
        assert body["success"] is True
        assert body["stopped_reason"] == "no_events"

    @pytest.mark.asyncio
    async def test_zero_budget_releases_claimed(
        self, client: httpx.AsyncClient, services: ProcessorServices
    ) -> None:
        await _emit_lead(client, "lead-1")
        await _emit_lead(client, "lead-2")
        body = (await client.get("/event-processor", params={"max_ms": "0"})).json()
        assert body["stopped_reason"] == "timeout"
        assert body["released"] == 2
        assert (await services.store.count_by_status()) == {"pending": 2}

    @pytest.mark.asyncio
    async def test_claim_error_is_200_with_failure(
        self, client: httpx.AsyncClient, services: ProcessorServices
    ) -> None:
        services.bus.claim_events = AsyncMock(return_value=ClaimResult(error="database is locked"))
        resp = await client.get("/event-processor")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is False
        assert body["stopped_reason"] == "claim_error"
        assert body["processed"] == body["failed"] == body["released"] == 0

    @pytest.mark.asyncio
    async def test_malformed_limit_is_500(self, client: httpx.AsyncClient) -> None:
        resp = await client.get("/event-processor", params={"limit": "ten"})
        assert resp.status_code == 500
        body = resp.json()
        assert body["success"] is False
        assert body["stopped_reason"] == "error"
        assert "limit" in body["error"]
        assert body["run_id"]

    @pytest.mark.asyncio
    async def test_unexpected_error_is_500(
        self, client: httpx.AsyncClient, services: ProcessorServices
    ) -> None:
        services.processor.run = AsyncMock(side_effect=RuntimeError("boom"))
        resp = await client.post("/event-processor", params={"run_id": "r-9"})
        assert resp.status_code == 500
        assert resp.json()["run_id"] == "r-9"
        assert resp.json()["error"] == "boom"

    @pytest.mark.asyncio
    async def test_preflight(self, client: httpx.AsyncClient) -> None:
        resp = await client.options("/event-processor")
        assert resp.status_code == 200
        assert resp.headers["access-control-allow-origin"] == "*"
        assert "POST" in resp.headers["access-control-allow-methods"]
        assert "content-type" in resp.headers["access-control-allow-headers"]


class TestEventsEndpoints:
    @pytest.mark.asyncio
    async def test_emit_with_key_is_idempotent(self, client: httpx.AsyncClient) -> None:
        body = {
            "event_type": "lead_created",
            "entity_type": "lead",
            "entity_id": "l1",
            "idempotency_key": "lead_created:l1",
        }
        first = (await client.post("/events", json=body)).json()
        second = (await client.post("/events", json=body)).json()
        assert first["duplicate"] is False
        assert second["duplicate"] is True
        assert second["event_id"] == first["event_id"]

    @pytest.mark.asyncio
    async def test_emit_rejects_missing_fields(self, client: httpx.AsyncClient) -> None:
        resp = await client.post("/events", json={"event_type": "lead_created"})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_stats_and_health(self, client: httpx.AsyncClient) -> None:
        await _emit_lead(client)
        stats = (await client.get("/events/stats")).json()
        assert stats == {"success": True, "counts": {"pending": 1}}
        health = (await client.get("/health")).json()
        assert health == {"status": "ok", "consumers": ["cold_agent_enroller"]}
