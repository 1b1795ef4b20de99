"""HTTP API tests through the ASGI app with an in-memory database."""

from datetime import datetime, timedelta
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from crm_tickets.infrastructure.database import get_session
from crm_tickets.main import app
from crm_tickets.tickets.interfaces import get_clock
from tests.helpers import T0

pytestmark = pytest.mark.integration

AGENT = {"X-User-ID": "agent-1"}


def parse_dt(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@pytest_asyncio.fixture
async def client(session_maker, clock):
    async def override_session():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_clock] = lambda: clock
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def urgent_ticket(client):
    response = await client.post(
        "/api/sla-policies",
        json={"name": "Urgent SLA", "priority": "urgent", "response_time": 30, "resolution_time": 240},
        headers=AGENT,
    )
    assert response.status_code == 201
    response = await client.post(
        "/api/tickets",
        json={"subject": "Checkout is down", "priority": "urgent", "channel": "phone"},
        headers=AGENT,
    )
    assert response.status_code == 201
    return response.json()


class TestTicketEndpoints:

    @pytest.mark.asyncio
    async def test_create_ticket_with_sla(self, urgent_ticket):
        assert urgent_ticket["ticket_number"] == "TKT-000001"
        assert urgent_ticket["status"] == "new"
        assert urgent_ticket["channel"] == "phone"
        assert parse_dt(urgent_ticket["response_due_at"]) == T0 + timedelta(minutes=30)
        assert parse_dt(urgent_ticket["due_at"]) == T0 + timedelta(minutes=240)
        assert urgent_ticket["version"] == 0

    @pytest.mark.asyncio
    async def test_actor_header_is_required(self, client):
        response = await client.post("/api/tickets", json={"subject": "No actor"})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_malformed_and_unknown_ids(self, client):
        assert (await client.get("/api/tickets/not-a-uuid")).status_code == 400

        response = await client.get(f"/api/tickets/{uuid4()}")
        assert response.status_code == 404
        assert response.json()["error_type"] == "ResourceNotFoundException"

    @pytest.mark.asyncio
    async def test_status_lifecycle(self, client, urgent_ticket, clock):
        ticket_id = urgent_ticket["id"]
        clock.advance(minutes=5)

        rejected = await client.patch(
            f"/api/tickets/{ticket_id}/status", json={"status": "escalated"}, headers=AGENT
        )
        assert rejected.status_code == 422

        response = await client.patch(
            f"/api/tickets/{ticket_id}/status", json={"status": "open", "comment": "triaged"}, headers=AGENT
        )
        assert response.status_code == 200
        assert response.json()["status"] == "open"
        assert response.json()["version"] == 1

        history = (await client.get(f"/api/tickets/{ticket_id}/history")).json()
        assert [h["status"] for h in history] == ["new", "open"]
        assert history[-1]["comment"] == "triaged"

    @pytest.mark.asyncio
    async def test_first_comment_records_response(self, client, urgent_ticket, clock):
        ticket_id = urgent_ticket["id"]
        clock.advance(minutes=12)

        response = await client.post(
            f"/api/tickets/{ticket_id}/comments", json={"content": "On it"}, headers=AGENT
        )

        assert response.status_code == 201
        assert response.json()["created_by"] == "agent-1"
        ticket = (await client.get(f"/api/tickets/{ticket_id}")).json()
        assert parse_dt(ticket["first_response_at"]) == T0 + timedelta(minutes=12)
        assert len((await client.get(f"/api/tickets/{ticket_id}/comments")).json()) == 1

    @pytest.mark.asyncio
    async def test_assign_and_list_mine(self, client, urgent_ticket):
        ticket_id = urgent_ticket["id"]

        response = await client.patch(
            f"/api/tickets/{ticket_id}/assign", json={"assigned_to": "agent-7"}, headers=AGENT
        )
        assert response.status_code == 200

        mine = (await client.get("/api/tickets/my", headers={"X-User-ID": "agent-7"})).json()
        assert mine["total"] == 1
        assert mine["tickets"][0]["id"] == ticket_id

    @pytest.mark.asyncio
    async def test_list_customer_tickets(self, client, urgent_ticket):
        created = await client.post(
            "/api/tickets",
            json={"subject": "Refund please", "customer_id": "cust-42"},
            headers=AGENT
        )
        assert created.status_code == 201

        theirs = (await client.get("/api/tickets/customer/cust-42")).json()

        assert theirs["total"] == 1
        assert theirs["tickets"][0]["id"] == created.json()["id"]
        assert theirs["tickets"][0]["customer_id"] == "cust-42"
        assert (await client.get("/api/tickets/customer/nobody")).json()["total"] == 0

    @pytest.mark.asyncio
    async def test_list_with_filters(self, client, urgent_ticket):
        await client.post("/api/tickets", json={"subject": "Invoice copy", "priority": "low"}, headers=AGENT)

        urgent = (await client.get("/api/tickets", params={"priority": "urgent"})).json()
        assert urgent["total"] == 1
        assert urgent["tickets"][0]["id"] == urgent_ticket["id"]

        everything = (await client.get("/api/tickets")).json()
        assert everything["total"] == 2

    @pytest.mark.asyncio
    async def test_delete(self, client, urgent_ticket):
        ticket_id = urgent_ticket["id"]

        response = await client.delete(f"/api/tickets/{ticket_id}", headers=AGENT)

        assert response.status_code == 204
        assert (await client.get(f"/api/tickets/{ticket_id}")).status_code == 404


class TestSLAEndpoints:

    @pytest.mark.asyncio
    async def test_ticket_sla_status_and_breach(self, client, urgent_ticket, clock):
        ticket_id = urgent_ticket["id"]
        clock.advance(minutes=10)

        sla = (await client.get(f"/api/tickets/{ticket_id}/sla")).json()
        assert sla["status"] == "on_time"
        assert sla["response_time_remaining"] == 20

        clock.set(T0 + timedelta(minutes=241))
        breach = (await client.get(f"/api/tickets/{ticket_id}/sla-breach")).json()
        assert breach == {"ticket_id": ticket_id, "breached": True}
        overdue = (await client.get("/api/tickets/overdue")).json()
        assert [t["id"] for t in overdue] == [ticket_id]

    @pytest.mark.asyncio
    async def test_reports(self, client, urgent_ticket, clock):
        clock.set(T0 + timedelta(minutes=45))

        metrics = (await client.get("/api/sla/metrics")).json()
        assert metrics["total_tickets"] == 1
        assert metrics["sla_breached"] == 1

        violations = (await client.get("/api/sla/violations")).json()
        assert violations[0]["breach_type"] == "response"
        assert violations[0]["time_overdue"] == 15

        trends = (await client.get("/api/sla/trends", params={"days": 3})).json()
        assert len(trends) == 3
        assert trends[-1]["total"] == 1

        assert (await client.get("/api/sla/trends", params={"days": 0})).status_code == 422

    @pytest.mark.asyncio
    async def test_policy_validation(self, client):
        response = await client.post(
            "/api/sla-policies",
            json={"name": "Broken", "priority": "high", "response_time": 0, "resolution_time": 60},
            headers=AGENT,
        )

        assert response.status_code == 422


class TestEscalationEndpoints:

    @pytest.mark.asyncio
    async def test_manual_sweep_escalates_unanswered_ticket(self, client, urgent_ticket, clock):
        response = await client.post(
            "/api/escalation-rules",
            json={
                "name": "Unanswered for an hour",
                "condition_type": "no_response",
                "escalate_after": 60,
                "escalate_to": "lead-1",
            },
            headers=AGENT,
        )
        assert response.status_code == 201
        clock.set(T0 + timedelta(minutes=61))

        result = (await client.post("/api/escalation-rules/run")).json()

        assert result["escalations_executed"] == 1
        assert result["skipped"] is False
        ticket = (await client.get(f"/api/tickets/{urgent_ticket['id']}")).json()
        assert ticket["escalation_level"] == 1
        assert ticket["escalated_to"] == "lead-1"
        assert ticket["escalation_history"][0]["rule_id"] == response.json()["id"]

    @pytest.mark.asyncio
    async def test_rule_crud(self, client):
        created = await client.post(
            "/api/escalation-rules",
            json={"name": "Breach", "condition_type": "sla_breach", "escalate_after": 0, "escalate_to": "mgr"},
            headers=AGENT,
        )
        rule_id = created.json()["id"]

        updated = await client.put(
            f"/api/escalation-rules/{rule_id}", json={"is_active": False}, headers=AGENT
        )
        assert updated.json()["is_active"] is False

        assert (await client.delete(f"/api/escalation-rules/{rule_id}", headers=AGENT)).status_code == 204
        assert (await client.get("/api/escalation-rules")).json() == []

    @pytest.mark.asyncio
    async def test_unknown_condition_type_is_rejected(self, client):
        response = await client.post(
            "/api/escalation-rules",
            json={"name": "Odd", "condition_type": "moon_phase", "escalate_after": 5, "escalate_to": "x"},
            headers=AGENT,
        )

        assert response.status_code == 422


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["checks"]["escalation_scheduler"] == "stopped"
