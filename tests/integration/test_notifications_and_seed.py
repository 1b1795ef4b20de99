"""Notification delivery and default seed data against the database."""

from pathlib import Path

import httpx
import pytest
from sqlalchemy import text

from crm_tickets.config import NotificationType
from crm_tickets.tickets.application.services import TICKETS_MODULE
from crm_tickets.tickets.infrastructure import (
    NotificationService,
    SlackClient,
    SQLAlchemyAuditService,
    SQLAlchemyNotificationRepository,
    SQLAlchemyTicketRepository,
    apply_seed,
    load_seed_file,
)
from crm_tickets.tickets.interfaces.controllers import get_ticket_service
from tests.helpers import RecordingSleep, make_ticket

pytestmark = pytest.mark.integration

SEED_FILE = Path(__file__).resolve().parents[2] / "escalation_seed.yaml"


class TestNotificationService:

    @pytest.mark.asyncio
    async def test_stores_and_mirrors_to_slack(self, session, clock):
        posted = []

        def handler(request: httpx.Request) -> httpx.Response:
            posted.append(request)
            return httpx.Response(200)

        slack = SlackClient(
            webhook_url="https://hooks.slack.test/x",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            sleep=RecordingSleep(),
        )
        repo = SQLAlchemyNotificationRepository(session, clock, autocommit=True)
        service = NotificationService(repo, slack)

        await service.create_notification("lead-1", "Ticket Escalated", "msg", NotificationType.SLA, "/t/1")

        [stored] = await repo.list_for_user("lead-1")
        assert stored["title"] == "Ticket Escalated"
        assert len(posted) == 1
        await slack.close()

    @pytest.mark.asyncio
    async def test_slack_outage_does_not_lose_notification(self, session, clock):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        slack = SlackClient(
            webhook_url="https://hooks.slack.test/x",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            sleep=RecordingSleep(),
        )
        repo = SQLAlchemyNotificationRepository(session, clock, autocommit=True)

        await NotificationService(repo, slack).create_notification(
            "agent-7", "Ticket Assigned", "msg", NotificationType.TASK
        )

        assert len(await repo.list_for_user("agent-7")) == 1
        await slack.close()

    @pytest.mark.asyncio
    async def test_rejected_notification_keeps_assignment(self, engine, session_maker, clock):
        async with engine.begin() as conn:
            await conn.execute(text(
                "CREATE TRIGGER reject_notifications BEFORE INSERT ON notifications "
                "BEGIN SELECT RAISE(ABORT, 'notifications unavailable'); END"
            ))

        async with session_maker() as session:
            service = await get_ticket_service(session, clock)
            ticket = await service.create_ticket(make_ticket(), "agent-1")
            assigned = await service.assign_ticket(ticket.id, "agent-7", "agent-1")
            await session.commit()

        assert assigned.assigned_to == "agent-7"
        async with session_maker() as session:
            stored = await SQLAlchemyTicketRepository(session, clock).get_by_id(ticket.id)
            audit = await SQLAlchemyAuditService(session, clock).list_for_record(TICKETS_MODULE, ticket.id)
            notifications = await SQLAlchemyNotificationRepository(session, clock).list_for_user("agent-7")

        assert stored.assigned_to == "agent-7"
        assert stored.version == 1
        assert {"assigned_to": {"old": None, "new": "agent-7"}} in [a["changes"] for a in audit]
        assert notifications == []


class TestSeed:

    @pytest.mark.asyncio
    async def test_bundled_seed_fills_empty_tables_once(self, policy_repo, rule_repo):
        seed = load_seed_file(SEED_FILE)

        first = await apply_seed(seed, policy_repo, rule_repo)
        second = await apply_seed(seed, policy_repo, rule_repo)

        assert first == {"sla_policies": 4, "escalation_rules": 3}
        assert second == {"sla_policies": 0, "escalation_rules": 0}
        assert await policy_repo.count() == 4
        assert await rule_repo.count() == 3
        active = await rule_repo.find_active()
        assert sorted(r.name for r in active) == ["Stale pending ticket", "Urgent unanswered"]
