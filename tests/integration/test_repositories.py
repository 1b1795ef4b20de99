"""Repository tests against in-memory SQLite."""

from datetime import timedelta
from uuid import uuid4

import pytest

from crm_tickets.config import AuditAction, NotificationType, TicketPriority, TicketStatus
from crm_tickets.core import ConcurrencyConflictException, RepositoryException, ResourceNotFoundException
from crm_tickets.tickets.domain import TicketComment
from crm_tickets.tickets.infrastructure import SQLAlchemyAuditService, SQLAlchemyNotificationRepository
from tests.helpers import T0, make_policy, make_ticket

pytestmark = pytest.mark.integration


async def create(ticket_repo, **kwargs):
    number = kwargs.pop("ticket_number", None)
    ticket = make_ticket(**kwargs)
    ticket.ticket_number = number or await ticket_repo.next_ticket_number()
    return await ticket_repo.create(ticket)


class TestTicketNumbering:

    @pytest.mark.asyncio
    async def test_numbers_are_sequential(self, ticket_repo):
        first = await create(ticket_repo)
        second = await create(ticket_repo)

        assert first.ticket_number == "TKT-000001"
        assert second.ticket_number == "TKT-000002"

    @pytest.mark.asyncio
    async def test_continues_after_highest_existing_number(self, ticket_repo):
        await create(ticket_repo, ticket_number="TKT-000009")

        assert await ticket_repo.next_ticket_number() == "TKT-000010"


class TestVersionedWrites:

    @pytest.mark.asyncio
    async def test_every_write_bumps_version(self, ticket_repo, clock):
        ticket = await create(ticket_repo)
        assert ticket.version == 0

        clock.advance(minutes=5)
        updated = await ticket_repo.update(ticket.id, {"category": "billing"})

        assert updated.version == 1
        assert updated.category == "billing"
        assert updated.updated_at == T0 + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_stale_version_is_a_conflict(self, ticket_repo):
        ticket = await create(ticket_repo)
        await ticket_repo.update(ticket.id, {"category": "billing"})

        with pytest.raises(ConcurrencyConflictException):
            await ticket_repo.update(ticket.id, {"category": "sales"}, expected_version=ticket.version)

        current = await ticket_repo.get_by_id(ticket.id)
        assert current.category == "billing"

    @pytest.mark.asyncio
    async def test_missing_ticket_is_not_found(self, ticket_repo):
        with pytest.raises(ResourceNotFoundException):
            await ticket_repo.update(str(uuid4()), {"category": "billing"})

    @pytest.mark.asyncio
    async def test_history_columns_are_not_plain_updatable(self, ticket_repo):
        ticket = await create(ticket_repo)

        with pytest.raises(RepositoryException):
            await ticket_repo.update(ticket.id, {"status": TicketStatus.CLOSED})

    @pytest.mark.asyncio
    async def test_first_response_is_recorded_once(self, ticket_repo, clock):
        ticket = await create(ticket_repo)

        assert await ticket_repo.mark_first_response(ticket.id, T0 + timedelta(minutes=3))
        assert not await ticket_repo.mark_first_response(ticket.id, T0 + timedelta(minutes=9))

        current = await ticket_repo.get_by_id(ticket.id)
        assert current.first_response_at == T0 + timedelta(minutes=3)
        assert current.version == 1


class TestQueries:

    @pytest.mark.asyncio
    async def test_list_filters_and_paginates(self, ticket_repo):
        for i in range(5):
            await create(ticket_repo, subject=f"Login issue {i}")
        await create(ticket_repo, subject="Invoice question", priority=TicketPriority.LOW)

        page, total = await ticket_repo.list({"priority": TicketPriority.URGENT}, page=2, limit=2)
        assert total == 5
        assert len(page) == 2

        found, total = await ticket_repo.list({"search": "invoice"})
        assert total == 1
        assert found[0].subject == "Invoice question"

    @pytest.mark.asyncio
    async def test_find_overdue_sla(self, ticket_repo):
        overdue = await create(ticket_repo, response_due_at=T0 + timedelta(minutes=30), due_at=T0 + timedelta(hours=4))
        await create(
            ticket_repo,
            response_due_at=T0 + timedelta(minutes=30),
            due_at=T0 + timedelta(hours=4),
            first_response_at=T0 + timedelta(minutes=1),
        )
        await create(ticket_repo)

        result = await ticket_repo.find_overdue_sla(T0 + timedelta(minutes=31))

        assert [t.id for t in result] == [overdue.id]

    @pytest.mark.asyncio
    async def test_open_page_uses_keyset_and_skips_closed(self, ticket_repo):
        created = [await create(ticket_repo) for _ in range(3)]
        await create(ticket_repo, status=TicketStatus.CLOSED)

        first = await ticket_repo.find_open_page(None, 2)
        last = first[-1]
        rest = await ticket_repo.find_open_page((last.created_at, last.id), 2)

        ids = [t.id for t in first + rest]
        assert sorted(ids) == sorted(t.id for t in created)
        assert len(set(ids)) == 3

    @pytest.mark.asyncio
    async def test_delete_removes_comments(self, ticket_repo, comment_repo):
        ticket = await create(ticket_repo)
        await comment_repo.create(TicketComment(id=None, ticket_id=ticket.id, content="hi", created_by="a"))

        await ticket_repo.delete(ticket.id)

        assert await ticket_repo.get_by_id(ticket.id) is None
        assert await comment_repo.list_by_ticket(ticket.id) == []
        with pytest.raises(ResourceNotFoundException):
            await ticket_repo.delete(ticket.id)


class TestPolicies:

    @pytest.mark.asyncio
    async def test_oldest_active_policy_wins(self, policy_repo, clock):
        oldest = await policy_repo.create(make_policy(name="First"))
        clock.advance(minutes=1)
        await policy_repo.create(make_policy(name="Second", response_time=5))
        await policy_repo.create(make_policy(priority=TicketPriority.LOW, name="Low"))

        found = await policy_repo.find_by_priority(TicketPriority.URGENT)

        assert found.id == oldest.id

    @pytest.mark.asyncio
    async def test_inactive_policies_are_not_resolved(self, policy_repo):
        await policy_repo.create(make_policy(is_active=False))

        assert await policy_repo.find_by_priority(TicketPriority.URGENT) is None
        assert await policy_repo.count() == 1


class TestAuditAndNotifications:

    @pytest.mark.asyncio
    async def test_audit_changes_are_stored(self, session, clock):
        audit = SQLAlchemyAuditService(session, clock, autocommit=True)

        await audit.log_change(
            AuditAction.UPDATE,
            "tickets",
            "ticket-1",
            {"status": {"old": TicketStatus.NEW, "new": TicketStatus.OPEN}},
            actor="agent-1",
        )

        [entry] = await audit.list_for_record("tickets", "ticket-1")
        assert entry["action"] == "update"
        assert entry["changes"] == {"status": {"old": "new", "new": "open"}}
        assert entry["actor"] == "agent-1"

    @pytest.mark.asyncio
    async def test_notifications_are_listed_per_user(self, session, clock):
        repo = SQLAlchemyNotificationRepository(session, clock, autocommit=True)

        await repo.create("lead-1", "Ticket Escalated", "msg", NotificationType.SLA, "/t/1")
        await repo.create("lead-2", "Ticket Assigned", "msg", NotificationType.TASK)

        [notification] = await repo.list_for_user("lead-1")
        assert notification["type"] == "sla"
        assert notification["link"] == "/t/1"
        assert notification["is_read"] is False
