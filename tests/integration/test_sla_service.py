"""SLAService tests: policy administration and SLA reporting."""

from datetime import timedelta

import pytest

from crm_tickets.config import BreachType, SLAState, TicketPriority, TicketStatus
from crm_tickets.core import ResourceNotFoundException, ValidationException
from tests.helpers import T0, make_policy, make_ticket

pytestmark = pytest.mark.integration


@pytest.fixture
def report_window():
    return T0 - timedelta(days=1), T0 + timedelta(hours=1)


async def three_tickets(ticket_service, ticket_repo, clock):
    """
    Three urgent tickets created at T0 under a 30/240 minute policy:
    one answered on time and resolved, one answered late, one unanswered.
    """
    on_time = await ticket_service.create_ticket(make_ticket(subject="On time"), "agent-1")
    late = await ticket_service.create_ticket(make_ticket(subject="Late answer"), "agent-1")
    silent = await ticket_service.create_ticket(make_ticket(subject="No answer"), "agent-1")

    await ticket_repo.mark_first_response(on_time.id, T0 + timedelta(minutes=10))
    await ticket_repo.mark_first_response(late.id, T0 + timedelta(minutes=40))
    clock.set(T0 + timedelta(minutes=100))
    await ticket_service.update_status(on_time.id, TicketStatus.RESOLVED, None, "agent-1")
    return on_time, late, silent


class TestPolicyAdministration:

    @pytest.mark.asyncio
    async def test_create_and_list(self, sla_service, audit):
        created = await sla_service.create_policy(make_policy(), "admin")
        await sla_service.create_policy(make_policy(TicketPriority.LOW, 480, 2880, is_active=False), "admin")

        assert created.id is not None
        assert len(await sla_service.list_policies()) == 2
        assert [p.id for p in await sla_service.list_policies(active_only=True)] == [created.id]
        assert audit.entries[0]["module"] == "sla_policies"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response_time,resolution_time", [(0, 240), (30, 0), (-5, 240)])
    async def test_windows_must_be_positive(self, sla_service, response_time, resolution_time):
        with pytest.raises(ValidationException):
            await sla_service.create_policy(
                make_policy(response_time=response_time, resolution_time=resolution_time)
            )

    @pytest.mark.asyncio
    async def test_update_validates_merged_windows(self, sla_service):
        policy = await sla_service.create_policy(make_policy())

        updated = await sla_service.update_policy(policy.id, {"response_time": 15}, "admin")
        assert updated.response_time == 15
        assert updated.resolution_time == 240

        with pytest.raises(ValidationException):
            await sla_service.update_policy(policy.id, {"resolution_time": 0}, "admin")

    @pytest.mark.asyncio
    async def test_delete(self, sla_service):
        policy = await sla_service.create_policy(make_policy())

        await sla_service.delete_policy(policy.id, "admin")

        with pytest.raises(ResourceNotFoundException):
            await sla_service.get_policy(policy.id)


class TestSLAStatus:

    @pytest.mark.asyncio
    async def test_status_of_ticket_with_policy(self, sla_service, ticket_service, clock):
        await sla_service.create_policy(make_policy())
        ticket = await ticket_service.create_ticket(make_ticket(), "agent-1")
        clock.advance(minutes=10)

        _, status = await sla_service.calculate_sla_status(ticket.id)

        assert status.status == SLAState.ON_TIME
        assert status.response_time_remaining == 20
        assert status.resolution_due_at == T0 + timedelta(minutes=240)

    @pytest.mark.asyncio
    async def test_deleted_policy_reports_no_sla(self, sla_service, ticket_service):
        policy = await sla_service.create_policy(make_policy())
        ticket = await ticket_service.create_ticket(make_ticket(), "agent-1")
        await sla_service.delete_policy(policy.id)

        _, status = await sla_service.calculate_sla_status(ticket.id)

        assert status.status == SLAState.NO_SLA


class TestReports:

    @pytest.mark.asyncio
    async def test_metrics(self, sla_service, ticket_service, ticket_repo, clock, report_window):
        await sla_service.create_policy(make_policy())
        await three_tickets(ticket_service, ticket_repo, clock)
        await ticket_service.create_ticket(make_ticket(priority=TicketPriority.LOW), "agent-1")
        clock.set(T0 + timedelta(minutes=120))

        metrics = await sla_service.get_sla_metrics(*report_window)

        assert metrics.total_tickets == 3
        assert metrics.sla_met == 1
        assert metrics.sla_breached == 2
        assert metrics.compliance_rate == 33.33
        assert metrics.avg_response_time == 25.0
        assert metrics.avg_resolution_time == 100.0

    @pytest.mark.asyncio
    async def test_metrics_for_empty_window(self, sla_service, report_window):
        metrics = await sla_service.get_sla_metrics(*report_window)

        assert metrics.total_tickets == 0
        assert metrics.compliance_rate == 0.0

    @pytest.mark.asyncio
    async def test_metrics_window_must_be_ordered(self, sla_service):
        with pytest.raises(ValidationException):
            await sla_service.get_sla_metrics(T0, T0 - timedelta(days=1))

    @pytest.mark.asyncio
    async def test_violations(self, sla_service, ticket_service, ticket_repo, clock):
        await sla_service.create_policy(make_policy())
        _, _, silent = await three_tickets(ticket_service, ticket_repo, clock)
        clock.set(T0 + timedelta(minutes=120))

        [violation] = await sla_service.get_sla_violations()

        assert violation.ticket_id == silent.id
        assert violation.breach_type == BreachType.RESPONSE
        assert violation.breached_at == T0 + timedelta(minutes=30)
        assert violation.time_overdue == 90

    @pytest.mark.asyncio
    async def test_trends(self, sla_service, ticket_service, ticket_repo, clock):
        await sla_service.create_policy(make_policy())
        await three_tickets(ticket_service, ticket_repo, clock)
        clock.set(T0 + timedelta(minutes=300))

        trends = await sla_service.get_sla_trends(7)

        assert len(trends) == 7
        assert trends[-1].date == T0.date().isoformat()
        assert (trends[-1].met, trends[-1].breached, trends[-1].total) == (1, 2, 3)
        assert all(t.total == 0 for t in trends[:-1])

    @pytest.mark.asyncio
    async def test_trends_need_at_least_one_day(self, sla_service):
        with pytest.raises(ValidationException):
            await sla_service.get_sla_trends(0)
