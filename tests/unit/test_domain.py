"""Unit tests for SLA deadlines, breach detection, the status machine and rule predicates."""

from datetime import timedelta

import pytest

from crm_tickets.config import ConditionType, SLAState, TicketPriority, TicketStatus
from crm_tickets.core import DomainException, ValidationException
from crm_tickets.tickets.domain import (
    BreachDetector,
    DueDateCalculator,
    EscalationHistoryEntry,
    EscalationRule,
    SLAPolicy,
    SLAStatusCalculator,
    Ticket,
    TicketStateMachine,
    rule_applies,
)
from tests.helpers import T0

pytestmark = pytest.mark.unit


def minutes(n: float) -> timedelta:
    return timedelta(minutes=n)


@pytest.fixture
def urgent_policy() -> SLAPolicy:
    return SLAPolicy(
        id="policy-1",
        name="Urgent SLA",
        priority=TicketPriority.URGENT,
        response_time=30,
        resolution_time=240,
    )


@pytest.fixture
def urgent_ticket(urgent_policy) -> Ticket:
    ticket = Ticket(id="ticket-1", subject="Outage", priority=TicketPriority.URGENT, created_at=T0, updated_at=T0)
    TicketStateMachine.initial_entry(ticket, "agent-1", T0)
    DueDateCalculator.apply(ticket, DueDateCalculator.calculate(urgent_policy, T0))
    return ticket


def rule(condition_type: ConditionType, escalate_after: int = 60, **kwargs) -> EscalationRule:
    kwargs.setdefault("id", "rule-1")
    return EscalationRule(
        name="rule",
        condition_type=condition_type,
        escalate_after=escalate_after,
        escalate_to="lead-1",
        **kwargs,
    )


class TestDueDates:

    def test_deadlines_are_offsets_from_creation(self, urgent_policy):
        due = DueDateCalculator.calculate(urgent_policy, T0)

        assert due.policy_id == "policy-1"
        assert due.response_due_at == T0 + minutes(30)
        assert due.due_at == T0 + minutes(240)

    def test_business_hours_flag_does_not_shift_deadlines(self, urgent_policy):
        urgent_policy.is_business_hours_only = True
        urgent_policy.business_hours = {"start": "09:00", "end": "17:00"}

        due = DueDateCalculator.calculate(urgent_policy, T0)

        assert due.due_at == T0 + minutes(240)


class TestBreachDetector:

    def test_resolution_breach_is_strictly_after_deadline(self, urgent_ticket):
        assert not BreachDetector.resolution_breached(urgent_ticket, T0 + minutes(239))
        assert not BreachDetector.resolution_breached(urgent_ticket, T0 + minutes(240))
        assert BreachDetector.resolution_breached(urgent_ticket, T0 + minutes(241))

    def test_response_breach_clears_once_responded(self, urgent_ticket):
        assert BreachDetector.response_breached(urgent_ticket, T0 + minutes(31))

        urgent_ticket.mark_first_response(T0 + minutes(10))

        assert not BreachDetector.response_breached(urgent_ticket, T0 + minutes(31))

    def test_check_sla_breach_combines_both_deadlines(self, urgent_ticket):
        urgent_ticket.first_response_at = T0 + minutes(5)

        assert not BreachDetector.check_sla_breach(urgent_ticket, T0 + minutes(239))
        assert BreachDetector.check_sla_breach(urgent_ticket, T0 + minutes(241))

    def test_closed_ticket_is_not_in_resolution_breach(self, urgent_ticket):
        TicketStateMachine.transition(urgent_ticket, TicketStatus.CLOSED, "agent-1", T0 + minutes(300))

        assert not BreachDetector.resolution_breached(urgent_ticket, T0 + minutes(400))

    def test_ticket_without_sla_never_breaches(self):
        ticket = Ticket(id="t", subject="No SLA", created_at=T0)

        assert not BreachDetector.check_sla_breach(ticket, T0 + timedelta(days=365))


class TestSLAStatusCalculator:

    def test_no_policy_reports_no_sla(self, urgent_ticket):
        status = SLAStatusCalculator.calculate(urgent_ticket, None, T0)

        assert status.status == SLAState.NO_SLA

    def test_on_time_with_remaining_minutes(self, urgent_ticket, urgent_policy):
        status = SLAStatusCalculator.calculate(urgent_ticket, urgent_policy, T0 + minutes(10))

        assert status.status == SLAState.ON_TIME
        assert status.response_time_remaining == 20
        assert status.resolution_time_remaining == 230

    def test_at_risk_inside_last_quarter_of_window(self, urgent_ticket, urgent_policy):
        status = SLAStatusCalculator.calculate(urgent_ticket, urgent_policy, T0 + minutes(25))

        assert status.status == SLAState.AT_RISK
        assert status.response_time_remaining == 5

    def test_breached_when_response_is_late(self, urgent_ticket, urgent_policy):
        status = SLAStatusCalculator.calculate(urgent_ticket, urgent_policy, T0 + minutes(31))

        assert status.status == SLAState.BREACHED
        assert status.is_response_breached
        assert not status.is_resolution_breached

    def test_late_first_response_stays_breached(self, urgent_ticket, urgent_policy):
        urgent_ticket.first_response_at = T0 + minutes(45)

        status = SLAStatusCalculator.calculate(urgent_ticket, urgent_policy, T0 + minutes(50))

        assert status.is_response_breached
        assert status.response_time_remaining is None


class TestStateMachine:

    def test_initial_entry_matches_status(self, urgent_ticket):
        assert urgent_ticket.status == TicketStatus.NEW
        assert len(urgent_ticket.status_history) == 1
        assert urgent_ticket.status_history[0].changed_by == "agent-1"

    def test_transition_appends_history_and_stamps_resolution(self, urgent_ticket):
        at = T0 + minutes(90)

        entry = TicketStateMachine.transition(urgent_ticket, "resolved", "agent-2", at, "fixed")

        assert urgent_ticket.status == TicketStatus.RESOLVED
        assert urgent_ticket.status_history[-1] == entry
        assert entry.comment == "fixed"
        assert urgent_ticket.resolved_at == at
        assert len(urgent_ticket.status_history) == 2

    def test_closed_ticket_can_be_reopened(self, urgent_ticket):
        TicketStateMachine.transition(urgent_ticket, TicketStatus.CLOSED, "agent-1", T0 + minutes(1))
        TicketStateMachine.transition(urgent_ticket, TicketStatus.OPEN, "agent-1", T0 + minutes(2))

        assert urgent_ticket.status == TicketStatus.OPEN
        assert [e.status for e in urgent_ticket.status_history] == [
            TicketStatus.NEW, TicketStatus.CLOSED, TicketStatus.OPEN
        ]

    def test_unknown_status_is_rejected_without_side_effects(self, urgent_ticket):
        with pytest.raises(ValidationException):
            TicketStateMachine.transition(urgent_ticket, "escalated", "agent-1", T0)

        assert urgent_ticket.status == TicketStatus.NEW
        assert len(urgent_ticket.status_history) == 1

    def test_invariant_check_detects_level_mismatch(self, urgent_ticket):
        urgent_ticket.escalation_level = 1

        with pytest.raises(DomainException):
            urgent_ticket.check_invariants()


class TestRulePredicates:

    def test_no_response_boundary(self, urgent_ticket):
        no_response = rule(ConditionType.NO_RESPONSE, 60)

        assert not rule_applies(no_response, urgent_ticket, T0 + minutes(59))
        assert not rule_applies(no_response, urgent_ticket, T0 + minutes(60))
        assert rule_applies(no_response, urgent_ticket, T0 + minutes(61))

    def test_no_response_ignores_answered_tickets(self, urgent_ticket):
        urgent_ticket.first_response_at = T0 + minutes(1)

        assert not rule_applies(rule(ConditionType.NO_RESPONSE, 60), urgent_ticket, T0 + minutes(600))

    def test_no_response_restarts_after_its_own_escalation(self, urgent_ticket):
        no_response = rule(ConditionType.NO_RESPONSE, 60)
        urgent_ticket.escalation_history = [
            EscalationHistoryEntry(
                level=1, escalated_to="lead-1", escalated_at=T0 + minutes(61), reason="r", rule_id="rule-1"
            )
        ]
        urgent_ticket.escalation_level = 1

        assert not rule_applies(no_response, urgent_ticket, T0 + minutes(62))
        assert rule_applies(no_response, urgent_ticket, T0 + minutes(122))

    def test_other_rules_escalations_do_not_reset_no_response(self, urgent_ticket):
        urgent_ticket.escalation_history = [
            EscalationHistoryEntry(
                level=1, escalated_to="x", escalated_at=T0 + minutes(61), reason="r", rule_id="rule-2"
            )
        ]
        urgent_ticket.escalation_level = 1

        assert rule_applies(rule(ConditionType.NO_RESPONSE, 60), urgent_ticket, T0 + minutes(62))

    def test_no_update_measures_from_last_write(self, urgent_ticket):
        urgent_ticket.updated_at = T0 + minutes(100)
        no_update = rule(ConditionType.NO_UPDATE, 30)

        assert not rule_applies(no_update, urgent_ticket, T0 + minutes(130))
        assert rule_applies(no_update, urgent_ticket, T0 + minutes(131))

    def test_sla_breach_ignores_escalate_after(self, urgent_ticket):
        breach = rule(ConditionType.SLA_BREACH, 10_000)

        assert not rule_applies(breach, urgent_ticket, T0 + minutes(240))
        assert rule_applies(breach, urgent_ticket, T0 + minutes(241))

    def test_sla_breach_needs_a_deadline(self):
        ticket = Ticket(id="t", subject="No SLA", created_at=T0, updated_at=T0)

        assert not rule_applies(rule(ConditionType.SLA_BREACH, 0), ticket, T0 + timedelta(days=30))

    def test_filters_are_applied_before_condition(self, urgent_ticket):
        later = T0 + minutes(61)

        assert not rule_applies(
            rule(ConditionType.NO_RESPONSE, 60, priority=TicketPriority.LOW), urgent_ticket, later
        )
        assert not rule_applies(
            rule(ConditionType.NO_RESPONSE, 60, status=TicketStatus.PENDING), urgent_ticket, later
        )
        assert not rule_applies(rule(ConditionType.NO_RESPONSE, 60, is_active=False), urgent_ticket, later)
        assert rule_applies(
            rule(ConditionType.NO_RESPONSE, 60, priority=TicketPriority.URGENT, status=TicketStatus.NEW),
            urgent_ticket,
            later,
        )
