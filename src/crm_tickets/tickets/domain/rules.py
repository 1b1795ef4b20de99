"""
Escalation rule conditions.

Each ``ConditionType`` maps to exactly one predicate; the mapping is
checked for completeness at import time so that adding a condition type
without a predicate fails fast.
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from crm_tickets.config import ConditionType
from crm_tickets.tickets.domain.entities import EscalationRule, Ticket

ConditionPredicate = Callable[[Ticket, EscalationRule, datetime], bool]


def _sla_breach(ticket: Ticket, rule: EscalationRule, now: datetime) -> bool:
    # Resolution deadline only; response state and escalate_after are ignored.
    return ticket.due_at is not None and now > ticket.due_at


def _last_escalation_by(ticket: Ticket, rule: EscalationRule) -> Optional[datetime]:
    times = [e.escalated_at for e in ticket.escalation_history if rule.id and e.rule_id == rule.id]
    return max(times) if times else None


def _no_response(ticket: Ticket, rule: EscalationRule, now: datetime) -> bool:
    if ticket.first_response_at is not None or ticket.created_at is None:
        return False
    # Measured from creation until this rule fires, then from its last escalation.
    reference = ticket.created_at
    last = _last_escalation_by(ticket, rule)
    if last is not None and last > reference:
        reference = last
    return now - reference > timedelta(minutes=rule.escalate_after)


def _no_update(ticket: Ticket, rule: EscalationRule, now: datetime) -> bool:
    # Escalating touches updated_at, so this timer restarts after every
    # escalation it causes.
    if ticket.updated_at is None:
        return False
    return now - ticket.updated_at > timedelta(minutes=rule.escalate_after)


CONDITION_PREDICATES: Dict[ConditionType, ConditionPredicate] = {
    ConditionType.SLA_BREACH: _sla_breach,
    ConditionType.NO_RESPONSE: _no_response,
    ConditionType.NO_UPDATE: _no_update,
}

_missing = set(ConditionType) - set(CONDITION_PREDICATES)
if _missing:
    raise RuntimeError(f"no predicate for condition types: {sorted(c.value for c in _missing)}")


def rule_applies(rule: EscalationRule, ticket: Ticket, now: datetime) -> bool:
    """Filters first (priority, status), then the rule's temporal condition."""
    if not rule.is_active:
        return False
    if rule.priority is not None and rule.priority != ticket.priority:
        return False
    if rule.status is not None and rule.status != ticket.status:
        return False
    return CONDITION_PREDICATES[rule.condition_type](ticket, rule, now)
