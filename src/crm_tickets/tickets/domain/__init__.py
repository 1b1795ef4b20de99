"""
Ticket Domain Layer
===================

Contains:
- Entities: Ticket, TicketComment, SLAPolicy, EscalationRule and history entries
- Value Objects: DueDates, SLAStatus, report records
- Domain Services: DueDateCalculator, BreachDetector, SLAStatusCalculator,
  TicketStateMachine, rule condition predicates

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from crm_tickets.tickets.domain.entities import (
    Ticket,
    TicketComment,
    SLAPolicy,
    EscalationRule,
    StatusHistoryEntry,
    EscalationHistoryEntry,
)
from crm_tickets.tickets.domain.value_objects import (
    DueDates,
    DueDateCalculator,
    BreachDetector,
    SLAStatus,
    SLAStatusCalculator,
    SLAViolation,
    SLAMetrics,
    SLATrend,
)
from crm_tickets.tickets.domain.state_machine import TicketStateMachine
from crm_tickets.tickets.domain.rules import CONDITION_PREDICATES, rule_applies

__all__ = [
    # Entities
    "Ticket",
    "TicketComment",
    "SLAPolicy",
    "EscalationRule",
    "StatusHistoryEntry",
    "EscalationHistoryEntry",
    # Value Objects & Services
    "DueDates",
    "DueDateCalculator",
    "BreachDetector",
    "SLAStatus",
    "SLAStatusCalculator",
    "SLAViolation",
    "SLAMetrics",
    "SLATrend",
    "TicketStateMachine",
    "CONDITION_PREDICATES",
    "rule_applies",
]
