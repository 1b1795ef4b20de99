"""
Ticket Application Layer
========================

Contains:
- Services: ticket lifecycle, SLA administration and reporting
- Escalation: rule evaluation, escalation execution, the periodic sweep
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from crm_tickets.tickets.application.services import (
    ITicketRepository,
    ITicketCommentRepository,
    ISLAPolicyRepository,
    IEscalationRuleRepository,
    INotificationService,
    IAuditService,
    SLAPolicyResolver,
    TicketService,
    SLAService,
)
from crm_tickets.tickets.application.escalation import (
    EscalationRuleEvaluator,
    EscalationExecutor,
    EscalationSweep,
    EscalationRuleService,
    SweepResult,
)

__all__ = [
    # Repository Interfaces
    "ITicketRepository",
    "ITicketCommentRepository",
    "ISLAPolicyRepository",
    "IEscalationRuleRepository",
    "INotificationService",
    "IAuditService",
    # Services
    "SLAPolicyResolver",
    "TicketService",
    "SLAService",
    "EscalationRuleEvaluator",
    "EscalationExecutor",
    "EscalationSweep",
    "EscalationRuleService",
    "SweepResult",
]
