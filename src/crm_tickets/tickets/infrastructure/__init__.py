"""
Ticket Infrastructure Layer
===========================

Contains:
- Models: SQLAlchemy ORM models
- Repositories: Concrete repository implementations
- External: Slack, notifications, seed data, scheduler
"""

from crm_tickets.tickets.infrastructure.models import (
    TicketModel,
    TicketCommentModel,
    SLAPolicyModel,
    EscalationRuleModel,
    NotificationModel,
    AuditLogModel,
)
from crm_tickets.tickets.infrastructure.repositories import (
    SQLAlchemyTicketRepository,
    SQLAlchemyTicketCommentRepository,
    SQLAlchemySLAPolicyRepository,
    SQLAlchemyEscalationRuleRepository,
    SQLAlchemyNotificationRepository,
    SQLAlchemyAuditService,
)
from crm_tickets.tickets.infrastructure.external import (
    CircuitBreaker,
    SlackClient,
    SlackMessage,
    NotificationService,
    EscalationScheduler,
    SeedData,
    load_seed_file,
    apply_seed,
)

__all__ = [
    "TicketModel",
    "TicketCommentModel",
    "SLAPolicyModel",
    "EscalationRuleModel",
    "NotificationModel",
    "AuditLogModel",
    "SQLAlchemyTicketRepository",
    "SQLAlchemyTicketCommentRepository",
    "SQLAlchemySLAPolicyRepository",
    "SQLAlchemyEscalationRuleRepository",
    "SQLAlchemyNotificationRepository",
    "SQLAlchemyAuditService",
    "CircuitBreaker",
    "SlackClient",
    "SlackMessage",
    "NotificationService",
    "EscalationScheduler",
    "SeedData",
    "load_seed_file",
    "apply_seed",
]
