"""
Ticket Application Services
============================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories), not concrete implementations
"""

from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union
from uuid import UUID

from crm_tickets.config import (
    CLOSED_STATUSES,
    AuditAction,
    BreachType,
    NotificationType,
    TicketChannel,
    TicketPriority,
    TicketStatus,
    settings,
)
from crm_tickets.core import (
    Clock,
    ConcurrencyConflictException,
    ResourceNotFoundException,
    ValidationException,
    parse_identifier,
    utc_now,
)
from crm_tickets.shared.infrastructure.logging import get_logger
from crm_tickets.tickets.domain import (
    BreachDetector,
    DueDateCalculator,
    EscalationHistoryEntry,
    EscalationRule,
    SLAMetrics,
    SLAPolicy,
    SLAStatus,
    SLAStatusCalculator,
    SLATrend,
    SLAViolation,
    StatusHistoryEntry,
    Ticket,
    TicketComment,
    TicketStateMachine,
)

logger = get_logger(__name__)

TICKETS_MODULE = "tickets"
SLA_MODULE = "sla_policies"

Changes = Dict[str, Dict[str, Any]]


def change(old: Any, new: Any) -> Dict[str, Any]:
    """One ``{old, new}`` pair of an audit change map."""
    return {"old": old, "new": new}


# ========== Repository Interfaces (Dependency Inversion) ==========

class ITicketRepository(ABC):
    """Interface for ticket data access.

    Every write bumps ``version`` and stamps ``updated_at``.
    """

    @abstractmethod
    async def create(self, ticket: Ticket) -> Ticket:
        """Persist a new ticket."""

    @abstractmethod
    async def get_by_id(self, ticket_id: Union[str, UUID]) -> Optional[Ticket]:
        """Get ticket by ID."""

    @abstractmethod
    async def list(
        self,
        filters: Dict[str, Any],
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc"
    ) -> Tuple[List[Ticket], int]:
        """List tickets matching filters. Returns (page of tickets, total)."""

    @abstractmethod
    async def update(
        self,
        ticket_id: Union[str, UUID],
        fields: Dict[str, Any],
        expected_version: Optional[int] = None
    ) -> Ticket:
        """Update plain fields, optionally guarded by ``expected_version``."""

    @abstractmethod
    async def update_status(self, ticket: Ticket, entry: StatusHistoryEntry) -> Ticket:
        """Persist a status transition already applied to ``ticket`` in memory.

        Guarded by ``ticket.version``.
        """

    @abstractmethod
    async def apply_escalation(self, ticket: Ticket, entry: EscalationHistoryEntry) -> Ticket:
        """Atomically bump the level, set the target and append ``entry``.

        Guarded by ``ticket.version``.
        """

    @abstractmethod
    async def mark_first_response(self, ticket_id: Union[str, UUID], responded_at: datetime) -> bool:
        """Stamp ``first_response_at`` if still unset. Returns True if stamped."""

    @abstractmethod
    async def delete(self, ticket_id: Union[str, UUID]) -> None:
        """Delete a ticket and its comments."""

    @abstractmethod
    async def find_overdue_sla(self, now: datetime) -> List[Ticket]:
        """Tickets currently in response or resolution breach."""

    @abstractmethod
    async def find_open_page(
        self,
        after: Optional[Tuple[datetime, str]],
        limit: int
    ) -> List[Ticket]:
        """Open tickets ordered by (created_at, id), strictly after the cursor."""

    @abstractmethod
    async def next_ticket_number(self) -> str:
        """Next human ticket number."""


class ITicketCommentRepository(ABC):
    """Interface for ticket comment data access."""

    @abstractmethod
    async def create(self, comment: TicketComment) -> TicketComment:
        """Persist a new comment."""

    @abstractmethod
    async def list_by_ticket(self, ticket_id: Union[str, UUID]) -> List[TicketComment]:
        """Comments of a ticket, oldest first."""


class ISLAPolicyRepository(ABC):
    """Interface for SLA policy data access."""

    @abstractmethod
    async def create(self, policy: SLAPolicy) -> SLAPolicy:
        """Persist a new policy."""

    @abstractmethod
    async def get_by_id(self, policy_id: Union[str, UUID]) -> Optional[SLAPolicy]:
        """Get policy by ID."""

    @abstractmethod
    async def list_all(self, active_only: bool = False) -> List[SLAPolicy]:
        """All policies, oldest first."""

    @abstractmethod
    async def find_by_priority(self, priority: TicketPriority) -> Optional[SLAPolicy]:
        """First active policy for ``priority``, oldest first."""

    @abstractmethod
    async def update(self, policy_id: Union[str, UUID], fields: Dict[str, Any]) -> SLAPolicy:
        """Update policy fields."""

    @abstractmethod
    async def delete(self, policy_id: Union[str, UUID]) -> None:
        """Delete a policy."""

    @abstractmethod
    async def count(self) -> int:
        """Number of stored policies."""


class IEscalationRuleRepository(ABC):
    """Interface for escalation rule data access."""

    @abstractmethod
    async def create(self, rule: EscalationRule) -> EscalationRule:
        """Persist a new rule."""

    @abstractmethod
    async def get_by_id(self, rule_id: Union[str, UUID]) -> Optional[EscalationRule]:
        """Get rule by ID."""

    @abstractmethod
    async def list_all(self) -> List[EscalationRule]:
        """All rules, oldest first."""

    @abstractmethod
    async def find_active(self) -> List[EscalationRule]:
        """Active rules, oldest first."""

    @abstractmethod
    async def update(self, rule_id: Union[str, UUID], fields: Dict[str, Any]) -> EscalationRule:
        """Update rule fields."""

    @abstractmethod
    async def delete(self, rule_id: Union[str, UUID]) -> None:
        """Delete a rule."""

    @abstractmethod
    async def count(self) -> int:
        """Number of stored rules."""


class INotificationService(ABC):
    """Interface for in-app notifications."""

    @abstractmethod
    async def create_notification(
        self,
        user_id: str,
        title: str,
        message: str,
        notification_type: NotificationType,
        link: Optional[str] = None
    ) -> None:
        """Deliver a notification to ``user_id``."""


class IAuditService(ABC):
    """Interface for audit logging."""

    @abstractmethod
    async def log_change(
        self,
        action: AuditAction,
        module: str,
        record_id: str,
        changes: Changes,
        actor: Optional[str] = None
    ) -> None:
        """Record a ``{field: {old, new}}`` change map."""


# ========== Application Services ==========

class SLAPolicyResolver:
    """Selects the SLA policy that governs a priority."""

    def __init__(self, policy_repository: ISLAPolicyRepository):
        self._policy_repo = policy_repository

    async def resolve(self, priority: TicketPriority) -> Optional[SLAPolicy]:
        """
        Resolve the active policy for ``priority``.

        Returns:
            The first active policy, or None when no policy applies
        """
        policy = await self._policy_repo.find_by_priority(priority)
        if policy is None:
            logger.info(
                "No active SLA policy for priority",
                extra={"priority": priority.value}
            )
        return policy


def link_for(ticket_id: str) -> str:
    return settings.ticket_link_template.format(ticket_id=ticket_id)


class TicketService:
    """
    Service for the ticket lifecycle: creation with SLA deadlines, status
    transitions, assignment and comments.
    """

    # Status writes are retried this many times on a version conflict.
    STATUS_WRITE_ATTEMPTS = 3

    def __init__(
        self,
        ticket_repository: ITicketRepository,
        comment_repository: ITicketCommentRepository,
        policy_resolver: SLAPolicyResolver,
        audit_service: IAuditService,
        notification_service: INotificationService,
        clock: Clock = utc_now,
        system_user_id: Optional[str] = None
    ):
        self._ticket_repo = ticket_repository
        self._comment_repo = comment_repository
        self._resolver = policy_resolver
        self._audit = audit_service
        self._notifications = notification_service
        self._clock = clock
        self._system_user_id = system_user_id or settings.system_user_id

    async def _get_or_raise(self, ticket_id: Union[str, UUID]) -> Ticket:
        tid = parse_identifier(ticket_id, "ticket")
        ticket = await self._ticket_repo.get_by_id(tid)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", str(tid))
        return ticket

    # ----- creation -----

    async def create_ticket(self, ticket: Ticket, created_by: str) -> Ticket:
        """
        Create a ticket: number, initial history entry, SLA deadlines.

        A missing SLA policy is not an error; the ticket is created
        without SLA fields.
        """
        if not ticket.subject or not ticket.subject.strip():
            raise ValidationException("subject is required")

        now = self._clock()
        ticket.ticket_number = await self._ticket_repo.next_ticket_number()
        ticket.status = TicketStatus.NEW
        TicketStateMachine.initial_entry(ticket, created_by, now)
        ticket.escalation_level = 0
        ticket.escalation_history = []
        ticket.escalated_to = None
        ticket.created_at = now
        ticket.updated_at = now
        await self.calculate_due_dates(ticket, now)

        created = await self._ticket_repo.create(ticket)

        await self._audit.log_change(
            AuditAction.CREATE,
            TICKETS_MODULE,
            created.id,
            {
                "ticket_number": change(None, created.ticket_number),
                "subject": change(None, created.subject),
                "priority": change(None, created.priority.value),
                "status": change(None, created.status.value),
            },
            actor=created_by,
        )

        logger.info(
            "Ticket created",
            extra={
                "ticket_id": created.id,
                "ticket_number": created.ticket_number,
                "channel": created.channel.value,
                "priority": created.priority.value,
                "sla_policy_id": created.sla_policy_id,
            }
        )
        return created

    async def create_ticket_from_email(
        self,
        subject: str,
        description: str,
        customer_email: str,
        customer_name: str = "",
        metadata: Optional[Dict[str, Any]] = None
    ) -> Ticket:
        ticket = Ticket(
            id=None,
            subject=subject,
            description=description,
            channel=TicketChannel.EMAIL,
            priority=TicketPriority.MEDIUM,
            customer_email=customer_email,
            customer_name=customer_name,
            channel_metadata=metadata or {},
        )
        return await self.create_ticket(ticket, self._system_user_id)

    async def create_ticket_from_chat(
        self,
        subject: str,
        description: str,
        customer_id: Optional[str] = None,
        customer_email: str = "",
        customer_name: str = "",
        metadata: Optional[Dict[str, Any]] = None
    ) -> Ticket:
        ticket = Ticket(
            id=None,
            subject=subject,
            description=description,
            channel=TicketChannel.CHAT,
            priority=TicketPriority.MEDIUM,
            customer_id=customer_id,
            customer_email=customer_email,
            customer_name=customer_name,
            channel_metadata=metadata or {},
        )
        return await self.create_ticket(ticket, self._system_user_id)

    async def create_ticket_from_portal(self, ticket: Ticket, created_by: str) -> Ticket:
        """Portal tickets are raised by the customer themselves."""
        ticket.channel = TicketChannel.PORTAL
        ticket.customer_id = created_by
        return await self.create_ticket(ticket, created_by)

    # ----- SLA -----

    async def calculate_due_dates(self, ticket: Ticket, now: Optional[datetime] = None) -> bool:
        """
        Derive response/resolution deadlines from the ticket's priority.

        Returns:
            True if a policy applied, False if SLA fields were left unset
        """
        policy = await self._resolver.resolve(ticket.priority)
        if policy is None:
            return False
        DueDateCalculator.apply(ticket, DueDateCalculator.calculate(policy, now or self._clock()))
        return True

    async def check_sla_breach(self, ticket_id: Union[str, UUID]) -> bool:
        ticket = await self._get_or_raise(ticket_id)
        return BreachDetector.check_sla_breach(ticket, self._clock())

    async def get_overdue_sla_tickets(self) -> List[Ticket]:
        return await self._ticket_repo.find_overdue_sla(self._clock())

    # ----- reads -----

    async def get_ticket(self, ticket_id: Union[str, UUID]) -> Ticket:
        return await self._get_or_raise(ticket_id)

    async def list_tickets(
        self,
        filters: Optional[Dict[str, Any]] = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc"
    ) -> Tuple[List[Ticket], int]:
        return await self._ticket_repo.list(filters or {}, page, limit, sort_by, sort_order)

    async def get_my_tickets(self, user_id: str, page: int = 1, limit: int = 20) -> Tuple[List[Ticket], int]:
        return await self._ticket_repo.list({"assigned_to": user_id}, page, limit)

    async def get_customer_tickets(
        self, customer_id: str, page: int = 1, limit: int = 20
    ) -> Tuple[List[Ticket], int]:
        return await self._ticket_repo.list({"customer_id": customer_id}, page, limit)

    async def get_status_history(self, ticket_id: Union[str, UUID]) -> List[StatusHistoryEntry]:
        ticket = await self._get_or_raise(ticket_id)
        return ticket.status_history

    # ----- writes -----

    UPDATABLE_FIELDS = (
        "subject",
        "description",
        "priority",
        "category",
        "tags",
        "assigned_group",
        "customer_email",
        "customer_name",
    )
    AUDITED_FIELDS = ("subject", "description", "priority")

    async def update_ticket(
        self,
        ticket_id: Union[str, UUID],
        updates: Dict[str, Any],
        updated_by: str
    ) -> Ticket:
        """
        Update editable ticket fields.

        Changing the priority does not recompute SLA deadlines.
        """
        ticket = await self._get_or_raise(ticket_id)
        fields = {k: v for k, v in updates.items() if k in self.UPDATABLE_FIELDS}
        if "priority" in fields:
            try:
                fields["priority"] = TicketPriority(fields["priority"])
            except ValueError:
                raise ValidationException("invalid priority", {"priority": str(fields["priority"])})
        if "subject" in fields and not (fields["subject"] or "").strip():
            raise ValidationException("subject is required")
        if not fields:
            return ticket

        updated = await self._ticket_repo.update(ticket.id, fields)

        changes: Changes = {}
        for name in self.AUDITED_FIELDS:
            if name in fields:
                old = getattr(ticket, name)
                new = getattr(updated, name)
                if old != new:
                    changes[name] = change(plain_value(old), plain_value(new))
        if changes:
            await self._audit.log_change(
                AuditAction.UPDATE, TICKETS_MODULE, updated.id, changes, actor=updated_by
            )
        return updated

    async def delete_ticket(self, ticket_id: Union[str, UUID], deleted_by: Optional[str] = None) -> None:
        ticket = await self._get_or_raise(ticket_id)
        await self._ticket_repo.delete(ticket.id)
        await self._audit.log_change(
            AuditAction.DELETE,
            TICKETS_MODULE,
            ticket.id,
            {"ticket_number": change(ticket.ticket_number, None)},
            actor=deleted_by,
        )
        logger.info("Ticket deleted", extra={"ticket_id": ticket.id})

    async def update_status(
        self,
        ticket_id: Union[str, UUID],
        new_status: Union[str, TicketStatus],
        comment: Optional[str],
        updated_by: str
    ) -> Ticket:
        """
        Transition a ticket to ``new_status``.

        Status and history are written in one versioned update; on a
        version conflict the ticket is re-read and the transition retried.

        Raises:
            ValidationException: if ``new_status`` is not a valid status
            ResourceNotFoundException: if the ticket does not exist
        """
        status = TicketStateMachine.coerce_status(new_status)
        tid = parse_identifier(ticket_id, "ticket")

        for attempt in range(1, self.STATUS_WRITE_ATTEMPTS + 1):
            ticket = await self._get_or_raise(tid)
            old_status = ticket.status
            entry = TicketStateMachine.transition(ticket, status, updated_by, self._clock(), comment)
            try:
                updated = await self._ticket_repo.update_status(ticket, entry)
            except ConcurrencyConflictException:
                if attempt == self.STATUS_WRITE_ATTEMPTS:
                    raise
                logger.warning(
                    "Version conflict on status update, retrying",
                    extra={"ticket_id": ticket.id, "attempt": attempt}
                )
                continue

            await self._audit.log_change(
                AuditAction.UPDATE,
                TICKETS_MODULE,
                updated.id,
                {"status": change(old_status.value, updated.status.value)},
                actor=updated_by,
            )
            logger.info(
                "Ticket status updated",
                extra={
                    "ticket_id": updated.id,
                    "old_status": old_status.value,
                    "new_status": updated.status.value,
                }
            )
            return updated

    async def assign_ticket(
        self,
        ticket_id: Union[str, UUID],
        assigned_to: str,
        assigned_by: str
    ) -> Ticket:
        if not assigned_to:
            raise ValidationException("assignee is required")
        ticket = await self._get_or_raise(ticket_id)
        updated = await self._ticket_repo.update(ticket.id, {"assigned_to": assigned_to})

        await self._audit.log_change(
            AuditAction.UPDATE,
            TICKETS_MODULE,
            updated.id,
            {"assigned_to": change(ticket.assigned_to, assigned_to)},
            actor=assigned_by,
        )
        await self._notify(
            assigned_to,
            "Ticket Assigned",
            f"You have been assigned ticket {updated.ticket_number}: {updated.subject}",
            NotificationType.TASK,
            updated.id,
        )
        return updated

    async def unassign_ticket(self, ticket_id: Union[str, UUID], unassigned_by: str) -> Ticket:
        ticket = await self._get_or_raise(ticket_id)
        updated = await self._ticket_repo.update(ticket.id, {"assigned_to": None})
        await self._audit.log_change(
            AuditAction.UPDATE,
            TICKETS_MODULE,
            updated.id,
            {"assigned_to": change(ticket.assigned_to, None)},
            actor=unassigned_by,
        )
        return updated

    # ----- comments -----

    async def add_comment(self, ticket_id: Union[str, UUID], comment: TicketComment) -> TicketComment:
        """
        Add a comment. The first non-internal comment stamps the ticket's
        first response; later comments leave it untouched.
        """
        if not comment.content or not comment.content.strip():
            raise ValidationException("comment content is required")
        ticket = await self._get_or_raise(ticket_id)

        now = self._clock()
        comment.ticket_id = ticket.id
        comment.created_at = now
        comment.updated_at = now
        created = await self._comment_repo.create(comment)

        if not comment.is_internal and ticket.first_response_at is None:
            stamped = await self._ticket_repo.mark_first_response(ticket.id, now)
            if stamped:
                logger.info(
                    "First response recorded",
                    extra={"ticket_id": ticket.id, "responded_at": now.isoformat()}
                )
        return created

    async def list_comments(self, ticket_id: Union[str, UUID]) -> List[TicketComment]:
        ticket = await self._get_or_raise(ticket_id)
        return await self._comment_repo.list_by_ticket(ticket.id)

    async def _notify(
        self,
        user_id: str,
        title: str,
        message: str,
        notification_type: NotificationType,
        ticket_id: str
    ) -> None:
        try:
            await self._notifications.create_notification(
                user_id, title, message, notification_type, link_for(ticket_id)
            )
        except Exception as e:
            logger.warning(
                "Notification failed",
                extra={"user_id": user_id, "ticket_id": ticket_id, "error": str(e)}
            )


def plain_value(value: Any) -> Any:
    return getattr(value, "value", value)


class SLAService:
    """
    Service for SLA policy administration and SLA reporting.
    """

    # Page size used when scanning tickets for reports.
    REPORT_PAGE_SIZE = 500

    POLICY_FIELDS = (
        "name",
        "description",
        "priority",
        "response_time",
        "resolution_time",
        "is_business_hours_only",
        "business_hours",
        "is_active",
    )

    def __init__(
        self,
        policy_repository: ISLAPolicyRepository,
        ticket_repository: ITicketRepository,
        audit_service: Optional[IAuditService] = None,
        clock: Clock = utc_now
    ):
        self._policy_repo = policy_repository
        self._ticket_repo = ticket_repository
        self._audit = audit_service
        self._clock = clock

    # ----- policy CRUD -----

    @staticmethod
    def _validate_windows(response_time: int, resolution_time: int) -> None:
        if response_time <= 0 or resolution_time <= 0:
            raise ValidationException(
                "SLA windows must be positive",
                {"response_time": response_time, "resolution_time": resolution_time}
            )

    async def create_policy(self, policy: SLAPolicy, created_by: Optional[str] = None) -> SLAPolicy:
        self._validate_windows(policy.response_time, policy.resolution_time)
        now = self._clock()
        policy.created_at = now
        policy.updated_at = now
        created = await self._policy_repo.create(policy)
        if self._audit:
            await self._audit.log_change(
                AuditAction.CREATE,
                SLA_MODULE,
                created.id,
                {"name": change(None, created.name), "priority": change(None, created.priority.value)},
                actor=created_by,
            )
        logger.info(
            "SLA policy created",
            extra={"policy_id": created.id, "priority": created.priority.value}
        )
        return created

    async def get_policy(self, policy_id: Union[str, UUID]) -> SLAPolicy:
        pid = parse_identifier(policy_id, "SLA policy")
        policy = await self._policy_repo.get_by_id(pid)
        if policy is None:
            raise ResourceNotFoundException("SLAPolicy", str(pid))
        return policy

    async def list_policies(self, active_only: bool = False) -> List[SLAPolicy]:
        return await self._policy_repo.list_all(active_only=active_only)

    async def update_policy(
        self,
        policy_id: Union[str, UUID],
        updates: Dict[str, Any],
        updated_by: Optional[str] = None
    ) -> SLAPolicy:
        policy = await self.get_policy(policy_id)
        fields = {k: v for k, v in updates.items() if k in self.POLICY_FIELDS}
        if "priority" in fields:
            try:
                fields["priority"] = TicketPriority(fields["priority"])
            except ValueError:
                raise ValidationException("invalid priority", {"priority": str(fields["priority"])})
        self._validate_windows(
            fields.get("response_time", policy.response_time),
            fields.get("resolution_time", policy.resolution_time),
        )
        if not fields:
            return policy
        updated = await self._policy_repo.update(policy.id, fields)
        if self._audit:
            changes = {
                name: change(plain_value(getattr(policy, name)), plain_value(getattr(updated, name)))
                for name in fields
                if getattr(policy, name) != getattr(updated, name)
            }
            if changes:
                await self._audit.log_change(
                    AuditAction.UPDATE, SLA_MODULE, updated.id, changes, actor=updated_by
                )
        return updated

    async def delete_policy(self, policy_id: Union[str, UUID], deleted_by: Optional[str] = None) -> None:
        policy = await self.get_policy(policy_id)
        await self._policy_repo.delete(policy.id)
        if self._audit:
            await self._audit.log_change(
                AuditAction.DELETE, SLA_MODULE, policy.id, {"name": change(policy.name, None)},
                actor=deleted_by,
            )

    # ----- reporting -----

    async def calculate_sla_status(self, ticket_id: Union[str, UUID]) -> Tuple[Ticket, SLAStatus]:
        """
        SLA view of one ticket.

        A ticket whose policy was deleted reports ``no_sla``.
        """
        tid = parse_identifier(ticket_id, "ticket")
        ticket = await self._ticket_repo.get_by_id(tid)
        if ticket is None:
            raise ResourceNotFoundException("Ticket", str(tid))

        policy = None
        if ticket.has_sla:
            policy = await self._policy_repo.get_by_id(ticket.sla_policy_id)
        return ticket, SLAStatusCalculator.calculate(ticket, policy, self._clock())

    async def _iter_tickets(self, filters: Dict[str, Any]) -> AsyncIterator[Ticket]:
        page = 1
        while True:
            tickets, total = await self._ticket_repo.list(
                filters, page, self.REPORT_PAGE_SIZE, "created_at", "asc"
            )
            for ticket in tickets:
                yield ticket
            if not tickets or page * self.REPORT_PAGE_SIZE >= total:
                break
            page += 1

    async def get_sla_metrics(self, start: datetime, end: datetime) -> SLAMetrics:
        """
        Aggregate SLA performance for tickets with a policy created in [start, end].

        A ticket counts as breached if its response or its resolution was
        late; response and resolution averages are in minutes.
        """
        if end < start:
            raise ValidationException("end must not be before start")
        now = self._clock()

        total = met = breached = 0
        response_minutes: List[float] = []
        resolution_minutes: List[float] = []

        filters = {"created_from": start, "created_to": end, "has_sla_policy": True}
        async for ticket in self._iter_tickets(filters):
            total += 1
            response_late = False
            if ticket.response_due_at is not None:
                if ticket.first_response_at is not None:
                    response_late = ticket.first_response_at > ticket.response_due_at
                    response_minutes.append(_minutes(ticket.first_response_at - ticket.created_at))
                else:
                    response_late = now > ticket.response_due_at

            resolution_late = False
            finished_at = ticket.resolved_at or ticket.closed_at
            if ticket.due_at is not None:
                if finished_at is not None:
                    resolution_late = finished_at > ticket.due_at
                else:
                    resolution_late = now > ticket.due_at
            if finished_at is not None:
                resolution_minutes.append(_minutes(finished_at - ticket.created_at))

            if response_late or resolution_late:
                breached += 1
            else:
                met += 1

        return SLAMetrics(
            total_tickets=total,
            sla_met=met,
            sla_breached=breached,
            compliance_rate=round(met / total * 100, 2) if total else 0.0,
            avg_response_time=_average(response_minutes),
            avg_resolution_time=_average(resolution_minutes),
        )

    async def get_sla_violations(self) -> List[SLAViolation]:
        """Active violations on open tickets, one per breached deadline."""
        now = self._clock()
        violations: List[SLAViolation] = []
        filters = {"exclude_statuses": list(CLOSED_STATUSES), "has_sla_policy": True}

        async for ticket in self._iter_tickets(filters):
            if BreachDetector.response_breached(ticket, now):
                violations.append(SLAViolation(
                    ticket_id=ticket.id,
                    ticket_number=ticket.ticket_number,
                    subject=ticket.subject,
                    priority=ticket.priority,
                    breach_type=BreachType.RESPONSE,
                    breached_at=ticket.response_due_at,
                    time_overdue=int(_minutes(now - ticket.response_due_at)),
                ))
            if BreachDetector.resolution_breached(ticket, now):
                violations.append(SLAViolation(
                    ticket_id=ticket.id,
                    ticket_number=ticket.ticket_number,
                    subject=ticket.subject,
                    priority=ticket.priority,
                    breach_type=BreachType.RESOLUTION,
                    breached_at=ticket.due_at,
                    time_overdue=int(_minutes(now - ticket.due_at)),
                ))
        return violations

    async def get_sla_trends(self, days: int = 7) -> List[SLATrend]:
        """
        Resolution outcomes per creation day for the last ``days`` days.

        Tickets still open and past their resolution deadline count as
        breached; tickets still within their window are only in ``total``.
        """
        if days < 1:
            raise ValidationException("days must be at least 1", {"days": days})
        now = self._clock()
        first_day = (now - timedelta(days=days - 1)).date()

        buckets: "OrderedDict[str, Dict[str, int]]" = OrderedDict()
        for offset in range(days):
            day = (first_day + timedelta(days=offset)).isoformat()
            buckets[day] = {"met": 0, "breached": 0, "total": 0}

        start = datetime.combine(first_day, datetime.min.time(), tzinfo=now.tzinfo)
        filters = {"created_from": start, "created_to": now, "has_sla_policy": True}
        async for ticket in self._iter_tickets(filters):
            bucket = buckets.get(ticket.created_at.date().isoformat())
            if bucket is None:
                continue
            bucket["total"] += 1
            finished_at = ticket.resolved_at or ticket.closed_at
            if ticket.due_at is None:
                continue
            if finished_at is not None:
                if finished_at > ticket.due_at:
                    bucket["breached"] += 1
                else:
                    bucket["met"] += 1
            elif now > ticket.due_at:
                bucket["breached"] += 1

        return [SLATrend(date=day, **counts) for day, counts in buckets.items()]


def _minutes(delta: timedelta) -> float:
    return delta.total_seconds() / 60


def _average(values: List[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0
