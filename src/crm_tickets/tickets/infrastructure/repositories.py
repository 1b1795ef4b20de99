"""
Ticket Infrastructure Repositories
===================================

Concrete implementations of repository interfaces using SQLAlchemy.

Ticket writes are single UPDATE statements that bump ``version`` and
stamp ``updated_at``; guarded writes add ``version = :expected`` to the
WHERE clause and report a conflict when no row matched.

With ``autocommit=True`` every write is committed on its own, so a
failure on one ticket does not roll back work already done for others.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import UUID, uuid4

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from crm_tickets.config import (
    CLOSED_STATUSES,
    TICKET_NUMBER_PREFIX,
    TICKET_NUMBER_WIDTH,
    AuditAction,
    ConditionType,
    EscalationTargetType,
    TicketChannel,
    TicketPriority,
    TicketStatus,
)
from crm_tickets.core import (
    Clock,
    ConcurrencyConflictException,
    RepositoryException,
    ResourceNotFoundException,
    ensure_utc,
    parse_identifier,
    utc_now,
)
from crm_tickets.shared.infrastructure.logging import get_logger
from crm_tickets.tickets.application.services import (
    Changes,
    IAuditService,
    IEscalationRuleRepository,
    ISLAPolicyRepository,
    ITicketCommentRepository,
    ITicketRepository,
)
from crm_tickets.tickets.domain import (
    EscalationHistoryEntry,
    EscalationRule,
    SLAPolicy,
    StatusHistoryEntry,
    Ticket,
    TicketComment,
)
from crm_tickets.tickets.infrastructure.models import (
    AuditLogModel,
    EscalationRuleModel,
    NotificationModel,
    SLAPolicyModel,
    TicketCommentModel,
    TicketModel,
)

logger = get_logger(__name__)

CLOSED_STATUS_VALUES = [s.value for s in CLOSED_STATUSES]

TICKET_SORT_COLUMNS = {
    "created_at": TicketModel.created_at,
    "updated_at": TicketModel.updated_at,
    "due_at": TicketModel.due_at,
    "priority": TicketModel.priority,
    "status": TicketModel.status,
    "ticket_number": TicketModel.ticket_number,
}


def _db_value(value: Any) -> Any:
    """Enum members are stored by value."""
    return value.value if isinstance(value, Enum) else value


class _SQLAlchemyRepository:
    """Session, clock and commit handling shared by the repositories."""

    def __init__(self, session: AsyncSession, clock: Clock = utc_now, autocommit: bool = False):
        self._session = session
        self._clock = clock
        self._autocommit = autocommit

    async def _persist(self) -> None:
        await self._session.flush()
        if self._autocommit:
            await self._session.commit()

    async def _persist_isolated(self, model: Any) -> None:
        """
        Write ``model`` inside a savepoint. A failure rolls back only this
        row, leaving earlier writes of a shared request session intact.
        """
        async with self._session.begin_nested():
            self._session.add(model)
            await self._session.flush()
        if self._autocommit:
            await self._session.commit()

    async def _fail(
        self, operation: str, error: SQLAlchemyError, rollback: bool = True, **context: Any
    ) -> RepositoryException:
        if rollback:
            await self._session.rollback()
        logger.error(
            "Repository operation failed",
            extra={"operation": operation, "error": str(error), **context}
        )
        return RepositoryException(f"{operation} failed", {"error": str(error), **context})


# ========== Tickets ==========

def ticket_to_entity(model: TicketModel) -> Ticket:
    return Ticket(
        id=str(model.id),
        ticket_number=model.ticket_number,
        subject=model.subject,
        description=model.description or "",
        channel=TicketChannel(model.channel),
        priority=TicketPriority(model.priority),
        status=TicketStatus(model.status),
        status_history=[StatusHistoryEntry.from_dict(e) for e in (model.status_history or [])],
        sla_policy_id=model.sla_policy_id,
        response_due_at=ensure_utc(model.response_due_at),
        due_at=ensure_utc(model.due_at),
        first_response_at=ensure_utc(model.first_response_at),
        assigned_to=model.assigned_to,
        assigned_group=model.assigned_group,
        customer_id=model.customer_id,
        customer_email=model.customer_email or "",
        customer_name=model.customer_name or "",
        escalation_level=model.escalation_level,
        escalated_to=model.escalated_to,
        escalation_history=[EscalationHistoryEntry.from_dict(e) for e in (model.escalation_history or [])],
        tags=list(model.tags or []),
        category=model.category,
        channel_metadata=dict(model.channel_metadata or {}),
        created_at=ensure_utc(model.created_at),
        updated_at=ensure_utc(model.updated_at),
        resolved_at=ensure_utc(model.resolved_at),
        closed_at=ensure_utc(model.closed_at),
        version=model.version,
    )


class SQLAlchemyTicketRepository(_SQLAlchemyRepository, ITicketRepository):
    """
    SQLAlchemy implementation of ticket repository.
    """

    async def _load(self, ticket_id: UUID) -> Optional[Ticket]:
        stmt = (
            select(TicketModel)
            .where(TicketModel.id == ticket_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return ticket_to_entity(model) if model else None

    async def create(self, ticket: Ticket) -> Ticket:
        """Persist a new ticket with version 0."""
        model = TicketModel(
            id=UUID(ticket.id) if ticket.id else uuid4(),
            ticket_number=ticket.ticket_number,
            subject=ticket.subject,
            description=ticket.description,
            channel=_db_value(ticket.channel),
            channel_metadata=dict(ticket.channel_metadata),
            category=ticket.category,
            tags=list(ticket.tags),
            priority=_db_value(ticket.priority),
            status=_db_value(ticket.status),
            status_history=[e.to_dict() for e in ticket.status_history],
            sla_policy_id=ticket.sla_policy_id,
            response_due_at=ticket.response_due_at,
            due_at=ticket.due_at,
            first_response_at=ticket.first_response_at,
            assigned_to=ticket.assigned_to,
            assigned_group=ticket.assigned_group,
            customer_id=ticket.customer_id,
            customer_email=ticket.customer_email,
            customer_name=ticket.customer_name,
            escalation_level=ticket.escalation_level,
            escalated_to=ticket.escalated_to,
            escalation_history=[e.to_dict() for e in ticket.escalation_history],
            created_at=ticket.created_at or self._clock(),
            updated_at=ticket.updated_at or ticket.created_at or self._clock(),
            resolved_at=ticket.resolved_at,
            closed_at=ticket.closed_at,
            version=0,
        )
        try:
            self._session.add(model)
            await self._persist()
        except SQLAlchemyError as e:
            raise await self._fail("create ticket", e, ticket_number=ticket.ticket_number)
        return ticket_to_entity(model)

    async def get_by_id(self, ticket_id: Union[str, UUID]) -> Optional[Ticket]:
        """Get ticket by ID."""
        try:
            return await self._load(parse_identifier(ticket_id, "ticket"))
        except SQLAlchemyError as e:
            raise await self._fail("get ticket", e, ticket_id=str(ticket_id))

    def _filter_conditions(self, filters: Dict[str, Any]) -> List[Any]:
        conditions = []
        if filters.get("status"):
            status = filters["status"]
            if isinstance(status, (list, tuple, set)):
                conditions.append(TicketModel.status.in_([_db_value(s) for s in status]))
            else:
                conditions.append(TicketModel.status == _db_value(status))
        if filters.get("exclude_statuses"):
            conditions.append(TicketModel.status.notin_([_db_value(s) for s in filters["exclude_statuses"]]))
        if filters.get("priority"):
            conditions.append(TicketModel.priority == _db_value(filters["priority"]))
        if filters.get("channel"):
            conditions.append(TicketModel.channel == _db_value(filters["channel"]))
        if filters.get("assigned_to"):
            conditions.append(TicketModel.assigned_to == filters["assigned_to"])
        if filters.get("customer_id"):
            conditions.append(TicketModel.customer_id == filters["customer_id"])
        if filters.get("has_sla_policy"):
            conditions.append(TicketModel.sla_policy_id.is_not(None))
        if filters.get("created_from") is not None:
            conditions.append(TicketModel.created_at >= filters["created_from"])
        if filters.get("created_to") is not None:
            conditions.append(TicketModel.created_at <= filters["created_to"])
        if filters.get("search"):
            pattern = f"%{filters['search']}%"
            conditions.append(or_(
                TicketModel.subject.ilike(pattern),
                TicketModel.description.ilike(pattern),
                TicketModel.ticket_number.ilike(pattern),
            ))
        return conditions

    async def list(
        self,
        filters: Dict[str, Any],
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc"
    ) -> Tuple[List[Ticket], int]:
        """List tickets with filters, newest first by default."""
        conditions = self._filter_conditions(filters)
        column = TICKET_SORT_COLUMNS.get(sort_by, TicketModel.created_at)
        order = column.asc() if sort_order.lower() == "asc" else column.desc()
        page = max(page, 1)

        stmt = select(TicketModel)
        count_stmt = select(func.count()).select_from(TicketModel)
        if conditions:
            stmt = stmt.where(and_(*conditions))
            count_stmt = count_stmt.where(and_(*conditions))
        stmt = (
            stmt.order_by(order, TicketModel.id.asc())
            .limit(limit)
            .offset((page - 1) * limit)
            .execution_options(populate_existing=True)
        )

        try:
            total = (await self._session.execute(count_stmt)).scalar_one()
            models = (await self._session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise await self._fail("list tickets", e)
        return [ticket_to_entity(m) for m in models], total

    async def _guarded_update(
        self,
        ticket_id: UUID,
        values: Dict[str, Any],
        expected_version: Optional[int],
        operation: str
    ) -> Ticket:
        values = {key: _db_value(value) for key, value in values.items()}
        values.setdefault("updated_at", self._clock())
        values["version"] = TicketModel.version + 1

        stmt = update(TicketModel).where(TicketModel.id == ticket_id)
        if expected_version is not None:
            stmt = stmt.where(TicketModel.version == expected_version)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        try:
            result = await self._session.execute(stmt)
            if result.rowcount == 0:
                exists = await self._session.scalar(
                    select(TicketModel.id).where(TicketModel.id == ticket_id)
                )
                if exists is None:
                    raise ResourceNotFoundException("Ticket", str(ticket_id))
                raise ConcurrencyConflictException("Ticket", str(ticket_id), expected_version)
            await self._persist()
            ticket = await self._load(ticket_id)
        except SQLAlchemyError as e:
            raise await self._fail(operation, e, ticket_id=str(ticket_id))

        if ticket is None:
            raise ResourceNotFoundException("Ticket", str(ticket_id))
        return ticket

    async def update(
        self,
        ticket_id: Union[str, UUID],
        fields: Dict[str, Any],
        expected_version: Optional[int] = None
    ) -> Ticket:
        """Update plain fields. History columns are not writable here."""
        forbidden = {"status", "status_history", "escalation_level", "escalation_history", "version", "id"}
        bad = forbidden.intersection(fields)
        if bad:
            raise RepositoryException("fields not updatable", {"fields": sorted(bad)})
        return await self._guarded_update(
            parse_identifier(ticket_id, "ticket"), dict(fields), expected_version, "update ticket"
        )

    async def update_status(self, ticket: Ticket, entry: StatusHistoryEntry) -> Ticket:
        """Write status, full history and resolution stamps in one statement."""
        return await self._guarded_update(
            parse_identifier(ticket.id, "ticket"),
            {
                "status": entry.status,
                "status_history": [e.to_dict() for e in ticket.status_history],
                "resolved_at": ticket.resolved_at,
                "closed_at": ticket.closed_at,
                "updated_at": entry.changed_at,
            },
            ticket.version,
            "update ticket status",
        )

    async def apply_escalation(self, ticket: Ticket, entry: EscalationHistoryEntry) -> Ticket:
        """Increment level, set target and append history in one statement."""
        history = [e.to_dict() for e in ticket.escalation_history] + [entry.to_dict()]
        return await self._guarded_update(
            parse_identifier(ticket.id, "ticket"),
            {
                "escalation_level": TicketModel.escalation_level + 1,
                "escalated_to": entry.escalated_to,
                "escalation_history": history,
                "updated_at": entry.escalated_at,
            },
            ticket.version,
            "apply escalation",
        )

    async def mark_first_response(self, ticket_id: Union[str, UUID], responded_at: datetime) -> bool:
        tid = parse_identifier(ticket_id, "ticket")
        stmt = (
            update(TicketModel)
            .where(TicketModel.id == tid, TicketModel.first_response_at.is_(None))
            .values(
                first_response_at=responded_at,
                updated_at=responded_at,
                version=TicketModel.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self._session.execute(stmt)
            await self._persist()
        except SQLAlchemyError as e:
            raise await self._fail("mark first response", e, ticket_id=str(tid))
        return result.rowcount > 0

    async def delete(self, ticket_id: Union[str, UUID]) -> None:
        tid = parse_identifier(ticket_id, "ticket")
        try:
            await self._session.execute(
                delete(TicketCommentModel).where(TicketCommentModel.ticket_id == tid)
            )
            result = await self._session.execute(delete(TicketModel).where(TicketModel.id == tid))
            if result.rowcount == 0:
                raise ResourceNotFoundException("Ticket", str(tid))
            await self._persist()
        except SQLAlchemyError as e:
            raise await self._fail("delete ticket", e, ticket_id=str(tid))

    async def find_overdue_sla(self, now: datetime) -> List[Ticket]:
        """Tickets in response breach or open tickets in resolution breach."""
        response_breach = and_(
            TicketModel.response_due_at.is_not(None),
            TicketModel.first_response_at.is_(None),
            TicketModel.response_due_at < now,
        )
        resolution_breach = and_(
            TicketModel.status.notin_(CLOSED_STATUS_VALUES),
            TicketModel.due_at.is_not(None),
            TicketModel.due_at < now,
        )
        stmt = (
            select(TicketModel)
            .where(or_(response_breach, resolution_breach))
            .order_by(TicketModel.created_at.asc(), TicketModel.id.asc())
            .execution_options(populate_existing=True)
        )
        try:
            models = (await self._session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise await self._fail("find overdue tickets", e)
        return [ticket_to_entity(m) for m in models]

    async def find_open_page(
        self,
        after: Optional[Tuple[datetime, str]],
        limit: int
    ) -> List[Ticket]:
        """Keyset page of open tickets ordered by (created_at, id)."""
        stmt = select(TicketModel).where(TicketModel.status.notin_(CLOSED_STATUS_VALUES))
        if after is not None:
            created_at, last_id = after
            last_uuid = parse_identifier(last_id, "ticket")
            stmt = stmt.where(or_(
                TicketModel.created_at > created_at,
                and_(TicketModel.created_at == created_at, TicketModel.id > last_uuid),
            ))
        stmt = (
            stmt.order_by(TicketModel.created_at.asc(), TicketModel.id.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        try:
            models = (await self._session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise await self._fail("load open tickets", e)
        return [ticket_to_entity(m) for m in models]

    async def next_ticket_number(self) -> str:
        """Highest existing number plus one, e.g. TKT-000042."""
        stmt = (
            select(TicketModel.ticket_number)
            .where(TicketModel.ticket_number.like(f"{TICKET_NUMBER_PREFIX}%"))
            .order_by(func.length(TicketModel.ticket_number).desc(), TicketModel.ticket_number.desc())
            .limit(1)
        )
        try:
            last = await self._session.scalar(stmt)
        except SQLAlchemyError as e:
            raise await self._fail("next ticket number", e)

        number = 1
        if last:
            try:
                number = int(last[len(TICKET_NUMBER_PREFIX):]) + 1
            except ValueError:
                logger.warning("Unparseable ticket number", extra={"ticket_number": last})
        return f"{TICKET_NUMBER_PREFIX}{number:0{TICKET_NUMBER_WIDTH}d}"


# ========== Comments ==========

def comment_to_entity(model: TicketCommentModel) -> TicketComment:
    return TicketComment(
        id=str(model.id),
        ticket_id=str(model.ticket_id),
        content=model.content,
        created_by=model.created_by,
        is_internal=model.is_internal,
        attachments=list(model.attachments or []),
        created_at=ensure_utc(model.created_at),
        updated_at=ensure_utc(model.updated_at),
    )


class SQLAlchemyTicketCommentRepository(_SQLAlchemyRepository, ITicketCommentRepository):

    async def create(self, comment: TicketComment) -> TicketComment:
        now = self._clock()
        model = TicketCommentModel(
            id=uuid4(),
            ticket_id=parse_identifier(comment.ticket_id, "ticket"),
            content=comment.content,
            created_by=comment.created_by,
            is_internal=comment.is_internal,
            attachments=list(comment.attachments),
            created_at=comment.created_at or now,
            updated_at=comment.updated_at or now,
        )
        try:
            self._session.add(model)
            await self._persist()
        except SQLAlchemyError as e:
            raise await self._fail("create comment", e, ticket_id=comment.ticket_id)
        return comment_to_entity(model)

    async def list_by_ticket(self, ticket_id: Union[str, UUID]) -> List[TicketComment]:
        stmt = (
            select(TicketCommentModel)
            .where(TicketCommentModel.ticket_id == parse_identifier(ticket_id, "ticket"))
            .order_by(TicketCommentModel.created_at.asc())
        )
        try:
            models = (await self._session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise await self._fail("list comments", e, ticket_id=str(ticket_id))
        return [comment_to_entity(m) for m in models]


# ========== SLA policies ==========

def policy_to_entity(model: SLAPolicyModel) -> SLAPolicy:
    return SLAPolicy(
        id=str(model.id),
        name=model.name,
        description=model.description or "",
        priority=TicketPriority(model.priority),
        response_time=model.response_time,
        resolution_time=model.resolution_time,
        is_business_hours_only=model.is_business_hours_only,
        business_hours=dict(model.business_hours or {}),
        is_active=model.is_active,
        created_at=ensure_utc(model.created_at),
        updated_at=ensure_utc(model.updated_at),
    )


class SQLAlchemySLAPolicyRepository(_SQLAlchemyRepository, ISLAPolicyRepository):

    async def _get_model(self, policy_id: Union[str, UUID]) -> Optional[SLAPolicyModel]:
        stmt = select(SLAPolicyModel).where(SLAPolicyModel.id == parse_identifier(policy_id, "SLA policy"))
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def create(self, policy: SLAPolicy) -> SLAPolicy:
        now = self._clock()
        model = SLAPolicyModel(
            id=uuid4(),
            name=policy.name,
            description=policy.description,
            priority=_db_value(policy.priority),
            response_time=policy.response_time,
            resolution_time=policy.resolution_time,
            is_business_hours_only=policy.is_business_hours_only,
            business_hours=dict(policy.business_hours),
            is_active=policy.is_active,
            created_at=policy.created_at or now,
            updated_at=policy.updated_at or now,
        )
        try:
            self._session.add(model)
            await self._persist()
        except SQLAlchemyError as e:
            raise await self._fail("create SLA policy", e, policy_name=policy.name)
        return policy_to_entity(model)

    async def get_by_id(self, policy_id: Union[str, UUID]) -> Optional[SLAPolicy]:
        try:
            model = await self._get_model(policy_id)
        except SQLAlchemyError as e:
            raise await self._fail("get SLA policy", e, policy_id=str(policy_id))
        return policy_to_entity(model) if model else None

    async def list_all(self, active_only: bool = False) -> List[SLAPolicy]:
        stmt = select(SLAPolicyModel)
        if active_only:
            stmt = stmt.where(SLAPolicyModel.is_active.is_(True))
        stmt = stmt.order_by(SLAPolicyModel.created_at.asc(), SLAPolicyModel.id.asc())
        try:
            models = (await self._session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise await self._fail("list SLA policies", e)
        return [policy_to_entity(m) for m in models]

    async def find_by_priority(self, priority: TicketPriority) -> Optional[SLAPolicy]:
        """Oldest active policy for the priority."""
        stmt = (
            select(SLAPolicyModel)
            .where(
                SLAPolicyModel.priority == _db_value(priority),
                SLAPolicyModel.is_active.is_(True),
            )
            .order_by(SLAPolicyModel.created_at.asc(), SLAPolicyModel.id.asc())
            .limit(1)
        )
        try:
            model = (await self._session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise await self._fail("find SLA policy", e, priority=_db_value(priority))
        return policy_to_entity(model) if model else None

    async def update(self, policy_id: Union[str, UUID], fields: Dict[str, Any]) -> SLAPolicy:
        try:
            model = await self._get_model(policy_id)
            if model is None:
                raise ResourceNotFoundException("SLAPolicy", str(policy_id))
            for name, value in fields.items():
                setattr(model, name, _db_value(value))
            model.updated_at = self._clock()
            await self._persist()
        except SQLAlchemyError as e:
            raise await self._fail("update SLA policy", e, policy_id=str(policy_id))
        return policy_to_entity(model)

    async def delete(self, policy_id: Union[str, UUID]) -> None:
        pid = parse_identifier(policy_id, "SLA policy")
        try:
            result = await self._session.execute(delete(SLAPolicyModel).where(SLAPolicyModel.id == pid))
            if result.rowcount == 0:
                raise ResourceNotFoundException("SLAPolicy", str(pid))
            await self._persist()
        except SQLAlchemyError as e:
            raise await self._fail("delete SLA policy", e, policy_id=str(pid))

    async def count(self) -> int:
        try:
            return (await self._session.execute(select(func.count()).select_from(SLAPolicyModel))).scalar_one()
        except SQLAlchemyError as e:
            raise await self._fail("count SLA policies", e)


# ========== Escalation rules ==========

def rule_to_entity(model: EscalationRuleModel) -> EscalationRule:
    return EscalationRule(
        id=str(model.id),
        name=model.name,
        description=model.description or "",
        priority=TicketPriority(model.priority) if model.priority else None,
        status=TicketStatus(model.status) if model.status else None,
        condition_type=ConditionType(model.condition_type),
        escalate_after=model.escalate_after,
        escalate_to=model.escalate_to,
        escalate_to_type=EscalationTargetType(model.escalate_to_type),
        notify_emails=list(model.notify_emails or []),
        is_active=model.is_active,
        created_at=ensure_utc(model.created_at),
        updated_at=ensure_utc(model.updated_at),
    )


class SQLAlchemyEscalationRuleRepository(_SQLAlchemyRepository, IEscalationRuleRepository):

    async def _get_model(self, rule_id: Union[str, UUID]) -> Optional[EscalationRuleModel]:
        stmt = select(EscalationRuleModel).where(
            EscalationRuleModel.id == parse_identifier(rule_id, "escalation rule")
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def create(self, rule: EscalationRule) -> EscalationRule:
        now = self._clock()
        model = EscalationRuleModel(
            id=uuid4(),
            name=rule.name,
            description=rule.description,
            priority=_db_value(rule.priority),
            status=_db_value(rule.status),
            condition_type=_db_value(rule.condition_type),
            escalate_after=rule.escalate_after,
            escalate_to=rule.escalate_to,
            escalate_to_type=_db_value(rule.escalate_to_type),
            notify_emails=list(rule.notify_emails),
            is_active=rule.is_active,
            created_at=rule.created_at or now,
            updated_at=rule.updated_at or now,
        )
        try:
            self._session.add(model)
            await self._persist()
        except SQLAlchemyError as e:
            raise await self._fail("create escalation rule", e, rule_name=rule.name)
        return rule_to_entity(model)

    async def get_by_id(self, rule_id: Union[str, UUID]) -> Optional[EscalationRule]:
        try:
            model = await self._get_model(rule_id)
        except SQLAlchemyError as e:
            raise await self._fail("get escalation rule", e, rule_id=str(rule_id))
        return rule_to_entity(model) if model else None

    async def _list(self, active_only: bool) -> List[EscalationRule]:
        stmt = select(EscalationRuleModel)
        if active_only:
            stmt = stmt.where(EscalationRuleModel.is_active.is_(True))
        stmt = stmt.order_by(EscalationRuleModel.created_at.asc(), EscalationRuleModel.id.asc())
        try:
            models = (await self._session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise await self._fail("list escalation rules", e)
        return [rule_to_entity(m) for m in models]

    async def list_all(self) -> List[EscalationRule]:
        return await self._list(active_only=False)

    async def find_active(self) -> List[EscalationRule]:
        return await self._list(active_only=True)

    async def update(self, rule_id: Union[str, UUID], fields: Dict[str, Any]) -> EscalationRule:
        try:
            model = await self._get_model(rule_id)
            if model is None:
                raise ResourceNotFoundException("EscalationRule", str(rule_id))
            for name, value in fields.items():
                setattr(model, name, _db_value(value))
            model.updated_at = self._clock()
            await self._persist()
        except SQLAlchemyError as e:
            raise await self._fail("update escalation rule", e, rule_id=str(rule_id))
        return rule_to_entity(model)

    async def delete(self, rule_id: Union[str, UUID]) -> None:
        rid = parse_identifier(rule_id, "escalation rule")
        try:
            result = await self._session.execute(delete(EscalationRuleModel).where(EscalationRuleModel.id == rid))
            if result.rowcount == 0:
                raise ResourceNotFoundException("EscalationRule", str(rid))
            await self._persist()
        except SQLAlchemyError as e:
            raise await self._fail("delete escalation rule", e, rule_id=str(rid))

    async def count(self) -> int:
        try:
            return (await self._session.execute(select(func.count()).select_from(EscalationRuleModel))).scalar_one()
        except SQLAlchemyError as e:
            raise await self._fail("count escalation rules", e)


# ========== Notifications & audit ==========

class SQLAlchemyNotificationRepository(_SQLAlchemyRepository):
    """Stores in-app notifications."""

    async def create(
        self,
        user_id: str,
        title: str,
        message: str,
        notification_type: str,
        link: Optional[str] = None
    ) -> str:
        model = NotificationModel(
            id=uuid4(),
            user_id=user_id,
            title=title,
            message=message,
            notification_type=_db_value(notification_type),
            link=link,
            created_at=self._clock(),
        )
        try:
            await self._persist_isolated(model)
        except SQLAlchemyError as e:
            raise await self._fail("create notification", e, rollback=False, user_id=user_id)
        return str(model.id)

    async def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        stmt = (
            select(NotificationModel)
            .where(NotificationModel.user_id == user_id)
            .order_by(NotificationModel.created_at.asc())
        )
        try:
            models = (await self._session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise await self._fail("list notifications", e, user_id=user_id)
        return [
            {
                "id": str(m.id),
                "title": m.title,
                "message": m.message,
                "type": m.notification_type,
                "link": m.link,
                "is_read": m.is_read,
                "created_at": ensure_utc(m.created_at),
            }
            for m in models
        ]


class SQLAlchemyAuditService(_SQLAlchemyRepository, IAuditService):
    """Persists audit change maps to the 'audit_logs' table."""

    async def log_change(
        self,
        action: AuditAction,
        module: str,
        record_id: str,
        changes: Changes,
        actor: Optional[str] = None
    ) -> None:
        model = AuditLogModel(
            id=uuid4(),
            action=_db_value(action),
            module=module,
            record_id=str(record_id),
            changes=_json_safe(changes),
            actor=actor,
            created_at=self._clock(),
        )
        try:
            await self._persist_isolated(model)
        except SQLAlchemyError as e:
            raise await self._fail(
                "write audit log", e, rollback=False, audit_module=module, record_id=str(record_id)
            )

    async def list_for_record(self, module: str, record_id: str) -> List[Dict[str, Any]]:
        stmt = (
            select(AuditLogModel)
            .where(AuditLogModel.module == module, AuditLogModel.record_id == str(record_id))
            .order_by(AuditLogModel.created_at.asc())
        )
        try:
            models = (await self._session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise await self._fail("list audit logs", e, audit_module=module, record_id=str(record_id))
        return [
            {"action": m.action, "changes": m.changes, "actor": m.actor, "created_at": ensure_utc(m.created_at)}
            for m in models
        ]


def _json_safe(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    return _db_value(value)
