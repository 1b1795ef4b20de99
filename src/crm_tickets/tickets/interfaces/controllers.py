"""
Ticket Controllers (API Routes)
================================

FastAPI routes for tickets, SLA policies, SLA reports and escalation
rules.

Controllers are thin - they delegate to application services. The acting
user is taken from the ``X-User-ID`` header; authentication happens
upstream.
"""

import asyncio
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from crm_tickets.config import (
    EscalationTargetType,
    ConditionType,
    TicketChannel,
    TicketPriority,
    TicketStatus,
    settings,
)
from crm_tickets.core import Clock, utc_now
from crm_tickets.infrastructure.database import get_session
from crm_tickets.shared.infrastructure.logging import get_logger
from crm_tickets.tickets.application import (
    EscalationExecutor,
    EscalationRuleEvaluator,
    EscalationRuleService,
    EscalationSweep,
    SLAPolicyResolver,
    SLAService,
    TicketService,
)
from crm_tickets.tickets.application.dto import (
    AssignRequest,
    ChatIntakeRequest,
    CommentCreateRequest,
    CommentResponse,
    EmailIntakeRequest,
    EscalationRuleCreateRequest,
    EscalationRuleResponse,
    EscalationRuleUpdateRequest,
    SLAMetricsResponse,
    SLAPolicyCreateRequest,
    SLAPolicyResponse,
    SLAPolicyUpdateRequest,
    SLAStatusResponse,
    SLATrendResponse,
    SLAViolationResponse,
    StatusHistoryResponse,
    StatusUpdateRequest,
    SweepResultResponse,
    TicketCreateRequest,
    TicketListResponse,
    TicketResponse,
    TicketUpdateRequest,
)
from crm_tickets.tickets.domain import EscalationRule, SLAPolicy, Ticket, TicketComment
from crm_tickets.tickets.infrastructure import (
    NotificationService,
    SlackClient,
    SQLAlchemyAuditService,
    SQLAlchemyEscalationRuleRepository,
    SQLAlchemyNotificationRepository,
    SQLAlchemySLAPolicyRepository,
    SQLAlchemyTicketCommentRepository,
    SQLAlchemyTicketRepository,
)

logger = get_logger(__name__)

tickets_router = APIRouter(prefix="/api/tickets", tags=["Tickets"])
sla_policies_router = APIRouter(prefix="/api/sla-policies", tags=["SLA Policies"])
sla_router = APIRouter(prefix="/api/sla", tags=["SLA Reports"])
escalation_router = APIRouter(prefix="/api/escalation-rules", tags=["Escalation Rules"])


# ========== Process-wide collaborators ==========

_slack_client: Optional[SlackClient] = None
_sweep_lock: Optional[asyncio.Lock] = None


def set_slack_client(client: Optional[SlackClient]) -> None:
    global _slack_client
    _slack_client = client


def get_slack_client() -> Optional[SlackClient]:
    return _slack_client


def get_sweep_lock() -> asyncio.Lock:
    """Single lock shared by the scheduler job and the manual trigger."""
    global _sweep_lock
    if _sweep_lock is None:
        _sweep_lock = asyncio.Lock()
    return _sweep_lock


def get_clock() -> Clock:
    return utc_now


def build_escalation_sweep(
    session: AsyncSession,
    clock: Clock = utc_now,
    lock: Optional[asyncio.Lock] = None,
    slack_client: Optional[SlackClient] = None
) -> EscalationSweep:
    """
    Wire a sweep whose repositories commit every write on their own, so
    each escalation is durable independently of the others.
    """
    ticket_repo = SQLAlchemyTicketRepository(session, clock, autocommit=True)
    rule_repo = SQLAlchemyEscalationRuleRepository(session, clock, autocommit=True)
    audit = SQLAlchemyAuditService(session, clock, autocommit=True)
    notifications = NotificationService(
        SQLAlchemyNotificationRepository(session, clock, autocommit=True),
        slack_client,
    )
    return EscalationSweep(
        ticket_repository=ticket_repo,
        rule_repository=rule_repo,
        evaluator=EscalationRuleEvaluator(rule_repo, clock),
        executor=EscalationExecutor(ticket_repo, audit, notifications, clock),
        page_size=settings.escalation_page_size,
        deadline_seconds=settings.escalation_sweep_deadline_seconds,
        max_retries=settings.escalation_max_retries,
        retry_base_delay=settings.escalation_retry_base_delay,
        clock=clock,
        lock=lock or get_sweep_lock(),
    )


# ========== Dependencies ==========

async def get_ticket_service(
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock)
) -> TicketService:
    """Get ticket service instance."""
    return TicketService(
        ticket_repository=SQLAlchemyTicketRepository(session, clock),
        comment_repository=SQLAlchemyTicketCommentRepository(session, clock),
        policy_resolver=SLAPolicyResolver(SQLAlchemySLAPolicyRepository(session, clock)),
        audit_service=SQLAlchemyAuditService(session, clock),
        notification_service=NotificationService(
            SQLAlchemyNotificationRepository(session, clock), get_slack_client()
        ),
        clock=clock,
    )


async def get_sla_service(
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock)
) -> SLAService:
    """Get SLA service instance."""
    return SLAService(
        policy_repository=SQLAlchemySLAPolicyRepository(session, clock),
        ticket_repository=SQLAlchemyTicketRepository(session, clock),
        audit_service=SQLAlchemyAuditService(session, clock),
        clock=clock,
    )


async def get_rule_service(
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock)
) -> EscalationRuleService:
    """Get escalation rule service instance."""
    return EscalationRuleService(
        rule_repository=SQLAlchemyEscalationRuleRepository(session, clock),
        audit_service=SQLAlchemyAuditService(session, clock),
        clock=clock,
    )


async def get_escalation_sweep(
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock)
) -> EscalationSweep:
    return build_escalation_sweep(session, clock, get_sweep_lock(), get_slack_client())


async def get_actor(
    x_user_id: str = Header(..., alias="X-User-ID", min_length=1, description="Acting user ID")
) -> str:
    return x_user_id


# ========== Tickets ==========

@tickets_router.post(
    "",
    response_model=TicketResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a ticket",
    description="Creates a ticket in status `new` with SLA deadlines from the active policy for its priority."
)
async def create_ticket(
    request: TicketCreateRequest,
    actor: str = Depends(get_actor),
    service: TicketService = Depends(get_ticket_service)
):
    ticket = Ticket(
        id=None,
        subject=request.subject,
        description=request.description,
        channel=TicketChannel(request.channel),
        priority=TicketPriority(request.priority),
        customer_id=request.customer_id,
        customer_email=request.customer_email,
        customer_name=request.customer_name,
        assigned_group=request.assigned_group,
        category=request.category,
        tags=request.tags,
        channel_metadata=request.channel_metadata,
    )
    created = await service.create_ticket(ticket, actor)
    return TicketResponse.from_domain(created)


@tickets_router.post(
    "/portal",
    response_model=TicketResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a ticket from the customer portal"
)
async def create_portal_ticket(
    request: TicketCreateRequest,
    actor: str = Depends(get_actor),
    service: TicketService = Depends(get_ticket_service)
):
    ticket = Ticket(
        id=None,
        subject=request.subject,
        description=request.description,
        priority=TicketPriority(request.priority),
        customer_email=request.customer_email,
        customer_name=request.customer_name,
        category=request.category,
        tags=request.tags,
    )
    created = await service.create_ticket_from_portal(ticket, actor)
    return TicketResponse.from_domain(created)


@tickets_router.post(
    "/intake/email",
    response_model=TicketResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a ticket from an inbound email"
)
async def create_email_ticket(
    request: EmailIntakeRequest,
    service: TicketService = Depends(get_ticket_service)
):
    created = await service.create_ticket_from_email(
        request.subject,
        request.description,
        request.customer_email,
        request.customer_name,
        request.metadata,
    )
    return TicketResponse.from_domain(created)


@tickets_router.post(
    "/intake/chat",
    response_model=TicketResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a ticket from a chat conversation"
)
async def create_chat_ticket(
    request: ChatIntakeRequest,
    service: TicketService = Depends(get_ticket_service)
):
    created = await service.create_ticket_from_chat(
        request.subject,
        request.description,
        customer_id=request.customer_id,
        customer_email=request.customer_email,
        customer_name=request.customer_name,
        metadata=request.metadata,
    )
    return TicketResponse.from_domain(created)


@tickets_router.get("", response_model=TicketListResponse, summary="List tickets")
async def list_tickets(
    status_filter: Optional[TicketStatus] = Query(None, alias="status"),
    priority: Optional[TicketPriority] = None,
    channel: Optional[TicketChannel] = None,
    assigned_to: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_by: str = "created_at",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    service: TicketService = Depends(get_ticket_service)
):
    filters = {
        "status": status_filter,
        "priority": priority,
        "channel": channel,
        "assigned_to": assigned_to,
        "search": search,
    }
    tickets, total = await service.list_tickets(
        {k: v for k, v in filters.items() if v}, page, limit, sort_by, sort_order
    )
    return TicketListResponse(
        tickets=[TicketResponse.from_domain(t) for t in tickets],
        total=total,
        page=page,
        limit=limit,
    )


@tickets_router.get("/my", response_model=TicketListResponse, summary="Tickets assigned to me")
async def get_my_tickets(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor: str = Depends(get_actor),
    service: TicketService = Depends(get_ticket_service)
):
    tickets, total = await service.get_my_tickets(actor, page, limit)
    return TicketListResponse(
        tickets=[TicketResponse.from_domain(t) for t in tickets],
        total=total,
        page=page,
        limit=limit,
    )


@tickets_router.get(
    "/customer/{customer_id}",
    response_model=TicketListResponse,
    summary="Tickets raised by a customer"
)
async def get_customer_tickets(
    customer_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    service: TicketService = Depends(get_ticket_service)
):
    tickets, total = await service.get_customer_tickets(customer_id, page, limit)
    return TicketListResponse(
        tickets=[TicketResponse.from_domain(t) for t in tickets],
        total=total,
        page=page,
        limit=limit,
    )


@tickets_router.get(
    "/overdue",
    response_model=List[TicketResponse],
    summary="Tickets currently breaching their SLA"
)
async def get_overdue_tickets(service: TicketService = Depends(get_ticket_service)):
    return [TicketResponse.from_domain(t) for t in await service.get_overdue_sla_tickets()]


@tickets_router.get("/{ticket_id}", response_model=TicketResponse, summary="Get a ticket")
async def get_ticket(ticket_id: str, service: TicketService = Depends(get_ticket_service)):
    return TicketResponse.from_domain(await service.get_ticket(ticket_id))


@tickets_router.put(
    "/{ticket_id}",
    response_model=TicketResponse,
    summary="Update a ticket",
    description="Priority changes do not recompute SLA deadlines."
)
async def update_ticket(
    ticket_id: str,
    request: TicketUpdateRequest,
    actor: str = Depends(get_actor),
    service: TicketService = Depends(get_ticket_service)
):
    updated = await service.update_ticket(ticket_id, request.model_dump(exclude_unset=True), actor)
    return TicketResponse.from_domain(updated)


@tickets_router.delete("/{ticket_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a ticket")
async def delete_ticket(
    ticket_id: str,
    actor: str = Depends(get_actor),
    service: TicketService = Depends(get_ticket_service)
):
    await service.delete_ticket(ticket_id, actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@tickets_router.patch("/{ticket_id}/status", response_model=TicketResponse, summary="Change ticket status")
async def update_ticket_status(
    ticket_id: str,
    request: StatusUpdateRequest,
    actor: str = Depends(get_actor),
    service: TicketService = Depends(get_ticket_service)
):
    updated = await service.update_status(ticket_id, request.status, request.comment, actor)
    return TicketResponse.from_domain(updated)


@tickets_router.patch("/{ticket_id}/assign", response_model=TicketResponse, summary="Assign a ticket")
async def assign_ticket(
    ticket_id: str,
    request: AssignRequest,
    actor: str = Depends(get_actor),
    service: TicketService = Depends(get_ticket_service)
):
    updated = await service.assign_ticket(ticket_id, request.assigned_to, actor)
    return TicketResponse.from_domain(updated)


@tickets_router.delete("/{ticket_id}/assign", response_model=TicketResponse, summary="Unassign a ticket")
async def unassign_ticket(
    ticket_id: str,
    actor: str = Depends(get_actor),
    service: TicketService = Depends(get_ticket_service)
):
    return TicketResponse.from_domain(await service.unassign_ticket(ticket_id, actor))


@tickets_router.get(
    "/{ticket_id}/history",
    response_model=List[StatusHistoryResponse],
    summary="Status history of a ticket"
)
async def get_status_history(ticket_id: str, service: TicketService = Depends(get_ticket_service)):
    return [StatusHistoryResponse.from_domain(e) for e in await service.get_status_history(ticket_id)]


@tickets_router.post(
    "/{ticket_id}/comments",
    response_model=CommentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add a comment",
    description="The first non-internal comment records the ticket's first response."
)
async def add_comment(
    ticket_id: str,
    request: CommentCreateRequest,
    actor: str = Depends(get_actor),
    service: TicketService = Depends(get_ticket_service)
):
    comment = TicketComment(
        id=None,
        ticket_id=ticket_id,
        content=request.content,
        created_by=actor,
        is_internal=request.is_internal,
        attachments=request.attachments,
    )
    return CommentResponse.from_domain(await service.add_comment(ticket_id, comment))


@tickets_router.get("/{ticket_id}/comments", response_model=List[CommentResponse], summary="List comments")
async def list_comments(ticket_id: str, service: TicketService = Depends(get_ticket_service)):
    return [CommentResponse.from_domain(c) for c in await service.list_comments(ticket_id)]


@tickets_router.get("/{ticket_id}/sla", response_model=SLAStatusResponse, summary="SLA status of a ticket")
async def get_ticket_sla(ticket_id: str, service: SLAService = Depends(get_sla_service)):
    ticket, sla_status = await service.calculate_sla_status(ticket_id)
    return SLAStatusResponse.from_domain(ticket, sla_status)


@tickets_router.get("/{ticket_id}/sla-breach", summary="Whether a ticket currently breaches its SLA")
async def check_ticket_sla_breach(ticket_id: str, service: TicketService = Depends(get_ticket_service)):
    return {"ticket_id": ticket_id, "breached": await service.check_sla_breach(ticket_id)}


# ========== SLA policies ==========

@sla_policies_router.post(
    "",
    response_model=SLAPolicyResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an SLA policy"
)
async def create_policy(
    request: SLAPolicyCreateRequest,
    actor: str = Depends(get_actor),
    service: SLAService = Depends(get_sla_service)
):
    policy = SLAPolicy(
        id=None,
        name=request.name,
        description=request.description,
        priority=TicketPriority(request.priority),
        response_time=request.response_time,
        resolution_time=request.resolution_time,
        is_business_hours_only=request.is_business_hours_only,
        business_hours=request.business_hours,
        is_active=request.is_active,
    )
    return SLAPolicyResponse.from_domain(await service.create_policy(policy, actor))


@sla_policies_router.get("", response_model=List[SLAPolicyResponse], summary="List SLA policies")
async def list_policies(active_only: bool = False, service: SLAService = Depends(get_sla_service)):
    return [SLAPolicyResponse.from_domain(p) for p in await service.list_policies(active_only)]


@sla_policies_router.get("/{policy_id}", response_model=SLAPolicyResponse, summary="Get an SLA policy")
async def get_policy(policy_id: str, service: SLAService = Depends(get_sla_service)):
    return SLAPolicyResponse.from_domain(await service.get_policy(policy_id))


@sla_policies_router.put("/{policy_id}", response_model=SLAPolicyResponse, summary="Update an SLA policy")
async def update_policy(
    policy_id: str,
    request: SLAPolicyUpdateRequest,
    actor: str = Depends(get_actor),
    service: SLAService = Depends(get_sla_service)
):
    updated = await service.update_policy(policy_id, request.model_dump(exclude_unset=True), actor)
    return SLAPolicyResponse.from_domain(updated)


@sla_policies_router.delete("/{policy_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete an SLA policy")
async def delete_policy(
    policy_id: str,
    actor: str = Depends(get_actor),
    service: SLAService = Depends(get_sla_service)
):
    await service.delete_policy(policy_id, actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ========== SLA reports ==========

@sla_router.get("/metrics", response_model=SLAMetricsResponse, summary="SLA compliance over a date range")
async def get_sla_metrics(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    clock: Clock = Depends(get_clock),
    service: SLAService = Depends(get_sla_service)
):
    end = end or clock()
    start = start or end - timedelta(days=30)
    return SLAMetricsResponse.from_domain(await service.get_sla_metrics(start, end))


@sla_router.get("/violations", response_model=List[SLAViolationResponse], summary="Active SLA violations")
async def get_sla_violations(service: SLAService = Depends(get_sla_service)):
    return [SLAViolationResponse.from_domain(v) for v in await service.get_sla_violations()]


@sla_router.get("/trends", response_model=List[SLATrendResponse], summary="Daily SLA outcomes")
async def get_sla_trends(
    days: int = Query(7, ge=1, le=90),
    service: SLAService = Depends(get_sla_service)
):
    return [SLATrendResponse.from_domain(t) for t in await service.get_sla_trends(days)]


# ========== Escalation rules ==========

@escalation_router.post(
    "/run",
    response_model=SweepResultResponse,
    summary="Run an escalation sweep now",
    description="Returns `skipped=true` if a sweep is already running."
)
async def run_escalation_sweep(sweep: EscalationSweep = Depends(get_escalation_sweep)):
    result = await sweep.process_escalations()
    return SweepResultResponse(**result.to_dict())


@escalation_router.post(
    "",
    response_model=EscalationRuleResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an escalation rule"
)
async def create_rule(
    request: EscalationRuleCreateRequest,
    actor: str = Depends(get_actor),
    service: EscalationRuleService = Depends(get_rule_service)
):
    rule = EscalationRule(
        id=None,
        name=request.name,
        description=request.description,
        priority=TicketPriority(request.priority) if request.priority else None,
        status=TicketStatus(request.status) if request.status else None,
        condition_type=ConditionType(request.condition_type),
        escalate_after=request.escalate_after,
        escalate_to=request.escalate_to,
        escalate_to_type=EscalationTargetType(request.escalate_to_type),
        notify_emails=request.notify_emails,
        is_active=request.is_active,
    )
    return EscalationRuleResponse.from_domain(await service.create_rule(rule, actor))


@escalation_router.get("", response_model=List[EscalationRuleResponse], summary="List escalation rules")
async def list_rules(service: EscalationRuleService = Depends(get_rule_service)):
    return [EscalationRuleResponse.from_domain(r) for r in await service.list_rules()]


@escalation_router.get("/{rule_id}", response_model=EscalationRuleResponse, summary="Get an escalation rule")
async def get_rule(rule_id: str, service: EscalationRuleService = Depends(get_rule_service)):
    return EscalationRuleResponse.from_domain(await service.get_rule(rule_id))


@escalation_router.put("/{rule_id}", response_model=EscalationRuleResponse, summary="Update an escalation rule")
async def update_rule(
    rule_id: str,
    request: EscalationRuleUpdateRequest,
    actor: str = Depends(get_actor),
    service: EscalationRuleService = Depends(get_rule_service)
):
    updated = await service.update_rule(rule_id, request.model_dump(exclude_unset=True), actor)
    return EscalationRuleResponse.from_domain(updated)


@escalation_router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete an escalation rule")
async def delete_rule(
    rule_id: str,
    actor: str = Depends(get_actor),
    service: EscalationRuleService = Depends(get_rule_service)
):
    await service.delete_rule(rule_id, actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


routers = [tickets_router, sla_policies_router, sla_router, escalation_router]
