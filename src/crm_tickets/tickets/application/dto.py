"""
Ticket Application DTOs
========================

Data Transfer Objects for the ticket, SLA and escalation API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from crm_tickets.tickets.domain import (
    EscalationHistoryEntry,
    EscalationRule,
    SLAMetrics,
    SLAPolicy,
    SLAStatus,
    SLATrend,
    SLAViolation,
    StatusHistoryEntry,
    Ticket,
    TicketComment,
)


# ========== Type Aliases for Literals ==========
PriorityStr = Literal["low", "medium", "high", "urgent"]
TicketStatusStr = Literal["new", "open", "pending", "resolved", "closed"]
ChannelStr = Literal["email", "chat", "portal", "phone"]
ConditionTypeStr = Literal["sla_breach", "no_response", "no_update"]
TargetTypeStr = Literal["user", "group"]
SLAStateStr = Literal["no_sla", "on_time", "at_risk", "breached"]
BreachTypeStr = Literal["response", "resolution"]


# ========== Request DTOs ==========

class TicketCreateRequest(BaseModel):
    """Request model for creating a ticket."""
    subject: str = Field(..., min_length=1, max_length=500, description="Ticket subject")
    description: str = Field(default="", description="Ticket description")
    channel: ChannelStr = Field(default="portal", description="Intake channel")
    priority: PriorityStr = Field(default="medium", description="Ticket priority")
    customer_id: Optional[str] = None
    customer_email: str = ""
    customer_name: str = ""
    assigned_group: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    channel_metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("subject")
    @classmethod
    def validate_subject(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("subject must not be blank")
        return v.strip()


class EmailIntakeRequest(BaseModel):
    """Ticket raised from an inbound email."""
    subject: str = Field(..., min_length=1, max_length=500)
    description: str = ""
    customer_email: str = Field(..., min_length=3)
    customer_name: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Message headers, thread id, ...")


class ChatIntakeRequest(BaseModel):
    """Ticket raised from a chat conversation."""
    subject: str = Field(..., min_length=1, max_length=500)
    description: str = ""
    customer_id: Optional[str] = None
    customer_email: str = ""
    customer_name: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Conversation id, transcript url, ...")


class TicketUpdateRequest(BaseModel):
    """Request model for updating editable ticket fields."""
    subject: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = None
    priority: Optional[PriorityStr] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    assigned_group: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    """Request model for a status transition.

    ``status`` is checked by the state machine so that an unknown value
    surfaces as the domain's validation error.
    """
    status: str = Field(..., min_length=1)
    comment: Optional[str] = None


class AssignRequest(BaseModel):
    """Request model for assigning a ticket."""
    assigned_to: str = Field(..., min_length=1)


class CommentCreateRequest(BaseModel):
    """Request model for adding a comment."""
    content: str = Field(..., min_length=1)
    is_internal: bool = False
    attachments: List[str] = Field(default_factory=list)


class SLAPolicyCreateRequest(BaseModel):
    """Request model for creating an SLA policy."""
    name: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    priority: PriorityStr
    response_time: int = Field(..., gt=0, description="Response window in minutes")
    resolution_time: int = Field(..., gt=0, description="Resolution window in minutes")
    is_business_hours_only: bool = False
    business_hours: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True


class SLAPolicyUpdateRequest(BaseModel):
    """Request model for updating an SLA policy."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    priority: Optional[PriorityStr] = None
    response_time: Optional[int] = Field(None, gt=0)
    resolution_time: Optional[int] = Field(None, gt=0)
    is_business_hours_only: Optional[bool] = None
    business_hours: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None


class EscalationRuleCreateRequest(BaseModel):
    """Request model for creating an escalation rule."""
    name: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    priority: Optional[PriorityStr] = None
    status: Optional[TicketStatusStr] = None
    condition_type: ConditionTypeStr
    escalate_after: int = Field(..., ge=0, description="Minutes")
    escalate_to: str = Field(..., min_length=1)
    escalate_to_type: TargetTypeStr = "user"
    notify_emails: List[str] = Field(default_factory=list)
    is_active: bool = True


class EscalationRuleUpdateRequest(BaseModel):
    """Request model for updating an escalation rule.

    ``condition_type`` is validated by the rule service.
    """
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    priority: Optional[PriorityStr] = None
    status: Optional[TicketStatusStr] = None
    condition_type: Optional[str] = None
    escalate_after: Optional[int] = Field(None, ge=0)
    escalate_to: Optional[str] = Field(None, min_length=1)
    escalate_to_type: Optional[TargetTypeStr] = None
    notify_emails: Optional[List[str]] = None
    is_active: Optional[bool] = None


# ========== Response DTOs ==========

class StatusHistoryResponse(BaseModel):
    status: TicketStatusStr
    changed_by: str
    changed_at: datetime
    comment: str = ""

    @classmethod
    def from_domain(cls, entry: StatusHistoryEntry) -> "StatusHistoryResponse":
        return cls(
            status=entry.status.value,
            changed_by=entry.changed_by,
            changed_at=entry.changed_at,
            comment=entry.comment,
        )


class EscalationHistoryResponse(BaseModel):
    level: int
    escalated_to: str
    escalated_at: datetime
    reason: str
    rule_id: Optional[str] = None
    escalated_by: Optional[str] = None

    @classmethod
    def from_domain(cls, entry: EscalationHistoryEntry) -> "EscalationHistoryResponse":
        return cls(
            level=entry.level,
            escalated_to=entry.escalated_to,
            escalated_at=entry.escalated_at,
            reason=entry.reason,
            rule_id=entry.rule_id,
            escalated_by=entry.escalated_by,
        )


class TicketResponse(BaseModel):
    """Response model for a ticket."""
    id: str
    ticket_number: str
    subject: str
    description: str
    channel: ChannelStr
    priority: PriorityStr
    status: TicketStatusStr
    status_history: List[StatusHistoryResponse] = Field(default_factory=list)

    sla_policy_id: Optional[str] = None
    response_due_at: Optional[datetime] = None
    due_at: Optional[datetime] = None
    first_response_at: Optional[datetime] = None

    assigned_to: Optional[str] = None
    assigned_group: Optional[str] = None
    customer_id: Optional[str] = None
    customer_email: str = ""
    customer_name: str = ""

    escalation_level: int = 0
    escalated_to: Optional[str] = None
    escalation_history: List[EscalationHistoryResponse] = Field(default_factory=list)

    tags: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    channel_metadata: Dict[str, Any] = Field(default_factory=dict)

    created_at: datetime
    updated_at: datetime
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    version: int

    @classmethod
    def from_domain(cls, ticket: Ticket) -> "TicketResponse":
        return cls(
            id=ticket.id,
            ticket_number=ticket.ticket_number,
            subject=ticket.subject,
            description=ticket.description,
            channel=ticket.channel.value,
            priority=ticket.priority.value,
            status=ticket.status.value,
            status_history=[StatusHistoryResponse.from_domain(e) for e in ticket.status_history],
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
            escalation_history=[EscalationHistoryResponse.from_domain(e) for e in ticket.escalation_history],
            tags=list(ticket.tags),
            category=ticket.category,
            channel_metadata=dict(ticket.channel_metadata),
            created_at=ticket.created_at,
            updated_at=ticket.updated_at,
            resolved_at=ticket.resolved_at,
            closed_at=ticket.closed_at,
            version=ticket.version,
        )


class TicketListResponse(BaseModel):
    """Paginated ticket list."""
    tickets: List[TicketResponse]
    total: int = Field(..., description="Total number of tickets matching filter")
    page: int
    limit: int


class CommentResponse(BaseModel):
    id: str
    ticket_id: str
    content: str
    created_by: str
    is_internal: bool
    attachments: List[str] = Field(default_factory=list)
    created_at: datetime

    @classmethod
    def from_domain(cls, comment: TicketComment) -> "CommentResponse":
        return cls(
            id=comment.id,
            ticket_id=comment.ticket_id,
            content=comment.content,
            created_by=comment.created_by,
            is_internal=comment.is_internal,
            attachments=list(comment.attachments),
            created_at=comment.created_at,
        )


class SLAPolicyResponse(BaseModel):
    id: str
    name: str
    description: str
    priority: PriorityStr
    response_time: int
    resolution_time: int
    is_business_hours_only: bool
    business_hours: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, policy: SLAPolicy) -> "SLAPolicyResponse":
        return cls(
            id=policy.id,
            name=policy.name,
            description=policy.description,
            priority=policy.priority.value,
            response_time=policy.response_time,
            resolution_time=policy.resolution_time,
            is_business_hours_only=policy.is_business_hours_only,
            business_hours=dict(policy.business_hours),
            is_active=policy.is_active,
            created_at=policy.created_at,
            updated_at=policy.updated_at,
        )


class SLAStatusResponse(BaseModel):
    """SLA view of one ticket."""
    ticket_id: str
    ticket_number: str
    status: SLAStateStr
    response_due_at: Optional[datetime] = None
    resolution_due_at: Optional[datetime] = None
    response_time_remaining: Optional[int] = Field(None, description="Minutes")
    resolution_time_remaining: Optional[int] = Field(None, description="Minutes")
    is_response_breached: bool = False
    is_resolution_breached: bool = False

    @classmethod
    def from_domain(cls, ticket: Ticket, sla_status: SLAStatus) -> "SLAStatusResponse":
        return cls(
            ticket_id=ticket.id,
            ticket_number=ticket.ticket_number,
            status=sla_status.status.value,
            response_due_at=sla_status.response_due_at,
            resolution_due_at=sla_status.resolution_due_at,
            response_time_remaining=sla_status.response_time_remaining,
            resolution_time_remaining=sla_status.resolution_time_remaining,
            is_response_breached=sla_status.is_response_breached,
            is_resolution_breached=sla_status.is_resolution_breached,
        )


class SLAMetricsResponse(BaseModel):
    total_tickets: int
    sla_met: int
    sla_breached: int
    compliance_rate: float = Field(..., description="Percentage of tickets within SLA")
    avg_response_time: float = Field(..., description="Minutes")
    avg_resolution_time: float = Field(..., description="Minutes")

    @classmethod
    def from_domain(cls, metrics: SLAMetrics) -> "SLAMetricsResponse":
        return cls(
            total_tickets=metrics.total_tickets,
            sla_met=metrics.sla_met,
            sla_breached=metrics.sla_breached,
            compliance_rate=metrics.compliance_rate,
            avg_response_time=metrics.avg_response_time,
            avg_resolution_time=metrics.avg_resolution_time,
        )


class SLAViolationResponse(BaseModel):
    ticket_id: str
    ticket_number: str
    subject: str
    priority: PriorityStr
    breach_type: BreachTypeStr
    breached_at: datetime
    time_overdue: int = Field(..., description="Minutes past the deadline")

    @classmethod
    def from_domain(cls, violation: SLAViolation) -> "SLAViolationResponse":
        return cls(
            ticket_id=violation.ticket_id,
            ticket_number=violation.ticket_number,
            subject=violation.subject,
            priority=violation.priority.value,
            breach_type=violation.breach_type.value,
            breached_at=violation.breached_at,
            time_overdue=violation.time_overdue,
        )


class SLATrendResponse(BaseModel):
    date: str
    met: int
    breached: int
    total: int

    @classmethod
    def from_domain(cls, trend: SLATrend) -> "SLATrendResponse":
        return cls(date=trend.date, met=trend.met, breached=trend.breached, total=trend.total)


class EscalationRuleResponse(BaseModel):
    id: str
    name: str
    description: str
    priority: Optional[PriorityStr] = None
    status: Optional[TicketStatusStr] = None
    condition_type: ConditionTypeStr
    escalate_after: int
    escalate_to: str
    escalate_to_type: TargetTypeStr
    notify_emails: List[str] = Field(default_factory=list)
    is_active: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, rule: EscalationRule) -> "EscalationRuleResponse":
        return cls(
            id=rule.id,
            name=rule.name,
            description=rule.description,
            priority=rule.priority.value if rule.priority else None,
            status=rule.status.value if rule.status else None,
            condition_type=rule.condition_type.value,
            escalate_after=rule.escalate_after,
            escalate_to=rule.escalate_to,
            escalate_to_type=rule.escalate_to_type.value,
            notify_emails=list(rule.notify_emails),
            is_active=rule.is_active,
            created_at=rule.created_at,
            updated_at=rule.updated_at,
        )


class SweepResultResponse(BaseModel):
    """Summary of a manually triggered escalation sweep."""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    tickets_scanned: int
    rules_matched: int
    escalations_executed: int
    failures: int
    pages: int
    deadline_exceeded: bool
    cancelled: bool
    skipped: bool
