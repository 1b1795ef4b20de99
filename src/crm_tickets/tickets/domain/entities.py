"""
Ticket Domain Entities
======================

Pure Python domain entities for ticket SLA tracking and escalation.

The Ticket is the aggregate root for its own status and escalation
history; both histories are append-only. SLA policies and escalation
rules are independent entities referenced by id.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from crm_tickets.config import (
    CLOSED_STATUSES,
    ConditionType,
    EscalationTargetType,
    TicketChannel,
    TicketPriority,
    TicketStatus,
)
from crm_tickets.core import DomainException, ensure_utc


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(value))


@dataclass(frozen=True)
class StatusHistoryEntry:
    """One status change in the ticket lifecycle."""

    status: TicketStatus
    changed_by: str
    changed_at: datetime
    comment: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "changed_by": self.changed_by,
            "changed_at": _iso(self.changed_at),
            "comment": self.comment,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatusHistoryEntry":
        return cls(
            status=TicketStatus(data["status"]),
            changed_by=data["changed_by"],
            changed_at=_parse_dt(data["changed_at"]),
            comment=data.get("comment") or "",
        )


@dataclass(frozen=True)
class EscalationHistoryEntry:
    """One escalation event; ``level`` is the ticket level after the event."""

    level: int
    escalated_to: str
    escalated_at: datetime
    reason: str
    rule_id: Optional[str] = None
    escalated_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "escalated_to": self.escalated_to,
            "escalated_at": _iso(self.escalated_at),
            "reason": self.reason,
            "rule_id": self.rule_id,
            "escalated_by": self.escalated_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EscalationHistoryEntry":
        return cls(
            level=int(data["level"]),
            escalated_to=data["escalated_to"],
            escalated_at=_parse_dt(data["escalated_at"]),
            reason=data.get("reason") or "",
            rule_id=data.get("rule_id"),
            escalated_by=data.get("escalated_by"),
        )


@dataclass
class Ticket:
    """
    Ticket entity representing a customer support ticket.

    Invariants after every successful operation:
    - ``status`` equals the status of the last ``status_history`` entry
    - ``escalation_level`` equals ``len(escalation_history)``

    ``version`` is the optimistic concurrency token; the repository bumps
    it on every write.
    """

    id: Optional[str]
    subject: str
    description: str = ""
    ticket_number: str = ""
    channel: TicketChannel = TicketChannel.PORTAL
    priority: TicketPriority = TicketPriority.MEDIUM
    status: TicketStatus = TicketStatus.NEW
    status_history: List[StatusHistoryEntry] = field(default_factory=list)

    # SLA
    sla_policy_id: Optional[str] = None
    response_due_at: Optional[datetime] = None
    due_at: Optional[datetime] = None
    first_response_at: Optional[datetime] = None

    # Assignment
    assigned_to: Optional[str] = None
    assigned_group: Optional[str] = None

    # Customer
    customer_id: Optional[str] = None
    customer_email: str = ""
    customer_name: str = ""

    # Escalation
    escalation_level: int = 0
    escalated_to: Optional[str] = None
    escalation_history: List[EscalationHistoryEntry] = field(default_factory=list)

    tags: List[str] = field(default_factory=list)
    category: Optional[str] = None
    channel_metadata: Dict[str, Any] = field(default_factory=dict)

    # Timestamps
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    version: int = 0

    @property
    def is_open(self) -> bool:
        """Tickets not yet resolved or closed are swept for escalation."""
        return self.status not in CLOSED_STATUSES

    @property
    def has_sla(self) -> bool:
        return self.sla_policy_id is not None

    def check_invariants(self) -> None:
        """Raise DomainException if the history invariants do not hold."""
        if self.status_history and self.status_history[-1].status != self.status:
            raise DomainException(
                "status does not match last status history entry",
                {"ticket_id": self.id, "status": self.status.value}
            )
        if self.escalation_level != len(self.escalation_history):
            raise DomainException(
                "escalation level does not match escalation history",
                {
                    "ticket_id": self.id,
                    "escalation_level": self.escalation_level,
                    "history_length": len(self.escalation_history),
                }
            )

    def mark_first_response(self, timestamp: datetime) -> bool:
        """Stamp the first response once. Returns True when it was stamped now."""
        if self.first_response_at is not None:
            return False
        self.first_response_at = timestamp
        return True

    def next_escalation_entry(
        self,
        escalated_to: str,
        escalated_at: datetime,
        reason: str,
        rule_id: Optional[str] = None,
        escalated_by: Optional[str] = None
    ) -> EscalationHistoryEntry:
        return EscalationHistoryEntry(
            level=self.escalation_level + 1,
            escalated_to=escalated_to,
            escalated_at=escalated_at,
            reason=reason,
            rule_id=rule_id,
            escalated_by=escalated_by,
        )


@dataclass
class TicketComment:
    """Comment or internal note on a ticket."""

    id: Optional[str]
    ticket_id: str
    content: str
    created_by: str
    is_internal: bool = False
    attachments: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class SLAPolicy:
    """
    Service level policy for one priority.

    ``is_business_hours_only`` and ``business_hours`` are stored for
    administrators but deadlines are always wall-clock.
    """

    id: Optional[str]
    name: str
    priority: TicketPriority
    response_time: int
    resolution_time: int
    description: str = ""
    is_business_hours_only: bool = False
    business_hours: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class EscalationRule:
    """Automatic escalation rule. Evaluation never mutates a rule."""

    id: Optional[str]
    name: str
    condition_type: ConditionType
    escalate_after: int
    escalate_to: str
    priority: Optional[TicketPriority] = None
    status: Optional[TicketStatus] = None
    description: str = ""
    escalate_to_type: EscalationTargetType = EscalationTargetType.USER
    notify_emails: List[str] = field(default_factory=list)
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def escalation_reason(self) -> str:
        return f"Escalated by rule: {self.name}"
