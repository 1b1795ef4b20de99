"""
SLA Value Objects
==================

Immutable value objects and stateless calculators for SLA tracking.

All arithmetic is wall-clock: a policy's business-hours flag does not
shift deadlines.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from crm_tickets.config import (
    AT_RISK_THRESHOLD,
    CLOSED_STATUSES,
    BreachType,
    SLAState,
    TicketPriority,
)
from crm_tickets.tickets.domain.entities import SLAPolicy, Ticket


@dataclass(frozen=True)
class DueDates:
    """Deadlines derived from exactly one policy at ticket creation."""
    policy_id: Optional[str]
    response_due_at: datetime
    due_at: datetime


class DueDateCalculator:
    """Pure functions deriving SLA deadlines from a policy."""

    @staticmethod
    def calculate(policy: SLAPolicy, now: datetime) -> DueDates:
        """
        Calculate response and resolution deadlines.

        Args:
            policy: The resolved SLA policy
            now: Creation instant the windows start from

        Returns:
            DueDates with ``now + response_time`` and ``now + resolution_time``
        """
        return DueDates(
            policy_id=policy.id,
            response_due_at=now + timedelta(minutes=policy.response_time),
            due_at=now + timedelta(minutes=policy.resolution_time),
        )

    @staticmethod
    def apply(ticket: Ticket, due_dates: DueDates) -> None:
        ticket.sla_policy_id = due_dates.policy_id
        ticket.response_due_at = due_dates.response_due_at
        ticket.due_at = due_dates.due_at


class BreachDetector:
    """
    Answers whether a ticket currently violates its SLA.

    A ticket without SLA fields never breaches.
    """

    @staticmethod
    def response_breached(ticket: Ticket, now: datetime) -> bool:
        return (
            ticket.response_due_at is not None
            and ticket.first_response_at is None
            and now > ticket.response_due_at
        )

    @staticmethod
    def resolution_breached(ticket: Ticket, now: datetime) -> bool:
        return (
            ticket.status not in CLOSED_STATUSES
            and ticket.due_at is not None
            and now > ticket.due_at
        )

    @classmethod
    def check_sla_breach(cls, ticket: Ticket, now: datetime) -> bool:
        return cls.response_breached(ticket, now) or cls.resolution_breached(ticket, now)


@dataclass(frozen=True)
class SLAStatus:
    """Point-in-time SLA view of one ticket."""
    status: SLAState
    response_due_at: Optional[datetime] = None
    resolution_due_at: Optional[datetime] = None
    response_time_remaining: Optional[int] = None
    resolution_time_remaining: Optional[int] = None
    is_response_breached: bool = False
    is_resolution_breached: bool = False


def _minutes_between(later: datetime, earlier: datetime) -> int:
    return int((later - earlier).total_seconds() // 60)


class SLAStatusCalculator:
    """Computes the on_time / at_risk / breached view reported to dashboards."""

    @staticmethod
    def calculate(ticket: Ticket, policy: Optional[SLAPolicy], now: datetime) -> SLAStatus:
        if policy is None:
            return SLAStatus(status=SLAState.NO_SLA)

        response_remaining = None
        resolution_remaining = None
        response_breached = False
        resolution_breached = False

        if ticket.response_due_at is not None:
            if ticket.first_response_at is None:
                response_remaining = _minutes_between(ticket.response_due_at, now)
                response_breached = now > ticket.response_due_at
            else:
                response_breached = ticket.first_response_at > ticket.response_due_at

        if ticket.due_at is not None:
            finished_at = ticket.resolved_at or ticket.closed_at
            if finished_at is None:
                resolution_remaining = _minutes_between(ticket.due_at, now)
                resolution_breached = now > ticket.due_at
            else:
                resolution_breached = finished_at > ticket.due_at

        if response_breached or resolution_breached:
            state = SLAState.BREACHED
        else:
            at_risk = False
            if response_remaining is not None and response_remaining > 0:
                at_risk = response_remaining < policy.response_time * AT_RISK_THRESHOLD
            if resolution_remaining is not None and resolution_remaining > 0:
                at_risk = at_risk or resolution_remaining < policy.resolution_time * AT_RISK_THRESHOLD
            state = SLAState.AT_RISK if at_risk else SLAState.ON_TIME

        return SLAStatus(
            status=state,
            response_due_at=ticket.response_due_at,
            resolution_due_at=ticket.due_at,
            response_time_remaining=response_remaining,
            resolution_time_remaining=resolution_remaining,
            is_response_breached=response_breached,
            is_resolution_breached=resolution_breached,
        )


@dataclass(frozen=True)
class SLAViolation:
    """An active SLA violation on an open ticket."""
    ticket_id: str
    ticket_number: str
    subject: str
    priority: TicketPriority
    breach_type: BreachType
    breached_at: datetime
    time_overdue: int


@dataclass(frozen=True)
class SLAMetrics:
    """Aggregate SLA performance over a date range."""
    total_tickets: int
    sla_met: int
    sla_breached: int
    compliance_rate: float
    avg_response_time: float
    avg_resolution_time: float


@dataclass(frozen=True)
class SLATrend:
    """Resolution SLA outcomes for tickets created on one day."""
    date: str
    met: int
    breached: int
    total: int
