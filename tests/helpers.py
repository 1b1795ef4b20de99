"""Test doubles and entity factories shared by the test suite."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from crm_tickets.config import ConditionType, TicketPriority
from crm_tickets.tickets.application import IAuditService, INotificationService
from crm_tickets.tickets.domain import EscalationRule, SLAPolicy, Ticket

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value

    def advance(self, minutes: float = 0, seconds: float = 0) -> datetime:
        self.now = self.now + timedelta(minutes=minutes, seconds=seconds)
        return self.now


class RecordingAudit(IAuditService):
    def __init__(self, fail: bool = False):
        self.entries: List[Dict[str, Any]] = []
        self.fail = fail

    async def log_change(self, action, module, record_id, changes, actor=None) -> None:
        if self.fail:
            raise RuntimeError("audit store unavailable")
        self.entries.append({
            "action": action,
            "module": module,
            "record_id": record_id,
            "changes": changes,
            "actor": actor,
        })


class RecordingNotifications(INotificationService):
    def __init__(self, fail: bool = False):
        self.sent: List[Dict[str, Any]] = []
        self.fail = fail

    async def create_notification(self, user_id, title, message, notification_type, link=None) -> None:
        if self.fail:
            raise RuntimeError("notification store unavailable")
        self.sent.append({
            "user_id": user_id,
            "title": title,
            "message": message,
            "notification_type": notification_type,
            "link": link,
        })


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_policy(
    priority: TicketPriority = TicketPriority.URGENT,
    response_time: int = 30,
    resolution_time: int = 240,
    name: Optional[str] = None,
    is_active: bool = True
) -> SLAPolicy:
    return SLAPolicy(
        id=None,
        name=name or f"{priority.value} SLA",
        priority=priority,
        response_time=response_time,
        resolution_time=resolution_time,
        is_active=is_active,
    )


def make_rule(
    condition_type: ConditionType = ConditionType.NO_RESPONSE,
    escalate_after: int = 60,
    escalate_to: str = "lead-1",
    name: str = "No response in an hour",
    **kwargs: Any
) -> EscalationRule:
    return EscalationRule(
        id=None,
        name=name,
        condition_type=condition_type,
        escalate_after=escalate_after,
        escalate_to=escalate_to,
        **kwargs,
    )


def make_ticket(subject: str = "Printer on fire", **kwargs: Any) -> Ticket:
    kwargs.setdefault("priority", TicketPriority.URGENT)
    return Ticket(id=None, subject=subject, **kwargs)

