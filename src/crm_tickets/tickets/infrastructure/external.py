"""
Ticket External Service Integrations
=====================================

- Slack webhook notifications (circuit breaker + retry)
- In-app notification service that also mirrors to Slack
- YAML seed of default SLA policies and escalation rules
- APScheduler for the periodic escalation sweep
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from crm_tickets.config import (
    ConditionType,
    EscalationTargetType,
    NotificationType,
    TicketPriority,
    TicketStatus,
    settings,
)
from crm_tickets.core import ConfigurationException
from crm_tickets.shared.infrastructure.logging import get_logger
from crm_tickets.tickets.application.services import (
    IEscalationRuleRepository,
    INotificationService,
    ISLAPolicyRepository,
)
from crm_tickets.tickets.domain import EscalationRule, SLAPolicy
from crm_tickets.tickets.infrastructure.repositories import SQLAlchemyNotificationRepository

logger = get_logger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Stops calling a failing webhook for a while.

    ``failure_threshold`` consecutive failed sends open the circuit. Once
    ``recovery_timeout`` seconds have passed the next send is let through
    as a probe: success closes the circuit, failure reopens it at once.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        timer: Callable[[], float] = time.monotonic
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._timer = timer
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._timer() - self._opened_at >= self.recovery_timeout:
            self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state is not CircuitState.OPEN

    def record_success(self) -> None:
        if self._state is not CircuitState.CLOSED:
            logger.info("Slack circuit closed")
        self._consecutive_failures = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        probe_failed = self.state is CircuitState.HALF_OPEN
        if probe_failed or self._consecutive_failures >= self.failure_threshold:
            self._state = CircuitState.OPEN
            self._opened_at = self._timer()
            logger.warning(
                "Slack circuit opened",
                extra={
                    "consecutive_failures": self._consecutive_failures,
                    "recovery_timeout": self.recovery_timeout
                }
            )


@dataclass
class SlackMessage:
    user_id: str
    title: str
    message: str
    notification_type: str
    link: Optional[str] = None


def build_slack_payload(data: SlackMessage, channel: str) -> Dict[str, Any]:
    """Block Kit payload: header, body, recipient/type fields, optional link."""
    emoji = ":rotating_light:" if data.notification_type == NotificationType.SLA.value else ":ticket:"
    blocks: List[Dict[str, Any]] = [
        {"type": "header", "text": {"type": "plain_text", "text": f"{emoji} {data.title}", "emoji": True}},
        {"type": "section", "text": {"type": "mrkdwn", "text": data.message}},
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Recipient:*\n{data.user_id}"},
                {"type": "mrkdwn", "text": f"*Type:*\n{data.notification_type.title()}"},
            ],
        },
    ]
    if data.link:
        blocks.append({"type": "context", "elements": [{"type": "mrkdwn", "text": f"<{data.link}|Open ticket>"}]})
    return {"channel": channel, "text": data.title, "blocks": blocks}


class SlackClient:
    """
    Incoming-webhook client used to mirror in-app notifications.

    Each send makes up to ``max_retries`` attempts with 1s, 2s, 4s... pauses.
    A send that exhausts its attempts counts as one failure for the circuit
    breaker. Nothing is raised: the result is reported as a bool.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        channel: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self._webhook_url = settings.slack_webhook_url if webhook_url is None else webhook_url
        self._channel = channel or settings.slack_channel
        self._timeout = timeout_seconds or settings.slack_timeout_seconds
        self._http = http_client
        self._breaker = circuit_breaker or CircuitBreaker()
        self._sleep = sleep

    @property
    def is_configured(self) -> bool:
        return bool(self._webhook_url)

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._timeout)
        return self._http

    async def _post_once(self, payload: Dict[str, Any], attempt: int) -> bool:
        try:
            response = await self._client().post(self._webhook_url, json=payload)
        except httpx.HTTPError as e:
            logger.warning("Slack webhook unreachable", extra={"error": str(e), "attempt": attempt})
            return False
        if response.is_success:
            return True
        logger.warning(
            "Slack webhook rejected message",
            extra={"status_code": response.status_code, "attempt": attempt}
        )
        return False

    async def send(self, data: SlackMessage, max_retries: int = 3) -> bool:
        if not self.is_configured:
            logger.debug("Slack webhook not configured")
            return False
        if not self._breaker.allow_request():
            logger.warning("Slack circuit open, message dropped", extra={"user_id": data.user_id})
            return False

        payload = build_slack_payload(data, self._channel)
        for attempt in range(1, max_retries + 1):
            if await self._post_once(payload, attempt):
                self._breaker.record_success()
                logger.info(
                    "Slack notification sent",
                    extra={"user_id": data.user_id, "notification_type": data.notification_type}
                )
                return True
            if attempt < max_retries:
                await self._sleep(2 ** (attempt - 1))

        self._breaker.record_failure()
        logger.error("Slack notification abandoned", extra={"user_id": data.user_id, "attempts": max_retries})
        return False

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None


class NotificationService(INotificationService):
    """
    Persists in-app notifications and mirrors them to Slack when a
    webhook is configured. Slack delivery is best-effort.
    """

    def __init__(
        self,
        repository: SQLAlchemyNotificationRepository,
        slack_client: Optional[SlackClient] = None
    ):
        self._repository = repository
        self._slack = slack_client

    async def create_notification(
        self,
        user_id: str,
        title: str,
        message: str,
        notification_type: NotificationType,
        link: Optional[str] = None
    ) -> None:
        notification_id = await self._repository.create(user_id, title, message, notification_type, link)
        logger.debug(
            "Notification stored",
            extra={"notification_id": notification_id, "user_id": user_id}
        )

        if self._slack is not None and self._slack.is_configured:
            await self._slack.send(SlackMessage(
                user_id=user_id,
                title=title,
                message=message,
                notification_type=NotificationType(notification_type).value,
                link=link,
            ))


# ========== Seed data ==========

@dataclass
class SeedData:
    policies: List[SLAPolicy]
    rules: List[EscalationRule]


def load_seed_file(path: Path) -> SeedData:
    """
    Parse the YAML seed file.

    Expected layout::

        sla_policies:
          - {name, priority, response_time, resolution_time, ...}
        escalation_rules:
          - {name, condition_type, escalate_after, escalate_to, ...}

    Raises:
        ConfigurationException: if the file is malformed
    """
    if not path.exists():
        logger.info("Seed file not found, skipping", extra={"path": str(path)})
        return SeedData(policies=[], rules=[])

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationException("unreadable seed file", {"path": str(path), "error": str(e)})
    if not isinstance(data, dict):
        raise ConfigurationException("seed file must be a mapping", {"path": str(path)})

    try:
        policies = [
            SLAPolicy(
                id=None,
                name=p["name"],
                description=p.get("description", ""),
                priority=TicketPriority(p["priority"]),
                response_time=int(p["response_time"]),
                resolution_time=int(p["resolution_time"]),
                is_business_hours_only=bool(p.get("is_business_hours_only", False)),
                business_hours=p.get("business_hours") or {},
                is_active=bool(p.get("is_active", True)),
            )
            for p in data.get("sla_policies") or []
        ]
        rules = [
            EscalationRule(
                id=None,
                name=r["name"],
                description=r.get("description", ""),
                condition_type=ConditionType(r["condition_type"]),
                escalate_after=int(r["escalate_after"]),
                escalate_to=str(r["escalate_to"]),
                escalate_to_type=EscalationTargetType(r.get("escalate_to_type", "user")),
                priority=TicketPriority(r["priority"]) if r.get("priority") else None,
                status=TicketStatus(r["status"]) if r.get("status") else None,
                notify_emails=list(r.get("notify_emails") or []),
                is_active=bool(r.get("is_active", True)),
            )
            for r in data.get("escalation_rules") or []
        ]
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationException("invalid seed file", {"path": str(path), "error": str(e)})

    return SeedData(policies=policies, rules=rules)


async def apply_seed(
    seed: SeedData,
    policy_repository: ISLAPolicyRepository,
    rule_repository: IEscalationRuleRepository
) -> Dict[str, int]:
    """Insert seed policies/rules into empty tables only."""
    created = {"sla_policies": 0, "escalation_rules": 0}

    if seed.policies and await policy_repository.count() == 0:
        for policy in seed.policies:
            await policy_repository.create(policy)
            created["sla_policies"] += 1

    if seed.rules and await rule_repository.count() == 0:
        for rule in seed.rules:
            await rule_repository.create(rule)
            created["escalation_rules"] += 1

    if any(created.values()):
        logger.info("Seed data applied", extra=created)
    return created


# ========== Scheduler ==========

class EscalationScheduler:
    """
    Runs the escalation sweep on a fixed interval inside the event loop.

    APScheduler never starts a second run of the job while one is in
    flight (``max_instances=1``), and fires missed while a sweep overran
    collapse into one (``coalesce``).
    """

    JOB_ID = "escalation_sweep"

    def __init__(self, interval_seconds: int = 60):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def start(self, job_func: Callable[[], Awaitable[Any]]) -> None:
        if self.is_running:
            logger.warning("Escalation scheduler already running")
            return

        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id=self.JOB_ID,
            name="Escalation sweep",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self.interval_seconds,
            replace_existing=True
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Escalation scheduler started", extra={"interval_seconds": self.interval_seconds})

    async def stop(self) -> None:
        if not self.is_running:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Escalation scheduler stopped")
