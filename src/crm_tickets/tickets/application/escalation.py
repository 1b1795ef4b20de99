"""
Escalation Engine
=================

Rule evaluation, escalation execution and the periodic sweep over open
tickets.

Within one sweep a ticket is read once; every rule that matches that
snapshot is executed in turn, each execution continuing from the ticket
version the previous one wrote.
"""

import asyncio
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
from uuid import UUID

from crm_tickets.config import (
    VALID_CONDITION_TYPES,
    AuditAction,
    ConditionType,
    EscalationTargetType,
    NotificationType,
    TicketPriority,
    TicketStatus,
)
from crm_tickets.core import (
    ApplicationException,
    Clock,
    ConcurrencyConflictException,
    RepositoryException,
    ResourceNotFoundException,
    ValidationException,
    parse_identifier,
    utc_now,
)
from crm_tickets.shared.infrastructure.logging import get_logger, log_latency
from crm_tickets.tickets.application.services import (
    TICKETS_MODULE,
    IAuditService,
    IEscalationRuleRepository,
    INotificationService,
    ITicketRepository,
    change,
    link_for,
    plain_value,
)
from crm_tickets.tickets.domain import EscalationRule, Ticket, rule_applies

logger = get_logger(__name__)

RULES_MODULE = "escalation_rules"


class EscalationRuleEvaluator:
    """Returns every active rule whose filters and condition match a ticket."""

    def __init__(self, rule_repository: IEscalationRuleRepository, clock: Clock = utc_now):
        self._rule_repo = rule_repository
        self._clock = clock

    async def evaluate_rules(
        self,
        ticket: Ticket,
        rules: Optional[List[EscalationRule]] = None,
        now: Optional[datetime] = None
    ) -> List[EscalationRule]:
        """
        Evaluate rules against ``ticket``.

        Args:
            ticket: Ticket snapshot
            rules: Preloaded active rules; loaded from the repository if None
            now: Evaluation instant; defaults to the clock

        Returns:
            All matching rules, in rule order (no short-circuit)
        """
        if rules is None:
            rules = await self._rule_repo.find_active()
        now = now or self._clock()
        return [rule for rule in rules if rule_applies(rule, ticket, now)]


class EscalationExecutor:
    """Applies one rule's escalation to one ticket."""

    def __init__(
        self,
        ticket_repository: ITicketRepository,
        audit_service: IAuditService,
        notification_service: INotificationService,
        clock: Clock = utc_now
    ):
        self._ticket_repo = ticket_repository
        self._audit = audit_service
        self._notifications = notification_service
        self._clock = clock

    async def execute_escalation(
        self,
        ticket: Ticket,
        rule: EscalationRule,
        escalated_by: Optional[str] = None
    ) -> Ticket:
        """
        Escalate ``ticket`` by ``rule``.

        The level increment, new target and history entry are one
        versioned write. Audit and notification are best-effort.

        Returns:
            The ticket as persisted after the escalation

        Raises:
            ConcurrencyConflictException: if ``ticket.version`` is stale
            RepositoryException: if the write fails
        """
        entry = ticket.next_escalation_entry(
            escalated_to=rule.escalate_to,
            escalated_at=self._clock(),
            reason=rule.escalation_reason,
            rule_id=rule.id,
            escalated_by=escalated_by,
        )
        updated = await self._ticket_repo.apply_escalation(ticket, entry)

        logger.info(
            "Ticket escalated",
            extra={
                "ticket_id": updated.id,
                "rule_id": rule.id,
                "rule_name": rule.name,
                "escalation_level": updated.escalation_level,
                "escalated_to": updated.escalated_to,
            }
        )

        try:
            await self._audit.log_change(
                AuditAction.UPDATE,
                TICKETS_MODULE,
                updated.id,
                {
                    "escalation_level": change(ticket.escalation_level, updated.escalation_level),
                    "escalated_to": change(ticket.escalated_to, updated.escalated_to),
                },
                actor=escalated_by,
            )
        except Exception as e:
            logger.error(
                "Failed to audit escalation",
                extra={"ticket_id": updated.id, "rule_id": rule.id, "error": str(e)}
            )

        try:
            await self._notifications.create_notification(
                rule.escalate_to,
                "Ticket Escalated",
                f"Ticket {updated.ticket_number} has been escalated to you due to rule: {rule.name}",
                NotificationType.SLA,
                link_for(updated.id),
            )
        except Exception as e:
            logger.warning(
                "Failed to send escalation notification",
                extra={"ticket_id": updated.id, "escalated_to": rule.escalate_to, "error": str(e)}
            )

        return updated


@dataclass
class SweepResult:
    """Summary of one sweep."""

    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    tickets_scanned: int = 0
    rules_matched: int = 0
    escalations_executed: int = 0
    failures: int = 0
    pages: int = 0
    deadline_exceeded: bool = False
    cancelled: bool = False
    skipped: bool = False

    def counters(self) -> Dict[str, int]:
        return {
            "tickets_scanned": self.tickets_scanned,
            "rules_matched": self.rules_matched,
            "escalations_executed": self.escalations_executed,
            "failures": self.failures,
            "pages": self.pages,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("started_at", "finished_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


class _StopSweep(Exception):
    pass


@dataclass
class _SweepState:
    result: SweepResult
    deadline: float
    stop_event: Optional[asyncio.Event] = None
    rules: List[EscalationRule] = field(default_factory=list)


class EscalationSweep:
    """
    One pass of the escalation engine over all open tickets.

    Tickets are read in (created_at, id) pages until exhausted, bounded by
    an overall deadline. A failure on one ticket is counted and the sweep
    moves on; transient repository errors are retried with exponential
    backoff. At most one sweep runs at a time per ``lock``.
    """

    def __init__(
        self,
        ticket_repository: ITicketRepository,
        rule_repository: IEscalationRuleRepository,
        evaluator: EscalationRuleEvaluator,
        executor: EscalationExecutor,
        page_size: int = 200,
        deadline_seconds: float = 300.0,
        max_retries: int = 3,
        retry_base_delay: float = 0.5,
        clock: Clock = utc_now,
        lock: Optional[asyncio.Lock] = None,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self._ticket_repo = ticket_repository
        self._rule_repo = rule_repository
        self._evaluator = evaluator
        self._executor = executor
        self._page_size = page_size
        self._deadline_seconds = deadline_seconds
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._clock = clock
        self._lock = lock or asyncio.Lock()
        self._monotonic = monotonic
        self._sleep = sleep

    async def process_escalations(self, stop_event: Optional[asyncio.Event] = None) -> SweepResult:
        """
        Run one sweep.

        Args:
            stop_event: Checked between tickets; when set the sweep stops early

        Returns:
            SweepResult; ``skipped`` is set if another sweep holds the lock
        """
        if self._lock.locked():
            logger.warning("Escalation sweep already running, skipping")
            return SweepResult(started_at=self._clock(), finished_at=self._clock(), skipped=True)

        async with self._lock:
            with log_latency(logger, "escalation_sweep"):
                result = await self._run(stop_event)

        logger.info("Escalation sweep finished", extra=result.to_dict())
        return result

    async def _run(self, stop_event: Optional[asyncio.Event]) -> SweepResult:
        state = _SweepState(
            result=SweepResult(started_at=self._clock()),
            deadline=self._monotonic() + self._deadline_seconds,
            stop_event=stop_event,
        )

        state.rules = await self._with_retry("load_rules", self._rule_repo.find_active)
        if not state.rules:
            logger.debug("No active escalation rules")
            state.result.finished_at = self._clock()
            return state.result

        cursor: Optional[Tuple[datetime, str]] = None
        try:
            while True:
                self._check_stop(state)
                page = await self._with_retry(
                    "load_page",
                    lambda: self._ticket_repo.find_open_page(cursor, self._page_size),
                )
                if not page:
                    break
                state.result.pages += 1

                for ticket in page:
                    self._check_stop(state)
                    state.result.tickets_scanned += 1
                    await self._process_ticket(ticket, state)

                last = page[-1]
                cursor = (last.created_at, last.id)
                if len(page) < self._page_size:
                    break
        except _StopSweep:
            pass

        state.result.finished_at = self._clock()
        return state.result

    def _check_stop(self, state: _SweepState) -> None:
        if state.stop_event is not None and state.stop_event.is_set():
            state.result.cancelled = True
            logger.info("Escalation sweep cancelled")
            raise _StopSweep()
        if self._monotonic() > state.deadline:
            state.result.deadline_exceeded = True
            logger.warning(
                "Escalation sweep deadline exceeded",
                extra={"deadline_seconds": self._deadline_seconds, **state.result.counters()}
            )
            raise _StopSweep()

    async def _process_ticket(self, ticket: Ticket, state: _SweepState) -> None:
        now = self._clock()
        matched = await self._evaluator.evaluate_rules(ticket, state.rules, now)
        if not matched:
            return
        state.result.rules_matched += len(matched)

        current = ticket
        for rule in matched:
            try:
                current, executed = await self._execute_with_retry(current, rule)
            except ApplicationException as e:
                state.result.failures += 1
                logger.error(
                    "Escalation failed",
                    extra={
                        "ticket_id": ticket.id,
                        "rule_id": rule.id,
                        "error": e.message,
                        "error_type": type(e).__name__,
                    }
                )
                # Only this ticket/rule pair is abandoned; later rules run
                # against a fresh read so their version check can pass.
                try:
                    fresh = await self._ticket_repo.get_by_id(current.id)
                except ApplicationException:
                    return
                if fresh is None or not fresh.is_open:
                    return
                current = fresh
                continue
            if executed:
                state.result.escalations_executed += 1

    async def _execute_with_retry(self, ticket: Ticket, rule: EscalationRule) -> Tuple[Ticket, bool]:
        """
        Execute one escalation, retrying transient repository errors.

        Before a retry the ticket is re-read; if the rule no longer matches
        the fresh ticket the escalation is dropped.

        Returns:
            (latest ticket, whether the escalation was written)
        """
        current = ticket
        attempt = 1
        while True:
            try:
                return await self._executor.execute_escalation(current, rule), True
            except ResourceNotFoundException:
                raise
            except RepositoryException as e:
                if attempt >= self._max_retries:
                    raise
                delay = self._retry_base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "Escalation write failed, retrying",
                    extra={
                        "ticket_id": current.id,
                        "rule_id": rule.id,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "conflict": isinstance(e, ConcurrencyConflictException),
                        "error": e.message,
                    }
                )
                await self._sleep(delay)
            attempt += 1

            fresh = await self._ticket_repo.get_by_id(current.id)
            if fresh is None:
                raise ResourceNotFoundException("Ticket", current.id)
            if not fresh.is_open or not rule_applies(rule, fresh, self._clock()):
                logger.info(
                    "Rule no longer matches after re-read, dropping escalation",
                    extra={"ticket_id": fresh.id, "rule_id": rule.id}
                )
                return fresh, False
            current = fresh

    async def _with_retry(self, operation: str, call: Callable[[], Awaitable[Any]]) -> Any:
        attempt = 1
        while True:
            try:
                return await call()
            except RepositoryException as e:
                if attempt >= self._max_retries:
                    raise
                delay = self._retry_base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "Sweep read failed, retrying",
                    extra={"operation": operation, "attempt": attempt, "delay_seconds": delay, "error": e.message}
                )
                await self._sleep(delay)
            attempt += 1


class EscalationRuleService:
    """Administration of escalation rules."""

    RULE_FIELDS = (
        "name",
        "description",
        "priority",
        "status",
        "condition_type",
        "escalate_after",
        "escalate_to",
        "escalate_to_type",
        "notify_emails",
        "is_active",
    )

    def __init__(
        self,
        rule_repository: IEscalationRuleRepository,
        audit_service: Optional[IAuditService] = None,
        clock: Clock = utc_now
    ):
        self._rule_repo = rule_repository
        self._audit = audit_service
        self._clock = clock

    @staticmethod
    def _coerce(fields: Dict[str, Any]) -> Dict[str, Any]:
        coerced = dict(fields)
        try:
            if "condition_type" in coerced:
                coerced["condition_type"] = ConditionType(coerced["condition_type"])
            if coerced.get("priority") is not None:
                coerced["priority"] = TicketPriority(coerced["priority"])
            if coerced.get("status") is not None:
                coerced["status"] = TicketStatus(coerced["status"])
            if "escalate_to_type" in coerced:
                coerced["escalate_to_type"] = EscalationTargetType(coerced["escalate_to_type"])
        except ValueError as e:
            raise ValidationException(
                "invalid escalation rule",
                {"error": str(e), "condition_types": [c.value for c in VALID_CONDITION_TYPES]}
            )
        if "escalate_after" in coerced and coerced["escalate_after"] < 0:
            raise ValidationException("escalate_after must not be negative")
        if "escalate_to" in coerced and not coerced["escalate_to"]:
            raise ValidationException("escalate_to is required")
        return coerced

    async def create_rule(self, rule: EscalationRule, created_by: Optional[str] = None) -> EscalationRule:
        fields = self._coerce({
            "condition_type": rule.condition_type,
            "priority": rule.priority,
            "status": rule.status,
            "escalate_to_type": rule.escalate_to_type,
            "escalate_after": rule.escalate_after,
            "escalate_to": rule.escalate_to,
        })
        for name, value in fields.items():
            setattr(rule, name, value)
        now = self._clock()
        rule.created_at = now
        rule.updated_at = now
        created = await self._rule_repo.create(rule)
        if self._audit:
            await self._audit.log_change(
                AuditAction.CREATE,
                RULES_MODULE,
                created.id,
                {
                    "name": change(None, created.name),
                    "condition_type": change(None, created.condition_type.value),
                },
                actor=created_by,
            )
        logger.info(
            "Escalation rule created",
            extra={"rule_id": created.id, "condition_type": created.condition_type.value}
        )
        return created

    async def get_rule(self, rule_id: Union[str, UUID]) -> EscalationRule:
        rid = parse_identifier(rule_id, "escalation rule")
        rule = await self._rule_repo.get_by_id(rid)
        if rule is None:
            raise ResourceNotFoundException("EscalationRule", str(rid))
        return rule

    async def list_rules(self) -> List[EscalationRule]:
        return await self._rule_repo.list_all()

    async def update_rule(
        self,
        rule_id: Union[str, UUID],
        updates: Dict[str, Any],
        updated_by: Optional[str] = None
    ) -> EscalationRule:
        rule = await self.get_rule(rule_id)
        fields = self._coerce({k: v for k, v in updates.items() if k in self.RULE_FIELDS})
        if not fields:
            return rule
        updated = await self._rule_repo.update(rule.id, fields)
        if self._audit:
            changes = {
                name: change(plain_value(getattr(rule, name)), plain_value(getattr(updated, name)))
                for name in fields
                if getattr(rule, name) != getattr(updated, name)
            }
            if changes:
                await self._audit.log_change(
                    AuditAction.UPDATE, RULES_MODULE, updated.id, changes, actor=updated_by
                )
        return updated

    async def delete_rule(self, rule_id: Union[str, UUID], deleted_by: Optional[str] = None) -> None:
        rule = await self.get_rule(rule_id)
        await self._rule_repo.delete(rule.id)
        if self._audit:
            await self._audit.log_change(
                AuditAction.DELETE, RULES_MODULE, rule.id, {"name": change(rule.name, None)},
                actor=deleted_by,
            )
