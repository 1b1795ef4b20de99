"""
Shared test fixtures.

Tests run against an in-memory SQLite database (aiosqlite) with a
controllable clock; audit and notification collaborators are recorded
in memory.
"""

import os

os.environ["ENVIRONMENT"] = "testing"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ESCALATION_SWEEP_ENABLED"] = "false"
os.environ["SLACK_WEBHOOK_URL"] = ""

import asyncio
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from crm_tickets.infrastructure.database import Base
from crm_tickets.tickets.application import (
    EscalationExecutor,
    EscalationRuleEvaluator,
    EscalationSweep,
    SLAPolicyResolver,
    SLAService,
    TicketService,
)
from crm_tickets.tickets.infrastructure import (
    SQLAlchemyEscalationRuleRepository,
    SQLAlchemySLAPolicyRepository,
    SQLAlchemyTicketCommentRepository,
    SQLAlchemyTicketRepository,
)
from tests.helpers import FakeClock, RecordingAudit, RecordingNotifications, RecordingSleep


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def audit() -> RecordingAudit:
    return RecordingAudit()


@pytest.fixture
def notifications() -> RecordingNotifications:
    return RecordingNotifications()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def ticket_repo(session, clock) -> SQLAlchemyTicketRepository:
    return SQLAlchemyTicketRepository(session, clock, autocommit=True)


@pytest.fixture
def comment_repo(session, clock) -> SQLAlchemyTicketCommentRepository:
    return SQLAlchemyTicketCommentRepository(session, clock, autocommit=True)


@pytest.fixture
def policy_repo(session, clock) -> SQLAlchemySLAPolicyRepository:
    return SQLAlchemySLAPolicyRepository(session, clock, autocommit=True)


@pytest.fixture
def rule_repo(session, clock) -> SQLAlchemyEscalationRuleRepository:
    return SQLAlchemyEscalationRuleRepository(session, clock, autocommit=True)


@pytest.fixture
def ticket_service(ticket_repo, comment_repo, policy_repo, audit, notifications, clock) -> TicketService:
    return TicketService(
        ticket_repository=ticket_repo,
        comment_repository=comment_repo,
        policy_resolver=SLAPolicyResolver(policy_repo),
        audit_service=audit,
        notification_service=notifications,
        clock=clock,
        system_user_id="system",
    )


@pytest.fixture
def sla_service(policy_repo, ticket_repo, audit, clock) -> SLAService:
    return SLAService(policy_repo, ticket_repo, audit, clock)


@pytest.fixture
def executor(ticket_repo, audit, notifications, clock) -> EscalationExecutor:
    return EscalationExecutor(ticket_repo, audit, notifications, clock)


@pytest.fixture
def build_sweep(ticket_repo, rule_repo, audit, notifications, clock, sleep):
    """Factory for sweeps; keyword arguments override the defaults."""

    def _build(**overrides: Any) -> EscalationSweep:
        repo = overrides.pop("ticket_repository", ticket_repo)
        options = {
            "page_size": 50,
            "deadline_seconds": 300.0,
            "max_retries": 3,
            "retry_base_delay": 0.5,
            "clock": clock,
            "lock": asyncio.Lock(),
            "sleep": sleep,
        }
        options.update(overrides)
        executor = EscalationExecutor(
            repo, audit, options.pop("notifications", notifications), clock
        )
        return EscalationSweep(
            ticket_repository=repo,
            rule_repository=rule_repo,
            evaluator=EscalationRuleEvaluator(rule_repo, clock),
            executor=executor,
            **options,
        )

    return _build
