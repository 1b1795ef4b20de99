"""
CRM Ticket Escalation - Main Application
=========================================

Ticket SLA tracking and escalation service.

Modules:
- Tickets: intake, lifecycle, assignment and comments
- SLA: per-priority policies, deadlines, breach detection and reports
- Escalation: rule evaluation and the periodic escalation sweep

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities, value objects, state machine, rule predicates
- Infrastructure: Database, Slack, scheduler, seed data
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Configuration and Core
from crm_tickets.config import settings
from crm_tickets.core import ApplicationException

# Infrastructure
from crm_tickets.infrastructure.database import (
    close_database,
    create_tables,
    get_session_context,
    init_database,
    ping,
)

# Ticket Module
from crm_tickets.tickets.infrastructure import (
    EscalationScheduler,
    SlackClient,
    SQLAlchemyEscalationRuleRepository,
    SQLAlchemySLAPolicyRepository,
    apply_seed,
    load_seed_file,
)
from crm_tickets.tickets.interfaces import (
    build_escalation_sweep,
    get_sweep_lock,
    routers,
    set_slack_client,
)

# Shared
from crm_tickets.shared.api.middleware import (
    RequestContextMiddleware,
    application_exception_handler,
    global_exception_handler,
)
from crm_tickets.shared.infrastructure.logging import get_logger, setup_logging
from crm_tickets.shared.infrastructure.metrics import get_grafana_exporter

logger = get_logger(__name__)

# Global service instances
escalation_scheduler: Optional[EscalationScheduler] = None
sweep_stop_event: Optional[asyncio.Event] = None
slack_client: Optional[SlackClient] = None


async def seed_defaults() -> None:
    """Load the YAML seed and insert it into empty policy/rule tables."""
    seed = load_seed_file(settings.seed_config_path)
    async with get_session_context() as session:
        await apply_seed(
            seed,
            SQLAlchemySLAPolicyRepository(session),
            SQLAlchemyEscalationRuleRepository(session),
        )


async def escalation_sweep_job() -> None:
    """Background escalation sweep job."""
    async with get_session_context() as session:
        sweep = build_escalation_sweep(session, lock=get_sweep_lock(), slack_client=slack_client)
        result = await sweep.process_escalations(sweep_stop_event)

    if not result.skipped:
        await get_grafana_exporter().export_sweep_metrics(result.counters())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Seed default SLA policies and escalation rules
    4. Initialize Slack client
    5. Start escalation scheduler

    SHUTDOWN:
    1. Signal a running sweep to stop and stop the scheduler
    2. Close Slack client
    3. Close database connections
    """
    global escalation_scheduler, sweep_stop_event, slack_client

    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting Ticket Escalation Service", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    logger.info("Initializing database")
    init_database()
    await create_tables()

    logger.info("Loading seed data", extra={"path": str(settings.seed_config_path)})
    await seed_defaults()

    slack_client = SlackClient()
    set_slack_client(slack_client)

    sweep_stop_event = asyncio.Event()
    if settings.escalation_sweep_enabled:
        escalation_scheduler = EscalationScheduler(interval_seconds=settings.escalation_sweep_interval)
        await escalation_scheduler.start(escalation_sweep_job)
    else:
        logger.info("Escalation sweep disabled")

    logger.info("Ticket Escalation Service started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down Ticket Escalation Service")

    sweep_stop_event.set()
    if escalation_scheduler:
        await escalation_scheduler.stop()
        escalation_scheduler = None

    set_slack_client(None)
    await slack_client.close()

    await close_database()

    logger.info("Ticket Escalation Service shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="CRM Ticket Escalation API",
    description="""
    ## Ticket SLA Tracking and Escalation

    ### Tickets
    - `POST /api/tickets` - Create a ticket (SLA deadlines from the active policy)
    - `POST /api/tickets/intake/email`, `POST /api/tickets/intake/chat` - Automated intake
    - `PATCH /api/tickets/{id}/status` - Lifecycle transitions
    - `POST /api/tickets/{id}/comments` - First public comment records the first response

    ### SLA
    - `/api/sla-policies` - Per-priority response/resolution windows (minutes)
    - `GET /api/sla/metrics`, `/violations`, `/trends` - Compliance reports

    ### Escalation
    - `/api/escalation-rules` - `sla_breach`, `no_response` and `no_update` rules
    - `POST /api/escalation-rules/run` - Run a sweep now

    The acting user is read from the `X-User-ID` header.
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# === CORS Middleware ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestContextMiddleware)
app.add_exception_handler(ApplicationException, application_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# === Include Module Routers ===
for router in routers:
    app.include_router(router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint for load balancers and orchestrators."""
    database = await ping()
    return {
        "status": "degraded" if database == "unavailable" else "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": {
            "database": database,
            "escalation_scheduler": (
                "running" if escalation_scheduler and escalation_scheduler.is_running else "stopped"
            ),
            "slack": "configured" if slack_client and slack_client.is_configured else "not_configured",
            "grafana": "configured" if get_grafana_exporter().is_enabled() else "not_configured",
        }
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "CRM Ticket Escalation",
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "crm_tickets.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
