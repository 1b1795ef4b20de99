"""
Configuration Module
====================

Application settings and domain constants for the ticket escalation service.

Settings are loaded from environment variables (and an optional `.env`
file) using Pydantic.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="crm-ticket-escalation", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/crm",
        description="Database connection URL (async driver)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Escalation Sweep ==========
    escalation_sweep_enabled: bool = Field(
        default=True,
        description="Run the periodic escalation sweep inside this process"
    )
    escalation_sweep_interval: int = Field(
        default=60,
        description="Seconds between escalation sweeps",
        ge=10
    )
    escalation_page_size: int = Field(
        default=200,
        description="Tickets fetched per cursor page during a sweep",
        ge=1,
        le=5000
    )
    escalation_sweep_deadline_seconds: float = Field(
        default=300.0,
        description="Overall time budget for one sweep",
        gt=0
    )
    escalation_max_retries: int = Field(
        default=3,
        description="Attempts per escalation write on transient repository errors",
        ge=1,
        le=10
    )
    escalation_retry_base_delay: float = Field(
        default=0.5,
        description="Base delay in seconds for exponential retry backoff",
        ge=0
    )

    # ========== Automated Ingestion ==========
    system_user_id: str = Field(
        default="00000000-0000-0000-0000-000000000001",
        description="Actor id recorded for tickets created by email/chat ingestion"
    )
    seed_config_path: Path = Field(
        default=Path("escalation_seed.yaml"),
        description="YAML file with default SLA policies and escalation rules"
    )

    # ========== Notifications ==========
    slack_webhook_url: Optional[str] = Field(
        default=None,
        description="Slack webhook URL for escalation notifications"
    )
    slack_channel: str = Field(
        default="#ticket-escalations",
        description="Slack channel for escalation notifications"
    )
    slack_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for Slack API calls",
        ge=0.1,
        le=30
    )
    ticket_link_template: str = Field(
        default="/dashboard/modules/tickets/{ticket_id}",
        description="Link embedded in ticket notifications"
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    # ========== Grafana OTLP Metrics ==========
    grafana_host: Optional[str] = Field(
        default=None,
        description="Grafana OTLP gateway URL"
    )
    grafana_api_key: Optional[str] = Field(
        default=None,
        description="Grafana API key for OTLP authentication"
    )
    grafana_instance_id: Optional[str] = Field(
        default=None,
        description="Grafana instance ID for OTLP authentication"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production", "testing"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v.upper()


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class TicketStatus(str, Enum):
    """Ticket lifecycle statuses."""
    NEW = "new"
    OPEN = "open"
    PENDING = "pending"
    RESOLVED = "resolved"
    CLOSED = "closed"


class TicketPriority(str, Enum):
    """Ticket priority levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TicketChannel(str, Enum):
    """Channel through which a ticket was raised."""
    EMAIL = "email"
    CHAT = "chat"
    PORTAL = "portal"
    PHONE = "phone"


class ConditionType(str, Enum):
    """Temporal predicate tested by an escalation rule."""
    SLA_BREACH = "sla_breach"
    NO_RESPONSE = "no_response"
    NO_UPDATE = "no_update"


class EscalationTargetType(str, Enum):
    """Kind of principal an escalation rule targets."""
    USER = "user"
    GROUP = "group"


class SLAState(str, Enum):
    """Overall SLA state reported for a ticket."""
    NO_SLA = "no_sla"
    ON_TIME = "on_time"
    AT_RISK = "at_risk"
    BREACHED = "breached"


class BreachType(str, Enum):
    """Which SLA clock a violation belongs to."""
    RESPONSE = "response"
    RESOLUTION = "resolution"


class NotificationType(str, Enum):
    """In-app notification categories."""
    SLA = "sla"
    TASK = "task"
    INFO = "info"


class AuditAction(str, Enum):
    """Audit log actions."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# ========== Lists for validation ==========

VALID_STATUSES = [
    TicketStatus.NEW, TicketStatus.OPEN, TicketStatus.PENDING,
    TicketStatus.RESOLVED, TicketStatus.CLOSED
]
VALID_PRIORITIES = [
    TicketPriority.LOW, TicketPriority.MEDIUM,
    TicketPriority.HIGH, TicketPriority.URGENT
]
VALID_CHANNELS = [
    TicketChannel.EMAIL, TicketChannel.CHAT,
    TicketChannel.PORTAL, TicketChannel.PHONE
]
VALID_CONDITION_TYPES = [
    ConditionType.SLA_BREACH, ConditionType.NO_RESPONSE, ConditionType.NO_UPDATE
]
CLOSED_STATUSES = (TicketStatus.RESOLVED, TicketStatus.CLOSED)
OPEN_STATUSES = (TicketStatus.NEW, TicketStatus.OPEN, TicketStatus.PENDING)

# Fraction of an SLA window below which a ticket is reported "at risk"
AT_RISK_THRESHOLD = 0.25

TICKET_NUMBER_PREFIX = "TKT-"
TICKET_NUMBER_WIDTH = 6
