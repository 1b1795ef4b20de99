"""CRM ticket SLA tracking and escalation service."""

__version__ = "1.0.0"
