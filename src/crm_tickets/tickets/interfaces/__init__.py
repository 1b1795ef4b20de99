"""
Ticket Interfaces Layer
=======================

FastAPI route handlers. This is the outermost layer - handles HTTP
requests/responses and delegates to application services.
"""

from crm_tickets.tickets.interfaces.controllers import (
    routers,
    build_escalation_sweep,
    get_clock,
    get_sweep_lock,
    set_slack_client,
)

__all__ = ["routers", "build_escalation_sweep", "get_clock", "get_sweep_lock", "set_slack_client"]
