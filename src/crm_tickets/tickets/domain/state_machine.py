"""
Ticket status state machine.

Any member of the valid status set is an accepted target: there is no
ordering graph and no terminal state, so a closed ticket may be reopened.
"""

from datetime import datetime
from typing import Optional, Union

from crm_tickets.config import TicketStatus, VALID_STATUSES
from crm_tickets.core import InvalidStatusException
from crm_tickets.tickets.domain.entities import StatusHistoryEntry, Ticket


class TicketStateMachine:
    """Owns ticket status, status history and the resolved/closed stamps."""

    @staticmethod
    def coerce_status(value: Union[str, TicketStatus]) -> TicketStatus:
        try:
            return TicketStatus(value)
        except ValueError:
            raise InvalidStatusException(value, [s.value for s in VALID_STATUSES])

    @classmethod
    def initial_entry(
        cls,
        ticket: Ticket,
        actor: str,
        now: datetime,
        comment: str = "Ticket created"
    ) -> StatusHistoryEntry:
        """Seed the history of a ticket being created."""
        ticket.status = cls.coerce_status(ticket.status or TicketStatus.NEW)
        entry = StatusHistoryEntry(
            status=ticket.status,
            changed_by=actor,
            changed_at=now,
            comment=comment,
        )
        ticket.status_history = [entry]
        return entry

    @classmethod
    def transition(
        cls,
        ticket: Ticket,
        new_status: Union[str, TicketStatus],
        actor: str,
        now: datetime,
        comment: Optional[str] = None
    ) -> StatusHistoryEntry:
        """
        Move ``ticket`` to ``new_status`` in memory and return the history entry.

        Raises:
            InvalidStatusException: if ``new_status`` is not a valid status
        """
        status = cls.coerce_status(new_status)
        entry = StatusHistoryEntry(
            status=status,
            changed_by=actor,
            changed_at=now,
            comment=comment or "",
        )
        ticket.status = status
        ticket.status_history = [*ticket.status_history, entry]
        ticket.updated_at = now
        if status == TicketStatus.RESOLVED:
            ticket.resolved_at = now
        elif status == TicketStatus.CLOSED:
            ticket.closed_at = now
        return entry
