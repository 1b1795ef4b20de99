"""
Ticket SLA & Escalation Module
==============================

Bounded context for ticket status, SLA deadlines and automatic escalation.

Responsibilities:
- Own the ticket status state machine and its append-only history
- Resolve a priority to an SLA policy and derive response/resolution deadlines
- Detect SLA breaches for single tickets and in bulk
- Evaluate escalation rules and apply their effects
- Run the periodic escalation sweep over open tickets
"""

__version__ = "1.0.0"
