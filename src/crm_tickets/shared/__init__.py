"""
Shared Kernel Module
====================

Generic infrastructure used by the ticket escalation bounded context:
structured logging, HTTP middleware and the metrics exporter.

DO NOT add ticket or escalation business logic to the shared kernel.
"""
