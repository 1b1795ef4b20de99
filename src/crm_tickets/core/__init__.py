"""
Core Module
============

Framework-agnostic building blocks: the error taxonomy and the clock
helpers every layer uses.
"""

from crm_tickets.core.exceptions import (
    ApplicationException,
    DomainException,
    ValidationException,
    InvalidStatusException,
    InvalidIdentifierException,
    ResourceNotFoundException,
    RepositoryException,
    ConcurrencyConflictException,
    ConfigurationException,
)
from crm_tickets.core.clock import Clock, utc_now, ensure_utc, parse_identifier

__all__ = [
    "ApplicationException",
    "DomainException",
    "ValidationException",
    "InvalidStatusException",
    "InvalidIdentifierException",
    "ResourceNotFoundException",
    "RepositoryException",
    "ConcurrencyConflictException",
    "ConfigurationException",
    "Clock",
    "utc_now",
    "ensure_utc",
    "parse_identifier",
]
