"""
Core Exceptions
================

Error taxonomy for the ticket service.

Each exception carries the HTTP status it maps to at the API boundary, so
handlers never need to know the concrete class. A missing SLA policy is
deliberately not represented here: tickets without a policy are valid.
"""

from typing import Any, Dict, Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    http_status: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def error_type(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "error_type": self.error_type, "details": self.details}


class DomainException(ApplicationException):
    """A ticket aggregate ended up in a state its invariants forbid."""


class ValidationException(ApplicationException):
    http_status = 422


class InvalidStatusException(ValidationException):
    """Status value outside the set a caller may assign."""

    def __init__(self, value: object, allowed: Optional[list] = None):
        details: Dict[str, Any] = {"status": str(value)}
        if allowed:
            details["allowed"] = allowed
        super().__init__("invalid status", details)


class InvalidIdentifierException(ValidationException):
    http_status = 400

    def __init__(self, resource_type: str, value: object):
        self.resource_type = resource_type
        self.value = value
        super().__init__(
            f"invalid {resource_type} ID",
            {"resource_type": resource_type, "value": str(value)}
        )


class ResourceNotFoundException(ApplicationException):
    """Ticket, comment, policy or rule absent from the store."""

    http_status = 404

    def __init__(self, resource_type: str, resource_id: Optional[str] = None):
        self.resource_type = resource_type
        self.resource_id = resource_id
        if resource_id:
            message = f"{resource_type} with id '{resource_id}' not found"
        else:
            message = f"{resource_type} not found"
        super().__init__(message, {"resource_type": resource_type})


class RepositoryException(ApplicationException):
    """Wrapped store failure; the escalation sweep treats it as transient."""

    http_status = 503


class ConcurrencyConflictException(RepositoryException):
    """The row's version moved on between read and conditional write."""

    http_status = 409

    def __init__(self, resource_type: str, resource_id: str, expected_version: int):
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.expected_version = expected_version
        super().__init__(
            f"{resource_type} {resource_id} was modified concurrently",
            {"expected_version": expected_version}
        )


class ConfigurationException(ApplicationException):
    """Bad settings or seed data detected at startup."""
