"""
Core Exceptions
================

Custom exceptions for the escalation service.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries.
"""

from typing import Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class EvaluationException(ApplicationException):
    """
    The open-case query behind an SLA run failed.

    Fatal for the run: nothing is dispatched from a partial case list.
    """


class DeliveryException(ExternalServiceException):
    """A single SMS or email send failed."""

    def __init__(
        self,
        channel: str,
        message: str,
        recipient: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.channel = channel
        self.recipient = recipient
        super().__init__(channel, message, details)


class MarkerWriteException(RepositoryException):
    """
    A notification went out but its "sent at" marker was not persisted.

    The case will be picked up again on the next run, so the recipient may
    be notified twice.
    """

    def __init__(self, case_id: str, marker: str, reason: str):
        self.case_id = case_id
        self.marker = marker
        super().__init__(
            f"Could not set {marker} on case {case_id}: {reason}",
            {"case_id": case_id, "marker": marker}
        )
