"""
Core Module
============

Shared core utilities and abstractions used across the application.

This module contains framework-agnostic code that defines the fundamental
building blocks of the system.
"""

from escalation_service.core.exceptions import (
    ApplicationException,
    RepositoryException,
    ResourceNotFoundException,
    ConfigurationException,
    ExternalServiceException,
    EvaluationException,
    DeliveryException,
    MarkerWriteException,
)

__all__ = [
    "ApplicationException",
    "RepositoryException",
    "ResourceNotFoundException",
    "ConfigurationException",
    "ExternalServiceException",
    "EvaluationException",
    "DeliveryException",
    "MarkerWriteException",
]
