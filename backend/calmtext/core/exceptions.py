"""
CalmText - Exception Hierarchy

Structured exceptions for consistent error handling across the system.
All exceptions include error codes for API responses.
"""

from typing import Optional


class CalmTextError(Exception):
    """Base exception for all CalmText errors."""

    code: str = "UNKNOWN_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(CalmTextError):
    """Inbound message rejected (empty, oversized, wrong type)."""
    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidMessageError(ValidationError):
    """Webhook or API payload is missing required fields."""
    code = "INVALID_MESSAGE"


# =============================================================================
# Storage Errors
# =============================================================================

class StorageError(CalmTextError):
    """Cache or durable tier unavailable."""
    code = "STORAGE_ERROR"
    status_code = 503


class CacheError(StorageError):
    """Fast cache tier failed."""
    code = "CACHE_ERROR"


class DurableStoreError(StorageError):
    """Durable store failed."""
    code = "DURABLE_STORE_ERROR"


# =============================================================================
# Collaborator Errors
# =============================================================================

class GenerationError(CalmTextError):
    """Text generation call failed."""
    code = "GENERATION_ERROR"
    status_code = 502


class TransportError(CalmTextError):
    """Outbound SMS send failed."""
    code = "TRANSPORT_ERROR"
    status_code = 502


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(CalmTextError):
    """Missing or invalid configuration (fatal at startup)."""
    code = "CONFIGURATION_ERROR"
    status_code = 500
