"""
CalmText - Core Package

Contains the central orchestration logic and domain types:
- orchestrator: Per-message decision tree
- session_store: Tiered per-user session state
- types: Internal domain types and type aliases
- exceptions: Error hierarchy
- logging: Structured logging and crisis audit records

Only the dependency-free modules are re-exported here; import the
orchestrator and session store from their modules.
"""

from .types import (
    RiskLevel,
    RiskAssessment,
    CrisisResource,
    Session,
    SessionFlags,
    Exchange,
    ContextSnapshot,
    UserProfile,
    HandleResult,
    HandleType,
)
from .exceptions import (
    CalmTextError,
    ValidationError,
    StorageError,
    GenerationError,
    TransportError,
    ConfigurationError,
)

__all__ = [
    # Types
    "RiskLevel",
    "RiskAssessment",
    "CrisisResource",
    "Session",
    "SessionFlags",
    "Exchange",
    "ContextSnapshot",
    "UserProfile",
    "HandleResult",
    "HandleType",
    # Errors
    "CalmTextError",
    "ValidationError",
    "StorageError",
    "GenerationError",
    "TransportError",
    "ConfigurationError",
]
