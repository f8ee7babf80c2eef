"""
CalmText - Services Package

Contains the message-level services:
- Risk assessment and crisis responses
- Keyword commands
- Prompt building, sentiment and topic helpers
- Reply generation

Design Pattern:
    The reply generator defines a Protocol (interface) and two
    implementations. The orchestrator is configured with a concrete
    implementation at startup, enabling dependency injection and easy
    testing/swapping of components.
"""

from .risk_assessor import (
    assess_risk,
    generate_crisis_response,
    requires_human_escalation,
    requires_review,
    CRISIS_RESOURCES,
)
from .commands import is_command, handle_command
from .generator import (
    ResponseGenerator,
    DummyResponseGenerator,
    AnthropicResponseGenerator,
)

__all__ = [
    # Risk
    "assess_risk",
    "generate_crisis_response",
    "requires_human_escalation",
    "requires_review",
    "CRISIS_RESOURCES",
    # Commands
    "is_command",
    "handle_command",
    # Generation
    "ResponseGenerator",
    "DummyResponseGenerator",
    "AnthropicResponseGenerator",
]
