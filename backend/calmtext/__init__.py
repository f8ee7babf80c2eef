"""
CalmText - Backend Application Package

This package contains the SMS support chatbot core:
- Keyword risk assessment and crisis responses
- Tiered session / context storage
- Per-message conversation orchestration
- Storage, generation and SMS transport adapters
- HTTP webhook and API routes
"""

__version__ = "0.1.0"
