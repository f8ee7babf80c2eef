"""
CalmText - API Schemas

Pydantic models for request/response validation.
These define the contract between Twilio, internal callers and the backend.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ===========================================
# Inbound SMS
# ===========================================

class IncomingSmsRequest(BaseModel):
    """
    Form body of Twilio's inbound message webhook.

    Accepts Twilio's CamelCase field names or their snake_case equivalents.
    """

    model_config = ConfigDict(populate_by_name=True)

    message_sid: str = Field(..., alias="MessageSid", description="Provider's message ID")
    from_number: str = Field(..., alias="From", description="Sender phone number (E.164)")
    body: str = Field(..., alias="Body", description="Message text")
    to_number: Optional[str] = Field(None, alias="To", description="Receiving phone number")


class MessageRequest(BaseModel):
    """Request body for POST /api/messages."""

    user_id: str = Field(..., description="Sender identifier (E.164 phone number for SMS)")
    text: str = Field(..., description="Message text")


class HandleResultSchema(BaseModel):
    """Outcome of handling one message."""

    success: bool
    type: str = Field(description="command | conversation | ignored")
    response: Optional[str] = Field(None, description="Text sent back to the user")
    risk_level: Optional[str] = Field(None, description="none | low | medium | high | critical")
    error: Optional[str] = None


# ===========================================
# Sessions
# ===========================================

class SessionStatSchema(BaseModel):
    """One fallback-tier session, without identifiers."""

    message_count: int
    risk_level: str
    in_crisis: bool
    last_activity: str


class SessionStatsResponse(BaseModel):
    """Aggregate session statistics."""

    active_sessions: int
    sessions: List[SessionStatSchema] = Field(default_factory=list)


# ===========================================
# Health & Errors
# ===========================================

class HealthResponse(BaseModel):
    """Root health check response."""

    status: str = Field(default="ok")
    timestamp: str
    service: str = Field(default="calmtext")


class ErrorResponse(BaseModel):
    """Body returned for CalmTextError and its subclasses."""

    error: str
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
