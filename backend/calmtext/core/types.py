"""
CalmText - Core Domain Types

Internal type definitions shared by the risk assessor, the session store,
the orchestrator and the storage adapters. These are domain objects,
independent of API serialization.

Design Notes:
- RiskLevel is a closed, totally ordered enum. Levels are compared through
  their integer rank, never as strings ("high" < "low" lexicographically).
- Session is what lives in the fast cache and the fallback tier. It is
  serialized with to_dict()/from_dict() so each tier holds a snapshot,
  not a shared mutable object.
- Durable records cross the storage boundary as plain dicts; the typed
  wrappers here (UserProfile, ConversationRecord, CrisisEvent, CheckIn)
  convert to and from those records.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, NewType, Optional


# =============================================================================
# Type Aliases
# =============================================================================

UserId = NewType("UserId", str)
"""User identifier. For SMS this is the sender's phone number in E.164 form."""

Record = Dict[str, Any]
"""A row as exchanged with the durable store."""


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class RiskLevel(str, Enum):
    """Ordinal severity: none < low < medium < high < critical."""
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]

    def is_above(self, other: "RiskLevel") -> bool:
        """Strictly higher in severity than `other`."""
        return self.rank > RiskLevel.coerce(other).rank

    @classmethod
    def coerce(cls, value: Any) -> "RiskLevel":
        """
        Convert a stored value to a RiskLevel.

        Unknown or missing values map to NONE so a corrupt record can never
        raise a user's level.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.NONE

    @classmethod
    def highest(cls, *levels: "RiskLevel") -> "RiskLevel":
        """Return the most severe of the given levels (NONE if empty)."""
        return max((cls.coerce(level) for level in levels), key=lambda lvl: lvl.rank, default=cls.NONE)


_RISK_RANK = {
    RiskLevel.NONE: 0,
    RiskLevel.LOW: 1,
    RiskLevel.MEDIUM: 2,
    RiskLevel.HIGH: 3,
    RiskLevel.CRITICAL: 4,
}


class MessageDirection(str, Enum):
    """Direction of a stored conversation message."""
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class Sentiment(str, Enum):
    """Coarse sentiment derived from an inbound message."""
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class HandleType(str, Enum):
    """Which path the orchestrator took for a message."""
    COMMAND = "command"
    CONVERSATION = "conversation"
    IGNORED = "ignored"


# =============================================================================
# Risk Assessment
# =============================================================================

@dataclass(frozen=True)
class CrisisResource:
    """A hotline or service a user can contact."""
    name: str
    number: str
    description: str

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "number": self.number, "description": self.description}


@dataclass
class RiskAssessment:
    """
    Result of scoring a single message.

    Attributes:
        level: Ordinal risk level
        categories: Matched category names, in category order
        keywords: Matched keyword strings
        score: Cumulative weighted score
        requires_immediate_intervention: True iff level is CRITICAL
        resources: Hotlines to surface for this assessment
    """
    level: RiskLevel = RiskLevel.NONE
    categories: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    score: int = 0
    requires_immediate_intervention: bool = False
    resources: List[CrisisResource] = field(default_factory=list)

    @classmethod
    def none(cls) -> "RiskAssessment":
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "categories": list(self.categories),
            "keywords": list(self.keywords),
            "score": self.score,
            "requires_immediate_intervention": self.requires_immediate_intervention,
            "resources": [r.to_dict() for r in self.resources],
        }


# =============================================================================
# Session
# =============================================================================

@dataclass
class Exchange:
    """One user message and the assistant text sent in reply."""
    user_text: str
    assistant_text: str
    timestamp: datetime = field(default_factory=utcnow)
    risk_level: RiskLevel = RiskLevel.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.user_text,
            "assistant": self.assistant_text,
            "timestamp": self.timestamp.isoformat(),
            "risk_level": self.risk_level.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Exchange":
        return cls(
            user_text=data.get("user", ""),
            assistant_text=data.get("assistant", ""),
            timestamp=_parse_datetime(data.get("timestamp")) or utcnow(),
            risk_level=RiskLevel.coerce(data.get("risk_level")),
        )


@dataclass
class SessionFlags:
    needs_check_in: bool = False
    in_crisis: bool = False
    has_seen_resources: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SessionFlags":
        data = data or {}
        return cls(
            needs_check_in=bool(data.get("needs_check_in", False)),
            in_crisis=bool(data.get("in_crisis", False)),
            has_seen_resources=bool(data.get("has_seen_resources", False)),
        )


@dataclass
class Session:
    """
    Per-user conversational state.

    Invariants:
        - len(conversation_context) never exceeds the store's capacity
        - risk_level only rises, except through an explicit clear
    """
    user_id: str
    conversation_context: List[Exchange] = field(default_factory=list)
    current_topic: Optional[str] = None
    mood: Optional[str] = None
    risk_level: RiskLevel = RiskLevel.NONE
    last_activity: datetime = field(default_factory=utcnow)
    message_count: int = 0
    is_first_time: bool = True
    preferences: Dict[str, Any] = field(default_factory=dict)
    flags: SessionFlags = field(default_factory=SessionFlags)
    check_in_reason: Optional[str] = None

    @classmethod
    def create_default(cls, user_id: str) -> "Session":
        return cls(user_id=user_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "conversation_context": [e.to_dict() for e in self.conversation_context],
            "current_topic": self.current_topic,
            "mood": self.mood,
            "risk_level": self.risk_level.value,
            "last_activity": self.last_activity.isoformat(),
            "message_count": self.message_count,
            "is_first_time": self.is_first_time,
            "preferences": dict(self.preferences),
            "flags": self.flags.to_dict(),
            "check_in_reason": self.check_in_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            user_id=data["user_id"],
            conversation_context=[Exchange.from_dict(e) for e in data.get("conversation_context", [])],
            current_topic=data.get("current_topic"),
            mood=data.get("mood"),
            risk_level=RiskLevel.coerce(data.get("risk_level")),
            last_activity=_parse_datetime(data.get("last_activity")) or utcnow(),
            message_count=int(data.get("message_count", 0)),
            is_first_time=bool(data.get("is_first_time", True)),
            preferences=dict(data.get("preferences") or {}),
            flags=SessionFlags.from_dict(data.get("flags")),
            check_in_reason=data.get("check_in_reason"),
        )


# =============================================================================
# Durable Records
# =============================================================================

@dataclass
class UserProfile:
    """Durable per-user row. risk_level is a high-water mark."""
    phone_number: str
    first_interaction: Optional[datetime] = None
    last_interaction: Optional[datetime] = None
    total_messages: int = 0
    risk_level: RiskLevel = RiskLevel.NONE
    is_active: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: Record) -> "UserProfile":
        return cls(
            phone_number=record["phone_number"],
            first_interaction=_parse_datetime(record.get("first_interaction")),
            last_interaction=_parse_datetime(record.get("last_interaction")),
            total_messages=int(record.get("total_messages") or 0),
            risk_level=RiskLevel.coerce(record.get("risk_level")),
            is_active=bool(record.get("is_active", True)),
            metadata=dict(record.get("metadata") or {}),
        )


@dataclass
class ConversationRecord:
    """One stored SMS, inbound or outbound."""
    phone_number: str
    message: str
    direction: MessageDirection
    risk_level: RiskLevel = RiskLevel.NONE
    risk_categories: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)

    def to_record(self) -> Record:
        return {
            "phone_number": self.phone_number,
            "message": self.message,
            "direction": self.direction.value,
            "risk_level": self.risk_level.value,
            "risk_categories": list(self.risk_categories),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_record(cls, record: Record) -> "ConversationRecord":
        return cls(
            phone_number=record["phone_number"],
            message=record.get("message", ""),
            direction=MessageDirection(record.get("direction", "incoming")),
            risk_level=RiskLevel.coerce(record.get("risk_level")),
            risk_categories=list(record.get("risk_categories") or []),
            timestamp=_parse_datetime(record.get("timestamp")) or utcnow(),
        )


@dataclass
class CrisisEvent:
    """Audit record for a high or critical assessment."""
    phone_number: str
    risk_level: RiskLevel
    risk_categories: List[str]
    message_preview: str
    escalated: bool = False
    resolved: bool = False
    timestamp: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    def to_record(self) -> Record:
        return {
            "phone_number": self.phone_number,
            "risk_level": self.risk_level.value,
            "risk_categories": list(self.risk_categories),
            "message_preview": self.message_preview,
            "escalated": self.escalated,
            "resolved": self.resolved,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_record(cls, record: Record) -> "CrisisEvent":
        return cls(
            id=record.get("id"),
            phone_number=record["phone_number"],
            risk_level=RiskLevel.coerce(record.get("risk_level")),
            risk_categories=list(record.get("risk_categories") or []),
            message_preview=record.get("message_preview") or "",
            escalated=bool(record.get("escalated", False)),
            resolved=bool(record.get("resolved", False)),
            timestamp=_parse_datetime(record.get("timestamp")) or utcnow(),
        )


@dataclass
class CheckIn:
    """A proactive check-in sent to a user, and whether they answered."""
    phone_number: str
    sent_at: datetime = field(default_factory=utcnow)
    responded: bool = False
    response_text: Optional[str] = None
    response_time: Optional[datetime] = None
    id: Optional[int] = None

    def to_record(self) -> Record:
        return {
            "phone_number": self.phone_number,
            "sent_at": self.sent_at,
            "responded": self.responded,
            "response_text": self.response_text,
            "response_time": self.response_time,
        }

    @classmethod
    def from_record(cls, record: Record) -> "CheckIn":
        return cls(
            id=record.get("id"),
            phone_number=record["phone_number"],
            sent_at=_parse_datetime(record.get("sent_at")) or utcnow(),
            responded=bool(record.get("responded", False)),
            response_text=record.get("response_text"),
            response_time=_parse_datetime(record.get("response_time")),
        )


# =============================================================================
# Generation Context
# =============================================================================

@dataclass
class ContextSnapshot:
    """
    Read-only view of a session merged with the durable profile.

    Passed to the response generator. The minimal stub (only
    is_first_time=True) is used whenever the merge fails.
    """
    is_first_time: bool = True
    message_count: Optional[int] = None
    current_topic: Optional[str] = None
    mood: Optional[str] = None
    risk_level: Optional[RiskLevel] = None
    recent_messages: List[Exchange] = field(default_factory=list)
    flags: Optional[SessionFlags] = None
    user_profile: Optional[Dict[str, Any]] = None

    @classmethod
    def minimal(cls) -> "ContextSnapshot":
        return cls(is_first_time=True)

    @property
    def in_crisis(self) -> bool:
        return bool(self.flags and self.flags.in_crisis)


# =============================================================================
# Collaborator Results
# =============================================================================

@dataclass
class GenerationResult:
    success: bool
    text: str
    error: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


@dataclass
class SendResult:
    success: bool
    message_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


@dataclass
class HandleResult:
    """What handle() reports back to its caller."""
    success: bool
    type: HandleType = HandleType.CONVERSATION
    response: Optional[str] = None
    risk_level: Optional[RiskLevel] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "type": self.type.value,
            "response": self.response,
            "risk_level": self.risk_level.value if self.risk_level else None,
            "error": self.error,
        }
