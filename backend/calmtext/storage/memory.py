"""
CalmText - Conversation Memory

Domain operations over the durable store: message history, the user
profile high-water mark, crisis audit events and check-in bookkeeping.

Every write here is best-effort. Failures are logged and reported through
the return value (False / None / empty list); nothing is raised, so storage
can never block message delivery.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from calmtext.core.types import (
    CheckIn,
    ConversationRecord,
    CrisisEvent,
    MessageDirection,
    RiskAssessment,
    RiskLevel,
    UserProfile,
    utcnow,
)
from calmtext.core.logging import get_logger
from calmtext.sms.privacy import mask_phone_number
from calmtext.storage.durable import DurableStore

logger = logging.getLogger(__name__)
audit_logger = get_logger("calmtext.audit")

MESSAGE_PREVIEW_LENGTH = 100
UNANSWERED_CHECK_IN_WINDOW = timedelta(hours=12)


class ConversationMemory:
    """
    Best-effort persistence for the orchestrator.

    Known gap: the users row is updated with a read-then-upsert, so two
    concurrent messages from the same user can lose a total_messages
    increment. The risk high-water mark is recomputed on every write and
    self-heals on the next message.
    """

    def __init__(self, store: DurableStore):
        self._store = store

    @property
    def store(self) -> DurableStore:
        return self._store

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    async def store_message(
        self,
        user_id: str,
        message: str,
        direction: MessageDirection,
        risk_level: RiskLevel = RiskLevel.NONE,
        risk_categories: Sequence[str] = (),
    ) -> bool:
        """Persist one message and bump the user's counters."""
        try:
            existing = await self._store.get(user_id)
            now = utcnow()
            fields: Dict[str, Any] = {
                "last_interaction": now,
                "total_messages": (existing or {}).get("total_messages", 0) + 1,
            }
            current = RiskLevel.coerce((existing or {}).get("risk_level"))
            if risk_level.is_above(current):
                fields["risk_level"] = risk_level.value

            # users row first: the event tables reference it
            await self._store.upsert(user_id, fields)

            record = ConversationRecord(
                phone_number=user_id,
                message=message,
                direction=direction,
                risk_level=risk_level,
                risk_categories=list(risk_categories),
                timestamp=now,
            )
            await self._store.insert("conversations", record.to_record())
            return True
        except Exception as e:
            logger.error(
                "Failed to store message: user=%s, direction=%s, error=%s",
                mask_phone_number(user_id),
                direction.value,
                e,
            )
            return False

    async def get_conversation_history(self, user_id: str, limit: int = 10) -> List[ConversationRecord]:
        """Most recent messages, oldest first."""
        try:
            rows = await self._store.query(
                "conversations",
                filters={"phone_number": user_id},
                order_by="timestamp",
                descending=True,
                limit=limit,
            )
        except Exception as e:
            logger.error(
                "Failed to get conversation history: user=%s, error=%s",
                mask_phone_number(user_id),
                e,
            )
            return []
        return [ConversationRecord.from_record(r) for r in reversed(rows)]

    # -------------------------------------------------------------------------
    # Crisis Events
    # -------------------------------------------------------------------------

    async def store_crisis_event(
        self,
        user_id: str,
        assessment: RiskAssessment,
        message_text: str,
    ) -> Optional[int]:
        """Record a high/critical assessment. Returns the event id or None."""
        event = CrisisEvent(
            phone_number=user_id,
            risk_level=assessment.level,
            risk_categories=list(assessment.categories),
            message_preview=message_text[:MESSAGE_PREVIEW_LENGTH],
        )
        try:
            await self._store.upsert(user_id, {})
            event_id = await self._store.insert("crisis_events", event.to_record())
        except Exception as e:
            logger.error(
                "Failed to store crisis event: user=%s, error=%s",
                mask_phone_number(user_id),
                e,
            )
            return None

        audit_logger.alert(
            "Crisis event stored",
            event_type="crisis_event_stored",
            data={
                "event_id": event_id,
                "phone_number": user_id,
                "level": assessment.level.value,
            },
        )
        return event_id

    async def get_crisis_events(self, user_id: str) -> List[CrisisEvent]:
        try:
            rows = await self._store.query(
                "crisis_events",
                filters={"phone_number": user_id},
                order_by="timestamp",
            )
        except Exception as e:
            logger.error("Failed to get crisis events: user=%s, error=%s", mask_phone_number(user_id), e)
            return []
        return [CrisisEvent.from_record(r) for r in rows]

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    async def get_user_profile(self, user_id: str) -> Optional[UserProfile]:
        try:
            row = await self._store.get(user_id)
        except Exception as e:
            logger.error("Failed to get user profile: user=%s, error=%s", mask_phone_number(user_id), e)
            return None
        return UserProfile.from_record(row) if row else None

    async def set_active(self, user_id: str, active: bool) -> bool:
        """Opt a user in or out of proactive messages (STOP / START)."""
        try:
            await self._store.upsert(user_id, {"is_active": active})
            return True
        except Exception as e:
            logger.error("Failed to update is_active: user=%s, error=%s", mask_phone_number(user_id), e)
            return False

    # -------------------------------------------------------------------------
    # Check-ins
    # -------------------------------------------------------------------------

    async def record_check_in(self, user_id: str) -> Optional[int]:
        try:
            await self._store.upsert(user_id, {})
            return await self._store.insert("check_ins", CheckIn(phone_number=user_id).to_record())
        except Exception as e:
            logger.error("Failed to record check-in: user=%s, error=%s", mask_phone_number(user_id), e)
            return None

    async def record_check_in_response(self, user_id: str, response_text: str) -> bool:
        """Mark the user's most recent check-in as answered."""
        try:
            rows = await self._store.query(
                "check_ins",
                filters={"phone_number": user_id},
                order_by="sent_at",
                descending=True,
                limit=1,
            )
            if not rows:
                return False
            await self._store.update(
                "check_ins",
                rows[0]["id"],
                {"responded": True, "response_text": response_text, "response_time": utcnow()},
            )
            return True
        except Exception as e:
            logger.error(
                "Failed to record check-in response: user=%s, error=%s",
                mask_phone_number(user_id),
                e,
            )
            return False

    async def get_users_for_check_in(
        self,
        hours_since_last_interaction: int = 24,
        limit: int = 50,
    ) -> List[UserProfile]:
        """
        Active users who have been quiet for a while and have no unanswered
        check-in from the last 12 hours. Highest risk first, then longest
        silence first.
        """
        now = utcnow()
        cutoff = now - timedelta(hours=hours_since_last_interaction)
        try:
            users = await self._store.query("users", filters={"is_active": True})
            pending = await self._store.query("check_ins", filters={"responded": False})
        except Exception as e:
            logger.error("Failed to get users for check-in: error=%s", e)
            return []

        recently_pinged = {
            c.phone_number
            for c in (CheckIn.from_record(r) for r in pending)
            if c.sent_at > now - UNANSWERED_CHECK_IN_WINDOW
        }

        due = [
            p for p in (UserProfile.from_record(r) for r in users)
            if p.last_interaction is not None
            and p.last_interaction < cutoff
            and p.phone_number not in recently_pinged
        ]
        due.sort(key=lambda p: (-p.risk_level.rank, p.last_interaction))
        return due[:limit]

    async def get_check_in_stats(self) -> Dict[str, Any]:
        try:
            rows = await self._store.query("check_ins")
        except Exception as e:
            logger.error("Failed to get check-in stats: error=%s", e)
            return {"total": 0, "responded": 0, "response_rate": 0.0}

        total = len(rows)
        responded = sum(1 for r in rows if r.get("responded"))
        return {
            "total": total,
            "responded": responded,
            "response_rate": round(responded / total, 3) if total else 0.0,
        }
