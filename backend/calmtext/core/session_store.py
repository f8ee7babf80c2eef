"""
CalmText - Session / Context Store

Tiered per-user session state:

    1. Fast cache (Redis or in-memory), key session:<id>, TTL-bound
    2. In-process fallback table, swept after an hour of inactivity
    3. Durable store, read-only here, for the long-lived user profile

Read path: cache -> fallback -> synthesize a default and write it through.
Write path: cache and fallback are written independently; a cache failure
never blocks the fallback write and never reaches the caller.

Concurrency:
    The fallback table is shared by every task in the process and guarded by
    an asyncio.Lock. Entries are stored as serialized snapshots, so a reader
    never sees a half-written session.

    There is no per-user serialization. Two messages from the same user
    handled at the same time can interleave their get -> mutate -> save
    cycles and the later save wins.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from calmtext.core.types import (
    ContextSnapshot,
    Exchange,
    RiskAssessment,
    RiskLevel,
    Session,
    UserProfile,
    utcnow,
)
from calmtext.sms.privacy import mask_phone_number
from calmtext.storage.cache import FastCache, session_key
from calmtext.storage.durable import DurableStore

logger = logging.getLogger(__name__)

# (serialized session, last_activity)
_FallbackEntry = Tuple[Dict[str, Any], datetime]


class SessionStore:
    """
    Owner of all per-user session state.

    Constructed once at startup and handed to the orchestrator.

    Usage:
        store = SessionStore(cache=InMemoryCache(), durable=InMemoryDurableStore())
        await store.start()

        session = await store.get_session("+14155551234")

        await store.stop()
    """

    def __init__(
        self,
        cache: FastCache,
        durable: Optional[DurableStore] = None,
        session_ttl_seconds: int = 3600,
        idle_timeout_seconds: int = 3600,
        context_capacity: int = 10,
        context_window: int = 5,
        cleanup_interval_seconds: int = 300,
    ):
        """
        Initialize the session store.

        Args:
            cache: Fast cache tier
            durable: Durable store used for profile reads (optional)
            session_ttl_seconds: TTL for cached sessions
            idle_timeout_seconds: Fallback entries idle longer than this are evicted
            context_capacity: Max exchanges kept per session
            context_window: Exchanges included in the generation context
            cleanup_interval_seconds: Background sweep interval
        """
        self._cache = cache
        self._durable = durable
        self._ttl_seconds = session_ttl_seconds
        self._idle_timeout = timedelta(seconds=idle_timeout_seconds)
        self._capacity = context_capacity
        self._window = context_window
        self._cleanup_interval = cleanup_interval_seconds

        self._fallback: Dict[str, _FallbackEntry] = {}
        self._lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._started = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start background cleanup task."""
        if self._started:
            return

        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        self._started = True

        logger.info(
            "SessionStore started: ttl=%ds, idle_timeout=%s, capacity=%d, cleanup_interval=%ds",
            self._ttl_seconds,
            self._idle_timeout,
            self._capacity,
            self._cleanup_interval,
        )

    async def stop(self) -> None:
        """Stop background tasks and clear the fallback tier."""
        if not self._started:
            return

        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        async with self._lock:
            count = len(self._fallback)
            self._fallback.clear()

        self._started = False
        logger.info("SessionStore stopped: cleared %d fallback sessions", count)

    # -------------------------------------------------------------------------
    # Read / Write
    # -------------------------------------------------------------------------

    async def get_session(self, user_id: str) -> Session:
        """
        Load a session, creating a default one on a total miss.

        Never raises. Any internal error yields a fresh default session.
        """
        try:
            session = await self._read_cache(user_id)
            if session is None:
                session = await self._read_fallback(user_id)
            if session is None:
                session = Session.create_default(user_id)
                await self.save_session(user_id, session)
                logger.debug("Created default session for %s", mask_phone_number(user_id))

            session.last_activity = utcnow()
            return session

        except Exception as e:
            logger.error(
                "Failed to get session for %s: %s",
                mask_phone_number(user_id),
                e,
                exc_info=True,
            )
            return Session.create_default(user_id)

    async def save_session(self, user_id: str, session: Session) -> bool:
        """
        Write a session to both tiers.

        Returns:
            True if the cache write succeeded. The fallback write is
            attempted regardless and does not affect the result.
        """
        payload = session.to_dict()
        cache_ok = False

        try:
            await self._cache.set_with_ttl(session_key(user_id), json.dumps(payload), self._ttl_seconds)
            cache_ok = True
        except Exception as e:
            logger.warning("Cache write failed for %s: %s", mask_phone_number(user_id), e)

        try:
            async with self._lock:
                self._fallback[user_id] = (payload, session.last_activity)
        except Exception as e:
            logger.error("Fallback write failed for %s: %s", mask_phone_number(user_id), e)

        return cache_ok

    async def _read_cache(self, user_id: str) -> Optional[Session]:
        try:
            raw = await self._cache.get(session_key(user_id))
        except Exception as e:
            logger.warning("Cache read failed for %s: %s", mask_phone_number(user_id), e)
            return None

        if not raw:
            return None

        try:
            return Session.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding corrupt cached session for %s: %s", mask_phone_number(user_id), e)
            return None

    async def _read_fallback(self, user_id: str) -> Optional[Session]:
        async with self._lock:
            entry = self._fallback.get(user_id)
        if entry is None:
            return None
        return Session.from_dict(entry[0])

    # -------------------------------------------------------------------------
    # Context
    # -------------------------------------------------------------------------

    async def update_context(
        self,
        user_id: str,
        user_message: str,
        assistant_message: str,
        assessment: RiskAssessment,
    ) -> Optional[Session]:
        """
        Append an exchange and fold the assessment into the session.

        Returns:
            The updated session, or None if the update could not be applied.
        """
        try:
            session = await self.get_session(user_id)

            session.conversation_context.append(
                Exchange(
                    user_text=user_message,
                    assistant_text=assistant_message,
                    risk_level=assessment.level,
                )
            )
            if len(session.conversation_context) > self._capacity:
                session.conversation_context = session.conversation_context[-self._capacity:]

            session.message_count += 1
            session.is_first_time = False

            if assessment.level.is_above(session.risk_level):
                session.risk_level = assessment.level

            if assessment.level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
                session.flags.in_crisis = True

            if assessment.resources:
                session.flags.has_seen_resources = True

            await self.save_session(user_id, session)
            return session

        except Exception as e:
            logger.error(
                "Failed to update context for %s: %s",
                mask_phone_number(user_id),
                e,
                exc_info=True,
            )
            return None

    async def get_context_for_ai(self, user_id: str) -> ContextSnapshot:
        """
        Session merged with the durable profile.

        A durable outage only drops the profile; the minimal stub is returned
        only when the session itself cannot be read.
        """
        try:
            session = await self.get_session(user_id)
            profile = await self._read_profile(user_id)

            return ContextSnapshot(
                is_first_time=session.is_first_time,
                message_count=session.message_count,
                current_topic=session.current_topic,
                mood=session.mood,
                risk_level=session.risk_level,
                recent_messages=list(session.conversation_context[-self._window:]),
                flags=session.flags,
                user_profile={
                    "total_messages": profile.total_messages,
                    "first_interaction": profile.first_interaction,
                    "risk_level": profile.risk_level,
                } if profile else None,
            )

        except Exception as e:
            logger.error("Failed to build context for %s: %s", mask_phone_number(user_id), e)
            return ContextSnapshot.minimal()

    async def _read_profile(self, user_id: str) -> Optional[UserProfile]:
        if self._durable is None:
            return None
        try:
            row = await self._durable.get(user_id)
        except Exception as e:
            logger.warning("Profile read failed for %s: %s", mask_phone_number(user_id), e)
            return None
        return UserProfile.from_record(row) if row else None

    # -------------------------------------------------------------------------
    # Partial Mutators
    # -------------------------------------------------------------------------

    async def _mutate(self, user_id: str, action: str, apply: Callable[[Session], None]) -> bool:
        try:
            session = await self.get_session(user_id)
            apply(session)
            await self.save_session(user_id, session)
            return True
        except Exception as e:
            logger.error("Failed to %s for %s: %s", action, mask_phone_number(user_id), e)
            return False

    async def mark_for_check_in(self, user_id: str, reason: str) -> bool:
        def apply(session: Session) -> None:
            session.flags.needs_check_in = True
            session.check_in_reason = reason

        ok = await self._mutate(user_id, "mark for check-in", apply)
        if ok:
            logger.info("User marked for check-in: %s, reason=%s", mask_phone_number(user_id), reason)
        return ok

    async def clear_crisis_flag(self, user_id: str, reset_risk_level: bool = False) -> bool:
        """
        Clear the in-crisis flag after resolution.

        With reset_risk_level the session level also drops back to NONE;
        this is the only path that lowers a session's risk level.
        """
        def apply(session: Session) -> None:
            session.flags.in_crisis = False
            if reset_risk_level:
                session.risk_level = RiskLevel.NONE

        ok = await self._mutate(user_id, "clear crisis flag", apply)
        if ok:
            logger.info("Crisis flag cleared: %s", mask_phone_number(user_id))
        return ok

    async def update_preferences(self, user_id: str, preferences: Dict[str, Any]) -> bool:
        return await self._mutate(
            user_id,
            "update preferences",
            lambda session: session.preferences.update(preferences),
        )

    async def set_topic(self, user_id: str, topic: str) -> bool:
        def apply(session: Session) -> None:
            session.current_topic = topic

        return await self._mutate(user_id, "set topic", apply)

    async def update_mood(self, user_id: str, mood: str) -> bool:
        def apply(session: Session) -> None:
            session.mood = mood

        return await self._mutate(user_id, "update mood", apply)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def cleanup_sessions(self) -> int:
        """
        Evict idle fallback entries. Never touches the cache or durable tier.

        Returns:
            Number of sessions removed
        """
        cutoff = utcnow() - self._idle_timeout

        async with self._lock:
            stale_ids = [
                user_id for user_id, (_, last_activity) in self._fallback.items()
                if last_activity < cutoff
            ]
            for user_id in stale_ids:
                del self._fallback[user_id]

        if stale_ids:
            logger.info("Cleaned up %d idle sessions", len(stale_ids))

        return len(stale_ids)

    async def get_statistics(self) -> Dict[str, Any]:
        """Aggregate view of the fallback tier, without identifiers."""
        async with self._lock:
            entries = list(self._fallback.values())

        return {
            "active_sessions": len(entries),
            "sessions": [
                {
                    "message_count": payload.get("message_count", 0),
                    "risk_level": payload.get("risk_level", RiskLevel.NONE.value),
                    "in_crisis": bool((payload.get("flags") or {}).get("in_crisis", False)),
                    "last_activity": last_activity.isoformat(),
                }
                for payload, last_activity in entries
            ],
        }

    @property
    def fallback_size(self) -> int:
        return len(self._fallback)

    async def _cleanup_loop(self) -> None:
        """Background task to evict idle sessions."""
        while True:
            try:
                await asyncio.sleep(self._cleanup_interval)
                await self.cleanup_sessions()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in session cleanup loop: %s", str(e))
