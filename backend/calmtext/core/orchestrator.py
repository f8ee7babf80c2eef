"""
CalmText - Conversation Orchestrator

Central per-message decision tree. This is the single entry point for both
the Twilio webhook and the JSON message API.

Architecture:
    Each inbound message runs through a staged flow:

    0. VALIDATION: non-string, blank or oversized input is ignored silently
    1. COMMAND STAGE: keyword commands get a canned reply, no assessment
    2. ASSESSMENT STAGE: keyword risk scoring
    3a. CRISIS STAGE (high/critical): audit event, mandatory crisis reply,
        then an independent best-effort follow-up
    3b. CONVERSATION STAGE (none/low/medium): generated reply with a fixed
        safe fallback
    4. SESSION STAGE: context, mood and topic written back to the session

    Storage writes are best-effort and never block delivery. Outbound sends
    get one retry with a minimal text. Anything uncaught at this boundary
    produces exactly one fallback message pointing at 988 / 741741.

Usage:
    from calmtext.core.orchestrator import create_orchestrator
    from calmtext.config import get_settings

    orchestrator = create_orchestrator(get_settings())
    await orchestrator.startup()

    result = await orchestrator.handle("+14155551234", "I had a rough day")

    await orchestrator.shutdown()
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from typing import Any, Iterable, List, Optional, Tuple

from calmtext.config import Settings
from calmtext.core.exceptions import ConfigurationError, InvalidMessageError, ValidationError
from calmtext.core.logging import LogContext, get_logger
from calmtext.core.session_store import SessionStore
from calmtext.core.types import (
    ContextSnapshot,
    HandleResult,
    HandleType,
    MessageDirection,
    RiskAssessment,
    RiskLevel,
    SessionFlags,
    UserProfile,
)
from calmtext.services.commands import (
    RESUME_COMMANDS,
    STOP_COMMANDS,
    handle_command,
    is_command,
    parse_command,
)
from calmtext.services.conversation import (
    analyze_sentiment,
    extract_topic,
    fallback_response,
    generate_check_in_message,
    generate_greeting,
)
from calmtext.services.generator import ResponseGenerator
from calmtext.services.risk_assessor import (
    assess_risk,
    generate_crisis_response,
    requires_human_escalation,
    validate_safety_configuration,
)
from calmtext.sms.privacy import mask_phone_number
from calmtext.sms.transport import OutboundTransport
from calmtext.storage.cache import FastCache
from calmtext.storage.memory import ConversationMemory

logger = logging.getLogger(__name__)
audit_logger = get_logger("calmtext.audit")

MINIMAL_FALLBACK_TEXT = (
    "I'm here for you. If you need help right now, call or text 988 "
    'or text "HELLO" to 741741.'
)

FAILURE_FALLBACK_TEXT = (
    "I'm sorry, I'm having trouble responding right now. "
    'If you need immediate help, please call 988 or text "HELLO" to 741741.'
)


class ConversationOrchestrator:
    """
    Routes each inbound message to a command reply, the crisis path or a
    generated reply, and keeps session and durable state in step.

    The orchestrator holds no per-user state itself; sessions live in the
    injected SessionStore. Collaborators are swappable (dummy or production)
    through create_orchestrator().
    """

    def __init__(
        self,
        sessions: SessionStore,
        memory: ConversationMemory,
        generator: ResponseGenerator,
        transport: OutboundTransport,
        cache: Optional[FastCache] = None,
        max_message_length: int = 10000,
    ):
        """
        Initialize the orchestrator.

        Args:
            sessions: Session / context store
            memory: Durable conversation memory
            generator: Reply generator
            transport: Outbound SMS transport
            cache: Fast cache tier, closed on shutdown and probed by health checks
            max_message_length: Inbound messages longer than this are ignored
        """
        self.sessions = sessions
        self.memory = memory
        self.generator = generator
        self.transport = transport
        self.cache = cache
        self._max_message_length = max_message_length

        logger.info(
            "ConversationOrchestrator initialized: generator=%s, transport=%s",
            getattr(generator, "generator_id", type(generator).__name__),
            getattr(transport, "transport_id", type(transport).__name__),
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def startup(self) -> None:
        """Verify crisis configuration, connect the durable tier, start sweeps."""
        if not validate_safety_configuration():
            raise ConfigurationError("Crisis resources failed validation; refusing to start")

        await self.memory.store.connect()
        await self.sessions.start()
        logger.info("ConversationOrchestrator started")

    async def shutdown(self) -> None:
        await self.sessions.stop()

        for name, resource in (
            ("generator", self.generator),
            ("cache", self.cache),
            ("durable store", self.memory.store),
        ):
            if resource is None:
                continue
            try:
                await resource.close()
            except Exception as e:
                logger.warning("Error closing %s: %s", name, e)

        logger.info("ConversationOrchestrator shut down")

    # -------------------------------------------------------------------------
    # Main Entry Point
    # -------------------------------------------------------------------------

    def validate_message(self, user_id: Any, message_text: Any) -> None:
        """
        Raise InvalidMessageError for input that must not be processed.

        Non-string, blank-after-trim or oversized messages are rejected, as
        are blank user ids.
        """
        if not isinstance(user_id, str) or not user_id.strip():
            raise InvalidMessageError("Missing user id")
        if not isinstance(message_text, str):
            raise InvalidMessageError("Message must be a string")
        if not message_text.strip():
            raise InvalidMessageError("Message is empty")
        if len(message_text) > self._max_message_length:
            raise InvalidMessageError(
                f"Message exceeds {self._max_message_length} characters",
                details={"length": len(message_text)},
            )

    async def handle(self, user_id: str, message_text: str) -> HandleResult:
        """
        Process one inbound message end to end.

        Args:
            user_id: Sender identifier (E.164 phone number for SMS)
            message_text: Raw inbound text

        Returns:
            HandleResult describing the path taken. Never raises.
        """
        try:
            self.validate_message(user_id, message_text)
        except ValidationError as e:
            masked = mask_phone_number(user_id) if isinstance(user_id, str) else "unknown"
            logger.info("Ignoring message from %s: %s", masked, e.message)
            return HandleResult(success=False, type=HandleType.IGNORED, error=e.message)

        correlation_id = f"msg_{uuid.uuid4().hex[:12]}"

        with LogContext(correlation_id=correlation_id, user_id=user_id):
            logger.info(
                "Processing message: user=%s, length=%d",
                mask_phone_number(user_id),
                len(message_text),
            )

            try:
                if is_command(message_text):
                    return await self._handle_command(user_id, message_text)

                assessment = assess_risk(message_text)

                if requires_human_escalation(assessment):
                    response = await self._handle_crisis(user_id, message_text, assessment)
                else:
                    response = await self._handle_conversation(user_id, message_text, assessment)

                return HandleResult(
                    success=True,
                    type=HandleType.CONVERSATION,
                    response=response,
                    risk_level=assessment.level,
                )

            except Exception as e:
                logger.error(
                    "Message handling failed for %s: %s",
                    mask_phone_number(user_id),
                    e,
                    exc_info=True,
                )
                try:
                    await self.transport.send(user_id, FAILURE_FALLBACK_TEXT)
                except Exception as send_error:
                    logger.error("Failure fallback could not be sent: %s", send_error)
                return HandleResult(success=False, type=HandleType.CONVERSATION, error=str(e))

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def _handle_command(self, user_id: str, message_text: str) -> HandleResult:
        command = parse_command(message_text)
        reply = handle_command(message_text)

        if command in STOP_COMMANDS:
            await self.memory.set_active(user_id, False)
        elif command in RESUME_COMMANDS:
            await self.memory.set_active(user_id, True)

        await self.memory.store_message(user_id, message_text, MessageDirection.INCOMING)
        await self.memory.store_message(user_id, reply, MessageDirection.OUTGOING)
        await self._send(user_id, reply)

        logger.info("Command handled: %s", command)
        return HandleResult(
            success=True,
            type=HandleType.COMMAND,
            response=reply,
            risk_level=RiskLevel.NONE,
        )

    async def _handle_crisis(self, user_id: str, message_text: str, assessment: RiskAssessment) -> str:
        event_id = await self.memory.store_crisis_event(user_id, assessment, message_text)

        audit_logger.alert(
            "Crisis detected",
            event_type="crisis_detected",
            data={
                "phone_number": user_id,
                "level": assessment.level.value,
                "categories": list(assessment.categories),
                "score": assessment.score,
                "requires_immediate_intervention": assessment.requires_immediate_intervention,
                "event_id": event_id,
            },
        )

        crisis_text = generate_crisis_response(assessment) or MINIMAL_FALLBACK_TEXT

        await self.memory.store_message(
            user_id,
            message_text,
            MessageDirection.INCOMING,
            assessment.level,
            assessment.categories,
        )
        await self.memory.store_message(user_id, crisis_text, MessageDirection.OUTGOING, assessment.level)
        await self._send(user_id, crisis_text)

        # Follow-up is independent: the crisis reply above has already gone out
        follow_up = await self._crisis_follow_up(user_id, message_text, assessment)
        if follow_up:
            await self._send(user_id, follow_up)
            await self.memory.store_message(user_id, follow_up, MessageDirection.OUTGOING, assessment.level)

        assistant_text = f"{crisis_text}\n\n{follow_up}" if follow_up else crisis_text
        await self.sessions.update_context(user_id, message_text, assistant_text, assessment)
        return assistant_text

    async def _crisis_follow_up(
        self,
        user_id: str,
        message_text: str,
        assessment: RiskAssessment,
    ) -> Optional[str]:
        try:
            context = await self.sessions.get_context_for_ai(user_id)
            context = dataclasses.replace(
                context,
                risk_level=assessment.level,
                flags=dataclasses.replace(context.flags or SessionFlags(), in_crisis=True),
            )
            result = await self.generator.generate(message_text, context)
        except Exception as e:
            logger.warning("Crisis follow-up generation failed: %s", e)
            return None

        if not result.success or not result.text.strip():
            logger.warning("Crisis follow-up generation unsuccessful: %s", result.error)
            return None
        return result.text

    async def _handle_conversation(self, user_id: str, message_text: str, assessment: RiskAssessment) -> str:
        context = await self.sessions.get_context_for_ai(user_id)
        reply = await self._generate(message_text, context)

        await self.memory.store_message(
            user_id,
            message_text,
            MessageDirection.INCOMING,
            assessment.level,
            assessment.categories,
        )
        await self.memory.store_message(user_id, reply, MessageDirection.OUTGOING, assessment.level)
        await self._send(user_id, reply)

        await self.sessions.update_context(user_id, message_text, reply, assessment)
        await self.sessions.update_mood(user_id, analyze_sentiment(message_text).value)
        await self.sessions.set_topic(user_id, extract_topic(message_text))

        return reply

    # -------------------------------------------------------------------------
    # Collaborator Calls
    # -------------------------------------------------------------------------

    async def _generate(self, message_text: str, context: ContextSnapshot) -> str:
        """Generated reply, or the fixed safe text on any failure."""
        try:
            result = await self.generator.generate(message_text, context)
            if result.success and result.text.strip():
                return result.text
            logger.warning("Generation unsuccessful: %s", result.error)
        except Exception as e:
            logger.error("Generation failed: %s", e)

        return fallback_response(context)

    async def _send(self, user_id: str, text: str) -> bool:
        """
        Send a message, retrying once with the minimal fallback text.

        Returns:
            True if the original text was delivered.
        """
        error: Optional[str]
        try:
            result = await self.transport.send(user_id, text)
            if result.success:
                return True
            error = result.error or result.status
        except Exception as e:
            error = str(e)

        logger.error("Send failed for %s: %s", mask_phone_number(user_id), error)

        if text == MINIMAL_FALLBACK_TEXT:
            return False

        try:
            retry = await self.transport.send(user_id, MINIMAL_FALLBACK_TEXT)
            if not retry.success:
                logger.error("Fallback send failed for %s: %s", mask_phone_number(user_id), retry.error)
        except Exception as e:
            logger.error("Fallback send failed for %s: %s", mask_phone_number(user_id), e)
        return False

    # -------------------------------------------------------------------------
    # Greeting, Check-ins, Batches
    # -------------------------------------------------------------------------

    async def handle_new_user(self, user_id: str) -> bool:
        """Send and store the first-contact greeting."""
        greeting = generate_greeting()
        sent = await self._send(user_id, greeting)
        await self.memory.store_message(user_id, greeting, MessageDirection.OUTGOING)
        logger.info("Greeting sent to new user %s", mask_phone_number(user_id))
        return sent

    async def send_check_in(self, user_id: str, profile: Optional[UserProfile] = None) -> bool:
        """Record and send a proactive check-in, tuned to the user's risk level."""
        if profile is None:
            profile = await self.memory.get_user_profile(user_id)

        if profile is not None and not profile.is_active:
            logger.info("Skipping check-in for inactive user %s", mask_phone_number(user_id))
            return False

        text = generate_check_in_message(profile)
        await self.memory.record_check_in(user_id)
        await self.memory.store_message(user_id, text, MessageDirection.OUTGOING)
        sent = await self._send(user_id, text)

        logger.info("Check-in sent to %s", mask_phone_number(user_id))
        return sent

    async def send_due_check_ins(self, hours_since_last_interaction: int = 24, limit: int = 50) -> int:
        """Send check-ins to every user who is due one. Returns the count sent."""
        users = await self.memory.get_users_for_check_in(hours_since_last_interaction, limit)
        sent = 0
        for profile in users:
            if await self.send_check_in(profile.phone_number, profile):
                sent += 1
        logger.info("Check-ins sent: %d of %d due", sent, len(users))
        return sent

    async def handle_check_in_response(self, user_id: str, message_text: str) -> HandleResult:
        """Mark the latest check-in as answered, then handle the reply normally."""
        await self.memory.record_check_in_response(user_id, message_text)
        return await self.handle(user_id, message_text)

    async def process_message_queue(self, messages: Iterable[Tuple[str, str]]) -> List[HandleResult]:
        """Handle a batch of (user_id, text) pairs one after another."""
        results: List[HandleResult] = []
        for user_id, message_text in messages:
            results.append(await self.handle(user_id, message_text))
        logger.info("Processed message batch: %d messages", len(results))
        return results

    def get_status(self) -> dict:
        return {
            "generator": getattr(self.generator, "generator_id", type(self.generator).__name__),
            "transport": getattr(self.transport, "transport_id", type(self.transport).__name__),
            "cache": type(self.cache).__name__ if self.cache is not None else None,
            "durable_store": type(self.memory.store).__name__,
        }


# =============================================================================
# Factory
# =============================================================================

def create_orchestrator(settings: Settings) -> ConversationOrchestrator:
    """
    Factory function to create a configured ConversationOrchestrator.

    Selects implementations based on settings:
    - cache_backend: "memory" | "redis"
    - durable_backend: "memory" | "postgres"
    - generator_backend: "dummy" | "anthropic"
    - transport_backend: "dummy" | "twilio"

    Production backends with missing credentials raise ConfigurationError
    here, at startup, rather than failing on the first message.

    Args:
        settings: Application settings

    Returns:
        Configured ConversationOrchestrator instance
    """
    from calmtext.services.generator import AnthropicResponseGenerator, DummyResponseGenerator
    from calmtext.sms.transport import DummyTransport, TwilioTransport
    from calmtext.storage.cache import InMemoryCache, RedisCache
    from calmtext.storage.durable import InMemoryDurableStore, PostgresDurableStore

    # --- Fast Cache ---
    cache_backend = settings.cache_backend.lower()

    if cache_backend == "redis":
        logger.info("Initializing RedisCache (max_connections=%d)", settings.redis_max_connections)
        cache = RedisCache(
            redis_url=settings.redis_url,
            socket_timeout=settings.redis_socket_timeout,
            max_connections=settings.redis_max_connections,
        )
    else:
        logger.info("Using InMemoryCache (development)")
        cache = InMemoryCache()

    # --- Durable Store ---
    durable_backend = settings.durable_backend.lower()

    if durable_backend == "postgres":
        logger.info(
            "Initializing PostgresDurableStore (pool=%d-%d)",
            settings.database_min_pool_size,
            settings.database_max_pool_size,
        )
        durable = PostgresDurableStore(
            database_url=settings.database_url,
            min_pool_size=settings.database_min_pool_size,
            max_pool_size=settings.database_max_pool_size,
            command_timeout=settings.database_command_timeout,
        )
    else:
        logger.info("Using InMemoryDurableStore (development)")
        durable = InMemoryDurableStore()

    # --- Response Generator ---
    generator_backend = settings.generator_backend.lower()

    if generator_backend == "anthropic":
        logger.info("Initializing AnthropicResponseGenerator (model=%s)", settings.anthropic_model)
        generator = AnthropicResponseGenerator(
            api_key=settings.anthropic_api_key,
            model=settings.anthropic_model,
            api_url=settings.anthropic_api_url,
            max_tokens=settings.anthropic_max_tokens,
            temperature=settings.anthropic_temperature,
            timeout_seconds=settings.anthropic_timeout_seconds,
        )
    else:
        logger.info("Using DummyResponseGenerator (placeholder)")
        generator = DummyResponseGenerator()

    # --- Outbound Transport ---
    transport_backend = settings.transport_backend.lower()

    if transport_backend == "twilio":
        logger.info("Initializing TwilioTransport")
        transport = TwilioTransport(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_phone_number,
        )
    else:
        logger.info("Using DummyTransport (messages are recorded, not sent)")
        transport = DummyTransport()

    sessions = SessionStore(
        cache=cache,
        durable=durable,
        session_ttl_seconds=settings.session_ttl_seconds,
        idle_timeout_seconds=settings.session_idle_timeout_seconds,
        context_capacity=settings.context_capacity,
        context_window=settings.context_window,
        cleanup_interval_seconds=settings.session_cleanup_interval_seconds,
    )

    return ConversationOrchestrator(
        sessions=sessions,
        memory=ConversationMemory(durable),
        generator=generator,
        transport=transport,
        cache=cache,
        max_message_length=settings.max_message_length,
    )
