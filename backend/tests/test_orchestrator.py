"""
CalmText - Orchestrator Tests

Tests the per-message decision tree with in-memory storage and dummy
services. These tests verify:
- Crisis messages always get the crisis reply, with or without a follow-up
- Normal messages get a generated reply or the safe fallback
- Commands skip assessment entirely
- Invalid input is ignored silently
- Send failures are retried once with a minimal text
- Check-ins, greetings and batches

Run with: pytest tests/test_orchestrator.py -v
"""

from datetime import timedelta

import pytest

from calmtext.core.exceptions import ConfigurationError
from calmtext.core.orchestrator import (
    FAILURE_FALLBACK_TEXT,
    MINIMAL_FALLBACK_TEXT,
    ConversationOrchestrator,
    create_orchestrator,
)
from calmtext.core.session_store import SessionStore
from calmtext.core.types import HandleType, RiskLevel, Sentiment, utcnow
from calmtext.services.commands import get_help_message
from calmtext.services.conversation import CRISIS_FALLBACK_RESPONSE, FALLBACK_RESPONSE
from calmtext.services.generator import DummyResponseGenerator
from calmtext.sms.transport import DummyTransport
from calmtext.storage.cache import InMemoryCache
from calmtext.storage.durable import InMemoryDurableStore
from calmtext.storage.memory import ConversationMemory

from conftest import USER, OTHER_USER, FailingDurableStore, FailingGenerator, RecordingTransport


class TestCrisisPath:
    """Tests for high and critical messages."""

    @pytest.mark.asyncio
    async def test_critical_message_end_to_end(self, orchestrator: ConversationOrchestrator, transport, durable):
        result = await orchestrator.handle(USER, "I want to kill myself")

        assert result.success
        assert result.type == HandleType.CONVERSATION
        assert result.risk_level == RiskLevel.CRITICAL

        events = await durable.query("crisis_events")
        assert len(events) == 1
        assert events[0]["risk_level"] == "critical"
        assert "suicide" in events[0]["risk_categories"]

        sent = transport.messages_to(USER)
        assert "988" in sent[0]

        session = await orchestrator.sessions.get_session(USER)
        assert session.flags.in_crisis is True
        assert session.risk_level == RiskLevel.CRITICAL

    @pytest.mark.asyncio
    async def test_crisis_reply_then_follow_up(self, orchestrator: ConversationOrchestrator, transport, generator):
        await orchestrator.handle(USER, "I want to die tonight")

        sent = transport.messages_to(USER)
        assert len(sent) == 2
        assert "988" in sent[0]
        assert generator.call_count == 1
        assert generator.last_context.in_crisis is True
        assert generator.last_context.risk_level == RiskLevel.CRITICAL

    @pytest.mark.asyncio
    async def test_session_holds_combined_reply(self, orchestrator: ConversationOrchestrator, transport):
        await orchestrator.handle(USER, "I want to die tonight")

        crisis_text, follow_up = transport.messages_to(USER)
        session = await orchestrator.sessions.get_session(USER)

        assert session.conversation_context[-1].assistant_text == f"{crisis_text}\n\n{follow_up}"

    @pytest.mark.asyncio
    async def test_crisis_reply_survives_generator_failure(
        self, orchestrator_failing_generator: ConversationOrchestrator, transport
    ):
        result = await orchestrator_failing_generator.handle(USER, "I want to kill myself")

        sent = transport.messages_to(USER)
        assert result.success
        assert len(sent) == 1
        assert "988" in sent[0]

        session = await orchestrator_failing_generator.sessions.get_session(USER)
        assert session.conversation_context[-1].assistant_text == sent[0]

    @pytest.mark.asyncio
    async def test_crisis_messages_stored(self, orchestrator: ConversationOrchestrator, memory):
        await orchestrator.handle(USER, "I want to kill myself")

        history = await memory.get_conversation_history(USER)

        assert [r.direction.value for r in history] == ["incoming", "outgoing", "outgoing"]
        assert history[0].risk_level == RiskLevel.CRITICAL

    @pytest.mark.asyncio
    async def test_all_high_risk_messages_get_988(
        self, orchestrator: ConversationOrchestrator, transport, high_risk_messages
    ):
        for i, message in enumerate(high_risk_messages):
            user = f"+1415555{i:04d}"
            await orchestrator.handle(user, message)
            assert "988" in transport.messages_to(user)[0], message


class TestConversationPath:
    """Tests for none/low/medium messages."""

    @pytest.mark.asyncio
    async def test_normal_message_end_to_end(self, orchestrator: ConversationOrchestrator, transport, durable):
        before = await orchestrator.sessions.get_session(USER)

        result = await orchestrator.handle(USER, "I had a good day today")

        assert result.success
        assert result.risk_level == RiskLevel.NONE
        assert result.response == DummyResponseGenerator.REPLIES[Sentiment.POSITIVE]
        assert await durable.query("crisis_events") == []
        assert transport.messages_to(USER) == [result.response]

        after = await orchestrator.sessions.get_session(USER)
        assert after.message_count == before.message_count + 1

    @pytest.mark.asyncio
    async def test_mood_and_topic_recorded(self, orchestrator: ConversationOrchestrator):
        await orchestrator.handle(USER, "I'm so anxious about my exam")

        session = await orchestrator.sessions.get_session(USER)

        assert session.mood == "negative"
        assert session.current_topic == "anxiety"

    @pytest.mark.asyncio
    async def test_medium_risk_uses_generation(self, orchestrator: ConversationOrchestrator, durable, generator):
        result = await orchestrator.handle(USER, "I've been thinking about suicide")

        assert result.risk_level == RiskLevel.MEDIUM
        assert generator.call_count == 1
        assert await durable.query("crisis_events") == []

    @pytest.mark.asyncio
    async def test_generator_failure_sends_fallback(
        self, orchestrator_failing_generator: ConversationOrchestrator, transport
    ):
        result = await orchestrator_failing_generator.handle(USER, "hey, how are you")

        assert result.success
        assert transport.messages_to(USER) == [FALLBACK_RESPONSE]

    @pytest.mark.asyncio
    async def test_generator_failure_in_crisis_sends_crisis_fallback(
        self, orchestrator_failing_generator: ConversationOrchestrator, transport
    ):
        await orchestrator_failing_generator.handle(USER, "I want to kill myself")
        await orchestrator_failing_generator.handle(USER, "ok")

        assert transport.messages_to(USER)[-1] == CRISIS_FALLBACK_RESPONSE

    @pytest.mark.asyncio
    async def test_crisis_fallback_survives_durable_outage(self, cache, transport):
        durable = FailingDurableStore()
        orchestrator = ConversationOrchestrator(
            sessions=SessionStore(cache=cache, durable=durable),
            memory=ConversationMemory(durable),
            generator=FailingGenerator(),
            transport=transport,
            cache=cache,
        )

        await orchestrator.handle(USER, "I want to kill myself")
        await orchestrator.handle(USER, "ok thanks")

        assert transport.messages_to(USER)[-1] == CRISIS_FALLBACK_RESPONSE

    @pytest.mark.asyncio
    async def test_context_passed_to_generator(self, orchestrator: ConversationOrchestrator, generator):
        await orchestrator.handle(USER, "hello")
        await orchestrator.handle(USER, "school has been rough")

        context = generator.last_context
        assert context.is_first_time is False
        assert context.message_count == 1
        assert context.recent_messages[-1].user_text == "hello"

    @pytest.mark.asyncio
    async def test_durable_store_down_still_replies(self, session_store, generator, transport, cache):
        orchestrator = ConversationOrchestrator(
            sessions=session_store,
            memory=ConversationMemory(FailingDurableStore()),
            generator=generator,
            transport=transport,
            cache=cache,
        )

        result = await orchestrator.handle(USER, "I had a good day today")

        assert result.success
        assert len(transport.messages_to(USER)) == 1

    @pytest.mark.asyncio
    async def test_profile_counters_updated(self, orchestrator: ConversationOrchestrator, durable):
        await orchestrator.handle(USER, "hello")

        row = await durable.get(USER)

        assert row["total_messages"] == 2  # inbound + reply


class TestCommands:
    """Tests for the command path."""

    @pytest.mark.asyncio
    async def test_help_command(self, orchestrator: ConversationOrchestrator, transport, generator):
        result = await orchestrator.handle(USER, "HELP")

        assert result.success
        assert result.type == HandleType.COMMAND
        assert result.response == get_help_message()
        assert transport.messages_to(USER) == [get_help_message()]
        assert generator.call_count == 0

    @pytest.mark.asyncio
    async def test_command_skips_assessment(self, orchestrator: ConversationOrchestrator, durable):
        result = await orchestrator.handle(USER, "/I want to kill myself")

        assert result.type == HandleType.COMMAND
        assert result.risk_level == RiskLevel.NONE
        assert await durable.query("crisis_events") == []

    @pytest.mark.asyncio
    async def test_command_stores_both_sides(self, orchestrator: ConversationOrchestrator, memory):
        await orchestrator.handle(USER, "resources")

        history = await memory.get_conversation_history(USER)

        assert [r.direction.value for r in history] == ["incoming", "outgoing"]
        assert all(r.risk_level == RiskLevel.NONE for r in history)

    @pytest.mark.asyncio
    async def test_command_leaves_session_context(self, orchestrator: ConversationOrchestrator):
        await orchestrator.handle(USER, "help")

        session = await orchestrator.sessions.get_session(USER)

        assert session.message_count == 0

    @pytest.mark.asyncio
    async def test_stop_and_start_toggle_active(self, orchestrator: ConversationOrchestrator, durable):
        await orchestrator.handle(USER, "STOP")
        assert (await durable.get(USER))["is_active"] is False

        await orchestrator.handle(USER, "/start")
        assert (await durable.get(USER))["is_active"] is True


class TestValidation:
    """Tests for inputs that must be ignored."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message", ["", "   ", "x" * 10001, None, 42])
    async def test_invalid_messages_ignored(self, orchestrator: ConversationOrchestrator, transport, durable, message):
        result = await orchestrator.handle(USER, message)

        assert result.success is False
        assert result.type == HandleType.IGNORED
        assert result.error
        assert transport.outbox == []
        assert await durable.query("conversations") == []

    @pytest.mark.asyncio
    async def test_blank_user_ignored(self, orchestrator: ConversationOrchestrator, transport):
        result = await orchestrator.handle("", "hello")

        assert result.type == HandleType.IGNORED
        assert transport.outbox == []

    @pytest.mark.asyncio
    async def test_max_length_accepted(self, orchestrator: ConversationOrchestrator):
        result = await orchestrator.handle(USER, "a" * 10000)

        assert result.success


class TestSendFailures:
    """Tests for outbound send failures."""

    def _orchestrator(self, session_store, memory, generator, transport) -> ConversationOrchestrator:
        return ConversationOrchestrator(
            sessions=session_store,
            memory=memory,
            generator=generator,
            transport=transport,
        )

    @pytest.mark.asyncio
    async def test_failed_send_retried_with_minimal_text(self, session_store, memory, generator):
        transport = RecordingTransport(fail_first=1)
        orchestrator = self._orchestrator(session_store, memory, generator, transport)

        result = await orchestrator.handle(USER, "hello")

        assert result.success
        assert len(transport.attempts) == 2
        assert transport.delivered == [MINIMAL_FALLBACK_TEXT]

    @pytest.mark.asyncio
    async def test_raised_send_error_retried(self, session_store, memory, generator):
        transport = RecordingTransport(fail_first=1, raise_errors=True)
        orchestrator = self._orchestrator(session_store, memory, generator, transport)

        result = await orchestrator.handle(USER, "hello")

        assert result.success
        assert transport.delivered == [MINIMAL_FALLBACK_TEXT]

    @pytest.mark.asyncio
    async def test_retry_abandoned_after_one_attempt(self, session_store, memory, generator):
        transport = RecordingTransport(fail_first=100)
        orchestrator = self._orchestrator(session_store, memory, generator, transport)

        result = await orchestrator.handle(USER, "hello")

        assert result.success
        assert len(transport.attempts) == 2

    @pytest.mark.asyncio
    async def test_crisis_follow_up_sent_after_failed_crisis_send(self, session_store, memory, generator):
        transport = RecordingTransport(fail_first=1)
        orchestrator = self._orchestrator(session_store, memory, generator, transport)

        await orchestrator.handle(USER, "I want to kill myself")

        assert "988" in transport.attempts[0]
        assert transport.attempts[1] == MINIMAL_FALLBACK_TEXT
        assert len(transport.attempts) == 3

    @pytest.mark.asyncio
    async def test_uncaught_failure_sends_one_fallback(
        self, orchestrator: ConversationOrchestrator, transport, monkeypatch
    ):
        async def boom(*args, **kwargs):
            raise RuntimeError("unexpected")

        monkeypatch.setattr(orchestrator, "_handle_conversation", boom)

        result = await orchestrator.handle(USER, "hello")

        assert result.success is False
        assert "unexpected" in result.error
        assert transport.messages_to(USER) == [FAILURE_FALLBACK_TEXT]


class TestCheckInsAndGreetings:
    """Tests for greetings, check-ins and batches."""

    @pytest.mark.asyncio
    async def test_handle_new_user(self, orchestrator: ConversationOrchestrator, transport, memory):
        assert await orchestrator.handle_new_user(USER)

        assert "listen" in transport.messages_to(USER)[0]
        history = await memory.get_conversation_history(USER)
        assert history[0].direction.value == "outgoing"

    @pytest.mark.asyncio
    async def test_send_check_in(self, orchestrator: ConversationOrchestrator, transport, durable):
        assert await orchestrator.send_check_in(USER)

        assert len(transport.messages_to(USER)) == 1
        check_ins = await durable.query("check_ins")
        assert len(check_ins) == 1
        assert check_ins[0]["responded"] is False

    @pytest.mark.asyncio
    async def test_check_in_skips_inactive_user(self, orchestrator: ConversationOrchestrator, transport, durable):
        await durable.upsert(USER, {"is_active": False})

        assert await orchestrator.send_check_in(USER) is False
        assert transport.outbox == []

    @pytest.mark.asyncio
    async def test_check_in_response_recorded(self, orchestrator: ConversationOrchestrator, durable):
        await orchestrator.send_check_in(USER)

        result = await orchestrator.handle_check_in_response(USER, "doing better, thanks")

        assert result.success
        check_in = (await durable.query("check_ins"))[0]
        assert check_in["responded"] is True
        assert check_in["response_text"] == "doing better, thanks"

    @pytest.mark.asyncio
    async def test_send_due_check_ins(self, orchestrator: ConversationOrchestrator, durable, transport):
        await durable.upsert(USER, {"last_interaction": utcnow() - timedelta(hours=30)})
        await durable.upsert(OTHER_USER, {"last_interaction": utcnow()})

        assert await orchestrator.send_due_check_ins() == 1
        assert len(transport.messages_to(USER)) == 1
        assert transport.messages_to(OTHER_USER) == []

        # Nobody is due right after a round of check-ins
        assert await orchestrator.send_due_check_ins() == 0

    @pytest.mark.asyncio
    async def test_process_message_queue(self, orchestrator: ConversationOrchestrator):
        results = await orchestrator.process_message_queue([
            (USER, "hello"),
            (OTHER_USER, "help"),
            (USER, ""),
        ])

        assert [r.type for r in results] == [HandleType.CONVERSATION, HandleType.COMMAND, HandleType.IGNORED]


class TestLifecycleAndFactory:
    """Tests for startup/shutdown and create_orchestrator()."""

    @pytest.mark.asyncio
    async def test_startup_and_shutdown(self, orchestrator: ConversationOrchestrator):
        await orchestrator.startup()
        await orchestrator.handle(USER, "hello")
        await orchestrator.shutdown()

        assert orchestrator.sessions.fallback_size == 0

    def test_factory_uses_in_process_backends(self, test_settings):
        orchestrator = create_orchestrator(test_settings)

        assert isinstance(orchestrator.cache, InMemoryCache)
        assert isinstance(orchestrator.memory.store, InMemoryDurableStore)
        assert isinstance(orchestrator.generator, DummyResponseGenerator)
        assert isinstance(orchestrator.transport, DummyTransport)

    def test_factory_rejects_anthropic_without_key(self, test_settings):
        settings = test_settings.model_copy(update={"generator_backend": "anthropic", "anthropic_api_key": None})

        with pytest.raises(ConfigurationError):
            create_orchestrator(settings)

    def test_factory_rejects_twilio_without_credentials(self, test_settings):
        settings = test_settings.model_copy(update={"transport_backend": "twilio", "twilio_account_sid": None})

        with pytest.raises(ConfigurationError):
            create_orchestrator(settings)
