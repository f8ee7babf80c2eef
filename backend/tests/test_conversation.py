"""
CalmText - Conversation Helper and Generator Tests

Tests prompt building, SMS length limits, sentiment/topic tagging and the
response generator implementations.

Run with: pytest tests/test_conversation.py -v
"""

import json
import random

import httpx
import pytest

from calmtext.core.exceptions import ConfigurationError, GenerationError
from calmtext.core.types import (
    ContextSnapshot,
    Exchange,
    RiskLevel,
    Sentiment,
    SessionFlags,
    UserProfile,
)
from calmtext.services.conversation import (
    CHECK_IN_MESSAGES,
    CONTINUATION_NOTE,
    CRISIS_FALLBACK_RESPONSE,
    FALLBACK_RESPONSE,
    analyze_sentiment,
    build_messages,
    build_system_prompt,
    ensure_sms_friendly,
    extract_topic,
    fallback_response,
    generate_check_in_message,
    generate_greeting,
)
from calmtext.services.generator import AnthropicResponseGenerator, DummyResponseGenerator


class TestPromptBuilding:
    """Tests for build_system_prompt() and build_messages()."""

    def test_first_time_note(self):
        prompt = build_system_prompt(ContextSnapshot.minimal())

        assert "first message" in prompt

    def test_risk_and_crisis_alerts(self):
        context = ContextSnapshot(
            is_first_time=False,
            risk_level=RiskLevel.HIGH,
            flags=SessionFlags(in_crisis=True),
        )
        prompt = build_system_prompt(context)

        assert "high risk" in prompt
        assert "in crisis" in prompt
        assert "first message" not in prompt

    def test_topic_and_mood(self):
        context = ContextSnapshot(is_first_time=False, current_topic="school", mood="negative")
        prompt = build_system_prompt(context)

        assert '"school"' in prompt
        assert "negative" in prompt

    def test_messages_alternate_then_new_message(self):
        context = ContextSnapshot(
            is_first_time=False,
            recent_messages=[Exchange(user_text="hi", assistant_text="hello!")],
        )
        messages = build_messages("how are you", context)

        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert messages[-1]["content"] == "how are you"


class TestSmsLength:
    """Tests for ensure_sms_friendly()."""

    def test_short_text_unchanged(self):
        assert ensure_sms_friendly("Short reply.") == "Short reply."

    def test_long_text_cut_at_sentence(self):
        text = "This is a sentence. " * 200
        result = ensure_sms_friendly(text)

        assert len(result) <= 1600
        assert result.endswith(CONTINUATION_NOTE.strip())


class TestFixedTexts:
    """Tests for fallback, greeting and check-in texts."""

    def test_fallback_texts_reference_hotlines(self):
        for text in (FALLBACK_RESPONSE, CRISIS_FALLBACK_RESPONSE):
            assert "988" in text
            assert "741741" in text

    def test_fallback_is_crisis_aware(self):
        in_crisis = ContextSnapshot(flags=SessionFlags(in_crisis=True))

        assert fallback_response(in_crisis) == CRISIS_FALLBACK_RESPONSE
        assert fallback_response(ContextSnapshot.minimal()) == FALLBACK_RESPONSE
        assert fallback_response(None) == FALLBACK_RESPONSE

    def test_greeting(self):
        greeting = generate_greeting()

        assert "listen" in greeting
        assert "support" in greeting

    def test_check_in_by_risk_level(self):
        high = generate_check_in_message(UserProfile(phone_number="+1", risk_level=RiskLevel.HIGH))
        medium = generate_check_in_message(UserProfile(phone_number="+1", risk_level=RiskLevel.MEDIUM))
        low = generate_check_in_message(None, rng=random.Random(7))

        assert "care about you" in high
        assert "here if you want to talk" in medium
        assert low in CHECK_IN_MESSAGES


class TestSentimentAndTopic:
    """Tests for analyze_sentiment() and extract_topic()."""

    @pytest.mark.parametrize("message,expected", [
        ("I had a good day today", Sentiment.POSITIVE),
        ("I feel sad and awful", Sentiment.NEGATIVE),
        ("I went to the store", Sentiment.NEUTRAL),
        ("good but also bad", Sentiment.NEUTRAL),
    ])
    def test_sentiment(self, message, expected):
        assert analyze_sentiment(message) == expected

    @pytest.mark.parametrize("message,expected", [
        ("I'm so anxious about the test", "anxiety"),
        ("I failed my exam", "school"),
        ("my father yelled at me", "general"),
        ("my dad yelled at me", "family"),
        ("my girlfriend broke up with me", "relationship"),
        ("I had a good day today", "general"),
    ])
    def test_topic(self, message, expected):
        assert extract_topic(message) == expected


class TestDummyGenerator:
    """Tests for DummyResponseGenerator."""

    @pytest.mark.asyncio
    async def test_reply_by_sentiment(self):
        generator = DummyResponseGenerator()
        result = await generator.generate("I feel sad", ContextSnapshot.minimal())

        assert result.success
        assert result.text == DummyResponseGenerator.REPLIES[Sentiment.NEGATIVE]
        assert generator.call_count == 1


class TestAnthropicGenerator:
    """Tests for AnthropicResponseGenerator against a mocked transport."""

    def test_requires_api_key(self):
        with pytest.raises(ConfigurationError):
            AnthropicResponseGenerator(api_key=None, model="claude-test")

    @pytest.mark.asyncio
    async def test_successful_generation(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["payload"] = json.loads(request.content)
            return httpx.Response(200, json={
                "content": [{"type": "text", "text": "I'm here for you."}],
                "usage": {"input_tokens": 120, "output_tokens": 8},
            })

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        generator = AnthropicResponseGenerator(api_key="test-key", model="claude-test", client=client)

        result = await generator.generate("hello", ContextSnapshot.minimal())
        await generator.close()

        assert result.success
        assert result.text == "I'm here for you."
        assert result.output_tokens == 8
        assert captured["payload"]["model"] == "claude-test"
        assert captured["payload"]["messages"][-1] == {"role": "user", "content": "hello"}

    @pytest.mark.asyncio
    async def test_http_error_raises_generation_error(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(529)))
        generator = AnthropicResponseGenerator(api_key="test-key", model="claude-test", client=client)

        with pytest.raises(GenerationError):
            await generator.generate("hello", ContextSnapshot.minimal())
        await generator.close()

    @pytest.mark.asyncio
    async def test_empty_content_raises_generation_error(self):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"content": []}))
        )
        generator = AnthropicResponseGenerator(api_key="test-key", model="claude-test", client=client)

        with pytest.raises(GenerationError):
            await generator.generate("hello", ContextSnapshot.minimal())
        await generator.close()
