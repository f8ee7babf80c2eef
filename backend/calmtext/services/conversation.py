"""
CalmText - Conversation Helpers

Text utilities around response generation: the system prompt, message
history shaping, SMS length limits, fallback texts, greetings, check-in
texts, and the lightweight sentiment/topic tagging stored on the session.
"""

from __future__ import annotations

import random
import re
from typing import Dict, List, Optional, Sequence, Tuple

from calmtext.core.types import ContextSnapshot, RiskLevel, Sentiment, UserProfile

MAX_SMS_LENGTH = 1600
CONTINUATION_NOTE = "\n\n(Message continued in next text)"


# =============================================================================
# System Prompt
# =============================================================================

SYSTEM_PROMPT = """You are a compassionate mental health support chatbot designed specifically for teenagers. Your role is to provide empathetic, supportive, and age-appropriate guidance.

CORE PRINCIPLES:
1. Be warm, empathetic, and non-judgmental
2. Use teen-friendly language (avoid clinical jargon)
3. Validate their feelings and experiences
4. Never diagnose or prescribe medication
5. Always prioritize safety
6. Encourage professional help when appropriate

COMMUNICATION STYLE:
- Keep responses concise (SMS-friendly, 2-4 sentences usually)
- Ask open-ended questions to encourage sharing
- Reflect their emotions back to show understanding
- Avoid sounding preachy or lecturing

SAFETY PROTOCOLS:
- If someone expresses suicidal thoughts, self-harm, or abuse, prioritize their immediate safety
- Provide crisis resources when needed (988, Crisis Text Line 741741)
- Encourage them to talk to trusted adults
- Never dismiss or minimize serious concerns

BOUNDARIES:
- You are a support tool, not a replacement for therapy
- Don't provide medical advice
- Don't make promises you can't keep
- Respect if they don't want to share something"""


def build_system_prompt(context: ContextSnapshot) -> str:
    """Append per-user notes to the base prompt."""
    prompt = SYSTEM_PROMPT

    if context.is_first_time:
        prompt += (
            "\n\nCONTEXT: This is the user's first message. "
            "Introduce yourself warmly and ask how you can help."
        )

    if context.risk_level is not None and context.risk_level != RiskLevel.NONE:
        prompt += (
            f"\n\nALERT: This user has shown signs of {context.risk_level.value} risk. "
            "Be extra supportive and watch for crisis indicators."
        )

    if context.current_topic:
        prompt += f'\n\nCONTEXT: Current conversation topic is "{context.current_topic}".'

    if context.mood:
        prompt += f"\n\nCONTEXT: User's recent mood seems to be: {context.mood}."

    if context.in_crisis:
        prompt += (
            "\n\nALERT: User may be in crisis. "
            "Continue providing support and encourage professional help."
        )

    return prompt


def build_messages(message: str, context: ContextSnapshot) -> List[Dict[str, str]]:
    """Recent exchanges as alternating user/assistant turns, then the new message."""
    messages: List[Dict[str, str]] = []
    for exchange in context.recent_messages:
        messages.append({"role": "user", "content": exchange.user_text})
        messages.append({"role": "assistant", "content": exchange.assistant_text})
    messages.append({"role": "user", "content": message})
    return messages


def ensure_sms_friendly(text: str, max_length: int = MAX_SMS_LENGTH) -> str:
    """
    Cap a reply at max_length characters.

    Long replies are cut at the last sentence boundary that fits, leaving
    room for a continuation note.
    """
    if len(text) <= max_length:
        return text

    sentences = re.findall(r"[^.!?]+[.!?]+", text) or [text]
    budget = max_length - 50
    result = ""

    for sentence in sentences:
        if len(result) + len(sentence) > budget:
            break
        result += sentence

    if not result:
        result = text[:budget]

    return (result + CONTINUATION_NOTE).strip()


# =============================================================================
# Fixed Texts
# =============================================================================

CRISIS_FALLBACK_RESPONSE = (
    "I'm having trouble responding right now, but I want to make sure you're safe. "
    "Please reach out:\n\n"
    "Call 988 (Suicide & Crisis Lifeline)\n"
    'Text "HELLO" to 741741\n\n'
    "These are free and available 24/7."
)

FALLBACK_RESPONSE = (
    "I'm having a moment of technical difficulty, but I'm here for you. "
    "Could you tell me again what's on your mind? "
    'If you need immediate help, call 988 or text "HELLO" to 741741.'
)


def fallback_response(context: Optional[ContextSnapshot]) -> str:
    """Safe text used when generation fails."""
    if context is not None and context.in_crisis:
        return CRISIS_FALLBACK_RESPONSE
    return FALLBACK_RESPONSE


def generate_greeting() -> str:
    return (
        "Hi! I'm here to listen and support you through whatever you're going through. "
        "You can talk to me about anything - stress, school, friends, family, or just how you're feeling.\n\n"
        "There's no judgment here. What's on your mind today?"
    )


CHECK_IN_MESSAGES: Tuple[str, ...] = (
    "Hey! Just checking in to see how you're doing today. How are things going?",
    "Hi there! I was thinking about you. How have you been feeling lately?",
    "Hey! It's been a little while. How's everything been going for you?",
    "Hi! Just wanted to reach out and see how you're doing. What's new with you?",
    "Hey! Hope you're having a good day. How are you feeling today?",
)


def generate_check_in_message(
    profile: Optional[UserProfile] = None,
    rng: Optional[random.Random] = None,
) -> str:
    """Check-in text, warmer and more direct for users with elevated risk."""
    level = profile.risk_level if profile else RiskLevel.NONE

    if level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
        return (
            "Hey, I wanted to check in and see how you've been doing. "
            "I care about you and want to make sure you're okay. How are you feeling?"
        )

    if level == RiskLevel.MEDIUM:
        return (
            "Hi! Just checking in on you. How have things been going lately? "
            "I'm here if you want to talk."
        )

    return (rng or random).choice(CHECK_IN_MESSAGES)


# =============================================================================
# Sentiment & Topic
# =============================================================================

POSITIVE_WORDS = ("good", "great", "happy", "better", "okay", "fine", "thanks", "grateful")
NEGATIVE_WORDS = ("bad", "sad", "terrible", "awful", "horrible", "depressed", "anxious", "worried")

# Emotional topics are checked before situational ones so that
# "anxious about the test" tags as anxiety, not school.
TOPIC_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("anxiety", ("anxious", "anxiety", "worried", "nervous", "panic", "stress", "overwhelmed")),
    ("depression", ("depressed", "sad", "depression", "hopeless", "empty", "numb")),
    ("selfEsteem", ("ugly", "fat", "worthless", "hate myself", "insecure", "confidence")),
    ("bullying", ("bully", "bullying", "teasing", "mean", "picking on")),
    ("lgbtq", ("gay", "lesbian", "trans", "queer", "lgbtq", "coming out", "sexuality", "gender")),
    ("school", ("school", "class", "homework", "teacher", "grade", "test", "exam", "college")),
    ("family", ("mom", "dad", "parent", "family", "brother", "sister", "sibling", "home")),
    ("friends", ("friend", "friendship", "peer", "classmate", "people")),
    ("relationship", ("boyfriend", "girlfriend", "dating", "relationship", "crush", "love")),
)

DEFAULT_TOPIC = "general"


def _contains_word(text_lower: str, word: str) -> bool:
    # Whole words plus simple inflections: "fat" must not match "father"
    return re.search(rf"\b{re.escape(word)}(?:s|es|ed|ing)?\b", text_lower) is not None


def _count_words(text_lower: str, words: Sequence[str]) -> int:
    return sum(1 for word in words if _contains_word(text_lower, word))


def analyze_sentiment(message: str) -> Sentiment:
    text_lower = message.lower()
    positive = _count_words(text_lower, POSITIVE_WORDS)
    negative = _count_words(text_lower, NEGATIVE_WORDS)

    if negative > positive:
        return Sentiment.NEGATIVE
    if positive > negative:
        return Sentiment.POSITIVE
    return Sentiment.NEUTRAL


def extract_topic(message: str) -> str:
    text_lower = message.lower()
    for topic, keywords in TOPIC_KEYWORDS:
        if any(_contains_word(text_lower, kw) for kw in keywords):
            return topic
    return DEFAULT_TOPIC
