"""
CalmText - SMS Commands

Keyword commands that bypass risk assessment and generation and return a
canned reply. A message is a command when, trimmed and lowercased, it starts
with "/" or is exactly one of BARE_COMMANDS.
"""

from __future__ import annotations

from typing import Callable, Dict, List

from calmtext.services.risk_assessor import get_safety_plan_prompt

BARE_COMMANDS = frozenset({"help", "resources", "crisis", "stop"})

STOP_COMMANDS = frozenset({"stop", "unsubscribe"})
RESUME_COMMANDS = frozenset({"start", "resume"})

UNKNOWN_COMMAND_REPLY = 'I don\'t recognize that command. Text "help" to see available commands.'


def is_command(message: str) -> bool:
    text = message.strip().lower()
    return text.startswith("/") or text in BARE_COMMANDS


def parse_command(message: str) -> str:
    """Normalized command name: trimmed, lowercased, leading slash removed."""
    text = message.strip().lower()
    return text[1:].strip() if text.startswith("/") else text


# =============================================================================
# Replies
# =============================================================================

def get_help_message() -> str:
    return (
        "Available commands:\n\n"
        "- HELP - Show this message\n"
        "- RESOURCES - Crisis hotlines & support\n"
        "- SAFETYPLAN - Create a safety plan\n"
        "- TOPICS - What I can help with\n"
        "- BREATHE - Breathing exercise\n"
        "- GROUNDING - Grounding technique\n"
        "- COPING - Coping strategies\n"
        "- ABOUT - Learn about this service\n"
        "- STOP - Pause messages\n\n"
        "Or just text me anything you want to talk about!"
    )


def get_crisis_resources_message() -> str:
    return (
        "CRISIS RESOURCES\n\n"
        "If you're in immediate danger, call 911.\n\n"
        "24/7 Free & Confidential Support:\n\n"
        "988 - Suicide & Crisis Lifeline\n"
        'Text "HELLO" to 741741 - Crisis Text Line\n'
        "1-866-488-7386 - Trevor Project (LGBTQ+ Youth)\n"
        "1-800-422-4453 - Childhelp (Abuse Hotline)\n"
        "1-800-662-4357 - SAMHSA (Substance Abuse)\n\n"
        "You're not alone. These people care and want to help."
    )


def get_topics_message() -> str:
    return (
        "I'm here to help with:\n\n"
        "- Stress & anxiety\n"
        "- Feeling sad or depressed\n"
        "- Friend & relationship issues\n"
        "- Family problems\n"
        "- School pressure\n"
        "- Self-esteem & confidence\n"
        "- LGBTQ+ concerns\n"
        "- Bullying\n"
        "- Loneliness\n"
        "- Or anything else on your mind\n\n"
        "What would you like to talk about?"
    )


def get_about_message() -> str:
    return (
        "I'm a mental health support chatbot created to help teenagers navigate life's challenges.\n\n"
        "What I do:\n"
        "- Provide a safe space to talk\n"
        "- Offer emotional support\n"
        "- Share coping strategies\n"
        "- Connect you with professional resources\n\n"
        "What I don't do:\n"
        "- Diagnose conditions\n"
        "- Prescribe medication\n"
        "- Replace therapy or counseling\n\n"
        "I'm here to listen, support, and help you find the resources you need."
    )


def get_stop_message() -> str:
    return (
        "I understand. I'll pause sending you messages.\n\n"
        'If you ever want to talk again, just text "/start" or message me anytime.\n\n'
        'Remember: If you\'re in crisis, help is always available at 988 or text "HELLO" to 741741.\n\n'
        "Take care of yourself."
    )


def get_resume_message() -> str:
    return (
        "Welcome back! I'm glad you're here.\n\n"
        "How have you been? Is there anything you'd like to talk about?"
    )


def get_check_in_reply() -> str:
    return (
        "Thanks for checking in! How are you feeling right now?\n\n"
        "You can rate your mood 1-10, or just tell me what's going on."
    )


def get_breathing_exercise() -> str:
    return (
        "Let's do a quick breathing exercise together:\n\n"
        "1. Breathe IN slowly for 4 seconds\n"
        "2. HOLD for 4 seconds\n"
        "3. Breathe OUT slowly for 4 seconds\n"
        "4. HOLD for 4 seconds\n\n"
        "Repeat 3-5 times.\n\n"
        "How are you feeling now?"
    )


def get_grounding_exercise() -> str:
    return (
        "Let's try the 5-4-3-2-1 grounding technique:\n\n"
        "Name out loud:\n"
        "5 things you can SEE\n"
        "4 things you can TOUCH\n"
        "3 things you can HEAR\n"
        "2 things you can SMELL\n"
        "1 thing you can TASTE\n\n"
        "Take your time. This helps bring you back to the present moment.\n\n"
        "How do you feel after trying this?"
    )


def get_coping_strategies() -> str:
    return (
        "Healthy ways to cope when things get tough:\n\n"
        "- Talk to someone you trust\n"
        "- Write in a journal\n"
        "- Listen to music\n"
        "- Go for a walk\n"
        "- Do breathing exercises (text /breathe)\n"
        "- Pet an animal\n"
        "- Take a shower\n"
        "- Draw or be creative\n"
        "- Watch something funny\n"
        "- Practice self-compassion\n\n"
        "What usually helps you feel better?"
    )


COMMAND_HANDLERS: Dict[str, Callable[[], str]] = {
    "help": get_help_message,
    "resources": get_crisis_resources_message,
    "crisis": get_crisis_resources_message,
    "safetyplan": get_safety_plan_prompt,
    "safety plan": get_safety_plan_prompt,
    "safety": get_safety_plan_prompt,
    "topics": get_topics_message,
    "about": get_about_message,
    "stop": get_stop_message,
    "unsubscribe": get_stop_message,
    "start": get_resume_message,
    "resume": get_resume_message,
    "checkin": get_check_in_reply,
    "check in": get_check_in_reply,
    "check-in": get_check_in_reply,
    "breathe": get_breathing_exercise,
    "breathing": get_breathing_exercise,
    "grounding": get_grounding_exercise,
    "ground": get_grounding_exercise,
    "coping": get_coping_strategies,
}


def handle_command(message: str) -> str:
    """Return the canned reply for a command, or the unknown-command reply."""
    handler = COMMAND_HANDLERS.get(parse_command(message))
    if handler is None:
        return UNKNOWN_COMMAND_REPLY
    return handler()


def get_command_list() -> List[str]:
    return [
        "help",
        "resources",
        "safetyplan",
        "topics",
        "about",
        "stop",
        "start",
        "checkin",
        "breathe",
        "grounding",
        "coping",
    ]
