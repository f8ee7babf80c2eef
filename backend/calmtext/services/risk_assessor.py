"""
CalmText - Risk Assessor

Keyword-weighted risk scoring for inbound SMS text.

Scoring:
    Each category dictionary is matched case-insensitively as substrings.
    score = Σ(matches_in_category × CATEGORY_WEIGHTS[category])
    Immediate-risk phrases ("tonight", "have a plan", ...) add
    IMMEDIATE_RISK_WEIGHT per match, but only on top of a nonzero score;
    on their own they mean nothing.

    The cumulative score maps onto a level through RISK_THRESHOLDS.

Safety Notes:
    - This is NOT a clinical classifier. It is biased toward over-flagging.
    - Hotline numbers are compliance-bearing literals. They are defined once
      in CRISIS_RESOURCES and must appear verbatim in every crisis reply.
    - The weights and thresholds below are fixed constants. Changing them
      changes how every stored assessment compares with new ones.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple, Union

from calmtext.core.logging import get_logger
from calmtext.core.types import CrisisResource, RiskAssessment, RiskLevel

logger = get_logger(__name__)


# =============================================================================
# Keyword Dictionaries
# =============================================================================

SUICIDE_KEYWORDS: Tuple[str, ...] = (
    "suicide", "suicidal", "kill myself", "killing myself", "end my life",
    "ending my life", "want to die", "wanna die", "wish i was dead",
    "wish i were dead", "better off dead", "better off without me",
    "no reason to live", "take my own life", "take my life", "end it all",
    "don't want to live", "dont want to live", "don't want to be alive",
    "hang myself", "shoot myself", "jump off",
)

SELF_HARM_KEYWORDS: Tuple[str, ...] = (
    "cut myself", "cutting myself", "cutting", "hurt myself", "hurting myself",
    "burn myself", "burning myself", "self harm", "self-harm", "selfharm",
    "harm myself", "punish myself", "scratch myself",
)

ABUSE_KEYWORDS: Tuple[str, ...] = (
    "hitting me", "hits me", "beats me", "beating me", "touches me",
    "touching me", "hurting me", "hurts me", "abusing me", "abuses me",
    "sexual abuse", "physical abuse", "molest", "unsafe at home",
    "scared to go home", "afraid to go home", "locks me in",
    "won't let me leave", "scared of them",
)

SUBSTANCE_KEYWORDS: Tuple[str, ...] = (
    "drunk", "drinking", "getting high", "got high", "drugs", "weed",
    "cocaine", "overdose", "overdosing", "pills to sleep", "vaping",
    "blacked out", "xanax", "opioids",
)

IMMEDIATE_RISK_KEYWORDS: Tuple[str, ...] = (
    "i want to", "want to", "going to", "gonna", "plan to", "have a plan",
    "tonight", "right now", "today", "ready to", "about to", "goodbye",
    "last time", "pills", "gun", "rope", "bridge",
)

# Iteration order fixes the order of RiskAssessment.categories
CATEGORY_WEIGHTS: Dict[str, int] = {
    "suicide": 10,
    "selfHarm": 7,
    "abuse": 8,
    "substance": 5,
}

CATEGORY_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "suicide": SUICIDE_KEYWORDS,
    "selfHarm": SELF_HARM_KEYWORDS,
    "abuse": ABUSE_KEYWORDS,
    "substance": SUBSTANCE_KEYWORDS,
}

IMMEDIATE_RISK_CATEGORY = "immediateRisk"
IMMEDIATE_RISK_WEIGHT = 15

# (exclusive upper bound, level); anything at or above the last bound is critical
RISK_THRESHOLDS: Tuple[Tuple[int, RiskLevel], ...] = (
    (1, RiskLevel.NONE),
    (10, RiskLevel.LOW),
    (20, RiskLevel.MEDIUM),
    (40, RiskLevel.HIGH),
)


# =============================================================================
# Crisis Resources
# =============================================================================

CRISIS_RESOURCES: Dict[str, CrisisResource] = {
    "suicide": CrisisResource(
        name="Suicide & Crisis Lifeline",
        number="988",
        description="Call or text 988",
    ),
    "crisisText": CrisisResource(
        name="Crisis Text Line",
        number="741741",
        description='Text "HELLO" to 741741',
    ),
    "trevor": CrisisResource(
        name="Trevor Project (LGBTQ+ Youth)",
        number="1-866-488-7386",
        description="Call 1-866-488-7386",
    ),
    "abuse": CrisisResource(
        name="Childhelp National Child Abuse Hotline",
        number="1-800-422-4453",
        description="Call 1-800-422-4453",
    ),
    "substance": CrisisResource(
        name="SAMHSA National Helpline",
        number="1-800-662-4357",
        description="Call 1-800-662-4357",
    ),
    "emergency": CrisisResource(
        name="Emergency Services",
        number="911",
        description="Call 911",
    ),
}

# Literal strings that must survive in the resource registry
REQUIRED_RESOURCE_NUMBERS: Dict[str, str] = {
    "suicide": "988",
    "crisisText": "741741",
    "abuse": "1-800-422-4453",
    "substance": "1-800-662-4357",
    "emergency": "911",
}


# =============================================================================
# Scoring
# =============================================================================

def _find_matches(text_lower: str, keywords: Sequence[str]) -> List[str]:
    return [kw for kw in keywords if kw in text_lower]


def _level_for_score(score: int) -> RiskLevel:
    for upper_bound, level in RISK_THRESHOLDS:
        if score < upper_bound:
            return level
    return RiskLevel.CRITICAL


def _resources_for(level: RiskLevel, categories: Sequence[str]) -> List[CrisisResource]:
    if level == RiskLevel.NONE:
        return []

    resources = [CRISIS_RESOURCES["suicide"], CRISIS_RESOURCES["crisisText"]]
    if "abuse" in categories:
        resources.append(CRISIS_RESOURCES["abuse"])
    if "substance" in categories:
        resources.append(CRISIS_RESOURCES["substance"])
    if level == RiskLevel.CRITICAL:
        resources.append(CRISIS_RESOURCES["emergency"])
    return resources


def assess_risk(message: Optional[str]) -> RiskAssessment:
    """
    Score a message against the category dictionaries.

    Args:
        message: Raw inbound text. None and empty strings score NONE.

    Returns:
        RiskAssessment with level, matched categories/keywords and the
        resources to surface.
    """
    if not message:
        return RiskAssessment.none()

    # upper() first so characters like "ſ" fold the same way as their uppercase form
    text_lower = message.upper().lower()

    score = 0
    categories: List[str] = []
    keywords: List[str] = []

    for category, category_keywords in CATEGORY_KEYWORDS.items():
        matches = _find_matches(text_lower, category_keywords)
        if matches:
            categories.append(category)
            keywords.extend(matches)
            score += len(matches) * CATEGORY_WEIGHTS[category]

    # Immediacy amplifies an existing signal but never creates one
    if score > 0:
        immediate = _find_matches(text_lower, IMMEDIATE_RISK_KEYWORDS)
        if immediate:
            categories.append(IMMEDIATE_RISK_CATEGORY)
            keywords.extend(immediate)
            score += len(immediate) * IMMEDIATE_RISK_WEIGHT

    level = _level_for_score(score)

    assessment = RiskAssessment(
        level=level,
        categories=categories,
        keywords=keywords,
        score=score,
        requires_immediate_intervention=level == RiskLevel.CRITICAL,
        resources=_resources_for(level, categories),
    )

    if requires_human_escalation(level):
        logger.alert(
            "High-risk message assessed",
            event_type="risk_assessed",
            data={
                "level": level.value,
                "score": score,
                "categories": categories,
                "requires_immediate_intervention": assessment.requires_immediate_intervention,
            },
        )

    return assessment


LevelOrAssessment = Union[RiskLevel, RiskAssessment, str]


def _level_of(value: LevelOrAssessment) -> RiskLevel:
    if isinstance(value, RiskAssessment):
        return value.level
    return RiskLevel.coerce(value)


def requires_human_escalation(value: LevelOrAssessment) -> bool:
    """True for HIGH and CRITICAL."""
    return _level_of(value).rank >= RiskLevel.HIGH.rank


def requires_review(value: LevelOrAssessment) -> bool:
    """True for anything above NONE."""
    return _level_of(value) != RiskLevel.NONE


# =============================================================================
# Crisis Responses
# =============================================================================

def _resource_lines(resources: Sequence[CrisisResource]) -> str:
    return "\n".join(f"{r.description} - {r.name}" for r in resources)


_LOW_TEMPLATE = (
    "It sounds like you're carrying something heavy, and I'm really glad you reached out. "
    "If it ever feels like too much, you can call or text 988 or text \"HELLO\" to 741741 any time. "
    "What's been weighing on you?"
)

_MEDIUM_TEMPLATE = (
    "Thank you for telling me this. What you're feeling matters and you don't have to handle it alone. "
    "Caring people are available 24/7:\n\n{resources}\n\n"
    "Is there someone you trust nearby you could talk to today?"
)

_HIGH_TEMPLATE = (
    "I'm concerned about what you've shared and I want you to be safe. "
    "Please reach out to someone right now. These are free, confidential and open 24/7:\n\n"
    "{resources}\n\n"
    "You don't have to go through this alone. I'm still here with you."
)

_CRITICAL_TEMPLATE = (
    "I'm very concerned about your safety right now. "
    "If you are in immediate danger, please call 911.\n\n"
    "Please reach out now. These are free, confidential and open 24/7:\n\n"
    "{resources}\n\n"
    "You matter, and people want to help you through this. I'm still here with you."
)


def generate_crisis_response(assessment: RiskAssessment) -> Optional[str]:
    """
    Compose the mandatory crisis reply for an assessment.

    Returns None for NONE. Every other level gets a distinct template; the
    resource lines always come from CRISIS_RESOURCES so the numbers are
    never paraphrased.
    """
    level = assessment.level

    if level == RiskLevel.NONE:
        return None

    if level == RiskLevel.LOW:
        return _LOW_TEMPLATE

    # Always lead with 988 and the text line even if resources were stripped
    resources = list(assessment.resources) or _resources_for(level, assessment.categories)

    if level == RiskLevel.MEDIUM:
        return _MEDIUM_TEMPLATE.format(resources=_resource_lines(resources))

    if level == RiskLevel.HIGH:
        return _HIGH_TEMPLATE.format(resources=_resource_lines(resources))

    return _CRITICAL_TEMPLATE.format(resources=_resource_lines(resources))


def get_safety_plan_prompt() -> str:
    """Step-by-step safety plan the user can fill in over SMS."""
    return (
        "Let's build a safety plan together. Think about each step, "
        "and text me your answers whenever you're ready:\n\n"
        "1. Warning signs: what thoughts or feelings tell you things are getting hard?\n"
        "2. Coping: what can you do on your own to feel a little calmer?\n"
        "3. People and places that help take your mind off things\n"
        "4. Trusted adults you can ask for help\n"
        "5. Professionals: call or text 988, or text \"HELLO\" to 741741\n"
        "6. Making your space safer: what could you put away or hand to someone?\n\n"
        "Keep this somewhere you can find it. Which step do you want to start with?"
    )


def validate_safety_configuration() -> bool:
    """
    Check that the resource registry and crisis templates still carry their
    mandatory literals. Called once at startup.
    """
    for key, number in REQUIRED_RESOURCE_NUMBERS.items():
        resource = CRISIS_RESOURCES.get(key)
        if resource is None or resource.number != number:
            logger.error(
                "Crisis resource misconfigured",
                data={"resource": key, "expected": number},
            )
            return False

    for level in (RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL):
        sample = RiskAssessment(level=level, resources=_resources_for(level, []))
        text = generate_crisis_response(sample)
        if not text or "988" not in text or "741741" not in text:
            logger.error("Crisis template missing hotline numbers", data={"level": level.value})
            return False

    return True
