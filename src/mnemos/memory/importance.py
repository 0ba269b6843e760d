import re
from dataclasses import dataclass

HEALTH_CRITICAL = re.compile(
    r"\b(?:allerg\w*|anaphyla\w*|epipen|diabet\w*|insulin|seizures?|epilep\w*|heart (?:condition|attack|disease)"
    r"|blood thinners?|pacemaker|medications?|prescri\w*|cancer|asthma|pregnan\w*|chemo\w*)\b",
    re.IGNORECASE,
)
LIFE_IMPACTING = re.compile(
    r"\b(?:divorc\w*|married|wedding|engaged|baby|newborn|died|passed away|funeral|diagnos\w*"
    r"|laid off|fired|new job|promot\w*|moved|bought a (?:house|home)|mortgage|graduat\w*|retir\w*)\b",
    re.IGNORECASE,
)
URGENT = re.compile(
    r"\b(?:urgent\w*|asap|deadline|emergency|immediately|by tomorrow|due (?:today|tomorrow))\b",
    re.IGNORECASE,
)
PRIORITY = re.compile(
    r"\b(?:goals?|plan(?:s|ning)?|working on|trying to|focus(?:ed|ing)? on|priorit(?:y|ies))\b",
    re.IGNORECASE,
)
USER_PRIORITY = re.compile(
    r"\b(?:(?:very|really|super|extremely) important|this is important|crucial|critical"
    r"|high priority|top priority|matters (?:a lot|to me))\b",
    re.IGNORECASE,
)
EXPLICIT_RECALL = re.compile(
    r"(?<!you )(?<!do you )\b(?:please remember|remember (?:this|that)|don'?t forget|do not forget"
    r"|never forget|keep in mind|make a note|note that|for future reference|save this)\b",
    re.IGNORECASE,
)

HEALTH_CATEGORY = "health_wellness"


@dataclass
class ImportanceResult:
    score: float
    explicit_recall: bool = False
    user_priority: bool = False


def is_explicit_recall(text: str) -> bool:
    return bool(EXPLICIT_RECALL.search(text))


def score_importance(text: str, category: str | None = None) -> ImportanceResult:
    """
    Deterministic importance in [0, 1].
    Archetypes: health-critical 0.95, life-impacting 0.85, urgent 0.80,
    priority 0.70, default 0.50. Floors: health category 0.75, user priority
    language 0.85, explicit "remember this" 0.90.
    """
    score = 0.50
    for pattern, value in (
        (HEALTH_CRITICAL, 0.95),
        (LIFE_IMPACTING, 0.85),
        (URGENT, 0.80),
        (PRIORITY, 0.70),
    ):
        if pattern.search(text):
            score = value
            break

    if category == HEALTH_CATEGORY:
        score = max(score, 0.75)

    user_priority = bool(USER_PRIORITY.search(text))
    if user_priority:
        score = max(score, 0.85)

    explicit = is_explicit_recall(text)
    if explicit:
        score = max(score, 0.90)

    return ImportanceResult(score=min(score, 1.0), explicit_recall=explicit, user_priority=user_priority)
