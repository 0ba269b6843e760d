"""
Ranking rules.

Each rule looks at one candidate and the parsed query and either abstains or
returns a score delta with a human-readable explanation. The engine applies
them in declared order and sums the deltas onto the base score.
"""
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional, Protocol

from mnemos.config import settings
from mnemos.memory.anchors import extract_names, extract_ordinals, fold, is_weak_name
from mnemos.memory.importance import HEALTH_CATEGORY
from mnemos.models.base import utc
from mnemos.models.memory import Memory

STOPWORDS = {
    "the", "and", "for", "are", "but", "not", "you", "your", "yours", "all", "any", "can", "had",
    "her", "was", "one", "our", "out", "has", "have", "his", "how", "its", "may", "who", "did",
    "does", "what", "when", "where", "why", "which", "with", "this", "that", "these", "those",
    "from", "they", "them", "their", "there", "then", "than", "been", "being", "were", "will",
    "would", "could", "should", "about", "into", "some", "such", "only", "also", "just", "very",
    "tell", "know", "remember", "recall", "please", "like", "said", "say", "told", "mine",
    "myself", "me", "my", "i'm", "i've", "is", "am", "do", "a", "an", "of", "to", "in", "on",
    "at", "by", "it", "be", "as", "or", "if", "so", "up", "we", "us", "he", "she", "him",
    "list", "show", "give", "name", "names", "every", "many", "much", "ago", "now", "get", "got",
}

TERM = re.compile(r"[^\W_]+(?:['’][^\W_]+)*")

SAFETY_DOMAINS = {
    "food": re.compile(
        r"\b(?:food|foods|eat|eating|ate|dinner|lunch|breakfast|brunch|restaurant|restaurants|recipe|recipes"
        r"|cook|cooking|meal|meals|snack|snacks|dish|menu|cuisine|bake|baking|dessert)\b",
        re.IGNORECASE,
    ),
    "activity": re.compile(
        r"\b(?:exercise|exercising|workout|work out|gym|hike|hiking|run|running|jog|jogging|swim|swimming"
        r"|bike|cycling|yoga|training|marathon|sports?)\b",
        re.IGNORECASE,
    ),
    "pets": re.compile(r"\b(?:pets?|dogs?|cats?|puppy|kitten|adopt(?:ing)?)\b", re.IGNORECASE),
}

SAFETY_CONTENT = re.compile(
    r"\b(?:allerg\w*|anaphyla\w*|epipen|asthma|diabet\w*|insulin|heart condition|medical|medications?|celiac)\b",
    re.IGNORECASE,
)
SAFETY_FINGERPRINT_PREFIXES = ("user_allergy", "user_medical")


def _normalize_term(term: str) -> str:
    term = term.lower().replace("’", "'")
    if term.endswith("'s"):
        term = term[:-2]
    if len(term) > 3 and term.endswith("s") and not term.endswith("ss"):
        term = term[:-1]
    return term


def salient_terms(text: str) -> set[str]:
    """Lowercased content words of three or more characters, singularized."""
    terms = set()
    for raw in TERM.findall(fold(text)):
        term = _normalize_term(raw)
        if len(term) >= 3 and term not in STOPWORDS and not term.isdigit():
            terms.add(term)
    return terms


def safety_domains(text: str) -> set[str]:
    return {name for name, pattern in SAFETY_DOMAINS.items() if pattern.search(text)}


def is_safety_relevant(category_name: str, fingerprint: Optional[str], content: str) -> bool:
    if category_name == HEALTH_CATEGORY:
        return True
    if fingerprint and fingerprint.startswith(SAFETY_FINGERPRINT_PREFIXES):
        return True
    return bool(SAFETY_CONTENT.search(content))


@dataclass
class RuleOutcome:
    name: str
    delta: float
    explanation: str


@dataclass
class QueryContext:
    text: str
    folded: str
    terms: set[str]
    names: List[str]
    ordinals: List[dict[str, Any]]
    safety_domains: set[str]

    @classmethod
    def build(cls, text: str) -> "QueryContext":
        return cls(
            text=text,
            folded=fold(text),
            terms=salient_terms(text),
            names=extract_names(text),
            ordinals=extract_ordinals(text),
            safety_domains=safety_domains(text),
        )


@dataclass
class RetrievalCandidate:
    memory_id: int
    content: str
    category_name: str
    created_at: datetime
    importance: float
    token_count: int
    fingerprint: Optional[str]
    explicit_recall: bool
    anchors: dict[str, Any]
    terms: set[str] = field(default_factory=set)
    base_score: float = 0.0
    base_method: str = "keyword"
    hybrid_score: float = 0.0
    rules: List[RuleOutcome] = field(default_factory=list)
    pinned: bool = False

    @classmethod
    def from_memory(cls, memory: Memory, anchors: dict[str, Any]) -> "RetrievalCandidate":
        return cls(
            memory_id=memory.id,
            content=memory.content,
            category_name=memory.category_name,
            created_at=utc(memory.created_at),
            importance=memory.importance,
            token_count=memory.token_count,
            fingerprint=memory.fingerprint,
            explicit_recall=memory.explicit_recall,
            anchors=anchors,
            terms=salient_terms(memory.content),
        )

    @property
    def safety_relevant(self) -> bool:
        return is_safety_relevant(self.category_name, self.fingerprint, self.content)

    @property
    def explanation(self) -> str:
        parts = [f"{self.base_method}={self.base_score:.3f}"]
        parts += [f"{r.name}{r.delta:+.2f} ({r.explanation})" for r in self.rules]
        if self.pinned:
            parts.append("pinned")
        return "; ".join(parts) + f" => {self.hybrid_score:.3f}"


class RankingRule(Protocol):
    name: str

    def evaluate(self, candidate: RetrievalCandidate, query: QueryContext) -> Optional[RuleOutcome]:
        ...


def _phrase_in(phrase: str, text: str) -> bool:
    return re.search(r"(?<!\w)" + re.escape(phrase) + r"(?!\w)", text) is not None


class KeywordRule:
    name = "keyword"

    def __init__(self, boost: Optional[float] = None):
        self.boost = settings.KEYWORD_BOOST if boost is None else boost

    def evaluate(self, candidate: RetrievalCandidate, query: QueryContext) -> Optional[RuleOutcome]:
        shared = query.terms & candidate.terms
        if not shared:
            return None
        return RuleOutcome(self.name, self.boost, "shared terms: " + ", ".join(sorted(shared)))


class EntityRule:
    """A named entity the user asks about outranks anything merely similar."""
    name = "entity"

    def __init__(self, boost: Optional[float] = None):
        self.boost = settings.ENTITY_BOOST if boost is None else boost

    def evaluate(self, candidate: RetrievalCandidate, query: QueryContext) -> Optional[RuleOutcome]:
        query_names = [fold(n) for n in query.names]
        confirmed = {fold(n) for n in query.names if not is_weak_name(n, query.text)}
        for name in candidate.anchors.get("names", []):
            folded = fold(name)
            if len(folded) < 2:
                continue
            if is_weak_name(name, candidate.content):
                # Only counts when the query also capitalizes it mid-sentence
                if folded in confirmed:
                    return RuleOutcome(self.name, self.boost, f"query names {name}")
                continue
            if _phrase_in(folded, query.folded):
                return RuleOutcome(self.name, self.boost, f"query names {name}")
            for query_name in query_names:
                if _phrase_in(query_name, folded):
                    return RuleOutcome(self.name, self.boost, f"{query_name} is part of {name}")
        return None


class OrdinalRule:
    name = "ordinal"

    def __init__(self, match_boost: Optional[float] = None, mismatch_penalty: Optional[float] = None):
        self.match_boost = settings.ORDINAL_MATCH_BOOST if match_boost is None else match_boost
        self.mismatch_penalty = settings.ORDINAL_MISMATCH_PENALTY if mismatch_penalty is None else mismatch_penalty

    def evaluate(self, candidate: RetrievalCandidate, query: QueryContext) -> Optional[RuleOutcome]:
        if not query.ordinals:
            return None
        mismatch = None
        for wanted in query.ordinals:
            subject = _normalize_term(wanted["subject"])
            for have in candidate.anchors.get("ordinals", []):
                if _normalize_term(have["subject"]) != subject:
                    continue
                if have["ordinal"] == wanted["ordinal"]:
                    return RuleOutcome(self.name, self.match_boost, f"{have['text']} matches {wanted['text']}")
                mismatch = RuleOutcome(self.name, -self.mismatch_penalty, f"{have['text']} conflicts with {wanted['text']}")
        return mismatch


class ExplicitRecallRule:
    name = "explicit_recall"

    def __init__(self, boost: Optional[float] = None, min_base: Optional[float] = None):
        self.boost = settings.EXPLICIT_RECALL_BOOST if boost is None else boost
        self.min_base = settings.EXPLICIT_RECALL_MIN_BASE if min_base is None else min_base

    def evaluate(self, candidate: RetrievalCandidate, query: QueryContext) -> Optional[RuleOutcome]:
        if not candidate.explicit_recall:
            return None
        # Only once the memory is on topic
        if candidate.base_score < self.min_base and not (query.terms & candidate.terms):
            return None
        return RuleOutcome(self.name, self.boost, "user asked to remember this")


class SafetyRule:
    name = "safety"

    def __init__(self, boost: Optional[float] = None):
        self.boost = settings.SAFETY_BOOST if boost is None else boost

    def evaluate(self, candidate: RetrievalCandidate, query: QueryContext) -> Optional[RuleOutcome]:
        if not query.safety_domains or not candidate.safety_relevant:
            return None
        return RuleOutcome(self.name, self.boost, "safety-relevant for " + ", ".join(sorted(query.safety_domains)))


def default_rules() -> List[RankingRule]:
    return [KeywordRule(), EntityRule(), OrdinalRule(), ExplicitRecallRule(), SafetyRule()]
