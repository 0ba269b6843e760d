"""
Fact fingerprinting.

A fingerprint names the single-valued personal slot a statement fills
(``user_phone_number``, ``user_employer``...). Two current facts for the same
owner never share a fingerprint; a newer statement for the slot supersedes the
older one. Multi-valued slots carry a qualifier (``user_pet:dog``) so that a
second pet or a second allergy is stored beside the first instead of replacing it.
"""
import re
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable, Optional

from mnemos.config import settings
from mnemos.llm import openai_client
from mnemos.logging import logger

_ME = r"i(?:'m|’m|\s+am)"  # "I'm" / "I am"

# Slot order matters: the first matching slot wins.
# Inline (?i:...) groups keep captured proper names case-sensitive.
FINGERPRINT_PATTERNS: list[tuple[str, float, list[str]]] = [
    ("user_phone_number", 0.95, [
        r"(?i:\b(?:my|our)\s+(?:phone|cell|mobile|telephone)(?:\s+(?:number|#))?\s*(?:is|:)\s*)\+?[\d\-().\s]{7,}",
        r"(?i:\b(?:call|reach|text)\s+(?:me|us)\s+(?:at|on)\s+)\+?[\d\-().\s]{7,}",
    ]),
    ("user_email", 0.95, [
        r"(?i:\b(?:my|our)\s+(?:email|e-mail)(?:\s+address)?\s*(?:is|:)\s*)[\w.+\-]+@[\w\-]+(?:\.[\w\-]+)+",
        r"(?i:\b(?:email|reach|contact)\s+(?:me|us)\s+at\s+)[\w.+\-]+@[\w\-]+(?:\.[\w\-]+)+",
    ]),
    ("user_name", 0.9, [
        r"(?i:\bmy\s+name\s+is\s+|\bcall\s+me\s+|\bi\s+go\s+by\s+)[A-Z][^\W\d_]+",
    ]),
    ("user_location_residence", 0.9, [
        r"(?i:\bi\s+(?:now\s+)?(?:live|reside)\s+(?:in|at)\s+)\S+",
        r"(?i:\b(?:my|our)\s+(?:home|address|residence)\s+is\s+)\S+",
        r"(?i:\b" + _ME + r"\s+based\s+in\s+)\S+",
        r"(?i:\b(?:i|we)\s+(?:just\s+)?moved\s+to\s+)\S+",
    ]),
    ("user_employer", 0.9, [
        r"(?i:\bi\s+(?:now\s+|currently\s+)?work\s+(?:at|for)\s+)\S+",
        r"(?i:\b(?:my|our)\s+(?:company|employer)\s+is\s+)\S+",
        r"(?i:\b" + _ME + r"\s+employed\s+(?:at|by)\s+)\S+",
    ]),
    ("user_job_title", 0.9, [
        r"(?i:\bi\s+(?:now\s+|currently\s+)?work\s+as\s+)\S+",
        r"(?i:\bmy\s+(?:job|occupation|profession|role|title|position)\s+is\s+)\S+",
        r"(?i:\b" + _ME + r"\s+an?\s+(?:software\s+)?(?:developer|engineer|manager|designer|analyst|consultant"
        r"|director|founder|doctor|lawyer|teacher|nurse|accountant|architect|pharmacist)\b)",
    ]),
    ("user_salary", 0.9, [
        r"(?i:\bmy\s+(?:salary|income|pay)\s+is\s+(?:now\s+)?)\$?\d[\d,.]*",
        r"(?i:\bi\s+(?:now\s+)?(?:make|earn)\s+)\$?\d[\d,.]*(?i:\s*k)?(?i:\s+(?:a|per)\s+year|\s+annually)",
    ]),
    ("user_age", 0.9, [
        r"(?i:\b" + _ME + r"\s+)\d{1,3}(?i:\s+years?\s+old)\b",
        r"(?i:\bmy\s+age\s+is\s+)\d{1,3}\b",
    ]),
    ("user_birthday", 0.9, [
        r"(?i:\bmy\s+birthday\s+is\s+(?:on\s+)?)\S+",
        r"(?i:\bi\s+was\s+born\s+on\s+)\S+",
    ]),
    ("user_spouse_name", 0.9, [
        r"(?i:\bmy\s+(?:wife|husband|spouse|partner)(?:(?:'s|’s)\s+name)?\s+is\s+(?:named\s+)?)[A-Z][^\W\d_]+",
        r"(?i:\b" + _ME + r"\s+married\s+to\s+)[A-Z][^\W\d_]+",
    ]),
    ("user_marital_status", 0.9, [
        r"(?i:\b" + _ME + r"\s+(?:now\s+)?(?:married|single|divorced|widowed|engaged|separated)\b)",
        r"(?i:\b(?:i|we)\s+got\s+(?:married|divorced|engaged)\b)",
    ]),
    ("user_children_count", 0.9, [
        r"(?i:\b(?:i|we)\s+have\s+(?:\d+|no|one|two|three|four|five|six)\s+(?:kids?|child(?:ren)?|sons?|daughters?)\b)",
    ]),
    ("user_pet", 0.9, [
        r"(?i:\b(?:i|we)\s+(?:have|got|adopted)\s+an?\s+(?P<q>dog|cat|bird|parrot|fish|hamster|rabbit|turtle|horse|snake)\b)",
        r"(?i:\b(?:my|our)\s+(?P<q>dog|cat|bird|parrot|fish|hamster|rabbit|turtle|horse|snake)"
        r"(?:(?:'s|’s)\s+name\s+is|\s+is\s+(?:named|called))\s+)[A-Z]",
    ]),
    ("user_favorite_color", 0.9, [
        r"(?i:\bmy\s+fav(?:ou?rite)?\s+colou?r\s+is\s+)\w+",
    ]),
    ("user_timezone", 0.9, [
        r"(?i:\bmy\s+time\s*zone\s+is\s+)\S+",
        r"(?i:\b" + _ME + r"\s+(?:in|on)\s+)(?:EST|EDT|PST|PDT|CST|CDT|MST|MDT|UTC|GMT|CET)\b",
    ]),
    ("user_allergy", 0.95, [
        r"(?i:\b" + _ME + r"\s+(?:severely\s+|very\s+|highly\s+|deathly\s+)?allergic\s+to\s+(?P<q>[^\W\d_]+))",
        r"(?i:\b(?:i\s+have\s+an?|my)\s+(?:severe\s+)?(?P<q>[^\W\d_]+)\s+allergy\b)",
    ]),
    ("user_medical_condition", 0.9, [
        r"(?i:\bi\s+(?:have|was\s+diagnosed\s+with|suffer\s+from|live\s+with)\s+(?:type\s+[12]\s+)?"
        r"(?P<q>diabetes|asthma|hypertension|epilepsy|celiac|arthritis|migraines?|crohn'?s|lupus|copd|adhd))",
    ]),
]

_COMPILED = [
    (slot, confidence, [re.compile(p) for p in patterns])
    for slot, confidence, patterns in FINGERPRINT_PATTERNS
]

MULTI_VALUED_SLOTS = {"user_pet", "user_allergy", "user_medical_condition"}

# Slots the model classifier may answer with. Multi-valued slots need a
# qualifier the model does not give, so they stay deterministic-only.
MODEL_SLOTS = [
    slot for slot, _, _ in FINGERPRINT_PATTERNS if slot not in MULTI_VALUED_SLOTS
] + ["user_preferred_language", "user_dietary_preference"]

MODEL_CONFIDENCE = 0.75

CLASSIFIER_PROMPT = (
    "You identify if a statement contains a superseding personal fact about the user.\n\n"
    "If it does, return ONLY one of these canonical fingerprints:\n"
    + "\n".join(f"- {slot}" for slot in MODEL_SLOTS)
    + "\n\nIf it's NOT a superseding personal fact (opinions, questions, general conversation, "
    "requests), return exactly: null\n\nReturn ONLY the fingerprint or \"null\", nothing else."
)

_pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="mnemos-fingerprint")


@dataclass
class FingerprintResult:
    fingerprint: Optional[str]
    confidence: float
    method: str  # deterministic | model | none | timeout | error


def _qualifier(value: str) -> str:
    q = re.sub(r"\s+", "_", value.strip().lower()).replace("’", "'")
    # Plural and singular name the same slot ("peanuts" / "peanut")
    if len(q) > 3 and q.endswith("s") and not q.endswith("ss"):
        q = q[:-1]
    return q


def detect_deterministic(text: str) -> FingerprintResult:
    if not text:
        return FingerprintResult(None, 0.0, "none")
    for slot, confidence, patterns in _COMPILED:
        for pattern in patterns:
            match = pattern.search(text)
            if not match:
                continue
            fingerprint = slot
            if slot in MULTI_VALUED_SLOTS:
                fingerprint = f"{slot}:{_qualifier(match.group('q'))}"
            logger.debug(f"Deterministic fingerprint match: {fingerprint} ({confidence})")
            return FingerprintResult(fingerprint, confidence, "deterministic")
    return FingerprintResult(None, 0.0, "none")


def classify_with_model(text: str, timeout: float) -> Optional[str]:
    """Ask the chat model for a slot key; returns the raw answer."""
    return openai_client.get_chat_completion(
        text, system_prompt=CLASSIFIER_PROMPT, timeout=timeout
    )


class FingerprintGenerator:
    """
    Deterministic rules first, model classification as a time-capped fallback.
    Pure with respect to storage.
    """

    def __init__(
        self,
        classifier: Optional[Callable[[str, float], Optional[str]]] = None,
        use_model: Optional[bool] = None,
        timeout: Optional[float] = None,
    ):
        if use_model is None:
            use_model = settings.FINGERPRINT_USE_MODEL and (
                classifier is not None or openai_client.is_configured()
            )
        self.use_model = use_model
        self.classifier = classifier or classify_with_model
        self.timeout = timeout if timeout is not None else settings.FINGERPRINT_TIMEOUT_SECONDS

    def generate(self, text: str) -> FingerprintResult:
        result = detect_deterministic(text)
        if result.fingerprint or not self.use_model or not text or not text.strip():
            return result
        return self._generate_with_model(text)

    def _generate_with_model(self, text: str) -> FingerprintResult:
        future = _pool.submit(self.classifier, text, self.timeout)
        try:
            answer = future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            logger.warning(f"Fingerprint classification timed out after {self.timeout}s")
            return FingerprintResult(None, 0.0, "timeout")
        except Exception as e:
            logger.warning(f"Fingerprint classification failed: {e}")
            return FingerprintResult(None, 0.0, "error")

        answer = (answer or "").strip().strip('"').strip()
        if not answer or answer.lower() == "null":
            return FingerprintResult(None, 0.0, "model")
        if answer not in MODEL_SLOTS:
            logger.info(f"Classifier returned unknown fingerprint: {answer}")
            return FingerprintResult(None, 0.0, "model")
        return FingerprintResult(answer, MODEL_CONFIDENCE, "model")
