"""
Anchor extraction.

Anchors are the literal details a paraphrasing model tends to lose: proper
names (with their exact spelling), dates and durations, amounts, ordinals and
identifier codes. They are extracted once per utterance at write time and
stored as JSON on the memory row.
"""
import re
import unicodedata
from typing import Any

# Word tokens: letters with internal apostrophes or hyphens ("O'Shaughnessy", "García-López")
NAME_TOKEN = re.compile(r"[^\W\d_]+(?:['’\-][^\W\d_]+)*")
CJK_RUN = re.compile(r"[㐀-䶿一-鿿぀-ヿ가-힯]{2,4}")

IDENTIFIER_PATTERN = re.compile(
    r"\b[A-Z]{2,}(?:-[A-Z0-9]+)*-\d+(?:-[A-Z0-9]+)*\b"
    r"|\b(?=[A-Z0-9]*[A-Z])(?=[A-Z0-9]*\d)[A-Z0-9]{8,}\b"
)

# Text before a token that sits at the start of a sentence, line or bullet
SENTENCE_LEAD = re.compile(r"(?:^|[.!?]\s+|\n)[\s\-*•\"'“(]*$")

TITLES = {"dr", "mr", "mrs", "ms", "mx", "prof", "sir", "madam", "st", "rev", "capt", "sgt"}

MONTHS = [
    "january", "february", "march", "april", "may", "june", "july",
    "august", "september", "october", "november", "december",
]
WEEKDAYS = {"monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"}

# Capitalized only because they start a sentence or are the pronoun "I"
NON_NAME_WORDS = {
    "i", "i'm", "i’m", "i've", "i’ve", "i'd", "i’d", "i'll", "i’ll", "a", "an", "the",
    "my", "our", "your", "his", "her", "their", "its", "we", "he", "she", "they", "it",
    "you", "me", "us", "this", "that", "these", "those", "there", "here",
    "what", "who", "whom", "whose", "when", "where", "why", "how", "which",
    "and", "but", "or", "so", "also", "then", "yes", "no", "not", "ok", "okay",
    "hi", "hello", "hey", "please", "thanks", "thank", "sure", "well", "oh",
    "in", "on", "at", "for", "with", "from", "to", "of", "by", "about", "after",
    "before", "since", "until", "during", "because", "if", "as", "while",
    "do", "does", "did", "is", "are", "was", "were", "be", "been", "am", "can",
    "could", "would", "should", "will", "shall", "may", "might", "must", "have", "has", "had",
    "remember", "tell", "list", "show", "name", "give", "let", "just", "met",
    "today", "yesterday", "tomorrow", "last", "next", "every", "all", "some", "both",
    "each", "one", "two", "three", "first", "second", "third", "ago", "now",
}

WORD_NUMBERS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6, "seven": 7,
    "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12, "fifteen": 15,
    "twenty": 20, "thirty": 30, "a": 1, "an": 1,
}

ORDINAL_WORDS = {
    "first": 1, "second": 2, "third": 3, "fourth": 4, "fifth": 5,
    "sixth": 6, "seventh": 7, "eighth": 8, "ninth": 9, "tenth": 10,
    "1st": 1, "2nd": 2, "3rd": 3, "4th": 4, "5th": 5,
    "6th": 6, "7th": 7, "8th": 8, "9th": 9, "10th": 10,
}

DURATION = re.compile(
    r"\b(\d+(?:\.\d+)?|" + "|".join(WORD_NUMBERS) + r")\s+(years?|months?|weeks?|days?|decades?)\b",
    re.IGNORECASE,
)
YEAR = re.compile(r"(?<![\d$€£.,/-])\b(19\d{2}|20\d{2})\b(?![\d%]|,\d|-\d)")
DATE = re.compile(
    r"\b(?:" + "|".join(MONTHS + [m[:3] for m in MONTHS if m != "may"] + ["sept"]) + r")\b\.?"
    r"\s+\d{1,2}(?:st|nd|rd|th)?(?:,?\s+\d{4})?\b"
    r"|\b\d{1,2}/\d{1,2}/\d{2,4}\b"
    r"|\b\d{4}-\d{2}-\d{2}\b",
    re.IGNORECASE,
)
CURRENCY = re.compile(
    r"[$€£¥]\s?\d[\d,]*(?:\.\d+)?(?:\s?(?:k|K|m|M|million|billion|thousand)\b)?"
    r"|\b\d[\d,]*(?:\.\d+)?\s?(?:dollars|euros|pounds|USD|EUR|GBP)\b"
)
PERCENT = re.compile(r"\b\d+(?:\.\d+)?\s?(?:%|percent\b)")
NUMBER = re.compile(r"\b\d[\d,]*(?:\.\d+)?\b")
ORDINAL = re.compile(
    r"\b(?:(?:my|the|our|his|her|their)\s+)?(" + "|".join(ORDINAL_WORDS) + r")\s+([^\W\d_]+)",
    re.IGNORECASE,
)

START_CUES = re.compile(
    r"\b(?:start(?:ed|ing)?|began|begin|join(?:ed)?|found(?:ed)?|launch(?:ed)?|open(?:ed)?"
    r"|hired|since|from|moved|got married|married|met|born|created|established)\b",
    re.IGNORECASE,
)
END_CUES = re.compile(
    r"\b(?:end(?:ed)?|left|quit|until|till|retired|finish(?:ed)?|closed|sold|stopped|graduated|divorced)\b",
    re.IGNORECASE,
)


def fold(text: str) -> str:
    """Lowercase and strip diacritics (NFD) for accent-insensitive comparison."""
    decomposed = unicodedata.normalize("NFD", text)
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return stripped.replace("’", "'").lower()


def ascii_fold(text: str) -> str:
    """Strip diacritics but keep case: "José" -> "Jose"."""
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def is_non_ascii(text: str) -> bool:
    return any(ord(c) > 127 for c in text)


def empty_anchors() -> dict[str, Any]:
    return {
        "names": [],
        "unicode_names": [],
        "temporal": [],
        "numeric": [],
        "ordinals": [],
        "identifiers": [],
    }


def _is_name_token(token: str) -> bool:
    if not token[0].isupper():
        return False
    lowered = token.lower()
    if lowered in NON_NAME_WORDS or lowered in TITLES:
        return False
    if lowered in WEEKDAYS or lowered in MONTHS:
        return False
    # All-caps words are codes or acronyms, not names
    if len(token) > 1 and token.isupper():
        return False
    return True


def capitalized_mid_sentence(name: str, text: str) -> bool:
    """True when `name` occurs in `text` somewhere other than the start of a sentence or line."""
    for match in re.finditer(r"(?<!\w)" + re.escape(name) + r"(?!\w)", text):
        if not SENTENCE_LEAD.search(text[:match.start()]):
            return True
    return False


def is_weak_name(name: str, text: str) -> bool:
    """
    A lone capitalized word seen only where every word is capitalized
    ("Work is stressful") may be an ordinary word rather than a name.
    """
    if " " in name or not name[:1].isupper():
        return False
    return not capitalized_mid_sentence(name, text)


def _strip_possessive(token: str) -> tuple[str, bool]:
    for suffix in ("'s", "’s"):
        if token.endswith(suffix) and len(token) > len(suffix) + 1:
            return token[: -len(suffix)], True
    return token, False


def extract_names(text: str) -> list[str]:
    """
    Group runs of capitalized tokens separated only by spaces into names.
    "Björn O'Shaughnessy, José García-López and Zhang Wei" yields three names.
    """
    names: list[str] = []
    current: list[str] = []
    last_end = None

    def flush():
        if current:
            name = " ".join(current)
            if len(name) > 1 and name not in names:
                names.append(name)
            current.clear()

    for match in NAME_TOKEN.finditer(text):
        token, possessive = _strip_possessive(match.group())
        gap = text[last_end:match.start()] if last_end is not None else ""
        if current and (gap.strip(" ") or not gap):
            flush()
        if _is_name_token(token):
            current.append(token)
            if possessive:
                flush()
        else:
            flush()
        last_end = match.end()
    flush()

    for run in CJK_RUN.findall(text):
        if run not in names:
            names.append(run)
    return names


def _year_role(text: str, start: int) -> str:
    sentence_start = max(text.rfind(".", 0, start), text.rfind("\n", 0, start)) + 1
    window = text[max(sentence_start, start - 48):start]
    if END_CUES.search(window):
        return "end"
    if START_CUES.search(window):
        return "start"
    return "point"


def _to_number(raw: str) -> float:
    value = float(raw.replace(",", ""))
    return int(value) if value.is_integer() else value


def _overlaps(span: tuple[int, int], taken: list[tuple[int, int]]) -> bool:
    return any(span[0] < end and start < span[1] for start, end in taken)


def extract_temporal(text: str) -> tuple[list[dict[str, Any]], list[tuple[int, int]]]:
    temporal: list[dict[str, Any]] = []
    taken: list[tuple[int, int]] = []

    for match in DATE.finditer(text):
        temporal.append({"kind": "date", "value": match.group(), "text": match.group(), "role": _year_role(text, match.start())})
        taken.append(match.span())

    for match in DURATION.finditer(text):
        raw, unit = match.group(1).lower(), match.group(2).lower()
        value = WORD_NUMBERS[raw] if raw in WORD_NUMBERS else _to_number(raw)
        unit = unit if unit.endswith("s") else unit + "s"
        temporal.append({"kind": "duration", "value": value, "unit": unit, "text": match.group(), "role": "span"})
        taken.append(match.span())

    for match in YEAR.finditer(text):
        if _overlaps(match.span(), taken):
            continue
        temporal.append({"kind": "year", "value": int(match.group(1)), "text": match.group(), "role": _year_role(text, match.start())})
        taken.append(match.span())

    return temporal, taken


def extract_numeric(text: str, taken: list[tuple[int, int]]) -> list[dict[str, Any]]:
    numeric: list[dict[str, Any]] = []
    taken = list(taken)
    for kind, pattern in (("currency", CURRENCY), ("percent", PERCENT)):
        for match in pattern.finditer(text):
            if _overlaps(match.span(), taken):
                continue
            digits = re.search(r"\d[\d,]*(?:\.\d+)?", match.group())
            numeric.append({"kind": kind, "value": _to_number(digits.group()), "text": match.group().strip()})
            taken.append(match.span())
    for match in IDENTIFIER_PATTERN.finditer(text):
        taken.append(match.span())
    for match in NUMBER.finditer(text):
        if _overlaps(match.span(), taken) or len(re.sub(r"\D", "", match.group())) < 2:
            continue
        numeric.append({"kind": "number", "value": _to_number(match.group()), "text": match.group()})
    return numeric


def extract_ordinals(text: str) -> list[dict[str, Any]]:
    ordinals = []
    for match in ORDINAL.finditer(text):
        subject = match.group(2).lower()
        if subject in NON_NAME_WORDS:
            continue
        ordinals.append({
            "ordinal": ORDINAL_WORDS[match.group(1).lower()],
            "subject": subject,
            "text": match.group(),
        })
    return ordinals


def extract_anchors(text: str) -> dict[str, Any]:
    if not text:
        return empty_anchors()
    names = extract_names(text)
    temporal, taken = extract_temporal(text)
    identifiers = []
    for match in IDENTIFIER_PATTERN.finditer(text):
        if match.group() not in identifiers:
            identifiers.append(match.group())
    return {
        "names": names,
        "unicode_names": [n for n in names if is_non_ascii(n)],
        "temporal": temporal,
        "numeric": extract_numeric(text, taken),
        "ordinals": extract_ordinals(text),
        "identifiers": identifiers,
    }
