"""
Fact compression: turn an utterance into at most a handful of short, factual lines.

Model extraction is optional. Deterministic post-processing always runs and is
what guarantees the output shape: one fact per line, no bullets, terminal
punctuation, no duplicates and no lost identifier codes.
"""
import re
from dataclasses import dataclass, field
from typing import Optional

from mnemos.config import settings
from mnemos.llm import openai_client
from mnemos.logging import logger
from mnemos.memory.anchors import IDENTIFIER_PATTERN

BOILERPLATE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in [
        r"\bI (?:don'?t|do not|cannot|can'?t) (?:retain|keep|store|have|access) (?:any )?(?:memor(?:y|ies)|personal (?:data|information))[^.!?\n]*[.!?]?",
        r"\bI(?:'m| am) (?:just |only )?an AI(?: language model| assistant| model)?[^.!?\n]*[.!?]?",
        r"\bAs an AI(?: language model| assistant)?,?[^.!?\n]*[.!?]?",
        r"\bI (?:cannot|can'?t|am unable to|am not able to) (?:remember|recall)[^.!?\n]*[.!?]?",
        r"\bEach (?:conversation|session) starts fresh[^.!?\n]*[.!?]?",
        r"\b(?:Is there anything else|How (?:else )?can I help|Let me know if)[^.!?\n]*[.!?]?",
    ]
]

BULLET = re.compile(r"^\s*(?:[-*•·>]+|\d+[.)])\s+")
SENTENCE_END = re.compile(r"[.!?]+[\"”')\]]*\s+")
ABBREVIATIONS = {"dr", "mr", "mrs", "ms", "mx", "st", "prof", "jr", "sr", "vs", "etc", "inc", "co", "no", "e.g", "i.e"}
WORD = re.compile(r"[^\W_]", re.UNICODE)

EXTRACTION_PROMPT = """Extract the durable facts the user stated about themselves or their life.
Return at most {max_lines} lines, one fact per line, each a short complete sentence.
Keep names, dates, numbers and codes exactly as written. No bullets, no commentary.
If there is nothing worth remembering, return an empty response."""


@dataclass
class CompressionResult:
    lines: list[str] = field(default_factory=list)
    method: str = "deterministic"  # deterministic | model

    @property
    def content(self) -> str:
        return "\n".join(self.lines)


def sanitize(text: str) -> str:
    """Strip assistant boilerplate and normalize whitespace per line."""
    if not text:
        return ""
    cleaned = text
    for pattern in BOILERPLATE_PATTERNS:
        cleaned = pattern.sub(" ", cleaned)
    lines = [re.sub(r"[ \t]+", " ", line).strip() for line in cleaned.splitlines()]
    return "\n".join(line for line in lines if line)


def is_meaningful(text: str) -> bool:
    return len(WORD.findall(text)) >= 2


def split_sentences(line: str) -> list[str]:
    """Split on sentence punctuation, but not after titles like "Dr." or "St."."""
    sentences = []
    start = 0
    for match in SENTENCE_END.finditer(line):
        preceding = line[start:match.start()].split()
        last_word = preceding[-1].lower().rstrip(".") if preceding else ""
        if match.group().startswith(".") and last_word in ABBREVIATIONS:
            continue
        sentences.append(line[start:match.end()].strip())
        start = match.end()
    tail = line[start:].strip()
    if tail:
        sentences.append(tail)
    return [s for s in sentences if s]


def _dedupe_key(line: str) -> str:
    return re.sub(r"[\s.!?]+$", "", line).lower()


def post_process(raw: str, source: Optional[str] = None) -> list[str]:
    max_lines = settings.MAX_FACT_LINES
    min_words = settings.MIN_FACT_WORDS
    max_words = settings.MAX_FACT_WORDS

    lines: list[str] = []
    seen = set()
    for raw_line in raw.splitlines():
        raw_line = BULLET.sub("", raw_line).strip()
        if not raw_line:
            continue
        for sentence in split_sentences(raw_line):
            words = sentence.split()
            if len(words) < min_words and not IDENTIFIER_PATTERN.search(sentence):
                continue
            if len(words) > max_words:
                sentence = " ".join(words[:max_words])
            if sentence[-1] not in ".!?":
                sentence += "."
            key = _dedupe_key(sentence)
            if key in seen:
                continue
            seen.add(key)
            lines.append(sentence)

    lines = lines[:max_lines]

    # Identifier codes from the source must survive compression verbatim
    if source:
        joined = "\n".join(lines)
        for code in dict.fromkeys(IDENTIFIER_PATTERN.findall(source)):
            if code in joined:
                continue
            carrier = next((s for s in split_sentences(source.replace("\n", " ")) if code in s), code)
            carrier = " ".join(carrier.split()[:max_words])
            if carrier[-1] not in ".!?":
                carrier += "."
            if len(lines) >= max_lines:
                lines[-1] = carrier
            else:
                lines.append(carrier)
            joined = "\n".join(lines)
    return lines


def extract_with_model(text: str, response_context: Optional[str] = None) -> str:
    prompt = f"User said:\n{text}"
    if response_context:
        prompt += f"\n\nAssistant replied (context only, do not extract from it):\n{response_context[:1000]}"
    return openai_client.get_chat_completion(
        prompt,
        system_prompt=EXTRACTION_PROMPT.format(max_lines=settings.MAX_FACT_LINES),
        timeout=settings.COMPRESSION_TIMEOUT_SECONDS,
    )


def compress(text: str, response_context: Optional[str] = None, use_model: Optional[bool] = None) -> CompressionResult:
    if use_model is None:
        use_model = settings.COMPRESSION_USE_MODEL and openai_client.is_configured()

    if use_model:
        try:
            extracted = extract_with_model(text, response_context)
            lines = post_process(extracted, source=text)
            if lines:
                return CompressionResult(lines=lines, method="model")
            logger.info("Model extraction returned no facts; using deterministic compression")
        except Exception as e:
            logger.warning(f"Model extraction failed, using deterministic compression: {e}")

    return CompressionResult(lines=post_process(text, source=text), method="deterministic")
