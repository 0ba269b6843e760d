"""
Context budgeting.

Merges the memory, document, vault and external-fact sections under per-source
ceilings and a global ceiling. Over budget, the lowest-priority source is cut
first, and only at a line or sentence boundary, so no fact is ever split.
"""
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from mnemos.config import settings
from mnemos.context.tokens import TokenCounter, get_token_counter
from mnemos.exceptions import BudgetExceededError, ConfigurationError
from mnemos.logging import logger

SOURCES = ("memory", "document", "vault", "external")
TRUNCATION_MARKER = "[... truncated ...]"

BOUNDARY = re.compile(r"\n|[.!?][\"”')\]]*[ \t]+")


@dataclass
class ContextSection:
    source: str
    text: str
    tokens: int
    original_tokens: int
    truncated: bool = False


@dataclass
class ContextBundle:
    sections: dict[str, ContextSection]
    precedence: List[str]
    total_tokens: int
    memory_candidates: List[Any] = field(default_factory=list)

    def section(self, source: str) -> ContextSection:
        return self.sections[source]

    @property
    def text(self) -> str:
        """Non-empty sections in precedence order, separated by blank lines."""
        return "\n\n".join(self.sections[s].text for s in self.precedence if self.sections[s].text)

    @property
    def truncated_sources(self) -> List[str]:
        return [s for s in self.precedence if self.sections[s].truncated]


def default_ceilings() -> dict[str, int]:
    return {
        "memory": settings.BUDGET_MEMORY_TOKENS,
        "document": settings.BUDGET_DOCUMENT_TOKENS,
        "vault": settings.BUDGET_VAULT_TOKENS,
        "external": settings.BUDGET_EXTERNAL_TOKENS,
    }


def parse_precedence(value: str | Sequence[str]) -> List[str]:
    names = [s.strip() for s in value.split(",")] if isinstance(value, str) else [s.strip() for s in value]
    names = [n for n in names if n]
    if sorted(names) != sorted(SOURCES):
        raise ConfigurationError(
            f"Context precedence must name each of {', '.join(SOURCES)} exactly once, got {names}"
        )
    return names


def boundary_cuts(text: str) -> List[int]:
    """Offsets where text may be cut: after each newline or sentence end."""
    cuts = [m.end() for m in BOUNDARY.finditer(text)]
    return [c for c in cuts if c < len(text)]


def truncate_at_boundary(text: str, limit: int, counter: TokenCounter) -> str:
    """
    Longest boundary-aligned prefix that, with the marker appended, fits `limit`.
    Raises BudgetExceededError when not even the marker fits.
    """
    if counter(TRUNCATION_MARKER) > limit:
        raise BudgetExceededError(f"Truncation marker does not fit in {limit} tokens")

    def render(cut: int) -> str:
        prefix = text[:cut].rstrip()
        return f"{prefix}\n{TRUNCATION_MARKER}" if prefix else TRUNCATION_MARKER

    cuts = boundary_cuts(text)
    lo, hi, best = 0, len(cuts) - 1, None
    while lo <= hi:
        mid = (lo + hi) // 2
        if counter(render(cuts[mid])) <= limit:
            best = mid
            lo = mid + 1
        else:
            hi = mid - 1
    return render(cuts[best]) if best is not None else TRUNCATION_MARKER


class ContextBudgeter:
    def __init__(
        self,
        ceilings: Optional[dict[str, int]] = None,
        total_ceiling: Optional[int] = None,
        precedence: Optional[str | Sequence[str]] = None,
        counter: Optional[TokenCounter] = None,
    ):
        self.ceilings = default_ceilings()
        if ceilings:
            unknown = set(ceilings) - set(SOURCES)
            if unknown:
                raise ConfigurationError(f"Unknown context sources: {sorted(unknown)}")
            self.ceilings.update(ceilings)
        if any(v < 0 for v in self.ceilings.values()):
            raise ConfigurationError("Context ceilings must be non-negative")
        self.total_ceiling = settings.BUDGET_TOTAL_TOKENS if total_ceiling is None else total_ceiling
        self.precedence = parse_precedence(precedence if precedence is not None else settings.CONTEXT_PRECEDENCE)
        self.counter = counter or get_token_counter()

    def _fit(self, section: ContextSection, limit: int) -> ContextSection:
        if section.tokens <= limit:
            return section
        try:
            text = truncate_at_boundary(section.text, limit, self.counter)
        except BudgetExceededError as e:
            logger.info(f"Emptying {section.source} section: {e.message}")
            text = ""
        return ContextSection(
            source=section.source,
            text=text,
            tokens=self.counter(text),
            original_tokens=section.original_tokens,
            truncated=True,
        )

    def assemble(
        self,
        memory: str = "",
        document: str = "",
        vault: str = "",
        external: str = "",
        memory_candidates: Optional[List[Any]] = None,
    ) -> ContextBundle:
        texts = {"memory": memory or "", "document": document or "", "vault": vault or "", "external": external or ""}

        sections = {}
        for source in SOURCES:
            tokens = self.counter(texts[source])
            section = ContextSection(source, texts[source], tokens, tokens)
            sections[source] = self._fit(section, self.ceilings[source])

        total = sum(s.tokens for s in sections.values())
        # Lowest priority is cut first
        for source in reversed(self.precedence):
            if total <= self.total_ceiling:
                break
            section = sections[source]
            allowed = max(0, section.tokens - (total - self.total_ceiling))
            sections[source] = self._fit(section, allowed)
            total = sum(s.tokens for s in sections.values())

        bundle = ContextBundle(
            sections=sections,
            precedence=list(self.precedence),
            total_tokens=total,
            memory_candidates=list(memory_candidates or []),
        )
        if bundle.truncated_sources:
            logger.info(f"Context truncated in {bundle.truncated_sources}; total {total}/{self.total_ceiling} tokens")
        return bundle
