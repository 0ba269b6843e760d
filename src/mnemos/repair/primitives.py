"""
Deterministic repair primitives.

Each primitive checks one failure class of a model draft against the memory
context the model was given, and fixes the draft without another model call.
"""
import re
from dataclasses import asdict, dataclass, field
from typing import Any, List, Optional

from mnemos.context.budget import ContextBundle
from mnemos.exceptions import RepairAmbiguousError
from mnemos.memory.anchors import ascii_fold, extract_anchors, fold
from mnemos.search.retrieval import MEMORY_SECTION_HEADER
from mnemos.search.rules import salient_terms

DURATION_YEARS = {"years": 1, "decades": 10}

TEMPORAL_QUERY = re.compile(
    r"\b(?:when|what year|which year|how long ago|start date|start(?:ed)?|began|begin|timeline)\b",
    re.IGNORECASE,
)
HEDGES = [
    re.compile(p, re.IGNORECASE)
    for p in [
        r"haven'?t (?:mentioned|told me|said)",
        r"not provided",
        r"unclear",
        r"don'?t have (?:specific|that|the exact|enough)",
        r"not sure",
        r"would need to know",
        r"can'?t (?:determine|tell|say)",
        r"cannot (?:determine|tell|say)",
        r"don'?t know",
        r"no (?:record|information)",
    ]
]
LIST_QUERY = re.compile(
    r"\b(?:all|list|who are|what are|every|everyone|tell me my|show me my|name my)\b",
    re.IGNORECASE,
)
ENUMERATION_GAP = re.compile(r"^\s*(?:\([^)]*\)\s*)?(?:,\s*(?:and\s+)?|;\s*(?:and\s+)?|and\s+|&\s*)$")
SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
# Sentence and paragraph boundaries inside a draft answer
DRAFT_BREAK = re.compile(r"(?<=[.!?])[ \t]+|\s*\n\s*")
# Words that name the time frame rather than the subject
TEMPORAL_TERMS = {
    "year", "month", "week", "day", "decade", "start", "started", "starting", "begin", "began",
    "when", "timeline", "date", "long", "time", "for", "left", "since", "until",
}


@dataclass
class RepairRecord:
    primitive: str
    fired: bool
    reason: str
    items_expected: List[Any] = field(default_factory=list)
    items_missing: List[Any] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PrimitiveResult:
    text: str
    record: RepairRecord


@dataclass
class MemoryUnit:
    content: str
    anchors: dict[str, Any]
    terms: set[str]


def memory_units(bundle: ContextBundle) -> List[MemoryUnit]:
    """The memories the model saw, with anchors; re-derived from the section text if needed."""
    units = []
    for candidate in bundle.memory_candidates:
        anchors = candidate.anchors or extract_anchors(candidate.content)
        units.append(MemoryUnit(candidate.content, anchors, salient_terms(candidate.content)))
    if units:
        return units

    section = bundle.sections.get("memory")
    if section is None or not section.text:
        return []
    for line in section.text.splitlines():
        line = line.strip()
        if not line or line == MEMORY_SECTION_HEADER:
            continue
        line = re.sub(r"^[-*•]\s+", "", line)
        units.append(MemoryUnit(line, extract_anchors(line), salient_terms(line)))
    return units


def sentence_spans(text: str) -> List[tuple[int, int]]:
    """(start, end) offsets of each sentence or paragraph line, surrounding whitespace excluded."""
    spans = []
    start = len(text) - len(text.lstrip())
    for match in DRAFT_BREAK.finditer(text):
        if text[start:match.start()].strip():
            spans.append((start, match.start()))
        start = match.end()
    if text[start:].strip():
        spans.append((start, len(text.rstrip())))
    return spans


def contains_phrase(text: str, phrase: str) -> bool:
    """Case- and diacritic-insensitive whole-phrase search."""
    return re.search(r"(?<!\w)" + re.escape(fold(phrase)) + r"(?!\w)", fold(text)) is not None


class TemporalArithmeticPrimitive:
    """
    "I worked there 5 years" + "I left in 2020" answers "when did I start?":
    2020 - 5 = 2015. Fires when the draft does not state that year.
    """
    name = "temporal_arithmetic"

    def _segments(self, units: List[MemoryUnit]) -> List[MemoryUnit]:
        """Sentences and lines of each memory, so a duration and year pair only within one subject."""
        segments = []
        for unit in units:
            parts = [
                re.sub(r"^[-*•]\s+", "", part.strip())
                for line in unit.content.splitlines()
                for part in SENTENCE_SPLIT.split(line)
            ]
            split = [MemoryUnit(p, extract_anchors(p), salient_terms(p) - TEMPORAL_TERMS) for p in parts if p]
            if any(s.anchors["temporal"] for s in split):
                segments.extend(split)
            else:
                # Anchors were taken from the original utterance; keep the memory whole
                segments.append(MemoryUnit(unit.content, unit.anchors, unit.terms - TEMPORAL_TERMS))
        return segments

    def _pairs(self, units: List[MemoryUnit], query: str = "") -> List[tuple[int, int]]:
        segments = self._segments(units)
        durations = []  # (segment index, years)
        years = []  # (segment index, year)
        for i, segment in enumerate(segments):
            for t in segment.anchors.get("temporal", []):
                if t["kind"] == "duration" and t.get("unit") in DURATION_YEARS:
                    value = t["value"] * DURATION_YEARS[t["unit"]]
                    if float(value).is_integer():
                        durations.append((i, int(value)))
                elif t["kind"] == "year" and t.get("role") != "start":
                    years.append((i, int(t["value"])))

        pairs = []
        for di, duration in durations:
            for yi, year in years:
                shared = segments[di].terms if di == yi else segments[di].terms & segments[yi].terms
                if di == yi or shared:
                    pairs.append((year, duration, shared))

        subject = salient_terms(query) - TEMPORAL_TERMS
        if subject:
            pairs = [p for p in pairs if p[2] & subject]
        return [(year, duration) for year, duration, _ in pairs]

    def compute(self, units: List[MemoryUnit], query: str = "") -> Optional[tuple[int, int, int]]:
        """(computed year, anchor year, duration), or None when nothing pairs up."""
        pairs = self._pairs(units, query)
        if not pairs:
            return None
        computed = {year - duration for year, duration in pairs}
        if len(computed) > 1:
            raise RepairAmbiguousError(f"Conflicting start years: {sorted(computed)}")
        target = computed.pop()
        year, duration = next((y, d) for y, d in pairs if y - d == target)
        return target, year, duration

    @staticmethod
    def states_year(draft: str, year: int) -> bool:
        short = str(year)[2:]
        return bool(re.search(rf"\b{year}\b|['’]{short}\b", draft))

    def apply(self, draft: str, bundle: ContextBundle, query: str) -> PrimitiveResult:
        if not TEMPORAL_QUERY.search(query):
            return PrimitiveResult(draft, RepairRecord(self.name, False, "not_temporal_query"))
        units = memory_units(bundle)
        if not units:
            return PrimitiveResult(draft, RepairRecord(self.name, False, "no_memory_context"))

        try:
            computed = self.compute(units, query)
        except RepairAmbiguousError as e:
            return PrimitiveResult(draft, RepairRecord(self.name, False, "ambiguous", items_expected=[e.message]))
        if computed is None:
            return PrimitiveResult(draft, RepairRecord(self.name, False, "no_computable_pair"))

        target, year, duration = computed
        if self.states_year(draft, target):
            return PrimitiveResult(draft, RepairRecord(self.name, False, "already_correct", items_expected=[target]))

        unit_word = "year" if duration == 1 else "years"
        statement = f"Counting back {duration} {unit_word} from {year}, that was in {target}."
        for start, end in sentence_spans(draft):
            if any(h.search(draft[start:end]) for h in HEDGES):
                repaired = draft[:start] + statement + draft[end:]
                break
        else:
            repaired = f"{draft.rstrip()}\n\n{statement}" if draft.strip() else statement

        return PrimitiveResult(
            repaired,
            RepairRecord(self.name, True, "computed_year_missing", items_expected=[target], items_missing=[target]),
        )


class ListCompletenessPrimitive:
    """Every name the memory enumerates must appear when the user asks for the list."""
    name = "list_completeness"

    @staticmethod
    def enumerations(unit: MemoryUnit) -> List[str]:
        """Names written as a comma, semicolon or "and" separated run of two or more."""
        names = unit.anchors.get("names", [])
        found: List[str] = []
        for sentence in SENTENCE_SPLIT.split(unit.content):
            located = []
            for name in names:
                pos = sentence.find(name)
                if pos >= 0:
                    located.append((pos, pos + len(name), name))
            located.sort()
            run = located[:1]
            for prev, cur in zip(located, located[1:]):
                if ENUMERATION_GAP.match(sentence[prev[1]:cur[0]]):
                    run.append(cur)
                    continue
                if len(run) >= 2:
                    found.extend(n for _, _, n in run if n not in found)
                run = [cur]
            if len(run) >= 2:
                found.extend(n for _, _, n in run if n not in found)
        return found

    def expected_items(self, units: List[MemoryUnit], query: str) -> List[str]:
        query_terms = salient_terms(query)
        per_unit = [(unit, self.enumerations(unit)) for unit in units]
        per_unit = [(unit, items) for unit, items in per_unit if items]
        on_topic = [(unit, items) for unit, items in per_unit if unit.terms & query_terms]
        items: List[str] = []
        for _, unit_items in (on_topic or per_unit):
            items.extend(n for n in unit_items if n not in items)
        return items

    def apply(self, draft: str, bundle: ContextBundle, query: str) -> PrimitiveResult:
        if not LIST_QUERY.search(query):
            return PrimitiveResult(draft, RepairRecord(self.name, False, "not_list_query"))
        units = memory_units(bundle)
        items = self.expected_items(units, query)
        if len(items) < 2:
            return PrimitiveResult(draft, RepairRecord(self.name, False, "no_enumeration", items_expected=items))

        missing = [n for n in items if not contains_phrase(draft, n)]
        if not missing:
            return PrimitiveResult(draft, RepairRecord(self.name, False, "already_complete", items_expected=items))

        if len(missing) == len(items):
            addition = "The full list: " + _join(items) + "."
        else:
            addition = "Also: " + _join(missing) + "."
        repaired = f"{draft.rstrip()}\n\n{addition}" if draft.strip() else addition
        return PrimitiveResult(
            repaired,
            RepairRecord(self.name, True, "items_missing", items_expected=items, items_missing=missing),
        )


def _join(items: List[str]) -> str:
    if len(items) <= 1:
        return "".join(items)
    return ", ".join(items[:-1]) + " and " + items[-1]


class CharacterPreservationPrimitive:
    """Restores "José" where the draft wrote "Jose"."""
    name = "character_preservation"

    def apply(self, draft: str, bundle: ContextBundle, query: str) -> PrimitiveResult:
        expected: List[str] = []
        for unit in memory_units(bundle):
            for name in unit.anchors.get("unicode_names", []):
                if name not in expected:
                    expected.append(name)
        if not expected:
            return PrimitiveResult(draft, RepairRecord(self.name, False, "no_unicode_names"))

        # Whole names first, then single tokens ("Bjorn" alone)
        targets: List[str] = list(expected)
        for name in expected:
            for token in name.split():
                if token not in targets and ascii_fold(token) != token and len(token) > 2:
                    targets.append(token)

        repaired = draft
        restored: List[str] = []
        for original in targets:
            folded = ascii_fold(original)
            if folded == original:
                continue
            pattern = re.compile(r"(?<!\w)" + re.escape(folded) + r"(?!\w)", re.IGNORECASE)
            if pattern.search(repaired):
                repaired = pattern.sub(original, repaired)
                restored.append(original)

        if not restored:
            return PrimitiveResult(draft, RepairRecord(self.name, False, "spelling_preserved", items_expected=expected))
        return PrimitiveResult(
            repaired,
            RepairRecord(self.name, True, "spelling_restored", items_expected=expected, items_missing=restored),
        )
