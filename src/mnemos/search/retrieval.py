import threading
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional

from cachetools import TTLCache
from sqlalchemy import or_
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from mnemos.config import settings
from mnemos.context.tokens import TokenCounter, get_token_counter
from mnemos.exceptions import MnemosError
from mnemos.logging import logger
from mnemos.memory.anchors import extract_anchors
from mnemos.memory.importance import HEALTH_CATEGORY
from mnemos.models.memory import Memory
from mnemos.search.embeddings import EmbeddingService
from mnemos.search.rules import (
    QueryContext,
    RankingRule,
    RetrievalCandidate,
    default_rules,
)
from mnemos.search.vector_search import score_memories

MEMORY_SECTION_HEADER = "Relevant memories about the user:"


@dataclass
class RetrievalResult:
    candidates: List[RetrievalCandidate] = field(default_factory=list)
    telemetry: dict[str, Any] = field(default_factory=dict)


def render_memory_line(candidate: RetrievalCandidate) -> str:
    return f"- {' '.join(candidate.content.split())}"


def render_memory_section(candidates: List[RetrievalCandidate]) -> str:
    """One line per memory so the budgeter can cut between memories."""
    if not candidates:
        return ""
    return "\n".join([MEMORY_SECTION_HEADER] + [render_memory_line(c) for c in candidates])


def _keyword_overlap(query: QueryContext, candidate: RetrievalCandidate) -> float:
    if not query.terms:
        return 0.0
    return len(query.terms & candidate.terms) / len(query.terms)


def _rank_key(c: RetrievalCandidate):
    return (-c.hybrid_score, -c.created_at.timestamp(), -c.memory_id)


class RetrievalEngine:
    """
    Selects the memories injected into a prompt.
    Base relevance is cosine similarity (keyword overlap when an embedding is
    missing); typed rules then adjust it; the result is capped and fitted to a
    token budget.
    """

    def __init__(
        self,
        engine: Engine,
        embedding_service: Optional[EmbeddingService] = None,
        rules: Optional[List[RankingRule]] = None,
        counter: Optional[TokenCounter] = None,
    ):
        self.engine = engine
        self.embedding_service = embedding_service
        self.rules = rules if rules is not None else default_rules()
        self.counter = counter or get_token_counter()
        self.query_cache: TTLCache = TTLCache(
            maxsize=settings.QUERY_CACHE_SIZE, ttl=settings.QUERY_CACHE_TTL_SECONDS
        )
        self._cache_lock = threading.Lock()

    def embed_query(self, query: str) -> Optional[List[float]]:
        if self.embedding_service is None or not query.strip():
            return None
        key = query.strip()
        with self._cache_lock:
            cached = self.query_cache.get(key)
        if cached is not None:
            return cached
        try:
            vector = self.embedding_service.embed_text(key)
        except MnemosError as e:
            logger.warning(f"Query embedding unavailable, ranking by keywords: {e.message}")
            return None
        with self._cache_lock:
            self.query_cache[key] = vector
        return vector

    def retrieve(
        self,
        owner_id: str,
        query: str,
        token_budget: Optional[int] = None,
        category: Optional[str] = None,
    ) -> RetrievalResult:
        start = time.monotonic()
        try:
            result = self._retrieve(owner_id, query, token_budget, category)
        except Exception as e:
            logger.error(f"Retrieval failed for {owner_id}: {e}")
            return RetrievalResult([], {"error": str(e), "latency_ms": int((time.monotonic() - start) * 1000)})
        result.telemetry["latency_ms"] = int((time.monotonic() - start) * 1000)
        logger.info(f"Retrieval for {owner_id}: {result.telemetry}")
        return result

    def _load(self, session: Session, owner_id: str, category: Optional[str], safety: bool):
        stmt = select(Memory).where(
            Memory.owner_id == owner_id,
            Memory.is_current == True,  # noqa: E712
        )
        if category:
            stmt = stmt.where(Memory.category_name == category)
        pool = session.exec(
            stmt.order_by(Memory.created_at.desc(), Memory.id.desc()).limit(settings.RETRIEVAL_CANDIDATE_POOL)
        ).all()

        safety_rows = []
        if safety:
            safety_rows = session.exec(
                select(Memory)
                .where(
                    Memory.owner_id == owner_id,
                    Memory.is_current == True,  # noqa: E712
                    or_(
                        Memory.category_name == HEALTH_CATEGORY,
                        Memory.fingerprint.like("user_allergy%"),
                        Memory.fingerprint.like("user_medical%"),
                    ),
                )
                .order_by(Memory.importance.desc(), Memory.created_at.desc())
                .limit(settings.SAFETY_INJECTION_LIMIT)
            ).all()
        return pool, safety_rows

    def _retrieve(
        self,
        owner_id: str,
        query: str,
        token_budget: Optional[int],
        category: Optional[str],
    ) -> RetrievalResult:
        ctx = QueryContext.build(query)
        budget = settings.RETRIEVAL_DEFAULT_TOKEN_BUDGET if token_budget is None else token_budget
        query_embedding = self.embed_query(query)

        with Session(self.engine) as session:
            pool, safety_rows = self._load(session, owner_id, category, bool(ctx.safety_domains))
            pool_ids = {m.id for m in pool}
            safety_ids = {m.id for m in safety_rows}
            memories = pool + [m for m in safety_rows if m.id not in pool_ids]

            scores: dict[int, float] = {}
            if query_embedding is not None:
                scores, _ = score_memories(query_embedding, memories)

            candidates = []
            for memory in memories:
                anchors = memory.get_anchors() or extract_anchors(memory.content)
                candidate = RetrievalCandidate.from_memory(memory, anchors)
                if candidate.token_count <= 0:
                    candidate.token_count = self.counter(candidate.content)
                if memory.id in scores:
                    candidate.base_score = scores[memory.id]
                    candidate.base_method = "cosine"
                else:
                    candidate.base_score = _keyword_overlap(ctx, candidate)
                candidate.pinned = memory.id in safety_ids
                candidates.append(candidate)

        fired: dict[str, int] = {}
        for candidate in candidates:
            total = candidate.base_score
            for rule in self.rules:
                outcome = rule.evaluate(candidate, ctx)
                if outcome is None:
                    continue
                candidate.rules.append(outcome)
                total += outcome.delta
                fired[outcome.name] = fired.get(outcome.name, 0) + 1
            candidate.hybrid_score = total
            if candidate.rules:
                logger.debug(f"Memory {candidate.memory_id}: {candidate.explanation}")

        ranked = sorted(candidates, key=_rank_key)
        ranked = self._cap(ranked, settings.RETRIEVAL_MAX_RESULTS)
        ranked = self._fit_budget(ranked, budget)

        embedded = len(scores)
        telemetry = {
            "pool_size": len(pool),
            "safety_injected": len(safety_ids - pool_ids) if safety_ids else 0,
            "embedded": embedded,
            "method": "keyword" if query_embedding is None or not embedded else (
                "cosine" if embedded == len(memories) else "mixed"
            ),
            "rules_fired": fired,
            "returned": len(ranked),
            "tokens_used": sum(c.token_count for c in ranked),
            "token_budget": budget,
        }
        return RetrievalResult(ranked, telemetry)

    @staticmethod
    def _cap(ranked: List[RetrievalCandidate], cap: int) -> List[RetrievalCandidate]:
        if len(ranked) <= cap:
            return ranked
        pinned = [c for c in ranked if c.pinned][:cap]
        room = cap - len(pinned)
        keep = {c.memory_id for c in pinned}
        keep.update(c.memory_id for c in [c for c in ranked if not c.pinned][:room])
        return [c for c in ranked if c.memory_id in keep]

    @staticmethod
    def _fit_budget(ranked: List[RetrievalCandidate], budget: int) -> List[RetrievalCandidate]:
        kept = list(ranked)
        total = sum(c.token_count for c in kept)
        while kept and total > budget:
            # Lowest-ranked unpinned entry goes first; pinned ones only when nothing else is left
            victim_index = next(
                (i for i in range(len(kept) - 1, -1, -1) if not kept[i].pinned),
                len(kept) - 1,
            )
            total -= kept.pop(victim_index).token_count
        return kept
