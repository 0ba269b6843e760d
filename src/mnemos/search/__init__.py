from mnemos.search.embeddings import EmbeddingService, EmbeddingOutcome
from mnemos.search.vector_search import cosine_similarity, batch_cosine_similarity, score_memories
from mnemos.search.rules import (
    QueryContext,
    RetrievalCandidate,
    RuleOutcome,
    KeywordRule,
    EntityRule,
    OrdinalRule,
    ExplicitRecallRule,
    SafetyRule,
    default_rules,
)
from mnemos.search.retrieval import RetrievalEngine, RetrievalResult, render_memory_section

__all__ = [
    "EmbeddingService",
    "EmbeddingOutcome",
    "cosine_similarity",
    "batch_cosine_similarity",
    "score_memories",
    "QueryContext",
    "RetrievalCandidate",
    "RuleOutcome",
    "KeywordRule",
    "EntityRule",
    "OrdinalRule",
    "ExplicitRecallRule",
    "SafetyRule",
    "default_rules",
    "RetrievalEngine",
    "RetrievalResult",
    "render_memory_section",
]
