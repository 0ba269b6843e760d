import pytest
import numpy as np
from unittest.mock import MagicMock, patch
from sqlmodel import Session
from mnemos.config import settings
from mnemos.memory.anchors import extract_anchors, is_weak_name
from mnemos.models import Memory
from mnemos.models.base import utcnow
from mnemos.search.embeddings import EmbeddingService, compute_text_hash
from mnemos.search.retrieval import MEMORY_SECTION_HEADER, RetrievalEngine, render_memory_section
from mnemos.search.rules import (
    EntityRule,
    ExplicitRecallRule,
    KeywordRule,
    OrdinalRule,
    QueryContext,
    RetrievalCandidate,
    SafetyRule,
    salient_terms,
)
from mnemos.search.vector_search import batch_cosine_similarity, cosine_similarity, score_memories


def _candidate(content, **overrides) -> RetrievalCandidate:
    fields = dict(
        memory_id=1,
        content=content,
        category_name="general",
        created_at=utcnow(),
        importance=0.5,
        token_count=10,
        fingerprint=None,
        explicit_recall=False,
        anchors=extract_anchors(content),
        terms=salient_terms(content),
    )
    fields.update(overrides)
    return RetrievalCandidate(**fields)


def _add(engine, content, owner_id="u1", embed=None, **overrides) -> int:
    fields = dict(
        owner_id=owner_id,
        content=content,
        content_hash=compute_text_hash(content),
        token_count=len(content) // 4 + 1,
    )
    fields.update(overrides)
    memory = Memory(**fields)
    memory.set_anchors(extract_anchors(content))
    if embed is not None:
        memory.set_embedding(embed(content), "custom")
    with Session(engine) as session:
        session.add(memory)
        session.commit()
        session.refresh(memory)
        return memory.id


def test_hash():
    assert compute_text_hash("test") == "9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08"

def test_cosine():
    v1 = np.array([1, 0], dtype=np.float32)
    v2 = np.array([1, 0], dtype=np.float32)
    assert cosine_similarity(v1, v2) > 0.99

    v3 = np.array([0, 1], dtype=np.float32)
    assert cosine_similarity(v1, v3) < 0.01

    # Zero vectors score 0 instead of NaN
    assert cosine_similarity(v1, np.zeros(2, dtype=np.float32)) == 0.0

def test_batch_cosine():
    query = np.array([1, 0], dtype=np.float32)
    matrix = np.array([[1, 0], [0, 1], [0, 0]], dtype=np.float32)
    scores = batch_cosine_similarity(query, matrix)
    assert scores[0] > 0.99
    assert abs(scores[1]) < 0.01
    assert scores[2] == 0.0

def test_score_memories_skips_missing_and_mismatched():
    ready = Memory(id=1, owner_id="u1", content="a", content_hash="a")
    ready.set_embedding([1.0, 0.0], "m")
    other_dims = Memory(id=2, owner_id="u1", content="b", content_hash="b")
    other_dims.set_embedding([1.0, 0.0, 0.0], "m")
    missing = Memory(id=3, owner_id="u1", content="c", content_hash="c")

    scores, unscored = score_memories([1.0, 0.0], [ready, other_dims, missing])
    assert list(scores) == [1]
    assert scores[1] > 0.99
    assert [m.id for m in unscored] == [2, 3]

# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

def test_keyword_rule():
    candidate = _candidate("I play the cello every Sunday.")
    outcome = KeywordRule().evaluate(candidate, QueryContext.build("How is my cello practice going?"))
    assert outcome.delta == pytest.approx(settings.KEYWORD_BOOST)
    assert "cello" in outcome.explanation

    assert KeywordRule().evaluate(candidate, QueryContext.build("Where do I live?")) is None

def test_entity_rule_partial_and_folded_names():
    rule = EntityRule()
    sarah = _candidate("Sarah Chen is my dentist in Boulder.")
    assert rule.evaluate(sarah, QueryContext.build("What did Sarah say?")).delta == pytest.approx(settings.ENTITY_BOOST)

    jose = _candidate("José García-López is my accountant.")
    assert rule.evaluate(jose, QueryContext.build("what does jose garcia-lopez charge?")) is not None
    assert rule.evaluate(jose, QueryContext.build("Who is my accountant?")) is None

def test_entity_rule_ignores_sentence_initial_words():
    rule = EntityRule()
    work = _candidate("Work is stressful lately.")
    assert work.anchors["names"] == ["Work"]
    assert rule.evaluate(work, QueryContext.build("Where does Alex work?")) is None
    assert rule.evaluate(work, QueryContext.build("Work at Google, is it stressful?")) is None

    # A lone name at the start of a memory still matches when the query names it
    brother = _candidate("Alex is my brother.")
    outcome = rule.evaluate(brother, QueryContext.build("Where does Alex work?"))
    assert outcome.delta == pytest.approx(settings.ENTITY_BOOST)

    assert is_weak_name("Work", "Work is stressful lately.")
    assert not is_weak_name("Alex", "Yesterday Alex called.")
    assert not is_weak_name("Alex Chen", "Alex Chen called.")

def test_ordinal_rule():
    rule = OrdinalRule()
    first_car = _candidate("My first car was a Honda Civic.")

    match = rule.evaluate(first_car, QueryContext.build("What was my first car?"))
    assert match.delta == pytest.approx(settings.ORDINAL_MATCH_BOOST)

    mismatch = rule.evaluate(first_car, QueryContext.build("What was my second car?"))
    assert mismatch.delta == pytest.approx(-settings.ORDINAL_MISMATCH_PENALTY)

    # Different subject: no opinion
    assert rule.evaluate(first_car, QueryContext.build("What was my first job?")) is None

def test_explicit_recall_rule_needs_relevance():
    rule = ExplicitRecallRule()
    candidate = _candidate("My locker code is ECHO-123-ABC.", explicit_recall=True)

    assert rule.evaluate(candidate, QueryContext.build("Any weekend plans?")) is None
    assert rule.evaluate(candidate, QueryContext.build("What is my locker code?")) is not None

    candidate.base_score = 0.5
    assert rule.evaluate(candidate, QueryContext.build("Any weekend plans?")) is not None

def test_safety_rule():
    rule = SafetyRule()
    allergy = _candidate("I am allergic to peanuts.")
    assert rule.evaluate(allergy, QueryContext.build("Can you suggest a dinner recipe?")) is not None
    assert rule.evaluate(allergy, QueryContext.build("What should I read next?")) is None

    unrelated = _candidate("I play the cello every Sunday.")
    assert rule.evaluate(unrelated, QueryContext.build("Can you suggest a dinner recipe?")) is None

    by_fingerprint = _candidate("Bees are a problem.", fingerprint="user_allergy:bee")
    assert by_fingerprint.safety_relevant

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

@pytest.fixture(name="retriever")
def retriever_fixture(engine, embed):
    service = EmbeddingService(engine, embed_fn=embed)
    yield RetrievalEngine(engine, service, counter=lambda text: len(text) // 4 + 1)
    service.shutdown()

def test_entity_outranks_similarity(engine, embed, retriever):
    _add(engine, "I need to tell my dentist about the toothache and the dentist bill.", embed=embed)
    sarah = _add(engine, "Sarah Chen is my dentist in Boulder.", embed=embed)

    result = retriever.retrieve("u1", "What did Sarah tell me about the dentist?")
    top = result.candidates[0]
    assert top.memory_id == sarah
    assert "entity" in [r.name for r in top.rules]
    assert "entity+1.00" in top.explanation
    assert result.telemetry["method"] == "cosine"
    assert result.telemetry["rules_fired"]["entity"] == 1

def test_common_word_does_not_outrank_named_person(engine, embed, retriever):
    alex = _add(engine, "Alex Chen works at Google as a designer.", embed=embed)
    _add(engine, "Work is stressful lately.", embed=embed)

    result = retriever.retrieve("u1", "Where does Alex work?")
    top, other = result.candidates
    assert top.memory_id == alex
    assert "entity" in [r.name for r in top.rules]
    assert "entity" not in [r.name for r in other.rules]
    assert top.hybrid_score > other.hybrid_score

def test_entity_boost_limited_to_named_person(engine, embed, retriever):
    chen = _add(engine, "Alex Chen is a designer in Denver.", embed=embed)
    rivera = _add(engine, "Alex Rivera is a nurse in Denver.", embed=embed)

    result = retriever.retrieve("u1", "What does Alex Rivera do for a living?")
    by_id = {c.memory_id: c for c in result.candidates}
    assert result.candidates[0].memory_id == rivera
    assert "entity" in [r.name for r in by_id[rivera].rules]
    assert "entity" not in [r.name for r in by_id[chen].rules]

def test_ordinal_ranking(engine, embed, retriever):
    second = _add(engine, "My second car was a Subaru Outback.", embed=embed)
    first = _add(engine, "My first car was a Honda Civic.", embed=embed)

    ids = [c.memory_id for c in retriever.retrieve("u1", "What was my first car?").candidates]
    assert ids.index(first) < ids.index(second)

def test_safety_memory_pinned_beyond_pool(engine, embed, retriever, monkeypatch):
    allergy = _add(engine, "I am allergic to peanuts.", embed=embed, category_name="health_wellness", importance=0.95)
    for i in range(5):
        _add(engine, f"I watched documentary number {i} about volcanoes.", embed=embed)

    monkeypatch.setattr(settings, "RETRIEVAL_CANDIDATE_POOL", 2)
    monkeypatch.setattr(settings, "RETRIEVAL_MAX_RESULTS", 2)

    result = retriever.retrieve("u1", "Can you suggest a dinner recipe?")
    ids = [c.memory_id for c in result.candidates]
    assert allergy in ids
    assert len(ids) == 2
    assert result.telemetry["pool_size"] == 2
    assert result.telemetry["safety_injected"] == 1
    assert next(c for c in result.candidates if c.memory_id == allergy).pinned

def test_result_cap(engine, embed, retriever):
    for i in range(20):
        _add(engine, f"Note {i}: I visited museum number {i}.", embed=embed)
    result = retriever.retrieve("u1", "Which museums did I visit?")
    assert len(result.candidates) == settings.RETRIEVAL_MAX_RESULTS
    assert result.telemetry["returned"] == settings.RETRIEVAL_MAX_RESULTS

def test_token_budget_drops_lowest(engine, embed, retriever):
    for i in range(4):
        _add(engine, f"I visited museum number {i}.", embed=embed, token_count=10)
    result = retriever.retrieve("u1", "Which museums did I visit?", token_budget=25)
    assert len(result.candidates) == 2
    assert result.telemetry["tokens_used"] == 20
    assert result.telemetry["token_budget"] == 25

def test_keyword_fallback_without_embeddings(engine):
    retriever = RetrievalEngine(engine)
    older = _add(engine, "My sister lives in Lisbon.")
    cello = _add(engine, "I play the cello every Sunday.")
    newer = _add(engine, "I bought a new lamp for the office.")

    result = retriever.retrieve("u1", "How long have I played cello?")
    ids = [c.memory_id for c in result.candidates]
    assert ids[0] == cello
    # Equal scores: newest first
    assert ids.index(newer) < ids.index(older)
    assert result.telemetry["method"] == "keyword"
    assert result.candidates[0].base_method == "keyword"

def test_owner_scoping_and_superseded_rows(engine, embed, retriever):
    mine = _add(engine, "I live in Denver.", embed=embed)
    _add(engine, "I live in Paris.", owner_id="u2", embed=embed)
    _add(engine, "I live in Austin.", embed=embed, is_current=False)

    ids = [c.memory_id for c in retriever.retrieve("u1", "Where do I live?").candidates]
    assert ids == [mine]

def test_query_embedding_cache(engine, embed):
    _add(engine, "I play the cello every Sunday.", embed=embed)
    embed_fn = MagicMock(side_effect=embed)
    service = EmbeddingService(engine, embed_fn=embed_fn)
    retriever = RetrievalEngine(engine, service)

    retriever.retrieve("u1", "Do I play an instrument?")
    retriever.retrieve("u1", "Do I play an instrument?")
    service.shutdown()
    assert embed_fn.call_count == 1

def test_retrieval_failure_returns_empty(engine):
    retriever = RetrievalEngine(engine)
    with patch.object(RetrievalEngine, "_retrieve", side_effect=RuntimeError("db down")):
        result = retriever.retrieve("u1", "anything")
    assert result.candidates == []
    assert "db down" in result.telemetry["error"]

def test_render_memory_section():
    assert render_memory_section([]) == ""
    text = render_memory_section([_candidate("Line one.\nLine two."), _candidate("Other fact.")])
    assert text.splitlines() == [MEMORY_SECTION_HEADER, "- Line one. Line two.", "- Other fact."]
