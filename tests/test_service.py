import pytest
from sqlmodel import Session, select
from mnemos.context.budget import ContextBudgeter, TRUNCATION_MARKER
from mnemos.memory.storage import WriteAction
from mnemos.models import MemoryEvent
from mnemos.search.retrieval import render_memory_line
from mnemos.service import MemoryEngine


@pytest.fixture(name="memory_engine")
def memory_engine_fixture(engine, embed):
    service = MemoryEngine(engine=engine, embed_fn=embed, use_model=False)
    yield service
    service.close()


def test_record_query_repair(memory_engine):
    memory_engine.record_utterance("u1", "I worked at Google for 5 years")
    memory_engine.record_utterance("u1", "I left Google in 2020")

    query = "When did I start at Google?"
    bundle = memory_engine.query("u1", query)
    memory_text = bundle.section("memory").text
    assert "I worked at Google for 5 years." in memory_text
    assert "I left Google in 2020." in memory_text
    assert len(bundle.memory_candidates) == 2

    outcome = memory_engine.repair("I'm not sure when that was.", bundle, query)
    assert outcome.final_answer == "Counting back 5 years from 2020, that was in 2015."
    assert outcome.fired == ["temporal_arithmetic"]

def test_assemble_context_keeps_surviving_candidates(memory_engine):
    memory_engine.record_utterance("u1", "I play the cello every Sunday.")
    memory_engine.record_utterance("u1", "My sister lives in Lisbon.")
    memory_engine.budgeter = ContextBudgeter(ceilings={"memory": 22}, counter=memory_engine.counter)

    bundle = memory_engine.assemble_context("u1", "Does my sister play the cello?", document="Quarterly report.")
    memory_text = bundle.section("memory").text
    assert bundle.section("memory").truncated
    assert memory_text.endswith(TRUNCATION_MARKER)
    assert len(bundle.memory_candidates) == 1
    assert render_memory_line(bundle.memory_candidates[0]) in memory_text
    assert bundle.section("document").text == "Quarterly report."

def test_owner_scoping(memory_engine):
    memory_engine.record_utterance("u1", "I play the cello every Sunday.")
    bundle = memory_engine.query("u2", "Do I play an instrument?")
    assert bundle.memory_candidates == []
    assert bundle.section("memory").text == ""
    assert memory_engine.list_memories("u2") == []

def test_supersession_history_and_stats(memory_engine):
    first = memory_engine.record_utterance("u1", "My favorite color is teal")
    second = memory_engine.record_utterance("u1", "My favorite color is navy")
    memory_engine.record_utterance("u1", "I play the cello every Sunday.")
    assert second.action == WriteAction.SUPERSEDED

    history = memory_engine.history("u1", first.memory_id)
    assert [m.id for m in history] == [first.memory_id, second.memory_id]
    assert [m.is_current for m in history] == [False, True]
    assert memory_engine.history("u2", first.memory_id) == []

    current = memory_engine.list_memories("u1")
    assert first.memory_id not in [m.id for m in current]
    assert len(memory_engine.list_memories("u1", include_superseded=True)) == 3

    stats = memory_engine.stats("u1")
    assert stats["total"] == 3
    assert stats["current"] == 2
    assert stats["superseded"] == 1
    assert stats["embedding_status"] == {"ready": 3}
    assert sum(stats["categories"].values()) == 2

def test_list_memories_masks_numbers(memory_engine):
    memory_engine.record_utterance("u1", "My account number is 12345678901 at the credit union")
    (summary,) = memory_engine.list_memories("u1")
    assert "12345678901" not in summary.content
    assert "[ACCOUNT PROTECTED]" in summary.content

def test_request_id_recorded(memory_engine, engine):
    memory_engine.record_utterance("u1", "I play the cello every Sunday.", {"request_id": "req-123"})
    with Session(engine) as session:
        event = session.exec(select(MemoryEvent)).one()
    assert event.request_id == "req-123"
    assert event.action == "created"

def test_engine_without_embeddings(engine):
    service = MemoryEngine(engine=engine, use_model=False)
    assert service.embeddings is None
    service.record_utterance("u1", "I play the cello every Sunday.")
    bundle = service.query("u1", "How often do I play cello?")
    assert len(bundle.memory_candidates) == 1
    assert service.stats("u1")["embedding_status"] == {"pending": 1}
    assert service.drain()
    service.close()
