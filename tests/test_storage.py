import pytest
from unittest.mock import patch
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from mnemos.exceptions import DataIntegrityError
from mnemos.memory.fingerprint import FingerprintGenerator
from mnemos.memory.storage import StorageWriter, WriteAction, compute_content_hash
from mnemos.memory.supersession import (
    cleanup_duplicate_current_facts,
    get_supersession_chain,
    store_with_supersession,
)
from mnemos.models import EmbeddingStatus, Memory, MemoryEvent, StorageVersion
from mnemos.models.base import utc
from mnemos.search.embeddings import EmbeddingService


@pytest.fixture(name="embeddings")
def embeddings_fixture(engine, embed):
    service = EmbeddingService(engine, embed_fn=embed)
    yield service
    service.shutdown()


@pytest.fixture(name="writer")
def writer_fixture(engine, embeddings):
    return StorageWriter(
        engine,
        embedding_service=embeddings,
        fingerprinter=FingerprintGenerator(use_model=False),
        use_model=False,
    )


def _rows(engine, owner_id="u1"):
    with Session(engine) as session:
        return session.exec(select(Memory).where(Memory.owner_id == owner_id).order_by(Memory.id)).all()


def test_write_creates_memory(writer, engine):
    result = writer.write("u1", "I have been learning to play the cello lately")
    assert result.action == WriteAction.CREATED
    assert result.fingerprint is None

    (memory,) = _rows(engine)
    assert memory.id == result.memory_id
    assert memory.content == "I have been learning to play the cello lately."
    assert memory.storage_version == StorageVersion.INTELLIGENT
    assert memory.content_hash == compute_content_hash(memory.content)
    assert memory.token_count > 0
    # The dedup embedding is reused, so the row is searchable immediately
    assert memory.embedding_status == EmbeddingStatus.READY
    assert memory.get_anchors() is not None


def test_fingerprinted_fact_supersedes(writer, engine):
    first = writer.write("u1", "My favorite color is teal")
    second = writer.write("u1", "My favorite color is navy")

    assert first.action == WriteAction.CREATED
    assert first.fingerprint == "user_favorite_color"
    assert second.action == WriteAction.SUPERSEDED
    assert second.superseded_count == 1

    old, new = _rows(engine)
    assert old.is_current is False
    assert old.superseded_by == new.id
    assert old.superseded_at is not None
    assert new.is_current is True
    assert utc(new.created_at) > utc(old.created_at)


def test_supersession_is_per_owner(writer, engine):
    writer.write("u1", "My favorite color is teal")
    result = writer.write("u2", "My favorite color is navy")
    assert result.action == WriteAction.CREATED
    assert all(m.is_current for m in _rows(engine))


def test_exact_duplicate(writer, engine):
    first = writer.write("u1", "I have been learning to play the cello lately")
    second = writer.write("u1", "I have been learning to play the cello lately.")
    assert second.action == WriteAction.DUPLICATE
    assert second.memory_id == first.memory_id
    assert len(_rows(engine)) == 1


def test_semantic_duplicate(writer, engine):
    first = writer.write("u1", "I really enjoy hiking in the mountains on weekends")
    second = writer.write("u1", "I really enjoy hiking in the mountains on the weekends")
    assert second.action == WriteAction.DUPLICATE
    assert second.memory_id == first.memory_id
    assert second.reason == "semantic match"


def test_distinct_identifiers_are_not_duplicates(writer, engine):
    writer.write("u1", "My locker code at the downtown gym is ECHO-123-ABC")
    result = writer.write("u1", "My locker code at the downtown gym is ECHO-456-ABC")
    assert result.action == WriteAction.CREATED
    assert len(_rows(engine)) == 2


def test_rejected_and_skipped(writer, engine):
    rejected = writer.write("u1", "...")
    assert rejected.action == WriteAction.REJECTED
    assert rejected.memory_id is None

    skipped = writer.write("u1", "ok sure")
    assert skipped.action == WriteAction.SKIPPED
    assert _rows(engine) == []


def test_fallback_on_pipeline_error(writer, engine, embeddings):
    with patch("mnemos.memory.storage.compress", side_effect=RuntimeError("extraction exploded")):
        result = writer.write("u1", "I have been learning to play the cello lately")

    assert result.action == WriteAction.FALLBACK
    assert "extraction exploded" in result.reason
    assert embeddings.drain(timeout=5)

    (memory,) = _rows(engine)
    assert memory.storage_version == StorageVersion.FALLBACK
    assert memory.content == "I have been learning to play the cello lately"
    assert memory.embedding_status == EmbeddingStatus.READY


def test_write_without_embeddings_stays_pending(engine):
    writer = StorageWriter(engine, fingerprinter=FingerprintGenerator(use_model=False), use_model=False)
    writer.write("u1", "I have been learning to play the cello lately")
    (memory,) = _rows(engine)
    assert memory.embedding_status == EmbeddingStatus.PENDING
    assert memory.embedding is None


def test_events_recorded(writer, engine):
    writer.write("u1", "My favorite color is teal")
    writer.write("u1", "My favorite color is navy")
    writer.write("u1", "...")
    with Session(engine) as session:
        events = session.exec(select(MemoryEvent).order_by(MemoryEvent.id)).all()
    assert [e.action for e in events] == ["created", "superseded", "rejected"]
    assert events[1].superseded_count == 1
    assert events[1].fingerprint == "user_favorite_color"


# ---------------------------------------------------------------------------
# Supersession helpers
# ---------------------------------------------------------------------------

def test_supersession_chain(writer, engine):
    ids = [
        writer.write("u1", f"My favorite color is {color}").memory_id
        for color in ("teal", "navy", "crimson")
    ]
    with Session(engine) as session:
        for memory_id in ids:
            chain = get_supersession_chain(session, memory_id)
            assert [m.id for m in chain] == ids
        assert get_supersession_chain(session, 9999) == []


def test_supersession_gives_up_after_retries(session):
    fields = dict(owner_id="u1", content="x", content_hash="h", fingerprint="user_email")
    conflict = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
    with patch.object(session, "commit", side_effect=conflict):
        with pytest.raises(DataIntegrityError):
            store_with_supersession(session, fields, max_retries=1)


def test_cleanup_duplicate_current_facts(engine):
    with engine.begin() as conn:
        conn.execute(text("DROP INDEX ix_one_current_fact"))

    with Session(engine) as session:
        for i in range(3):
            session.add(Memory(owner_id="u1", content=f"fact {i}", content_hash=f"h{i}", fingerprint="user_employer"))
            session.commit()
        session.add(Memory(owner_id="u1", content="other", content_hash="h9", fingerprint="user_age"))
        session.commit()

        assert cleanup_duplicate_current_facts(session) == 2

        current = session.exec(
            select(Memory).where(Memory.fingerprint == "user_employer", Memory.is_current == True)  # noqa: E712
        ).all()
        assert len(current) == 1
        assert current[0].content == "fact 2"
        assert cleanup_duplicate_current_facts(session) == 0


# ---------------------------------------------------------------------------
# Embedding jobs
# ---------------------------------------------------------------------------

def _insert(engine, content="I live in Denver.") -> int:
    with Session(engine) as session:
        memory = Memory(owner_id="u1", content=content, content_hash=compute_content_hash(content))
        session.add(memory)
        session.commit()
        session.refresh(memory)
        return memory.id


def _status(engine, memory_id):
    with Session(engine) as session:
        return session.get(Memory, memory_id).embedding_status


def _raises(exc):
    def embed(text):
        raise exc
    return embed


def test_embedding_timeout_leaves_pending(engine):
    memory_id = _insert(engine)
    service = EmbeddingService(engine, embed_fn=_raises(TimeoutError("slow")))
    outcome = service.schedule(memory_id, "I live in Denver.").result(timeout=5)
    service.shutdown()
    assert outcome.status == "pending"
    assert _status(engine, memory_id) == EmbeddingStatus.PENDING


def test_embedding_error_marks_failed(engine):
    memory_id = _insert(engine)
    service = EmbeddingService(engine, embed_fn=_raises(ValueError("bad input")))
    outcome = service.embed_memory(memory_id, "I live in Denver.")
    service.shutdown()
    assert outcome.status == "failed"
    assert "bad input" in outcome.error
    assert _status(engine, memory_id) == EmbeddingStatus.FAILED


def test_embedding_for_deleted_row(engine, embed):
    service = EmbeddingService(engine, embed_fn=embed)
    outcome = service.embed_memory(4242, "gone")
    service.shutdown()
    assert outcome.status == "missing"


def test_backfill(engine, embed):
    pending = _insert(engine, "I live in Denver.")
    failed = _insert(engine, "I work at Acme Corp.")
    with Session(engine) as session:
        row = session.get(Memory, failed)
        row.embedding_status = EmbeddingStatus.FAILED
        session.add(row)
        session.commit()

    service = EmbeddingService(engine, embed_fn=embed)
    counts = service.backfill(limit=10, max_seconds=10)
    service.shutdown()

    assert counts["candidates"] == 2
    assert counts["ready"] == 2
    assert _status(engine, pending) == EmbeddingStatus.READY
    assert _status(engine, failed) == EmbeddingStatus.READY
