import pytest
from datetime import timezone
from sqlmodel import Session, SQLModel, create_engine, select
from sqlalchemy.exc import IntegrityError
from mnemos.db import init_db
from mnemos.exceptions import ConfigurationError
from mnemos.models import Memory, MemoryEvent, EmbeddingStatus, StorageVersion
from mnemos.models.base import utc
import numpy as np

# Use in-memory DB for testing
@pytest.fixture(name="session")
def session_fixture():
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        yield session

def _memory(**overrides) -> Memory:
    fields = dict(owner_id="u1", content="I live in Denver.", content_hash="h1")
    fields.update(overrides)
    return Memory(**fields)

def test_memory_defaults(session: Session):
    memory = _memory()
    session.add(memory)
    session.commit()
    session.refresh(memory)

    assert memory.id is not None
    assert memory.is_current is True
    assert memory.embedding_status == EmbeddingStatus.PENDING
    assert memory.storage_version == StorageVersion.INTELLIGENT
    assert memory.category_name == "general"
    assert memory.get_embedding() is None
    assert memory.get_anchors() is None

def test_embedding_roundtrip(session: Session):
    memory = _memory()
    memory.set_embedding([0.1, 0.2, 0.3], "test-model")
    session.add(memory)
    session.commit()
    session.refresh(memory)

    assert memory.embedding_dims == 3
    assert memory.embedding_model == "test-model"
    assert memory.embedding_status == EmbeddingStatus.READY
    assert np.allclose(memory.get_embedding(), [0.1, 0.2, 0.3])

def test_anchors_roundtrip(session: Session):
    memory = _memory()
    memory.set_anchors({"names": ["José García-López"], "identifiers": []})
    session.add(memory)
    session.commit()
    session.refresh(memory)

    assert memory.get_anchors()["names"] == ["José García-López"]
    # Stored as readable text, not escaped
    assert "José" in memory.anchors_json

def test_one_current_fact_per_fingerprint(session: Session):
    session.add(_memory(fingerprint="user_location_residence"))
    session.commit()

    session.add(_memory(content="I live in Boulder.", content_hash="h2", fingerprint="user_location_residence"))
    with pytest.raises(IntegrityError):
        session.commit()
    session.rollback()

def test_index_ignores_retired_and_unfingerprinted(session: Session):
    session.add(_memory(fingerprint="user_location_residence", is_current=False))
    session.add(_memory(content_hash="h2", fingerprint="user_location_residence"))
    session.add(_memory(content_hash="h3"))
    session.add(_memory(content_hash="h4"))
    # Different owners do not collide
    session.add(_memory(owner_id="u2", content_hash="h5", fingerprint="user_location_residence"))
    session.commit()

    rows = session.exec(select(Memory)).all()
    assert len(rows) == 5

def test_memory_event(session: Session):
    event = MemoryEvent(owner_id="u1", action="created", memory_id=1, duration_ms=3)
    session.add(event)
    session.commit()
    session.refresh(event)
    assert event.id is not None
    assert event.superseded_count == 0

def test_utc_normalizes_naive():
    memory = _memory()
    naive = memory.created_at.replace(tzinfo=None)
    assert utc(naive).tzinfo == timezone.utc
    assert utc(None) is None

def test_init_db_unreachable(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    engine = create_engine(f"sqlite:///{blocker}/mnemos.db")
    with pytest.raises(ConfigurationError):
        init_db(engine)
