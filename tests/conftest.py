import hashlib
import os
import re
import tempfile

# Settings are read once at import time; pin the test environment first
os.environ["TOKEN_COUNTER"] = "chars"
os.environ["FINGERPRINT_USE_MODEL"] = "false"
os.environ["COMPRESSION_USE_MODEL"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["DATABASE_URL"] = f"sqlite:///{tempfile.mkdtemp(prefix='mnemos-test-')}/mnemos.db"
os.environ.pop("OPENAI_API_KEY", None)

import numpy as np
import pytest
from sqlmodel import Session, SQLModel, create_engine

from mnemos.db import build_engine, init_db
import mnemos.models  # noqa: F401

DIMS = 64
WORD = re.compile(r"[^\W_]+")


def fake_embed(text: str) -> list[float]:
    """Deterministic bag-of-words vector: shared words mean similar vectors."""
    vec = np.zeros(DIMS, dtype=np.float32)
    for word in WORD.findall(text.lower()):
        bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % DIMS
        vec[bucket] += 1.0
    if not vec.any():
        vec[0] = 1.0
    return vec.tolist()


@pytest.fixture(name="engine")
def engine_fixture(tmp_path):
    # File-backed so background embedding threads share the data
    engine = build_engine(f"sqlite:///{tmp_path}/test.db")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture():
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        yield session


@pytest.fixture(name="embed")
def embed_fixture():
    return fake_embed
