from pathlib import Path
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import SQLModel, create_engine, Session
from mnemos.config import settings
from mnemos.exceptions import ConfigurationError
from mnemos.logging import logger

DB_URL = settings.DATABASE_URL

def _ensure_sqlite_dir(url: str):
    if url.startswith("sqlite:///") and ":memory:" not in url:
        Path(url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)

def build_engine(url: str = DB_URL) -> Engine:
    """Create an engine; SQLite engines may be shared with embedding threads."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    _ensure_sqlite_dir(url)
    return create_engine(url, echo=False, connect_args=connect_args)

engine = build_engine()

def init_db(target: Engine | None = None):
    """Create tables and indexes; a store that cannot be reached is fatal."""
    target = target or engine

    # Import all models here so SQLModel knows about them
    from mnemos.models import memory, audit  # noqa: F401

    logger.info(f"Initializing database at {target.url}")
    try:
        with target.connect() as conn:
            conn.execute(text("SELECT 1"))
        SQLModel.metadata.create_all(target)
    except SQLAlchemyError as e:
        logger.error(f"Database initialization failed: {e}")
        raise ConfigurationError(f"Cannot initialize data store at {target.url}: {e}") from e

def get_session():
    with Session(engine) as session:
        yield session
