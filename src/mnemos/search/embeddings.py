import contextvars
import hashlib
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, List, Optional

import openai
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from mnemos.config import settings
from mnemos.exceptions import OperationTimeoutError, TransientIOError
from mnemos.llm import openai_client
from mnemos.logging import logger
from mnemos.models.memory import EmbeddingStatus, Memory

EmbedFn = Callable[[str], List[float]]


def compute_text_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def get_embeddings_from_openai(texts: List[str], timeout: float, max_retries: int) -> List[List[float]]:
    """Batch call to OpenAI Embeddings API."""
    client = openai_client.get_client().with_options(timeout=timeout, max_retries=max_retries)
    response = client.embeddings.create(
        input=texts,
        model=settings.OPENAI_EMBEDDING_MODEL
    )
    # Ensure order is preserved
    return [data.embedding for data in response.data]


@dataclass
class EmbeddingOutcome:
    memory_id: int
    status: str  # ready | pending | failed | missing
    error: Optional[str] = None


class EmbeddingService:
    """
    Generates and stores memory embeddings.
    Writes never wait on this: `schedule` runs jobs on a small thread pool and
    a failed job only leaves the row `pending` or `failed` for a later backfill.
    """

    def __init__(
        self,
        engine: Engine,
        embed_fn: Optional[EmbedFn] = None,
        model: Optional[str] = None,
        workers: Optional[int] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
    ):
        self.engine = engine
        self.embed_fn = embed_fn
        self.model = model or ("custom" if embed_fn else settings.OPENAI_EMBEDDING_MODEL)
        self.timeout = timeout if timeout is not None else settings.EMBEDDING_TIMEOUT_SECONDS
        self.max_retries = max_retries if max_retries is not None else settings.EMBEDDING_MAX_RETRIES
        self._pool = ThreadPoolExecutor(
            max_workers=workers or settings.EMBEDDING_WORKERS,
            thread_name_prefix="mnemos-embed",
        )
        self._lock = threading.Lock()
        self._pending: set[Future] = set()

    def embed_text(self, text: str, timeout: Optional[float] = None) -> List[float]:
        """
        Embed one text. Raises OperationTimeoutError on timeout and
        TransientIOError on any other provider failure.
        """
        truncated = (text or "")[: settings.EMBEDDING_MAX_CHARS]
        try:
            if self.embed_fn is not None:
                return list(self.embed_fn(truncated))
            return get_embeddings_from_openai(
                [truncated], timeout if timeout is not None else self.timeout, self.max_retries
            )[0]
        except (openai.APITimeoutError, TimeoutError) as e:
            raise OperationTimeoutError(f"Embedding timed out: {e}") from e
        except Exception as e:
            raise TransientIOError(f"Embedding failed: {e}") from e

    def embed_memory(self, memory_id: int, content: str) -> EmbeddingOutcome:
        vector = None
        status = EmbeddingStatus.READY
        error = None
        try:
            vector = self.embed_text(content)
        except OperationTimeoutError as e:
            status, error = EmbeddingStatus.PENDING, e.message
        except TransientIOError as e:
            status, error = EmbeddingStatus.FAILED, e.message

        with Session(self.engine) as session:
            memory = session.get(Memory, memory_id)
            if memory is None:
                logger.info(f"Memory {memory_id} deleted before embedding completed")
                return EmbeddingOutcome(memory_id, "missing")
            if vector is not None:
                memory.set_embedding(vector, self.model)
            else:
                memory.embedding_status = status
            session.add(memory)
            session.commit()

        if error:
            logger.warning(f"Embedding for memory {memory_id} left {status.value}: {error}")
        return EmbeddingOutcome(memory_id, status.value, error)

    def _run(self, memory_id: int, content: str) -> EmbeddingOutcome:
        try:
            return self.embed_memory(memory_id, content)
        except Exception as e:
            logger.error(f"Background embedding for memory {memory_id} crashed: {e}")
            return EmbeddingOutcome(memory_id, EmbeddingStatus.FAILED.value, str(e))

    def schedule(self, memory_id: int, content: str) -> Future:
        ctx = contextvars.copy_context()
        future = self._pool.submit(ctx.run, self._run, memory_id, content)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future):
        with self._lock:
            self._pending.discard(future)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for outstanding jobs; True when none are left running."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True):
        self._pool.shutdown(wait=wait)

    def backfill(self, limit: int = 100, max_seconds: float = 60.0) -> dict[str, int]:
        """Re-embed pending and failed rows, newest first, within a time budget."""
        with Session(self.engine) as session:
            rows = session.exec(
                select(Memory.id, Memory.content)
                .where(Memory.embedding_status.in_([EmbeddingStatus.PENDING, EmbeddingStatus.FAILED]))
                .order_by(Memory.created_at.desc(), Memory.id.desc())
                .limit(limit)
            ).all()

        counts = {"candidates": len(rows), "ready": 0, "pending": 0, "failed": 0, "missing": 0}
        deadline = time.monotonic() + max_seconds
        for memory_id, content in rows:
            if time.monotonic() > deadline:
                logger.info("Embedding backfill stopped at its time budget")
                break
            outcome = self.embed_memory(memory_id, content)
            counts[outcome.status] += 1

        logger.info(f"Embedding backfill finished: {counts}")
        return counts
