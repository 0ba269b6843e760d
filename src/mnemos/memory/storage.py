import hashlib
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from mnemos.config import settings
from mnemos.context.tokens import TokenCounter, get_token_counter
from mnemos.exceptions import MnemosError
from mnemos.logging import logger, get_request_id
from mnemos.memory.anchors import IDENTIFIER_PATTERN, extract_anchors
from mnemos.memory.categories import DEFAULT_CATEGORY, categorize
from mnemos.memory.compression import compress, is_meaningful, sanitize
from mnemos.memory.fingerprint import FingerprintGenerator
from mnemos.memory.importance import score_importance
from mnemos.memory.supersession import store_with_supersession
from mnemos.models.audit import MemoryEvent
from mnemos.models.memory import EmbeddingStatus, Memory, StorageVersion
from mnemos.search.embeddings import EmbeddingService
from mnemos.search.vector_search import batch_cosine_similarity


class WriteAction(str, Enum):
    CREATED = "created"
    SUPERSEDED = "superseded"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    FALLBACK = "fallback"


@dataclass
class WriteResult:
    memory_id: Optional[int]
    action: WriteAction
    superseded_count: int = 0
    fingerprint: Optional[str] = None
    reason: Optional[str] = None


def compute_content_hash(content: str) -> str:
    return hashlib.sha256(content.strip().lower().encode("utf-8")).hexdigest()


class StorageWriter:
    """
    Persists one utterance as a compressed, fingerprinted memory.

    Pipeline: sanitize -> compress -> fingerprint/anchors/category/importance
    -> dedup -> supersede or insert -> schedule embedding. Any failure after
    sanitizing downgrades to a plain insert of the sanitized text.
    """

    def __init__(
        self,
        engine: Engine,
        embedding_service: Optional[EmbeddingService] = None,
        fingerprinter: Optional[FingerprintGenerator] = None,
        counter: Optional[TokenCounter] = None,
        use_model: Optional[bool] = None,
    ):
        self.engine = engine
        self.embedding_service = embedding_service
        self.fingerprinter = fingerprinter or FingerprintGenerator()
        self.counter = counter or get_token_counter()
        self.use_model = use_model

    def write(
        self,
        owner_id: str,
        utterance: str,
        response_context: Optional[str] = None,
        category: Optional[str] = None,
    ) -> WriteResult:
        start = time.monotonic()
        sanitized = sanitize(utterance)
        if not is_meaningful(sanitized):
            result = WriteResult(None, WriteAction.REJECTED, reason="nothing meaningful after sanitizing")
        else:
            try:
                result = self._write_intelligent(owner_id, sanitized, response_context, category)
            except Exception as e:
                logger.error(f"Intelligent storage failed for {owner_id}, falling back to plain insert: {e}")
                result = self._write_fallback(owner_id, sanitized, category, reason=str(e))

        self._record_event(owner_id, result, start)
        logger.info(
            f"Memory write for {owner_id}: {result.action.value} id={result.memory_id} "
            f"fingerprint={result.fingerprint} superseded={result.superseded_count}"
        )
        return result

    def _write_intelligent(
        self,
        owner_id: str,
        sanitized: str,
        response_context: Optional[str],
        category: Optional[str],
    ) -> WriteResult:
        compressed = compress(sanitized, response_context, use_model=self.use_model)
        if not compressed.lines:
            return WriteResult(None, WriteAction.SKIPPED, reason="no durable facts")

        content = compressed.content
        fp = self.fingerprinter.generate(content)
        fingerprint = fp.fingerprint if fp.confidence >= settings.FINGERPRINT_MIN_CONFIDENCE else None
        category_name = categorize(content, category)
        importance = score_importance(sanitized, category_name)
        content_hash = compute_content_hash(content)

        with Session(self.engine) as session:
            existing = session.exec(
                select(Memory).where(
                    Memory.owner_id == owner_id,
                    Memory.is_current == True,  # noqa: E712
                    Memory.content_hash == content_hash,
                )
            ).first()
            if existing is not None:
                logger.info(f"Exact duplicate of memory {existing.id} for {owner_id}; nothing written")
                return WriteResult(existing.id, WriteAction.DUPLICATE, fingerprint=fingerprint, reason="exact match")

            vector = self._dedup_embedding(content)
            if vector is not None:
                duplicate = self._find_semantic_duplicate(session, owner_id, content, vector, fingerprint)
                if duplicate is not None:
                    logger.info(f"Semantic duplicate of memory {duplicate.id} for {owner_id}; nothing written")
                    return WriteResult(duplicate.id, WriteAction.DUPLICATE, fingerprint=fingerprint, reason="semantic match")

            fields = dict(
                owner_id=owner_id,
                content=content,
                content_hash=content_hash,
                category_name=category_name,
                token_count=self.counter(content),
                importance=importance.score,
                explicit_recall=importance.explicit_recall,
                storage_version=StorageVersion.INTELLIGENT,
                anchors_json=json.dumps(extract_anchors(content), ensure_ascii=False),
                fingerprint=fingerprint,
                fingerprint_confidence=fp.confidence if fp.fingerprint else None,
                fingerprint_method=fp.method,
            )
            if vector is not None:
                arr = np.array(vector, dtype=np.float32)
                fields.update(
                    embedding=arr.tobytes(),
                    embedding_dims=len(vector),
                    embedding_model=self.embedding_service.model,
                    embedding_status=EmbeddingStatus.READY,
                )

            superseded_ids: list[int] = []
            if fingerprint:
                outcome = store_with_supersession(session, fields, settings.SUPERSESSION_MAX_RETRIES)
                memory = outcome.memory
                superseded_ids = outcome.superseded_ids
            else:
                memory = Memory(**fields)
                session.add(memory)
                session.commit()
                session.refresh(memory)
            memory_id = memory.id

        if vector is None:
            self._schedule_embedding(memory_id, content)

        action = WriteAction.SUPERSEDED if superseded_ids else WriteAction.CREATED
        return WriteResult(memory_id, action, superseded_count=len(superseded_ids), fingerprint=fingerprint)

    def _dedup_embedding(self, content: str) -> Optional[list[float]]:
        if self.embedding_service is None:
            return None
        try:
            return self.embedding_service.embed_text(content, timeout=settings.DEDUP_EMBED_TIMEOUT_SECONDS)
        except MnemosError as e:
            logger.info(f"Dedup embedding unavailable, skipping semantic dedup: {e.message}")
            return None

    def _find_semantic_duplicate(
        self,
        session: Session,
        owner_id: str,
        content: str,
        vector: list[float],
        fingerprint: Optional[str],
    ) -> Optional[Memory]:
        # A fingerprinted fact is an update of its slot, never a merge
        if fingerprint:
            return None

        recent = session.exec(
            select(Memory)
            .where(
                Memory.owner_id == owner_id,
                Memory.is_current == True,  # noqa: E712
                Memory.embedding.is_not(None),
            )
            .order_by(Memory.created_at.desc(), Memory.id.desc())
            .limit(settings.DEDUP_RECENT_LIMIT)
        ).all()

        query_vec = np.array(vector, dtype=np.float32)
        comparable = [m for m in recent if m.embedding_dims == len(vector)]
        if not comparable:
            return None

        matrix = np.array([m.get_embedding() for m in comparable])
        distances = 1.0 - batch_cosine_similarity(query_vec, matrix)
        codes = set(IDENTIFIER_PATTERN.findall(content))

        for idx in np.argsort(distances):
            if distances[idx] >= settings.DEDUP_DISTANCE_THRESHOLD:
                break
            candidate = comparable[idx]
            # Distinct identifier codes make near-identical sentences different facts
            if any(code not in candidate.content for code in codes):
                continue
            return candidate
        return None

    def _write_fallback(self, owner_id: str, sanitized: str, category: Optional[str], reason: str) -> WriteResult:
        with Session(self.engine) as session:
            memory = Memory(
                owner_id=owner_id,
                content=sanitized,
                content_hash=compute_content_hash(sanitized),
                category_name=category or DEFAULT_CATEGORY,
                token_count=self.counter(sanitized),
                storage_version=StorageVersion.FALLBACK,
            )
            session.add(memory)
            session.commit()
            session.refresh(memory)
            memory_id = memory.id

        self._schedule_embedding(memory_id, sanitized)
        return WriteResult(memory_id, WriteAction.FALLBACK, reason=reason)

    def _schedule_embedding(self, memory_id: int, content: str):
        if self.embedding_service is None:
            return
        try:
            self.embedding_service.schedule(memory_id, content)
        except RuntimeError as e:
            # Pool already shut down; the row stays pending for backfill
            logger.warning(f"Could not schedule embedding for memory {memory_id}: {e}")

    def _record_event(self, owner_id: str, result: WriteResult, start: float):
        event = MemoryEvent(
            owner_id=owner_id,
            request_id=get_request_id(),
            action=result.action.value,
            memory_id=result.memory_id,
            fingerprint=result.fingerprint,
            superseded_count=result.superseded_count,
            reason=(result.reason or "")[:500] or None,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        try:
            with Session(self.engine) as session:
                session.add(event)
                session.commit()
        except Exception as e:
            logger.warning(f"Failed to record memory event for {owner_id}: {e}")
