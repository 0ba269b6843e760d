"""
MemoryEngine: the surface the chat orchestrator talks to.

The orchestrator records each user utterance, asks for a context bundle before
calling the model, and hands the model's draft back for repair.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from mnemos import db
from mnemos.context.budget import ContextBudgeter, ContextBundle
from mnemos.context.tokens import TokenCounter, get_token_counter
from mnemos.llm import openai_client
from mnemos.logging import logger, request_scope
from mnemos.memory.fingerprint import FingerprintGenerator
from mnemos.memory.storage import StorageWriter, WriteResult
from mnemos.memory.supersession import get_supersession_chain
from mnemos.models.base import utc
from mnemos.models.memory import Memory
from mnemos.privacy import redact_pii
from mnemos.repair.layer import RepairLayer, RepairOutcome
from mnemos.search.embeddings import EmbedFn, EmbeddingService
from mnemos.search.retrieval import RetrievalEngine, render_memory_line, render_memory_section


@dataclass
class MemorySummary:
    id: int
    content: str
    category_name: str
    created_at: datetime
    importance: float
    is_current: bool = True
    fingerprint: Optional[str] = None

    @classmethod
    def from_memory(cls, memory: Memory) -> "MemorySummary":
        return cls(
            id=memory.id,
            content=redact_pii(memory.content),
            category_name=memory.category_name,
            created_at=utc(memory.created_at),
            importance=memory.importance,
            is_current=memory.is_current,
            fingerprint=memory.fingerprint,
        )


class MemoryEngine:
    def __init__(
        self,
        engine: Optional[Engine] = None,
        embed_fn: Optional[EmbedFn] = None,
        classifier=None,
        counter: Optional[TokenCounter] = None,
        use_model: Optional[bool] = None,
        create_tables: bool = True,
    ):
        self.engine = engine or db.engine
        if create_tables:
            # Raises ConfigurationError when the store is unreachable
            db.init_db(self.engine)

        self.counter = counter or get_token_counter()
        self.embeddings: Optional[EmbeddingService] = None
        if embed_fn is not None or openai_client.is_configured():
            self.embeddings = EmbeddingService(self.engine, embed_fn=embed_fn)
        else:
            logger.warning("No embedding provider configured; retrieval will rank by keywords")

        fingerprinter = FingerprintGenerator(
            classifier=classifier,
            use_model=False if use_model is False else None,
        )
        self.writer = StorageWriter(
            self.engine,
            embedding_service=self.embeddings,
            fingerprinter=fingerprinter,
            counter=self.counter,
            use_model=use_model,
        )
        self.retriever = RetrievalEngine(self.engine, self.embeddings, counter=self.counter)
        self.budgeter = ContextBudgeter(counter=self.counter)
        self.repairer = RepairLayer()

    def record_utterance(self, owner_id: str, text: str, meta: Optional[dict[str, Any]] = None) -> WriteResult:
        meta = meta or {}
        with request_scope(meta.get("request_id")):
            return self.writer.write(
                owner_id,
                text,
                response_context=meta.get("response_context"),
                category=meta.get("category"),
            )

    def query(
        self,
        owner_id: str,
        query_text: str,
        token_budget: Optional[int] = None,
        category_hint: Optional[str] = None,
    ) -> ContextBundle:
        return self.assemble_context(owner_id, query_text, token_budget=token_budget, category_hint=category_hint)

    def assemble_context(
        self,
        owner_id: str,
        query_text: str,
        document: str = "",
        vault: str = "",
        external: str = "",
        token_budget: Optional[int] = None,
        category_hint: Optional[str] = None,
    ) -> ContextBundle:
        memory_ceiling = self.budgeter.ceilings["memory"]
        budget = memory_ceiling if token_budget is None else min(token_budget, memory_ceiling)

        result = self.retriever.retrieve(owner_id, query_text, token_budget=budget, category=category_hint)
        bundle = self.budgeter.assemble(
            memory=render_memory_section(result.candidates),
            document=document,
            vault=vault,
            external=external,
            memory_candidates=result.candidates,
        )
        # Repair must only see memories that survived truncation
        memory_text = bundle.section("memory").text
        bundle.memory_candidates = [c for c in result.candidates if render_memory_line(c) in memory_text]
        return bundle

    def repair(self, draft_answer: str, bundle: ContextBundle, query_text: str) -> RepairOutcome:
        return self.repairer.repair(draft_answer, bundle, query_text)

    def list_memories(self, owner_id: str, limit: int = 100, include_superseded: bool = False) -> List[MemorySummary]:
        with Session(self.engine) as session:
            stmt = select(Memory).where(Memory.owner_id == owner_id)
            if not include_superseded:
                stmt = stmt.where(Memory.is_current == True)  # noqa: E712
            rows = session.exec(stmt.order_by(Memory.created_at.desc(), Memory.id.desc()).limit(limit)).all()
            return [MemorySummary.from_memory(m) for m in rows]

    def history(self, owner_id: str, memory_id: int) -> List[MemorySummary]:
        with Session(self.engine) as session:
            chain = get_supersession_chain(session, memory_id)
            return [MemorySummary.from_memory(m) for m in chain if m.owner_id == owner_id]

    def stats(self, owner_id: str) -> dict[str, Any]:
        with Session(self.engine) as session:
            total = session.exec(select(func.count(Memory.id)).where(Memory.owner_id == owner_id)).one()
            current = session.exec(
                select(func.count(Memory.id)).where(Memory.owner_id == owner_id, Memory.is_current == True)  # noqa: E712
            ).one()
            by_status = session.exec(
                select(Memory.embedding_status, func.count(Memory.id))
                .where(Memory.owner_id == owner_id)
                .group_by(Memory.embedding_status)
            ).all()
            by_category = session.exec(
                select(Memory.category_name, func.count(Memory.id))
                .where(Memory.owner_id == owner_id, Memory.is_current == True)  # noqa: E712
                .group_by(Memory.category_name)
            ).all()

        return {
            "total": total,
            "current": current,
            "superseded": total - current,
            "embedding_status": {status.value: count for status, count in by_status},
            "categories": dict(by_category),
        }

    def drain(self, timeout: Optional[float] = None) -> bool:
        return self.embeddings.drain(timeout) if self.embeddings else True

    def close(self):
        if self.embeddings:
            self.embeddings.drain()
            self.embeddings.shutdown()
