"""
Transactional supersession.

A fact with a fingerprint replaces the owner's current fact for that slot in a
single transaction: the old row is retired, the new row becomes current with a
strictly later created_at, and the old row points forward to it. The partial
unique index `ix_one_current_fact` rejects a concurrent writer that lost the
race; that writer re-reads and retries.
"""
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, List

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from mnemos.exceptions import DataIntegrityError
from mnemos.logging import logger
from mnemos.models.base import utc, utcnow
from mnemos.models.memory import Memory


@dataclass
class SupersessionResult:
    memory: Memory
    superseded_ids: List[int] = field(default_factory=list)


def _current_for_slot(session: Session, owner_id: str, fingerprint: str) -> List[Memory]:
    return session.exec(
        select(Memory).where(
            Memory.owner_id == owner_id,
            Memory.fingerprint == fingerprint,
            Memory.is_current == True,  # noqa: E712
        )
    ).all()


def store_with_supersession(session: Session, fields: dict[str, Any], max_retries: int = 3) -> SupersessionResult:
    """
    Insert a fingerprinted memory, retiring the current one for the same slot.
    `fields` are the Memory constructor arguments; a fresh row is built per attempt.
    """
    owner_id = fields["owner_id"]
    fingerprint = fields["fingerprint"]

    for attempt in range(max_retries + 1):
        try:
            previous = _current_for_slot(session, owner_id, fingerprint)
            now = utcnow()
            created_at = now
            for old in previous:
                old.is_current = False
                old.superseded_at = now
                session.add(old)
                created_at = max(created_at, utc(old.created_at) + timedelta(microseconds=1))
            # Retire first so the partial unique index sees a single current row
            session.flush()

            memory = Memory(**fields)
            memory.is_current = True
            memory.created_at = created_at
            memory.updated_at = created_at
            session.add(memory)
            session.flush()

            for old in previous:
                old.superseded_by = memory.id
                session.add(old)
            session.commit()
            session.refresh(memory)

            if previous:
                logger.info(
                    f"Superseded {[m.id for m in previous]} with memory {memory.id} "
                    f"for {owner_id}/{fingerprint}"
                )
            return SupersessionResult(memory=memory, superseded_ids=[m.id for m in previous])
        except IntegrityError as e:
            session.rollback()
            logger.warning(
                f"Supersession conflict for {owner_id}/{fingerprint} "
                f"(attempt {attempt + 1}/{max_retries + 1}): {e.orig}"
            )

    raise DataIntegrityError(f"Could not supersede {fingerprint} for {owner_id} after {max_retries + 1} attempts")


def get_supersession_chain(session: Session, memory_id: int) -> List[Memory]:
    """Full history of a fact slot, oldest first, for any memory in the chain."""
    memory = session.get(Memory, memory_id)
    if memory is None:
        return []

    seen = {memory.id}
    root = memory
    while True:
        predecessor = session.exec(select(Memory).where(Memory.superseded_by == root.id)).first()
        if predecessor is None or predecessor.id in seen:
            break
        seen.add(predecessor.id)
        root = predecessor

    chain = [root]
    visited = {root.id}
    node = root
    while node.superseded_by is not None and node.superseded_by not in visited:
        nxt = session.get(Memory, node.superseded_by)
        if nxt is None:
            break
        chain.append(nxt)
        visited.add(nxt.id)
        node = nxt
    return chain


def cleanup_duplicate_current_facts(session: Session) -> int:
    """
    Repair rows written before the unique index existed: for every
    (owner, fingerprint) with several current rows keep the newest.
    Returns the number of rows retired.
    """
    groups = session.exec(
        select(Memory.owner_id, Memory.fingerprint)
        .where(Memory.is_current == True, Memory.fingerprint.is_not(None))  # noqa: E712
        .group_by(Memory.owner_id, Memory.fingerprint)
        .having(func.count(Memory.id) > 1)
    ).all()

    retired = 0
    now = utcnow()
    for owner_id, fingerprint in groups:
        rows = session.exec(
            select(Memory)
            .where(
                Memory.owner_id == owner_id,
                Memory.fingerprint == fingerprint,
                Memory.is_current == True,  # noqa: E712
            )
            .order_by(Memory.created_at.desc(), Memory.id.desc())
        ).all()
        keeper = rows[0]
        for stale in rows[1:]:
            stale.is_current = False
            stale.superseded_by = keeper.id
            stale.superseded_at = now
            session.add(stale)
            retired += 1
        logger.info(f"Kept memory {keeper.id} as current for {owner_id}/{fingerprint}, retired {len(rows) - 1}")

    session.commit()
    return retired
