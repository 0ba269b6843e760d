import json
from dataclasses import dataclass, field
from typing import List, Optional

from mnemos.context.budget import ContextBundle
from mnemos.logging import logger
from mnemos.repair.primitives import (
    CharacterPreservationPrimitive,
    ListCompletenessPrimitive,
    RepairRecord,
    TemporalArithmeticPrimitive,
)


@dataclass
class RepairOutcome:
    final_answer: str
    records: List[RepairRecord] = field(default_factory=list)

    @property
    def fired(self) -> List[str]:
        return [r.primitive for r in self.records if r.fired]


def default_primitives() -> list:
    return [TemporalArithmeticPrimitive(), ListCompletenessPrimitive(), CharacterPreservationPrimitive()]


class RepairLayer:
    """
    Runs the primitives in order over a draft answer. A primitive that raises
    is recorded as not fired and leaves the draft as it was.
    """

    def __init__(self, primitives: Optional[list] = None):
        self.primitives = primitives if primitives is not None else default_primitives()

    def repair(self, draft: str, bundle: ContextBundle, query: str) -> RepairOutcome:
        text = draft or ""
        records: List[RepairRecord] = []
        for primitive in self.primitives:
            try:
                result = primitive.apply(text, bundle, query)
                text = result.text
                record = result.record
            except Exception as e:
                logger.error(f"Repair primitive {primitive.name} failed: {e}")
                record = RepairRecord(primitive.name, False, "error")
            records.append(record)
            logger.info(f"repair_primitive {json.dumps(record.to_dict(), ensure_ascii=False, default=str)}")
        return RepairOutcome(final_answer=text, records=records)
