"""
Assignment candidates - a request a dispatcher can assign.

A candidate is either still a raw slot in an establishment's request queue,
or an already persisted delivery waiting for a courier.
"""
import enum
from dataclasses import dataclass, field
from typing import Any, Union


class CandidateProvenance(str, enum.Enum):
    QUEUED = "queued"
    PERSISTED = "persisted"


@dataclass(frozen=True)
class QueuedCandidate:
    establishment_id: int
    slot_index: int
    slot_id: str
    raw_payload: dict[str, Any] = field(default_factory=dict, compare=False)

    provenance = CandidateProvenance.QUEUED

    def reference(self) -> dict[str, Any]:
        return {
            "provenance": self.provenance.value,
            "establishment_id": self.establishment_id,
            "slot_index": self.slot_index,
            "slot_id": self.slot_id,
        }


@dataclass(frozen=True)
class PersistedCandidate:
    delivery_id: int

    provenance = CandidateProvenance.PERSISTED

    def reference(self) -> dict[str, Any]:
        return {"provenance": self.provenance.value, "delivery_id": self.delivery_id}


Candidate = Union[QueuedCandidate, PersistedCandidate]
