from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, List


@dataclass(frozen=True)
class CanonicalItem:
    location: str
    sku: str
    name: str
    qty_ordered: int
    qty_picked: int
    image: str = ''

    @property
    def remaining(self) -> int:
        return max(0, self.qty_ordered - self.qty_picked)


@dataclass(frozen=True)
class DisplayModel:
    batch_id: Optional[str]
    current_item: Optional[CanonicalItem]
    progress_percent: int
    next_locations: List[str]
    total_ordered: int
    total_remaining: int
    picklist_id: Optional[str] = None

    def to_dict(self):
        out = asdict(self)
        if self.current_item is not None:
            out['current_item']['remaining'] = self.current_item.remaining
        return out


@dataclass
class BatchFeed:
    """Raw material for one batch, as returned by the gateway."""
    batch_id: str
    batch_status: str = ''
    picklist_id: Optional[str] = None
    open_picklists: int = 0
    items: list = field(default_factory=list)


# Closed set of per-batch poll outcomes consumed by the detector.

@dataclass(frozen=True)
class Ok:
    model: DisplayModel
    open_picklists: int = 1


@dataclass(frozen=True)
class Done:
    reason: str = 'upstream'


@dataclass(frozen=True)
class Pending:
    reason: str = 'empty'


@dataclass(frozen=True)
class Failed:
    error: Exception

    @property
    def kind(self):
        return getattr(self.error, 'kind', 'unknown')


class Phase(str, Enum):
    LOADING = 'LOADING'
    ACTIVE = 'ACTIVE'
    COMPLETED = 'COMPLETED'
    EMPTY = 'EMPTY'


class EventKind(str, Enum):
    ACTIVATED = 'activated'
    PICKLIST_COMPLETED = 'picklistCompleted'
    BATCH_COMPLETED = 'batchCompleted'
    BECAME_EMPTY = 'becameEmpty'


@dataclass(frozen=True)
class PhaseEvent:
    kind: EventKind
    batch_id: Optional[str] = None
    picklist_id: Optional[str] = None
    at: float = 0.0

    def to_dict(self):
        return {'type': 'event', 'event': self.kind.value, 'batch_id': self.batch_id, 'picklist_id': self.picklist_id}
