"""Core data models. A Pet evolves; its history is append-only."""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

STAT_NAMES = ("health", "attack", "defense", "speed", "magic")


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


class Rarity(str, Enum):
    N = "N"
    R = "R"
    SR = "SR"
    SSR = "SSR"
    SSS = "SSS"

    @property
    def rank(self) -> int:
        return list(Rarity).index(self)

    # str comparisons would be lexical; rarity compares by tier.
    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Rarity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Rarity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Rarity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Rarity):
            return NotImplemented
        return self.rank >= other.rank


class TraitKind(str, Enum):
    PASSIVE = "passive"
    ACTIVE = "active"
    TRIGGER = "trigger"


@dataclass
class Stats:
    health: int = 50
    attack: int = 10
    defense: int = 8
    speed: int = 12
    magic: int = 10

    def as_dict(self) -> dict[str, int]:
        return asdict(self)

    def apply(self, deltas: dict[str, int]) -> Stats:
        """Return a copy with additive deltas applied. Unknown keys are ignored."""
        values = self.as_dict()
        for name, delta in deltas.items():
            if name in values:
                values[name] += int(delta)
        return Stats(**values)


@dataclass
class Pet:
    """A pet. Stats change only through traits, the descriptor only through evolution."""

    name: str
    species: str = ""
    stats: Stats = field(default_factory=Stats)
    rarity: Rarity = Rarity.N
    level: int = 1
    bond: int = 0
    descriptor: str = ""
    traits: list[str] = field(default_factory=list)  # special-trait tags
    last_evolution_at: float | None = None
    created_at: float = field(default_factory=time.time)
    id: str = field(default_factory=_new_id)


@dataclass
class BehaviorEvent:
    """One recorded action, waiting for a judgment cycle."""

    pet_id: str
    action_type: str
    target: str = ""
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    processed: bool = False
    id: str = field(default_factory=_new_id)


@dataclass(frozen=True)
class Judgment:
    """Audit record of one judgment cycle. Never updated."""

    pet_id: str
    behavior_count: int
    accumulated_weight: float
    should_evolve: bool
    detail: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=_new_id)


@dataclass(frozen=True)
class DescriptorEvolution:
    pet_id: str
    old_descriptor: str
    new_descriptor: str
    content: dict[str, Any] = field(default_factory=dict)
    stats: dict[str, int] = field(default_factory=dict)  # stats when it happened
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=_new_id)


@dataclass
class Trait:
    """A solidified numeric modifier. Deactivated under cap pressure, never deleted."""

    pet_id: str
    name: str
    kind: TraitKind = TraitKind.PASSIVE
    description: str = ""
    effects: dict[str, int] = field(default_factory=dict)
    active: bool = True
    created_at: float = field(default_factory=time.time)
    id: str = field(default_factory=_new_id)


@dataclass(frozen=True)
class EvolutionCandidate:
    target: str
    rarity_shift: Rarity
    tags: list[str]
    projected_delta: dict[str, int]
    new_traits: list[str]
    score: float


@dataclass
class Trace:
    """Operation trace (opt-in observability)."""

    operation: str
    input_text: str = ""
    output_text: str = ""
    source: str = ""
    duration_ms: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    id: str = field(default_factory=_new_id)
