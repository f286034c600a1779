"""State oracle: folds text metrics into a three-line state register.

Each evaluation extracts metrics, diffs them against the scope's previous
snapshot, casts three yin/yang lines, names the resulting trigram
("hexagram") and recomputes the register's positions and movements. Every
pet has its own scope; snapshots and registers persist in storage.
"""

from __future__ import annotations

import copy
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from kore_pet import metrics as _metrics
from kore_pet.config import Settings
from kore_pet.metrics import METRIC_NAMES, NEUTRAL, clamp
from kore_pet.storage import Storage

logger = logging.getLogger(__name__)

YANG = "yang"
YIN = "yin"
GLOBAL_SCOPE = "global"


@dataclass(frozen=True)
class Hexagram:
    id: str
    name: str
    text: str


HEXAGRAMS: dict[tuple[str, str, str], Hexagram] = {
    (YANG, YANG, YANG): Hexagram("qian", "Heaven ☰", "Creative force strong, the system runs smoothly"),
    (YIN, YIN, YIN): Hexagram("kun", "Earth ☷", "Stable and receptive, needs activation"),
    (YANG, YIN, YANG): Hexagram("li", "Fire ☲", "Insight flashes, innovation and stability coexist"),
    (YIN, YANG, YIN): Hexagram("kan", "Water ☵", "Deep thought, a difficulty waits to be broken through"),
    (YANG, YANG, YIN): Hexagram("dui", "Lake ☱", "Communication flows, output quality good"),
    (YIN, YIN, YANG): Hexagram("gen", "Mountain ☶", "Steady and restrained, gathering strength"),
    (YANG, YIN, YIN): Hexagram("zhen", "Thunder ☳", "Breakthrough progress, sharp change"),
    (YIN, YANG, YANG): Hexagram("xun", "Wind ☴", "Gradual improvement, continuous refinement"),
}


def hexagram_for(lines: tuple[str, str, str]) -> Hexagram:
    found = HEXAGRAMS.get(lines)
    if found is not None:
        return found
    pattern = "".join(lines)
    return Hexagram("custom", f"Custom ({pattern})", "The system is in a special state")


# ── Register ───────────────────────────────────────────────────────────


@dataclass
class Dimension:
    value: float
    position: str
    movement: str
    polarity: str = YIN


def _first_position(value: float) -> str:
    if value < -0.5:
        return "lost"
    if value > 0.5:
        return "gained"
    return "neutral"


def _second_position(value: float) -> str:
    if value > 0.7:
        return "imbalanced"
    if value < 0.3:
        return "consolidated"
    return "balanced"


def _third_position(value: float) -> str:
    if value < 0.5:
        return "unstable"
    if value >= 0.9:
        return "settled"
    return "stable"


def _banded(classify: Callable[[float], str], value: float, held: str,
            band: float) -> str:
    """Leave `held` only once the value sits more than `band` inside the new region."""
    new = classify(value)
    if band <= 0 or new == held:
        return new
    if classify(value - band) == new and classify(value + band) == new:
        return new
    return held


@dataclass
class StateRegister:
    first: Dimension = field(default_factory=lambda: Dimension(0.0, "neutral", "static"))
    second: Dimension = field(default_factory=lambda: Dimension(0.5, "balanced", "stable"))
    third: Dimension = field(default_factory=lambda: Dimension(0.5, "stable", "steady"))

    @property
    def polarities(self) -> tuple[str, str, str]:
        return (self.first.polarity, self.second.polarity, self.third.polarity)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateRegister:
        return cls(
            first=Dimension(**data["first"]),
            second=Dimension(**data["second"]),
            third=Dimension(**data["third"]),
        )

    def update(self, delta: dict[str, float], snapshot: dict[str, float],
               lines: tuple[str, str, str], band: float = 0.0) -> None:
        d_innov = delta.get("innovation", 0.0)
        self.first = Dimension(
            value=clamp(d_innov, -1.0, 1.0),
            position=_banded(_first_position, clamp(d_innov, -1.0, 1.0),
                             self.first.position, band),
            movement="dynamic" if abs(d_innov) > 0.2 else "static",
            polarity=lines[0],
        )

        disorder = 1 - snapshot.get("structure", NEUTRAL)
        d_struct = delta.get("structure", 0.0)
        self.second = Dimension(
            value=disorder,
            position=_banded(_second_position, disorder, self.second.position, band),
            movement="restructuring" if abs(d_struct) > 0.3 else "stable",
            polarity=lines[1],
        )

        d_tone = delta.get("tone", 0.0)
        stability = 1 - abs(d_tone)
        self.third = Dimension(
            value=stability,
            position=_banded(_third_position, stability, self.third.position, band),
            movement="fluctuating" if abs(d_tone) > 0.4 else "steady",
            polarity=lines[2],
        )


def interpret(register: StateRegister) -> list[str]:
    first, second, third = register.first, register.second, register.third
    lines = []
    if first.position == "lost":
        lines.append("First line (record): innovation has lost ground; broaden input diversity")
    elif first.position == "gained":
        lines.append("First line (record): innovation gaining, record quality excellent")
    else:
        lines.append("First line (record): innovation in balance, recording steadily")

    if second.position == "imbalanced":
        lines.append("Second line (evolution): structure out of balance, needs rebuilding")
    elif second.position == "consolidated":
        lines.append("Second line (evolution): structure consolidated and orderly")
    else:
        lines.append("Second line (evolution): structure stable, evolution running well")

    if third.position == "unstable":
        lines.append("Third line (judgment): output unstable, judgment thresholds need tuning")
    elif third.position == "settled":
        lines.append("Third line (judgment): output settled, judgment fully reliable")
    else:
        lines.append("Third line (judgment): output stable, judgment reliable")
    return lines


def advise(register: StateRegister) -> list[str]:
    """If/else advice over the register. Always ends with an overall verdict."""
    first, second, third = register.first, register.second, register.third
    advice = []
    if first.position == "lost":
        advice.append("Increase the variety and novelty of recorded behavior")
    if first.movement == "dynamic":
        advice.append("Behavior is shifting sharply; keep the record continuous")
    if second.position == "imbalanced":
        advice.append("Evolution structure is unbalanced; recalibrate evolution parameters")
    if second.movement == "restructuring":
        advice.append("Evolution is restructuring; lower the evolution frequency for now")
    if third.position == "unstable":
        advice.append("Judgment is unstable; adjust the decision thresholds")
    if third.movement == "fluctuating":
        advice.append("Judgment output fluctuates; add consistency checks")

    yang = register.polarities.count(YANG)
    if yang == 3:
        advice.append("Highly active state, suited to creative tasks")
    elif yang == 0:
        advice.append("Inward state, suited to stability work")
    else:
        advice.append("Yin and yang in balance, suited to routine tasks")
    return advice


def health(register: StateRegister) -> dict[str, Any]:
    score = 0.0
    score += 0.33 if register.first.position != "lost" else 0.0
    score += 0.33 if register.second.position != "imbalanced" else 0.0
    score += 0.34 if register.third.position != "unstable" else 0.0
    return {"score": round(score * 100), "status": _health_status(score)}


def _health_status(score: float) -> str:
    if score > 0.8:
        return "excellent"
    if score > 0.6:
        return "good"
    if score > 0.4:
        return "fair"
    return "poor"


# ── Feedback ───────────────────────────────────────────────────────────


@dataclass
class Feedback:
    delta: dict[str, float]
    hexagram: Hexagram
    interpretation: list[str]
    register: StateRegister
    advice: list[str]
    layer: str
    timestamp: float = field(default_factory=time.time)
    structure_score: float = NEUTRAL
    yin_yang_balance: float = NEUTRAL
    tone_direction: int = 0
    coherence: float = NEUTRAL

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_feedback(timestamp: float | None = None) -> Feedback:
    """What evaluate() returns when anything inside it fails."""
    return Feedback(
        delta=dict.fromkeys(METRIC_NAMES, 0.0),
        hexagram=HEXAGRAMS[(YIN, YIN, YIN)],
        interpretation=["Default state, awaiting activation"],
        register=StateRegister(),
        advice=["Oracle initializing, awaiting activation"],
        layer="DEFAULT",
        timestamp=time.time() if timestamp is None else timestamp,
    )


# ── Oracle ─────────────────────────────────────────────────────────────


class StateOracle:
    """Per-scope metric snapshots and state registers, persisted in storage."""

    def __init__(self, storage: Storage, settings: Settings,
                 clock: Callable[[], float] = time.time) -> None:
        self._storage = storage
        self._settings = settings
        self._clock = clock

    def state(self, scope: str = GLOBAL_SCOPE) -> tuple[dict[str, float], StateRegister]:
        """(snapshot, register) for a scope. Fresh scopes start neutral."""
        stored = self._storage.load_oracle_state(scope)
        if stored is None:
            return dict.fromkeys(METRIC_NAMES, NEUTRAL), StateRegister()
        snapshot, register = stored
        return snapshot, StateRegister.from_dict(register)

    def evaluate(self, text: str, layer: str = "L3",
                 scope: str = GLOBAL_SCOPE) -> Feedback:
        now = self._clock()
        try:
            return self._evaluate(text, layer, scope, now)
        except Exception:
            logger.warning("oracle %s: evaluation failed, using default feedback",
                           scope, exc_info=True)
            return default_feedback(now)

    def _evaluate(self, text: str, layer: str, scope: str, now: float) -> Feedback:
        current = _metrics.extract(text)
        previous, register = self.state(scope)
        delta = {
            name: current[name] - previous.get(name, NEUTRAL)
            for name in METRIC_NAMES
        }
        lines = (
            YANG if delta["innovation"] > 0 else YIN,
            YANG if current["repetition"] < self._settings.repetition_threshold else YIN,
            YANG if current["tone"] > self._settings.tone_threshold else YIN,
        )
        hexagram = hexagram_for(lines)
        register.update(delta, current, lines, self._settings.oracle_hysteresis)
        self._storage.save_oracle_state(scope, current, register.to_dict(), now)
        logger.debug("oracle %s: %s layer -> %s", scope, layer, hexagram.id)

        return Feedback(
            delta=delta,
            hexagram=hexagram,
            interpretation=interpret(register),
            register=copy.deepcopy(register),
            advice=advise(register),
            layer=layer,
            timestamp=now,
            structure_score=_metrics.structure_score(text),
            yin_yang_balance=_metrics.yin_yang_balance(text),
            tone_direction=_metrics.tone_direction(current["tone"]),
            coherence=current["coherence"],
        )

    def advice(self, scope: str = GLOBAL_SCOPE) -> list[str]:
        return advise(self.state(scope)[1])

    def summary(self, scope: str = GLOBAL_SCOPE) -> dict[str, Any]:
        """Current hexagram, register, snapshot and health of one scope."""
        snapshot, register = self.state(scope)
        return {
            "scope": scope,
            "hexagram": asdict(hexagram_for(register.polarities)),
            "register": register.to_dict(),
            "snapshot": snapshot,
            "health": health(register),
        }

    def system_health(self) -> dict[str, Any]:
        """Health averaged over every scope that has been evaluated."""
        per_scope = {
            scope: health(self.state(scope)[1])
            for scope in self._storage.oracle_scopes()
        }
        if not per_scope:
            baseline = health(StateRegister())
            return {**baseline, "scopes": 0, "per_scope": {}}
        mean = sum(h["score"] for h in per_scope.values()) / len(per_scope)
        return {
            "score": round(mean),
            "status": _health_status(mean / 100),
            "scopes": len(per_scope),
            "per_scope": per_scope,
        }

    def reset(self, scope: str = GLOBAL_SCOPE) -> bool:
        """Operator reset: forget the scope's snapshot and register."""
        removed = self._storage.delete_oracle_state(scope)
        logger.info("oracle %s: reset", scope)
        return removed
