"""Judgment engine (L3a). Turns a batch of unprocessed behavior into one Judgment.

A cycle either cools down, finds nothing to do, or writes exactly one
Judgment and marks exactly the events it read. Events are counted toward at
most one cycle: the read, the insert and the mark share one transaction.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

from kore_pet.config import ActionWeightTable, Settings
from kore_pet.errors import PetNotFound
from kore_pet.models import BehaviorEvent, DescriptorEvolution, Judgment, Pet
from kore_pet.storage import Storage

logger = logging.getLogger(__name__)

COOLING_DOWN = "cooling_down"
IDLE = "idle"
JUDGED = "judged"

EvolveFn = Callable[[Pet, dict[str, Any]], Awaitable[DescriptorEvolution]]


@dataclass
class JudgmentOutcome:
    status: str
    judgment: Judgment | None = None
    evolution: DescriptorEvolution | None = None

    @property
    def evolved(self) -> bool:
        return self.evolution is not None


# ── Pure scoring ───────────────────────────────────────────────────────


def accumulated_weight(events: Iterable[BehaviorEvent], table: ActionWeightTable,
                       rarity_multiplier: float = 1.0) -> float:
    """Σ(base × multiplier) over events, scaled by the rarity multiplier."""
    total = sum(table.lookup(e.action_type).weight for e in events)
    return total * rarity_multiplier


def behavior_summary(events: list[BehaviorEvent]) -> str:
    actions = list(dict.fromkeys(e.action_type for e in events))
    targets = list(dict.fromkeys(e.target for e in events if e.target))
    summary = f"performed {', '.join(actions)}"
    if targets:
        summary += f" involving {', '.join(targets)}"
    return summary


def evolution_clauses(weight: float, distinct_actions: int,
                      last_evolution_at: float | None, now: float,
                      settings: Settings) -> dict[str, bool]:
    """Each trigger condition on its own. All three must hold to evolve."""
    if last_evolution_at is None:
        rested = True
    else:
        rested = now - last_evolution_at >= settings.min_time_since_evolution
    return {
        "weight": weight >= settings.min_weight,
        "unique_actions": distinct_actions >= settings.min_unique_actions,
        "evolution_cooldown": rested,
    }


def assess(pet: Pet, events: list[BehaviorEvent], settings: Settings,
           now: float) -> tuple[float, bool, dict[str, Any]]:
    """Weight, decision and audit detail for one batch of events."""
    multiplier = settings.rarity_multiplier(pet.rarity)
    weight = accumulated_weight(events, settings.action_weights, multiplier)
    counts = Counter(e.action_type for e in events)
    clauses = evolution_clauses(weight, len(counts), pet.last_evolution_at,
                                now, settings)
    detail = {
        "accumulated_weight": weight,
        "action_counts": dict(counts),
        "unique_targets": list(dict.fromkeys(e.target for e in events)),
        "rarity_multiplier": multiplier,
        "behavior_summary": behavior_summary(events),
        "clauses": clauses,
    }
    return weight, all(clauses.values()), detail


# ── Engine ─────────────────────────────────────────────────────────────


class JudgmentEngine:
    """Runs judgment cycles. Cycles for the same pet never overlap."""

    def __init__(self, storage: Storage, settings: Settings,
                 evolve: EvolveFn | None = None,
                 clock: Callable[[], float] = time.time) -> None:
        self._storage = storage
        self._settings = settings
        self._evolve = evolve
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: Counter[str] = Counter()
        self._loop: asyncio.AbstractEventLoop | None = None

    def _acquire(self, pet_id: str) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if loop is not self._loop:
            self._locks.clear()
            self._users.clear()
            self._loop = loop
        lock = self._locks.get(pet_id)
        if lock is None:
            lock = self._locks[pet_id] = asyncio.Lock()
        self._users[pet_id] += 1
        return lock

    def _release(self, pet_id: str) -> None:
        """Forget the pet's lock once nobody holds or waits on it."""
        self._users[pet_id] -= 1
        if self._users[pet_id] <= 0:
            del self._users[pet_id]
            self._locks.pop(pet_id, None)

    @property
    def active_pets(self) -> int:
        """Pets with a judgment running or waiting."""
        return len(self._locks)

    async def judge(self, pet_id: str) -> JudgmentOutcome:
        lock = self._acquire(pet_id)
        try:
            async with lock:
                return await self._judge_locked(pet_id)
        finally:
            self._release(pet_id)

    async def _judge_locked(self, pet_id: str) -> JudgmentOutcome:
        outcome, pet = self._run_cycle(pet_id)
        if outcome.judgment is None or not outcome.judgment.should_evolve:
            return outcome
        if self._evolve is None:
            logger.debug("pet %s: evolution authorized, no evolver attached", pet_id)
            return outcome
        try:
            outcome.evolution = await self._evolve(pet, outcome.judgment.detail)
        except Exception:
            logger.exception("pet %s: evolution failed", pet_id)
        return outcome

    def _run_cycle(self, pet_id: str) -> tuple[JudgmentOutcome, Pet | None]:
        now = self._clock()
        with self._storage.transaction():
            pet = self._storage.load_pet(pet_id)
            if pet is None:
                raise PetNotFound(pet_id)

            last = self._storage.last_judgment_time(pet_id)
            if last is not None and now - last < self._settings.judgment_cooldown:
                logger.debug("pet %s: judgment cooling down", pet_id)
                return JudgmentOutcome(COOLING_DOWN), pet

            events = self._storage.unprocessed_events(pet_id)
            if not events:
                logger.debug("pet %s: nothing to judge", pet_id)
                return JudgmentOutcome(IDLE), pet

            weight, should_evolve, detail = assess(pet, events, self._settings, now)
            judgment = Judgment(
                pet_id=pet_id,
                behavior_count=len(events),
                accumulated_weight=weight,
                should_evolve=should_evolve,
                detail=detail,
                timestamp=now,
            )
            self._storage.save_judgment(judgment)
            self._storage.mark_processed([e.id for e in events])

        logger.info("pet %s: judged %d events, weight=%.2f, evolve=%s",
                    pet_id, len(events), weight, should_evolve)
        return JudgmentOutcome(JUDGED, judgment), pet
