"""PetEngine: the façade. One SQLite file = one world of pets.

API:
    engine.create_pet(name, ...)             — a new pet
    await engine.record_behavior(pet, act)   — something happened; judgment runs later
    await engine.judge_pet(pet)              — run a judgment cycle now
    await engine.drain()                     — wait for scheduled judgments
    engine.preview_evolution(pet, context)   — rank possible evolution forms
    engine.feedback(text, layer, pet)        — run text through the state oracle
    engine.oracle_state(pet) / system_health() / reset_oracle(pet)
    engine.sweep()                           — purge stale processed behavior
    engine.traces()                          — operation traces (enable_traces=True)
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Callable, Mapping

from kore_pet import paths
from kore_pet.behavior import BehaviorLog
from kore_pet.config import Settings
from kore_pet.descriptor import DescriptorGenerator
from kore_pet.errors import PetNotFound
from kore_pet.generators import GenerateFn, GeneratorClient
from kore_pet.hints import Hints
from kore_pet.judgment import JudgmentEngine, JudgmentOutcome
from kore_pet.models import (
    BehaviorEvent,
    DescriptorEvolution,
    EvolutionCandidate,
    Judgment,
    Pet,
    Rarity,
    Stats,
    Trace,
    Trait,
)
from kore_pet.oracle import GLOBAL_SCOPE, Feedback, StateOracle
from kore_pet.scheduler import JudgmentScheduler
from kore_pet.storage import Storage
from kore_pet.traits import TraitSolidifier


class PetEngine:
    """Behavior in, evolution out.

    Recording behavior schedules a judgment for that pet in the background;
    effects of an evolution are visible only after the scheduled run (see
    drain()).
    """

    def __init__(self, path: str | Path = "pets.db",
                 settings: Settings | None = None,
                 generate: GenerateFn | None = None,
                 clock: Callable[[], float] = time.time,
                 enable_traces: bool = False,
                 _storage: Storage | None = None) -> None:
        self._storage = _storage or Storage(path)
        self._settings = settings or Settings()
        self._clock = clock
        self._enable_traces = enable_traces

        client = GeneratorClient(generate, timeout=self._settings.generator_timeout)
        self._behavior = BehaviorLog(self._storage, self._settings, clock)
        self._oracle = StateOracle(self._storage, self._settings, clock)
        self._solidifier = TraitSolidifier(self._storage, self._settings, client,
                                           self._oracle, clock)
        self._descriptor = DescriptorGenerator(self._storage, self._settings, client,
                                               self._oracle, self._solidify, clock)
        self._judgment = JudgmentEngine(self._storage, self._settings,
                                        self._evolve, clock)
        self._scheduler = JudgmentScheduler(self.judge_pet)

    @classmethod
    def from_config(cls, config_path: str | Path | None = None,
                    **kwargs: Any) -> PetEngine:
        """Engine with Settings.load(): kore_pet.toml plus KORE_PET_* overrides."""
        return cls(settings=Settings.load(config_path), **kwargs)

    @property
    def settings(self) -> Settings:
        return self._settings

    # ── pets ───────────────────────────────────────────────────────────

    def create_pet(self, name: str, species: str = "",
                   rarity: Rarity | str = Rarity.N,
                   stats: Stats | Mapping[str, int] | None = None,
                   level: int = 1, bond: int = 0, descriptor: str = "",
                   traits: list[str] | None = None) -> Pet:
        if not isinstance(stats, Stats):
            stats = Stats(**dict(stats or {}))
        pet = Pet(
            name=name,
            species=species,
            stats=stats,
            rarity=Rarity(rarity),
            level=level,
            bond=bond,
            descriptor=descriptor[:self._settings.max_prompt_length],
            traits=list(traits or []),
            created_at=self._clock(),
        )
        self._storage.save_pet(pet)
        return pet

    def pet(self, pet_id: str) -> Pet:
        pet = self._storage.load_pet(pet_id)
        if pet is None:
            raise PetNotFound(pet_id)
        return pet

    def pets(self) -> list[Pet]:
        return self._storage.all_pets()

    # ── behavior ───────────────────────────────────────────────────────

    async def record_behavior(self, pet_id: str, action_type: str,
                              target: str = "",
                              context: dict[str, Any] | None = None) -> BehaviorEvent:
        """Record an action and schedule a judgment. Does not wait for it."""
        t0 = time.time()
        self.pet(pet_id)
        event = self._behavior.record(pet_id, action_type, target, context)
        self._trace("record", f"{action_type} {target}".strip(), event.id, pet_id, t0)
        self._scheduler.submit(pet_id)
        return event

    def behavior(self, pet_id: str, processed: bool | None = None) -> list[BehaviorEvent]:
        return self._storage.events(pet_id, processed)

    def sweep(self) -> int:
        """Purge stale processed behavior for all pets. Returns how many."""
        return self._behavior.sweep()

    # ── judgment / evolution ───────────────────────────────────────────

    async def judge_pet(self, pet_id: str) -> JudgmentOutcome:
        t0 = time.time()
        outcome = await self._judgment.judge(pet_id)
        detail = ""
        if outcome.judgment is not None:
            detail = (f"weight={outcome.judgment.accumulated_weight:.2f} "
                      f"evolve={outcome.judgment.should_evolve}")
        self._trace("judge", detail, outcome.status, pet_id, t0)
        return outcome

    async def drain(self) -> None:
        """Wait for every scheduled judgment (and the evolutions it triggers)."""
        await self._scheduler.drain()

    async def _evolve(self, pet: Pet, detail: dict[str, Any]) -> DescriptorEvolution:
        t0 = time.time()
        record = await self._descriptor.evolve(pet, detail)
        self._trace("evolve", record.old_descriptor, record.new_descriptor, pet.id, t0)
        return record

    async def _solidify(self, pet: Pet, content: dict[str, Any],
                        hints: Hints | None) -> list[Trait]:
        t0 = time.time()
        traits = await self._solidifier.solidify(pet, content, hints)
        self._trace("solidify", content.get("evolution_description", ""),
                    ", ".join(t.name for t in traits), pet.id, t0)
        return traits

    def judgments(self, pet_id: str, limit: int = 100) -> list[Judgment]:
        return self._storage.load_judgments(pet_id, limit)

    def evolutions(self, pet_id: str, limit: int = 10) -> list[DescriptorEvolution]:
        return self._storage.load_evolutions(pet_id, limit)

    def traits(self, pet_id: str, active_only: bool = True) -> list[Trait]:
        return self._storage.load_traits(pet_id, active_only)

    def preview_evolution(self, pet_id: str,
                          context: Mapping[str, Any] | None = None) -> list[EvolutionCandidate]:
        return paths.score(self.pet(pet_id), context)

    # ── oracle ─────────────────────────────────────────────────────────

    def feedback(self, text: str, layer: str = "L3",
                 pet_id: str | None = None) -> Feedback:
        return self._oracle.evaluate(text, layer, pet_id or GLOBAL_SCOPE)

    def oracle_state(self, pet_id: str | None = None) -> dict[str, Any]:
        return self._oracle.summary(pet_id or GLOBAL_SCOPE)

    def system_health(self) -> dict[str, Any]:
        return self._oracle.system_health()

    def reset_oracle(self, pet_id: str | None = None) -> bool:
        return self._oracle.reset(pet_id or GLOBAL_SCOPE)

    # ── traces (observability) ─────────────────────────────────────────

    def _trace(self, operation: str, input_text: str,
               output_text: str, source: str, t0: float) -> None:
        if not self._enable_traces:
            return
        trace = Trace(
            operation=operation,
            input_text=str(input_text)[:500],
            output_text=str(output_text)[:500],
            source=source or "",
            duration_ms=(time.time() - t0) * 1000,
        )
        self._storage.save_trace(trace)

    def traces(self, operation: str | None = None,
               source: str | None = None,
               limit: int = 100) -> list[Trace]:
        return self._storage.load_traces(
            operation=operation, source=source, limit=limit,
        )

    # ── utilities ──────────────────────────────────────────────────────

    def stats(self) -> dict[str, int]:
        """Row counts per table."""
        return self._storage.counts()

    async def aclose(self) -> None:
        await self._scheduler.close()
        self._storage.close()

    def close(self) -> None:
        self._storage.close()

    def __enter__(self) -> PetEngine:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    async def __aenter__(self) -> PetEngine:
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        return f"PetEngine(pets={len(self.pets())})"
