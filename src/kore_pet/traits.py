"""Trait solidification (L3b). Evolution content becomes numeric traits.

The cap on active traits is enforced in the same transaction that inserts
the new ones: the oldest active traits are deactivated by exactly the
overflow, never more.
"""

from __future__ import annotations

import json
import logging
import math
import time
from typing import Any, Callable

from kore_pet.config import Settings
from kore_pet.errors import GeneratorError, ParseError
from kore_pet.generators import GenerateOptions, GeneratorClient, extract_json
from kore_pet.hints import Hints
from kore_pet.models import STAT_NAMES, Pet, Trait, TraitKind
from kore_pet.oracle import StateOracle
from kore_pet.storage import Storage

logger = logging.getLogger(__name__)

SOLIDIFY_OPTIONS = GenerateOptions(temperature=0.2, max_tokens=600)
MAX_TRAITS_PER_CALL = 3
STAT_ALIASES = {"hp": "health"}
MAX_EFFECT = 100  # per stat, per trait


def fallback_traits() -> list[dict[str, Any]]:
    return [{
        "name": "Steady Growth",
        "kind": TraitKind.PASSIVE,
        "description": "Gained steady growth",
        "effects": {"health": 5, "attack": 2, "defense": 2, "speed": 1},
    }]


def _effects(raw: Any) -> dict[str, int]:
    if not isinstance(raw, dict):
        return {}
    effects: dict[str, int] = {}
    for key, value in raw.items():
        stat = STAT_ALIASES.get(str(key).lower(), str(key).lower())
        if stat not in STAT_NAMES:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        if isinstance(value, float) and not math.isfinite(value):
            continue
        value = max(-MAX_EFFECT, min(MAX_EFFECT, int(value)))
        effects[stat] = max(-MAX_EFFECT, min(MAX_EFFECT, effects.get(stat, 0) + value))
    return effects


def _kind(raw: Any) -> TraitKind:
    try:
        return TraitKind(str(raw).lower())
    except ValueError:
        return TraitKind.PASSIVE


def parse_traits(raw: str) -> list[dict[str, Any]]:
    """1-3 trait specs from generator output. Raises ParseError."""
    items = extract_json(raw, list)
    specs = []
    for item in items:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        if not isinstance(name, str) or not name.strip():
            continue
        specs.append({
            "name": name.strip(),
            "kind": _kind(item.get("type", item.get("kind"))),
            "description": str(item.get("description") or ""),
            "effects": _effects(item.get("numericalEffect",
                                         item.get("numerical_effect", item.get("effects")))),
        })
        if len(specs) == MAX_TRAITS_PER_CALL:
            break
    if not specs:
        raise ParseError("no usable traits in response")
    return specs


def total_effects(traits: list[Trait]) -> dict[str, int]:
    totals = dict.fromkeys(STAT_NAMES, 0)
    for trait in traits:
        for stat, value in trait.effects.items():
            if stat in totals:
                totals[stat] += value
    return totals


def build_prompt(content: dict[str, Any], hints: Hints | None = None) -> str:
    lines = [
        "You are the numbers designer of a pet-battling fantasy game. "
        "Turn this evolution into concrete game traits.",
        "",
        f"Evolution: {json.dumps(content, ensure_ascii=False)}",
    ]
    if hints is not None:
        lines += ["", hints.numerical]
    lines += [
        "",
        "Produce 1-3 traits. Each has a short name, a type (passive, active or "
        "trigger), a player-facing description and numeric stat effects.",
        "",
        "Answer with a JSON list only:",
        '[{"name": "...", "type": "passive", "description": "...", '
        '"numericalEffect": {"health": 0, "attack": 0, "defense": 0, "speed": 0, "magic": 0}}]',
    ]
    return "\n".join(lines)


class TraitSolidifier:
    def __init__(self, storage: Storage, settings: Settings,
                 client: GeneratorClient, oracle: StateOracle,
                 clock: Callable[[], float] = time.time) -> None:
        self._storage = storage
        self._settings = settings
        self._client = client
        self._oracle = oracle
        self._clock = clock

    async def solidify(self, pet: Pet, content: dict[str, Any],
                       hints: Hints | None = None) -> list[Trait]:
        prompt = build_prompt(content, hints)
        try:
            raw = await self._client.complete(prompt, SOLIDIFY_OPTIONS)
        except GeneratorError as exc:
            self._client.fell_back("solidifier", exc)
            specs = fallback_traits()
        else:
            self._oracle.evaluate(raw, layer="L3", scope=pet.id)
            try:
                specs = parse_traits(raw)
            except ParseError as exc:
                self._client.fell_back("solidifier", exc)
                specs = fallback_traits()

        now = self._clock()
        cap = self._settings.max_active_traits
        traits = [Trait(pet_id=pet.id, created_at=now, **spec) for spec in specs][:cap]
        totals = total_effects(traits)

        with self._storage.transaction():
            overflow = self._storage.count_active_traits(pet.id) + len(traits) - cap
            retired = self._storage.deactivate_oldest_traits(pet.id, overflow)
            for trait in traits:
                self._storage.save_trait(trait)
            if any(totals.values()):
                self._storage.add_to_stats(pet.id, totals)

        pet.stats = pet.stats.apply(totals)
        logger.info("pet %s: solidified %d traits, retired %d",
                    pet.id, len(traits), retired)
        return traits
