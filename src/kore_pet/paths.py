"""Evolution path scoring. Ranks the forms a pet could evolve into.

Pure computation over a pet and a context mapping; nothing is persisted.
Species without a template get two procedural paths, so a preview always
has one or two candidates.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping

import numpy as np

from kore_pet.models import STAT_NAMES, EvolutionCandidate, Pet, Rarity

MAX_CANDIDATES = 2
DEFAULT_BOND = 50
DEFAULT_ENVIRONMENT = "secret realm"


@dataclass(frozen=True)
class RarityProfile:
    mult: float
    weight: float


RARITY_PROFILES = {
    Rarity.SSS: RarityProfile(3.0, 1.5),
    Rarity.SSR: RarityProfile(2.5, 1.3),
    Rarity.SR: RarityProfile(2.0, 1.15),
    Rarity.R: RarityProfile(1.5, 1.0),
    Rarity.N: RarityProfile(1.0, 0.9),
}


@dataclass(frozen=True)
class EvolutionTemplate:
    target: str
    level: int
    bond: int
    environments: tuple[str, ...] | None
    tags: tuple[str, ...]
    rarity_shift: Rarity


TEMPLATES: dict[str, tuple[EvolutionTemplate, ...]] = {
    "firesalamander": (
        EvolutionTemplate("Fire Drake", 20, 60, ("volcano", "lava cave"),
                          ("flight", "blaze"), Rarity.SR),
        EvolutionTemplate("War Drake", 25, 75, ("volcano", "arena"),
                          ("battle spirit", "dragon might"), Rarity.SSR),
        EvolutionTemplate("Ember Bat Drake", 22, 50, ("volcano", "high sky"),
                          ("glide", "sonic"), Rarity.R),
    ),
    "ninetailfoxkit": (
        EvolutionTemplate("Nine-Tailed Fox", 18, 70, ("forest", "spirit realm"),
                          ("illusion", "phantom"), Rarity.SSR),
        EvolutionTemplate("Dream Fox", 16, 55, ("dreamscape",),
                          ("dreamweave", "sleep whisper"), Rarity.SR),
    ),
}

SPECIES_ALIASES = {
    "firesalamanderkit": "firesalamander",
    "salamander": "firesalamander",
    "火蜥蜴": "firesalamander",
    "火蜥蜴幼体": "firesalamander",
    "幼火蜥": "firesalamander",
    "ninetailedfoxkit": "ninetailfoxkit",
    "foxkit": "ninetailfoxkit",
    "九尾狐幼体": "ninetailfoxkit",
}

_NON_ALNUM = re.compile(r"[\W_]+")


def normalize_species(species: str) -> str:
    key = _NON_ALNUM.sub("", (species or "").lower())
    return SPECIES_ALIASES.get(key, key)


def evolution_tree(species: str) -> list[EvolutionTemplate]:
    """Registered templates for a species; empty when only procedural paths exist."""
    return list(TEMPLATES.get(normalize_species(species), ()))


def procedural_templates(pet: Pet, bond: int, environment: str) -> list[EvolutionTemplate]:
    name = pet.species.strip() or pet.name
    base_tags = list(dict.fromkeys(pet.traits))
    return [
        EvolutionTemplate(
            f"{name} Dragon Shift", pet.level + 5, bond + 10, (environment,),
            tuple(dict.fromkeys(base_tags + ["awakening", "metamorphosis"])),
            Rarity.R if pet.rarity == Rarity.N else Rarity.SR,
        ),
        EvolutionTemplate(
            f"{name} Secret Flame", pet.level + 3, bond, (environment, "volcano"),
            tuple(dict.fromkeys(base_tags + ["secret flame", "dragon might"])),
            Rarity.SSR if pet.rarity == Rarity.SR else Rarity.SR,
        ),
    ]


def round_half_up(values: np.ndarray) -> np.ndarray:
    return np.floor(values + 0.5)


def score_path(pet: Pet, template: EvolutionTemplate, bond: int,
               environment: str | None) -> float:
    profile = RARITY_PROFILES.get(pet.rarity, RARITY_PROFILES[Rarity.N])
    level_score = min(1.0, max(pet.level, 1) / max(template.level, 1))
    bond_score = min(1.0, bond / max(template.bond, 1))
    if template.environments is None:
        env_score = 0.5
    else:
        env_score = 1.0 if environment in template.environments else 0.3
    base = 0.4 * level_score + 0.4 * bond_score + 0.2 * env_score
    overlap = len(set(pet.traits) & set(template.tags))
    return base * profile.weight * (1 + 0.1 * overlap)


def project_delta(pet: Pet, score: float) -> dict[str, int]:
    """Stat delta if the pet took a path with this score."""
    profile = RARITY_PROFILES.get(pet.rarity, RARITY_PROFILES[Rarity.N])
    mult = profile.mult * (0.8 + 0.4 * min(1.0, score))
    base = np.array([getattr(pet.stats, name) for name in STAT_NAMES], dtype=float)
    delta = round_half_up(base * (mult - 1)).astype(int)
    return dict(zip(STAT_NAMES, (int(d) for d in delta)))


def score(pet: Pet, context: Mapping[str, Any] | None = None) -> list[EvolutionCandidate]:
    """Top one or two evolution candidates, best first.

    Context keys: `environment` (str) and `bond` (overrides the pet's bond).
    """
    context = context or {}
    bond = int(context.get("bond", pet.bond) or 0)
    environment = context.get("environment")

    templates = evolution_tree(pet.species)
    if not templates:
        templates = procedural_templates(pet, bond or DEFAULT_BOND,
                                         environment or DEFAULT_ENVIRONMENT)

    candidates = []
    for template in templates:
        raw = score_path(pet, template, bond, environment)
        candidates.append(EvolutionCandidate(
            target=template.target,
            rarity_shift=template.rarity_shift,
            tags=list(template.tags),
            projected_delta=project_delta(pet, raw),
            new_traits=list(dict.fromkeys([*pet.traits, *template.tags])),
            score=round(raw, 3),
        ))
    candidates.sort(key=lambda c: c.score, reverse=True)
    return candidates[:MAX_CANDIDATES]
