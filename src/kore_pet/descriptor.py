"""Descriptor evolution (L2). Appends one bounded line to a pet's narrative."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Awaitable, Callable

from kore_pet.config import Settings
from kore_pet.errors import GeneratorError, ParseError
from kore_pet.generators import GenerateOptions, GeneratorClient, extract_json
from kore_pet.hints import Hints, build_hints
from kore_pet.models import DescriptorEvolution, Pet, Stats, Trait
from kore_pet.oracle import StateOracle
from kore_pet.storage import Storage

logger = logging.getLogger(__name__)

EVOLUTION_OPTIONS = GenerateOptions(temperature=0.8, max_tokens=800)
LINE_PREFIX = "Evolved: "
TRUNCATION_MARKER = "..."
KEPT_RECENT_LINES = 3

SolidifyFn = Callable[[Pet, dict[str, Any], Hints | None], Awaitable[list[Trait]]]


def fallback_content() -> dict[str, Any]:
    return {
        "evolution_description": "A subtle change stirred under a mysterious guidance",
        "new_keywords": ["growth"],
        "evolution_direction": "steady development",
    }


def parse_content(raw: str) -> dict[str, Any]:
    """Validated evolution content. Raises ParseError."""
    data = extract_json(raw, dict)
    description = data.get("evolution_description")
    if not isinstance(description, str) or not description.strip():
        raise ParseError("missing evolution_description")
    keywords = data.get("new_keywords") or []
    if not isinstance(keywords, list):
        keywords = [keywords]
    direction = data.get("evolution_direction") or ""
    return {
        "evolution_description": " ".join(description.split()),
        "new_keywords": [str(k) for k in keywords if str(k).strip()],
        "evolution_direction": str(direction),
    }


def append_evolution(descriptor: str, description: str, max_length: int) -> str:
    """Append an evolution line, keeping the result within `max_length`.

    Too long: keep the first line and the last three; still too long,
    hard-truncate so that text plus marker fits exactly.
    """
    line = LINE_PREFIX + description
    text = f"{descriptor}\n{line}" if descriptor else line
    if len(text) <= max_length:
        return text
    lines = text.split("\n")
    if len(lines) > KEPT_RECENT_LINES + 1:
        text = "\n".join([lines[0], *lines[-KEPT_RECENT_LINES:]])
    if len(text) > max_length:
        text = text[:max_length - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER
    return text


def build_prompt(pet: Pet, detail: dict[str, Any], advice: list[str],
                 hints: Hints) -> str:
    s = pet.stats
    targets = ", ".join(t for t in detail.get("unique_targets", []) if t) or "none"
    sections = [
        "You are the evolution designer of a pet-battling fantasy game. "
        "Design the next evolution of this pet.",
        "",
        "Pet:",
        f"- Name: {pet.name}",
        f"- Species: {pet.species or 'unknown'}",
        f"- Current descriptor: {pet.descriptor or '(none yet)'}",
        f"- Rarity: {pet.rarity.value}",
        f"- Stats: health={s.health}, attack={s.attack}, defense={s.defense}, "
        f"speed={s.speed}, magic={s.magic}",
        "",
        "Recent behavior:",
        f"- Accumulated weight: {detail.get('accumulated_weight', 0):.2f}",
        f"- Action counts: {json.dumps(detail.get('action_counts', {}), ensure_ascii=False)}",
        f"- Targets: {targets}",
        f"- Summary: {detail.get('behavior_summary', '')}",
    ]
    if advice:
        sections += ["", "Oracle advice:"] + [f"- {a}" for a in advice]
    if hints.evolution:
        sections += ["", hints.evolution]
    sections += [
        "",
        "Requirements: follow the behavior pattern, stay coherent with the current "
        "descriptor, keep it vivid and under 100 words.",
        "",
        "Answer with JSON only:",
        '{"evolution_description": "...", "new_keywords": ["..."], '
        '"evolution_direction": "..."}',
    ]
    return "\n".join(sections)


class DescriptorGenerator:
    def __init__(self, storage: Storage, settings: Settings,
                 client: GeneratorClient, oracle: StateOracle,
                 solidify: SolidifyFn | None = None,
                 clock: Callable[[], float] = time.time) -> None:
        self._storage = storage
        self._settings = settings
        self._client = client
        self._oracle = oracle
        self._solidify = solidify
        self._clock = clock

    def hints_for(self, pet: Pet) -> Hints:
        """Hints from the stat change since the previous evolution."""
        previous = self._storage.load_evolutions(pet.id, limit=1)
        prev_stats = None
        keywords = list(pet.traits)
        if previous:
            prev_stats = Stats(**previous[0].stats) if previous[0].stats else None
            keywords += previous[0].content.get("new_keywords", [])
        return build_hints(pet.stats, prev_stats, pet.rarity, keywords)

    async def evolve(self, pet: Pet, detail: dict[str, Any]) -> DescriptorEvolution:
        hints = self.hints_for(pet)
        prompt = build_prompt(pet, detail, self._oracle.advice(pet.id), hints)
        try:
            raw = await self._client.complete(prompt, EVOLUTION_OPTIONS)
        except GeneratorError as exc:
            self._client.fell_back("descriptor", exc)
            content = fallback_content()
        else:
            self._oracle.evaluate(raw, layer="L2", scope=pet.id)
            try:
                content = parse_content(raw)
            except ParseError as exc:
                self._client.fell_back("descriptor", exc)
                content = fallback_content()

        now = self._clock()
        old = pet.descriptor
        new = append_evolution(old, content["evolution_description"],
                               self._settings.max_prompt_length)
        record = DescriptorEvolution(
            pet_id=pet.id,
            old_descriptor=old,
            new_descriptor=new,
            content=content,
            stats=pet.stats.as_dict(),
            timestamp=now,
        )
        with self._storage.transaction():
            self._storage.save_evolution(record)
            self._storage.update_descriptor(pet.id, new, now)
        pet.descriptor = new
        pet.last_evolution_at = now
        logger.info("pet %s: descriptor evolved (%d chars)", pet.id, len(new))

        if self._solidify is not None:
            await self._solidify(pet, content, hints)
        return record
