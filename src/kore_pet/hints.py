"""Rule-based prompt hints from stat changes and keyword tags. No I/O."""

from __future__ import annotations

from dataclasses import dataclass, field

from kore_pet.models import STAT_NAMES, Rarity, Stats

DELTA_LIMIT = 9999

HINT_RARITY_WEIGHTS = {
    Rarity.N: 1.0,
    Rarity.R: 1.1,
    Rarity.SR: 1.25,
    Rarity.SSR: 1.5,
    Rarity.SSS: 1.8,
}

_TAG_MARKERS = {
    "dragon": ("龙", "dragon", "drake", "wyrm"),
    "stellar": ("星", "star", "stellar", "astral"),
    "nature": ("自然", "树", "花", "草", "nature", "tree", "flower", "grass", "forest"),
    "shadow": ("暗", "影", "shadow", "dark"),
    "chrono": ("时", "time", "chrono"),
    "mystic": ("虚", "幻", "illusion", "phantom", "mystic", "dream"),
}

_TAG_SUGGESTIONS = {
    "dragon": "Dragon tag: consider dragon breath, dragon scales, dragon might or bloodline awakening.",
    "stellar": "Stellar tag: consider starlight ward, star-forged shards or constellation guidance.",
    "nature": "Nature tag: consider spring nourishment, vine armor or a flower-spirit companion.",
    "shadow": "Shadow tag: consider stealth, afterimages or a night-veil blink.",
    "chrono": "Time tag: consider haste, a rewind mark or a fate fork.",
    "mystic": "Illusion tag: consider mirage refraction, a mirror domain or a void sigil.",
}


@dataclass
class Hints:
    tags: list[str] = field(default_factory=list)
    deltas: dict[str, int] = field(default_factory=dict)
    suggestions: list[str] = field(default_factory=list)

    @property
    def evolution(self) -> str:
        """Augmentation for the descriptor prompt."""
        if not self.suggestions:
            return ""
        return ("Rule-based suggestions: " + " ".join(self.suggestions)
                + " Reflect these directions in the new traits and stat leanings.")

    @property
    def numerical(self) -> str:
        """Augmentation for the trait prompt."""
        return ("Rule-based suggestions: solidify small stat gains along the directions "
                "above, respecting rarity and steady growth.")


def tags_from_keywords(keywords: list[str] | None) -> list[str]:
    found = []
    for keyword in keywords or []:
        text = str(keyword).lower()
        for tag, markers in _TAG_MARKERS.items():
            if tag not in found and any(m in text for m in markers):
                found.append(tag)
    return found


def _clamp_delta(value: int) -> int:
    return max(-DELTA_LIMIT, min(DELTA_LIMIT, value))


def build_hints(current: Stats, previous: Stats | None = None,
                rarity: Rarity = Rarity.N,
                keywords: list[str] | None = None) -> Hints:
    """Suggestions derived from how stats moved since `previous`.

    With no previous snapshot every stat counts as moved from zero.
    """
    prev = previous.as_dict() if previous is not None else dict.fromkeys(STAT_NAMES, 0)
    cur = current.as_dict()
    deltas = {name: _clamp_delta(cur[name] - prev[name]) for name in STAT_NAMES}
    tags = tags_from_keywords(keywords)
    weight = HINT_RARITY_WEIGHTS.get(rarity, 1.0)

    suggestions = []
    if deltas["speed"] > 0:
        suggestions.append("Speed rose: consider agility, evasion, combo or first-strike abilities.")
    if deltas["magic"] > 0:
        suggestions.append("Magic grew: consider rune, sigil-circle or resonance effects.")
    if deltas["attack"] > 0 and deltas["defense"] < 0:
        suggestions.append("Attack up while defense fell: a high-risk edge, such as critical boosts "
                           "or a last-stand trait.")
    if deltas["defense"] > 0 and deltas["defense"] >= max(deltas["attack"], deltas["speed"]):
        suggestions.append("Defense rose markedly: consider shield, block, counter or steadfast abilities.")
    if deltas["health"] > 0 and deltas["health"] >= 20 * weight:
        suggestions.append("Health rose markedly: consider regeneration, recovery or toughness traits.")
    if rarity >= Rarity.SSR:
        suggestions.append("High rarity: add stronger mythic imagery and lineage traits.")
    for tag in tags:
        suggestions.append(_TAG_SUGGESTIONS[tag])

    return Hints(tags=tags, deltas=deltas, suggestions=suggestions)
