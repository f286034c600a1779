"""Runtime configuration.

Every threshold the pipeline uses lives on Settings and is injected into the
components; nothing downstream hard-codes them. Defaults reproduce the
original game balance.

Precedence for Settings.load(): environment > TOML > defaults.
    - TOML: ./kore_pet.toml ([kore_pet] table or top-level keys), or
      ./pyproject.toml under [tool.kore_pet].
    - Environment: KORE_PET_<FIELD> for scalar fields, e.g.
      KORE_PET_MAX_PROMPT_LENGTH=300.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

from kore_pet.errors import ConfigError
from kore_pet.models import Rarity

ENV_PREFIX = "KORE_PET_"

MINUTE = 60.0
DAY = 24 * 3600.0


@dataclass(frozen=True)
class ActionWeight:
    base: float = 1.0
    multiplier: float = 1.0

    @property
    def weight(self) -> float:
        return self.base * self.multiplier


@dataclass(frozen=True)
class ActionWeightTable:
    """Action type -> weight, with a required default for unknown types.

    Unknown actions are accepted, never rejected: they score with `default`.
    """

    entries: Mapping[str, ActionWeight]
    default: ActionWeight = ActionWeight()

    def lookup(self, action_type: str) -> ActionWeight:
        return self.entries.get(action_type, self.default)

    def __contains__(self, action_type: object) -> bool:
        return action_type in self.entries

    def with_entry(self, action_type: str, weight: ActionWeight) -> ActionWeightTable:
        return ActionWeightTable({**self.entries, action_type: weight}, self.default)


def default_action_weights() -> ActionWeightTable:
    return ActionWeightTable({
        "feed": ActionWeight(1, 1.2),
        "explore": ActionWeight(2, 1.5),
        "battle": ActionWeight(3, 2.0),
        "chat": ActionWeight(0.5, 1.0),
    })


def default_rarity_multipliers() -> dict[Rarity, float]:
    return {
        Rarity.N: 1.0,
        Rarity.R: 1.2,
        Rarity.SR: 1.5,
        Rarity.SSR: 2.0,
        Rarity.SSS: 3.0,
    }


@dataclass(frozen=True)
class Settings:
    """Pipeline thresholds. Durations are in seconds.

    Attributes:
        action_weights: per-action base weight and multiplier.
        rarity_multipliers: judgment weight scaling per rarity.
        min_weight: accumulated weight needed to authorize an evolution.
        min_unique_actions: distinct action types needed in the same cycle.
        min_time_since_evolution: minimum gap between two evolutions of a pet.
        judgment_cooldown: minimum gap between two judgment cycles of a pet.
        behavior_retention: processed events older than this are purged.
        max_behavior_records: processed events kept per pet.
        max_prompt_length: hard bound on the descriptor length.
        max_active_traits: active trait cap per pet.
        generator_timeout: bound on a single text-generation call.
        repetition_threshold / tone_threshold: oracle line thresholds.
        oracle_hysteresis: band a held position must be crossed by before it
            flips. 0 means plain thresholds (positions may oscillate).
    """

    action_weights: ActionWeightTable = field(default_factory=default_action_weights)
    rarity_multipliers: dict[Rarity, float] = field(default_factory=default_rarity_multipliers)
    min_weight: float = 15.0
    min_unique_actions: int = 3
    min_time_since_evolution: float = 30 * MINUTE
    judgment_cooldown: float = 5 * MINUTE
    behavior_retention: float = 7 * DAY
    max_behavior_records: int = 50
    max_prompt_length: int = 220
    max_active_traits: int = 30
    generator_timeout: float = 30.0
    repetition_threshold: float = 0.3
    tone_threshold: float = 0.6
    oracle_hysteresis: float = 0.0

    def __post_init__(self) -> None:
        if self.max_prompt_length < 8:
            raise ConfigError("max_prompt_length must be >= 8")
        if self.max_active_traits < 1:
            raise ConfigError("max_active_traits must be >= 1")
        if self.max_behavior_records < 0:
            raise ConfigError("max_behavior_records must be >= 0")
        if self.min_unique_actions < 0:
            raise ConfigError("min_unique_actions must be >= 0")
        if self.generator_timeout <= 0:
            raise ConfigError("generator_timeout must be > 0")
        if self.oracle_hysteresis < 0:
            raise ConfigError("oracle_hysteresis must be >= 0")
        for name in ("min_weight", "min_time_since_evolution",
                     "judgment_cooldown", "behavior_retention"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be >= 0")

    def rarity_multiplier(self, rarity: Rarity) -> float:
        return self.rarity_multipliers.get(rarity, 1.0)

    # ── loaders ────────────────────────────────────────────────────────

    @classmethod
    def _scalar_fields(cls) -> dict[str, type]:
        out: dict[str, type] = {}
        for f in fields(cls):
            default = f.default
            if isinstance(default, bool) or not isinstance(default, (int, float)):
                continue
            out[f.name] = type(default)
        return out

    @classmethod
    def _apply_mapping(cls, base: Settings, cfg: Mapping[str, Any] | None) -> Settings:
        """Apply a loose mapping onto `base`, returning a new instance."""
        if not cfg:
            return base

        changes: dict[str, Any] = {}
        for name, kind in cls._scalar_fields().items():
            if name not in cfg:
                continue
            try:
                changes[name] = kind(cfg[name])
            except (TypeError, ValueError) as exc:
                raise ConfigError(f"{name}: {cfg[name]!r} is not a valid {kind.__name__}") from exc

        weights = cfg.get("action_weights")
        if isinstance(weights, Mapping):
            table = base.action_weights
            for action, spec in weights.items():
                if not isinstance(spec, Mapping):
                    raise ConfigError(f"action_weights.{action} must be a table")
                try:
                    weight = ActionWeight(float(spec.get("base", 1.0)),
                                          float(spec.get("multiplier", 1.0)))
                except (TypeError, ValueError) as exc:
                    raise ConfigError(f"action_weights.{action}: {exc}") from exc
                if action == "default":
                    table = ActionWeightTable(table.entries, weight)
                else:
                    table = table.with_entry(action, weight)
            changes["action_weights"] = table

        rarities = cfg.get("rarity_multipliers")
        if isinstance(rarities, Mapping):
            merged = dict(base.rarity_multipliers)
            for key, value in rarities.items():
                try:
                    merged[Rarity(str(key).upper())] = float(value)
                except (TypeError, ValueError) as exc:
                    raise ConfigError(f"rarity_multipliers.{key}: {exc}") from exc
            changes["rarity_multipliers"] = merged

        return replace(base, **changes)

    @classmethod
    def from_env(cls, base: Settings | None = None, prefix: str = ENV_PREFIX) -> Settings:
        """Scalar overrides from KORE_PET_<FIELD> variables."""
        s = base or cls()
        mapping = {}
        for name in cls._scalar_fields():
            value = os.getenv(prefix + name.upper())
            if value:
                mapping[name] = value
        return cls._apply_mapping(s, mapping)

    @classmethod
    def from_toml(cls, path: str | os.PathLike[str] | None = None) -> Settings:
        """Settings from kore_pet.toml, or [tool.kore_pet] in pyproject.toml."""
        s = cls()
        candidates: list[Path] = []
        if path is not None:
            candidates.append(Path(path))
        else:
            candidates.append(Path.cwd() / "kore_pet.toml")
            candidates.append(Path.cwd() / "pyproject.toml")

        for p in candidates:
            if not p.exists():
                continue
            try:
                with p.open("rb") as fh:
                    data = tomllib.load(fh)
            except tomllib.TOMLDecodeError as exc:
                raise ConfigError(f"{p}: {exc}") from exc
            if p.name == "pyproject.toml":
                cfg = data.get("tool", {}).get("kore_pet")
            else:
                cfg = data.get("kore_pet", data)
            if isinstance(cfg, dict) and cfg:
                return cls._apply_mapping(s, cfg)
        return s

    @classmethod
    def load(cls, path: str | os.PathLike[str] | None = None) -> Settings:
        return cls.from_env(base=cls.from_toml(path))
