"""kore-pet: Persistent pets that evolve from what they do."""

from kore_pet.models import (
    BehaviorEvent, DescriptorEvolution, EvolutionCandidate, Judgment, Pet,
    Rarity, Stats, Trace, Trait, TraitKind,
)
from kore_pet.config import ActionWeight, ActionWeightTable, Settings
from kore_pet.errors import (
    ConfigError, GeneratorError, KorePetError, ParseError, PetNotFound, StorageError,
)
from kore_pet.engine import PetEngine
from kore_pet.generators import GenerateOptions, ollama_generate, static_generate
from kore_pet.judgment import JudgmentOutcome
from kore_pet.oracle import Feedback, StateOracle, StateRegister

__version__ = "0.1.0"
__all__ = [
    "PetEngine", "Settings", "ActionWeight", "ActionWeightTable",
    "Pet", "Stats", "Rarity", "BehaviorEvent", "Judgment", "JudgmentOutcome",
    "DescriptorEvolution", "Trait", "TraitKind", "EvolutionCandidate", "Trace",
    "Feedback", "StateOracle", "StateRegister",
    "GenerateOptions", "ollama_generate", "static_generate",
    "KorePetError", "StorageError", "GeneratorError", "ParseError",
    "PetNotFound", "ConfigError",
]
