"""Exception types.

Storage failures propagate to whoever called the mutating operation.
Generator and parse failures never leave the component that made the call:
they are caught there and replaced by that component's fallback value.
"""

from __future__ import annotations

__all__ = [
    "KorePetError",
    "StorageError",
    "GeneratorError",
    "ParseError",
    "PetNotFound",
    "ConfigError",
]


class KorePetError(Exception):
    """Base class for kore-pet errors."""


class StorageError(KorePetError):
    """The persistent store rejected or failed an operation."""


class GeneratorError(KorePetError):
    """The text-generation collaborator failed or was unavailable."""


class ParseError(KorePetError):
    """Collaborator content could not be parsed into the expected structure."""


class PetNotFound(KorePetError, KeyError):
    """No pet with the given id."""


class ConfigError(KorePetError, ValueError):
    """Invalid or unsupported configuration value."""
