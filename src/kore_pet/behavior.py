"""Behavior log (L1). Appends actions; retention keeps the table bounded."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from kore_pet.config import Settings
from kore_pet.models import BehaviorEvent
from kore_pet.storage import Storage

logger = logging.getLogger(__name__)


class BehaviorLog:
    def __init__(self, storage: Storage, settings: Settings,
                 clock: Callable[[], float] = time.time) -> None:
        self._storage = storage
        self._settings = settings
        self._clock = clock

    def record(self, pet_id: str, action_type: str, target: str = "",
               context: dict[str, Any] | None = None) -> BehaviorEvent:
        """Append one action and purge this pet's stale processed events.

        Any action type is accepted; unknown ones score with the default weight.
        """
        now = self._clock()
        event = BehaviorEvent(
            pet_id=pet_id,
            action_type=action_type,
            target=target or "",
            context=dict(context or {}),
            timestamp=now,
        )
        with self._storage.transaction():
            self._storage.save_event(event)
            purged = self._storage.purge_events(
                pet_id,
                before=now - self._settings.behavior_retention,
                keep=self._settings.max_behavior_records,
            )
        logger.info("pet %s: recorded %s -> %r", pet_id, action_type, target)
        if purged:
            logger.debug("pet %s: purged %d processed events", pet_id, purged)
        return event

    def sweep(self) -> int:
        """Purge stale processed events for every pet. Returns how many went."""
        now = self._clock()
        purged = self._storage.purge_events(
            None,
            before=now - self._settings.behavior_retention,
            keep=self._settings.max_behavior_records,
        )
        logger.info("sweep: purged %d processed events", purged)
        return purged

    def pending(self, pet_id: str) -> list[BehaviorEvent]:
        return self._storage.unprocessed_events(pet_id)
