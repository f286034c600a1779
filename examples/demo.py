#!/usr/bin/env python3
"""
kore-pet demo: behavior in, evolution out.

No LLM needed. No API keys. Just run it.
A simulated clock stands in for hours of play, and a canned generator
stands in for the model (swap in ollama_generate() for a real one).
"""

import asyncio
import json
import logging
import os
import tempfile

from kore_pet import PetEngine


class Clock:
    def __init__(self):
        self.now = 1_700_000_000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


EVOLUTION = json.dumps({
    "evolution_description": "Ember's scales harden like cooled lava and small wings unfold",
    "new_keywords": ["dragon", "lava"],
    "evolution_direction": "flight",
})
TRAITS = json.dumps([
    {"name": "Lava Hide", "type": "passive", "description": "Great, tougher scales",
     "numericalEffect": {"hp": 8, "defense": 4}},
    {"name": "Ember Wings", "type": "active", "description": "Swift bursts of flight",
     "numericalEffect": {"speed": 6}},
])


async def offline_generate(prompt, options):
    """Stands in for an LLM: canned evolution text, then canned traits."""
    if "numbers designer" in prompt:
        return TRAITS
    return EVOLUTION


def header(text):
    print(f"\n{'='*64}")
    print(f"  {text}")
    print(f"{'='*64}\n")


def show(engine, pet_id, label=""):
    pet = engine.pet(pet_id)
    if label:
        print(f"  [{label}] {pet.name} ({pet.rarity.value}, {pet.species})")
    for stat, value in pet.stats.as_dict().items():
        n = min(value, 100) // 5
        bar = "█" * n + "░" * (20 - n)
        print(f"    {stat:<8} {bar} {value}")
    print(f"    descriptor: {pet.descriptor!r}")
    print()


async def play(engine, clock, pet_id, actions):
    for action, target in actions:
        await engine.record_behavior(pet_id, action, target)
    await engine.drain()
    judgment = engine.judgments(pet_id, limit=1)[0]
    print(f"  weight={judgment.accumulated_weight:.1f} "
          f"clauses={judgment.detail['clauses']} evolve={judgment.should_evolve}")


async def main():
    logging.basicConfig(level=logging.WARNING)
    fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    clock = Clock()
    engine = PetEngine(db_path, generate=offline_generate, clock=clock,
                       enable_traces=True)

    header("KORE-PET: Evolution Demo")

    ember = engine.create_pet(
        "Ember", species="Fire Salamander", rarity="SSR",
        level=20, bond=60, traits=["blaze"],
        descriptor="A small salamander with a warm glow.",
    )
    show(engine, ember.id, "Hatched")

    # ── Day 1 ──────────────────────────────────────────────────────────

    header("DAY 1 — Only battles: heavy, but one-note")

    await play(engine, clock, ember.id, [("battle", "goblin"), ("battle", "slime")])

    # ── Day 2 ──────────────────────────────────────────────────────────

    header("DAY 2 — Battle, explore, feed: evolution")

    clock.advance(3600)
    await play(engine, clock, ember.id, [
        ("battle", "wolf"), ("explore", "volcano"), ("feed", "fire berry"),
    ])
    show(engine, ember.id, "Evolved")
    for trait in engine.traits(ember.id):
        print(f"    trait: {trait.name} [{trait.kind.value}] {trait.effects}")

    # ── Day 2, later ───────────────────────────────────────────────────

    header("DAY 2, LATER — Too soon to evolve again")

    clock.advance(600)
    await play(engine, clock, ember.id, [
        ("battle", "bat"), ("explore", "cave"), ("feed", "apple"),
    ])

    # ── Oracle ─────────────────────────────────────────────────────────

    header("ORACLE — What the last evolution text felt like")

    state = engine.oracle_state(ember.id)
    print(f"  hexagram: {state['hexagram']['name']} ({state['hexagram']['id']})")
    for dim, line in state["register"].items():
        print(f"  {dim:<7} {line['position']:<13} {line['movement']:<13} {line['polarity']}")
    print(f"  health:   {state['health']}")

    header("PREVIEW — Where could Ember go next?")

    for candidate in engine.preview_evolution(ember.id, {"environment": "volcano"}):
        print(f"  {candidate.target:<16} score={candidate.score:.3f} "
              f"rarity={candidate.rarity_shift.value}")
    print()

    print(f"  Traced operations: {sorted({t.operation for t in engine.traces()})}")
    print(f"  Rows: {engine.stats()}\n")

    await engine.aclose()
    os.unlink(db_path)


if __name__ == "__main__":
    asyncio.run(main())
