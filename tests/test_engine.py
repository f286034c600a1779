"""End-to-end tests for PetEngine."""

import asyncio
import json
import os
import tempfile

import pytest

from kore_pet import PetEngine, PetNotFound, Rarity, Settings
from kore_pet.judgment import COOLING_DOWN, JUDGED


class Clock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def scripted(*replies):
    """Generator that answers each call with the next reply, cycling."""
    state = {"i": 0}

    async def _generate(prompt, options):
        reply = replies[state["i"] % len(replies)]
        state["i"] += 1
        return reply

    return _generate


EVOLUTION = json.dumps({
    "evolution_description": "Wings of ember unfurl",
    "new_keywords": ["dragon"],
    "evolution_direction": "flight",
})
TRAITS = json.dumps([
    {"name": "Ember Wings", "type": "active", "description": "Takes flight",
     "numericalEffect": {"speed": 6, "hp": 4}},
])


@pytest.fixture
def db_path():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    yield path
    os.unlink(path)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def engine(db_path, clock):
    e = PetEngine(db_path, generate=scripted(EVOLUTION, TRAITS), clock=clock,
                  enable_traces=True)
    yield e
    e.close()


# ── Pets ───────────────────────────────────────────────────────────────


class TestPets:
    def test_create_and_load(self, engine):
        pet = engine.create_pet("Ember", species="Fire Salamander", rarity="SR",
                                stats={"health": 60}, traits=["blaze"])
        loaded = engine.pet(pet.id)
        assert loaded.rarity is Rarity.SR
        assert loaded.stats.health == 60
        assert loaded.traits == ["blaze"]
        assert engine.pets() == [loaded]

    def test_unknown_pet(self, engine):
        with pytest.raises(PetNotFound):
            engine.pet("ghost")
        with pytest.raises(KeyError):
            asyncio.run(engine.record_behavior("ghost", "feed"))
        assert engine.stats()["behavior_events"] == 0

    def test_persists_across_instances(self, db_path, clock):
        with PetEngine(db_path, clock=clock) as first:
            pet_id = first.create_pet("Ember").id
        with PetEngine(db_path, clock=clock) as second:
            assert second.pet(pet_id).name == "Ember"


# ── Pipeline ───────────────────────────────────────────────────────────


class TestPipeline:
    def test_full_evolution(self, engine):
        pet = engine.create_pet("Ember", species="Fire Salamander", rarity="SSR",
                                descriptor="A salamander.")

        async def play():
            for action, target in [("battle", "goblin"), ("explore", "cave"),
                                   ("feed", "apple")]:
                await engine.record_behavior(pet.id, action, target)
            await engine.drain()

        asyncio.run(play())

        judgments = engine.judgments(pet.id)
        assert len(judgments) == 1
        assert judgments[0].should_evolve is True
        assert engine.behavior(pet.id, processed=False) == []

        evolved = engine.pet(pet.id)
        assert evolved.descriptor == "A salamander.\nEvolved: Wings of ember unfurl"
        assert evolved.stats.speed == 12 + 6
        assert evolved.stats.health == 50 + 4
        assert [t.name for t in engine.traits(pet.id)] == ["Ember Wings"]
        assert len(engine.evolutions(pet.id)) == 1

        ops = {t.operation for t in engine.traces(source=pet.id)}
        assert ops == {"record", "judge", "evolve", "solidify"}
        assert set(engine.system_health()["per_scope"]) == {pet.id}

    def test_scenario_does_not_evolve(self, engine):
        pet = engine.create_pet("Ember", rarity="R")

        async def play():
            for action in ("battle", "battle", "explore"):
                await engine.record_behavior(pet.id, action)
            await engine.drain()

        asyncio.run(play())
        judgments = engine.judgments(pet.id)
        assert sum(j.behavior_count for j in judgments) == 3
        assert all(not j.should_evolve for j in judgments)
        assert engine.evolutions(pet.id) == []
        assert engine.pet(pet.id).descriptor == ""

    def test_judge_pet_directly(self, engine, clock):
        pet = engine.create_pet("Ember")

        async def play():
            await engine.record_behavior(pet.id, "chat")
            await engine.drain()
            await engine.record_behavior(pet.id, "chat")
            await engine.drain()
            return await engine.judge_pet(pet.id)

        assert asyncio.run(play()).status == COOLING_DOWN
        clock.advance(301)
        assert asyncio.run(engine.judge_pet(pet.id)).status == JUDGED
        assert engine.behavior(pet.id, processed=False) == []

    def test_evolution_cooldown(self, engine, clock):
        pet = engine.create_pet("Ember", rarity="SSS")

        async def burst():
            for action in ("battle", "explore", "feed"):
                await engine.record_behavior(pet.id, action)
            await engine.drain()

        asyncio.run(burst())
        clock.advance(600)
        asyncio.run(burst())
        assert len(engine.evolutions(pet.id)) == 1
        latest = engine.judgments(pet.id)[0]
        assert latest.detail["clauses"]["evolution_cooldown"] is False

        clock.advance(1800)
        asyncio.run(burst())
        assert len(engine.evolutions(pet.id)) == 2

    def test_no_generator_uses_fallbacks(self, db_path, clock):
        with PetEngine(db_path, clock=clock) as engine:
            pet = engine.create_pet("Mote", rarity="SSR")

            async def play():
                for action in ("battle", "explore", "feed"):
                    await engine.record_behavior(pet.id, action)
                await engine.drain()

            asyncio.run(play())
            assert engine.pet(pet.id).descriptor.startswith("Evolved: A subtle change")
            assert [t.name for t in engine.traits(pet.id)] == ["Steady Growth"]
            assert engine.system_health()["scopes"] == 0

    def test_sweep(self, engine, clock):
        pet = engine.create_pet("Ember")
        asyncio.run(engine.record_behavior(pet.id, "feed"))
        asyncio.run(engine.judge_pet(pet.id))
        clock.advance(8 * 24 * 3600)
        assert engine.sweep() == 1


# ── Oracle and preview ─────────────────────────────────────────────────


class TestOracleAndPreview:
    def test_feedback_scoped_to_pet(self, engine):
        pet = engine.create_pet("Ember")
        fb = engine.feedback("INNOVATION: 0.7\nREPETITION: 0.25\nTONE: 0.5",
                             layer="L1", pet_id=pet.id)
        assert fb.hexagram.id == "dui"
        state = engine.oracle_state(pet.id)
        assert state["snapshot"]["innovation"] == pytest.approx(0.7)
        assert engine.oracle_state()["snapshot"]["innovation"] == 0.5

    def test_health_and_reset(self, engine):
        pet = engine.create_pet("Ember")
        engine.feedback("calm words", pet_id=pet.id)
        assert engine.system_health()["scopes"] == 1
        assert engine.reset_oracle(pet.id) is True
        assert engine.system_health()["scopes"] == 0

    def test_preview(self, engine):
        pet = engine.create_pet("Ember", species="Fire Salamander", rarity="SR",
                                level=20, bond=60, traits=["blaze"])
        candidates = engine.preview_evolution(pet.id, {"environment": "volcano"})
        assert 1 <= len(candidates) <= 2
        assert candidates[0].target == "Fire Drake"


class TestSettings:
    def test_custom_weights(self, db_path, clock):
        settings = Settings(min_weight=1, min_unique_actions=1)
        with PetEngine(db_path, settings=settings, clock=clock,
                       generate=scripted(EVOLUTION, TRAITS)) as engine:
            pet = engine.create_pet("Mote")

            async def play():
                await engine.record_behavior(pet.id, "dance")
                await engine.drain()

            asyncio.run(play())
            assert engine.judgments(pet.id)[0].accumulated_weight == 1.0
            assert len(engine.evolutions(pet.id)) == 1

    def test_from_config(self, db_path, tmp_path):
        cfg = tmp_path / "kore_pet.toml"
        cfg.write_text("[kore_pet]\nmax_prompt_length = 64\n")
        with PetEngine.from_config(cfg, path=db_path) as engine:
            assert engine.settings.max_prompt_length == 64


class TestLifecycle:
    def test_traces_off_by_default(self, db_path, clock):
        with PetEngine(db_path, clock=clock) as engine:
            pet = engine.create_pet("Mote")
            asyncio.run(engine.record_behavior(pet.id, "feed"))
            assert engine.traces() == []

    def test_stats_counts_rows(self, engine):
        pet = engine.create_pet("Ember")
        asyncio.run(engine.record_behavior(pet.id, "feed"))
        counts = engine.stats()
        assert counts["pets"] == 1
        assert counts["behavior_events"] == 1

    def test_async_context_manager(self, db_path, clock):
        async def run():
            async with PetEngine(db_path, clock=clock) as engine:
                pet = engine.create_pet("Mote")
                await engine.record_behavior(pet.id, "feed")
                await engine.drain()
                assert engine.judgments(pet.id)[0].behavior_count == 1

        asyncio.run(run())
