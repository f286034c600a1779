"""Tests for descriptor evolution, trait solidification and hints."""

import asyncio
import json
import os
import tempfile
import warnings

import pytest

from kore_pet.config import Settings
from kore_pet.descriptor import (
    DescriptorGenerator,
    append_evolution,
    fallback_content,
    parse_content,
)
from kore_pet.errors import ParseError
from kore_pet.generators import GeneratorClient, static_generate
from kore_pet.hints import build_hints, tags_from_keywords
from kore_pet.models import Pet, Rarity, Stats, TraitKind
from kore_pet.oracle import StateOracle
from kore_pet.storage import Storage
from kore_pet.traits import TraitSolidifier, parse_traits


@pytest.fixture
def storage():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    s = Storage(path)
    yield s
    s.close()
    os.unlink(path)


@pytest.fixture
def pet(storage):
    p = Pet(name="Ember", species="Fire Salamander", rarity=Rarity.SR,
            descriptor="A small salamander with a warm glow.")
    storage.save_pet(p)
    return p


def build(storage, generate=None, settings=None):
    settings = settings or Settings()
    client = GeneratorClient(generate, timeout=settings.generator_timeout)
    oracle = StateOracle(storage, settings)
    solidifier = TraitSolidifier(storage, settings, client, oracle)
    descriptor = DescriptorGenerator(storage, settings, client, oracle,
                                     solidifier.solidify)
    return descriptor, solidifier


EVOLUTION_JSON = json.dumps({
    "evolution_description": "Its scales harden like cooled lava",
    "new_keywords": ["dragon", "lava"],
    "evolution_direction": "defense",
})

TRAITS_JSON = json.dumps([
    {"name": "Lava Hide", "type": "passive", "description": "Tougher scales",
     "numericalEffect": {"hp": 8, "defense": 4, "special": "burn immunity"}},
    {"name": "Ember Burst", "type": "ultimate", "description": "Burst of flame",
     "numericalEffect": {"attack": 3, "speed": "fast"}},
])


# ── Descriptor bound ───────────────────────────────────────────────────


class TestAppendEvolution:
    def test_appends_line(self):
        out = append_evolution("Core", "grew wings", 220)
        assert out == "Core\nEvolved: grew wings"

    def test_empty_descriptor(self):
        assert append_evolution("", "grew wings", 220) == "Evolved: grew wings"

    def test_keeps_first_and_last_three(self):
        text = "Core"
        for i in range(6):
            text = append_evolution(text, f"step {i}", 60)
        lines = text.split("\n")
        assert lines[0] == "Core"
        assert lines[-1] == "Evolved: step 5"
        assert len(text) <= 60

    def test_hard_truncation_fits_exactly(self):
        out = append_evolution("C" * 50, "x" * 100, 40)
        assert len(out) == 40
        assert out.endswith("...")

    @pytest.mark.parametrize("limit", [8, 20, 220])
    def test_bound_over_many_steps(self, limit):
        text = "A pet"
        for i in range(50):
            text = append_evolution(text, "change " * (i % 7 + 1), limit)
            assert len(text) <= limit


class TestParseContent:
    def test_valid(self):
        content = parse_content("Sure!\n```json\n" + EVOLUTION_JSON + "\n```")
        assert content["evolution_description"] == "Its scales harden like cooled lava"
        assert content["new_keywords"] == ["dragon", "lava"]

    def test_missing_description(self):
        with pytest.raises(ParseError):
            parse_content('{"new_keywords": []}')

    def test_not_json(self):
        with pytest.raises(ParseError):
            parse_content("the pet changed somehow")


# ── Traits ─────────────────────────────────────────────────────────────


class TestParseTraits:
    def test_aliases_and_filters(self):
        specs = parse_traits(TRAITS_JSON)
        assert specs[0]["effects"] == {"health": 8, "defense": 4}
        assert specs[1]["kind"] is TraitKind.PASSIVE
        assert specs[1]["effects"] == {"attack": 3}

    def test_at_most_three(self):
        items = [{"name": f"t{i}"} for i in range(5)]
        assert len(parse_traits(json.dumps(items))) == 3

    def test_empty_list(self):
        with pytest.raises(ParseError):
            parse_traits("[]")

    def test_non_finite_and_huge_effects(self):
        raw = ('[{"name": "Glitch", "numericalEffect": '
               '{"attack": NaN, "defense": 1e400, "speed": -Infinity, '
               '"magic": 100000000000000000000000000000, "hp": -250, "health": 3}}]')
        specs = parse_traits(raw)
        assert specs[0]["effects"] == {"magic": 100, "health": -97}


class TestSolidify:
    def test_applies_summed_deltas(self, storage, pet):
        _, solidifier = build(storage, static_generate(TRAITS_JSON))
        traits = asyncio.run(solidifier.solidify(pet, fallback_content()))
        assert [t.name for t in traits] == ["Lava Hide", "Ember Burst"]
        loaded = storage.load_pet(pet.id)
        assert loaded.stats == Stats().apply({"health": 8, "defense": 4, "attack": 3})
        assert pet.stats == loaded.stats

    def test_fallback_without_generator(self, storage, pet):
        _, solidifier = build(storage)
        traits = asyncio.run(solidifier.solidify(pet, fallback_content()))
        assert len(traits) == 1
        assert traits[0].name == "Steady Growth"
        assert traits[0].effects == {"health": 5, "attack": 2, "defense": 2, "speed": 1}

    def test_fallback_on_garbage(self, storage, pet):
        _, solidifier = build(storage, static_generate("no traits today"))
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            traits = asyncio.run(solidifier.solidify(pet, fallback_content()))
        assert traits[0].name == "Steady Growth"

    def test_malformed_numbers_still_solidify(self, storage, pet):
        raw = '[{"name": "Glitch", "type": "passive", "numericalEffect": {"attack": NaN, "speed": 1e400}}]'
        _, solidifier = build(storage, static_generate(raw))
        traits = asyncio.run(solidifier.solidify(pet, fallback_content()))
        assert [t.name for t in traits] == ["Glitch"]
        assert traits[0].effects == {}
        assert storage.load_pet(pet.id).stats == Stats()

    def test_huge_effect_clamped_before_storage(self, storage, pet):
        raw = '[{"name": "Titan", "numericalEffect": {"health": 99999999999999999999999}}]'
        _, solidifier = build(storage, static_generate(raw))
        asyncio.run(solidifier.solidify(pet, fallback_content()))
        assert storage.load_pet(pet.id).stats.health == Stats().health + 100

    def test_cap(self, storage, pet):
        settings = Settings(max_active_traits=4)
        _, solidifier = build(storage, static_generate(TRAITS_JSON), settings)
        for _ in range(5):
            asyncio.run(solidifier.solidify(pet, fallback_content()))
            assert storage.count_active_traits(pet.id) <= 4
        assert storage.count_active_traits(pet.id) == 4
        assert len(storage.load_traits(pet.id)) == 10
        active = storage.load_traits(pet.id, active_only=True)
        assert [t.name for t in active] == ["Lava Hide", "Ember Burst"] * 2

    def test_cap_retires_exactly_overflow(self, storage, pet):
        settings = Settings(max_active_traits=3)
        _, solidifier = build(storage, static_generate(TRAITS_JSON), settings)
        asyncio.run(solidifier.solidify(pet, fallback_content()))
        asyncio.run(solidifier.solidify(pet, fallback_content()))
        # 2 active + 2 new = 4 -> retire exactly 1
        assert len(storage.load_traits(pet.id, active_only=False)) == 4
        assert storage.count_active_traits(pet.id) == 3


# ── Descriptor generator ───────────────────────────────────────────────


class TestEvolve:
    def test_with_generator(self, storage, pet):
        replies = iter([EVOLUTION_JSON, TRAITS_JSON])

        async def generate(prompt, options):
            return next(replies)

        descriptor, _ = build(storage, generate)
        record = asyncio.run(descriptor.evolve(pet, {"accumulated_weight": 20.0}))
        assert record.new_descriptor.endswith("Evolved: Its scales harden like cooled lava")
        assert record.old_descriptor == "A small salamander with a warm glow."
        loaded = storage.load_pet(pet.id)
        assert loaded.descriptor == record.new_descriptor
        assert loaded.last_evolution_at is not None
        assert len(storage.load_traits(pet.id)) == 2
        assert storage.load_oracle_state(pet.id) is not None

    def test_prompt_options(self, storage, pet):
        seen = []

        async def generate(prompt, options):
            seen.append((prompt, options))
            return EVOLUTION_JSON if len(seen) == 1 else TRAITS_JSON

        descriptor, _ = build(storage, generate)
        asyncio.run(descriptor.evolve(pet, {"behavior_summary": "performed battle"}))
        (evo_prompt, evo_opts), (_, trait_opts) = seen
        assert "Ember" in evo_prompt
        assert "performed battle" in evo_prompt
        assert "Oracle advice" in evo_prompt
        assert (evo_opts.temperature, evo_opts.max_tokens) == (0.8, 800)
        assert (trait_opts.temperature, trait_opts.max_tokens) == (0.2, 600)

    def test_fallback_is_deterministic(self, storage, pet):
        descriptor, _ = build(storage)
        record = asyncio.run(descriptor.evolve(pet, {}))
        assert record.content == fallback_content()
        assert record.new_descriptor.endswith(
            "Evolved: A subtle change stirred under a mysterious guidance")
        assert [t.name for t in storage.load_traits(pet.id)] == ["Steady Growth"]

    def test_generator_error_warns_once(self, storage, pet):
        async def broken(prompt, options):
            raise ConnectionError("down")

        descriptor, _ = build(storage, broken)
        with pytest.warns(RuntimeWarning):
            record = asyncio.run(descriptor.evolve(pet, {}))
        assert record.content == fallback_content()

    def test_timeout_falls_back(self, storage, pet):
        async def slow(prompt, options):
            await asyncio.sleep(5)
            return EVOLUTION_JSON

        descriptor, _ = build(storage, slow, Settings(generator_timeout=0.01))
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            record = asyncio.run(descriptor.evolve(pet, {}))
        assert record.content == fallback_content()

    def test_descriptor_bound_across_evolutions(self, storage, pet):
        settings = Settings(max_prompt_length=80)
        descriptor, _ = build(storage, static_generate(EVOLUTION_JSON), settings)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", RuntimeWarning)
            for _ in range(8):
                asyncio.run(descriptor.evolve(pet, {}))
                assert len(storage.load_pet(pet.id).descriptor) <= 80


# ── Hints ──────────────────────────────────────────────────────────────


class TestHints:
    def test_tags(self):
        assert tags_from_keywords(["Dragon might", "星辉", "dark veil"]) == [
            "dragon", "stellar", "shadow",
        ]

    def test_speed_and_rarity(self):
        hints = build_hints(Stats(speed=20), Stats(speed=12), Rarity.SSR)
        assert hints.deltas["speed"] == 8
        assert any("Speed" in s for s in hints.suggestions)
        assert any("High rarity" in s for s in hints.suggestions)
        assert hints.evolution.startswith("Rule-based suggestions")

    def test_no_change_no_suggestions(self):
        hints = build_hints(Stats(), Stats(), Rarity.N)
        assert hints.suggestions == []
        assert hints.evolution == ""
