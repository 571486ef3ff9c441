import asyncio

import pytest

from alchemy.clients.llm import Completion, TransientFailure
from alchemy.domain.safety import SAFE_SUBSTITUTES
from alchemy.errors import InvalidInputError, ModelValidationError, RateLimitedError
from alchemy.models.schema_models import CombinationSchema
from alchemy.redis_cache import cache_key

from conftest import element_reply

SUBSTITUTE_NAMES = {name for name, _ in SAFE_SUBSTITUTES}


@pytest.fixture
def orchestrator(engine_manager):
    return engine_manager.orchestrator


class TestCombine:
    @pytest.mark.asyncio
    async def test_cold_combine_then_cached(self, orchestrator, gateway):
        gateway.push(element_reply("Steam", "♨️"))

        first = await orchestrator.combine("Water", "Fire", caller_id="user-1")
        assert (first.row.result_name, first.row.result_glyph, first.row.origin) == ("Steam", "♨️", "model_generated")
        assert first.created
        assert first.first_discovery
        assert first.row.discovered_by == "user-1"

        second = await orchestrator.combine("Water", "Fire")
        assert second.cached
        assert (second.row.result_name, second.row.result_glyph) == ("Steam", "♨️")
        assert len(gateway.calls) == 1

    @pytest.mark.asyncio
    async def test_anonymous_discovery_is_not_credited(self, orchestrator, gateway):
        gateway.push(element_reply("Steam", "♨️"))
        outcome = await orchestrator.combine("Water", "Fire")
        assert outcome.created
        assert outcome.row.discovered_by is None
        assert not outcome.first_discovery

    @pytest.mark.asyncio
    async def test_inputs_are_symmetric(self, engine_manager, orchestrator, gateway):
        gateway.push(element_reply("Mud", "🟤"))
        first = await orchestrator.combine("Earth", "Water")
        second = await orchestrator.combine("water", "  earth ")

        assert first.row.result_name == second.row.result_name
        assert first.row.combination_key == second.row.combination_key == "earth+water"
        rows = await engine_manager.store.all_pair_combinations()
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_store_hit_refills_cache_and_counts_use(self, engine_manager, orchestrator, gateway, fake_redis):
        gateway.push(element_reply("Steam", "♨️"))
        await orchestrator.combine("Water", "Fire")
        fake_redis.data.clear()

        outcome = await orchestrator.combine("Fire", "Water")
        assert not outcome.cached
        assert not outcome.created
        assert fake_redis.data
        assert engine_manager.use_counts.pending == {"fire+water": 1}

    @pytest.mark.asyncio
    async def test_rename_makes_cache_miss_once(self, engine_manager, orchestrator, gateway):
        gateway.push(element_reply("Steam", "♨️"))
        await orchestrator.combine("Water", "Fire")
        assert (await orchestrator.combine("Water", "Fire")).cached

        await engine_manager.store.rename_element("Steam", "Vapor")

        after = await orchestrator.combine("Water", "Fire")
        assert not after.cached
        assert after.row.result_name == "Vapor"
        again = await orchestrator.combine("Water", "Fire")
        assert again.cached
        assert again.row.result_name == "Vapor"
        assert len(gateway.calls) == 1

    @pytest.mark.asyncio
    async def test_known_element_keeps_its_glyph(self, orchestrator, gateway):
        gateway.push(element_reply("Steam", "♨️"), element_reply("steam", "💨"))
        await orchestrator.combine("Water", "Fire")

        outcome = await orchestrator.combine("Lava", "Water")
        assert outcome.created
        assert not outcome.first_discovery
        assert outcome.row.result_glyph == "♨️"

    @pytest.mark.asyncio
    async def test_safety_refusal_stores_a_substitute(self, engine_manager, orchestrator, gateway):
        gateway.push(element_reply("Child Abuse", "🚫"))

        outcome = await orchestrator.combine("Cake", "Candle")
        assert outcome.row.result_name in SUBSTITUTE_NAMES
        assert outcome.safety_substituted
        rows = await engine_manager.store.all_pair_combinations()
        assert [row.result_name for row in rows] == [outcome.row.result_name]

    @pytest.mark.asyncio
    async def test_optional_profanity_filter(self, orchestrator, gateway):
        orchestrator.profanity_filter = True
        gateway.push(element_reply("Shit Storm", "💩"))
        outcome = await orchestrator.combine("Wind", "Mud")
        assert outcome.row.result_name in SUBSTITUTE_NAMES


class TestInputValidation:
    @pytest.mark.asyncio
    async def test_name_length_limit(self, orchestrator, gateway):
        gateway.push(element_reply("Long Fire", "🔥"))
        outcome = await orchestrator.combine("a" * 100, "Fire")
        assert outcome.created

        with pytest.raises(InvalidInputError):
            await orchestrator.combine("a" * 101, "Fire")
        assert len(gateway.calls) == 1

    @pytest.mark.parametrize(
        "a, b",
        [("", "Fire"), ("   ", "Fire"), ("Fire", None), ("_ADMIN", "Fire"), ("Wat\ud800er", "Fire")],
    )
    @pytest.mark.asyncio
    async def test_rejected_inputs(self, orchestrator, gateway, a, b):
        with pytest.raises(InvalidInputError):
            await orchestrator.combine(a, b)
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_self_combination(self, orchestrator, gateway):
        with pytest.raises(InvalidInputError):
            await orchestrator.combine("Fire", " fire ")

        orchestrator.allow_self_combination = True
        gateway.push(element_reply("Inferno", "🔥"))
        outcome = await orchestrator.combine("Fire", "Fire")
        assert outcome.row.combination_key == "fire+fire"


class TestModelReplies:
    @pytest.mark.asyncio
    async def test_two_glyph_reply_is_rejected_after_one_regeneration(self, engine_manager, orchestrator, gateway):
        gateway.push(element_reply("Steam", "♨️💨"), element_reply("Steam", "♨️💨"))
        with pytest.raises(ModelValidationError):
            await orchestrator.combine("Water", "Fire")
        assert len(gateway.calls) == 2
        assert await engine_manager.store.get_by_key("fire+water") is None

    @pytest.mark.asyncio
    async def test_malformed_then_valid(self, orchestrator, gateway):
        gateway.push(Completion("I think it is steam", "primary-model"), element_reply("Steam", "♨️"))
        outcome = await orchestrator.combine("Water", "Fire")
        assert outcome.row.result_name == "Steam"
        assert len(gateway.calls) == 2

    @pytest.mark.asyncio
    async def test_starter_result_is_malformed(self, orchestrator, gateway):
        gateway.push(element_reply("Fire", "🔥"), element_reply("Fire", "🔥"))
        with pytest.raises(ModelValidationError):
            await orchestrator.combine("Lava", "Wind")

    @pytest.mark.asyncio
    async def test_rate_limited_three_times(self, engine_manager, orchestrator, gateway, clock):
        gateway.push(*[TransientFailure("rate_limited", retry_after=1.0)] * 3)
        with pytest.raises(RateLimitedError) as raised:
            await orchestrator.combine("Water", "Fire")
        assert raised.value.retry_after == 1
        assert raised.value.kind == "rate_limited"
        assert len(gateway.calls) == 3
        assert await engine_manager.store.get_by_key("fire+water") is None

    @pytest.mark.asyncio
    async def test_rate_limited_once_then_success(self, engine_manager, orchestrator, gateway):
        gateway.push(TransientFailure("rate_limited", retry_after=1.0), element_reply("Steam", "♨️"))
        outcome = await orchestrator.combine("Water", "Fire")
        assert outcome.row.result_name == "Steam"
        assert len(gateway.calls) == 2
        assert len(await engine_manager.store.all_pair_combinations()) == 1


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_model_call(self, engine_manager, orchestrator, gateway):
        release = asyncio.Event()

        async def gated(prompt, model):
            await release.wait()
            return element_reply("Steam", "♨️")

        gateway.push(gated)
        tasks = [asyncio.create_task(orchestrator.combine("Water", "Fire")) for _ in range(5)]
        while not orchestrator.single_flight.is_running("fire+water"):
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.1)
        release.set()
        outcomes = await asyncio.gather(*tasks)

        assert len(gateway.calls) == 1
        assert {outcome.row.result_name for outcome in outcomes} == {"Steam"}
        assert sum(outcome.created for outcome in outcomes) == 1
        assert len(await engine_manager.store.all_pair_combinations()) == 1
        assert not orchestrator.single_flight.is_running("fire+water")

    @pytest.mark.asyncio
    async def test_cancelled_leader_hands_over(self, orchestrator, gateway):
        never = asyncio.Event()

        async def stuck(prompt, model):
            await never.wait()

        gateway.push(stuck, element_reply("Steam", "♨️"))
        leader = asyncio.create_task(orchestrator.combine("Water", "Fire"))
        while not orchestrator.single_flight.is_running("fire+water"):
            await asyncio.sleep(0.01)
        follower = asyncio.create_task(orchestrator.combine("Water", "Fire"))
        await asyncio.sleep(0.1)

        leader.cancel()
        with pytest.raises(asyncio.CancelledError):
            await leader
        outcome = await follower
        assert outcome.row.result_name == "Steam"
        assert len(gateway.calls) == 2


class TestElementGlyphs:
    @pytest.mark.asyncio
    async def test_concurrent_discoveries_of_one_element_share_its_glyph(
        self, engine_manager, orchestrator, gateway, fake_redis
    ):
        release = asyncio.Event()

        def steam_with(glyph):
            async def gated(prompt, model):
                await release.wait()
                return element_reply("Steam", glyph)

            return gated

        gateway.push(steam_with("♨️"), steam_with("💨"))
        tasks = [
            asyncio.create_task(orchestrator.combine("Water", "Fire", caller_id="user-1")),
            asyncio.create_task(orchestrator.combine("Wind", "Earth", caller_id="user-2")),
        ]
        while len(gateway.calls) < 2:
            await asyncio.sleep(0.01)
        release.set()
        outcomes = await asyncio.gather(*tasks)

        glyphs = {outcome.row.result_glyph for outcome in outcomes}
        assert len(glyphs) == 1
        assert all(outcome.created for outcome in outcomes)
        assert sum(outcome.first_discovery for outcome in outcomes) == 1

        rows = await engine_manager.store.all_pair_combinations()
        assert {row.result_glyph for row in rows} == glyphs
        for key in ("fire+water", "earth+wind"):
            cached = CombinationSchema.model_validate_json(fake_redis.data[cache_key(key)])
            assert {cached.result_glyph} == glyphs

        again = await orchestrator.combine("Earth", "Wind")
        assert again.cached
        assert {again.row.result_glyph} == glyphs

    @pytest.mark.asyncio
    async def test_deleted_element_can_be_rediscovered_with_a_new_glyph(self, engine_manager, orchestrator, gateway):
        gateway.push(element_reply("Steam", "♨️"), element_reply("Steam", "💨"))
        await orchestrator.combine("Water", "Fire", caller_id="user-1")
        await engine_manager.store.delete_element("Steam")

        outcome = await orchestrator.combine("Water", "Fire", caller_id="user-2")
        assert outcome.row.result_glyph == "💨"
        assert outcome.first_discovery
