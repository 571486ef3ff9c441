import json

import pytest

from alchemy.clients.llm import Completion, PermanentFailure
from alchemy.domain.keys import DEFAULT_GLYPH, normalize_key
from alchemy.errors import InvalidInputError, ModelValidationError
from alchemy.models.dc_models import Annotation, ManualStepModel, PathStepModel
from alchemy.models.schema_models import CombinationSchema

from conftest import paths_reply

CONFLICTING_RAIN = [("Water", "Fire", "Cloud", "☁️"), ("Cloud", "Earth", "Rain", "🌧️")]
CLEAN_RAIN = [("Water", "Wind", "Mist", "🌫️"), ("Mist", "Earth", "Dew", "💧"), ("Dew", "Wind", "Rain", "🌧️")]


@pytest.fixture
def composer(engine_manager):
    return engine_manager.composer


async def _seed(store, a, b, result, glyph):
    await store.insert_if_absent(
        CombinationSchema(
            combination_key=normalize_key(a, b),
            input_a=a,
            input_b=b,
            result_name=result,
            result_glyph=glyph,
            origin="model_generated",
        )
    )


def _steps(path):
    return [PathStepModel(a=a, b=b, result_name=result, result_glyph=glyph) for a, b, result, glyph in path]


class TestGeneratePaths:
    @pytest.mark.asyncio
    async def test_conflicting_step_is_annotated(self, engine_manager, composer, gateway):
        await _seed(engine_manager.store, "Water", "Fire", "Steam", "♨️")
        gateway.push(paths_reply(CONFLICTING_RAIN))

        response = await composer.generate_paths("Rain", count=1)

        assert response.target == "Rain"
        assert response.existing_combinations_used == 1
        [path] = response.paths
        first, second = path.steps
        assert first.annotation == Annotation.conflicting
        assert first.conflict.existing_result == "Steam"
        assert first.conflict.generated_result == "Cloud"
        assert second.annotation == Annotation.new
        assert path.summary.conflicts == 1
        assert path.summary.new == 1

    @pytest.mark.asyncio
    async def test_paths_are_ranked_and_deduplicated(self, engine_manager, composer, gateway):
        await _seed(engine_manager.store, "Water", "Fire", "Steam", "♨️")
        gateway.push(paths_reply(CONFLICTING_RAIN, CLEAN_RAIN, CLEAN_RAIN))

        response = await composer.generate_paths("Rain", count=3)

        assert len(response.paths) == 2
        assert [path.summary.conflicts for path in response.paths] == [0, 1]
        assert response.paths[0].steps[0].result_name == "Mist"

    @pytest.mark.asyncio
    async def test_invalid_paths_are_dropped(self, composer, gateway):
        wrong_target = [("Water", "Fire", "Steam", "♨️")]
        unrooted = [("Lava", "Water", "Rain", "🌧️")]
        starter_result = [("Water", "Earth", "Fire", "🔥"), ("Fire", "Wind", "Rain", "🌧️")]
        gateway.push(paths_reply(wrong_target, unrooted, starter_result, CLEAN_RAIN))

        response = await composer.generate_paths("Rain", count=3)
        assert len(response.paths) == 1
        assert len(response.paths[0].steps) == 3

    @pytest.mark.asyncio
    async def test_no_valid_path(self, composer, gateway):
        gateway.push(paths_reply([("Lava", "Water", "Rain", "🌧️")]))
        with pytest.raises(ModelValidationError):
            await composer.generate_paths("Rain")

    @pytest.mark.asyncio
    async def test_unparseable_reply(self, composer, gateway):
        gateway.push(Completion("Here are some ideas for rain", "primary-model"))
        with pytest.raises(ModelValidationError):
            await composer.generate_paths("Rain")

    @pytest.mark.asyncio
    async def test_starter_target_is_rejected(self, composer, gateway):
        with pytest.raises(InvalidInputError):
            await composer.generate_paths("Water")
        assert gateway.calls == []


class TestValidatePaths:
    @pytest.mark.asyncio
    async def test_existing_step_with_glyph_mismatch(self, engine_manager, composer):
        await _seed(engine_manager.store, "Water", "Fire", "Steam", "♨️")
        [path] = await composer.validate_paths([_steps([("Fire", "Water", "steam", "💨")])])
        [step] = path.steps
        assert step.annotation == Annotation.matching_existing
        assert step.emoji_mismatch.existing == "♨️"
        assert step.emoji_mismatch.generated == "💨"

    @pytest.mark.asyncio
    async def test_new_step_for_known_element(self, engine_manager, composer):
        await _seed(engine_manager.store, "Water", "Fire", "Steam", "♨️")
        [path] = await composer.validate_paths([_steps([("Lava", "Water", "Steam", "💨")])])
        [step] = path.steps
        assert step.annotation == Annotation.new
        assert step.emoji_mismatch.existing == "♨️"

    @pytest.mark.asyncio
    async def test_validation_never_writes(self, engine_manager, composer):
        await composer.validate_paths([_steps(CLEAN_RAIN)])
        assert await engine_manager.store.all_pair_combinations() == []


class TestCommitPath:
    @pytest.mark.asyncio
    async def test_conflict_leaves_existing_row_untouched(self, engine_manager, composer):
        store = engine_manager.store
        await _seed(store, "Water", "Fire", "Steam", "♨️")

        report = await composer.commit_path(_steps(CONFLICTING_RAIN), "Rain", "🌧️")

        assert report.conflicts == 1
        assert report.created == 1
        assert report.skipped == 0
        [conflict] = report.conflict_details
        assert (conflict.input_a, conflict.input_b) == ("Water", "Fire")
        assert conflict.existing_result == "Steam"
        assert conflict.attempted_result == "Cloud"
        row = await store.get_by_key("fire+water")
        assert (row.result_name, row.result_glyph) == ("Steam", "♨️")
        assert not report.target_placeholder_created

    @pytest.mark.asyncio
    async def test_commit_is_idempotent(self, engine_manager, composer):
        first = await composer.commit_path(_steps(CLEAN_RAIN), "Rain", "🌧️")
        second = await composer.commit_path(_steps(CLEAN_RAIN), "Rain", "🌧️")

        assert first.created == 3
        assert second.created == 0
        assert second.skipped == 3
        assert len(await engine_manager.store.all_pair_combinations()) == 3

    @pytest.mark.asyncio
    async def test_target_step_uses_target_glyph(self, engine_manager, composer):
        await composer.commit_path(_steps([("Water", "Fire", "Steam", "💨")]), "Steam", "♨️")
        assert (await engine_manager.store.get_by_key("fire+water")).result_glyph == "♨️"

    @pytest.mark.asyncio
    async def test_target_placeholder(self, engine_manager, composer):
        report = await composer.commit_path(_steps([("Water", "Fire", "Steam", "♨️")]), "Thunder", "⚡")
        assert report.target_placeholder_created
        assert await engine_manager.store.element_exists("thunder")
        assert await engine_manager.store.canonical_glyph("Thunder") == "⚡"

    @pytest.mark.asyncio
    async def test_bad_steps_are_reported_as_errors(self, composer):
        steps = _steps([("Water", "Earth", "Fire", "🔥"), ("Water", "Fire", "Steam", "♨️♨️")])
        steps.append(PathStepModel(a="Steam", b="Earth", result_name="Geyser", result_glyph="⛲"))
        report = await composer.commit_path(steps, "Geyser", "⛲")
        assert report.errors == 2
        assert len(report.error_details) == 2
        assert report.created == 1

    @pytest.mark.asyncio
    async def test_empty_path(self, composer):
        with pytest.raises(InvalidInputError):
            await composer.commit_path([], "Rain", "🌧️")


class TestManualPathway:
    @pytest.mark.asyncio
    async def test_missing_glyphs_come_from_the_model(self, engine_manager, composer, gateway):
        gateway.push(Completion(json.dumps({"Geyser": "⛲"}), "primary-model"))
        steps = [
            ManualStepModel(a="Water", b="Fire", result_name="Steam", result_glyph="♨️"),
            ManualStepModel(a="Steam", b="Earth", result_name="Geyser"),
        ]

        response = await composer.commit_manual_pathway(steps, "Geyser")

        assert response.created == 2
        assert response.final_element == "Geyser"
        assert response.final_glyph == "⛲"
        assert [step.result_glyph for step in response.steps] == ["♨️", "⛲"]
        assert len(gateway.calls) == 1
        row = await engine_manager.store.get_by_key("earth+steam")
        assert row.origin == "human_authored"

    @pytest.mark.asyncio
    async def test_known_glyphs_win_over_provided_ones(self, engine_manager, composer, gateway):
        await _seed(engine_manager.store, "Water", "Fire", "Steam", "♨️")
        steps = [ManualStepModel(a="Steam", b="Earth", result_name="Geyser", result_glyph="⛲", glyph_a="💨")]

        response = await composer.commit_manual_pathway(steps, "Geyser")

        assert response.final_glyph == "⛲"
        assert gateway.calls == []
        assert await engine_manager.store.canonical_glyph("steam") == "♨️"

    @pytest.mark.asyncio
    async def test_model_failure_falls_back_to_default_glyph(self, composer, gateway):
        gateway.push(PermanentFailure("unknown"))
        steps = [ManualStepModel(a="Water", b="Fire", result_name="Steam")]

        response = await composer.commit_manual_pathway(steps, "Steam")

        assert response.final_glyph == DEFAULT_GLYPH
        assert response.created == 1


class TestShortestPath:
    @pytest.mark.asyncio
    async def test_found(self, engine_manager, composer):
        store = engine_manager.store
        await _seed(store, "Water", "Fire", "Steam", "♨️")
        await _seed(store, "Steam", "Earth", "Geyser", "⛲")
        await _seed(store, "Steam", "Lava", "Geyser", "⛲")

        response = await composer.shortest_path("geyser")

        assert response.found
        assert [(step.input_a, step.input_b, step.result_name) for step in response.steps] == [
            ("Water", "Fire", "Steam"),
            ("Steam", "Earth", "Geyser"),
        ]

    @pytest.mark.asyncio
    async def test_not_found(self, engine_manager, composer):
        await _seed(engine_manager.store, "Steam", "Lava", "Geyser", "⛲")
        response = await composer.shortest_path("Geyser")
        assert not response.found
        assert response.steps == []

    @pytest.mark.asyncio
    async def test_starter(self, composer):
        response = await composer.shortest_path("Fire")
        assert response.found
        assert response.steps == []
