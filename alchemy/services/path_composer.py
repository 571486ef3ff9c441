"""Path use cases: generate, validate and commit solution paths.

Validation never writes. Commit writes new steps with insert-if-absent and
never touches a row whose result differs from the step's.
"""

import logging
import random
from typing import Sequence

from sqlalchemy.exc import SQLAlchemyError

from alchemy.clients.llm import RetryPolicy, call_with_fallback
from alchemy.clock import SystemClock
from alchemy.domain.glyphs import is_single_glyph
from alchemy.domain.keys import (
    ADMIN_SENTINEL,
    DEFAULT_GLYPH,
    DEFINED_SENTINEL,
    admin_key,
    element_identity,
    is_starter,
    normalize_key,
    same_element,
)
from alchemy.domain.paths import (
    is_rooted,
    path_signature,
    produces_starter,
    rank_paths,
    shortest_known_path,
    terminates_at,
)
from alchemy.domain.replies import parse_glyph_map, parse_paths_reply
from alchemy.domain.safety import contains_child_exploitation
from alchemy.errors import AlchemyError, InvalidInputError, ModelValidationError
from alchemy.models.dc_models import (
    AnnotatedPathModel,
    AnnotatedStepModel,
    Annotation,
    CommitReportModel,
    ConflictModel,
    EmojiMismatchModel,
    ManualPathwayResponseModel,
    ManualStepModel,
    Origin,
    PathGenerateResponseModel,
    PathStepModel,
    PathSummaryModel,
    ShortestPathResponseModel,
    StepConflictModel,
)
from alchemy.models.schema_models import CombinationSchema
from alchemy.prompts import glyph_prompt, path_prompt
from alchemy.services.combination_db import CombinationStore, validate_element_name, validate_glyph

CONTEXT_LIMIT = 200


def _validate_target(target: str) -> str:
    target = validate_element_name(target, "target")
    if is_starter(target):
        raise InvalidInputError(f"{target} is a starter element")
    if contains_child_exploitation(target):
        raise InvalidInputError("target is not allowed")
    return target


class PathComposer:
    def __init__(
        self,
        store: CombinationStore,
        gateway,
        models: list[str],
        policy: RetryPolicy | None = None,
        clock: SystemClock | None = None,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.models = models
        self.policy = policy or RetryPolicy()
        self.clock = clock or SystemClock()
        self.rng = rng or random.Random()

    async def generate_paths(self, target: str, count: int = 3) -> PathGenerateResponseModel:
        """Ask the model for ``count`` rooted paths ending at ``target`` and annotate them

        Args:
            target (str): Element every path must produce last
            count (int): Number of paths to request

        Returns:
            PathGenerateResponseModel: Valid paths, fewest conflicts first
        """
        target = _validate_target(target)
        existing = await self.store.top_combinations(CONTEXT_LIMIT)
        logging.info(f"Generating {count} paths to {target} with {len(existing)} existing combinations")

        outcome = await call_with_fallback(
            self.gateway,
            path_prompt(target, count, existing),
            self.models,
            max_tokens=4000,
            temperature=0.8,
            policy=self.policy,
            clock=self.clock,
            rng=self.rng,
        )
        try:
            candidates = parse_paths_reply(outcome.completion.text)
        except ValueError as e:
            raise ModelValidationError(f"The model did not return usable paths: {e}")

        paths = []
        seen = set()
        for steps in candidates:
            if not is_rooted(steps) or not terminates_at(steps, target) or produces_starter(steps):
                logging.info(f"Dropping generated path to {target}: not a rooted path to the target")
                continue
            if any(contains_child_exploitation(step.result_name) for step in steps):
                logging.warning(f"Dropping generated path to {target}: refused by the safety filter")
                continue
            signature = path_signature(steps)
            if signature in seen:
                continue
            seen.add(signature)
            paths.append([PathStepModel(**vars(step)) for step in steps])
        if not paths:
            raise ModelValidationError(f"The model did not return a valid path to {target}")

        annotated = await self.validate_paths(paths[:count])
        order = rank_paths([path.steps for path in annotated], [path.summary.conflicts for path in annotated])
        return PathGenerateResponseModel(
            target=target,
            paths=[annotated[index] for index in order],
            existing_combinations_used=len(existing),
        )

    async def validate_paths(self, paths: Sequence[Sequence[PathStepModel]]) -> list[AnnotatedPathModel]:
        """Annotate every step as new, existing or conflict against the store."""
        keys = {normalize_key(step.input_a, step.input_b) for steps in paths for step in steps}
        existing = await self.store.bulk_get(keys)
        canonical = await self.store.canonical_glyphs(step.result_name for steps in paths for step in steps)

        annotated_paths = []
        for steps in paths:
            annotated_steps = []
            summary = PathSummaryModel()
            for step in steps:
                row = existing.get(normalize_key(step.input_a, step.input_b))
                conflict = None
                mismatch = None
                if row is None:
                    annotation = Annotation.new
                    summary.new += 1
                    known = canonical.get(element_identity(step.result_name))
                    if known is not None and known != step.result_glyph:
                        mismatch = EmojiMismatchModel(existing=known, generated=step.result_glyph)
                elif same_element(row.result_name, step.result_name):
                    annotation = Annotation.matching_existing
                    summary.existing += 1
                    if row.result_glyph != step.result_glyph:
                        mismatch = EmojiMismatchModel(existing=row.result_glyph, generated=step.result_glyph)
                else:
                    annotation = Annotation.conflicting
                    summary.conflicts += 1
                    conflict = ConflictModel(
                        existing_result=row.result_name,
                        existing_glyph=row.result_glyph,
                        generated_result=step.result_name,
                        generated_glyph=step.result_glyph,
                    )
                annotated_steps.append(
                    AnnotatedStepModel(
                        input_a=step.input_a,
                        input_b=step.input_b,
                        result_name=step.result_name,
                        result_glyph=step.result_glyph,
                        annotation=annotation,
                        conflict=conflict,
                        emoji_mismatch=mismatch,
                    )
                )
            annotated_paths.append(AnnotatedPathModel(steps=annotated_steps, summary=summary))
        return annotated_paths

    async def commit_path(
        self,
        steps: Sequence[PathStepModel],
        target_name: str,
        target_glyph: str,
        origin: Origin = Origin.model_generated,
    ) -> CommitReportModel:
        """Write the new steps of a path and make sure its target exists

        Args:
            steps (Sequence[PathStepModel]): Steps in order
            target_name (str): Element the path ends at
            target_glyph (str): Glyph for the target when it has none yet
            origin (Origin): Origin recorded on created rows

        Returns:
            CommitReportModel: Created, skipped, conflicting and failed steps
        """
        if not steps:
            raise InvalidInputError("path must contain at least one step")
        target_name = _validate_target(target_name)
        target_glyph = validate_glyph(target_glyph, "target_glyph")
        target_glyph = await self.store.canonical_glyph(target_name) or target_glyph

        report = CommitReportModel()
        for step in steps:
            try:
                row = self._step_row(step, target_name, target_glyph, origin)
            except InvalidInputError as e:
                report.errors += 1
                report.error_details.append(f"{step.input_a} + {step.input_b}: {e.message}")
                continue
            try:
                stored, created = await self.store.insert_if_absent(row)
            except SQLAlchemyError as e:
                logging.error(f"Failed to save {row.combination_key}: {e}")
                report.errors += 1
                report.error_details.append(f"Failed to save {row.input_a} + {row.input_b}")
                continue

            if created:
                report.created += 1
            elif same_element(stored.result_name, row.result_name):
                report.skipped += 1
            else:
                report.conflicts += 1
                report.conflict_details.append(
                    StepConflictModel(
                        input_a=row.input_a,
                        input_b=row.input_b,
                        existing_result=stored.result_name,
                        existing_glyph=stored.result_glyph,
                        attempted_result=row.result_name,
                    )
                )

        if not await self.store.element_exists(target_name):
            placeholder = CombinationSchema(
                combination_key=admin_key(target_name),
                input_a=ADMIN_SENTINEL,
                input_b=DEFINED_SENTINEL,
                result_name=target_name,
                result_glyph=target_glyph,
                origin=Origin.admin_placeholder.value,
            )
            _, report.target_placeholder_created = await self.store.insert_if_absent(placeholder)

        logging.info(
            f"Committed path to {target_name}: {report.created} created, {report.skipped} skipped, "
            f"{report.conflicts} conflicts, {report.errors} errors"
        )
        return report

    def _step_row(self, step: PathStepModel, target_name: str, target_glyph: str, origin: Origin) -> CombinationSchema:
        input_a = validate_element_name(step.input_a, "a")
        input_b = validate_element_name(step.input_b, "b")
        result_name = validate_element_name(step.result_name, "result_name")
        if is_starter(result_name):
            raise InvalidInputError(f"{result_name} is a starter element and cannot be a result")
        if contains_child_exploitation(result_name):
            raise InvalidInputError("result_name is not allowed")
        if same_element(result_name, target_name):
            result_glyph = target_glyph
        else:
            result_glyph = validate_glyph(step.result_glyph, "result_glyph")
        return CombinationSchema(
            combination_key=normalize_key(input_a, input_b),
            input_a=input_a,
            input_b=input_b,
            result_name=result_name,
            result_glyph=result_glyph,
            origin=origin.value,
        )

    async def commit_manual_pathway(
        self, steps: Sequence[ManualStepModel], final_element: str
    ) -> ManualPathwayResponseModel:
        """Commit a hand-written pathway, filling in missing glyphs

        Glyphs come from the canonical view first, then from the request,
        then from the model, and default to ``DEFAULT_GLYPH``.
        """
        if not steps:
            raise InvalidInputError("steps must contain at least one step")
        final_element = _validate_target(final_element)

        names = []
        for step in steps:
            names.extend([step.input_a, step.input_b, step.result_name])
        glyphs = await self.store.canonical_glyphs(names)
        for step in steps:
            for name, glyph in (
                (step.input_a, step.glyph_a),
                (step.input_b, step.glyph_b),
                (step.result_name, step.result_glyph),
            ):
                if glyph and is_single_glyph(glyph):
                    glyphs.setdefault(element_identity(name), glyph.strip())

        missing = []
        for name in names + [final_element]:
            if element_identity(name) not in glyphs and name.strip() and name.strip() not in missing:
                missing.append(name.strip())
        if missing:
            glyphs.update(await self._ask_for_glyphs(missing))

        def glyph_of(name: str) -> str:
            return glyphs.get(element_identity(name), DEFAULT_GLYPH)

        complete = [
            PathStepModel(
                input_a=step.input_a.strip(),
                input_b=step.input_b.strip(),
                result_name=step.result_name.strip(),
                result_glyph=glyph_of(step.result_name),
            )
            for step in steps
        ]
        final_glyph = glyph_of(final_element)
        report = await self.commit_path(complete, final_element, final_glyph, origin=Origin.human_authored)
        return ManualPathwayResponseModel(
            **report.model_dump(),
            steps=complete,
            final_element=final_element,
            final_glyph=final_glyph,
        )

    async def _ask_for_glyphs(self, names: list[str]) -> dict[str, str]:
        try:
            outcome = await call_with_fallback(
                self.gateway,
                glyph_prompt(names),
                self.models,
                max_tokens=500,
                temperature=0.7,
                policy=self.policy,
                clock=self.clock,
                rng=self.rng,
            )
            glyphs = parse_glyph_map(outcome.completion.text)
        except (AlchemyError, ValueError) as e:
            logging.error(f"Failed to generate glyphs for {len(names)} elements: {e}")
            return {}
        logging.info(f"Generated glyphs for {len(glyphs)} of {len(names)} elements")
        return glyphs

    async def shortest_path(self, target: str) -> ShortestPathResponseModel:
        target = validate_element_name(target, "target")
        combinations = await self.store.all_pair_combinations()
        path = shortest_known_path(combinations, target)
        if path is None:
            return ShortestPathResponseModel(target=target, found=False)
        return ShortestPathResponseModel(
            target=target,
            found=True,
            steps=[
                PathStepModel(
                    input_a=row.input_a,
                    input_b=row.input_b,
                    result_name=row.result_name,
                    result_glyph=row.result_glyph,
                )
                for row in path
            ],
        )
