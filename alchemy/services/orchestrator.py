"""Combine use case: cache, then store, then the model.

A miss is computed at most once per key in this process. The model reply is
validated, passed through the safety filter and written with insert-if-absent,
so the first writer of a key defines its result and the first writer of an
element defines its glyph. The stored row, not the reply, is what gets cached
and returned.
"""

import logging
import random
from dataclasses import dataclass

from alchemy.clients.llm import RetryPolicy, call_with_fallback
from alchemy.clock import SystemClock
from alchemy.domain.keys import is_starter, normalize_key, same_element
from alchemy.domain.replies import MalformedReply, ParsedElement, parse_element_reply
from alchemy.domain.safety import contains_child_exploitation, contains_profanity, safe_substitute
from alchemy.errors import InvalidInputError, ModelValidationError
from alchemy.models.dc_models import CombineResponseModel, Origin
from alchemy.models.schema_models import CombinationSchema
from alchemy.prompts import combination_prompt
from alchemy.redis_cache import ResultCache
from alchemy.services.combination_db import CombinationStore, validate_element_name
from alchemy.services.use_counts import UseCountBuffer
from alchemy.single_flight import SingleFlight

# One fresh regeneration after a malformed reply.
PARSE_ATTEMPTS = 2


@dataclass
class CombineOutcome:
    row: CombinationSchema
    cached: bool = False
    created: bool = False
    first_discovery: bool = False
    coalesced: bool = False
    safety_substituted: bool = False

    def to_response(self) -> CombineResponseModel:
        return CombineResponseModel(
            result_name=self.row.result_name,
            result_glyph=self.row.result_glyph,
            origin=self.row.origin,
            cached=self.cached,
            first_discovery=self.first_discovery,
        )


class GenerationOrchestrator:
    def __init__(
        self,
        store: CombinationStore,
        cache: ResultCache,
        gateway,
        use_counts: UseCountBuffer,
        models: list[str],
        policy: RetryPolicy | None = None,
        clock: SystemClock | None = None,
        rng: random.Random | None = None,
        allow_self_combination: bool = False,
        profanity_filter: bool = False,
        context_size: int = 12,
    ):
        self.store = store
        self.cache = cache
        self.gateway = gateway
        self.use_counts = use_counts
        self.models = models
        self.policy = policy or RetryPolicy()
        self.clock = clock or SystemClock()
        self.rng = rng or random.Random()
        self.allow_self_combination = allow_self_combination
        self.profanity_filter = profanity_filter
        self.context_size = context_size
        self.single_flight = SingleFlight()

    async def combine(self, a: str, b: str, caller_id: str | None = None) -> CombineOutcome:
        """Result of combining ``a`` and ``b``

        Args:
            a (str): First element name
            b (str): Second element name
            caller_id (str | None): Opaque caller identity, recorded as discoverer of new rows

        Returns:
            CombineOutcome: The stored row and how it was obtained
        """
        a = validate_element_name(a, "a")
        b = validate_element_name(b, "b")
        if same_element(a, b) and not self.allow_self_combination:
            raise InvalidInputError("An element cannot be combined with itself")
        key = normalize_key(a, b)

        cached = await self.cache.get(key)
        if cached is not None:
            await self.use_counts.bump(key)
            return CombineOutcome(row=cached, cached=True)

        stored = await self.store.get_by_key(key)
        if stored is not None:
            await self.cache.set(stored)
            await self.use_counts.bump(key)
            return CombineOutcome(row=stored)

        outcome, coalesced = await self.single_flight.run(key, lambda: self._generate(key, a, b, caller_id))
        if coalesced:
            return CombineOutcome(row=outcome.row, coalesced=True)
        return outcome

    async def _generate(self, key: str, a: str, b: str, caller_id: str | None) -> CombineOutcome:
        # A previous leader may have finished between our store read and now.
        stored = await self.store.get_by_key(key)
        if stored is not None:
            await self.cache.set(stored)
            return CombineOutcome(row=stored)

        element = await self._ask_model(a, b)
        name, glyph = element.name, element.glyph

        substituted = False
        if contains_child_exploitation(name) or (self.profanity_filter and contains_profanity(name)):
            name, glyph = safe_substitute(self.rng)
            substituted = True
            logging.warning(f"Model result for {key} refused by the safety filter, substituted {name}")

        row = CombinationSchema(
            combination_key=key,
            input_a=a,
            input_b=b,
            result_name=name,
            result_glyph=glyph,
            origin=Origin.model_generated.value,
            discovered_by=caller_id,
            use_count=0,
        )
        result = await self.store.insert_combination(row)
        stored, created = result.row, result.created
        if not created:
            logging.info(f"Combination {key} was created concurrently, adopting stored result")
        await self.cache.set(stored)

        first_discovery = created and result.new_element and caller_id is not None
        if first_discovery:
            logging.info(f"First discovery of {stored.result_name} via {key}")
        return CombineOutcome(
            row=stored,
            created=created,
            first_discovery=first_discovery,
            safety_substituted=substituted and created,
        )

    async def _ask_model(self, a: str, b: str) -> ParsedElement:
        examples = await self.store.nearby_combinations([a, b], limit=self.context_size)
        reason = None
        for attempt in range(PARSE_ATTEMPTS):
            outcome = await call_with_fallback(
                self.gateway,
                combination_prompt(a, b, examples, retry_reason=reason),
                self.models,
                max_tokens=200,
                temperature=0.7,
                policy=self.policy,
                clock=self.clock,
                rng=self.rng,
            )
            reply = parse_element_reply(outcome.completion.text)
            if isinstance(reply, ParsedElement) and is_starter(reply.name):
                reply = MalformedReply(f"{reply.name} is a starter element")
            if isinstance(reply, ParsedElement):
                return reply
            reason = reply.reason
            logging.warning(f"Malformed model reply for {a} + {b} (attempt {attempt + 1}): {reason}")
        raise ModelValidationError(f"The model did not return a valid element for {a} + {b}")
