import logging
import random

from fastapi import Request
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import async_sessionmaker

from alchemy import load_secrets
from alchemy.clients.llm import AnthropicGateway, RetryPolicy
from alchemy.clock import SystemClock
from alchemy.redis_cache import ResultCache
from alchemy.services.combination_db import CombinationStore
from alchemy.services.orchestrator import GenerationOrchestrator
from alchemy.services.path_composer import PathComposer
from alchemy.services.use_counts import UseCountBuffer


class EngineManager:
    """Holds the engine's capabilities for the lifetime of the app.

    Store, cache, model gateway and clock are passed in explicitly so tests
    can swap any of them.
    """

    def __init__(
        self,
        Session: async_sessionmaker,
        redis: Redis | None,
        gateway,
        clock: SystemClock | None = None,
        rng: random.Random | None = None,
        models: list[str] | None = None,
        policy: RetryPolicy | None = None,
        cache_ttl: int = load_secrets.combination_cache_ttl,
        allow_self_combination: bool = load_secrets.allow_self_combination,
        profanity_filter: bool = load_secrets.profanity_filter_enabled,
    ):
        self.clock = clock or SystemClock()
        self.rng = rng or random.Random()
        self.gateway = gateway
        self.models = models or [load_secrets.ai_model, *load_secrets.ai_fallback_models]
        self.policy = policy or RetryPolicy(
            max_attempts=load_secrets.ai_max_attempts,
            budget_seconds=load_secrets.ai_retry_budget_seconds,
            timeout_seconds=load_secrets.ai_timeout_seconds,
        )
        self.cache = ResultCache(redis, cache_ttl)
        self.store = CombinationStore(Session, self.cache)
        self.use_counts = UseCountBuffer(self.store, self.clock)
        self.orchestrator = GenerationOrchestrator(
            self.store,
            self.cache,
            self.gateway,
            self.use_counts,
            self.models,
            policy=self.policy,
            clock=self.clock,
            rng=self.rng,
            allow_self_combination=allow_self_combination,
            profanity_filter=profanity_filter,
        )
        self.composer = PathComposer(
            self.store, self.gateway, self.models, policy=self.policy, clock=self.clock, rng=self.rng
        )

    async def close(self) -> None:
        await self.use_counts.flush()
        await self.cache.close()
        if hasattr(self.gateway, "close"):
            await self.gateway.close()
        logging.info("Engine closed")


def build_default_manager(Session: async_sessionmaker) -> EngineManager:
    redis = None
    if load_secrets.redis_enabled:
        redis = Redis(
            host=load_secrets.redis_host,
            port=load_secrets.redis_port,
            decode_responses=True,
            health_check_interval=30,
        )
    else:
        logging.info("Redis disabled, running store-only")
    gateway = AnthropicGateway(load_secrets.anthropic_api_key, timeout=load_secrets.ai_timeout_seconds)
    return EngineManager(Session, redis, gateway)


def get_engine(request: Request) -> EngineManager:
    return request.app.state.engine
