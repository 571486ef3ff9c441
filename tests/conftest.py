import json
import random
from datetime import datetime

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alchemy.clients.llm import Completion, RetryPolicy
from alchemy.create_sqlite_engine import create_sqlite_engine
from alchemy.manager import EngineManager
from alchemy.models.schemas import Base
from alchemy.redis_cache import ResultCache
from alchemy.services.combination_db import CombinationStore


class FakeRedis:
    """In-process stand-in for the few redis.asyncio calls the cache makes."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.expiry: dict[str, int] = {}
        self.deleted: list[str] = []

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiry[key] = ex

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            self.deleted.append(key)
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def aclose(self):
        pass


class FakeGateway:
    """Scripted model gateway. Each call pops the next scripted result.

    When the script runs out, ``default`` answers every further call.
    """

    def __init__(self, script=None, default=None):
        self.script = list(script or [])
        self.default = default
        self.calls: list[tuple[str, str]] = []

    def push(self, *results):
        self.script.extend(results)

    async def complete(self, prompt, model, max_tokens=200, temperature=0.7):
        self.calls.append((prompt, model))
        if self.script:
            result = self.script.pop(0)
        elif self.default is not None:
            result = self.default
        else:
            raise AssertionError(f"Unexpected model call: {prompt[:80]}")
        if callable(result):
            return await result(prompt, model)
        return result


class FakeClock:
    def __init__(self):
        self.current = 0.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return datetime(2026, 1, 1, 12, 0, 0)

    def monotonic(self) -> float:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += seconds


def element_reply(name: str, glyph: str) -> Completion:
    return Completion(text=json.dumps({"name": name, "glyph": glyph}), model="primary")


def paths_reply(*paths) -> Completion:
    """Completion holding paths given as lists of ``(a, b, result, glyph)`` tuples."""
    body = {
        "paths": [
            {"steps": [{"a": a, "b": b, "result": result, "glyph": glyph} for a, b, result, glyph in steps]}
            for steps in paths
        ]
    }
    return Completion(text=f"```json\n{json.dumps(body)}\n```", model="primary")


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_sqlite_engine(f"sqlite+aiosqlite:///{tmp_path / 'alchemy-test.sqlite3'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def Session(db_engine):
    return async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    return ResultCache(fake_redis, ttl_seconds=604800)


@pytest_asyncio.fixture
async def store(Session, cache):
    store = CombinationStore(Session, cache)
    await store.seed_starters()
    return store


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policy():
    return RetryPolicy(max_attempts=3, budget_seconds=10.0, timeout_seconds=5.0)


@pytest_asyncio.fixture
async def engine_manager(Session, fake_redis, gateway, clock, policy):
    manager = EngineManager(
        Session,
        fake_redis,
        gateway,
        clock=clock,
        rng=random.Random(7),
        models=["primary-model", "fallback-model"],
        policy=policy,
        allow_self_combination=False,
        profanity_filter=False,
    )
    await manager.store.seed_starters()
    return manager
