"""Generative model gateway.

One ``complete`` call is one HTTP attempt against the Anthropic Messages API
and returns a tagged result instead of raising. ``call_with_fallback`` owns
the retry policy: exponential backoff with jitter, fallback models, a
per-call deadline and a total budget.
"""

import asyncio
import logging
import math
import random
from dataclasses import dataclass, field
from typing import Sequence, Union

import httpx

from alchemy.clock import SystemClock
from alchemy.errors import (
    ModelAuthError,
    ModelOverloadedError,
    RateLimitedError,
    ServiceUnavailableError,
)

ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"

_OVERLOADED_STATUS_CODES = {500, 502, 503, 504, 529}
_AUTH_STATUS_CODES = {401, 403}


@dataclass(frozen=True)
class Completion:
    text: str
    model: str


@dataclass(frozen=True)
class TransientFailure:
    kind: str  # rate_limited | overloaded
    retry_after: float | None = None
    detail: str = ""


@dataclass(frozen=True)
class PermanentFailure:
    kind: str  # auth_failed | unknown
    detail: str = ""


GatewayResult = Union[Completion, TransientFailure, PermanentFailure]


def _retry_after_seconds(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def classify_response(response: httpx.Response) -> TransientFailure | PermanentFailure | None:
    """Failure for a non-2xx response, ``None`` for success."""
    status = response.status_code
    if status < 400:
        return None
    detail = f"{status}: {response.text[:500]}"
    if status == 429:
        return TransientFailure("rate_limited", _retry_after_seconds(response), detail)
    if status in _OVERLOADED_STATUS_CODES or status >= 500:
        return TransientFailure("overloaded", _retry_after_seconds(response), detail)
    if status in _AUTH_STATUS_CODES:
        return PermanentFailure("auth_failed", detail)
    return PermanentFailure("unknown", detail)


class AnthropicGateway:
    """Claude Messages API client. Each ``complete`` call is a single attempt."""

    def __init__(
        self,
        api_key: str,
        base_url: str = ANTHROPIC_BASE_URL,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "x-api-key": api_key.strip(),
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def complete(
        self, prompt: str, model: str, max_tokens: int = 200, temperature: float = 0.7
    ) -> GatewayResult:
        payload = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        try:
            response = await self._client.post("/messages", json=payload)
        except httpx.TimeoutException as e:
            return TransientFailure("overloaded", detail=f"timeout: {e}")
        except httpx.TransportError as e:
            return TransientFailure("overloaded", detail=f"transport: {e}")

        failure = classify_response(response)
        if failure is not None:
            return failure

        try:
            data = response.json()
        except ValueError:
            return PermanentFailure("unknown", "response body is not JSON")
        text = "".join(
            block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
        )
        return Completion(text=text, model=data.get("model", model))

    async def close(self) -> None:
        await self._client.aclose()


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    budget_seconds: float = 10.0
    timeout_seconds: float = 10.0
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 4.0


@dataclass
class CallOutcome:
    completion: Completion
    attempts: int
    failures: list = field(default_factory=list)


def _backoff(policy: RetryPolicy, attempt: int, rng: random.Random) -> float:
    delay = min(policy.max_delay_seconds, policy.base_delay_seconds * (2**attempt))
    return delay * (0.5 + rng.random() / 2)


def _exhausted(failure: TransientFailure, delay: float) -> ServiceUnavailableError | RateLimitedError:
    retry_after = math.ceil(failure.retry_after if failure.retry_after is not None else max(delay, 1.0))
    if failure.kind == "rate_limited":
        return RateLimitedError("The model is rate limited, try again later", retry_after=retry_after)
    return ModelOverloadedError("The model is overloaded, try again later", retry_after=retry_after)


async def call_with_fallback(
    gateway,
    prompt: str,
    models: Sequence[str],
    max_tokens: int = 200,
    temperature: float = 0.7,
    policy: RetryPolicy | None = None,
    clock: SystemClock | None = None,
    rng: random.Random | None = None,
) -> CallOutcome:
    """Call the model, retrying transient failures on the fallback models

    The first attempt uses ``models[0]``; each retry moves to the next model
    and stays on the last one. Attempts stop at ``max_attempts`` or when the
    next backoff would overrun the total budget.

    Args:
        gateway: Object with an async ``complete(prompt, model, max_tokens, temperature)``
        prompt (str): User prompt
        models (Sequence[str]): Primary model first, then fallbacks
        policy (RetryPolicy | None): Attempts, deadlines and backoff
        clock (SystemClock | None): Time source and sleep
        rng (random.Random | None): Jitter source

    Returns:
        CallOutcome: The completion and the number of attempts it took

    Raises:
        RateLimitedError: Every attempt was rate limited
        ModelOverloadedError: Attempts ran out on overload or timeouts
        ModelAuthError: The gateway rejected the credentials
        ServiceUnavailableError: Any other permanent failure
    """
    if not models:
        raise ServiceUnavailableError("No model configured")
    policy = policy or RetryPolicy()
    clock = clock or SystemClock()
    rng = rng or random.Random()

    started = clock.monotonic()
    failures: list = []
    delay = 0.0
    for attempt in range(policy.max_attempts):
        model = models[min(attempt, len(models) - 1)]
        remaining = policy.budget_seconds - (clock.monotonic() - started)
        if remaining <= 0:
            break
        try:
            result = await asyncio.wait_for(
                gateway.complete(prompt, model, max_tokens, temperature),
                timeout=min(policy.timeout_seconds, remaining),
            )
        except asyncio.TimeoutError:
            result = TransientFailure("overloaded", detail=f"no reply from {model} within deadline")

        if isinstance(result, Completion):
            if failures:
                logging.info(f"Model {model} succeeded after {attempt} retries")
            return CallOutcome(completion=result, attempts=attempt + 1, failures=failures)

        failures.append(result)
        if isinstance(result, PermanentFailure):
            logging.error(f"Model {model} failed permanently ({result.kind}): {result.detail}")
            if result.kind == "auth_failed":
                raise ModelAuthError("The model gateway rejected the configured credentials")
            raise ServiceUnavailableError("The model gateway returned an unexpected error")

        delay = _backoff(policy, attempt, rng)
        if result.retry_after is not None:
            delay = max(delay, result.retry_after)
        logging.warning(f"Model {model} {result.kind} on attempt {attempt + 1}: {result.detail}")
        if attempt + 1 >= policy.max_attempts:
            break
        if clock.monotonic() - started + delay > policy.budget_seconds:
            break
        await clock.sleep(delay)

    last = failures[-1] if failures else TransientFailure("overloaded", detail="retry budget exhausted")
    raise _exhausted(last, delay)
