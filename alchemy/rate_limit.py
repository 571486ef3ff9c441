import logging
import math

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded

from alchemy.authentication.caller import rate_limit_key
from alchemy.errors import RateLimitedError
from alchemy.load_secrets import (
    ai_generation_rate_limit,
    rate_limit_enabled,
    rate_limit_storage_uri,
    write_rate_limit,
)

limiter = Limiter(
    key_func=rate_limit_key,
    enabled=rate_limit_enabled,
    storage_uri=rate_limit_storage_uri,
)

# Bucket for combine and element writes.
WRITE_LIMIT = write_rate_limit
# Stricter bucket for endpoints that always call the model.
AI_GENERATION_LIMIT = ai_generation_rate_limit


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    retry_after = 60
    limit = getattr(exc, "limit", None)
    if limit is not None:
        retry_after = max(1, math.ceil(limit.limit.get_expiry()))
    logging.info(f"Rate limit hit by {rate_limit_key(request)} on {request.url.path}: {exc.detail}")
    error = RateLimitedError(f"Rate limit exceeded: {exc.detail}", retry_after=retry_after)
    return JSONResponse(
        status_code=error.status_code,
        content=error.to_dict(),
        headers={"Retry-After": str(retry_after)},
    )
