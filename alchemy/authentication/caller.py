from fastapi import Request
from slowapi.util import get_remote_address

from alchemy.errors import UnauthorizedError

# Set by the auth provider in front of this service.
CALLER_HEADER = "X-User-Id"
MAX_CALLER_ID_LENGTH = 255


def caller_id(request: Request) -> str | None:
    """Opaque caller identity, or None for anonymous requests."""
    value = request.headers.get(CALLER_HEADER, "").strip()
    if not value:
        return None
    return value[:MAX_CALLER_ID_LENGTH]


def require_caller(request: Request) -> str:
    identity = caller_id(request)
    if identity is None:
        raise UnauthorizedError(f"Missing {CALLER_HEADER} header")
    return identity


def rate_limit_key(request: Request) -> str:
    """Rate-limit bucket: the caller when known, otherwise the client address."""
    identity = caller_id(request)
    if identity is not None:
        return f"user:{identity}"
    return f"ip:{get_remote_address(request)}"
