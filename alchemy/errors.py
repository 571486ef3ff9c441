"""Errors surfaced to clients.

Every error carries the wire ``kind`` and HTTP status used by the exception
handler in ``alchemy.main``. Safety refusals and insert races are never
errors.
"""


class AlchemyError(Exception):
    kind = "internal"
    status_code = 500

    def __init__(self, message: str, retry_after: int | None = None):
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        body = {"kind": self.kind, "message": self.message}
        if self.retry_after is not None:
            body["retry_after"] = self.retry_after
        return body


class InvalidInputError(AlchemyError):
    kind = "invalid_input"
    status_code = 400


class StarterElementError(InvalidInputError):
    """Rename, reglyph or delete attempted on a starter element."""


class UnauthorizedError(AlchemyError):
    kind = "unauthorized"
    status_code = 401


class NotFoundError(AlchemyError):
    kind = "not_found"
    status_code = 404


class ConflictError(AlchemyError):
    kind = "conflict"
    status_code = 409


class RateLimitedError(AlchemyError):
    kind = "rate_limited"
    status_code = 429

    def __init__(self, message: str, retry_after: int | None = None):
        super().__init__(message, retry_after=retry_after if retry_after is not None else 1)


class ServiceUnavailableError(AlchemyError):
    """Model gateway failure. ``classification`` keeps the internal error class."""

    kind = "service_unavailable"
    status_code = 503
    classification = "unknown"


class ModelOverloadedError(ServiceUnavailableError):
    classification = "overloaded"


class ModelAuthError(ServiceUnavailableError):
    classification = "auth_failed"


class ModelValidationError(ServiceUnavailableError):
    classification = "validation_failed"
