from __future__ import annotations


class MotCheckError(Exception):
    """Base error carrying an HTTP status and a machine-readable kind."""

    status_code: int = 500
    kind: str = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(MotCheckError):
    status_code = 400
    kind = "malformed_identifier"


class ConfigurationError(MotCheckError):
    status_code = 503
    kind = "missing_credentials"


class NotFoundError(MotCheckError):
    status_code = 404
    kind = "not_found"


class AuthError(MotCheckError):
    status_code = 401
    kind = "auth_failed"


class AccessDeniedError(MotCheckError):
    status_code = 403
    kind = "access_denied"


class RateLimitedError(MotCheckError):
    status_code = 429
    kind = "rate_limited"


class UpstreamUnavailableError(MotCheckError):
    """Upstream timed out or could not be reached."""

    status_code = 503
    kind = "upstream_unavailable"


class UpstreamError(MotCheckError):
    status_code = 500
    kind = "upstream_error"


class InvalidResponseError(MotCheckError):
    status_code = 500
    kind = "invalid_response"


class PersistenceError(MotCheckError):
    status_code = 500
    kind = "persistence_error"


class IngestionError(MotCheckError):
    status_code = 500
    kind = "ingestion_failed"
