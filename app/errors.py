"""Exception hierarchy shared by adapters, services and the HTTP layer."""

from __future__ import annotations

from typing import Any


class MediaHubError(Exception):
    """Base class for errors that map onto a structured API failure."""

    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def kind(self) -> str:
        """Short, lower-case label used in logs and degraded-serve reasons."""

        return self.error_code.lower().replace("_", "-")

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details,
            },
        }


class ValidationError(MediaHubError):
    """Bad request input; reported immediately and never retried."""

    status_code = 400
    error_code = "VALIDATION_ERROR"


class NotFoundError(MediaHubError):
    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(
            f"{resource} not found: {identifier}",
            details={"resource": resource, "identifier": identifier},
        )


class ConfigurationError(MediaHubError):
    """A provider credential or setting is missing."""

    status_code = 503
    error_code = "CONFIGURATION_ERROR"


class UpstreamError(MediaHubError):
    """An upstream provider failed or answered with something unusable."""

    status_code = 502
    error_code = "UPSTREAM_ERROR"

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        status: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        payload = {"provider": provider}
        if status is not None:
            payload["status"] = status
        payload.update(details or {})
        super().__init__(f"{provider}: {message}", details=payload)
        self.provider = provider
        self.upstream_status = status


class UpstreamTimeout(UpstreamError):
    status_code = 504
    error_code = "UPSTREAM_TIMEOUT"

    def __init__(self, provider: str, message: str = "request timed out") -> None:
        super().__init__(provider, message)


class UpstreamRateLimited(UpstreamError):
    status_code = 429
    error_code = "UPSTREAM_RATE_LIMITED"

    def __init__(
        self,
        provider: str,
        message: str = "rate limit exceeded",
        *,
        retry_after: float | None = None,
    ) -> None:
        details = {"retry_after_seconds": retry_after} if retry_after is not None else None
        super().__init__(provider, message, status=429, details=details)
        self.retry_after = retry_after
