"""Shared plumbing for the upstream provider adapters."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from string import Formatter
from typing import Any, ClassVar, Mapping
from urllib.parse import quote

import httpx

from ..cache import CacheLookup, TTLCache
from ..errors import (
    ConfigurationError,
    NotFoundError,
    UpstreamError,
    UpstreamRateLimited,
    UpstreamTimeout,
    ValidationError,
)
from ..utils import build_cache_key

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class AuthStrategy:
    """Headers and query parameters attached to every outbound call."""

    scheme: str
    headers: Mapping[str, str] = field(default_factory=dict)
    params: Mapping[str, str] = field(default_factory=dict)


class UpstreamClient:
    """Base adapter mapping operation ids onto authenticated HTTP calls.

    Subclasses declare ``provider`` and an ``OPERATIONS`` table of path
    templates. Authentication is resolved once in ``__init__``; when a required
    credential is missing every call fails with :class:`ConfigurationError`.
    """

    provider: ClassVar[str] = "upstream"
    OPERATIONS: ClassVar[Mapping[str, str]] = {}
    requires_credential: ClassVar[bool] = True

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        cache: TTLCache,
        *,
        credential: str | None = None,
    ) -> None:
        self._client = http_client
        self._cache = cache
        self._auth = self.resolve_auth(credential)
        if self._auth is None and self.requires_credential:
            logger.error("%s credential not configured; calls will fail", self.provider)

    @property
    def cache(self) -> TTLCache:
        return self._cache

    @property
    def auth_scheme(self) -> str | None:
        return self._auth.scheme if self._auth else None

    def resolve_auth(self, credential: str | None) -> AuthStrategy | None:
        if not credential:
            return None if self.requires_credential else AuthStrategy(scheme="none")
        return AuthStrategy(scheme="query", params={"api_key": credential})

    def _default_headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    def _prepare(
        self, operation_id: str, params: Mapping[str, Any] | None
    ) -> tuple[str, dict[str, Any]]:
        template = self.OPERATIONS.get(operation_id)
        if template is None:
            raise ValidationError(
                f"Unknown {self.provider} operation: {operation_id}",
                details={"operation": operation_id},
            )

        query = {key: value for key, value in (params or {}).items() if value is not None}
        page = query.get("page")
        if page is not None:
            try:
                page_number = int(page)
            except (TypeError, ValueError):
                raise ValidationError("Page must be an integer") from None
            if page_number < 1:
                raise ValidationError("Page must be greater than or equal to 1")
            query["page"] = page_number

        placeholders = [
            name for _, name, _, _ in Formatter().parse(template) if name
        ]
        path_values: dict[str, str] = {}
        for name in placeholders:
            value = query.pop(name, None)
            if value is None or str(value).strip() == "":
                raise ValidationError(
                    f"Missing path parameter '{name}' for {operation_id}"
                )
            path_values[name] = quote(str(value).strip(), safe="")
        path = template.format(**path_values)

        for key, value in list(query.items()):
            if isinstance(value, bool):
                query[key] = "true" if value else "false"
        return path, query

    async def fetch(
        self, operation_id: str, params: Mapping[str, Any] | None = None
    ) -> Any:
        """Issue one authenticated call and return the decoded JSON payload."""

        path, query = self._prepare(operation_id, params)
        if self._auth is None:
            logger.error(
                "%s call %s rejected: credential not configured",
                self.provider,
                operation_id,
            )
            raise ConfigurationError(
                f"{self.provider} credential not configured",
                details={"provider": self.provider},
            )

        headers = {**self._default_headers(), **self._auth.headers}
        query.update(self._auth.params)

        try:
            response = await self._client.get(path, params=query, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("%s %s timed out: %s", self.provider, operation_id, exc)
            raise UpstreamTimeout(self.provider) from exc
        except httpx.HTTPError as exc:
            logger.warning("%s %s request failed: %s", self.provider, operation_id, exc)
            raise UpstreamError(self.provider, f"request failed: {exc}") from exc

        self._raise_for_status(response, operation_id, path)

        try:
            return response.json()
        except ValueError as exc:
            logger.warning("%s %s returned non-JSON body", self.provider, operation_id)
            raise UpstreamError(self.provider, "response was not valid JSON") from exc

    async def cached(
        self,
        operation_id: str,
        params: Mapping[str, Any] | None = None,
        *,
        ttl: float | None = None,
    ) -> Any:
        """Fetch through the adapter cache, serving stale data if a refresh fails."""

        lookup = await self.cached_lookup(operation_id, params, ttl=ttl)
        return lookup.value

    async def cached_lookup(
        self,
        operation_id: str,
        params: Mapping[str, Any] | None = None,
        *,
        ttl: float | None = None,
    ) -> CacheLookup[Any]:
        """Like :meth:`cached`, but reports whether a stale copy was served."""

        key = build_cache_key(operation_id, params)
        return await self._cache.lookup_or_fetch(
            key, lambda: self.fetch(operation_id, params), ttl=ttl
        )

    def _raise_for_status(
        self, response: httpx.Response, operation_id: str, path: str
    ) -> None:
        status = response.status_code
        if status < 400:
            return
        message = self._error_message(response)
        logger.warning(
            "%s %s failed with HTTP %s: %s", self.provider, operation_id, status, message
        )
        if status == 429:
            raise UpstreamRateLimited(
                self.provider,
                retry_after=_parse_retry_after(response.headers.get("retry-after")),
            )
        if status == 404:
            raise NotFoundError(f"{self.provider} resource", path)
        raise UpstreamError(self.provider, message, status=status)

    def _error_message(self, response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text[:200] or response.reason_phrase
        if isinstance(payload, dict):
            for key in ("status_message", "message", "error"):
                value = payload.get(key)
                if isinstance(value, str) and value:
                    return value
                if isinstance(value, dict) and isinstance(value.get("message"), str):
                    return value["message"]
        return response.reason_phrase or f"HTTP {response.status_code}"


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None
