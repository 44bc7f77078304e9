"""Async HTTP client abstraction tailored for Spire interactions."""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Literal, Protocol

import httpx

from .config import HttpClientConfig
from .errors import RequestTimeoutError, ResponseParsingError, ResponseStatusError, TransportError

logger = logging.getLogger(__name__)

HttpMethod = Literal["GET", "POST", "PUT", "DELETE"]


def _empty_headers() -> Mapping[str, str]:
    return MappingProxyType({})


@dataclass(frozen=True, slots=True)
class ApiRequest:
    """Wire-level description of a single Spire API call."""

    method: HttpMethod
    url: str
    headers: Mapping[str, str] = field(default_factory=_empty_headers)
    params: Mapping[str, Any] | None = None
    json: object | None = None


class AsyncHttpClientProtocol(Protocol):
    """Protocol describing the async HTTP operations required by the client."""

    async def send(
        self, request: ApiRequest, *, timeout: float | None = None
    ) -> httpx.Response:  # pragma: no cover - protocol signature
        """Send *request* and return the successful HTTP response."""
        ...

    async def close(self) -> None:  # pragma: no cover - protocol signature
        """Release HTTP resources and close underlying connections."""
        ...


class SpireHttpClient(AsyncHttpClientProtocol):
    """httpx-based client that injects default headers and manages connection pooling."""

    def __init__(
        self,
        config: HttpClientConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialise the HTTP client with optional *config* and *transport*."""
        self._config = config or HttpClientConfig()
        limits = httpx.Limits(max_connections=self._config.max_connections or None)
        self._client = httpx.AsyncClient(
            base_url=str(self._config.base_url),
            http2=self._config.enable_http2 and transport is None,
            limits=limits,
            headers=self._build_default_headers(),
            timeout=self._config.request_timeout,
            transport=transport,
        )

    async def send(self, request: ApiRequest, *, timeout: float | None = None) -> httpx.Response:
        """Send *request*, translating httpx failures into Spire transport errors."""
        logger.debug(
            "%s %s with params=%s",
            request.method,
            request.url,
            None if request.params is None else list(request.params.keys()),
        )
        started = time.perf_counter()
        try:
            response = await self._client.request(
                request.method,
                request.url,
                params=_encode_params(request.params),
                json=request.json,
                headers=self._merge_headers(request.headers),
                timeout=timeout if timeout is not None else self._config.request_timeout,
            )
        except httpx.TimeoutException as exc:
            logger.debug("%s %s timed out: %s", request.method, request.url, exc)
            raise RequestTimeoutError(str(exc) or "request timed out") from exc
        except httpx.HTTPError as exc:
            logger.error("HTTP %s %s failed: %s", request.method, request.url, exc)
            raise TransportError(str(exc)) from exc
        if response.is_error:
            status = response.status_code
            logger.error("HTTP %s %s returned status %s", request.method, request.url, status)
            raise ResponseStatusError(
                f"{request.method} {request.url} returned {status}",
                status_code=status,
                body=_decode_error_body(response),
            )
        logger.debug(
            "%s %s completed in %.2f ms",
            request.method,
            request.url,
            (time.perf_counter() - started) * 1000.0,
        )
        return response

    async def close(self) -> None:
        """Close the underlying httpx.AsyncClient instance."""
        await self._client.aclose()
        logger.debug("httpx.AsyncClient closed for base URL %s", self._client.base_url)

    def _merge_headers(self, headers: Mapping[str, str] | None) -> MutableMapping[str, str]:
        """Merge default headers with request-specific *headers*."""
        merged: MutableMapping[str, str] = dict(self._client.headers)
        if headers:
            merged.update(headers)
        return merged

    def _build_default_headers(self) -> MutableMapping[str, str]:
        """Return the default header set applied to every request."""
        return {
            "User-Agent": self._config.user_agent,
            "Accept": "application/json",
        }


def decode_json(response: httpx.Response) -> Any:
    """Return the JSON body of *response* or raise :class:`ResponseParsingError`."""
    try:
        return response.json()
    except ValueError as exc:
        raise ResponseParsingError(
            f"Response from {response.request.url} was not valid JSON"
        ) from exc


def _encode_params(params: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if params is None:
        return None
    return {key: value for key, value in params.items() if value is not None}


def _decode_error_body(response: httpx.Response) -> Mapping[str, object] | str | None:
    if not response.content:
        return None
    try:
        payload = response.json()
    except ValueError:
        return response.text
    if isinstance(payload, Mapping):
        return MappingProxyType(dict(payload))
    return response.text
