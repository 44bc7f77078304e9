"""Discovery document retrieval and caching."""

from __future__ import annotations

import asyncio
import logging
from types import MappingProxyType

from pydantic import ValidationError

from .config import HttpClientConfig
from .errors import DiscoveryError, ResponseParsingError, TransportError
from .http import ApiRequest, AsyncHttpClientProtocol, decode_json
from .models import DiscoveryDescriptor
from .schemas import DiscoveryPayload

logger = logging.getLogger(__name__)


class DiscoveryClient:
    """Fetches the discovery document once and serves it from memory afterwards."""

    def __init__(
        self,
        http_client: AsyncHttpClientProtocol,
        config: HttpClientConfig | None = None,
    ) -> None:
        """Create a discovery client that reads the root document via *http_client*."""
        self._http_client = http_client
        self._config = config or HttpClientConfig()
        self._descriptor: DiscoveryDescriptor | None = None
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> DiscoveryDescriptor | None:
        """Return the cached descriptor, if discovery already happened."""
        return self._descriptor

    async def describe(self) -> DiscoveryDescriptor:
        """Return the discovery descriptor, fetching it on first use."""
        if self._descriptor is not None:
            return self._descriptor
        async with self._lock:
            if self._descriptor is None:
                self._descriptor = await self._fetch()
        return self._descriptor

    async def _fetch(self) -> DiscoveryDescriptor:
        url = str(self._config.base_url)
        logger.debug("Fetching Spire discovery document from %s", url)
        request = ApiRequest(method="GET", url=url, headers={"Accept": "application/json"})
        try:
            response = await self._http_client.send(request)
            payload = DiscoveryPayload.model_validate(decode_json(response))
        except (TransportError, ResponseParsingError) as exc:
            raise DiscoveryError(f"Discovery request to {url} failed: {exc}") from exc
        except ValidationError as exc:
            raise DiscoveryError(f"Discovery document from {url} is malformed") from exc
        descriptor = DiscoveryDescriptor(
            url=payload.url or url,
            api_version=self._config.api_version,
            resources=MappingProxyType(
                {name: link.to_model() for name, link in payload.resources.items()}
            ),
            media_types=payload.media_types(self._config.api_version),
        )
        logger.info(
            "Discovered %d Spire resource(s) for API version %s",
            len(descriptor.resources),
            descriptor.api_version,
        )
        return descriptor
