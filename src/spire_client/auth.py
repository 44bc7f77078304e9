"""Capability authorisation and session-creation primitives for the Spire client."""

from __future__ import annotations

import logging
from typing import Protocol

from pydantic import ValidationError

from .config import Credentials
from .errors import ResponseParsingError, SessionCreationError, TransportError
from .http import ApiRequest, AsyncHttpClientProtocol, decode_json
from .models import DiscoveryDescriptor, Session
from .schemas import SessionPayload

logger = logging.getLogger(__name__)


class CapabilityResource(Protocol):
    """Anything carrying a URL and the capability that authorises requests to it."""

    @property
    def url(self) -> str: ...  # pragma: no cover - protocol

    @property
    def capability(self) -> str | None: ...  # pragma: no cover - protocol


def authorization_header(resource: CapabilityResource) -> str:
    """Return the ``Authorization`` header value for *resource*."""
    if not resource.capability:
        raise ResponseParsingError(f"Resource {resource.url} carries no capability")
    return f"Capability {resource.capability}"


def build_session_request(descriptor: DiscoveryDescriptor, credentials: Credentials) -> ApiRequest:
    """Build the POST that exchanges *credentials* for a session."""
    return ApiRequest(
        method="POST",
        url=descriptor.link("sessions").url,
        headers={
            "Content-Type": descriptor.media_type("account"),
            "Accept": descriptor.media_type("session"),
        },
        json=credentials.session_payload(),
    )


class SessionBackend(Protocol):
    """Protocol implemented by session-creation backends."""

    async def create_session(
        self, descriptor: DiscoveryDescriptor, credentials: Credentials
    ) -> Session:  # pragma: no cover - protocol
        """Authenticate with Spire and return a new session."""
        ...


class HttpSessionBackend(SessionBackend):
    """Session backend posting the account key or secret to the sessions collection."""

    def __init__(self, http_client: AsyncHttpClientProtocol) -> None:
        """Create an HTTP session backend using *http_client*."""

        self._http_client = http_client

    async def create_session(
        self, descriptor: DiscoveryDescriptor, credentials: Credentials
    ) -> Session:
        """Submit *credentials* and parse the returned session."""

        request = build_session_request(descriptor, credentials)
        logger.debug("Submitting Spire session request to %s", request.url)
        try:
            response = await self._http_client.send(request)
            payload = SessionPayload.model_validate(decode_json(response))
        except (TransportError, ResponseParsingError) as exc:
            logger.error("Session creation failed: %s", exc)
            raise SessionCreationError(f"Session creation failed: {exc}") from exc
        except ValidationError as exc:
            raise SessionCreationError("Session response is malformed") from exc
        return payload.to_model()
