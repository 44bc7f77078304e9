"""Exception hierarchy for the Spire client library."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass


class SpireError(Exception):
    """Base exception for all Spire client errors."""


class TransportError(SpireError):
    """Raised when an HTTP transport request cannot be completed."""


class RequestTimeoutError(TransportError):
    """Raised when no response arrived within the request timeout."""


class ResponseStatusError(TransportError):
    """Raised when the service answers with a non-success HTTP status."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        body: Mapping[str, object] | str | None = None,
    ) -> None:
        """Store the HTTP *status_code* and decoded *body* alongside *message*."""
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def is_conflict(self) -> bool:
        """Return ``True`` when the service reported a naming conflict (HTTP 409)."""
        return self.status_code == CONFLICT_STATUS


class ResponseParsingError(SpireError):
    """Raised when a Spire response cannot be parsed into typed models."""


class DiscoveryError(SpireError):
    """Raised when the discovery document cannot be fetched or is incomplete."""


class SessionCreationError(SpireError):
    """Raised when a session cannot be established."""


class MissingCredentialError(SessionCreationError):
    """Raised before any request when no account key or secret is configured."""


class ResourceCreationError(SpireError):
    """Raised when a channel or subscription create is rejected."""


class ResourceConflictError(ResourceCreationError):
    """Raised when a create is rejected because the name is already taken."""


class ResourceNotFoundError(SpireError):
    """Raised when a named channel or subscription does not exist."""


class AccountResetError(SpireError):
    """Raised when the service rejects an account reset or the session cannot request one."""


class PollTransportError(SpireError):
    """Raised when a long-poll request fails for a reason other than a timeout."""


class PollTimeout(SpireError):  # noqa: N818
    """Signals an elapsed long-poll window; normalised to an empty batch."""


CONFLICT_STATUS = 409


@dataclass(frozen=True, slots=True)
class RetryHint:
    """Describes how long a failed poll should back off before retrying."""

    seconds: float
    reason: str
