"""Configuration schemas for the Spire client."""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    NonNegativeInt,
    PositiveFloat,
    model_validator,
)

ErrorPolicy = Literal["pause", "retry"]


class Credentials(BaseModel):
    """Account credential used to open a Spire session.

    Exactly one of ``key`` (the account key) or ``secret`` (the account secret,
    used to re-authenticate an existing account) must be provided.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    key: str | None = Field(default=None, min_length=1, description="Spire account key")
    secret: str | None = Field(default=None, min_length=1, description="Spire account secret")

    @model_validator(mode="after")
    def _ensure_single_credential(self) -> Credentials:
        """Reject configurations carrying both or neither credential."""
        if (self.key is None) == (self.secret is None):
            raise ValueError("Exactly one of 'key' or 'secret' must be provided")
        return self

    def session_payload(self) -> dict[str, str]:
        """Return the JSON body posted to the sessions collection."""
        if self.key is not None:
            return {"key": self.key}
        assert self.secret is not None
        return {"secret": self.secret}


class HttpClientConfig(BaseModel):
    """HTTP client tuning parameters for Spire requests."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    base_url: HttpUrl = Field(
        default=HttpUrl("http://api.spire.io"),
        description="Root URL serving the discovery document",
    )
    api_version: str = Field(
        default="1.0", min_length=1, description="API version selecting the media-type schema"
    )
    user_agent: str = Field(
        default="spire-client-python/0.1",
        description="User agent sent with every request",
    )
    max_connections: NonNegativeInt = Field(
        default=10, description="Maximum concurrent HTTP connections"
    )
    enable_http2: bool = Field(
        default=True, description="Whether HTTP/2 should be attempted when available"
    )
    request_timeout: PositiveFloat = Field(
        default=15.0,
        description="Timeout (seconds) for non-polling requests",
    )


class ListenerConfig(BaseModel):
    """Runtime tuning parameters for long-poll subscription engines."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    timeout: PositiveFloat = Field(
        default=30.0,
        description="Service-side long-poll window in seconds",
    )
    poll_grace: PositiveFloat = Field(
        default=10.0,
        description="Extra seconds the HTTP request waits beyond the long-poll window",
    )
    error_policy: ErrorPolicy = Field(
        default="pause",
        description=(
            "Reaction to a non-timeout poll failure: 'pause' halts the loop until resume() "
            "or stop_listening(); 'retry' backs off and polls again."
        ),
    )
    initial_backoff: PositiveFloat = Field(
        default=1.0, description="Initial retry delay (seconds) after a failed poll"
    )
    max_backoff: PositiveFloat = Field(
        default=30.0, description="Upper bound on exponential backoff (seconds)"
    )
    max_retry_attempts: NonNegativeInt | None = Field(
        default=None,
        description="Optional cap on consecutive retries before the engine pauses",
    )

    @model_validator(mode="after")
    def _ensure_backoff_bounds(self) -> ListenerConfig:
        """Validate that the initial backoff does not exceed its ceiling."""
        if self.initial_backoff > self.max_backoff:
            raise ValueError("initial_backoff must not exceed max_backoff")
        return self

    def request_timeout(self, poll_timeout: float) -> float:
        """Return the HTTP timeout for a poll using a *poll_timeout* window."""
        return poll_timeout + self.poll_grace


def load_credentials_from_environment(*, env: Mapping[str, str] | None = None) -> Credentials:
    """Load Spire credentials from environment variables.

    Reads ``SPIRE_KEY`` and falls back to ``SPIRE_SECRET``. The CLI loads
    ``.env`` via python-dotenv prior to calling this function, so no file parsing
    occurs here.

    Raises:
        ValueError: If neither key is set.

    """
    resolved_env = dict(os.environ if env is None else env)

    key = resolved_env.get("SPIRE_KEY") or None
    if key is not None:
        return Credentials(key=key)
    secret = resolved_env.get("SPIRE_SECRET") or None
    if secret is not None:
        return Credentials(secret=secret)
    raise ValueError("Missing credential keys: SPIRE_KEY or SPIRE_SECRET")
