"""Typed data models for Spire sessions, channels, subscriptions, and messages."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType

from .config import Credentials
from .errors import DiscoveryError


def _empty_mapping() -> Mapping[str, object]:
    """Return an immutable empty mapping for default payload storage."""

    return MappingProxyType({})


def _empty_links() -> Mapping[str, ResourceLink]:
    return MappingProxyType({})


@dataclass(frozen=True, slots=True)
class ResourceLink:
    """Collection endpoint and the capability that authorises requests against it."""

    url: str
    capability: str | None = None


@dataclass(frozen=True, slots=True)
class DiscoveryDescriptor:
    """Discovery document describing collection URLs and media types.

    Fetched once per :class:`~spire_client.discovery.DiscoveryClient` and never
    mutated afterwards.
    """

    url: str
    api_version: str
    resources: Mapping[str, ResourceLink]
    media_types: Mapping[str, str]

    def link(self, name: str) -> ResourceLink:
        """Return the resource link registered under *name*."""
        try:
            return self.resources[name]
        except KeyError:
            raise DiscoveryError(f"Discovery document has no '{name}' resource") from None

    def media_type(self, name: str) -> str:
        """Return the media type declared for resource type *name*."""
        try:
            return self.media_types[name]
        except KeyError:
            raise DiscoveryError(
                f"Discovery schema {self.api_version} has no media type for '{name}'"
            ) from None


@dataclass(slots=True)
class Session:
    """Authenticated session plus its per-session channel and subscription caches."""

    url: str
    capability: str | None
    resources: Mapping[str, ResourceLink] = field(default_factory=_empty_links)
    channels: dict[str, Channel] = field(default_factory=dict, repr=False)
    subscriptions: dict[str, Subscription] = field(default_factory=dict, repr=False)

    def link(self, name: str) -> ResourceLink:
        """Return the session collection endpoint registered under *name*."""
        try:
            return self.resources[name]
        except KeyError:
            raise DiscoveryError(f"Session has no '{name}' resource") from None


@dataclass(frozen=True, slots=True)
class Account:
    """Account resource; ``key`` and ``secret`` change whenever the account is reset."""

    url: str
    capability: str | None
    key: str | None = None
    secret: str | None = None

    def credentials(self) -> Credentials:
        """Return credentials for the next session, preferring the account key."""
        if self.key is not None:
            return Credentials(key=self.key)
        if self.secret is not None:
            return Credentials(secret=self.secret)
        raise DiscoveryError(f"Account {self.url} carries neither a key nor a secret")


@dataclass(frozen=True, slots=True)
class Channel:
    """A named channel that messages are published to."""

    name: str
    url: str
    capability: str | None
    resources: Mapping[str, ResourceLink] = field(default_factory=_empty_links)


@dataclass(slots=True)
class Subscription:
    """A subscription listening to one or more channels.

    ``last_message`` is the resumption cursor: the key of the last consumed
    message, ``None`` meaning "from now".
    """

    name: str | None
    url: str
    capability: str | None
    channel_urls: tuple[str, ...] = ()
    last_message: str | None = None

    def advance_cursor(self, expected: str | None, key: str) -> bool:
        """Move the cursor to *key* if it still equals *expected*.

        Returns ``False`` (leaving the cursor untouched) when another poll has
        already moved it, which keeps the cursor from going backwards.
        """
        if self.last_message != expected:
            return False
        self.last_message = key
        return True


@dataclass(frozen=True, slots=True)
class Message:
    """A message delivered to, or published on, a channel."""

    key: str
    content: object
    timestamp: float | None = None
    channel_url: str | None = None
    url: str | None = None
    raw: Mapping[str, object] = field(default_factory=_empty_mapping)


@dataclass(frozen=True, slots=True)
class EventBatch:
    """Result of one long-poll request."""

    messages: Sequence[Message]
    timed_out: bool = False

    @property
    def last_key(self) -> str | None:
        """Return the key of the final message in the batch, if any."""
        if not self.messages:
            return None
        return self.messages[-1].key


class EngineState(str, Enum):
    """Lifecycle states of a long-poll engine."""

    IDLE = "idle"
    LISTENING = "listening"
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class EngineSnapshot:
    """Runtime snapshot of a long-poll engine."""

    subscription: str | None
    state: EngineState
    cursor: str | None
    polls: int
    delivered: int
    consecutive_failures: int
    paused: bool
    last_message_at: datetime | None = None
