"""Pydantic schemas for Spire HTTP interactions."""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .models import Account, Channel, Message, ResourceLink, Session, Subscription


class ResourceLinkPayload(BaseModel):
    """URL/capability pair describing a resource or collection."""

    model_config = ConfigDict(extra="ignore")

    url: str = Field(description="Absolute URL of the resource.")
    capability: str | None = Field(
        default=None, description="Bearer capability granting access to the resource."
    )

    def to_model(self) -> ResourceLink:
        return ResourceLink(url=self.url, capability=self.capability)


def _links(resources: Mapping[str, ResourceLinkPayload]) -> Mapping[str, ResourceLink]:
    return MappingProxyType({name: link.to_model() for name, link in resources.items()})


class DiscoveryPayload(BaseModel):
    """Root discovery document served at the API base URL."""

    model_config = ConfigDict(extra="ignore")

    url: str | None = Field(default=None, description="Canonical URL of the API root.")
    resources: dict[str, ResourceLinkPayload] = Field(
        description="Top-level collections keyed by resource type (sessions, accounts, ...)."
    )
    schema_: dict[str, Any] = Field(
        default_factory=dict,
        alias="schema",
        description="Media-type schema, optionally keyed by API version.",
    )

    def media_types(self, api_version: str) -> Mapping[str, str]:
        """Return resource type → media type for *api_version*.

        The schema may be keyed by version (``schema["1.0"]["channel"]``) or be
        flat (``schema["channel"]``).
        """
        versioned = self.schema_.get(api_version)
        source = versioned if isinstance(versioned, Mapping) else self.schema_
        media_types: dict[str, str] = {}
        for name, entry in source.items():
            if isinstance(entry, Mapping):
                media_type = entry.get("mediaType")
                if isinstance(media_type, str) and media_type:
                    media_types[str(name)] = media_type
        return MappingProxyType(media_types)


class SessionPayload(BaseModel):
    """Response body returned when a session is created."""

    model_config = ConfigDict(extra="ignore")

    url: str = Field(description="URL of the session resource.")
    capability: str | None = Field(default=None, description="Session capability.")
    resources: dict[str, ResourceLinkPayload] = Field(
        default_factory=dict,
        description="Session-scoped collections (channels, subscriptions, account).",
    )

    def to_model(self) -> Session:
        return Session(url=self.url, capability=self.capability, resources=_links(self.resources))


class AccountPayload(BaseModel):
    """Account resource returned by a reset; carries the new key and secret."""

    model_config = ConfigDict(extra="ignore")

    url: str = Field(description="URL of the account resource.")
    capability: str | None = Field(default=None, description="Account capability.")
    key: str | None = Field(default=None, description="Account key used to open sessions.")
    secret: str | None = Field(default=None, description="Account secret.")

    def to_model(self) -> Account:
        return Account(
            url=self.url, capability=self.capability, key=self.key, secret=self.secret
        )


class ChannelPayload(BaseModel):
    """Canonical representation of a channel resource."""

    model_config = ConfigDict(extra="ignore")

    url: str = Field(description="Channel URL; messages are published here.")
    name: str = Field(description="Channel name, unique within the account.")
    capability: str | None = Field(default=None, description="Channel capability.")
    resources: dict[str, ResourceLinkPayload] = Field(
        default_factory=dict, description="Channel-scoped collections (subscriptions)."
    )

    def to_model(self) -> Channel:
        return Channel(
            name=self.name,
            url=self.url,
            capability=self.capability,
            resources=_links(self.resources),
        )


class SubscriptionPayload(BaseModel):
    """Canonical representation of a subscription resource."""

    model_config = ConfigDict(extra="ignore")

    url: str = Field(description="Subscription URL; long-poll requests are sent here.")
    name: str | None = Field(default=None, description="Optional subscription name.")
    capability: str | None = Field(default=None, description="Subscription capability.")
    channels: list[str] = Field(
        default_factory=list, description="URLs of the channels the subscription listens to."
    )

    def to_model(self) -> Subscription:
        return Subscription(
            name=self.name,
            url=self.url,
            capability=self.capability,
            channel_urls=tuple(self.channels),
        )


class MessagePayload(BaseModel):
    """Canonical representation of a message."""

    model_config = ConfigDict(extra="ignore")

    key: str = Field(description="Server-assigned message identifier used as the cursor.")
    content: Any = Field(default=None, description="String or JSON value published.")
    timestamp: float | None = Field(default=None, description="Server timestamp.")
    channel: str | None = Field(default=None, description="URL of the originating channel.")
    url: str | None = Field(default=None, description="URL of the message resource.")

    def to_model(self) -> Message:
        return Message(
            key=self.key,
            content=self.content,
            timestamp=self.timestamp,
            channel_url=self.channel,
            url=self.url,
            raw=MappingProxyType(self.model_dump()),
        )


class EventsPayload(BaseModel):
    """Response envelope for a subscription long-poll."""

    model_config = ConfigDict(extra="ignore")

    messages: list[MessagePayload] = Field(
        default_factory=list, description="Messages received since the cursor, oldest first."
    )


ChannelCollection = TypeAdapter(dict[str, ChannelPayload])
SubscriptionCollection = TypeAdapter(dict[str, SubscriptionPayload])
