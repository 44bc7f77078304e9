"""Channel, subscription and account request builders plus session-scoped lookups."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine, Sequence
from functools import partial
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, TypeAdapter, ValidationError

from .auth import authorization_header
from .config import ListenerConfig
from .discovery import DiscoveryClient
from .errors import (
    AccountResetError,
    PollTimeout,
    PollTransportError,
    RequestTimeoutError,
    ResourceConflictError,
    ResourceCreationError,
    ResourceNotFoundError,
    ResponseParsingError,
    ResponseStatusError,
    TransportError,
)
from .http import ApiRequest, AsyncHttpClientProtocol, decode_json
from .models import (
    Account,
    Channel,
    DiscoveryDescriptor,
    EventBatch,
    Message,
    Session,
    Subscription,
)
from .schemas import (
    AccountPayload,
    ChannelCollection,
    ChannelPayload,
    EventsPayload,
    MessagePayload,
    SubscriptionCollection,
    SubscriptionPayload,
)
from .session import SessionManager

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT")
ModelT = TypeVar("ModelT", bound=BaseModel)
ValueT = TypeVar("ValueT")


def build_create_channel_request(
    descriptor: DiscoveryDescriptor, session: Session, name: str
) -> ApiRequest:
    collection = session.link("channels")
    media_type = descriptor.media_type("channel")
    return ApiRequest(
        method="POST",
        url=collection.url,
        headers={
            "Authorization": authorization_header(collection),
            "Content-Type": media_type,
            "Accept": media_type,
        },
        json={"name": name},
    )


def build_list_channels_request(
    descriptor: DiscoveryDescriptor, session: Session, name: str | None = None
) -> ApiRequest:
    collection = session.link("channels")
    return ApiRequest(
        method="GET",
        url=collection.url,
        headers={
            "Authorization": authorization_header(collection),
            "Accept": descriptor.media_type("channels"),
        },
        params=None if name is None else {"name": name},
    )


def build_create_subscription_request(
    descriptor: DiscoveryDescriptor,
    session: Session,
    name: str | None,
    channels: Sequence[Channel],
) -> ApiRequest:
    collection = session.link("subscriptions")
    media_type = descriptor.media_type("subscription")
    body: dict[str, Any] = {
        "events": ["messages"],
        "channels": [channel.url for channel in channels],
    }
    if name is not None:
        body["name"] = name
    return ApiRequest(
        method="POST",
        url=collection.url,
        headers={
            "Authorization": authorization_header(collection),
            "Content-Type": media_type,
            "Accept": media_type,
        },
        json=body,
    )


def build_list_subscriptions_request(
    descriptor: DiscoveryDescriptor, session: Session, name: str | None = None
) -> ApiRequest:
    collection = session.link("subscriptions")
    return ApiRequest(
        method="GET",
        url=collection.url,
        headers={
            "Authorization": authorization_header(collection),
            "Accept": descriptor.media_type("subscriptions"),
        },
        params=None if name is None else {"name": name},
    )


def build_channel_subscriptions_request(
    descriptor: DiscoveryDescriptor, channel: Channel
) -> ApiRequest:
    collection = channel.resources.get("subscriptions")
    if collection is None:
        raise ResponseParsingError(f"Channel {channel.name} exposes no subscriptions collection")
    return ApiRequest(
        method="GET",
        url=collection.url,
        headers={
            "Authorization": authorization_header(collection),
            "Accept": descriptor.media_type("subscriptions"),
        },
    )


def build_publish_request(
    descriptor: DiscoveryDescriptor, channel: Channel, content: object
) -> ApiRequest:
    media_type = descriptor.media_type("message")
    return ApiRequest(
        method="POST",
        url=channel.url,
        headers={
            "Authorization": authorization_header(channel),
            "Content-Type": media_type,
            "Accept": media_type,
        },
        json={"content": content},
    )


def build_account_reset_request(descriptor: DiscoveryDescriptor, session: Session) -> ApiRequest:
    """Build the POST that rotates the account key and secret."""
    account = session.link("account")
    media_type = descriptor.media_type("account")
    return ApiRequest(
        method="POST",
        url=account.url,
        headers={
            "Authorization": authorization_header(account),
            "Content-Type": media_type,
            "Accept": media_type,
        },
        json={},
    )


def build_events_request(
    descriptor: DiscoveryDescriptor, subscription: Subscription, timeout: float
) -> ApiRequest:
    """Build the long-poll GET; ``last-message`` is omitted while the cursor is empty."""
    media_type = descriptor.media_type("events")
    params: dict[str, Any] = {"timeout": _format_timeout(timeout)}
    if subscription.last_message is not None:
        params["last-message"] = subscription.last_message
    return ApiRequest(
        method="GET",
        url=subscription.url,
        headers={
            "Authorization": authorization_header(subscription),
            "Content-Type": media_type,
            "Accept": media_type,
        },
        params=params,
    )


def _format_timeout(timeout: float) -> int | float:
    return int(timeout) if float(timeout).is_integer() else timeout


class ResourceClient:
    """Resolves channels and subscriptions for the managed session.

    Every call goes through :meth:`SessionManager.submit`, so it transparently
    waits for (or triggers) session creation. Named resources are cached on the
    owning :class:`Session`; a cached name never causes a network call.
    """

    def __init__(
        self,
        http_client: AsyncHttpClientProtocol,
        sessions: SessionManager,
        discovery: DiscoveryClient,
        config: ListenerConfig | None = None,
    ) -> None:
        self._http_client = http_client
        self._sessions = sessions
        self._discovery = discovery
        self._config = config or ListenerConfig()
        self._in_flight: dict[tuple[int, str, str], asyncio.Task[Any]] = {}

    async def create_channel(self, name: str) -> Channel:
        """Create channel *name*; raises :class:`ResourceConflictError` if it exists."""
        return await self._sessions.submit(partial(self._create_channel, name=name))

    async def find_or_create_channel(self, name: str) -> Channel:
        """Return channel *name*, creating it unless it already exists."""
        return await self._sessions.submit(partial(self._find_or_create_channel, name=name))

    async def channel_by_name(self, name: str) -> Channel:
        """Return the existing channel *name*."""
        return await self._sessions.submit(partial(self._channel_by_name, name=name))

    async def channels(self) -> dict[str, Channel]:
        """Return every channel visible to the session keyed by name."""
        return await self._sessions.submit(self._channels)

    async def create_subscription(
        self, name: str | None = None, channel_names: Sequence[str] = ()
    ) -> Subscription:
        """Create a subscription listening to *channel_names* (created on demand)."""
        return await self._sessions.submit(
            partial(self._create_subscription, name=name, channel_names=tuple(channel_names))
        )

    async def find_or_create_subscription(
        self, name: str, channel_names: Sequence[str] = ()
    ) -> Subscription:
        """Return subscription *name*, creating it unless it already exists."""
        return await self._sessions.submit(
            partial(
                self._find_or_create_subscription, name=name, channel_names=tuple(channel_names)
            )
        )

    async def subscription_by_name(self, name: str) -> Subscription:
        """Return the existing subscription *name*."""
        return await self._sessions.submit(partial(self._subscription_by_name, name=name))

    async def subscriptions(self) -> dict[str, Subscription]:
        """Return every named subscription visible to the session keyed by name."""
        return await self._sessions.submit(self._subscriptions)

    async def reset_account(self) -> Account:
        """Reset the account behind the session and return its new key and secret.

        The current session stays usable; credentials from the returned
        account are needed for the next one.
        """
        return await self._sessions.submit(self._reset_account)

    async def channel_subscriptions(self, channel: Channel) -> dict[str, Subscription]:
        """Return the named subscriptions attached to *channel*."""
        descriptor = await self._discovery.describe()
        request = build_channel_subscriptions_request(descriptor, channel)
        response = await self._http_client.send(request)
        return {
            name: payload.to_model()
            for name, payload in _parse(SubscriptionCollection, response).items()
        }

    async def publish_to_channel(self, channel_name: str, content: object) -> Message:
        """Find or create *channel_name* and publish *content* on it.

        Both steps run as one session operation, so publishes issued before a
        session exists are posted in the order they were made.
        """
        return await self._sessions.submit(
            partial(self._publish_to_channel, channel_name=channel_name, content=content)
        )

    async def publish(self, channel: Channel, content: object) -> Message:
        """Publish *content* (a string or JSON value) on *channel*."""
        descriptor = await self._discovery.describe()
        response = await self._http_client.send(build_publish_request(descriptor, channel, content))
        message = _parse_model(MessagePayload, response).to_model()
        logger.debug("Published message %s on channel %s", message.key, channel.name)
        return message

    async def get_events(self, subscription: Subscription, *, timeout: float) -> EventBatch:
        """Issue one long-poll for *subscription* without moving its cursor.

        A request that times out yields an empty batch flagged ``timed_out``;
        any other failure raises :class:`PollTransportError`.
        """
        try:
            payload = await self._request_events(subscription, timeout)
        except PollTimeout:
            logger.debug("Long-poll on %s timed out; treating as empty", subscription.url)
            return EventBatch(messages=(), timed_out=True)
        return EventBatch(messages=tuple(message.to_model() for message in payload.messages))

    async def _request_events(self, subscription: Subscription, timeout: float) -> EventsPayload:
        descriptor = await self._discovery.describe()
        request = build_events_request(descriptor, subscription, timeout)
        try:
            response = await self._http_client.send(
                request, timeout=self._config.request_timeout(timeout)
            )
            return _parse_model(EventsPayload, response)
        except RequestTimeoutError as exc:
            raise PollTimeout(str(exc)) from exc
        except (TransportError, ResponseParsingError) as exc:
            raise PollTransportError(f"Long-poll on {subscription.url} failed: {exc}") from exc

    async def _reset_account(self, session: Session) -> Account:
        if "account" not in session.resources:
            raise AccountResetError(
                "Session exposes no account resource; log in with the account key to reset it"
            )
        descriptor = await self._discovery.describe()
        try:
            response = await self._http_client.send(
                build_account_reset_request(descriptor, session)
            )
        except ResponseStatusError as exc:
            raise AccountResetError(
                f"Account reset was rejected with status {exc.status_code}"
            ) from exc
        except TransportError as exc:
            raise AccountResetError(f"Account reset failed: {exc}") from exc
        account = _parse_model(AccountPayload, response).to_model()
        logger.info("Reset account %s; previous key and secret are no longer valid", account.url)
        return account

    async def _publish_to_channel(
        self, session: Session, *, channel_name: str, content: object
    ) -> Message:
        channel = await self._find_or_create_channel(session, name=channel_name)
        return await self.publish(channel, content)

    async def _create_channel(self, session: Session, *, name: str) -> Channel:
        descriptor = await self._discovery.describe()
        response = await self._send_create(
            build_create_channel_request(descriptor, session, name), kind="channel", name=name
        )
        channel = _parse_model(ChannelPayload, response).to_model()
        session.channels[channel.name] = channel
        logger.debug("Created channel %s at %s", channel.name, channel.url)
        return channel

    async def _find_or_create_channel(self, session: Session, *, name: str) -> Channel:
        cached = session.channels.get(name)
        if cached is not None:
            return cached
        return await self._single_flight(
            (id(session), "channel", name), partial(self._resolve_channel, session, name)
        )

    async def _resolve_channel(self, session: Session, name: str) -> Channel:
        try:
            return await self._create_channel(session, name=name)
        except ResourceConflictError:
            logger.debug("Channel %s already exists; looking it up", name)
            return await self._channel_by_name(session, name=name)

    async def _channel_by_name(self, session: Session, *, name: str) -> Channel:
        cached = session.channels.get(name)
        if cached is not None:
            return cached
        descriptor = await self._discovery.describe()
        response = await self._http_client.send(
            build_list_channels_request(descriptor, session, name)
        )
        found = _parse(ChannelCollection, response).get(name)
        if found is None:
            raise ResourceNotFoundError(f"No channel named '{name}'")
        channel = found.to_model()
        session.channels[name] = channel
        return channel

    async def _channels(self, session: Session) -> dict[str, Channel]:
        descriptor = await self._discovery.describe()
        response = await self._http_client.send(build_list_channels_request(descriptor, session))
        channels = {
            name: payload.to_model()
            for name, payload in _parse(ChannelCollection, response).items()
        }
        session.channels.update(channels)
        return channels

    async def _create_subscription(
        self, session: Session, *, name: str | None, channel_names: tuple[str, ...]
    ) -> Subscription:
        channels = [
            await self._find_or_create_channel(session, name=channel_name)
            for channel_name in channel_names
        ]
        descriptor = await self._discovery.describe()
        response = await self._send_create(
            build_create_subscription_request(descriptor, session, name, channels),
            kind="subscription",
            name=name,
        )
        subscription = _parse_model(SubscriptionPayload, response).to_model()
        if subscription.name is not None:
            session.subscriptions[subscription.name] = subscription
        logger.debug(
            "Created subscription %s on %d channel(s)",
            subscription.name or "<anonymous>",
            len(channels),
        )
        return subscription

    async def _find_or_create_subscription(
        self, session: Session, *, name: str, channel_names: tuple[str, ...]
    ) -> Subscription:
        cached = session.subscriptions.get(name)
        if cached is not None:
            return cached
        return await self._single_flight(
            (id(session), "subscription", name),
            partial(self._resolve_subscription, session, name, channel_names),
        )

    async def _resolve_subscription(
        self, session: Session, name: str, channel_names: tuple[str, ...]
    ) -> Subscription:
        try:
            return await self._create_subscription(
                session, name=name, channel_names=channel_names
            )
        except ResourceConflictError:
            logger.debug("Subscription %s already exists; looking it up", name)
            return await self._subscription_by_name(session, name=name)

    async def _subscription_by_name(self, session: Session, *, name: str) -> Subscription:
        cached = session.subscriptions.get(name)
        if cached is not None:
            return cached
        descriptor = await self._discovery.describe()
        response = await self._http_client.send(
            build_list_subscriptions_request(descriptor, session, name)
        )
        found = _parse(SubscriptionCollection, response).get(name)
        if found is None:
            raise ResourceNotFoundError(f"No subscription named '{name}'")
        subscription = found.to_model()
        session.subscriptions[name] = subscription
        return subscription

    async def _subscriptions(self, session: Session) -> dict[str, Subscription]:
        descriptor = await self._discovery.describe()
        response = await self._http_client.send(
            build_list_subscriptions_request(descriptor, session)
        )
        subscriptions = {
            name: payload.to_model()
            for name, payload in _parse(SubscriptionCollection, response).items()
        }
        for name, subscription in subscriptions.items():
            session.subscriptions.setdefault(name, subscription)
        return subscriptions

    async def _single_flight(
        self,
        key: tuple[int, str, str],
        factory: Callable[[], Coroutine[Any, Any, ResultT]],
    ) -> ResultT:
        """Join the lookup already running under *key* or start one.

        Overlapping find-or-create calls for one name then share a single
        create request. The shared task is shielded so that one cancelled
        caller does not abort it for the others.
        """
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(factory())
            self._in_flight[key] = task
            task.add_done_callback(partial(self._forget_in_flight, key))
        else:
            logger.debug("Joining in-flight lookup of %s '%s'", key[1], key[2])
        return await asyncio.shield(task)

    def _forget_in_flight(self, key: tuple[int, str, str], task: asyncio.Task[Any]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _send_create(
        self, request: ApiRequest, *, kind: str, name: str | None
    ) -> httpx.Response:
        try:
            return await self._http_client.send(request)
        except ResponseStatusError as exc:
            if exc.is_conflict:
                raise ResourceConflictError(f"A {kind} named '{name}' already exists") from exc
            raise ResourceCreationError(
                f"Creating {kind} '{name}' was rejected with status {exc.status_code}"
            ) from exc
        except TransportError as exc:
            raise ResourceCreationError(f"Creating {kind} '{name}' failed: {exc}") from exc


def _parse_model(model: type[ModelT], response: httpx.Response) -> ModelT:
    try:
        return model.model_validate(decode_json(response))
    except ValidationError as exc:
        raise ResponseParsingError(f"Unexpected {model.__name__} payload") from exc


def _parse(adapter: TypeAdapter[ValueT], response: httpx.Response) -> ValueT:
    try:
        return adapter.validate_python(decode_json(response))
    except ValidationError as exc:
        raise ResponseParsingError("Unexpected collection payload") from exc
