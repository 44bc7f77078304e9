"""Public async client facade for interacting with Spire."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from types import TracebackType

from .auth import HttpSessionBackend, SessionBackend
from .config import Credentials, HttpClientConfig, ListenerConfig
from .discovery import DiscoveryClient
from .http import AsyncHttpClientProtocol, SpireHttpClient
from .listeners import BATCH_EVENT
from .long_poll import LongPollEngine, poll_once
from .models import Account, Channel, EngineSnapshot, EventBatch, Message, Session, Subscription
from .resources import ResourceClient
from .session import SessionManager
from .telemetry import NullTelemetrySink, TelemetrySink

logger = logging.getLogger(__name__)

BatchCallback = Callable[[Sequence[Message]], Awaitable[None] | None]
SubscribedCallback = Callable[[Subscription], Awaitable[None] | None]


@dataclass(slots=True)
class SpireClientDependencies:
    """Optional dependency overrides for :class:`SpireClient`."""

    http_client: AsyncHttpClientProtocol | None = None
    http_config: HttpClientConfig | None = None
    listener_config: ListenerConfig | None = None
    discovery: DiscoveryClient | None = None
    session_backend: SessionBackend | None = None
    telemetry: TelemetrySink | None = None


class SpireClient:
    """Concrete async Spire client coordinating the session, resources and listeners."""

    def __init__(
        self,
        credentials: Credentials | None = None,
        *,
        dependencies: SpireClientDependencies | None = None,
    ) -> None:
        """Wire optional dependency overrides and prepare internal state."""
        deps = dependencies or SpireClientDependencies()
        self._telemetry = deps.telemetry or NullTelemetrySink()
        self._http_config = deps.http_config or HttpClientConfig()
        self._listener_config = deps.listener_config or ListenerConfig()
        self._http_client = deps.http_client or SpireHttpClient(self._http_config)
        self._discovery = deps.discovery or DiscoveryClient(self._http_client, self._http_config)
        backend = deps.session_backend or HttpSessionBackend(self._http_client)
        self._sessions = SessionManager(
            self._discovery, backend, credentials, telemetry=self._telemetry
        )
        self._resources = ResourceClient(
            self._http_client, self._sessions, self._discovery, self._listener_config
        )
        self._engines: list[LongPollEngine] = []
        logger.debug("SpireClient initialised for %s", self._http_config.base_url)

    async def __aenter__(self) -> SpireClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.shutdown()

    @property
    def sessions(self) -> SessionManager:
        """Return the session manager shared by every call of this client."""
        return self._sessions

    @property
    def resources(self) -> ResourceClient:
        """Return the channel/subscription resource layer."""
        return self._resources

    async def connect(self) -> Session:
        """Return the active session, creating it on first use."""
        return await self._sessions.connect()

    async def reauthenticate(self, credentials: Credentials) -> None:
        """Switch to *credentials*; the next call opens a fresh session."""
        await self._sessions.reauthenticate(credentials)

    async def reset_account(self, *, reauthenticate: bool = True) -> Account:
        """Rotate the account key and secret and return the updated account.

        With *reauthenticate* the current session is dropped and the next call
        logs in with the new key; the old key and secret stop working either way.
        """
        account = await self._resources.reset_account()
        if reauthenticate:
            await self._sessions.reauthenticate(account.credentials())
        return account

    async def close_session(self) -> None:
        """Drop the active session and its cached channels and subscriptions."""
        await self._sessions.close()

    async def create_channel(self, name: str) -> Channel:
        """Create the channel *name*."""
        return await self._resources.create_channel(name)

    async def find_or_create_channel(self, name: str) -> Channel:
        """Return the channel *name*, creating it when missing."""
        return await self._resources.find_or_create_channel(name)

    async def channel_by_name(self, name: str) -> Channel:
        """Return the existing channel *name*."""
        return await self._resources.channel_by_name(name)

    async def create_subscription(
        self, name: str | None = None, channel_names: Sequence[str] = ()
    ) -> Subscription:
        """Create a subscription on *channel_names*."""
        return await self._resources.create_subscription(name, channel_names)

    async def find_or_create_subscription(
        self, name: str, channel_names: Sequence[str] = ()
    ) -> Subscription:
        """Return the subscription *name*, creating it when missing."""
        return await self._resources.find_or_create_subscription(name, channel_names)

    async def subscription_by_name(self, name: str) -> Subscription:
        """Return the existing subscription *name*."""
        return await self._resources.subscription_by_name(name)

    async def channel_subscriptions(self, channel: Channel) -> dict[str, Subscription]:
        """Return the named subscriptions attached to *channel*."""
        return await self._resources.channel_subscriptions(channel)

    async def publish(self, channel: str | Channel, content: object) -> Message:
        """Publish *content* to *channel*, given by name or as a resolved channel."""
        if isinstance(channel, Channel):
            return await self._resources.publish(channel, content)
        return await self._resources.publish_to_channel(channel, content)

    async def poll(self, subscription: Subscription, *, timeout: float | None = None) -> EventBatch:
        """Issue a single long-poll and advance the subscription cursor."""
        window = self._listener_config.timeout if timeout is None else timeout
        return await poll_once(self._resources, subscription, timeout=window)

    def listen(self, subscription: Subscription) -> LongPollEngine:
        """Return a new idle engine for *subscription*; call ``start_listening`` on it."""
        engine = LongPollEngine(
            self._resources, subscription, self._listener_config, telemetry=self._telemetry
        )
        self._prune_engines()
        self._engines.append(engine)
        return engine

    async def subscribe(
        self,
        channel_name: str,
        on_message: BatchCallback,
        on_subscribed: SubscribedCallback | None = None,
    ) -> None:
        """Listen to *channel_name* with an anonymous subscription.

        *on_message* receives every non-empty batch. The loop has no stop
        handle of its own; it ends when the client shuts down.
        """
        subscription = await self._resources.create_subscription(None, (channel_name,))
        engine = self.listen(subscription)
        engine.add_listener(BATCH_EVENT, on_message)
        engine.start_listening()
        if on_subscribed is not None:
            result = on_subscribed(subscription)
            if inspect.isawaitable(result):
                await result

    def snapshots(self) -> list[EngineSnapshot]:
        """Return runtime snapshots for the engines of this client that are still live."""
        self._prune_engines()
        return [engine.snapshot() for engine in self._engines]

    async def shutdown(self) -> None:
        """Stop every engine, drop the session and close the HTTP client."""
        engines = list(self._engines)
        self._engines.clear()
        for engine in engines:
            await engine.close()
        await self._sessions.shutdown()
        await self._http_client.close()
        logger.info("SpireClient shutdown complete (%d engine(s) stopped)", len(engines))

    def _prune_engines(self) -> None:
        self._engines = [engine for engine in self._engines if not engine.finished]
