"""Async client for the Spire publish/subscribe HTTP service."""

from __future__ import annotations

from .client import SpireClient, SpireClientDependencies
from .config import (
    Credentials,
    HttpClientConfig,
    ListenerConfig,
    load_credentials_from_environment,
)
from .errors import (
    AccountResetError,
    DiscoveryError,
    MissingCredentialError,
    PollTimeout,
    PollTransportError,
    ResourceConflictError,
    ResourceCreationError,
    ResourceNotFoundError,
    SessionCreationError,
    SpireError,
    TransportError,
)
from .listeners import BATCH_EVENT, ERROR_EVENT, MESSAGE_EVENT
from .long_poll import LongPollEngine
from .models import (
    Account,
    Channel,
    DiscoveryDescriptor,
    EngineSnapshot,
    EngineState,
    EventBatch,
    Message,
    ResourceLink,
    Session,
    Subscription,
)
from .session import SessionManager

__all__ = [
    "Account",
    "AccountResetError",
    "BATCH_EVENT",
    "Channel",
    "Credentials",
    "DiscoveryDescriptor",
    "DiscoveryError",
    "ERROR_EVENT",
    "EngineSnapshot",
    "EngineState",
    "EventBatch",
    "HttpClientConfig",
    "ListenerConfig",
    "LongPollEngine",
    "MESSAGE_EVENT",
    "Message",
    "MissingCredentialError",
    "PollTimeout",
    "PollTransportError",
    "ResourceConflictError",
    "ResourceCreationError",
    "ResourceLink",
    "ResourceNotFoundError",
    "Session",
    "SessionCreationError",
    "SessionManager",
    "SpireClient",
    "SpireClientDependencies",
    "SpireError",
    "Subscription",
    "TransportError",
    "load_credentials_from_environment",
]
