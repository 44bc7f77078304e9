"""Per-subscription listener registry keyed by event type."""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, MutableMapping

from .telemetry import ListenerErrorEvent, NullTelemetrySink, TelemetrySink

logger = logging.getLogger(__name__)

Listener = Callable[[object], Awaitable[None] | None]
"""Listener callback; may be a plain function or a coroutine function."""

MESSAGE_EVENT = "message"
BATCH_EVENT = "messages"
ERROR_EVENT = "error"


class ListenerRegistry:
    """Event-type aware listener set.

    Mutation is synchronous and safe from inside a listener: dispatch iterates
    over a snapshot, so listeners added or removed mid-dispatch take effect on
    the next event.
    """

    def __init__(self, telemetry: TelemetrySink | None = None) -> None:
        """Initialise the registry without listeners."""

        self._listeners: MutableMapping[str, list[Listener]] = defaultdict(list)
        self._telemetry = telemetry or NullTelemetrySink()

    def add(self, event_type: str, listener: Listener) -> None:
        """Register *listener* to receive events of *event_type*."""

        if listener not in self._listeners[event_type]:
            self._listeners[event_type].append(listener)

    def remove(self, event_type: str, listener: Listener) -> None:
        """Remove *listener* for *event_type* if present."""

        listeners = self._listeners.get(event_type)
        if not listeners:
            return
        try:
            listeners.remove(listener)
        except ValueError:
            return
        if not listeners:
            self._listeners.pop(event_type, None)

    def count(self, event_type: str) -> int:
        """Return how many listeners are registered for *event_type*."""

        return len(self._listeners.get(event_type, ()))

    async def emit(self, event_type: str, event: object) -> int:
        """Invoke every listener of *event_type* in registration order.

        Listener failures are logged and recorded, never raised. Returns the
        number of listeners that completed successfully.
        """

        completed = 0
        for listener in list(self._listeners.get(event_type, ())):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.exception("Listener for %s event failed", event_type)
                self._telemetry.record_event(
                    ListenerErrorEvent(
                        event_type=event_type,
                        error_type=exc.__class__.__name__,
                        message=str(exc),
                    )
                )
                continue
            completed += 1
        return completed
