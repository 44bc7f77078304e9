"""Long-poll subscription engine delivering messages to registered listeners."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Protocol

from .config import ListenerConfig
from .errors import RetryHint, SpireError
from .listeners import BATCH_EVENT, ERROR_EVENT, MESSAGE_EVENT, Listener, ListenerRegistry
from .models import EngineSnapshot, EngineState, EventBatch, Subscription
from .telemetry import NullTelemetrySink, PollErrorEvent, PollMetrics, TelemetrySink

logger = logging.getLogger(__name__)


class EventPoller(Protocol):
    """Protocol issuing a single long-poll request for a subscription."""

    async def get_events(
        self, subscription: Subscription, *, timeout: float
    ) -> EventBatch:  # pragma: no cover - protocol
        """Return messages newer than the subscription cursor; never moves the cursor."""
        ...


async def poll_once(
    poller: EventPoller, subscription: Subscription, *, timeout: float
) -> EventBatch:
    """Issue one poll and advance the cursor past the returned messages.

    Returns an empty batch when another poll moved the cursor while this one
    was in flight, so the same messages are never handed out twice.
    """
    cursor = subscription.last_message
    batch = await poller.get_events(subscription, timeout=timeout)
    last_key = batch.last_key
    if last_key is None:
        return batch
    if not subscription.advance_cursor(cursor, last_key):
        logger.debug("Discarding stale batch for %s; cursor moved", subscription.url)
        return EventBatch(messages=())
    return batch


class LongPollEngine:
    """Repeatedly long-polls one subscription until stopped.

    States move ``IDLE -> LISTENING -> STOPPED``; a stopped engine cannot be
    restarted. Stopping only sets a flag: an in-flight request is left to
    finish and its outcome is discarded.

    Transport errors are routed to ``"error"`` listeners. With the ``"pause"``
    policy the loop then waits (still ``LISTENING``) until :meth:`resume` or
    :meth:`stop_listening`; with ``"retry"`` it backs off and polls again.
    """

    def __init__(
        self,
        poller: EventPoller,
        subscription: Subscription,
        config: ListenerConfig | None = None,
        *,
        telemetry: TelemetrySink | None = None,
    ) -> None:
        """Create an idle engine polling *subscription* through *poller*."""
        self._poller = poller
        self._subscription = subscription
        self._config = config or ListenerConfig()
        self._telemetry = telemetry or NullTelemetrySink()
        self._listeners = ListenerRegistry(self._telemetry)
        self._state = EngineState.IDLE
        self._stopped = False
        self._paused = False
        self._resume_event = asyncio.Event()
        self._timeout = self._config.timeout
        self._task: asyncio.Task[None] | None = None
        self._failure: BaseException | None = None
        self._polls = 0
        self._delivered = 0
        self._consecutive_failures = 0
        self._last_message_at: datetime | None = None

    @property
    def subscription(self) -> Subscription:
        """Return the subscription this engine polls."""
        return self._subscription

    @property
    def state(self) -> EngineState:
        """Return the current lifecycle state."""
        return self._state

    @property
    def finished(self) -> bool:
        """Return ``True`` once the engine is stopped and its loop has exited."""
        return self._state is EngineState.STOPPED and (self._task is None or self._task.done())

    @property
    def paused(self) -> bool:
        """Return ``True`` while the loop waits after a transport error."""
        return self._paused

    def add_listener(self, event_type: str, listener: Listener) -> None:
        """Register *listener* for ``"message"``, ``"messages"`` or ``"error"`` events."""
        self._listeners.add(event_type, listener)

    def remove_listener(self, event_type: str, listener: Listener) -> None:
        """Unregister *listener* for *event_type*."""
        self._listeners.remove(event_type, listener)

    def start_listening(self, *, timeout: float | None = None) -> None:
        """Start the poll loop, optionally overriding the long-poll *timeout*."""
        if self._state is EngineState.STOPPED:
            raise RuntimeError("A stopped engine cannot be restarted; create a new one")
        if self._state is EngineState.LISTENING:
            logger.debug("Engine for %s is already listening", self._subscription.url)
            return
        if timeout is not None:
            if timeout <= 0:
                raise ValueError("timeout must be positive")
            self._timeout = timeout
        self._state = EngineState.LISTENING
        self._task = asyncio.create_task(self._run())
        logger.info(
            "Listening on subscription %s (timeout=%ss)",
            self._subscription.name or self._subscription.url,
            self._timeout,
        )

    def stop_listening(self) -> None:
        """Stop the loop; safe to call from inside a listener.

        No poll is issued after this returns. A poll already in flight is not
        aborted, but its outcome is discarded.
        """
        if self._state is EngineState.STOPPED:
            return
        self._stopped = True
        self._state = EngineState.STOPPED
        self._resume_event.set()
        logger.info("Stopped listening on subscription %s", self._subscription.url)

    def resume(self) -> None:
        """Issue the next poll after the loop paused on a transport error."""
        if self._state is not EngineState.LISTENING or not self._paused:
            return
        logger.info("Resuming subscription %s", self._subscription.url)
        self._resume_event.set()

    async def wait_closed(self) -> None:
        """Wait for the loop to finish, re-raising a fatal loop failure."""
        if self._task is not None:
            await self._task
        if self._failure is not None:
            raise self._failure

    async def close(self) -> None:
        """Stop listening and cancel any in-flight poll."""
        self.stop_listening()
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def snapshot(self) -> EngineSnapshot:
        """Return a runtime snapshot of the engine."""
        return EngineSnapshot(
            subscription=self._subscription.name,
            state=self._state,
            cursor=self._subscription.last_message,
            polls=self._polls,
            delivered=self._delivered,
            consecutive_failures=self._consecutive_failures,
            paused=self._paused,
            last_message_at=self._last_message_at,
        )

    async def _run(self) -> None:
        backoff = self._config.initial_backoff
        while not self._stopped:
            cursor = self._subscription.last_message
            started_at = datetime.now(UTC)
            try:
                batch = await self._poller.get_events(self._subscription, timeout=self._timeout)
            except SpireError as exc:
                if self._stopped:
                    break
                hint = await self._handle_failure(exc, cursor, backoff)
                if hint is None:
                    await self._wait_for_resume()
                else:
                    await self._back_off(hint.seconds)
                    backoff = min(backoff * 2.0, self._config.max_backoff)
                continue
            except Exception as exc:
                logger.exception("Unexpected failure polling %s", self._subscription.url)
                self._failure = exc
                await self._listeners.emit(ERROR_EVENT, exc)
                self.stop_listening()
                break

            if self._stopped:
                logger.debug("Discarding poll outcome for %s after stop", self._subscription.url)
                break
            self._polls += 1
            self._consecutive_failures = 0
            backoff = self._config.initial_backoff
            delivered = await self._deliver(batch, cursor)
            self._telemetry.record_metric(
                PollMetrics(
                    subscription_url=self._subscription.url,
                    delivered=delivered,
                    cursor=self._subscription.last_message,
                    timed_out=batch.timed_out,
                    poll_started_at=started_at,
                    poll_completed_at=datetime.now(UTC),
                )
            )

    async def _deliver(self, batch: EventBatch, cursor: str | None) -> int:
        last_key = batch.last_key
        if last_key is None:
            return 0
        if not self._subscription.advance_cursor(cursor, last_key):
            logger.warning(
                "Cursor for %s moved during poll; dropping %d overlapping message(s)",
                self._subscription.url,
                len(batch.messages),
            )
            return 0
        for message in batch.messages:
            await self._listeners.emit(MESSAGE_EVENT, message)
        await self._listeners.emit(BATCH_EVENT, batch.messages)
        self._delivered += len(batch.messages)
        self._last_message_at = datetime.now(UTC)
        logger.debug(
            "Delivered %d message(s) from %s", len(batch.messages), self._subscription.url
        )
        return len(batch.messages)

    async def _handle_failure(
        self, exc: SpireError, cursor: str | None, backoff: float
    ) -> RetryHint | None:
        self._consecutive_failures += 1
        hint = self._retry_hint(exc, backoff)
        self._resume_event.clear()
        if hint is None:
            self._paused = True
        logger.warning(
            "Long-poll failed for %s at cursor %s (attempt %s): %s",
            self._subscription.url,
            cursor,
            self._consecutive_failures,
            exc,
        )
        self._telemetry.record_event(
            PollErrorEvent(
                subscription_url=self._subscription.url,
                cursor=cursor,
                attempt=self._consecutive_failures,
                error_type=exc.__class__.__name__,
                message=str(exc),
                retry_in=None if hint is None else hint.seconds,
            )
        )
        await self._listeners.emit(ERROR_EVENT, exc)
        return hint

    def _retry_hint(self, exc: SpireError, backoff: float) -> RetryHint | None:
        if self._config.error_policy == "pause":
            return None
        limit = self._config.max_retry_attempts
        if limit is not None and self._consecutive_failures > limit:
            logger.warning("Retry budget exhausted for %s; pausing", self._subscription.url)
            return None
        return RetryHint(seconds=min(backoff, self._config.max_backoff), reason=str(exc))

    async def _back_off(self, seconds: float) -> None:
        if self._stopped:
            return
        try:
            await asyncio.wait_for(self._resume_event.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def _wait_for_resume(self) -> None:
        if not self._stopped:
            await self._resume_event.wait()
        self._paused = False
