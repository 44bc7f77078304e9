"""Tests for the long-poll subscription engine state machine."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Iterable, Sequence

import pytest

from spire_client import (
    BATCH_EVENT,
    ERROR_EVENT,
    MESSAGE_EVENT,
    EngineState,
    EventBatch,
    ListenerConfig,
    LongPollEngine,
    Message,
    PollTransportError,
    Subscription,
)
from spire_client.long_poll import poll_once
from spire_client.telemetry import (
    ListenerErrorEvent,
    PollErrorEvent,
    PollMetrics,
    TelemetryEvent,
    TelemetryMetric,
)

Step = EventBatch | BaseException


def _message(key: str) -> Message:
    return Message(key=key, content=f"content-{key}")


def _batch(*keys: str) -> EventBatch:
    return EventBatch(messages=tuple(_message(key) for key in keys))


def _subscription() -> Subscription:
    return Subscription(name="updates", url="http://api.spire.io/subscriptions/1", capability="c")


class ScriptedPoller:
    """Poller stub replaying scripted batches and errors, then blocking."""

    def __init__(self, script: Iterable[Step]) -> None:
        """Queue the *script* steps and reset call tracking."""
        self._script: deque[Step] = deque(script)
        self.cursors: list[str | None] = []
        self.timeouts: list[float] = []
        self.exhausted = asyncio.Event()

    @property
    def calls(self) -> int:
        """Return how many polls were issued."""
        return len(self.cursors)

    async def get_events(self, subscription: Subscription, *, timeout: float) -> EventBatch:
        """Record the cursor and return (or raise) the next scripted step."""
        self.cursors.append(subscription.last_message)
        self.timeouts.append(timeout)
        if not self._script:
            self.exhausted.set()
            await asyncio.Event().wait()
        step = self._script.popleft()
        await asyncio.sleep(0)
        if isinstance(step, BaseException):
            raise step
        return step


class GatedPoller:
    """Poller stub whose single poll completes only when released."""

    def __init__(self, batch: EventBatch) -> None:
        """Hold *batch* until :attr:`release` is set."""
        self.batch = batch
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def get_events(self, subscription: Subscription, *, timeout: float) -> EventBatch:
        """Signal entry, then wait for release before answering."""
        self.calls += 1
        self.entered.set()
        await self.release.wait()
        return self.batch


class RecordingTelemetrySink:
    """Telemetry sink capturing every signal for assertions."""

    def __init__(self) -> None:
        """Start with no recorded signals."""
        self.events: list[TelemetryEvent] = []
        self.metrics: list[TelemetryMetric] = []

    def record_event(self, event: TelemetryEvent) -> None:
        """Store *event*."""
        self.events.append(event)

    def record_metric(self, metric: TelemetryMetric) -> None:
        """Store *metric*."""
        self.metrics.append(metric)


class MessageCollector:
    """Listener collecting message keys and signalling once enough arrived."""

    def __init__(self, expected: int) -> None:
        """Wait for *expected* messages."""
        self.keys: list[str] = []
        self._expected = expected
        self.done = asyncio.Event()

    def __call__(self, event: object) -> None:
        """Record a single delivered message."""
        assert isinstance(event, Message)
        self.keys.append(event.key)
        if len(self.keys) >= self._expected:
            self.done.set()


@pytest.mark.asyncio
async def test_first_poll_omits_cursor_then_resumes_from_last_key() -> None:
    poller = ScriptedPoller([_batch("m1", "m2"), _batch()])
    subscription = _subscription()
    engine = LongPollEngine(poller, subscription)
    collector = MessageCollector(2)
    engine.add_listener(MESSAGE_EVENT, collector)

    engine.start_listening()
    try:
        await asyncio.wait_for(poller.exhausted.wait(), timeout=1.0)
    finally:
        await engine.close()

    assert poller.cursors == [None, "m2", "m2"]
    assert subscription.last_message == "m2"
    assert collector.keys == ["m1", "m2"]


@pytest.mark.asyncio
async def test_timed_out_poll_keeps_cursor_and_polls_again() -> None:
    poller = ScriptedPoller([EventBatch(messages=(), timed_out=True), _batch("m1")])
    subscription = _subscription()
    telemetry = RecordingTelemetrySink()
    engine = LongPollEngine(poller, subscription, telemetry=telemetry)

    engine.start_listening(timeout=5)
    try:
        await asyncio.wait_for(poller.exhausted.wait(), timeout=1.0)
    finally:
        await engine.close()

    assert poller.cursors == [None, None, "m1"]
    assert poller.timeouts[0] == 5
    metrics = [metric for metric in telemetry.metrics if isinstance(metric, PollMetrics)]
    assert [metric.timed_out for metric in metrics] == [True, False]
    assert [metric.delivered for metric in metrics] == [0, 1]


@pytest.mark.asyncio
async def test_stop_inside_listener_prevents_further_polls() -> None:
    poller = ScriptedPoller([_batch("m1"), _batch("m2")])
    engine = LongPollEngine(poller, _subscription())
    received: list[str] = []
    batches: list[int] = []

    def _stop_on_first(event: object) -> None:
        assert isinstance(event, Message)
        received.append(event.key)
        engine.stop_listening()

    def _count_batch(event: object) -> None:
        assert isinstance(event, Sequence)
        batches.append(len(event))

    engine.add_listener(MESSAGE_EVENT, _stop_on_first)
    engine.add_listener(BATCH_EVENT, _count_batch)
    engine.start_listening()
    await asyncio.wait_for(engine.wait_closed(), timeout=1.0)

    assert poller.calls == 1
    assert received == ["m1"]
    assert batches == [1]
    assert engine.state is EngineState.STOPPED


@pytest.mark.asyncio
async def test_stop_without_poll_in_flight_issues_no_poll() -> None:
    poller = ScriptedPoller([_batch("m1")])
    engine = LongPollEngine(poller, _subscription())

    engine.stop_listening()
    engine.stop_listening()
    await asyncio.sleep(0.01)

    assert poller.calls == 0
    assert engine.state is EngineState.STOPPED
    with pytest.raises(RuntimeError):
        engine.start_listening()


@pytest.mark.asyncio
async def test_outcome_of_in_flight_poll_is_discarded_after_stop() -> None:
    poller = GatedPoller(_batch("m1"))
    subscription = _subscription()
    engine = LongPollEngine(poller, subscription)
    collector = MessageCollector(1)
    engine.add_listener(MESSAGE_EVENT, collector)

    engine.start_listening()
    await asyncio.wait_for(poller.entered.wait(), timeout=1.0)
    engine.stop_listening()
    poller.release.set()
    await asyncio.wait_for(engine.wait_closed(), timeout=1.0)

    assert poller.calls == 1
    assert collector.keys == []
    assert subscription.last_message is None


@pytest.mark.asyncio
async def test_listener_failure_does_not_abort_the_loop() -> None:
    poller = ScriptedPoller([_batch("m1"), _batch("m2")])
    telemetry = RecordingTelemetrySink()
    engine = LongPollEngine(poller, _subscription(), telemetry=telemetry)
    collector = MessageCollector(2)

    async def _explode(event: object) -> None:
        raise ValueError("listener bug")

    engine.add_listener(MESSAGE_EVENT, _explode)
    engine.add_listener(MESSAGE_EVENT, collector)
    engine.start_listening()
    try:
        await asyncio.wait_for(collector.done.wait(), timeout=1.0)
    finally:
        await engine.close()

    assert collector.keys == ["m1", "m2"]
    failures = [event for event in telemetry.events if isinstance(event, ListenerErrorEvent)]
    assert len(failures) == 2
    assert failures[0].error_type == "ValueError"


@pytest.mark.asyncio
async def test_removed_listener_receives_nothing() -> None:
    poller = ScriptedPoller([_batch("m1")])
    engine = LongPollEngine(poller, _subscription())
    removed = MessageCollector(1)
    kept = MessageCollector(1)
    engine.add_listener(MESSAGE_EVENT, removed)
    engine.add_listener(MESSAGE_EVENT, kept)
    engine.remove_listener(MESSAGE_EVENT, removed)

    engine.start_listening()
    try:
        await asyncio.wait_for(kept.done.wait(), timeout=1.0)
    finally:
        await engine.close()

    assert removed.keys == []
    assert kept.keys == ["m1"]


@pytest.mark.asyncio
async def test_pause_policy_waits_for_resume() -> None:
    poller = ScriptedPoller([PollTransportError("connection reset"), _batch("m1")])
    engine = LongPollEngine(poller, _subscription(), ListenerConfig(error_policy="pause"))
    errors: list[object] = []
    errored = asyncio.Event()
    collector = MessageCollector(1)

    def _on_error(event: object) -> None:
        errors.append(event)
        errored.set()

    engine.add_listener(ERROR_EVENT, _on_error)
    engine.add_listener(MESSAGE_EVENT, collector)
    engine.start_listening()
    try:
        await asyncio.wait_for(errored.wait(), timeout=1.0)
        await asyncio.sleep(0.02)
        assert engine.paused is True
        assert engine.state is EngineState.LISTENING
        assert poller.calls == 1

        engine.resume()
        await asyncio.wait_for(collector.done.wait(), timeout=1.0)
    finally:
        await engine.close()

    assert isinstance(errors[0], PollTransportError)
    assert engine.paused is False
    assert collector.keys == ["m1"]


@pytest.mark.asyncio
async def test_resume_from_error_listener_continues_polling() -> None:
    poller = ScriptedPoller([PollTransportError("connection reset"), _batch("m1")])
    engine = LongPollEngine(poller, _subscription())
    collector = MessageCollector(1)
    engine.add_listener(ERROR_EVENT, lambda event: engine.resume())
    engine.add_listener(MESSAGE_EVENT, collector)

    engine.start_listening()
    try:
        await asyncio.wait_for(collector.done.wait(), timeout=1.0)
    finally:
        await engine.close()

    assert poller.calls >= 2


@pytest.mark.asyncio
async def test_stop_while_paused_ends_the_loop() -> None:
    poller = ScriptedPoller([PollTransportError("connection reset"), _batch("m1")])
    engine = LongPollEngine(poller, _subscription())
    errored = asyncio.Event()
    engine.add_listener(ERROR_EVENT, lambda event: errored.set())

    engine.start_listening()
    await asyncio.wait_for(errored.wait(), timeout=1.0)
    engine.stop_listening()
    await asyncio.wait_for(engine.wait_closed(), timeout=1.0)

    assert poller.calls == 1
    assert engine.state is EngineState.STOPPED


@pytest.mark.asyncio
async def test_retry_policy_backs_off_then_continues() -> None:
    poller = ScriptedPoller(
        [PollTransportError("reset"), PollTransportError("reset"), _batch("m1")]
    )
    telemetry = RecordingTelemetrySink()
    config = ListenerConfig(error_policy="retry", initial_backoff=0.01, max_backoff=0.02)
    engine = LongPollEngine(poller, _subscription(), config, telemetry=telemetry)
    collector = MessageCollector(1)
    engine.add_listener(MESSAGE_EVENT, collector)

    engine.start_listening()
    try:
        await asyncio.wait_for(collector.done.wait(), timeout=1.0)
    finally:
        await engine.close()

    errors = [event for event in telemetry.events if isinstance(event, PollErrorEvent)]
    assert [event.retry_in for event in errors] == [0.01, 0.02]
    assert [event.attempt for event in errors] == [1, 2]
    assert engine.snapshot().consecutive_failures == 0


@pytest.mark.asyncio
async def test_retry_budget_exhaustion_pauses_the_loop() -> None:
    poller = ScriptedPoller(
        [PollTransportError("reset"), PollTransportError("reset"), _batch("m1")]
    )
    config = ListenerConfig(
        error_policy="retry", initial_backoff=0.01, max_backoff=0.01, max_retry_attempts=1
    )
    engine = LongPollEngine(poller, _subscription(), config)
    paused_flags: list[bool] = []
    second_error = asyncio.Event()

    def _on_error(event: object) -> None:
        paused_flags.append(engine.paused)
        if len(paused_flags) == 2:
            second_error.set()

    engine.add_listener(ERROR_EVENT, _on_error)
    engine.start_listening()
    try:
        await asyncio.wait_for(second_error.wait(), timeout=1.0)
        await asyncio.sleep(0.02)
        assert poller.calls == 2
    finally:
        await engine.close()

    assert paused_flags == [False, True]


@pytest.mark.asyncio
async def test_stop_during_retry_backoff_ends_the_loop_promptly() -> None:
    poller = ScriptedPoller([PollTransportError("reset"), _batch("m1")])
    config = ListenerConfig(error_policy="retry", initial_backoff=30.0, max_backoff=30.0)
    engine = LongPollEngine(poller, _subscription(), config)
    errored = asyncio.Event()
    engine.add_listener(ERROR_EVENT, lambda event: errored.set())

    engine.start_listening()
    await asyncio.wait_for(errored.wait(), timeout=1.0)
    await asyncio.sleep(0)
    engine.stop_listening()
    await asyncio.wait_for(engine.wait_closed(), timeout=1.0)

    assert poller.calls == 1
    assert engine.state is EngineState.STOPPED


@pytest.mark.asyncio
async def test_stop_from_error_listener_skips_the_retry_backoff() -> None:
    poller = ScriptedPoller([PollTransportError("reset"), _batch("m1")])
    config = ListenerConfig(error_policy="retry", initial_backoff=30.0, max_backoff=30.0)
    engine = LongPollEngine(poller, _subscription(), config)
    engine.add_listener(ERROR_EVENT, lambda event: engine.stop_listening())

    engine.start_listening()
    await asyncio.wait_for(engine.wait_closed(), timeout=1.0)

    assert poller.calls == 1
    assert engine.paused is False


@pytest.mark.asyncio
async def test_unexpected_failure_stops_engine_and_surfaces() -> None:
    poller = ScriptedPoller([RuntimeError("poller bug")])
    engine = LongPollEngine(poller, _subscription())
    errors: list[object] = []
    engine.add_listener(ERROR_EVENT, errors.append)

    engine.start_listening()
    with pytest.raises(RuntimeError, match="poller bug"):
        await asyncio.wait_for(engine.wait_closed(), timeout=1.0)

    assert engine.state is EngineState.STOPPED
    assert isinstance(errors[0], RuntimeError)


@pytest.mark.asyncio
async def test_start_listening_rejects_non_positive_timeout() -> None:
    engine = LongPollEngine(ScriptedPoller([]), _subscription())

    with pytest.raises(ValueError):
        engine.start_listening(timeout=0)

    assert engine.state is EngineState.IDLE


@pytest.mark.asyncio
async def test_snapshot_reports_progress() -> None:
    poller = ScriptedPoller([_batch("m1", "m2"), _batch("m3")])
    engine = LongPollEngine(poller, _subscription())

    assert engine.snapshot().state is EngineState.IDLE
    engine.start_listening()
    try:
        await asyncio.wait_for(poller.exhausted.wait(), timeout=1.0)
        snapshot = engine.snapshot()
    finally:
        await engine.close()

    assert snapshot.subscription == "updates"
    assert snapshot.state is EngineState.LISTENING
    assert snapshot.cursor == "m3"
    assert snapshot.polls == 2
    assert snapshot.delivered == 3
    assert snapshot.last_message_at is not None
    assert engine.snapshot().state is EngineState.STOPPED


class CursorMovingPoller:
    """Poller stub that advances the cursor behind the caller's back."""

    async def get_events(self, subscription: Subscription, *, timeout: float) -> EventBatch:
        """Simulate a concurrent poll moving the cursor, then return older messages."""
        subscription.last_message = "m5"
        return _batch("m1", "m2")


@pytest.mark.asyncio
async def test_poll_once_never_moves_cursor_backwards() -> None:
    subscription = _subscription()

    batch = await poll_once(CursorMovingPoller(), subscription, timeout=1)

    assert batch.messages == ()
    assert subscription.last_message == "m5"


@pytest.mark.asyncio
async def test_poll_once_advances_cursor() -> None:
    subscription = _subscription()

    batch = await poll_once(ScriptedPoller([_batch("m1", "m2")]), subscription, timeout=1)

    assert [message.key for message in batch.messages] == ["m1", "m2"]
    assert subscription.last_message == "m2"
