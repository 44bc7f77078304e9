"""Session manager coordinating a single shared Spire session."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from .auth import SessionBackend
from .config import Credentials
from .discovery import DiscoveryClient
from .errors import MissingCredentialError, SessionCreationError
from .models import Session
from .telemetry import NullTelemetrySink, SessionEstablishedEvent, TelemetrySink

logger = logging.getLogger(__name__)

T = TypeVar("T")
ResultT = TypeVar("ResultT")

SessionOperation = Callable[[Session], Awaitable[T]]


@dataclass(slots=True)
class PendingOperation(Generic[ResultT]):
    """An operation deferred until a session exists, plus the future awaiting it."""

    operation: Callable[[Session], Awaitable[ResultT]]
    future: asyncio.Future[ResultT]


async def _identity(session: Session) -> Session:
    return session


class SessionManager:
    """Owns the active session and serialises session creation.

    Operations submitted while no session exists are queued FIFO; exactly one
    connection task runs at a time and replays the queue, in submission order,
    once the session is available. Failures are delivered to every queued
    operation and are never retried here. Shutdown cancels both the connection
    and an unfinished replay.
    """

    def __init__(
        self,
        discovery: DiscoveryClient,
        backend: SessionBackend,
        credentials: Credentials | None = None,
        *,
        telemetry: TelemetrySink | None = None,
    ) -> None:
        """Create a manager that opens sessions via *backend* using *credentials*."""
        self._discovery = discovery
        self._backend = backend
        self._credentials = credentials
        self._telemetry = telemetry or NullTelemetrySink()
        self._session: Session | None = None
        self._queue: deque[PendingOperation[Any]] = deque()
        self._connecting = False
        self._generation = 0
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def session(self) -> Session | None:
        """Return the active session, if any."""
        return self._session

    @property
    def is_connecting(self) -> bool:
        """Return ``True`` while a session-creation attempt is in flight."""
        return self._connecting

    @property
    def pending(self) -> int:
        """Return the number of operations waiting for a session."""
        return len(self._queue)

    async def connect(self) -> Session:
        """Return the active session, creating it when necessary."""
        return await self.submit(_identity)

    async def submit(self, operation: SessionOperation[T]) -> T:
        """Run *operation* with the session, deferring it while one is being created."""
        if self._session is not None:
            return await operation(self._session)
        if self._credentials is None:
            raise MissingCredentialError(
                "You need an account key or secret to do that; "
                "pass Credentials(key=...) or set SPIRE_KEY"
            )
        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._queue.append(PendingOperation(operation, future))
        if not self._connecting:
            logger.debug("No Spire session; starting connection")
            self._start_connection()
        else:
            logger.debug("Connection in progress; queued operation (%d pending)", len(self._queue))
        return await future

    async def close(self) -> None:
        """Forget the active session and its cached channels and subscriptions."""
        if self._session is None:
            return
        logger.info("Closing Spire session %s", self._session.url)
        self._session = None

    async def reauthenticate(self, credentials: Credentials) -> None:
        """Use *credentials* for the next session and drop the current one.

        A connection already in flight with the previous credentials discards
        whatever session it obtains and reconnects with *credentials*.
        """
        self._credentials = credentials
        self._generation += 1
        await self.close()

    async def shutdown(self) -> None:
        """Cancel connection and replay tasks, fail queued operations, drop the session."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._connecting = False
        self._fail_pending(SessionCreationError("Session manager shut down"))
        await self.close()

    def _start_connection(self) -> None:
        self._connecting = True
        task = asyncio.create_task(self._establish())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _establish(self) -> None:
        try:
            session = await self._open_session()
        except asyncio.CancelledError:
            self._connecting = False
            self._fail_pending(SessionCreationError("Session creation was cancelled"))
            raise
        except Exception as exc:
            self._connecting = False
            logger.warning("Spire connection failed: %s", exc)
            self._fail_pending(exc)
            return

        self._session = session
        self._connecting = False
        queued = len(self._queue)
        logger.info(
            "Spire session established at %s; replaying %d operation(s)", session.url, queued
        )
        self._telemetry.record_event(
            SessionEstablishedEvent(session_url=session.url, replayed=queued)
        )
        try:
            await self._drain(session)
        except asyncio.CancelledError:
            self._fail_pending(SessionCreationError("Session replay was cancelled"))
            raise
        if self._queue and self._session is None and not self._connecting:
            logger.debug(
                "Session dropped during replay; reconnecting for %d operation(s)", len(self._queue)
            )
            self._start_connection()

    async def _open_session(self) -> Session:
        while True:
            generation = self._generation
            credentials = self._credentials
            if credentials is None:
                raise MissingCredentialError("Credentials were cleared before connecting")
            descriptor = await self._discovery.describe()
            session = await self._backend.create_session(descriptor, credentials)
            if generation == self._generation:
                return session
            logger.info("Credentials changed while connecting; discarding session %s", session.url)

    async def _drain(self, session: Session) -> None:
        while self._queue and self._session is session:
            entry = self._queue.popleft()
            if entry.future.done():
                continue
            try:
                result = await entry.operation(session)
            except asyncio.CancelledError:
                if not entry.future.done():
                    entry.future.set_exception(SessionCreationError("Session replay was cancelled"))
                raise
            except Exception as exc:
                if not entry.future.done():
                    entry.future.set_exception(exc)
            else:
                if not entry.future.done():
                    entry.future.set_result(result)

    def _fail_pending(self, exc: BaseException) -> None:
        while self._queue:
            entry = self._queue.popleft()
            if not entry.future.done():
                entry.future.set_exception(exc)
