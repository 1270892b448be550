"""Firehose client for the AT Protocol event stream.

Keeps one WebSocket connection to a relay, decodes frames strictly in the
order they arrive, tracks the sequence cursor, and resumes from the last
accepted sequence when the transport drops.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import WebSocketException

from atstream.firehose.errors import (
    FatalStreamError,
    FirehoseConnectionError,
    FirehoseError,
    FirehoseStateError,
    FrameDecodeError,
    FutureCursorError,
    MalformedHeaderError,
    RetriesExhaustedError,
)
from atstream.firehose.frames import decode_frame
from atstream.firehose.models import (
    DEFAULT_RELAY_URL,
    SUBSCRIBE_REPOS_NSID,
    ConnectionStatus,
    ErrorMessage,
    FirehoseMessage,
    InfoMessage,
    StreamSession,
    message_sequence,
)
from atstream.firehose.recovery import GapRecoveryCoordinator
from atstream.firehose.sequence import SequenceTracker, SequenceVerdict

logger = logging.getLogger(__name__)

# Anything that means the transport could not be opened or has gone away
_TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)

# Takes the stream URL, returns an open connection with recv/close/ping
Connector = Callable[[str], Awaitable[Any]]


def build_stream_url(
    relay_url: str,
    endpoint: str = SUBSCRIBE_REPOS_NSID,
    cursor: Optional[int] = None,
) -> str:
    """Build the subscription URL, e.g. ``wss://bsky.network/xrpc/<nsid>?cursor=5``."""
    url = f"{relay_url.rstrip('/')}/xrpc/{endpoint}"
    if cursor is not None:
        url = f"{url}?{urlencode({'cursor': cursor})}"
    return url


@dataclass(frozen=True)
class StreamEvent:
    """One item on the consumer event stream.

    Carries either a decoded ``message`` (with the tracker's ``verdict`` for
    sequenced messages) or an ``error``. A fatal error is always the last
    event of a stream.
    """
    message: Optional[FirehoseMessage] = None
    verdict: Optional[SequenceVerdict] = None
    error: Optional[FirehoseError] = None

    @property
    def is_fatal(self) -> bool:
        return isinstance(self.error, FatalStreamError)

    @property
    def sequence(self) -> Optional[int]:
        return message_sequence(self.message) if self.message is not None else None


class FirehoseClient:
    """Streaming client for ``com.atproto.sync.subscribeRepos``.

    The receive loop runs as its own asyncio task. Decode errors and
    out-of-order sequences are delivered as events and never stop the
    stream; only a future-cursor rejection or exhausted reconnects do.

    Example:
        async with FirehoseClient() as client:
            await client.connect(cursor=saved_cursor)
            async for event in client:
                if event.message is not None:
                    handle(event.message)
                saved_cursor = client.last_sequence
    """

    def __init__(
        self,
        relay_url: str = DEFAULT_RELAY_URL,
        endpoint: str = SUBSCRIBE_REPOS_NSID,
        *,
        max_retries: int = 5,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        ping_interval: Optional[float] = 20.0,
        ping_timeout: Optional[float] = 20.0,
        max_frame_size: Optional[int] = 10_000_000,
        connector: Optional[Connector] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """Initialize the client. Nothing connects until ``connect()``.

        Args:
            relay_url: Relay base URL, starting with ``wss://``
            endpoint: NSID of the subscription endpoint
            max_retries: Reconnect attempts per outage before giving up
            backoff_base: First reconnect delay in seconds; doubles per attempt
            backoff_max: Cap on any reconnect delay
            ping_interval: WebSocket keepalive interval, None to disable
            ping_timeout: Seconds to wait for a keepalive pong
            max_frame_size: Largest accepted frame in bytes
            connector: Replaces ``websockets.connect`` (used by tests)
            sleep: Replaces ``asyncio.sleep`` for the backoff delay
        """
        self._session = StreamSession(relay_url=relay_url.rstrip("/"), endpoint=endpoint)
        self._tracker = SequenceTracker()
        self._recovery = GapRecoveryCoordinator(
            max_retries=max_retries,
            base_delay=backoff_base,
            max_delay=backoff_max,
            sleep=sleep,
        )
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.max_frame_size = max_frame_size
        self._connector: Connector = connector or self._open_websocket

        self._ws: Any = None
        self._receive_task: Optional[asyncio.Task] = None
        self._commands = asyncio.Lock()
        self._closed_by_caller = False

        # None on the queue marks the end of a stream
        self._events: asyncio.Queue[Optional[StreamEvent]] = asyncio.Queue()
        self._stream_finished = False

    @classmethod
    def from_settings(cls, settings: Any, **kwargs: Any) -> "FirehoseClient":
        """Create a client from ``atstream.settings.Settings``."""
        return cls(
            settings.relay_url,
            settings.endpoint,
            max_retries=settings.max_retries,
            backoff_base=settings.backoff_base,
            backoff_max=settings.backoff_max,
            ping_interval=settings.ping_interval,
            ping_timeout=settings.ping_timeout,
            max_frame_size=settings.max_frame_size,
            **kwargs,
        )

    # --- Read-only views ---

    @property
    def session(self) -> StreamSession:
        """A copy of the current session state."""
        return dataclasses.replace(self._session)

    @property
    def status(self) -> ConnectionStatus:
        return self._session.status

    @property
    def last_sequence(self) -> Optional[int]:
        return self._session.last_sequence

    # --- Commands ---

    async def connect(self, cursor: Optional[int] = None) -> None:
        """Open a new stream session.

        The relay decides how to resume: a cursor inside its rollback window
        replays missed messages, an outdated cursor yields an
        ``OutdatedCursor`` info message, a future cursor ends the stream
        with ``FutureCursorError``, and no cursor (or 0) starts from the
        oldest retained message.

        Args:
            cursor: Last sequence already processed, or None

        Raises:
            FirehoseStateError: The client is not disconnected.
            FirehoseConnectionError: The handshake failed.
        """
        async with self._commands:
            if self._session.status is not ConnectionStatus.DISCONNECTED:
                raise FirehoseStateError(
                    f"Cannot connect while {self._session.status.value}"
                )
            self._closed_by_caller = False
            self._tracker = SequenceTracker()
            self._recovery.reset()
            self._session.cursor = cursor
            self._session.last_sequence = None
            self._session.status = ConnectionStatus.CONNECTING

            try:
                self._ws = await self._open(cursor)
            except _TRANSPORT_ERRORS as e:
                self._session.status = ConnectionStatus.DISCONNECTED
                raise FirehoseConnectionError(
                    f"Could not connect to {self._session.relay_url}: {e}"
                ) from e
            self._start_receiving()

    async def disconnect(self, code: int = 1000, reason: str = "") -> None:
        """Close the stream. Safe to call repeatedly.

        No event is delivered after this returns and no reconnect follows.
        """
        async with self._commands:
            self._closed_by_caller = True
            if (
                self._session.status is ConnectionStatus.DISCONNECTED
                and self._ws is None
                and (self._receive_task is None or self._receive_task.done())
            ):
                self._receive_task = None
                # ends iteration on a client that never connected
                self._close_stream()
                return

            logger.info(f"Disconnecting from {self._session.relay_url} (code {code})")
            await self._stop_receiving()
            await self._close_transport(code, reason)
            self._session.status = ConnectionStatus.DISCONNECTED
            self._close_stream(discard_pending=True)

    async def reconnect(self, cursor: Optional[int] = None) -> None:
        """Replace the transport and resume the same session.

        Resumes from ``cursor`` when given, otherwise from the last accepted
        sequence. Not allowed once the caller has disconnected.

        Raises:
            FirehoseStateError: ``disconnect()`` was called.
            FirehoseConnectionError: The handshake failed.
        """
        async with self._commands:
            if self._closed_by_caller:
                raise FirehoseStateError(
                    "Client was disconnected by the caller; use connect()"
                )
            await self._stop_receiving()
            await self._close_transport(1000, "reconnecting")

            if cursor is not None:
                # the relay replays everything after an explicit cursor
                self._tracker.reset(cursor)
                self._session.last_sequence = cursor
            resume = self._resume_cursor()
            self._session.cursor = resume
            self._session.status = ConnectionStatus.RECONNECTING

            try:
                self._ws = await self._open(resume)
            except _TRANSPORT_ERRORS as e:
                self._session.status = ConnectionStatus.DISCONNECTED
                self._close_stream()
                raise FirehoseConnectionError(
                    f"Could not reconnect to {self._session.relay_url}: {e}"
                ) from e
            self._recovery.reset()
            self._start_receiving()

    async def ping(self) -> float:
        """Ping the relay and return the round trip in seconds."""
        ws = self._ws
        if ws is None or self._session.status is not ConnectionStatus.CONNECTED:
            raise FirehoseStateError("Not connected")
        loop = asyncio.get_running_loop()
        started = loop.time()
        pong_waiter = await ws.ping()
        await pong_waiter
        return loop.time() - started

    # --- Event surface ---

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield stream events until the stream is closed."""
        queue = self._events
        while True:
            event = await queue.get()
            if event is None:
                # leave the end marker for any other reader
                queue.put_nowait(None)
                return
            yield event

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self.events()

    async def __aenter__(self) -> "FirehoseClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    # --- Transport ---

    async def _open_websocket(self, url: str) -> Any:
        return await websockets.connect(
            url,
            max_size=self.max_frame_size,
            ping_interval=self.ping_interval,
            ping_timeout=self.ping_timeout,
        )

    async def _open(self, cursor: Optional[int]) -> Any:
        url = build_stream_url(self._session.relay_url, self._session.endpoint, cursor)
        logger.info(f"Connecting to {url}")
        return await self._connector(url)

    async def _close_transport(self, code: int, reason: str) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await ws.close(code=code, reason=reason)
        except _TRANSPORT_ERRORS as e:
            logger.debug(f"Error while closing transport: {e}")

    def _resume_cursor(self) -> Optional[int]:
        """Last accepted sequence, or the session cursor if none was accepted."""
        last = self._tracker.current_cursor()
        return last if last is not None else self._session.cursor

    # --- Receive loop ---

    def _start_receiving(self) -> None:
        if self._stream_finished:
            self._events = asyncio.Queue()
            self._stream_finished = False
        self._session.status = ConnectionStatus.CONNECTED
        self._receive_task = asyncio.create_task(self._receive_loop())

    async def _stop_receiving(self) -> None:
        task, self._receive_task = self._receive_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _emit(self, event: StreamEvent) -> None:
        self._events.put_nowait(event)

    def _close_stream(self, discard_pending: bool = False) -> None:
        if self._stream_finished:
            return
        if discard_pending:
            while not self._events.empty():
                self._events.get_nowait()
        self._stream_finished = True
        self._events.put_nowait(None)

    async def _receive_loop(self) -> None:
        fatal: Optional[FatalStreamError] = None
        try:
            while fatal is None:
                try:
                    data = await self._ws.recv()
                except _TRANSPORT_ERRORS as e:
                    logger.warning(f"Stream transport dropped: {e}")
                    fatal = await self._recover()
                    continue
                if self._recovery.attempts:
                    # the outage is over only once the new connection delivers
                    self._recovery.reset()
                fatal = self._handle_frame(data)
        except Exception as e:
            logger.exception("Firehose receive loop failed")
            fatal = FatalStreamError(f"Receive loop failed: {e}")

        logger.error(f"Firehose stream ended: {fatal.message}")
        self._emit(StreamEvent(error=fatal))
        await self._close_transport(1000, "")
        self._session.status = ConnectionStatus.DISCONNECTED
        self._close_stream()

    def _handle_frame(self, data: Any) -> Optional[FatalStreamError]:
        """Decode one frame and deliver it. Returns a fatal error, if any."""
        try:
            if not isinstance(data, (bytes, bytearray)):
                raise MalformedHeaderError("Received a text frame; expected binary")
            message = decode_frame(bytes(data))
        except FrameDecodeError as e:
            logger.warning(f"Skipping undecodable frame: {e.message}")
            self._emit(StreamEvent(error=e))
            return None

        if message is None:
            logger.debug("Discarding frame with unknown op")
            return None

        verdict: Optional[SequenceVerdict] = None
        sequence = message_sequence(message)
        if sequence is not None:
            verdict = self._tracker.observe(sequence)
            self._session.last_sequence = self._tracker.current_cursor()
            if verdict.warning is not None:
                logger.warning(verdict.warning.message)
        elif isinstance(message, InfoMessage) and message.is_outdated_cursor:
            logger.warning(
                f"Cursor {self._session.cursor} is outside the relay's rollback "
                f"window; resuming from its oldest message"
            )

        self._emit(StreamEvent(message=message, verdict=verdict))

        if isinstance(message, ErrorMessage):
            logger.warning(f"Relay sent error {message.error}: {message.message}")
            if message.is_future_cursor:
                return FutureCursorError(message.message, cursor=self._session.cursor)
        return None

    async def _recover(self) -> Optional[FatalStreamError]:
        """Reconnect from the last accepted sequence.

        Returns:
            None once reconnected, or the error when retries run out
        """
        self._session.status = ConnectionStatus.RECONNECTING
        await self._close_transport(1001, "reconnecting")

        while True:
            try:
                plan = self._recovery.recover(self._resume_cursor())
            except RetriesExhaustedError as e:
                return e

            self._session.cursor = plan.cursor
            await self._recovery.wait(plan)
            try:
                self._ws = await self._open(plan.cursor)
            except _TRANSPORT_ERRORS as e:
                logger.warning(f"Reconnect attempt {plan.attempt} failed: {e}")
                continue

            self._session.status = ConnectionStatus.CONNECTED
            logger.info(f"Reconnected, resuming after sequence {plan.cursor}")
            return None
