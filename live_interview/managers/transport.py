"""
Websocket client for the Gemini Live ``BidiGenerateContent`` endpoint.

One client serves one session. Outbound messages are queued and written by a
single writer task so that callers (including the audio callback path) never
block on the socket. Inbound frames are parsed and handed to ``on_message``
strictly in arrival order by a single reader task.
"""
import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Optional

import structlog
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..core.exceptions import SetupTimeout, TransportError
from ..core.interfaces import LiveSocket
from ..core.logging import redact_key
from . import messages
from .messages import ServerError, ServerEvent, SetupComplete
from .prompts import NEXT_RESPONSE_PROMPT, build_system_instruction

logger = structlog.get_logger(__name__)

CLOSED_BEFORE_START = "Connection closed before interview could start. Please try again."

Connector = Callable[[str], Awaitable[LiveSocket]]


async def open_websocket(url: str) -> LiveSocket:
    return await websockets.connect(url, max_size=None, ping_interval=20, ping_timeout=20)


class LiveTransportClient:
    def __init__(
        self,
        credentials,
        endpoint: str,
        model: str,
        setup_timeout: float = 15.0,
        input_sample_rate: int = 16000,
        connector: Optional[Connector] = None,
        clock: Callable[[], float] = time.monotonic,
        drain_timeout: float = 0.5,
    ):
        self.credentials = credentials
        self.endpoint = endpoint
        self.model = model
        self.setup_timeout = setup_timeout
        self.input_sample_rate = input_sample_rate
        self.connector = connector or open_websocket
        self.clock = clock
        self.drain_timeout = drain_timeout

        self.on_open: Optional[Callable[[], Any]] = None
        self.on_message: Optional[Callable[[ServerEvent], Any]] = None
        self.on_error: Optional[Callable[[str], Any]] = None
        self.on_close: Optional[Callable[[], Any]] = None

        self.session_started_at: Optional[float] = None
        self._socket: Optional[LiveSocket] = None
        self._outbox: Optional[asyncio.Queue] = None
        self._reader: Optional[asyncio.Task] = None
        self._writer: Optional[asyncio.Task] = None
        self._setup_ack: Optional[asyncio.Future] = None
        self._handler_tasks: set[asyncio.Task] = set()
        self._closing = False
        self._close_notified = False
        self._error_reported = False
        self._stream_ended = False

    def set_handlers(self, on_open=None, on_message=None, on_error=None, on_close=None) -> None:
        self.on_open = on_open
        self.on_message = on_message
        self.on_error = on_error
        self.on_close = on_close

    @property
    def is_open(self) -> bool:
        return self._socket is not None and not self._closing

    async def connect(self, config) -> None:
        """Open the socket, send ``setup`` and wait for the server to acknowledge it."""
        api_key = self.credentials.consume()
        url = f"{self.endpoint}?key={api_key}"
        logger.info("live_socket_connecting", endpoint=self.endpoint, key=redact_key(api_key), model=self.model)

        loop = asyncio.get_running_loop()
        started = self.clock()
        try:
            self._socket = await asyncio.wait_for(self.connector(url), timeout=self.setup_timeout)
        except asyncio.TimeoutError as e:
            logger.error("live_socket_open_timeout", timeout=self.setup_timeout)
            raise SetupTimeout() from e
        except (OSError, WebSocketException) as e:
            logger.error("live_socket_open_failed", error=str(e))
            raise TransportError(f"Connection error: {e}") from e

        self._setup_ack = loop.create_future()
        self._outbox = asyncio.Queue()
        self._writer = asyncio.ensure_future(self._write_loop(self._socket))
        self._reader = asyncio.ensure_future(self._read_loop(self._socket))

        setup = messages.build_setup(self.model, config.voice, build_system_instruction(config))
        self._enqueue(messages.encode(setup), audio=False)
        logger.debug("setup_message_queued", voice=config.voice, questions=len(config.all_questions))

        remaining = max(self.setup_timeout - (self.clock() - started), 0.0)
        try:
            await asyncio.wait_for(asyncio.shield(self._setup_ack), timeout=remaining)
        except asyncio.TimeoutError as e:
            logger.error("setup_ack_timeout", timeout=self.setup_timeout)
            await self.disconnect()
            raise SetupTimeout() from e
        except asyncio.CancelledError:
            if self._closing:
                raise TransportError(CLOSED_BEFORE_START)
            raise
        except TransportError:
            await self.disconnect()
            raise

        self.session_started_at = self.clock()
        logger.info("live_session_open", setup_seconds=round(self.session_started_at - started, 3))
        self._invoke(self.on_open)

    def _enqueue(self, payload: str, audio: bool) -> None:
        self._outbox.put_nowait((payload, audio))

    async def _write_loop(self, socket: LiveSocket) -> None:
        while True:
            payload, audio = await self._outbox.get()
            try:
                await socket.send(payload)
            except (ConnectionClosed, OSError, WebSocketException) as e:
                if audio:
                    logger.debug("audio_frame_dropped", error=str(e))
                else:
                    logger.error("live_socket_send_failed", error=str(e))
                    self._report_error(f"Send failed: {e}")
            finally:
                self._outbox.task_done()

    async def _read_loop(self, socket: LiveSocket) -> None:
        try:
            while True:
                raw = await socket.recv()
                for event in messages.parse_server_message(raw):
                    if isinstance(event, SetupComplete) and not self._setup_ack.done():
                        self._setup_ack.set_result(True)
                    await self._deliver(event)
                    if isinstance(event, ServerError):
                        self._abort_setup(f"Connection error: {event.message}")
                        self._report_error(event.message)
        except ConnectionClosed as e:
            if self._closing:
                return
            code = e.rcvd.code if e.rcvd is not None else None
            reason = f"Connection closed ({code})" if code else "Connection closed"
            logger.warning("live_socket_closed", reason=reason)
            self._abort_setup(CLOSED_BEFORE_START)
            self._report_error(reason)
        except (OSError, WebSocketException) as e:
            logger.error("live_socket_read_failed", error=str(e))
            self._abort_setup(f"Connection error: {e}")
            self._report_error(str(e))

    async def _deliver(self, event: ServerEvent) -> None:
        if self.on_message is None:
            return
        try:
            result = self.on_message(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("message_handler_failed", event=type(event).__name__)

    def _abort_setup(self, message: str) -> None:
        if self._setup_ack is not None and not self._setup_ack.done():
            self._setup_ack.set_exception(TransportError(message))

    def _report_error(self, reason: str) -> None:
        if self._error_reported:
            return
        self._error_reported = True
        logger.error("live_transport_error", reason=reason)
        self._invoke(self.on_error, reason)

    def _invoke(self, handler, *args) -> None:
        if handler is None:
            return
        result = handler(*args)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)

    def send_audio(self, pcm: bytes) -> bool:
        if not self.is_open:
            logger.debug("audio_frame_dropped", reason="socket not open")
            return False
        self._stream_ended = False
        self._enqueue(messages.encode(messages.build_audio(pcm, self.input_sample_rate)), audio=True)
        return True

    def send_audio_stream_end(self) -> bool:
        if not self.is_open:
            logger.debug("audio_stream_end_skipped", reason="socket not open")
            return False
        if self._stream_ended:
            logger.debug("audio_stream_end_skipped", reason="already ended")
            return False
        self._stream_ended = True
        self._enqueue(messages.encode(messages.build_audio_stream_end()), audio=False)
        logger.info("audio_stream_end_sent")
        return True

    def send_text(self, text: str) -> bool:
        if not self.is_open:
            logger.warning("text_dropped", reason="socket not open")
            return False
        self._enqueue(messages.encode(messages.build_client_text(text)), audio=False)
        logger.info("client_text_sent", chars=len(text))
        return True

    def trigger_next_response(self) -> bool:
        logger.info("next_response_requested")
        return self.send_text(NEXT_RESPONSE_PROMPT)

    async def disconnect(self) -> None:
        """Close the socket and stop the reader and writer. Safe to call repeatedly."""
        if self._socket is None and self._close_notified:
            return
        socket, self._socket = self._socket, None
        if socket is not None and self._outbox is not None and self._writer is not None and not self._closing:
            # Give queued control messages a chance to reach the server.
            try:
                await asyncio.wait_for(self._outbox.join(), timeout=self.drain_timeout)
            except asyncio.TimeoutError:
                logger.debug("outbox_not_drained", pending=self._outbox.qsize())
        self._closing = True

        current = asyncio.current_task()
        tasks = [t for t in (self._reader, self._writer) if t is not None and t is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._reader = self._writer = None

        if self._setup_ack is not None and not self._setup_ack.done():
            self._setup_ack.cancel()

        if socket is not None:
            try:
                await socket.close()
            except (ConnectionClosed, OSError, WebSocketException) as e:
                logger.debug("live_socket_close_failed", error=str(e))
            logger.info("live_socket_closed_by_client")

        if not self._close_notified:
            self._close_notified = True
            self._invoke(self.on_close)

