"""
Transport layer: one physical duplex connection.

A Transport knows nothing about topics or batching. It reports
open / message / close / error through TransportCallbacks and offers a
raw-send primitive. WebSocketTransport is the production implementation.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

import websockets

from .errors import TransportError
from .types import CloseCode


logger = logging.getLogger("tradefeed.transport")

# Client close handshakes still in flight
_close_tasks: set = set()


@dataclass
class TransportCallbacks:
    """Callbacks a transport invokes on the event loop."""
    on_open: Optional[Callable[[], None]] = None
    on_message: Optional[Callable[[str | bytes], None]] = None
    on_close: Optional[Callable[[int, str], None]] = None
    on_error: Optional[Callable[[TransportError], None]] = None


def encode_envelope(envelope: dict) -> str:
    """Serialize a wire envelope to compact JSON."""
    return json.dumps(envelope, separators=(",", ":"))


class Transport(ABC):
    """
    Base class for a single-use duplex connection.

    Each instance is opened at most once; reconnecting means building a
    new transport. `on_close` fires at most once per instance.
    """

    def __init__(self, url: str, callbacks: Optional[TransportCallbacks] = None):
        self.url = url
        self.callbacks = callbacks or TransportCallbacks()
        self._is_open = False
        self._close_emitted = False

    @property
    def is_open(self) -> bool:
        return self._is_open

    @abstractmethod
    def open(self) -> None:
        """Start connecting. Completion is reported via on_open / on_close."""

    @abstractmethod
    def close(self, code: int = CloseCode.NORMAL, reason: str = "") -> None:
        """Close the connection. Safe to call more than once."""

    @abstractmethod
    def send_raw(self, data: str) -> bool:
        """Write one text frame. Returns False if the transport cannot send."""

    def send(self, envelope: dict) -> bool:
        """
        Serialize and send an envelope.

        Returns:
            True if handed to the socket, False otherwise
        """
        try:
            text = encode_envelope(envelope)
        except (TypeError, ValueError) as e:
            logger.error(f"Cannot encode {envelope.get('type')} envelope: {e}")
            return False
        return self.send_raw(text)

    # -------------------------------------------------------------------------
    # Event emission
    # -------------------------------------------------------------------------

    def _emit_open(self) -> None:
        self._is_open = True
        self._invoke("on_open")

    def _emit_message(self, raw: str | bytes) -> None:
        self._invoke("on_message", raw)

    def _emit_error(self, error: TransportError) -> None:
        self._invoke("on_error", error)

    def _emit_close(self, code: int, reason: str) -> None:
        self._is_open = False
        if self._close_emitted:
            return
        self._close_emitted = True
        self._invoke("on_close", code, reason)

    def _invoke(self, name: str, *args: Any) -> None:
        callback = getattr(self.callbacks, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Error in transport {name} handler: {e}", exc_info=True)


class WebSocketTransport(Transport):
    """
    Transport over a WebSocket client connection.

    A reader task owns the socket and emits events; a writer task drains
    a FIFO outbox so synchronous `send_raw` calls keep their order.
    """

    def __init__(
        self,
        url: str,
        callbacks: Optional[TransportCallbacks] = None,
        open_timeout: float = 10.0,
        close_timeout: float = 10.0,
        max_message_size: Optional[int] = 10 * 1024 * 1024,
        connect: Optional[Callable[..., Any]] = None
    ):
        """
        Args:
            url: ws:// or wss:// endpoint
            callbacks: Event callbacks
            open_timeout: Handshake timeout in seconds
            close_timeout: Closing handshake timeout in seconds
            max_message_size: Largest accepted inbound frame in bytes
            connect: Connection factory (defaults to websockets.connect)
        """
        super().__init__(url, callbacks)
        self.open_timeout = open_timeout
        self.close_timeout = close_timeout
        self.max_message_size = max_message_size
        self._connect = connect or websockets.connect

        self._ws: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._writer: Optional[asyncio.Task] = None
        self._closer: Optional[asyncio.Task] = None
        self._outbox: Optional[asyncio.Queue] = None
        self._closing = False

    def open(self) -> None:
        if self._reader is not None:
            raise TransportError("transport already opened")
        loop = asyncio.get_running_loop()
        self._outbox = asyncio.Queue()
        self._reader = loop.create_task(self._run())

    def close(self, code: int = CloseCode.NORMAL, reason: str = "") -> None:
        if self._closing:
            return
        self._closing = True
        self._is_open = False

        if self._ws is not None:
            self._closer = asyncio.get_running_loop().create_task(self._close_socket(code, reason))
            _close_tasks.add(self._closer)
            self._closer.add_done_callback(_close_tasks.discard)
        elif self._reader is not None and not self._reader.done():
            # Still handshaking
            self._reader.cancel()

    def send_raw(self, data: str) -> bool:
        if self._ws is None or self._closing or self._outbox is None:
            logger.debug("Cannot send - transport not open")
            return False
        self._outbox.put_nowait(data)
        return True

    async def _close_socket(self, code: int, reason: str) -> None:
        try:
            await self._ws.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Error closing websocket: {e}")

    async def _run(self) -> None:
        """Connect, then read until the socket closes."""
        try:
            ws = await asyncio.wait_for(
                self._connect(
                    self.url,
                    max_size=self.max_message_size,
                    close_timeout=self.close_timeout
                ),
                timeout=self.open_timeout
            )
        except asyncio.CancelledError:
            self._emit_close(CloseCode.NORMAL, "closed by client")
            raise
        except Exception as e:
            logger.warning(f"Failed to open {self.url}: {e!r}")
            self._emit_error(TransportError(f"open failed: {e!r}", code=CloseCode.ABNORMAL))
            self._emit_close(CloseCode.ABNORMAL, str(e))
            return

        self._ws = ws
        if self._closing:
            await self._close_socket(CloseCode.NORMAL, "closed by client")
            self._emit_close(CloseCode.NORMAL, "closed by client")
            return

        self._writer = asyncio.get_running_loop().create_task(self._write_loop(ws))
        logger.info(f"Connected to {self.url}")
        self._emit_open()

        code, reason = CloseCode.ABNORMAL, ""
        try:
            async for raw in ws:
                self._emit_message(raw)
            code = getattr(ws, "close_code", None) or CloseCode.NORMAL
            reason = getattr(ws, "close_reason", None) or ""
        except asyncio.CancelledError:
            raise
        except websockets.ConnectionClosed as e:
            code = getattr(ws, "close_code", None) or CloseCode.ABNORMAL
            reason = getattr(ws, "close_reason", None) or str(e)
        except Exception as e:
            logger.error(f"Read failed on {self.url}: {e!r}")
            self._emit_error(TransportError(f"read failed: {e!r}"))
        finally:
            if self._writer is not None:
                self._writer.cancel()
            self._emit_close(code, reason)

        logger.info(f"Disconnected from {self.url}: {code} {reason}".rstrip())

        if self._closer is not None:
            await self._closer

    async def _write_loop(self, ws: Any) -> None:
        """Send queued frames in order."""
        while True:
            data = await self._outbox.get()
            try:
                await ws.send(data)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Write failed on {self.url}: {e!r}")
                self._emit_error(TransportError(f"write failed: {e!r}"))
                return


TransportFactory = Callable[[str, TransportCallbacks], Transport]


def websocket_transport_factory(
    open_timeout: float = 10.0,
    close_timeout: float = 10.0,
    max_message_size: Optional[int] = 10 * 1024 * 1024
) -> TransportFactory:
    """Build a factory producing configured WebSocketTransports."""
    def factory(url: str, callbacks: TransportCallbacks) -> Transport:
        return WebSocketTransport(
            url,
            callbacks,
            open_timeout=open_timeout,
            close_timeout=close_timeout,
            max_message_size=max_message_size
        )
    return factory
