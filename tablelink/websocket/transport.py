"""
Transport module wrapping a single full-duplex socket connection.

This module provides:
- TransportSocket, the small interface the ConnectionManager drives: open,
  send a text frame, close, and report open/message/close/error back
  through bound callbacks
- WebSocketTransport, the production implementation on top of the
  ``websockets`` library

A transport instance is used for exactly one connection attempt. The
manager creates a new one for every attempt and unbinds the old one before
closing it, so callbacks never arrive from a transport it has discarded.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed

from tablelink.exceptions import TransportError
from tablelink.utils.logger import get_logger

log = get_logger(__name__)

# Close code used when the client closes the socket on purpose.
MANUAL_CLOSE_CODE = 1000
# Close code reported when the socket went away without a close frame.
ABNORMAL_CLOSE_CODE = 1006

OpenHandler = Callable[[], None]
MessageHandler = Callable[[Union[str, bytes]], None]
CloseHandler = Callable[[int, str], None]
ErrorHandler = Callable[[Exception], None]


class TransportSocket(ABC):
    """
    One socket connection, opened at most once.

    Implementations call the ``_notify_*`` helpers to surface low-level
    events; the helpers are no-ops once the transport has been unbound.
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self._on_open: Optional[OpenHandler] = None
        self._on_message: Optional[MessageHandler] = None
        self._on_close: Optional[CloseHandler] = None
        self._on_error: Optional[ErrorHandler] = None

    def bind(
        self,
        on_open: OpenHandler,
        on_message: MessageHandler,
        on_close: CloseHandler,
        on_error: ErrorHandler,
    ) -> None:
        self._on_open = on_open
        self._on_message = on_message
        self._on_close = on_close
        self._on_error = on_error

    def unbind(self) -> None:
        self._on_open = self._on_message = self._on_close = self._on_error = None

    @abstractmethod
    def open(self) -> None:
        """Start connecting. Must return immediately."""

    @abstractmethod
    def send(self, frame: str) -> None:
        """Queue a text frame for transmission. Must return immediately."""

    @abstractmethod
    def close(self, code: int = MANUAL_CLOSE_CODE, reason: str = "") -> None:
        """Close the connection. Must return immediately."""

    def _notify_open(self) -> None:
        if self._on_open:
            self._on_open()

    def _notify_message(self, frame: Union[str, bytes]) -> None:
        if self._on_message:
            self._on_message(frame)

    def _notify_close(self, code: int, reason: str) -> None:
        if self._on_close:
            self._on_close(code, reason)

    def _notify_error(self, exc: Exception) -> None:
        if self._on_error:
            self._on_error(exc)


class WebSocketTransport(TransportSocket):
    """
    TransportSocket backed by a ``websockets`` client connection.

    open() starts a background task on the running event loop that performs
    the handshake, then runs the receive loop alongside a send loop fed by
    an asyncio.Queue. Every failure ends in exactly one close notification
    (preceded by an error notification when an exception caused it), unless
    close() was called first.
    """

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        open_timeout: Optional[float] = 10.0,
    ) -> None:
        super().__init__(url)
        self._headers = headers or {}
        self._open_timeout = open_timeout

        self._websocket: Optional[websockets.ClientConnection] = None
        self._outgoing: "asyncio.Queue[str]" = asyncio.Queue()
        self._connection_task: Optional[asyncio.Task] = None
        self._send_task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None
        self._closing = False

    def open(self) -> None:
        if self._connection_task is not None:
            return
        self._connection_task = asyncio.get_running_loop().create_task(self._run())

    def send(self, frame: str) -> None:
        if self._closing or self._connection_task is None:
            raise TransportError("Transport is not open", "transport_closed")
        self._outgoing.put_nowait(frame)

    def close(self, code: int = MANUAL_CLOSE_CODE, reason: str = "") -> None:
        if self._closing:
            return
        self._closing = True
        self.unbind()

        if self._send_task and not self._send_task.done():
            self._send_task.cancel()

        if self._websocket is not None:
            self._close_task = asyncio.get_running_loop().create_task(
                self._websocket.close(code, reason)
            )
        elif self._connection_task and not self._connection_task.done():
            self._connection_task.cancel()

    @property
    def is_open(self) -> bool:
        return self._websocket is not None and not self._closing

    async def _run(self) -> None:
        code, reason = ABNORMAL_CLOSE_CODE, ""
        try:
            async with websockets.connect(
                self.url,
                additional_headers=self._headers,
                open_timeout=self._open_timeout,
            ) as ws:
                self._websocket = ws
                log.info(f"Transport open → {self.url}")
                self._send_task = asyncio.create_task(self._send_loop(ws))
                self._notify_open()
                try:
                    async for message in ws:
                        self._notify_message(message)
                except ConnectionClosed as e:
                    log.warning(f"WebSocket connection closed abnormally: {e}")
                code = ws.close_code if ws.close_code is not None else ABNORMAL_CLOSE_CODE
                reason = ws.close_reason or ""
        except asyncio.CancelledError:
            # Only close() cancels this task; nobody is listening anymore.
            raise
        except Exception as exc:
            log.error(f"Transport error on {self.url}: {exc}")
            self._notify_error(exc)
            reason = str(exc)
        finally:
            self._websocket = None
            if self._send_task and not self._send_task.done():
                self._send_task.cancel()

        if not self._closing:
            log.info(f"Transport closed (code {code}) → {self.url}")
            self._notify_close(code, reason)

    async def _send_loop(self, ws) -> None:
        """Background task: drain the outgoing queue into the socket in order."""
        while True:
            frame = await self._outgoing.get()
            try:
                await ws.send(frame)
            except ConnectionClosed:
                # The receive loop observes the same closure and reports it.
                return
            finally:
                self._outgoing.task_done()
