"""WebSocket connection handle with a non-blocking outbox."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from fastapi import WebSocket
from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)

FrameCallback = Callable[[], None]


class WebSocketConnection:
    """Wraps a FastAPI WebSocket as a relay connection handle.

    ``send`` may be called from any thread. Frames are queued onto a bounded
    outbox and written by a single writer task on the connection's event loop,
    so a slow peer never stalls senders or other peers.

    ``send`` only reports whether a frame was accepted. The outcome of each
    accepted frame is reported later through ``on_sent`` (written to the
    socket) or ``on_dropped`` (outbox full, socket gone, write failed, or
    still queued at close).
    """

    def __init__(
        self,
        websocket: WebSocket,
        loop: asyncio.AbstractEventLoop,
        maxsize: int = 256,
        label: str = "",
        on_sent: FrameCallback | None = None,
        on_dropped: FrameCallback | None = None,
    ) -> None:
        self.websocket = websocket
        self.label = label
        self._loop = loop
        self._outbox: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        self._writer: asyncio.Task | None = None
        self._closed = False
        self._on_sent = on_sent
        self._on_dropped = on_dropped

    @property
    def is_open(self) -> bool:
        if self._closed:
            return False
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    def start(self) -> asyncio.Task:
        """Start the writer task. Must be called on the connection's loop."""
        if self._writer is None:
            self._writer = self._loop.create_task(self._writer_loop())
        return self._writer

    def send(self, text: str) -> bool:
        """Queue a frame for delivery. Returns False if the connection is closed."""
        if self._closed or self._loop.is_closed():
            return False
        try:
            self._loop.call_soon_threadsafe(self._enqueue, text)
        except RuntimeError:
            # Loop shut down between the check and the call
            return False
        return True

    def _enqueue(self, text: str) -> None:
        if self._closed:
            self._report_dropped("connection closed")
            return
        try:
            self._outbox.put_nowait(text)
        except asyncio.QueueFull:
            self._report_dropped("outbox full")

    def _report_dropped(self, why: str) -> None:
        logger.debug(f"Dropping a frame for {self.label or 'connection'}: {why}")
        if self._on_dropped is not None:
            self._on_dropped()

    async def _writer_loop(self) -> None:
        while True:
            text = await self._outbox.get()
            if not self.is_open:
                self._report_dropped("socket no longer open")
                continue
            try:
                await self.websocket.send_text(text)
            except asyncio.CancelledError:
                self._report_dropped("connection closed")
                raise
            except Exception as e:
                self._report_dropped(f"send failed: {e}")
                continue
            if self._on_sent is not None:
                self._on_sent()

    def mark_closed(self) -> None:
        self._closed = True

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        """Close the socket from the server side."""
        self.mark_closed()
        if self.websocket.application_state == WebSocketState.CONNECTED:
            try:
                await self.websocket.close(code=code, reason=reason)
            except RuntimeError as e:
                logger.debug(f"Close of {self.label or 'connection'} failed: {e}")

    async def aclose(self) -> None:
        """Stop the writer task after the peer has gone away.

        Frames still waiting in the outbox are reported as dropped.
        """
        self.mark_closed()
        if self._writer is not None:
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
        while not self._outbox.empty():
            self._outbox.get_nowait()
            self._report_dropped("connection closed")
