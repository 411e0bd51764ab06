from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from agents.base import FailureCallback
from agents.errors import ProtocolError, TransportError
from telephony.frames import (
    SignalingEvent,
    SignalingFailure,
    decode_signaling_frame,
    twilio_clear_frame,
    twilio_mark_frame,
    twilio_media_frame,
)

LOGGER = logging.getLogger(__name__)


class SignalingChannel:
    """Caller-side half of a bridge: one Twilio Media Streams websocket.

    Inbound frames are decoded by ``frames()``. Outbound frames go through a
    FIFO writer task so the bridge never waits on the caller's socket.
    """

    def __init__(self, websocket: WebSocket, *, close_timeout: float = 2.0) -> None:
        self._websocket = websocket
        self._close_timeout = close_timeout
        self._outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._writer: asyncio.Task | None = None
        self._on_failure: FailureCallback | None = None
        self._peer_gone = False
        self._closed = False
        self.stream_sid: str | None = None

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and not self._peer_gone
            and self._websocket.client_state == WebSocketState.CONNECTED
            and self._websocket.application_state == WebSocketState.CONNECTED
        )

    def bind(self, stream_sid: str) -> None:
        self.stream_sid = stream_sid

    def set_failure_callback(self, callback: FailureCallback | None) -> None:
        self._on_failure = callback

    async def frames(self) -> AsyncIterator[SignalingEvent]:
        """Yield decoded frames until the socket goes away."""

        while not self._peer_gone:
            try:
                message = await self._websocket.receive()
            except RuntimeError as exc:
                # Starlette raises once the socket is no longer receivable.
                self._peer_gone = True
                yield SignalingFailure(reason=f"socket unusable: {exc}", stream_sid=self.stream_sid)
                return

            if message["type"] == "websocket.disconnect":
                self._peer_gone = True
                yield SignalingFailure(
                    reason=f"socket closed (code={message.get('code')})",
                    stream_sid=self.stream_sid,
                )
                return

            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            if raw is None:
                continue
            try:
                yield decode_signaling_frame(raw)
            except ProtocolError as exc:
                LOGGER.warning("Dropping signaling frame for stream %s: %s", self.stream_sid, exc.detail)

    def send_media(self, payload: str) -> bool:
        if not self._can_send():
            return False
        self._enqueue(twilio_media_frame(self.stream_sid, payload))
        return True

    def clear_playback(self) -> int:
        """Discard queued caller-bound audio and queue a ``clear`` frame."""

        if not self._can_send():
            return 0
        kept: list[dict[str, Any]] = []
        dropped = 0
        while True:
            try:
                frame = self._outbox.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._outbox.task_done()
            if frame.get("event") == "media":
                dropped += 1
            else:
                kept.append(frame)
        for frame in kept:
            self._outbox.put_nowait(frame)
        self._enqueue(twilio_clear_frame(self.stream_sid))
        return dropped

    def send_mark(self, name: str) -> bool:
        if not self._can_send():
            return False
        self._enqueue(twilio_mark_frame(self.stream_sid, name))
        return True

    def _can_send(self) -> bool:
        return self.stream_sid is not None and self.is_open

    def _enqueue(self, frame: dict[str, Any]) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop())
        self._outbox.put_nowait(frame)

    async def _write_loop(self) -> None:
        while True:
            frame = await self._outbox.get()
            try:
                await self._websocket.send_text(json.dumps(frame))
            except (RuntimeError, OSError) as exc:
                self._peer_gone = True
                self._discard_outbox()
                LOGGER.warning("Write to stream %s failed: %s", self.stream_sid, exc)
                if self._on_failure is not None:
                    self._on_failure(TransportError(f"Signaling write failed: {exc}"))
                return
            finally:
                self._outbox.task_done()

    def _discard_outbox(self) -> int:
        dropped = 0
        while True:
            try:
                self._outbox.get_nowait()
            except asyncio.QueueEmpty:
                return dropped
            self._outbox.task_done()
            dropped += 1

    async def close(self) -> None:
        """Flush queued frames within the close timeout, then close the socket."""

        if self._closed:
            return
        self._closed = True

        if self._writer is not None:
            if not self._writer.done():
                try:
                    await asyncio.wait_for(self._outbox.join(), timeout=self._close_timeout)
                except asyncio.TimeoutError:
                    LOGGER.warning(
                        "Flush to stream %s timed out; dropping %d frame(s)",
                        self.stream_sid,
                        self._discard_outbox(),
                    )
            self._writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._writer

        if self._peer_gone or self._websocket.application_state != WebSocketState.CONNECTED:
            return
        try:
            await asyncio.wait_for(self._websocket.close(), timeout=self._close_timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Closing stream %s timed out", self.stream_sid)
        except (RuntimeError, OSError) as exc:
            LOGGER.debug("Closing stream %s failed: %s", self.stream_sid, exc)
