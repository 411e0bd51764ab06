"""Agent channel speaking the ElevenLabs Conversational AI websocket protocol."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections import deque
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from agents.base import AgentSessionConfig, BaseAgentChannel, FailureCallback
from agents.errors import HandshakeTimeout, ProtocolError, RelayError, TransportError
from config.settings import Settings, get_settings
from integrations.elevenlabs_client import ElevenLabsEndpointResolver
from telephony.frames import (
    AgentClosed,
    AgentError,
    AgentEvent,
    AgentReady,
    agent_audio_frame,
    agent_initiation_frame,
    agent_pong_frame,
    decode_agent_message,
)

LOGGER = logging.getLogger(__name__)

MAX_MESSAGE_BYTES = 16 * 1024 * 1024


class ElevenLabsAgentChannel(BaseAgentChannel):
    """Owns one conversation socket to an ElevenLabs agent.

    The handshake is complete once the agent answers the initiation data with
    ``conversation_initiation_metadata``. Frames to the agent are serialized by
    a writer task so callers never wait on the socket.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        resolver: ElevenLabsEndpointResolver | None = None,
        connector: Callable[..., Any] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._resolver = resolver
        self._connector = connector or websockets.connect
        self._ws: Any = None
        self._ready = False
        self._closed = False
        self._early: deque[AgentEvent] = deque()
        self._outbox: asyncio.Queue[str] = asyncio.Queue()
        self._writer: asyncio.Task | None = None
        self._on_failure: FailureCallback | None = None
        self.conversation_id: str | None = None

    @property
    def is_ready(self) -> bool:
        return self._ready and not self._closed

    def set_failure_callback(self, callback: FailureCallback | None) -> None:
        self._on_failure = callback

    async def connect(self, config: AgentSessionConfig) -> AgentReady:
        if self._closed:
            raise TransportError("Agent channel is already closed")

        timeout = self._settings.agent_connect_timeout_seconds
        try:
            ready = await asyncio.wait_for(self._open_and_handshake(config), timeout=timeout)
        except asyncio.TimeoutError as exc:
            await self.close()
            raise HandshakeTimeout(f"Agent not ready within {timeout:g}s") from exc
        except RelayError:
            await self.close()
            raise
        except (OSError, WebSocketException, httpx.HTTPError) as exc:
            await self.close()
            raise TransportError(f"Agent connection failed: {exc}") from exc

        self._ready = True
        self.conversation_id = ready.conversation_id
        self._writer = asyncio.create_task(self._write_loop())
        LOGGER.info(
            "Agent conversation %s ready (output=%s, input=%s)",
            ready.conversation_id,
            ready.output_format,
            ready.input_format,
        )
        return ready

    async def _open_and_handshake(self, config: AgentSessionConfig) -> AgentReady:
        resolver = self._resolver or ElevenLabsEndpointResolver(self._settings)
        endpoint = await resolver.resolve()

        self._ws = await self._connector(
            endpoint.url,
            additional_headers=endpoint.headers or None,
            open_timeout=self._settings.agent_connect_timeout_seconds,
            close_timeout=self._settings.close_timeout_seconds,
            max_size=MAX_MESSAGE_BYTES,
        )
        await self._ws.send(json.dumps(agent_initiation_frame(config.prompt, config.first_message)))
        LOGGER.debug("Sent conversation initiation data (prompt %d chars)", len(config.prompt))

        while True:
            raw = await self._ws.recv()
            try:
                event = decode_agent_message(raw)
            except ProtocolError as exc:
                LOGGER.warning("Dropping agent frame during handshake: %s", exc.detail)
                continue
            if isinstance(event, AgentReady):
                return event
            if isinstance(event, AgentError):
                raise TransportError(f"Agent rejected the conversation: {event.message}")
            # Replayed by events() once the bridge starts consuming.
            self._early.append(event)

    async def events(self) -> AsyncIterator[AgentEvent]:
        while self._early:
            yield self._early.popleft()

        ws = self._ws
        if ws is None:
            yield AgentClosed(reason="not connected")
            return

        try:
            async for raw in ws:
                try:
                    event = decode_agent_message(raw)
                except ProtocolError as exc:
                    LOGGER.warning("Dropping agent frame: %s", exc.detail)
                    continue
                yield event
        except (ConnectionClosed, OSError) as exc:
            LOGGER.info("Agent socket closed abnormally: %s", exc)

        yield AgentClosed(code=getattr(ws, "close_code", None), reason=getattr(ws, "close_reason", None) or "")

    def send_audio(self, payload: str) -> bool:
        if not self.is_ready:
            LOGGER.warning("Cannot send audio: agent channel not ready")
            return False
        self._outbox.put_nowait(json.dumps(agent_audio_frame(payload)))
        return True

    def send_pong(self, event_id: str) -> None:
        if not self.is_ready:
            LOGGER.warning("Cannot send pong %s: agent channel not ready", event_id)
            return
        self._outbox.put_nowait(json.dumps(agent_pong_frame(event_id)))

    async def _write_loop(self) -> None:
        while True:
            message = await self._outbox.get()
            try:
                await self._ws.send(message)
            except (ConnectionClosed, OSError) as exc:
                self._ready = False
                self._discard_outbox()
                LOGGER.warning("Agent write failed: %s", exc)
                if self._on_failure is not None:
                    self._on_failure(TransportError(f"Agent write failed: {exc}"))
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
        if self._closed:
            return
        self._closed = True
        self._ready = False
        timeout = self._settings.close_timeout_seconds

        if self._writer is not None:
            if not self._writer.done():
                try:
                    await asyncio.wait_for(self._outbox.join(), timeout=timeout)
                except asyncio.TimeoutError:
                    LOGGER.warning("Agent flush timed out; dropping %d frame(s)", self._discard_outbox())
            self._writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._writer

        ws = self._ws
        if ws is None:
            return
        try:
            await asyncio.wait_for(ws.close(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Agent socket did not close within %gs; terminating", timeout)
            transport = getattr(ws, "transport", None)
            if transport is not None:
                transport.abort()
        except (OSError, WebSocketException) as exc:
            LOGGER.debug("Agent socket close error: %s", exc)
        LOGGER.info("Agent channel closed (conversation %s)", self.conversation_id)
