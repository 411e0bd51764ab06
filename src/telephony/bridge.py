"""Per-call bridge between a Twilio media stream and a conversational agent.

Every input to a bridge (caller frames, agent events, handshake outcome, write
failures) is posted to one inbox and handled by one loop, so state changes and
teardown happen in a single, well-defined order regardless of which socket
produced the event.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from agents.base import AgentSessionConfig, BaseAgentChannel
from agents.errors import RelayError, TransportError
from config.settings import Settings
from telephony.frames import (
    AgentAudio,
    AgentClosed,
    AgentError,
    AgentEvent,
    AgentInterrupt,
    AgentPing,
    AgentReady,
    AgentTranscript,
    MediaReceived,
    SignalingEvent,
    SignalingFailure,
    SignalingNotice,
    StreamStarted,
    StreamStopped,
)
from telephony.registry import SessionRegistry
from telephony.signaling import SignalingChannel

LOGGER = logging.getLogger(__name__)


class SessionState(str, Enum):
    CREATED = "created"
    AGENT_CONNECTING = "agent_connecting"
    AGENT_READY = "agent_ready"
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"


BUFFERING_STATES = frozenset({SessionState.CREATED, SessionState.AGENT_CONNECTING})
TERMINAL_STATES = frozenset({SessionState.CLOSING, SessionState.CLOSED})


@dataclass(slots=True)
class Session:
    session_id: str
    call_id: str
    config: AgentSessionConfig
    state: SessionState = SessionState.CREATED
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_monotonic: float = field(default_factory=time.monotonic)
    close_reason: str | None = None

    @classmethod
    def from_start(cls, event: StreamStarted, settings: Settings) -> Session:
        return cls(
            session_id=event.stream_sid,
            call_id=event.call_sid,
            config=AgentSessionConfig(
                prompt=event.prompt or settings.default_prompt,
                first_message=event.first_message or settings.default_first_message,
            ),
        )

    @property
    def age_seconds(self) -> float:
        return time.monotonic() - self.started_monotonic


@dataclass(frozen=True)
class HandshakeCompleted:
    ready: AgentReady


@dataclass(frozen=True)
class HandshakeFailed:
    error: RelayError


@dataclass(frozen=True)
class TransportFailed:
    side: str
    error: RelayError


BridgeMessage = Union[SignalingEvent, AgentEvent, HandshakeCompleted, HandshakeFailed, TransportFailed]

_WAKE = object()


class SessionBridge:
    """Owns one signaling channel and one agent channel for a single call."""

    def __init__(
        self,
        session: Session,
        signaling: SignalingChannel,
        agent: BaseAgentChannel,
        registry: SessionRegistry,
        settings: Settings,
    ) -> None:
        self.session = session
        self._signaling = signaling
        self._agent = agent
        self._registry = registry
        self._settings = settings
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()
        self._pending: deque[str] = deque(maxlen=settings.pending_audio_capacity)
        self._pending_dropped = 0
        self._connect_task: asyncio.Task | None = None
        self._agent_pump: asyncio.Task | None = None
        self._loop_task: asyncio.Task | None = None
        self._shutdown_started = False
        self._closed = asyncio.Event()

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def start(self) -> None:
        """Register the session and begin connecting to the agent.

        Raises ``DuplicateSessionError`` without side effects when the id is taken.
        """

        await self._registry.put(self.session_id, self)
        self._signaling.bind(self.session_id)
        self._signaling.set_failure_callback(lambda exc: self.submit(TransportFailed("signaling", exc)))
        self._agent.set_failure_callback(lambda exc: self.submit(TransportFailed("agent", exc)))
        LOGGER.info(
            "Session %s started for call %s (prompt %d chars)",
            self.session_id,
            self.session.call_id,
            len(self.session.config.prompt),
        )

        self._transition(SessionState.AGENT_CONNECTING)
        self._loop_task = asyncio.create_task(self._run(), name=f"bridge-{self.session_id}")
        self._connect_task = asyncio.create_task(self._connect_agent(), name=f"agent-connect-{self.session_id}")

    def submit(self, message: BridgeMessage) -> None:
        """Post a message to the bridge without waiting."""

        if self._closed.is_set():
            return
        self._inbox.put_nowait(message)

    async def close(self, reason: str) -> None:
        """Tear the session down. Only the first call does the work."""

        await self._shutdown(reason)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def _connect_agent(self) -> None:
        try:
            ready = await self._agent.connect(self.session.config)
        except RelayError as exc:
            self.submit(HandshakeFailed(exc))
        except Exception as exc:
            LOGGER.exception("Agent connect crashed for session %s", self.session_id)
            self.submit(HandshakeFailed(TransportError(f"Agent connect failed: {exc}")))
        else:
            self.submit(HandshakeCompleted(ready))

    async def _pump_agent_events(self) -> None:
        async for event in self._agent.events():
            self.submit(event)
            if isinstance(event, AgentClosed):
                return

    async def _run(self) -> None:
        while not self._shutdown_started:
            message = await self._inbox.get()
            if message is _WAKE:
                continue
            try:
                await self._dispatch(message)
            except Exception:
                LOGGER.exception("Session %s failed handling %s", self.session_id, type(message).__name__)
                await self._shutdown("internal error")

    async def _dispatch(self, message: Any) -> None:
        state = self.session.state
        if state in TERMINAL_STATES:
            return

        if isinstance(message, MediaReceived):
            self._on_inbound_audio(message.payload)
        elif isinstance(message, HandshakeCompleted):
            self._on_agent_ready(message.ready)
        elif isinstance(message, AgentAudio):
            if state == SessionState.STREAMING:
                self._signaling.send_media(message.payload)
        elif isinstance(message, AgentInterrupt):
            dropped = self._signaling.clear_playback()
            LOGGER.debug("Session %s interrupted; discarded %d queued frame(s)", self.session_id, dropped)
        elif isinstance(message, AgentPing):
            self._agent.send_pong(message.event_id)
        elif isinstance(message, AgentTranscript):
            LOGGER.info("[%s] %s: %s", self.session_id, message.role, message.text)
        elif isinstance(message, SignalingNotice):
            LOGGER.debug("Session %s notice: %s", self.session_id, message.kind)
        elif isinstance(message, StreamStarted):
            LOGGER.warning("Ignoring repeated start for session %s", self.session_id)
        elif isinstance(message, StreamStopped):
            await self._shutdown("stream stopped")
        elif isinstance(message, SignalingFailure):
            await self._shutdown(f"signaling transport: {message.reason}")
        elif isinstance(message, HandshakeFailed):
            LOGGER.error("Agent handshake failed for session %s: %s", self.session_id, message.error.detail)
            await self._shutdown(f"agent handshake: {message.error.detail}")
        elif isinstance(message, AgentError):
            LOGGER.error("Agent reported an error for session %s: %s", self.session_id, message.message)
            await self._shutdown(f"agent error: {message.message}")
        elif isinstance(message, AgentClosed):
            await self._shutdown(f"agent closed (code={message.code}) {message.reason}".rstrip())
        elif isinstance(message, TransportFailed):
            LOGGER.error("%s transport failed for session %s: %s", message.side, self.session_id, message.error.detail)
            await self._shutdown(f"{message.side} transport: {message.error.detail}")
        else:
            LOGGER.warning("Session %s dropping unknown message %r", self.session_id, message)

    def _on_inbound_audio(self, payload: str) -> None:
        if self.session.state == SessionState.STREAMING:
            self._agent.send_audio(payload)
            return
        if self.session.state not in BUFFERING_STATES:
            return

        if len(self._pending) == self._pending.maxlen:
            self._pending_dropped += 1
            if self._pending_dropped == 1:
                LOGGER.warning(
                    "Session %s still waiting for agent after %.1fs; dropping oldest buffered audio",
                    self.session_id,
                    self.session.age_seconds,
                )
        self._pending.append(payload)

    def _on_agent_ready(self, ready: AgentReady) -> None:
        self._transition(SessionState.AGENT_READY)
        buffered = len(self._pending)
        while self._pending:
            self._agent.send_audio(self._pending.popleft())
        LOGGER.info(
            "Session %s agent ready after %.2fs; flushed %d buffered frame(s) (%d dropped)",
            self.session_id,
            self.session.age_seconds,
            buffered,
            self._pending_dropped,
        )
        self._transition(SessionState.STREAMING)
        self._agent_pump = asyncio.create_task(self._pump_agent_events(), name=f"agent-events-{self.session_id}")

    def _transition(self, state: SessionState) -> None:
        LOGGER.debug("Session %s: %s -> %s", self.session_id, self.session.state.value, state.value)
        self.session.state = state

    async def _shutdown(self, reason: str) -> None:
        if self._shutdown_started:
            await self._closed.wait()
            return
        self._shutdown_started = True
        self.session.close_reason = reason
        self._transition(SessionState.CLOSING)
        LOGGER.info("Closing session %s (call %s): %s", self.session_id, self.session.call_id, reason)

        dropped = len(self._pending)
        self._pending.clear()
        if dropped:
            LOGGER.info("Session %s discarded %d undelivered buffered frame(s)", self.session_id, dropped)

        try:
            current = asyncio.current_task()
            background = [
                task for task in (self._connect_task, self._agent_pump) if task is not None and task is not current
            ]
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)

            await self._agent.close()
            if self._signaling.is_open:
                self._signaling.send_mark(self._settings.completion_mark_name)
            await self._signaling.close()
        finally:
            await self._registry.remove(self.session_id, self)
            self._transition(SessionState.CLOSED)
            self._closed.set()
            self._inbox.put_nowait(_WAKE)
            LOGGER.info("Session %s closed after %.1fs", self.session_id, self.session.age_seconds)
