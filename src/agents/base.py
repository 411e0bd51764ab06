"""Shared abstractions for conversational agent channels."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

from agents.errors import RelayError
from telephony.frames import AgentEvent, AgentReady

FailureCallback = Callable[[RelayError], None]


@dataclass(frozen=True)
class AgentSessionConfig:
    """Per-call configuration sent to the agent during the handshake."""

    prompt: str
    first_message: str


class BaseAgentChannel(ABC):
    """One connection to a conversational agent, owned by a single bridge."""

    @property
    @abstractmethod
    def is_ready(self) -> bool:
        """True between a completed handshake and close."""

    @abstractmethod
    async def connect(self, config: AgentSessionConfig) -> AgentReady:
        """Open the connection and complete the handshake within the connect timeout."""

    @abstractmethod
    def events(self) -> AsyncIterator[AgentEvent]:
        """Yield decoded agent events, ending with ``AgentClosed``."""

    @abstractmethod
    def send_audio(self, payload: str) -> bool:
        """Queue one base64 audio frame; no-op with a warning when not ready."""

    @abstractmethod
    def send_pong(self, event_id: str) -> None:
        """Queue the keepalive reply for ``event_id``."""

    @abstractmethod
    def set_failure_callback(self, callback: FailureCallback | None) -> None:
        """Register where write failures are reported."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call repeatedly."""
