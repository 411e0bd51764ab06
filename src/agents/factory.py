"""Factory returning the configured agent channel implementation."""

from __future__ import annotations

from agents.base import BaseAgentChannel
from agents.elevenlabs_channel import ElevenLabsAgentChannel
from config.settings import Settings, get_settings


def build_agent_channel(settings: Settings | None = None) -> BaseAgentChannel:
    """Instantiate a fresh channel; each call gets its own."""

    return ElevenLabsAgentChannel(settings or get_settings())
