"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules.
"""

from __future__ import annotations

from starlette.requests import HTTPConnection

from agents.factory import build_agent_channel
from telephony.media_stream import AgentChannelFactory
from telephony.registry import SessionRegistry


def get_registry(connection: HTTPConnection) -> SessionRegistry:
    return connection.app.state.registry


def get_agent_factory() -> AgentChannelFactory:
    return build_agent_channel
