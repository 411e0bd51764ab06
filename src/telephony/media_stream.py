from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import WebSocket

from agents.base import BaseAgentChannel
from agents.errors import DuplicateSessionError
from config.settings import Settings
from telephony.bridge import TERMINAL_STATES, Session, SessionBridge
from telephony.frames import SignalingFailure, SignalingNotice, StreamStarted
from telephony.registry import SessionRegistry
from telephony.signaling import SignalingChannel

LOGGER = logging.getLogger(__name__)

AgentChannelFactory = Callable[[], BaseAgentChannel]


async def serve_media_stream(
    websocket: WebSocket,
    *,
    registry: SessionRegistry,
    settings: Settings,
    agent_factory: AgentChannelFactory,
) -> None:
    """Drive one Twilio media stream socket until it closes.

    The first accepted ``start`` frame creates and registers a bridge. Later frames
    go only to that bridge; a socket never reaches another socket's session.
    """

    await websocket.accept()
    signaling = SignalingChannel(websocket, close_timeout=settings.close_timeout_seconds)
    bridge: SessionBridge | None = None
    LOGGER.info("Media stream socket connected")

    try:
        async for event in signaling.frames():
            if isinstance(event, StreamStarted):
                if bridge is not None:
                    LOGGER.warning(
                        "Duplicate start for stream %s on an active socket; ignoring",
                        event.stream_sid,
                    )
                    continue
                candidate = SessionBridge(
                    Session.from_start(event, settings),
                    signaling,
                    agent_factory(),
                    registry,
                    settings,
                )
                try:
                    await candidate.start()
                except DuplicateSessionError as exc:
                    LOGGER.warning("Ignoring start frame: %s", exc.detail)
                    continue
                bridge = candidate
                continue

            if bridge is None:
                if isinstance(event, SignalingNotice):
                    LOGGER.debug("Notice %s before any session", event.kind)
                elif not isinstance(event, SignalingFailure):
                    LOGGER.warning("Discarding %s frame: no session started on this socket", type(event).__name__)
                continue

            stream_sid = getattr(event, "stream_sid", None)
            if stream_sid is not None and stream_sid != bridge.session_id:
                LOGGER.warning(
                    "Discarding %s frame for stream %s on the socket of stream %s",
                    type(event).__name__,
                    stream_sid,
                    bridge.session_id,
                )
                continue
            if bridge.state in TERMINAL_STATES:
                if not isinstance(event, (SignalingFailure, SignalingNotice)):
                    LOGGER.warning(
                        "Discarding %s frame for closed stream %s",
                        type(event).__name__,
                        bridge.session_id,
                    )
                continue
            bridge.submit(event)
    finally:
        if bridge is not None:
            await bridge.close("media stream socket ended")
        else:
            await signaling.close()
        LOGGER.info("Media stream socket finished (stream %s)", signaling.stream_sid)
