"""Resolves the websocket target for an ElevenLabs Conversational AI session."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from urllib.parse import urlencode

import httpx

from agents.errors import ConfigurationError, TransportError
from config.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentEndpoint:
    url: str
    headers: dict[str, str] = field(default_factory=dict)


class ElevenLabsEndpointResolver:
    """One-shot exchange of API key + agent id for a connection target."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        if not self._settings.elevenlabs_api_key or not self._settings.elevenlabs_agent_id:
            raise ConfigurationError("ELEVENLABS_API_KEY/ELEVENLABS_AGENT_ID not configured")
        self._api_key = self._settings.elevenlabs_api_key
        self._agent_id = self._settings.elevenlabs_agent_id
        self._transport = transport

    async def resolve(self) -> AgentEndpoint:
        if self._settings.elevenlabs_connect_mode == "direct":
            query = urlencode({"agent_id": self._agent_id})
            return AgentEndpoint(
                url=f"{self._settings.elevenlabs_ws_url}?{query}",
                headers={"xi-api-key": self._api_key},
            )
        return AgentEndpoint(url=await self._fetch_signed_url())

    async def _fetch_signed_url(self) -> str:
        base = self._settings.elevenlabs_api_base_url.rstrip("/")
        async with httpx.AsyncClient(
            timeout=self._settings.agent_connect_timeout_seconds,
            transport=self._transport,
        ) as client:
            response = await client.get(
                f"{base}/v1/convai/conversation/get_signed_url",
                params={"agent_id": self._agent_id},
                headers={"xi-api-key": self._api_key},
            )
        try:
            response.raise_for_status()
        except httpx.HTTPError as exc:
            LOGGER.error("Signed URL request failed: %s", exc)
            raise TransportError(f"Signed URL request failed with status {response.status_code}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise TransportError("Signed URL response was not JSON") from exc

        signed_url = data.get("signed_url") if isinstance(data, dict) else None
        if not signed_url:
            raise TransportError("Signed URL response did not contain signed_url")
        LOGGER.debug("Received signed URL for agent %s", self._agent_id)
        return str(signed_url)
