"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    environment: Literal["local", "dev", "prod"] = Field(default="local")
    log_level: str = Field(default="INFO")

    public_base_url: str | None = Field(
        default=None,
        description="Public base URL for Twilio webhooks (e.g. https://<ngrok>.ngrok-free.app).",
    )

    # Twilio (Voice)
    twilio_account_sid: str | None = Field(default=None)
    twilio_auth_token: str | None = Field(default=None)
    twilio_from_number: str | None = Field(default=None, description="E.164, e.g. +4144...")
    outbound_call_api_key: str | None = Field(
        default=None,
        description="Optional API key required to call the make-call endpoint.",
    )

    # ElevenLabs Conversational AI
    elevenlabs_api_key: str | None = Field(default=None)
    elevenlabs_agent_id: str | None = Field(default=None)
    elevenlabs_api_base_url: str = Field(default="https://api.elevenlabs.io")
    elevenlabs_ws_url: str = Field(default="wss://api.elevenlabs.io/v1/convai/conversation")
    elevenlabs_connect_mode: Literal["signed_url", "direct"] = Field(
        default="signed_url",
        description="signed_url fetches a short-lived URL first; direct sends the API key as a header.",
    )

    # Conversation defaults, used when the stream carries no custom parameters
    default_prompt: str = Field(default="You are a friendly AI assistant.")
    default_first_message: str = Field(default="Hello, this is an AI assistant calling you.")
    outbound_default_prompt: str = Field(
        default="You are a friendly AI assistant making a phone call."
    )
    outbound_default_first_message: str = Field(
        default="Hello, this is an automated call from an AI assistant."
    )

    # Bridge tuning
    agent_connect_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Upper bound for fetching the agent URL, connecting and completing the handshake.",
    )
    close_timeout_seconds: float = Field(
        default=2.0,
        gt=0.0,
        description="How long a graceful close may take before the socket is terminated.",
    )
    pending_audio_capacity: int = Field(
        default=50,
        ge=1,
        description="Inbound frames buffered while the agent connects; oldest are dropped first.",
    )
    completion_mark_name: str = Field(default="conversation-complete")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
