from __future__ import annotations

from dataclasses import dataclass

from agents.errors import ConfigurationError
from config.settings import get_settings

STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]


@dataclass(frozen=True)
class TwilioConfig:
    account_sid: str
    auth_token: str
    from_number: str
    public_base_url: str


@dataclass(frozen=True)
class PlacedCall:
    call_sid: str
    status: str | None
    to_number: str


def get_twilio_config() -> TwilioConfig:
    settings = get_settings()
    if not settings.twilio_account_sid or not settings.twilio_auth_token:
        raise ConfigurationError("Twilio credentials are not configured")
    if not settings.twilio_from_number:
        raise ConfigurationError("Twilio from-number is not configured")
    if not settings.public_base_url:
        raise ConfigurationError("PUBLIC_BASE_URL is required for Twilio callbacks")

    return TwilioConfig(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        from_number=settings.twilio_from_number,
        public_base_url=settings.public_base_url.rstrip("/"),
    )


def build_twilio_client():
    from twilio.rest import Client

    cfg = get_twilio_config()
    return Client(cfg.account_sid, cfg.auth_token)


def normalize_phone_number(number: str) -> str:
    number = number.strip()
    return number if number.startswith("+") else f"+{number}"


def place_call(
    twilio_client,
    cfg: TwilioConfig,
    *,
    to_number: str,
    control_document_url: str,
    status_callback_url: str,
) -> PlacedCall:
    """Ask Twilio to dial ``to_number`` and fetch its instructions from ``control_document_url``."""

    formatted = normalize_phone_number(to_number)
    call = twilio_client.calls.create(
        to=formatted,
        from_=cfg.from_number,
        url=control_document_url,
        method="POST",
        status_callback=status_callback_url,
        status_callback_event=STATUS_CALLBACK_EVENTS,
        status_callback_method="POST",
    )
    return PlacedCall(call_sid=str(call.sid), status=getattr(call, "status", None), to_number=formatted)
