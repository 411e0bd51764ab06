"""Twilio Voice integration.

This module provides:
- Control document (TwiML) that connects a call to the media stream endpoint.
- Status callback sink for call progress events.
- Outbound call placement.
- The media stream websocket served by the per-call bridge.
"""

from __future__ import annotations

import logging
from typing import Annotated
from urllib.parse import urlencode
from xml.sax.saxutils import escape

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, WebSocket
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool
from twilio.base.exceptions import TwilioException

from api.dependencies import get_agent_factory, get_registry
from api.schemas import MakeCallRequest, MakeCallResponse
from config.settings import get_settings
from integrations.twilio_client import TwilioConfig, build_twilio_client, get_twilio_config, place_call
from telephony.media_stream import AgentChannelFactory, serve_media_stream
from telephony.registry import SessionRegistry

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/twilio", tags=["twilio"])

_ATTR_ENTITIES = {'"': "&quot;"}


def _twiml_response(xml: str) -> Response:
    # Twilio expects application/xml
    return Response(content=xml, media_type="application/xml")


def _to_ws_url(http_url: str) -> str:
    if http_url.startswith("https://"):
        return "wss://" + http_url.removeprefix("https://")
    if http_url.startswith("http://"):
        return "ws://" + http_url.removeprefix("http://")
    return http_url


def _twiml_connect_stream(*, stream_url: str, parameters: dict[str, str]) -> str:
    stream = escape(stream_url, _ATTR_ENTITIES)
    params = "".join(
        f"<Parameter name=\"{escape(name, _ATTR_ENTITIES)}\" value=\"{escape(value, _ATTR_ENTITIES)}\" />"
        for name, value in parameters.items()
    )
    return (
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>"
        "<Response>"
        "<Connect>"
        f"<Stream url=\"{stream}\">{params}</Stream>"
        "</Connect>"
        "</Response>"
    )


def _stream_url(request: Request) -> str:
    settings = get_settings()
    if settings.public_base_url:
        return _to_ws_url(f"{settings.public_base_url.rstrip('/')}/api/twilio/call-stream")
    # Fallback to request host. This may not work behind proxies; prefer PUBLIC_BASE_URL.
    return _to_ws_url(str(request.url_for("twilio_call_stream")))


@router.post("/call-twiml")
async def twilio_call_twiml(request: Request) -> Response:
    """Tell Twilio to open a media stream carrying the conversation overrides."""

    settings = get_settings()
    form = await request.form()

    def _pick(name: str) -> str:
        return str(request.query_params.get(name) or form.get(name) or "").strip()

    prompt = _pick("prompt") or settings.default_prompt
    first_message = _pick("first_message") or settings.default_first_message
    call_sid = str(form.get("CallSid") or "").strip() or "unknown"
    LOGGER.info("Serving control document for call %s", call_sid)

    return _twiml_response(
        _twiml_connect_stream(
            stream_url=_stream_url(request),
            parameters={"prompt": prompt, "first_message": first_message},
        )
    )


@router.post("/call-status")
async def twilio_call_status(request: Request) -> Response:
    form = await request.form()
    LOGGER.info(
        "Call status update: call=%s status=%s direction=%s from=%s to=%s duration=%s",
        form.get("CallSid"),
        form.get("CallStatus"),
        form.get("Direction"),
        form.get("From"),
        form.get("To"),
        form.get("CallDuration") or "0",
    )
    return PlainTextResponse("OK")


def get_twilio_client():
    return build_twilio_client()


def get_twilio_cfg():
    return get_twilio_config()


def _failure(status_code: int, error: str, details: str | None = None) -> JSONResponse:
    content = {"success": False, "error": error}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


def require_outbound_api_key(x_api_key: Annotated[str | None, Header()] = None) -> None:
    expected = get_settings().outbound_call_api_key
    if expected and x_api_key != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


# /make-outbound-call is the path n8n workflows post to.
@router.post("/make-call", response_model=MakeCallResponse, dependencies=[Depends(require_outbound_api_key)])
@router.post(
    "/make-outbound-call",
    response_model=MakeCallResponse,
    dependencies=[Depends(require_outbound_api_key)],
)
async def make_call(
    payload: MakeCallRequest,
    twilio_client=Depends(get_twilio_client),
    cfg: TwilioConfig = Depends(get_twilio_cfg),
) -> Response | MakeCallResponse:
    settings = get_settings()

    if not payload.phone_number or not payload.phone_number.strip():
        return _failure(400, "Phone number is required")

    overrides = urlencode(
        {
            "prompt": payload.prompt or settings.outbound_default_prompt,
            "first_message": payload.first_message or settings.outbound_default_first_message,
        }
    )
    try:
        placed = await run_in_threadpool(
            place_call,
            twilio_client,
            cfg,
            to_number=payload.phone_number,
            control_document_url=f"{cfg.public_base_url}/api/twilio/call-twiml?{overrides}",
            status_callback_url=f"{cfg.public_base_url}/api/twilio/call-status",
        )
    except (TwilioException, OSError) as exc:
        LOGGER.exception("Outbound call failed: %s", exc)
        return _failure(500, str(exc) or "Unknown error occurred", "Failed to initiate outbound call")

    LOGGER.info("Placed outbound call %s to %s", placed.call_sid, placed.to_number)
    return MakeCallResponse(call_sid=placed.call_sid, status=placed.status, to=placed.to_number)


@router.websocket("/call-stream", name="twilio_call_stream")
async def twilio_call_stream(
    websocket: WebSocket,
    registry: SessionRegistry = Depends(get_registry),
    agent_factory: AgentChannelFactory = Depends(get_agent_factory),
) -> None:
    await serve_media_stream(
        websocket,
        registry=registry,
        settings=get_settings(),
        agent_factory=agent_factory,
    )
