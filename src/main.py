"""Entry point for the telephony to conversational-agent relay service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from agents.errors import RelayError
from api.routes import router as api_router
from api.twilio_routes import router as twilio_router
from config.settings import get_settings
from telephony.registry import SessionRegistry

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.registry = SessionRegistry()
    yield
    await app.state.registry.close_all("service shutting down")


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="Voice Agent Relay",
    description="Bridges Twilio media streams to ElevenLabs conversational agents.",
    lifespan=lifespan,
)
app.include_router(api_router, prefix="/api")
app.include_router(twilio_router, prefix="/api")


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    LOGGER.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
