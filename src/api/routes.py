"""FastAPI routes exposing service status."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from api.dependencies import get_registry
from api.schemas import HealthResponse
from telephony.registry import SessionRegistry

SERVICE_VERSION = "1.0.0"

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health(registry: SessionRegistry = Depends(get_registry)) -> HealthResponse:
    return HealthResponse(
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=SERVICE_VERSION,
        active_sessions=len(registry),
    )
