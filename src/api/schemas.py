"""API-facing Pydantic models."""

from __future__ import annotations

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    status: str = "ok"
    timestamp: str
    version: str
    active_sessions: int


class MakeCallRequest(BaseModel):
    phone_number: str | None = Field(
        default=None,
        validation_alias=AliasChoices("phoneNumber", "number", "phone_number"),
        description="E.164 phone number; a leading + is added when missing.",
    )
    prompt: str | None = None
    first_message: str | None = Field(
        default=None,
        validation_alias=AliasChoices("firstMessage", "first_message"),
    )


class MakeCallResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str = "Call initiated successfully"
    call_sid: str = Field(serialization_alias="callSid")
    status: str | None = None
    to: str
