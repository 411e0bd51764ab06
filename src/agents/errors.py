"""Domain-specific exceptions for relay operations.

These exceptions are safe to import from API layers without pulling in any socket code.
"""

from __future__ import annotations


class RelayError(Exception):
    status_code: int = 500
    default_detail: str = "Relay error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class ConfigurationError(RelayError):
    status_code = 503
    default_detail = "Required credentials or identifiers are not configured."


class HandshakeTimeout(RelayError):
    status_code = 504
    default_detail = "Agent did not become ready in time."


class TransportError(RelayError):
    status_code = 502
    default_detail = "Transport connection failed."


class ProtocolError(RelayError):
    status_code = 400
    default_detail = "Malformed or unexpected frame."


class DuplicateSessionError(RelayError):
    status_code = 409
    default_detail = "Session already registered."
