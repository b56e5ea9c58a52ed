from __future__ import annotations


class PortflowHTTPError(RuntimeError):
    """Base error for outbound HTTP calls to the backend and the model provider."""

    transient = False

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientHTTPError(PortflowHTTPError):
    """Network failures, timeouts, 429 and 5xx. Eligible for retry."""

    transient = True


class PermanentHTTPError(PortflowHTTPError):
    """4xx responses and malformed payloads. Never retried."""


class UnauthorizedHTTPError(PermanentHTTPError):
    """The bearer credential was rejected (401)."""
