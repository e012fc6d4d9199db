"""Typed rejections raised by the progression controller.

Everything here except :class:`Unavailable` is an expected business outcome:
the caller reacts to it, nothing gets logged as a failure, and the
transaction that raised it commits nothing.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ProgressionError(Exception):
    """Base class for every rejection the controller reports to callers."""

    code = "error"
    http_status = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        payload.update(self.details)
        return payload


class NotFound(ProgressionError):
    code = "not_found"
    http_status = 404


class NotAuthorized(ProgressionError):
    code = "not_authorized"
    http_status = 403


class NotOpen(ProgressionError):
    code = "not_open"
    http_status = 409


class Locked(ProgressionError):
    code = "locked"
    http_status = 423

    def __init__(self, message: str, **details: Any) -> None:
        details.setdefault("locked", True)
        super().__init__(message, **details)


class DuplicateResponse(ProgressionError):
    """Raised on a re-answer; carries the response already on record."""

    code = "duplicate_response"
    http_status = 409

    def __init__(self, message: str, *, existing: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, existing=existing)
        self.existing = existing


class Conflict(ProgressionError):
    code = "conflict"
    http_status = 409


class CapacityExceeded(ProgressionError):
    code = "capacity_exceeded"
    http_status = 409


class InvalidState(ProgressionError):
    code = "invalid_state"
    http_status = 409


class Unavailable(ProgressionError):
    """Transient infrastructure failure (storage down, timeout, contention)."""

    code = "unavailable"
    http_status = 503
