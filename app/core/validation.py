"""
Request Validation

Presence checks for callable payloads. Missing fields raise
InvalidArgumentError with the received payload echoed under
details["received"].
"""

from __future__ import annotations
import re
from typing import Any, Dict, Iterable, Optional

from app.core.errors import InvalidArgumentError

DATA_URI_RE = re.compile(r"^data:[^;]+;base64,(.+)$", re.DOTALL)


def is_missing(value: Any) -> bool:
    """Absent, null, empty string, zero or False count as missing."""
    if value is None or value is False:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == 0
    return False


def require_fields(
    payload: Optional[Dict[str, Any]],
    fields: Iterable[str],
    message: str = "Invalid request data",
    received: Any = None,
) -> Dict[str, Any]:
    """Raise invalid-argument unless every field is present on the payload."""
    payload = payload or {}
    missing = [f for f in fields if is_missing(payload.get(f))]
    if missing:
        raise InvalidArgumentError(
            f"{message}: missing {', '.join(missing)}",
            {"received": payload if received is None else received, "missing": missing},
        )
    return payload


def validate_chat_request(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Chat completion payloads need a model and messages."""
    return require_fields(payload, ("model", "messages"))


def validate_vision_request(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    payload = payload or {}
    if is_missing(payload.get("requests")) and is_missing(payload.get("imageContent")):
        raise InvalidArgumentError(
            "Invalid request data: either requests or imageContent is required",
            {"received": payload, "missing": ["requests", "imageContent"]},
        )
    return payload


def validate_gemini_request(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    payload = payload or {}
    contents = payload.get("contents")
    if not contents:
        raise InvalidArgumentError(
            "Invalid request data: contents is required",
            {"received": payload, "missing": ["contents"]},
        )
    return payload


def extract_base64_from_data_uri(value: Optional[str]) -> str:
    """
    Pull the base64 payload out of a data URI.

    Bare strings are returned unchanged; anything that does not match the
    data URI shape falls back to the text after the first comma, and then to
    the original string.
    """
    if not value:
        return ""

    if not value.startswith("data:"):
        return value

    match = DATA_URI_RE.match(value)
    if match:
        return match.group(1)

    if "," in value:
        return value.split(",", 1)[1]

    return value


def ensure_data_uri(value: str, mime_type: str = "image/jpeg") -> str:
    if value.startswith("data:"):
        return value
    return f"data:{mime_type};base64,{value}"
