"""JSON helper utilities for provswitch."""

from __future__ import annotations

import json
from typing import Any, Optional

from provswitch.utils.log import get_logger


logger = get_logger()


def safe_parse_json(json_text: Optional[str], log_error: bool = True) -> Optional[Any]:
    """Best-effort json.loads wrapper that returns None on failure."""
    if not json_text:
        return None
    try:
        return json.loads(json_text)
    except (json.JSONDecodeError, TypeError, ValueError) as exc:
        if log_error:
            logger.debug(
                "[json_utils] Failed to parse JSON: %s: %s",
                type(exc).__name__,
                exc,
                extra={"length": len(json_text)},
            )
        return None


def parse_json_object(json_text: Optional[str]) -> Optional[dict[str, Any]]:
    """Parse text that must hold a JSON object.

    Empty text is an empty object. Anything unparsable or non-object returns None
    so callers can tell "mid-edit garbage" apart from "nothing there yet".
    """
    if json_text is None or not json_text.strip():
        return {}
    parsed = safe_parse_json(json_text)
    if isinstance(parsed, dict):
        return parsed
    return None


def dump_json(data: Any) -> str:
    """Serialize with the two-space layout used for hand-editable config text."""
    return json.dumps(data, indent=2, ensure_ascii=False)


def validate_auth_json(text: Optional[str]) -> str:
    """Return "" when ``text`` is a JSON object (or empty), else a user-facing message."""
    if text is None or not text.strip():
        return ""
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        return f"Invalid JSON: {exc.msg} (line {exc.lineno}, column {exc.colno})"
    if not isinstance(parsed, dict):
        return "auth must be a JSON object"
    return ""
