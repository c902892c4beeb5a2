"""Inbound chat request validation and upstream payload sanitizing."""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional

from models import ALLOWED_MODELS

MAX_MESSAGE_LENGTH = 32000
MAX_MESSAGES = 100
ALLOWED_ROLES = ("user", "assistant", "system")

DEFAULT_TEMPERATURE = 0.7
MIN_TEMPERATURE = 0.0
MAX_TEMPERATURE = 2.0
DEFAULT_MAX_TOKENS = 4096
MAX_MAX_TOKENS = 16384


def _validate_content_part(part: Any) -> Optional[str]:
    if not isinstance(part, dict):
        return "Invalid content part"
    kind = part.get("type")
    if kind == "text" and isinstance(part.get("text"), str):
        if len(part["text"]) > MAX_MESSAGE_LENGTH:
            return "Message too long"
        return None
    if kind == "image_url":
        image_url = part.get("image_url")
        if isinstance(image_url, dict) and isinstance(image_url.get("url"), str) and image_url["url"]:
            return None
    return "Invalid content part"


def validate_chat_body(body: Any) -> Optional[str]:
    """
    Check a chat request against the relay policy.

    Rules are checked in order and the first failure wins. Returns the error
    message, or None when the body may be forwarded.
    """
    if not isinstance(body, dict):
        return "Invalid body"
    model = body.get("model")
    if not isinstance(model, str) or model not in ALLOWED_MODELS:
        return "Unknown model"
    messages = body.get("messages")
    if not isinstance(messages, list) or not messages:
        return "No messages"
    if len(messages) > MAX_MESSAGES:
        return "Too many messages"

    for msg in messages:
        if not isinstance(msg, dict) or msg.get("role") not in ALLOWED_ROLES:
            return "Invalid role"
        content = msg.get("content")
        if isinstance(content, str):
            if len(content) > MAX_MESSAGE_LENGTH:
                return "Message too long"
        elif isinstance(content, list):
            for part in content:
                err = _validate_content_part(part)
                if err:
                    return err
        else:
            return "Content must be string or array"

    return None


def _as_number(value: Any) -> Optional[float]:
    """Coerce a JSON value to a finite float, or None."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(n):
        return None
    return n


def clamp_temperature(value: Any) -> float:
    """Clamp temperature to [0, 2]; non-numeric values fall back to 0.7."""
    n = _as_number(value)
    if n is None:
        return DEFAULT_TEMPERATURE
    return min(max(n, MIN_TEMPERATURE), MAX_TEMPERATURE)


def clamp_max_tokens(value: Any) -> int:
    """Clamp max_tokens to at most 16384; missing or non-positive values fall back to 4096."""
    n = _as_number(value)
    if n is None or int(n) <= 0:
        return DEFAULT_MAX_TOKENS
    return min(int(n), MAX_MAX_TOKENS)


def _sanitize_part(part: Dict[str, Any]) -> Dict[str, Any]:
    if part.get("type") == "image_url":
        return {"type": "image_url", "image_url": {"url": part["image_url"]["url"]}}
    return {"type": "text", "text": part.get("text")}


def _sanitize_message(msg: Dict[str, Any]) -> Dict[str, Any]:
    content = msg.get("content")
    if isinstance(content, list):
        return {"role": msg["role"], "content": [_sanitize_part(p) for p in content]}
    return {"role": msg["role"], "content": content}


def sanitize_params(body: Dict[str, Any]) -> Dict[str, Any]:
    """
    Rebuild a validated request into the exact payload sent upstream.

    Only model, messages, temperature and max_tokens survive; every content
    part is re-created from the whitelisted shapes so no extra upstream
    fields can be smuggled through.
    """
    max_tokens = body.get("max_tokens")
    if max_tokens is None:
        max_tokens = body.get("maxTokens")
    messages: List[Dict[str, Any]] = [_sanitize_message(m) for m in body.get("messages") or []]
    return {
        "model": body.get("model"),
        "messages": messages,
        "temperature": clamp_temperature(body.get("temperature")),
        "max_tokens": clamp_max_tokens(max_tokens),
    }
