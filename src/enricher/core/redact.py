# src/enricher/core/redact.py
"""Secret redaction for error messages that end up in output rows and logs."""

from __future__ import annotations

import re

# "Bearer <token>" (JWTs and opaque tokens)
_BEARER_TOKEN = re.compile(r"\bBearer\s+[^\s\"']+", re.IGNORECASE)

# key=value / key: value forms that leak through exception strings
_API_KEY_KV = re.compile(
    r"\b(api[_-]?key|gemini[_-]?api[_-]?key)\b\s*[:=]\s*[^\s\"']+",
    re.IGNORECASE,
)


def redact(text: str) -> str:
    """Remove obvious secret-bearing substrings from text.

    Args:
        text: Free-form message, typically str(exception)

    Returns:
        Text with bearer tokens and api-key assignments masked, trimmed.
    """
    if not text:
        return ""
    out = _BEARER_TOKEN.sub("Bearer <redacted>", text)
    out = _API_KEY_KV.sub("<redacted_kv>", out)
    return out.strip()
