# src/enricher/platform/errors.py
"""HTTP errors from the data platform and the conditions the orchestrator acts on.

PlatformHTTPError is a sanitized summary of a non-2xx response: it keeps the
Conjure error envelope fields when present and otherwise a short redacted
snippet of the body. Raw bodies are never kept (they can carry PII or tokens).
"""

from __future__ import annotations

import errno
import json
from typing import Any

import httpx

from enricher.core.redact import redact

# Longest body prefix kept in a snippet
SNIPPET_MAX_CHARS = 256

# HTTP statuses retried by the platform call retry loop
TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({429})

OPEN_TRANSACTION_ERROR_NAME = "OpenTransactionAlreadyExists"
CONFLICT_ERROR_CODE = "CONFLICT"


class PlatformHTTPError(Exception):
    """Non-2xx response from a platform API.

    Attributes:
        op: Client operation name (e.g. "createTransaction")
        status_code: HTTP status code
        status: Status line text (e.g. "409 Conflict")
        error_name: Conjure errorName, if the body was an error envelope
        error_code: Conjure errorCode
        error_instance_id: Conjure errorInstanceId
        snippet: Redacted, truncated body hint when there was no envelope
    """

    def __init__(
        self,
        op: str,
        status_code: int,
        *,
        status: str = "",
        error_name: str = "",
        error_code: str = "",
        error_instance_id: str = "",
        snippet: str = "",
    ) -> None:
        self.op = op
        self.status_code = status_code
        self.status = status or str(status_code)
        self.error_name = error_name
        self.error_code = error_code
        self.error_instance_id = error_instance_id
        self.snippet = snippet
        super().__init__(self._render())

    def _render(self) -> str:
        parts = [f"platform api error: op={self.op} status={self.status}"]
        if self.error_name:
            parts.append(f"errorName={self.error_name}")
        if self.error_code:
            parts.append(f"errorCode={self.error_code}")
        if self.error_instance_id:
            parts.append(f"instance={self.error_instance_id}")
        if self.snippet:
            parts.append(f"body={self.snippet}")
        return " ".join(parts)

    @classmethod
    def from_response(cls, op: str, response: httpx.Response) -> PlatformHTTPError:
        """Summarize a failed response.

        Envelope fields win; the body snippet is used only without them.
        """
        status = f"{response.status_code} {response.reason_phrase}".strip()
        body = response.content
        envelope = _parse_envelope(body)
        if envelope is not None:
            name = str(envelope.get("errorName") or "").strip()
            code = str(envelope.get("errorCode") or "").strip()
            instance = str(envelope.get("errorInstanceId") or "").strip()
            if name or code or instance:
                return cls(
                    op,
                    response.status_code,
                    status=status,
                    error_name=name,
                    error_code=code,
                    error_instance_id=instance,
                )
        return cls(op, response.status_code, status=status, snippet=redact_and_truncate(body))


def _parse_envelope(body: bytes) -> dict[str, Any] | None:
    if not body:
        return None
    try:
        parsed = json.loads(body)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def redact_and_truncate(body: bytes) -> str:
    """Short, single-line, redacted hint of a response body."""
    if not body:
        return ""
    text = body[:SNIPPET_MAX_CHARS].decode("utf-8", errors="replace")
    text = redact(text).replace("\n", " ").replace("\r", " ").strip()
    if not text:
        return ""
    if len(body) > SNIPPET_MAX_CHARS:
        return text + "..."
    return text


def _status_code(err: BaseException) -> int | None:
    return err.status_code if isinstance(err, PlatformHTTPError) else None


def is_not_found(err: BaseException) -> bool:
    return _status_code(err) == 404


def is_forbidden(err: BaseException) -> bool:
    return _status_code(err) == 403


def is_open_transaction_conflict(err: BaseException) -> bool:
    """A 409 saying the dataset already has an open transaction."""
    if not isinstance(err, PlatformHTTPError) or err.status_code != 409:
        return False
    return err.error_name == OPEN_TRANSACTION_ERROR_NAME or err.error_code == CONFLICT_ERROR_CODE


def is_transient(err: BaseException) -> bool:
    """Whether a platform call failure is worth retrying.

    True for HTTP 429 and 5xx, expired deadlines, httpx timeouts and
    network errors, and OS-level connection reset/refused.
    """
    if isinstance(err, PlatformHTTPError):
        return err.status_code in TRANSIENT_STATUS_CODES or 500 <= err.status_code <= 599
    if isinstance(err, TimeoutError | httpx.TimeoutException | httpx.NetworkError):
        return True
    if isinstance(err, ConnectionResetError | ConnectionRefusedError):
        return True
    if isinstance(err, OSError) and err.errno in (errno.ECONNRESET, errno.ECONNREFUSED):
        return True
    return False
