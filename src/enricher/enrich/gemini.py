# src/enricher/enrich/gemini.py
"""Gemini enricher using the generateContent REST API.

Each call asks the model to look the email up with Google Search and URL
context grounding and to answer with a fixed JSON object. Upstream
failures are mapped onto the retry taxonomy:
- HTTP 429 and 5xx: RetryableError
- HTTP 499 / status CANCELLED: RetryableError capped at one extra attempt
- httpx timeouts and network errors: propagated, transient by classification
- Anything else: GeminiClientError (terminal)
"""

from __future__ import annotations

import json
import os
from collections.abc import Iterable, Mapping
from typing import Any

import httpx

from enricher.contracts.errors import ConfigurationError, EmptyIdentifierError, EnricherError, RetryableError
from enricher.contracts.results import EnrichmentResult
from enricher.core.config import GeminiSettings, read_value_or_file
from enricher.core.context import RunContext
from enricher.core.logging import get_logger
from enricher.core.redact import redact
from enricher.platform.sources import SourceCredentials, infer_api_key

logger = get_logger(__name__)

# Upstream cancelled mid-request; worth one more try, not the full budget
CANCELLED_MAX_EXTRA_RETRIES = 1

_CLIENT_CLOSED_REQUEST = 499

_RESULT_FIELDS: tuple[str, ...] = ("linkedin_url", "company", "title", "description", "confidence")

RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {name: {"type": "STRING"} for name in _RESULT_FIELDS},
    "required": list(_RESULT_FIELDS),
}

_PROMPT_TEMPLATE = """\
You are a data enrichment tool. Given an email address, use web search and URL context to find likely public profile/company information.

Return ONLY a single JSON object with these keys:
- linkedin_url (string)
- company (string)
- title (string)
- description (string)
- confidence (string; one of: low, medium, high)

Rules:
- If you cannot find a field, set it to an empty string.
- Do not include extra keys.

Email: {email}"""


class GeminiClientError(EnricherError):
    """Terminal Gemini failure (bad request, auth, unparseable output)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GeminiRateLimitError(RetryableError):
    """HTTP 429 from Gemini."""


class GeminiServerError(RetryableError):
    """HTTP 5xx from Gemini."""


class GeminiCancelledError(RetryableError):
    """Gemini reported the request as cancelled (HTTP 499 / CANCELLED)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, max_extra_retries=CANCELLED_MAX_EXTRA_RETRIES)


def build_prompt(email: str) -> str:
    return _PROMPT_TEMPLATE.format(email=email)


def _dedupe_preserve_order(values: Iterable[Any]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for value in values:
        text = str(value or "").strip()
        if text:
            seen.setdefault(text, None)
    return tuple(seen)


def extract_sources(candidate: Mapping[str, Any]) -> tuple[str, ...]:
    """Grounding chunk URIs then URL-context retrieved URLs, de-duplicated."""
    urls: list[Any] = []
    grounding = candidate.get("groundingMetadata") or {}
    for chunk in grounding.get("groundingChunks") or []:
        web = chunk.get("web") if isinstance(chunk, dict) else None
        if isinstance(web, dict):
            urls.append(web.get("uri"))
    url_context = candidate.get("urlContextMetadata") or {}
    for meta in url_context.get("urlMetadata") or []:
        if isinstance(meta, dict):
            urls.append(meta.get("retrievedUrl"))
    return _dedupe_preserve_order(urls)


def extract_web_search_queries(candidate: Mapping[str, Any]) -> tuple[str, ...]:
    grounding = candidate.get("groundingMetadata") or {}
    return _dedupe_preserve_order(grounding.get("webSearchQueries") or [])


def _error_details(response: httpx.Response) -> tuple[str, str]:
    """(status, message) from a Google API error envelope, if present."""
    try:
        payload = response.json()
    except ValueError:
        return "", redact(response.text[:256])
    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        return "", redact(response.text[:256])
    return str(error.get("status") or ""), redact(str(error.get("message") or ""))


def classify_response_error(response: httpx.Response) -> EnricherError:
    """Map a non-2xx generateContent response onto the error taxonomy."""
    status, message = _error_details(response)
    code = response.status_code
    text = f"gemini: http {code}"
    if status:
        text += f" {status}"
    if message:
        text += f": {message}"

    if code == _CLIENT_CLOSED_REQUEST or status == "CANCELLED":
        return GeminiCancelledError(text)
    if code == 429:
        return GeminiRateLimitError(text)
    if 500 <= code <= 599:
        return GeminiServerError(text)
    return GeminiClientError(text, status_code=code)


class GeminiEnricher:
    """Enricher backed by Gemini generateContent with search grounding.

    Example:
        with GeminiEnricher(api_key, GeminiSettings()) as enricher:
            result = enricher.enrich(ctx, "jane@example.com")
    """

    def __init__(
        self,
        api_key: str,
        settings: GeminiSettings,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the enricher.

        Args:
            api_key: Gemini API key
            settings: Model, base URL and audit capture options
            transport: Optional httpx transport (tests)

        Raises:
            ConfigurationError: If api_key is blank
        """
        if not api_key.strip():
            raise ConfigurationError("GEMINI_API_KEY is required")
        self.model = settings.model.strip()
        self._capture_audit = settings.capture_audit
        self._url = f"{settings.base_url.strip().rstrip('/')}/models/{self.model}:generateContent"
        self._client = httpx.Client(
            transport=transport,
            headers={"x-goog-api-key": api_key.strip(), "Content-Type": "application/json"},
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GeminiEnricher:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _request_body(self, email: str) -> dict[str, Any]:
        return {
            "contents": [{"role": "user", "parts": [{"text": build_prompt(email)}]}],
            "tools": [{"google_search": {}}, {"url_context": {}}],
            "generationConfig": {
                "candidateCount": 1,
                "responseMimeType": "application/json",
                "responseSchema": RESPONSE_SCHEMA,
            },
        }

    def enrich(self, ctx: RunContext, email: str) -> EnrichmentResult:
        """Enrich one email with a single generateContent call.

        Raises:
            EmptyIdentifierError: If email is blank
            RetryableError: For 429, 5xx and cancelled responses
            GeminiClientError: For other failures, including unparseable output
            httpx.TimeoutException: If the attempt's time budget runs out
            httpx.NetworkError: On connection failures
        """
        email = email.strip()
        if not email:
            raise EmptyIdentifierError()
        ctx.check()

        remaining = ctx.remaining()
        response = self._client.post(
            self._url,
            json=self._request_body(email),
            timeout=httpx.Timeout(remaining) if remaining is not None else httpx.USE_CLIENT_DEFAULT,
        )
        if not response.is_success:
            raise classify_response_error(response)

        try:
            payload = response.json()
        except ValueError as e:
            raise GeminiClientError(f"gemini: parse response: {e}") from e
        if not isinstance(payload, dict):
            raise GeminiClientError("gemini: unexpected response shape")
        candidates = payload.get("candidates") or []
        if not candidates:
            raise GeminiClientError("gemini: response has no candidates")
        candidate = candidates[0] if isinstance(candidates, list) else None
        if not isinstance(candidate, dict):
            raise GeminiClientError("gemini: unexpected candidate shape")
        if candidate.get("finishReason") == "CANCELLED":
            raise GeminiCancelledError("gemini: candidate finished with CANCELLED")

        content = candidate.get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            parts = []
        text = "".join(str(part.get("text") or "") for part in parts if isinstance(part, dict))
        try:
            parsed = json.loads(text)
        except ValueError as e:
            raise GeminiClientError(f"gemini: parse structured json: {e}") from e
        if not isinstance(parsed, dict):
            raise GeminiClientError("gemini: structured json is not an object")

        fields = {name: str(parsed.get(name) or "").strip() for name in _RESULT_FIELDS}
        if not self._capture_audit:
            return EnrichmentResult(**fields, model=self.model)
        return EnrichmentResult(
            **fields,
            model=self.model,
            sources=extract_sources(candidate),
            web_search_queries=extract_web_search_queries(candidate),
        )


def resolve_api_key(settings: GeminiSettings, environ: Mapping[str, str] | None = None) -> str:
    """Find the Gemini API key.

    GEMINI_API_KEY wins when set; it may be the key or a path to a file
    holding it. Otherwise the key is inferred from SOURCE_CREDENTIALS.

    Raises:
        ConfigurationError: If no key can be found
    """
    environ = os.environ if environ is None else environ
    raw = environ.get("GEMINI_API_KEY", "").strip()
    if raw:
        key = read_value_or_file(raw, "GEMINI_API_KEY", path_required=True)
        if not key:
            raise ConfigurationError("GEMINI_API_KEY is required")
        return key

    try:
        credentials = SourceCredentials.from_environ(environ)
    except ConfigurationError as e:
        raise ConfigurationError(
            f"GEMINI_API_KEY is required (or configure Sources and provide SOURCE_CREDENTIALS): {e}"
        ) from e
    key = infer_api_key(credentials, settings.source_api_name, settings.source_secret_name)
    logger.debug("Gemini API key resolved from SOURCE_CREDENTIALS")
    return key
