# src/enricher/platform/sources.py
"""Secrets injected through the platform's SOURCE_CREDENTIALS file.

The file is a JSON object: source API name -> {secret name -> value}.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from pathlib import Path

from enricher.contracts.errors import ConfigurationError

# Secret names tried, in order, when the caller does not name one
API_KEY_CANDIDATE_NAMES: tuple[str, ...] = ("GEMINI_API_KEY", "GeminiAPIKey", "apiKey", "api_key", "apikey")

# Some source types expose secrets under this prefix
_ADDITIONAL_SECRET_PREFIX = "additionalSecret"


class SourceCredentials:
    """Parsed SOURCE_CREDENTIALS contents."""

    def __init__(self, sources: Mapping[str, Mapping[str, str]]) -> None:
        self._sources = {name: dict(secrets or {}) for name, secrets in sources.items()}

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> SourceCredentials:
        """Read the file named by SOURCE_CREDENTIALS.

        Raises:
            ConfigurationError: If the variable is unset or the file is unreadable
        """
        environ = os.environ if environ is None else environ
        path = environ.get("SOURCE_CREDENTIALS", "").strip()
        if not path:
            raise ConfigurationError("SOURCE_CREDENTIALS is not set")
        try:
            raw = json.loads(Path(path).read_text())
        except OSError as e:
            raise ConfigurationError(f"read SOURCE_CREDENTIALS file: {e}") from e
        except ValueError as e:
            raise ConfigurationError(f"parse SOURCE_CREDENTIALS JSON: {e}") from e
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ConfigurationError("SOURCE_CREDENTIALS must be a JSON object")
        return cls(raw)

    def source_names(self) -> list[str]:
        return sorted(name for name in self._sources if name.strip())

    def secret_names(self, source: str) -> list[str]:
        return sorted(name for name in self._sources.get(source.strip(), {}) if name.strip())

    def get_secret(self, source: str, secret: str) -> str | None:
        """Secret value by name, also trying the additionalSecret<Name> form."""
        secrets = self._sources.get(source.strip())
        secret = secret.strip()
        if not secrets or not secret:
            return None
        for key in (secret, _ADDITIONAL_SECRET_PREFIX + secret):
            value = str(secrets.get(key) or "").strip()
            if value:
                return value
        return None

    def pick_api_key(self, source: str, preferred_secret: str = "") -> str | None:
        """Find an API key within one source.

        Uses preferred_secret when given; otherwise the candidate names, then
        the source's only secret if it has exactly one.

        Raises:
            ConfigurationError: If the source does not exist
        """
        if source.strip() not in self._sources:
            raise ConfigurationError(
                f"SOURCE_CREDENTIALS missing source {source!r} (available sources: {self.source_names()})"
            )
        if preferred_secret.strip():
            return self.get_secret(source, preferred_secret)
        for candidate in API_KEY_CANDIDATE_NAMES:
            value = self.get_secret(source, candidate)
            if value:
                return value
        names = self.secret_names(source)
        if len(names) == 1:
            return self.get_secret(source, names[0])
        return None


def infer_api_key(credentials: SourceCredentials, source: str = "", secret: str = "") -> str:
    """Resolve the Gemini API key from source credentials.

    Args:
        credentials: Parsed SOURCE_CREDENTIALS
        source: GEMINI_SOURCE_API_NAME, if set
        secret: GEMINI_SOURCE_SECRET_NAME, if set

    Raises:
        ConfigurationError: If no key, or more than one candidate key, is found
    """
    if source.strip():
        key = credentials.pick_api_key(source, secret)
        if key:
            return key
        raise ConfigurationError(
            f"could not find Gemini API key in SOURCE_CREDENTIALS for source {source!r} "
            f"(available secrets: {credentials.secret_names(source)}); "
            "set GEMINI_SOURCE_SECRET_NAME or GEMINI_API_KEY"
        )

    names = credentials.source_names()
    if len(names) == 1:
        key = credentials.pick_api_key(names[0], secret)
        if key:
            return key
        raise ConfigurationError(
            f"could not infer Gemini API key from SOURCE_CREDENTIALS (source {names[0]!r} has secrets "
            f"{credentials.secret_names(names[0])}); set GEMINI_SOURCE_SECRET_NAME or GEMINI_API_KEY"
        )

    matches = [key for name in names if (key := credentials.pick_api_key(name, secret))]
    if len(matches) == 1:
        return matches[0]
    if len(matches) > 1:
        raise ConfigurationError(
            "multiple Sources in SOURCE_CREDENTIALS could provide the Gemini API key; "
            f"set GEMINI_SOURCE_API_NAME (available sources: {names})"
        )
    raise ConfigurationError(
        "could not infer Gemini API key from SOURCE_CREDENTIALS; set GEMINI_SOURCE_API_NAME and "
        f"GEMINI_SOURCE_SECRET_NAME (available sources: {names})"
    )
