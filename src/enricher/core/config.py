# src/enricher/core/config.py
"""Configuration schema and loading for the enricher.

Settings are layered, highest priority first:
1. CLI flags (and their environment fallbacks such as WORKERS)
2. ENRICHER_* environment variables, e.g. ENRICHER_POOL__WORKERS=4
3. An optional YAML settings file
4. Defaults from the pydantic models below
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from enricher.contracts.errors import ConfigurationError
from enricher.pooling.config import PoolConfig

# Extra attempts per item when the command line does not say otherwise
DEFAULT_CLI_MAX_RETRIES = 3

DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"
DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

DEFAULT_OUTPUT_FILENAME = "enriched.csv"


class WriteMode(StrEnum):
    """How platform output is written."""

    AUTO = "auto"
    DATASET = "dataset"
    STREAM = "stream"

    @classmethod
    def parse(cls, raw: str | None) -> WriteMode:
        """Parse a user-supplied mode; blank means auto.

        Raises:
            ConfigurationError: If the mode is unknown
        """
        value = (raw or "").strip().lower()
        if not value:
            return cls.AUTO
        try:
            return cls(value)
        except ValueError:
            raise ConfigurationError(f"invalid output write mode {raw!r} (expected auto|dataset|stream)") from None


class GeminiSettings(BaseModel):
    """Gemini enrichment options.

    The API key is not part of this model; see
    enricher.enrich.gemini.resolve_api_key.
    """

    model_config = {"frozen": True, "extra": "forbid"}

    model: str = Field(DEFAULT_GEMINI_MODEL, min_length=1, description="Model name")
    base_url: str = Field(DEFAULT_GEMINI_BASE_URL, description="API root, without trailing /models")
    capture_audit: bool = Field(False, description="Record grounding sources and search queries")
    source_api_name: str = Field("", description="SOURCE_CREDENTIALS source holding the API key")
    source_secret_name: str = Field("", description="Secret name within that source")

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None, **defaults: Any) -> GeminiSettings:
        """Overlay GEMINI_* variables on defaults."""
        environ = os.environ if environ is None else environ
        values = dict(defaults)
        for env_name, field_name in (
            ("GEMINI_MODEL", "model"),
            ("GEMINI_BASE_URL", "base_url"),
            ("GEMINI_CAPTURE_AUDIT", "capture_audit"),
            ("GEMINI_SOURCE_API_NAME", "source_api_name"),
            ("GEMINI_SOURCE_SECRET_NAME", "source_secret_name"),
        ):
            raw = environ.get(env_name, "").strip()
            if raw:
                values[field_name] = raw
        return cls(**values)


class OutputSettings(BaseModel):
    """Where platform mode reads input and writes output."""

    model_config = {"frozen": True, "extra": "forbid"}

    input_alias: str = Field("input", min_length=1)
    output_alias: str = Field("output", min_length=1)
    filename: str = Field(DEFAULT_OUTPUT_FILENAME, min_length=1, description="File name inside the dataset")
    write_mode: WriteMode = WriteMode.AUTO

    @field_validator("write_mode", mode="before")
    @classmethod
    def _parse_write_mode(cls, v: Any) -> WriteMode:
        return v if isinstance(v, WriteMode) else WriteMode.parse(str(v) if v is not None else "")


class EnricherSettings(BaseModel):
    """Top-level settings."""

    model_config = {"frozen": True, "extra": "forbid"}

    pool: PoolConfig = Field(default_factory=lambda: PoolConfig(max_retries=DEFAULT_CLI_MAX_RETRIES))
    gemini: GeminiSettings = Field(default_factory=GeminiSettings)
    output: OutputSettings = Field(default_factory=OutputSettings)

    @model_validator(mode="before")
    @classmethod
    def _default_pool_retries(cls, data: Any) -> Any:
        """Give a partially specified pool section the CLI retry default."""
        if isinstance(data, dict) and isinstance(data.get("pool"), dict):
            pool = dict(data["pool"])
            pool.setdefault("max_retries", DEFAULT_CLI_MAX_RETRIES)
            data = {**data, "pool": pool}
        return data

    def with_pool_overrides(self, **overrides: Any) -> EnricherSettings:
        """Copy with pool fields replaced; None values are ignored.

        Raises:
            ValidationError: If the merged pool options are invalid
        """
        updates = {k: v for k, v in overrides.items() if v is not None}
        if not updates:
            return self
        pool = PoolConfig(**{**self.pool.model_dump(), **updates})
        return self.model_copy(update={"pool": pool})


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values."""

    def _expand_string(value: str) -> str:
        def replacer(match: re.Match[str]) -> str:
            env_value = os.environ.get(match.group(1))
            if env_value is not None:
                return env_value
            if match.group(2) is not None:
                return match.group(2)
            return match.group(0)

        return _ENV_VAR_PATTERN.sub(replacer, value)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _expand_string(value)
        if isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [_expand_value(item) for item in value]
        return value

    return {k: _expand_value(v) for k, v in config.items()}


def _lower_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    return value


def load_settings(config_path: Path | None = None) -> EnricherSettings:
    """Load settings from an optional YAML file with environment overrides.

    Environment variable format: ENRICHER_POOL__WORKERS=4 for nested keys.

    Args:
        config_path: YAML settings file, or None for environment and defaults only

    Returns:
        Validated EnricherSettings instance

    Raises:
        FileNotFoundError: If config_path is given but does not exist
        ValidationError: If configuration fails pydantic validation
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if config_path is not None and not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="ENRICHER",
        settings_files=[str(config_path)] if config_path is not None else [],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k.lower(): _lower_keys(v) for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    raw_config = _expand_env_vars(raw_config)
    return EnricherSettings(**raw_config)


def read_value_or_file(value: str, name: str, *, path_required: bool = False) -> str:
    """Return value itself, or the contents of the file it names.

    Secrets are injected either literally or as a path to a mounted file.
    An existing file is always read. With path_required, a value that
    contains "/" is taken to be a path and must be readable; otherwise it
    falls back to being used literally.

    Raises:
        ConfigurationError: If a required path cannot be read
    """
    value = value.strip()
    if not value or "\n" in value or "\r" in value:
        return value
    path = Path(value)
    if path.is_file() or (path_required and "/" in value):
        try:
            return path.read_text().strip()
        except OSError as e:
            raise ConfigurationError(f"read {name} file: {e}") from e
    return value


_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNIT_SECONDS = {"ns": 1e-9, "us": 1e-6, "µs": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(raw: str) -> float:
    """Parse "30s", "1m30s", "500ms" or a bare number of seconds.

    Raises:
        ValueError: If raw is not a non-negative duration
    """
    text = raw.strip()
    if not text:
        raise ValueError("empty duration")
    try:
        seconds = float(text)
    except ValueError:
        pos = 0
        seconds = 0.0
        for match in _DURATION_PART.finditer(text):
            if match.start() != pos:
                break
            seconds += float(match.group(1)) * _DURATION_UNIT_SECONDS[match.group(2)]
            pos = match.end()
        if pos != len(text) or pos == 0:
            raise ValueError(f"invalid duration {raw!r}") from None
    if seconds < 0:
        raise ValueError(f"invalid duration {raw!r}")
    return seconds
