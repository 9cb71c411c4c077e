# src/enricher/platform/env.py
"""Runtime environment for platform mode.

Resolved from the variables a platform container provides:
- FOUNDRY_SERVICE_DISCOVERY_V2: YAML file mapping service ids to URL lists
  (api_gateway, stream_proxy); FOUNDRY_URL is accepted when it is absent
- BUILD2_TOKEN: file holding the bearer token
- RESOURCE_ALIAS_MAP: JSON file mapping alias -> {rid, branch}
- DEFAULT_CA_PATH: optional PEM bundle to trust for TLS
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

from enricher.contracts.errors import ConfigurationError

DEFAULT_BRANCH = "master"


class DatasetRef(BaseModel):
    """A dataset or stream RID plus branch."""

    model_config = {"frozen": True, "extra": "ignore"}

    rid: str = Field(min_length=1)
    branch: str = DEFAULT_BRANCH

    @field_validator("rid")
    @classmethod
    def _strip_rid(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("rid is required")
        return v

    @field_validator("branch", mode="before")
    @classmethod
    def _default_branch(cls, v: str | None) -> str:
        if v is None or not str(v).strip():
            return DEFAULT_BRANCH
        return str(v).strip()


class Services(BaseModel):
    """Base URLs of the platform services the client calls."""

    model_config = {"frozen": True}

    api_gateway: str
    stream_proxy: str


class PlatformEnv(BaseModel):
    """Everything needed to talk to the platform."""

    model_config = {"frozen": True}

    services: Services
    token: str
    aliases: dict[str, DatasetRef]
    default_ca_path: str | None = None

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> PlatformEnv:
        """Load from environment variables.

        Raises:
            ConfigurationError: If a required variable or file is missing or malformed
        """
        environ = os.environ if environ is None else environ
        return cls(
            services=load_services(environ),
            token=_read_file_var(environ, "BUILD2_TOKEN"),
            aliases=_read_alias_map(environ, "RESOURCE_ALIAS_MAP"),
            default_ca_path=environ.get("DEFAULT_CA_PATH", "").strip() or None,
        )

    def resolve_alias(self, alias: str) -> DatasetRef:
        """Look up a dataset alias.

        Raises:
            ConfigurationError: If the alias is not in RESOURCE_ALIAS_MAP
        """
        try:
            return self.aliases[alias]
        except KeyError:
            raise ConfigurationError(f"missing alias {alias!r} in RESOURCE_ALIAS_MAP") from None


def load_services(environ: Mapping[str, str]) -> Services:
    """Service URLs from service discovery, falling back to FOUNDRY_URL."""
    discovery_path = environ.get("FOUNDRY_SERVICE_DISCOVERY_V2", "").strip()
    if discovery_path:
        return _load_discovery_file(Path(discovery_path))

    base_url = environ.get("FOUNDRY_URL", "").strip()
    if not base_url:
        raise ConfigurationError("FOUNDRY_SERVICE_DISCOVERY_V2 or FOUNDRY_URL is required")
    if "://" not in base_url:
        base_url = "https://" + base_url
    base_url = base_url.rstrip("/")
    return Services(api_gateway=f"{base_url}/api", stream_proxy=f"{base_url}/stream-proxy/api")


def _load_discovery_file(path: Path) -> Services:
    try:
        raw = yaml.safe_load(path.read_text())
    except OSError as e:
        raise ConfigurationError(f"read FOUNDRY_SERVICE_DISCOVERY_V2 file: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"parse FOUNDRY_SERVICE_DISCOVERY_V2 YAML: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError("FOUNDRY_SERVICE_DISCOVERY_V2 must be a mapping of service ids to URL lists")

    def first_url(key: str) -> str:
        values = raw.get(key)
        if isinstance(values, list) and values and str(values[0]).strip():
            return str(values[0]).strip()
        raise ConfigurationError(f"FOUNDRY_SERVICE_DISCOVERY_V2 missing {key}")

    return Services(api_gateway=first_url("api_gateway"), stream_proxy=first_url("stream_proxy"))


def _read_file_var(environ: Mapping[str, str], name: str) -> str:
    path = environ.get(name, "").strip()
    if not path:
        raise ConfigurationError(f"{name} is required")
    try:
        return Path(path).read_text().strip()
    except OSError as e:
        raise ConfigurationError(f"read {name} file: {e}") from e


def _read_alias_map(environ: Mapping[str, str], name: str) -> dict[str, DatasetRef]:
    content = _read_file_var(environ, name)
    try:
        raw = json.loads(content)
    except ValueError as e:
        raise ConfigurationError(f"parse {name} JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{name} must be a JSON object")

    aliases: dict[str, DatasetRef] = {}
    for alias, entry in raw.items():
        if not isinstance(entry, dict) or not str(entry.get("rid") or "").strip():
            raise ConfigurationError(f"alias {alias!r}: rid is required")
        aliases[alias] = DatasetRef(rid=str(entry["rid"]), branch=entry.get("branch"))
    return aliases
