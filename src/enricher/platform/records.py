# src/enricher/platform/records.py
"""Decoder for stream-proxy record list responses.

The response shape varies between stacks and versions. Known shapes:
- [ {..record..}, ... ]
- { "records": [ ... ] }
- { "values": [ ... ], "nextPageToken": "..." }
- { "values": [ {"record": {..}}, ... ] }

Decoding tries, in order: a bare list, an object holding one of the
well-known list keys, then the first object field that is a list holding
at least one object. Anything else is rejected rather than guessed.
"""

from __future__ import annotations

import json
from typing import Any

# Checked in this order before the generic fallback
ENVELOPE_KEYS: tuple[str, ...] = ("records", "values", "data", "items", "result")

# Per-item wrapper keys whose value is the actual record
RECORD_WRAPPER_KEYS: tuple[str, ...] = ("record", "value")


class RecordDecodeError(ValueError):
    """Response body matched none of the known record list shapes."""


def parse_records_response(body: bytes | str) -> list[dict[str, Any]]:
    """Decode a record list response body into row-shaped dicts.

    Raises:
        RecordDecodeError: If the body is not JSON or has an unknown shape
    """
    try:
        payload = json.loads(body)
    except ValueError as e:
        raise RecordDecodeError(f"parse stream records response: {e}") from e
    return [unwrap_record(item) for item in extract_record_list(payload)]


def extract_record_list(payload: Any) -> list[dict[str, Any]]:
    """Find the list of record objects inside a decoded JSON payload.

    Non-object list items are skipped.

    Raises:
        RecordDecodeError: If no record list can be found
    """
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]

    if isinstance(payload, dict):
        for key in ENVELOPE_KEYS:
            if key in payload:
                try:
                    return extract_record_list(payload[key])
                except RecordDecodeError:
                    continue

        for inner in payload.values():
            if isinstance(inner, list) and any(isinstance(item, dict) for item in inner):
                return extract_record_list(inner)
        raise RecordDecodeError("unexpected json object shape")

    raise RecordDecodeError(f"unexpected json type {type(payload).__name__}")


def unwrap_record(item: dict[str, Any]) -> dict[str, Any]:
    """Return the inner record of {"record": {...}}-style wrappers.

    Items that already look like rows (they carry an "email" key) are
    returned unchanged.
    """
    if "email" in item:
        return item
    for key in RECORD_WRAPPER_KEYS:
        inner = item.get(key)
        if isinstance(inner, dict):
            return inner
    return item
