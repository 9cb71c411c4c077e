# tests/unit/platform/test_records.py
"""Tests for the stream records response decoder."""

from __future__ import annotations

import json

import pytest

from enricher.platform.records import RecordDecodeError, parse_records_response

ROW = {"email": "a@x.com", "status": "ok"}


class TestParseRecordsResponse:
    @pytest.mark.parametrize(
        "payload",
        [
            [ROW],
            {"records": [ROW]},
            {"values": [ROW], "nextPageToken": "t"},
            {"values": [{"record": ROW}]},
            {"data": [{"value": ROW, "offset": 3}]},
            {"page": {"n": 1}, "rows": [ROW]},
        ],
    )
    def test_known_shapes(self, payload: object) -> None:
        assert parse_records_response(json.dumps(payload)) == [ROW]

    def test_empty_list(self) -> None:
        assert parse_records_response(b"[]") == []

    def test_non_object_items_are_skipped(self) -> None:
        assert parse_records_response(json.dumps([1, "x", ROW])) == [ROW]

    def test_envelope_key_with_wrong_type_falls_through(self) -> None:
        assert parse_records_response(json.dumps({"records": "none", "items": [ROW]})) == [ROW]

    def test_row_with_record_column_is_not_unwrapped(self) -> None:
        row = {"email": "a@x.com", "record": {"nested": True}}
        assert parse_records_response(json.dumps([row])) == [row]

    @pytest.mark.parametrize("body", [b"not json", b"42", b'{"count": 3}'])
    def test_unknown_shapes_rejected(self, body: bytes) -> None:
        with pytest.raises(RecordDecodeError):
            parse_records_response(body)
