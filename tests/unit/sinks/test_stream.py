# tests/unit/sinks/test_stream.py
"""Tests for the stream sink."""

from __future__ import annotations

import re

import pytest

from enricher.contracts.results import OutputRow, RowStatus
from enricher.core.context import RunContext
from enricher.engine.retry import RetryConfig, RetryManager
from enricher.platform.env import DatasetRef
from enricher.platform.errors import PlatformHTTPError, is_transient
from enricher.platform.records import RecordDecodeError
from enricher.sinks.stream import StreamSink, rfc3339_now
from tests.fixtures.fake_platform import FakePlatform

STREAM = DatasetRef(rid="ri.stream.output")
FAST_RETRY = RetryManager(RetryConfig(max_attempts=3, base_delay=0.001, max_delay=0.001), is_retryable=is_transient)


def make_sink(platform: FakePlatform) -> StreamSink:
    return StreamSink(platform.client(), STREAM, FAST_RETRY, run_id="run-1", clock=lambda: "2026-01-01T00:00:00Z")


class TestLoadCache:
    def test_records_become_cache(self, fake_platform: FakePlatform) -> None:
        fake_platform.add_stream(
            STREAM.rid,
            [
                {"email": "a@x.com", "status": "error", "run_id": "run-0"},
                {"email": "a@x.com", "status": "ok", "company": "Acme", "run_id": "run-0"},
                {"email": "b@x.com", "status": "ok", "title": None},
            ],
        )
        cache = make_sink(fake_platform).load_cache(RunContext())

        assert set(cache) == {"a@x.com", "b@x.com"}
        assert cache["a@x.com"].company == "Acme"
        assert cache["a@x.com"].is_ok
        assert cache["b@x.com"].title == ""

    def test_wrapped_records(self, fake_platform: FakePlatform) -> None:
        fake_platform.add_stream(STREAM.rid, [{"email": "a@x.com", "status": "ok"}])
        fake_platform.records_envelope = lambda records: {"values": [{"record": r} for r in records]}
        assert list(make_sink(fake_platform).load_cache(RunContext())) == ["a@x.com"]

    def test_forbidden_read_is_empty_cache(self, fake_platform: FakePlatform) -> None:
        fake_platform.add_stream(STREAM.rid, [{"email": "a@x.com", "status": "ok"}])
        fake_platform.forbidden_streams.add(STREAM.rid)
        assert make_sink(fake_platform).load_cache(RunContext()) == {}

    def test_missing_stream_is_fatal(self, fake_platform: FakePlatform) -> None:
        with pytest.raises(PlatformHTTPError) as exc_info:
            make_sink(fake_platform).load_cache(RunContext())
        assert exc_info.value.status_code == 404

    def test_unknown_response_shape(self, fake_platform: FakePlatform) -> None:
        fake_platform.add_stream(STREAM.rid)
        fake_platform.records_envelope = lambda records: {"count": 0}
        with pytest.raises(RecordDecodeError):
            make_sink(fake_platform).load_cache(RunContext())


class TestPublish:
    def test_publish_sends_stream_record(self, fake_platform: FakePlatform) -> None:
        fake_platform.add_stream(STREAM.rid)
        sink = make_sink(fake_platform)

        sink.publish(OutputRow(email="a@x.com", company="Acme", status=RowStatus.OK), RunContext())

        [record] = fake_platform.stream_records(STREAM.rid)
        assert record["email"] == "a@x.com"
        assert record["company"] == "Acme"
        assert record["title"] is None
        assert record["run_id"] == "run-1"
        assert record["written_at"] == "2026-01-01T00:00:00Z"
        assert sink.published == 1

    def test_publish_retries_transient_failures(self, fake_platform: FakePlatform) -> None:
        fake_platform.add_stream(STREAM.rid)
        fake_platform.fail("publishStreamRecord", 503)
        sink = make_sink(fake_platform)
        sink.publish(OutputRow(email="a@x.com"), RunContext())
        assert fake_platform.calls == ["publishStreamRecord", "publishStreamRecord"]
        assert sink.published == 1

    def test_finish_publishes_nothing(self, fake_platform: FakePlatform) -> None:
        fake_platform.add_stream(STREAM.rid)
        make_sink(fake_platform).finish([OutputRow(email="a@x.com")], RunContext())
        assert fake_platform.calls == []


def test_rfc3339_now_is_utc_with_z_suffix() -> None:
    assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?Z", rfc3339_now())
