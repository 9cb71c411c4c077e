# tests/unit/sinks/test_snapshot.py
"""Tests for the dataset snapshot sink."""

from __future__ import annotations

import pytest

from enricher.contracts.results import OutputRow
from enricher.core.context import RunContext
from enricher.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager
from enricher.io.csv_rows import CSVFormatError, read_rows_csv, rows_to_csv_bytes
from enricher.platform.env import DatasetRef
from enricher.platform.errors import PlatformHTTPError, is_transient
from enricher.sinks.snapshot import OpenTransactionNotFoundError, SnapshotSink
from tests.fixtures.fake_platform import FakePlatform

OUTPUT = DatasetRef(rid="ri.dataset.output")
FAST_RETRY = RetryManager(RetryConfig(max_attempts=3, base_delay=0.001, max_delay=0.001), is_retryable=is_transient)


@pytest.fixture
def ctx() -> RunContext:
    return RunContext()


def make_sink(platform: FakePlatform, **kwargs: str) -> SnapshotSink:
    return SnapshotSink(platform.client(), OUTPUT, FAST_RETRY, **kwargs)


class TestLoadCache:
    def test_missing_dataset_is_empty_cache(self, fake_platform: FakePlatform, ctx: RunContext) -> None:
        assert make_sink(fake_platform).load_cache(ctx) == {}

    def test_empty_snapshot_is_empty_cache(self, fake_platform: FakePlatform, ctx: RunContext) -> None:
        fake_platform.add_dataset(OUTPUT.rid, b"")
        assert make_sink(fake_platform).load_cache(ctx) == {}

    def test_prior_rows_indexed_by_email(self, fake_platform: FakePlatform, ctx: RunContext) -> None:
        rows = [OutputRow(email="a@x.com", status="ok"), OutputRow(email="b@x.com", status="error")]
        fake_platform.add_dataset(OUTPUT.rid, rows_to_csv_bytes(rows))
        cache = make_sink(fake_platform).load_cache(ctx)
        assert set(cache) == {"a@x.com", "b@x.com"}

    def test_forbidden_read_is_fatal(self, fake_platform: FakePlatform, ctx: RunContext) -> None:
        fake_platform.add_dataset(OUTPUT.rid, b"")
        fake_platform.forbidden.add(OUTPUT.rid)
        with pytest.raises(PlatformHTTPError) as exc_info:
            make_sink(fake_platform).load_cache(ctx)
        assert exc_info.value.status_code == 403

    def test_malformed_prior_output(self, fake_platform: FakePlatform, ctx: RunContext) -> None:
        fake_platform.add_dataset(OUTPUT.rid, b"email,company\na@x.com,Acme\n")
        with pytest.raises(CSVFormatError, match="parse prior output csv"):
            make_sink(fake_platform).load_cache(ctx)

    def test_transient_read_failure_is_retried(self, fake_platform: FakePlatform, ctx: RunContext) -> None:
        fake_platform.add_dataset(OUTPUT.rid, rows_to_csv_bytes([OutputRow(email="a@x.com", status="ok")]))
        fake_platform.fail("readTable", 503)
        assert list(make_sink(fake_platform).load_cache(ctx)) == ["a@x.com"]


class TestWrite:
    def test_creates_uploads_and_commits(self, fake_platform: FakePlatform, ctx: RunContext) -> None:
        sink = make_sink(fake_platform)
        rows = [OutputRow(email="a@x.com", company="Acme", status="ok")]
        sink.finish(rows, ctx)

        assert fake_platform.calls == ["createTransaction", "uploadFile", "commitTransaction"]
        assert sink.transaction is not None
        assert sink.transaction.created_by_us
        assert sink.transaction.committed
        assert read_rows_csv(fake_platform.tables[OUTPUT.rid]) == rows

    def test_custom_filename(self, fake_platform: FakePlatform, ctx: RunContext) -> None:
        make_sink(fake_platform, filename="out/result.csv").finish([], ctx)
        [txn] = fake_platform.committed()
        assert list(txn.files) == ["out/result.csv"]

    def test_blank_filename_uses_default(self, fake_platform: FakePlatform, ctx: RunContext) -> None:
        make_sink(fake_platform, filename="  ").finish([], ctx)
        [txn] = fake_platform.committed()
        assert list(txn.files) == ["enriched.csv"]

    def test_conflict_uploads_into_existing_transaction_without_commit(
        self, fake_platform: FakePlatform, ctx: RunContext
    ) -> None:
        existing = fake_platform.open_transaction(OUTPUT.rid)
        sink = make_sink(fake_platform)

        handle = sink.write_csv(b"email\n", ctx)

        assert handle.rid == existing
        assert not handle.created_by_us
        assert not handle.committed
        assert "commitTransaction" not in fake_platform.calls
        assert fake_platform.transactions[existing].files == {"enriched.csv": b"email\n"}
        assert fake_platform.transactions[existing].status == "OPEN"

    def test_conflict_without_open_transaction_listed(self, fake_platform: FakePlatform, ctx: RunContext) -> None:
        fake_platform.open_transaction(OUTPUT.rid)
        fake_platform.list_hides_open = True
        with pytest.raises(OpenTransactionNotFoundError):
            make_sink(fake_platform).write_csv(b"email\n", ctx)

    def test_non_conflict_create_error_propagates(self, fake_platform: FakePlatform, ctx: RunContext) -> None:
        fake_platform.fail("createTransaction", 400)
        with pytest.raises(PlatformHTTPError):
            make_sink(fake_platform).write_csv(b"email\n", ctx)

    def test_transient_upload_failures_are_retried(self, fake_platform: FakePlatform, ctx: RunContext) -> None:
        fake_platform.fail("uploadFile", 502, 429)
        handle = make_sink(fake_platform).write_csv(b"email\n", ctx)
        assert handle.committed
        assert fake_platform.calls.count("uploadFile") == 3

    def test_persistent_transient_failure_exhausts_retries(self, fake_platform: FakePlatform, ctx: RunContext) -> None:
        fake_platform.fail("commitTransaction", 500, 500, 500)
        with pytest.raises(MaxRetriesExceeded, match="commitTransaction"):
            make_sink(fake_platform).write_csv(b"email\n", ctx)

    def test_publish_is_a_no_op(self, fake_platform: FakePlatform, ctx: RunContext) -> None:
        make_sink(fake_platform).publish(OutputRow(email="a@x.com"), ctx)
        assert fake_platform.calls == []
