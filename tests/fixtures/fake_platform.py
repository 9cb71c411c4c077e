# tests/fixtures/fake_platform.py
"""In-memory data platform served through a respx router.

Covers the endpoints PlatformClient calls: branches, readTable,
transactions (create, list, commit), file upload, and stream-proxy
records and jsonRecord publishing. Every handled request is appended to
calls as its operation name, so tests can assert on call sequences.

Usage:
    platform = FakePlatform()
    platform.add_dataset("ri.input", b"email\\na@example.com\\n")
    with platform.client() as client:
        client.read_table_csv("ri.input")
    assert platform.calls == ["getBranch", "readTable"]
"""

from __future__ import annotations

import itertools
import json
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
import respx

from enricher.platform.client import PlatformClient
from enricher.platform.env import DatasetRef, PlatformEnv, Services

API_GATEWAY = "https://stack.test/api"
STREAM_PROXY = "https://stack.test/stream-proxy/api"
TOKEN = "test-token"

_API_PATH = "/api/v2/datasets/(?P<rid>[^/]+)"
_STREAM_PATH = "/stream-proxy/api/streams/(?P<rid>[^/]+)/branches/(?P<branch>[^/]+)"


@dataclass
class FakeTransaction:
    rid: str
    dataset_rid: str
    status: str = "OPEN"
    files: dict[str, bytes] = field(default_factory=dict)


def _conjure_error(status: int, name: str, code: str) -> httpx.Response:
    return httpx.Response(status, json={"errorCode": code, "errorName": name, "errorInstanceId": "test-instance"})


class FakePlatform:
    """Stateful fake of the dataset and stream APIs.

    Attributes:
        tables: Dataset RID -> current CSV snapshot
        streams: Stream RID -> visible records
        published: (stream RID, record) in publish order
        transactions: Transaction RID -> FakeTransaction
        forbidden: RIDs whose dataset reads answer 403
        forbidden_streams: Stream RIDs whose record reads answer 403
        failures: Operation name -> statuses returned before the real answer
        list_hides_open: Leave OPEN transactions out of listings
        calls: Operation names in request order
    """

    def __init__(self) -> None:
        self.tables: dict[str, bytes] = {}
        self.streams: dict[str, list[dict[str, Any]]] = {}
        self.published: list[tuple[str, dict[str, Any]]] = []
        self.transactions: dict[str, FakeTransaction] = {}
        self.forbidden: set[str] = set()
        self.forbidden_streams: set[str] = set()
        self.failures: dict[str, list[int]] = {}
        self.calls: list[str] = []
        self.records_envelope: Callable[[list[dict[str, Any]]], Any] = lambda records: records
        self.on_publish: Callable[[dict[str, Any]], None] | None = None
        self.list_hides_open = False
        self._txn_ids = itertools.count(1)
        self._lock = threading.Lock()
        self.router = respx.Router(assert_all_called=False)
        self._install_routes()

    # === Setup helpers ===

    def add_dataset(self, rid: str, content: bytes = b"") -> None:
        self.tables[rid] = content

    def add_stream(self, rid: str, records: list[dict[str, Any]] | None = None) -> None:
        self.streams[rid] = list(records or [])

    def open_transaction(self, dataset_rid: str) -> str:
        """Start a transaction owned by someone else."""
        rid = f"ri.txn.external-{next(self._txn_ids)}"
        self.transactions[rid] = FakeTransaction(rid=rid, dataset_rid=dataset_rid)
        return rid

    def fail(self, op: str, *statuses: int) -> None:
        """Answer the next len(statuses) calls to op with these statuses."""
        self.failures.setdefault(op, []).extend(statuses)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.router.handler)

    def client(self) -> PlatformClient:
        return PlatformClient(API_GATEWAY, STREAM_PROXY, TOKEN, transport=self.transport())

    def env(self, *, input_rid: str = "ri.dataset.input", output_rid: str = "ri.dataset.output") -> PlatformEnv:
        return PlatformEnv(
            services=Services(api_gateway=API_GATEWAY, stream_proxy=STREAM_PROXY),
            token=TOKEN,
            aliases={"input": DatasetRef(rid=input_rid), "output": DatasetRef(rid=output_rid)},
        )

    def stream_records(self, rid: str) -> list[dict[str, Any]]:
        return [record for stream_rid, record in self.published if stream_rid == rid]

    def committed(self) -> list[FakeTransaction]:
        return [txn for txn in self.transactions.values() if txn.status == "COMMITTED"]

    # === Routing ===

    def _install_routes(self) -> None:
        routes: list[tuple[str, str, str, Callable[..., httpx.Response]]] = [
            ("GET", "getBranch", rf"^{_API_PATH}/branches/(?P<branch>[^/]+)$", self._get_branch),
            ("GET", "readTable", rf"^{_API_PATH}/readTable$", self._read_table),
            ("POST", "createTransaction", rf"^{_API_PATH}/transactions$", self._create_transaction),
            ("GET", "listTransactions", rf"^{_API_PATH}/transactions$", self._list_transactions),
            ("POST", "commitTransaction", rf"^{_API_PATH}/transactions/(?P<txn>[^/]+)/commit$", self._commit),
            ("POST", "uploadFile", rf"^{_API_PATH}/files/(?P<path>.+)/upload$", self._upload),
            ("GET", "getStreamRecords", rf"^{_STREAM_PATH}/records$", self._get_records),
            ("POST", "publishStreamRecord", rf"^{_STREAM_PATH}/jsonRecord$", self._publish),
        ]
        for method, op, pattern, handler in routes:
            self.router.route(method=method, path__regex=pattern, name=op).mock(side_effect=self._recorded(op, handler))

    def _recorded(self, op: str, handler: Callable[..., httpx.Response]) -> Callable[..., httpx.Response]:
        def side_effect(request: httpx.Request, **params: str) -> httpx.Response:
            with self._lock:
                self.calls.append(op)
                pending = self.failures.get(op)
                if pending:
                    return httpx.Response(pending.pop(0), text="injected failure")
            return handler(request, **params)

        return side_effect

    def _get_branch(self, request: httpx.Request, rid: str, branch: str) -> httpx.Response:
        if rid in self.forbidden:
            return _conjure_error(403, "Datasets:PermissionDenied", "PERMISSION_DENIED")
        if rid not in self.tables:
            return _conjure_error(404, "Datasets:DatasetNotFound", "NOT_FOUND")
        return httpx.Response(200, json={"name": branch, "transactionRid": f"ri.txn.head-{rid}"})

    def _read_table(self, request: httpx.Request, rid: str) -> httpx.Response:
        if rid in self.forbidden:
            return _conjure_error(403, "Datasets:PermissionDenied", "PERMISSION_DENIED")
        if rid not in self.tables:
            return _conjure_error(404, "Datasets:DatasetNotFound", "NOT_FOUND")
        return httpx.Response(200, content=self.tables[rid], headers={"Content-Type": "text/csv"})

    def _create_transaction(self, request: httpx.Request, rid: str) -> httpx.Response:
        with self._lock:
            if any(txn.dataset_rid == rid and txn.status == "OPEN" for txn in self.transactions.values()):
                return _conjure_error(409, "OpenTransactionAlreadyExists", "CONFLICT")
            txn_rid = f"ri.txn.{next(self._txn_ids)}"
            self.transactions[txn_rid] = FakeTransaction(rid=txn_rid, dataset_rid=rid)
        return httpx.Response(200, json={"rid": txn_rid, "transactionType": "SNAPSHOT", "status": "OPEN"})

    def _list_transactions(self, request: httpx.Request, rid: str) -> httpx.Response:
        newest_first = [txn for txn in reversed(self.transactions.values()) if txn.dataset_rid == rid]
        if self.list_hides_open:
            newest_first = [txn for txn in newest_first if txn.status != "OPEN"]
        data = [{"rid": txn.rid, "status": txn.status, "transactionType": "SNAPSHOT"} for txn in newest_first]
        return httpx.Response(200, json={"data": data})

    def _commit(self, request: httpx.Request, rid: str, txn: str) -> httpx.Response:
        transaction = self.transactions.get(txn)
        if transaction is None or transaction.dataset_rid != rid:
            return _conjure_error(404, "Datasets:TransactionNotFound", "NOT_FOUND")
        if transaction.status != "OPEN":
            return _conjure_error(400, "Datasets:TransactionNotOpen", "INVALID_ARGUMENT")
        transaction.status = "COMMITTED"
        self.tables[rid] = b"".join(transaction.files.values())
        return httpx.Response(200, json={"rid": txn, "status": "COMMITTED"})

    def _upload(self, request: httpx.Request, rid: str, path: str) -> httpx.Response:
        transaction = self.transactions.get(request.url.params.get("transactionRid", ""))
        if transaction is None or transaction.status != "OPEN":
            return _conjure_error(400, "Datasets:TransactionNotOpen", "INVALID_ARGUMENT")
        transaction.files[path] = request.content
        return httpx.Response(200, json={"path": path, "transactionRid": transaction.rid})

    def _get_records(self, request: httpx.Request, rid: str, branch: str) -> httpx.Response:
        if rid not in self.streams:
            return _conjure_error(404, "StreamProxy:StreamNotFound", "NOT_FOUND")
        if rid in self.forbidden_streams:
            return _conjure_error(403, "StreamProxy:PermissionDenied", "PERMISSION_DENIED")
        return httpx.Response(200, json=self.records_envelope(list(self.streams[rid])))

    def _publish(self, request: httpx.Request, rid: str, branch: str) -> httpx.Response:
        if rid not in self.streams:
            return _conjure_error(404, "StreamProxy:StreamNotFound", "NOT_FOUND")
        record = json.loads(request.content)
        with self._lock:
            self.published.append((rid, record))
            self.streams[rid].append(record)
        if self.on_publish is not None:
            self.on_publish(record)
        return httpx.Response(200, json={})
