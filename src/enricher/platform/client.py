# src/enricher/platform/client.py
"""HTTP client for the data platform's dataset, transaction and stream APIs.

One shared httpx.Client is used for all calls. httpx.Client is thread-safe,
so stream publishes from the pool's collector and reads from the
orchestrator share the connection pool.

Every non-2xx response raises PlatformHTTPError. Retrying is the caller's
job (see enricher.engine.retry).
"""

from __future__ import annotations

import posixpath
import ssl
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from enricher.core.logging import get_logger
from enricher.platform.env import DEFAULT_BRANCH, PlatformEnv
from enricher.platform.errors import PlatformHTTPError
from enricher.platform.records import parse_records_response

logger = get_logger(__name__)

# Whole-request timeout for platform calls
DEFAULT_TIMEOUT_SECONDS = 60.0

# Transaction listing page size and page limit when looking for an open one
LIST_TRANSACTIONS_PAGE_SIZE = 100
LIST_TRANSACTIONS_MAX_PAGES = 5


@dataclass(frozen=True, slots=True)
class Transaction:
    """One entry from the list-transactions endpoint."""

    rid: str
    status: str
    transaction_type: str = ""
    created_time: str = ""
    closed_time: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status.strip().upper() == "OPEN"


def _normalize_base_url(raw: str, name: str) -> str:
    raw = raw.strip()
    if not raw:
        raise ValueError(f"{name} base URL is required")
    if "://" not in raw:
        raw = "https://" + raw
    raw = raw.split("#", 1)[0].split("?", 1)[0]
    if not httpx.URL(raw).host:
        raise ValueError(f"{name} base URL must include a host (got {raw!r})")
    return raw.rstrip("/") + "/"


def _segment(value: str) -> str:
    return quote(value.strip(), safe="")


def _escape_file_path(path: str) -> str:
    """Escape each segment of a dataset file path, keeping "/" separators."""
    cleaned = posixpath.normpath("/" + path).lstrip("/")
    if cleaned in ("", "."):
        return ""
    return "/".join(quote(part, safe="") for part in cleaned.split("/"))


def _branch(branch: str | None) -> str:
    return (branch or "").strip() or DEFAULT_BRANCH


class PlatformClient:
    """Client for the API gateway and stream proxy.

    Example:
        with PlatformClient.from_env(env) as client:
            data = client.read_table_csv(ref.rid, ref.branch)
    """

    def __init__(
        self,
        api_gateway_url: str,
        stream_proxy_url: str,
        token: str,
        *,
        ca_path: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            api_gateway_url: e.g. "https://stack.example.com/api"
            stream_proxy_url: e.g. "https://stack.example.com/stream-proxy/api"
            token: Bearer token
            ca_path: Optional PEM bundle to trust instead of system roots
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self._api_base = _normalize_base_url(api_gateway_url, "api gateway")
        self._stream_base = _normalize_base_url(stream_proxy_url, "stream-proxy")
        verify: ssl.SSLContext | bool = True
        if ca_path:
            verify = ssl.create_default_context(cafile=ca_path)
        self._client = httpx.Client(
            timeout=timeout,
            verify=verify,
            transport=transport,
            headers={"Authorization": f"Bearer {token.strip()}"},
        )

    @classmethod
    def from_env(cls, env: PlatformEnv, **kwargs: Any) -> PlatformClient:
        return cls(
            env.services.api_gateway,
            env.services.stream_proxy,
            env.token,
            ca_path=env.default_ca_path,
            **kwargs,
        )

    def close(self) -> None:
        """Close the underlying httpx client and release connections."""
        self._client.close()

    def __enter__(self) -> PlatformClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _api(self, path: str) -> str:
        return self._api_base + path

    def _stream(self, path: str) -> str:
        return self._stream_base + path

    def _send(self, op: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        response = self._client.request(method, url, **kwargs)
        logger.debug("Platform call", op=op, method=method, status_code=response.status_code)
        if not response.is_success:
            raise PlatformHTTPError.from_response(op, response)
        return response

    # === Datasets ===

    def get_branch_transaction_rid(self, dataset_rid: str, branch: str | None = None) -> str:
        """RID of the latest transaction on a dataset branch ("" if none)."""
        url = self._api(f"v2/datasets/{_segment(dataset_rid)}/branches/{_segment(_branch(branch))}")
        response = self._send("getBranch", "GET", url, headers={"Accept": "application/json"})
        try:
            payload = response.json()
        except ValueError as e:
            raise ValueError(f"parse get branch response: {e}") from e
        return str(payload.get("transactionRid") or "").strip()

    def read_table_csv(self, dataset_rid: str, branch: str | None = None) -> bytes:
        """Read a dataset branch as CSV, pinned to the branch head transaction."""
        branch = _branch(branch)
        txn_rid = self.get_branch_transaction_rid(dataset_rid, branch)

        params = {"branchName": branch}
        if txn_rid:
            params["startTransactionRid"] = txn_rid
            params["endTransactionRid"] = txn_rid
        params["format"] = "CSV"

        url = self._api(f"v2/datasets/{_segment(dataset_rid)}/readTable")
        response = self._send("readTable", "GET", url, params=params, headers={"Accept": "text/csv"})
        return response.content

    # === Transactions ===

    def create_transaction(self, dataset_rid: str, branch: str | None = None) -> str:
        """Open a SNAPSHOT transaction and return its RID.

        Raises:
            PlatformHTTPError: 409 when another transaction is already open
        """
        params = {"branchName": branch.strip()} if branch and branch.strip() else None
        url = self._api(f"v2/datasets/{_segment(dataset_rid)}/transactions")
        response = self._send(
            "createTransaction",
            "POST",
            url,
            params=params,
            json={"transactionType": "SNAPSHOT"},
            headers={"Accept": "application/json"},
        )
        payload = response.json()
        txn_rid = str(payload.get("transactionId") or payload.get("rid") or "").strip()
        if not txn_rid:
            raise ValueError("create transaction response missing rid")
        return txn_rid

    def list_transactions(
        self,
        dataset_rid: str,
        *,
        page_size: int = LIST_TRANSACTIONS_PAGE_SIZE,
        page_token: str | None = None,
    ) -> tuple[list[Transaction], str | None]:
        """One page of transactions, newest first, plus the next page token."""
        params: dict[str, str | int] = {"preview": "true"}
        if page_size > 0:
            params["pageSize"] = page_size
        if page_token:
            params["pageToken"] = page_token

        url = self._api(f"v2/datasets/{_segment(dataset_rid)}/transactions")
        response = self._send("listTransactions", "GET", url, params=params, headers={"Accept": "application/json"})
        payload = response.json()
        transactions = [
            Transaction(
                rid=str(entry.get("rid") or "").strip(),
                status=str(entry.get("status") or ""),
                transaction_type=str(entry.get("transactionType") or ""),
                created_time=str(entry.get("createdTime") or ""),
                closed_time=entry.get("closedTime"),
            )
            for entry in payload.get("data") or []
        ]
        next_token = str(payload.get("nextPageToken") or "").strip() or None
        return transactions, next_token

    def find_latest_open_transaction(self, dataset_rid: str) -> str | None:
        """RID of the most recent OPEN transaction, or None.

        Listing is newest first, so the first OPEN entry wins. At most
        LIST_TRANSACTIONS_MAX_PAGES pages are scanned.
        """
        page_token: str | None = None
        for _ in range(LIST_TRANSACTIONS_MAX_PAGES):
            transactions, page_token = self.list_transactions(dataset_rid, page_token=page_token)
            for txn in transactions:
                if txn.is_open and txn.rid:
                    return txn.rid
            if not page_token:
                break
        return None

    def upload_file(
        self,
        dataset_rid: str,
        transaction_rid: str,
        file_path: str,
        content: bytes,
        *,
        content_type: str = "application/octet-stream",
    ) -> None:
        url = self._api(f"v2/datasets/{_segment(dataset_rid)}/files/{_escape_file_path(file_path)}/upload")
        params = {"transactionRid": transaction_rid.strip()} if transaction_rid.strip() else None
        self._send("uploadFile", "POST", url, params=params, content=content, headers={"Content-Type": content_type})

    def commit_transaction(self, dataset_rid: str, transaction_rid: str) -> None:
        url = self._api(f"v2/datasets/{_segment(dataset_rid)}/transactions/{_segment(transaction_rid)}/commit")
        self._send("commitTransaction", "POST", url, headers={"Accept": "application/json"})

    # === Streams ===

    def _records_url(self, stream_rid: str, branch: str | None) -> str:
        return self._stream(f"streams/{_segment(stream_rid)}/branches/{_segment(_branch(branch))}/records")

    def probe_stream(self, stream_rid: str, branch: str | None = None) -> bool:
        """True if stream-proxy serves the RID as a stream, False on 404.

        Raises:
            PlatformHTTPError: For any other non-2xx response
        """
        try:
            self._send("probeStream", "GET", self._records_url(stream_rid, branch), headers={"Accept": "application/json"})
        except PlatformHTTPError as e:
            if e.status_code == 404:
                return False
            raise
        return True

    def read_stream_records(self, stream_rid: str, branch: str | None = None) -> list[dict[str, Any]]:
        """All currently visible records on a stream branch, unwrapped."""
        response = self._send(
            "readStreamRecords",
            "GET",
            self._records_url(stream_rid, branch),
            headers={"Accept": "application/json"},
        )
        return parse_records_response(response.content)

    def publish_stream_record(self, stream_rid: str, branch: str | None, record: dict[str, Any]) -> None:
        url = self._stream(f"streams/{_segment(stream_rid)}/branches/{_segment(_branch(branch))}/jsonRecord")
        self._send("publishStreamRecord", "POST", url, json=record, headers={"Accept": "application/json"})
