# src/enricher/platform/keepalive.py
"""Background job polling that keeps a platform container marked responsive.

Some platform runtimes expect a long-running module to poll an internal job
endpoint. When GET_JOB_URI, POST_RESULT_URI and MODULE_AUTH_TOKEN are
injected, a daemon thread polls for jobs and acknowledges each one with
"ok". The enrichment run itself is unaffected.
"""

from __future__ import annotations

import os
import posixpath
import ssl
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import httpx
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_incrementing,
)

from enricher.contracts.errors import ConfigurationError
from enricher.core.config import read_value_or_file
from enricher.core.logging import get_logger
from enricher.core.redact import redact

logger = get_logger(__name__)

# Poll backoff after a failed GET, doubling up to the cap
_POLL_ERROR_INITIAL_SECONDS = 0.5
_POLL_ERROR_MAX_SECONDS = 5.0
_POLL_ERROR_WAIT = wait_exponential(multiplier=_POLL_ERROR_INITIAL_SECONDS, max=_POLL_ERROR_MAX_SECONDS)
# Pause between polls when no job is waiting
_IDLE_SECONDS = 0.5
# Extra attempts to post a result, waiting 1s, 2s, ... between them
_POST_RESULT_RETRIES = 5
_POST_RESULT_WAIT = wait_incrementing(start=1, increment=1)

type JobHandler = Callable[[dict[str, Any]], bytes]


def _ack(job: dict[str, Any]) -> bytes:
    return b"ok"


class _Stopped(Exception):
    """stop() was called while waiting to retry."""


@dataclass(frozen=True)
class KeepaliveConfig:
    """Endpoints and credentials for job polling."""

    get_job_uri: str
    post_result_uri: str
    module_auth_token: str
    ca_path: str

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> KeepaliveConfig | None:
        """Load from the environment.

        Returns:
            None if the job endpoints are not configured.

        Raises:
            ConfigurationError: If the endpoints are set but the token or CA path is missing
        """
        environ = os.environ if environ is None else environ
        get_job = normalize_localhost_uri(environ.get("GET_JOB_URI", ""))
        post_result = normalize_localhost_uri(environ.get("POST_RESULT_URI", ""))
        if not get_job or not post_result:
            return None

        token = read_value_or_file(environ.get("MODULE_AUTH_TOKEN", ""), "MODULE_AUTH_TOKEN")
        if not token:
            raise ConfigurationError("MODULE_AUTH_TOKEN is required when GET_JOB_URI/POST_RESULT_URI are set")
        ca_path = environ.get("DEFAULT_CA_PATH", "").strip()
        if not ca_path:
            raise ConfigurationError("DEFAULT_CA_PATH is required when GET_JOB_URI/POST_RESULT_URI are set")
        return cls(get_job_uri=get_job, post_result_uri=post_result, module_auth_token=token, ca_path=ca_path)


def normalize_localhost_uri(raw: str) -> str:
    """Rewrite localhost / ::1 hosts to 127.0.0.1.

    Runtime sidecars often bind IPv4 loopback only, while "localhost" may
    resolve to ::1 first.
    """
    raw = raw.strip()
    if not raw:
        return ""
    url = httpx.URL(raw)
    if url.host in ("localhost", "::1"):
        url = url.copy_with(host="127.0.0.1")
    return str(url)


class KeepaliveLoop:
    """Polls for runtime jobs on a daemon thread until stopped.

    Example:
        loop = KeepaliveLoop(config)
        loop.start()
        ...
        loop.stop()
    """

    def __init__(
        self,
        config: KeepaliveConfig,
        *,
        handler: JobHandler = _ack,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._config = config
        self._handler = handler
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        verify: ssl.SSLContext | bool = True
        if transport is None:
            verify = ssl.create_default_context(cafile=config.ca_path)
        self._client = httpx.Client(
            timeout=30.0,
            verify=verify,
            transport=transport,
            headers={"Module-Auth-Token": config.module_auth_token},
        )

    def start(self) -> None:
        logger.info("Keepalive polling enabled", get_job_uri=self._config.get_job_uri)
        self._thread = threading.Thread(target=self._run, name="enricher-keepalive", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._client.close()

    def wait(self) -> None:
        """Block until stop() is called from another thread."""
        self._stop.wait()

    def poll_once(self) -> bool:
        """Fetch and acknowledge at most one job.

        Returns:
            True if a job was handled, False if none was waiting.

        Raises:
            httpx.HTTPError: If the job request fails
        """
        job = self._next_job()
        if job is None:
            return False
        job_id = str(job.get("jobId") or "").strip()
        if not job_id:
            logger.warning("Keepalive received job without jobId; skipping")
            return False

        logger.info("Keepalive received job", job_id=job_id, query_type=job.get("queryType"))
        try:
            result = self._handler(job) or b"ok"
        except Exception as e:
            message = redact(str(e))
            logger.warning("Keepalive job failed", job_id=job_id, error=message)
            result = message.encode()
        self._post_result_with_retry(job_id, result)
        return True

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                handled = self._poll_with_retry()
            except _Stopped:
                return
            if not handled:
                self._stop.wait(_IDLE_SECONDS)

    def _sleep(self, seconds: float) -> None:
        if self._stop.wait(seconds):
            raise _Stopped()

    def _poll_with_retry(self) -> bool:
        # Fresh controller per poll so the backoff resets after a success
        def _before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "Keepalive get job failed",
                attempt=retry_state.attempt_number,
                error=redact(str(exc)),
            )

        for attempt in Retrying(
            wait=_POLL_ERROR_WAIT,
            retry=retry_if_exception_type((httpx.HTTPError, ValueError)),
            sleep=self._sleep,
            before_sleep=_before_sleep,
            reraise=True,
        ):
            with attempt:
                return self.poll_once()
        raise RuntimeError("Unexpected state in retry loop")  # pragma: no cover

    def _next_job(self) -> dict[str, Any] | None:
        response = self._client.get(self._config.get_job_uri, headers={"Accept": "application/json"})
        if response.status_code == 204:
            return None
        response.raise_for_status()
        envelope = response.json()
        job = envelope.get("computeModuleJobV1") if isinstance(envelope, dict) else None
        return job if isinstance(job, dict) else {}

    def _post_result(self, job_id: str, result: bytes) -> None:
        job_path = posixpath.normpath("/" + job_id).lstrip("/")
        url = f"{self._config.post_result_uri.rstrip('/')}/{job_path}"
        response = self._client.post(url, content=result, headers={"Content-Type": "application/octet-stream"})
        response.raise_for_status()

    def _post_result_with_retry(self, job_id: str, result: bytes) -> None:
        def _before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "Keepalive post result failed",
                job_id=job_id,
                attempt=retry_state.attempt_number,
                error=redact(str(exc)),
            )

        try:
            for attempt in Retrying(
                stop=stop_after_attempt(_POST_RESULT_RETRIES + 1),
                wait=_POST_RESULT_WAIT,
                retry=retry_if_exception_type(httpx.HTTPError),
                sleep=self._sleep,
                before_sleep=_before_sleep,
                reraise=True,
            ):
                with attempt:
                    self._post_result(job_id, result)
        except _Stopped:
            return
        except httpx.HTTPError as e:
            logger.warning(
                "Keepalive gave up posting result",
                job_id=job_id,
                attempts=_POST_RESULT_RETRIES + 1,
                error=redact(str(e)),
            )
