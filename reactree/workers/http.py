"""HTTP worker adapter for ReAcTree.

Adapted from the httpx client pattern used for model providers: one
lazily-created httpx.Client, JSON in / JSON out, bounded backoff on
transient errors. The remaining Leaf deadline is the request timeout, so a
slow service surfaces as a TIMEOUT failure instead of blocking the tree.

Request body:
    {"run_id", "node_id", "attempt", "payload", "memory", "deadline_seconds"}

Expected response body:
    {"status": "success"|"failure", "output": ..., "facts": {...}, "error": ...}
"""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

import httpx

from reactree.core.config import HttpWorkerConfig
from reactree.core.exceptions import WorkerError, WorkerTimeoutError
from reactree.core.models import FailureKind, WorkerResult
from reactree.workers.base import BaseWorker, WorkerInvocation

logger = logging.getLogger("reactree.worker.http")


class HttpWorker(BaseWorker):
    """Delegates a Leaf to a remote service over HTTP."""

    def __init__(
        self,
        name: str,
        config: HttpWorkerConfig,
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ):
        super().__init__(name=name)
        self.config = config
        self.api_key = api_key if api_key is not None else os.getenv(config.api_key_env or "", "")
        self._client = client

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client()
        return self._client

    def process(self, invocation: WorkerInvocation) -> WorkerResult:
        body = {
            "run_id": invocation.run_id,
            "node_id": invocation.node_id,
            "attempt": invocation.attempt,
            "payload": invocation.payload,
            "memory": invocation.memory,
            "deadline_seconds": round(invocation.remaining_seconds(), 3),
        }
        headers = {"Content-Type": "application/json", **self.config.headers}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        data = self._post_with_retry(invocation, body, headers)
        return self._to_result(data)

    def _post_with_retry(
        self,
        invocation: WorkerInvocation,
        body: dict[str, Any],
        headers: dict[str, str],
    ) -> dict[str, Any]:
        """POST with exponential backoff on 429/5xx/network errors, bounded by the deadline."""
        last_error: Optional[Exception] = None
        attempts = self.config.transport_retries + 1

        for attempt in range(attempts):
            invocation.check_cancelled()
            remaining = invocation.remaining_seconds()
            if remaining <= 0:
                raise WorkerTimeoutError(f"Deadline exceeded calling {self.config.url}")

            try:
                resp = self.client.post(
                    self.config.url,
                    json=body,
                    headers=headers,
                    timeout=httpx.Timeout(remaining),
                )
            except httpx.TimeoutException as e:
                raise WorkerTimeoutError(f"Timed out calling {self.config.url}: {e}") from e
            except httpx.TransportError as e:
                last_error = e
                logger.warning("Network error calling %s: %s", self.config.url, e)
                self._backoff(invocation, attempt)
                continue

            if resp.status_code == 429 or resp.status_code >= 500:
                last_error = WorkerError(f"HTTP {resp.status_code} from {self.config.url}")
                logger.warning("Worker service returned %d, backing off", resp.status_code)
                self._backoff(invocation, attempt)
                continue
            if resp.status_code >= 400:
                raise WorkerError(f"HTTP {resp.status_code} from {self.config.url}: {resp.text[:200]}")

            try:
                data = resp.json()
            except ValueError as e:
                raise WorkerError(f"Worker service returned non-JSON body: {e}") from e
            if not isinstance(data, dict):
                raise WorkerError("Worker service returned a non-object JSON body")
            return data

        raise WorkerError(f"Request failed after {attempts} attempts: {last_error}")

    def _backoff(self, invocation: WorkerInvocation, attempt: int) -> None:
        delay = min(self.config.backoff_seconds * (2 ** attempt), invocation.remaining_seconds())
        if delay > 0:
            # Wakes early on cancellation.
            invocation.token.wait(delay)

    def _to_result(self, data: dict[str, Any]) -> WorkerResult:
        status = str(data.get("status", "success")).lower()
        if status not in ("success", "failure"):
            raise WorkerError(f"Unknown worker status '{status}'")
        facts = data.get("facts") or {}
        if not isinstance(facts, dict):
            raise WorkerError("Worker 'facts' must be an object")
        return WorkerResult(
            worker=self.name,
            status=status,
            output=data.get("output"),
            facts=facts,
            error=data.get("error"),
            failure_kind=FailureKind.WORKER_ERROR if status == "failure" else None,
        )

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None


def build_http_workers(configs: dict[str, HttpWorkerConfig]) -> list[HttpWorker]:
    """Instantiate one HttpWorker per configured endpoint."""
    workers = [HttpWorker(name=name, config=cfg) for name, cfg in configs.items()]
    if workers:
        logger.info("Configured %d HTTP worker(s): %s", len(workers), ", ".join(configs))
    return workers
