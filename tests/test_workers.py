"""Tests for reactree/workers — base lifecycle, registry, HTTP adapter, tokens."""

import json
import time

import httpx
import pytest

from reactree.core.config import HttpWorkerConfig
from reactree.core.exceptions import WorkerError, WorkerNotFoundError, WorkerTimeoutError
from reactree.core.models import FailureKind, WorkerRef, WorkerResult
from reactree.orchestrator.cancellation import CancellationToken
from reactree.workers.base import FunctionWorker, WorkerInvocation, WorkerRegistry
from reactree.workers.http import HttpWorker, build_http_workers

from tests.conftest import ScriptedWorker


def _invocation(worker="w", seconds=5.0, token=None, **payload):
    return WorkerInvocation(
        worker_ref=WorkerRef(worker=worker, payload=payload),
        run_id="run-1",
        node_id="node",
        attempt=1,
        deadline=time.monotonic() + seconds,
        memory={"plan": {"steps": 2}},
        token=token or CancellationToken(),
    )


class TestCancellationToken:
    def test_cancel_reaches_children(self):
        root = CancellationToken()
        child = root.child()
        grandchild = child.child()
        root.cancel("sibling failed")
        assert child.cancelled and grandchild.cancelled
        assert grandchild.reason == "sibling failed"

    def test_child_of_cancelled_parent_is_cancelled(self):
        root = CancellationToken()
        root.cancel("stop")
        assert root.child().cancelled

    def test_child_cancel_does_not_reach_parent(self):
        root = CancellationToken()
        root.child().cancel()
        assert not root.cancelled

    def test_wait_times_out(self):
        assert CancellationToken().wait(0.01) is False

    def test_cancel_is_idempotent(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.reason == "first"


class TestBaseWorker:
    def test_plain_value_becomes_success(self):
        result = ScriptedWorker("w", {"rows": 3}).run(_invocation())
        assert result.succeeded
        assert result.output == {"rows": 3}
        assert result.worker == "w"

    def test_worker_result_passes_through(self):
        scripted = WorkerResult(worker="w", status="success", output=1, facts={"note": "x"})
        result = ScriptedWorker("w", scripted).run(_invocation())
        assert result.facts == {"note": "x"}

    def test_exception_becomes_worker_error(self):
        worker = ScriptedWorker("w", RuntimeError("disk full"))
        result = worker.run(_invocation())
        assert not result.succeeded
        assert result.failure_kind == FailureKind.WORKER_ERROR
        assert "disk full" in result.error
        assert worker.get_metrics()["total_errors"] == 1

    def test_timeout_error_becomes_timeout(self):
        result = ScriptedWorker("w", WorkerTimeoutError("slow")).run(_invocation())
        assert result.failure_kind == FailureKind.TIMEOUT

    def test_cancelled_invocation(self):
        token = CancellationToken()
        token.cancel("sibling failed")

        def work(invocation):
            invocation.check_cancelled()
            return "never"

        result = FunctionWorker("f", work).run(_invocation(token=token))
        assert not result.succeeded
        assert "cancelled" in result.error

    def test_function_worker_sees_payload_and_memory(self):
        seen = {}

        def work(invocation):
            seen.update(payload=invocation.payload, memory=invocation.memory)
            return invocation.remaining_seconds() > 0

        result = FunctionWorker("f", work).run(_invocation(path="src"))
        assert result.output is True
        assert seen == {"payload": {"path": "src"}, "memory": {"plan": {"steps": 2}}}

    def test_duration_recorded(self):
        result = ScriptedWorker("w").run(_invocation())
        assert result.duration_seconds >= 0


class TestWorkerRegistry:
    def test_register_and_get(self):
        registry = WorkerRegistry([ScriptedWorker("b"), ScriptedWorker("a")])
        assert registry.names == ["a", "b"]
        assert "a" in registry
        assert registry.get("a").name == "a"

    def test_unknown_worker_raises_on_get(self):
        with pytest.raises(WorkerNotFoundError):
            WorkerRegistry().get("missing")

    def test_unknown_worker_is_a_failure_on_invoke(self):
        result = WorkerRegistry().invoke(_invocation(worker="missing"))
        assert result.status == "failure"
        assert result.failure_kind == FailureKind.WORKER_ERROR
        assert "missing" in result.error

    def test_invoke_dispatches_by_name(self):
        worker = ScriptedWorker("lint", "clean")
        registry = WorkerRegistry([worker])
        assert registry.invoke(_invocation(worker="lint")).output == "clean"
        assert worker.calls == 1


# ---------------------------------------------------------------------------
# HTTP worker
# ---------------------------------------------------------------------------

def _http_worker(handler, **config):
    cfg = HttpWorkerConfig(url="http://workers.test/run", backoff_seconds=0, **config)
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpWorker("remote", cfg, api_key="secret", client=client)


class TestHttpWorker:
    def test_success(self):
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            captured["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"status": "success", "output": {"ok": 1}, "facts": {"lint": "clean"}})

        result = _http_worker(handler).run(_invocation(worker="remote", path="src"))
        assert result.succeeded
        assert result.output == {"ok": 1}
        assert result.facts == {"lint": "clean"}
        assert captured["auth"] == "Bearer secret"
        assert captured["body"]["payload"] == {"path": "src"}
        assert captured["body"]["memory"] == {"plan": {"steps": 2}}
        assert captured["body"]["node_id"] == "node"

    def test_reported_failure(self):
        def handler(request):
            return httpx.Response(200, json={"status": "failure", "error": "tests red"})

        result = _http_worker(handler).run(_invocation())
        assert result.failure_kind == FailureKind.WORKER_ERROR
        assert result.error == "tests red"

    def test_client_error_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, text="bad payload")

        result = _http_worker(handler, transport_retries=3).run(_invocation())
        assert not result.succeeded
        assert "HTTP 400" in result.error
        assert len(calls) == 1

    def test_server_error_retried(self):
        responses = iter([
            httpx.Response(503),
            httpx.Response(200, json={"output": "recovered"}),
        ])

        def handler(request):
            return next(responses)

        result = _http_worker(handler, transport_retries=1).run(_invocation())
        assert result.succeeded
        assert result.output == "recovered"

    def test_server_error_exhausts_retries(self):
        def handler(request):
            return httpx.Response(500)

        result = _http_worker(handler, transport_retries=1).run(_invocation())
        assert "after 2 attempts" in result.error

    def test_timeout_maps_to_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        result = _http_worker(handler).run(_invocation())
        assert result.failure_kind == FailureKind.TIMEOUT

    def test_expired_deadline(self):
        def handler(request):
            return httpx.Response(200, json={})

        result = _http_worker(handler).run(_invocation(seconds=-1))
        assert result.failure_kind == FailureKind.TIMEOUT

    def test_non_json_body(self):
        def handler(request):
            return httpx.Response(200, text="<html>")

        result = _http_worker(handler).run(_invocation())
        assert "non-JSON" in result.error

    def test_unknown_status(self):
        def handler(request):
            return httpx.Response(200, json={"status": "maybe"})

        assert "Unknown worker status" in _http_worker(handler).run(_invocation()).error

    def test_to_result_rejects_non_object_facts(self):
        worker = _http_worker(lambda request: httpx.Response(200, json={}))
        with pytest.raises(WorkerError):
            worker._to_result({"facts": ["a"]})

    def test_build_http_workers(self):
        workers = build_http_workers({"review": HttpWorkerConfig(url="http://x/review")})
        assert [w.name for w in workers] == ["review"]
        workers[0].close()
