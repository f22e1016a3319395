"""Worker invocation interface for ReAcTree.

Workers are the opaque specialists a Leaf delegates to. The orchestration
core never interprets what a worker does; it hands over the worker
reference, the visible Working-Memory snapshot, a deadline and a
cancellation token, and receives a WorkerResult back.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from reactree.core.exceptions import (
    WorkerCancelledError,
    WorkerNotFoundError,
    WorkerTimeoutError,
)
from reactree.core.models import FailureKind, WorkerRef, WorkerResult
from reactree.orchestrator.cancellation import CancellationToken


@dataclass
class WorkerInvocation:
    """Everything a worker receives for one Leaf attempt."""
    worker_ref: WorkerRef
    run_id: str
    node_id: str
    attempt: int
    deadline: float  # time.monotonic() value
    memory: dict[str, Any] = field(default_factory=dict)
    token: CancellationToken = field(default_factory=CancellationToken)

    @property
    def payload(self) -> dict[str, Any]:
        return self.worker_ref.payload

    def remaining_seconds(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def check_cancelled(self) -> None:
        """Raise WorkerCancelledError if the caller withdrew this invocation."""
        if self.token.cancelled:
            raise WorkerCancelledError(self.token.reason or "cancelled")


class BaseWorker(ABC):
    """Base class for all workers.

    Every worker follows the same lifecycle:
    1. Receive a WorkerInvocation
    2. Process it (call out to a model, a service, a script...)
    3. Return a WorkerResult, or any value to be treated as the output
    4. Log timing and errors throughout

    Subclasses must implement ``process()``. Exceptions never escape
    ``run()``; they become failure results.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(f"reactree.worker.{name.lower()}")
        self._metrics: dict[str, Any] = {
            "total_processed": 0,
            "total_errors": 0,
            "last_duration_seconds": 0.0,
        }

    @abstractmethod
    def process(self, invocation: WorkerInvocation) -> Any:
        """Do the work for one attempt.

        Returns:
            A WorkerResult, or a plain value used as the successful output.
        """

    def run(self, invocation: WorkerInvocation) -> WorkerResult:
        """Execute the worker with lifecycle logging and metrics."""
        self.logger.info(
            "[%s] Starting: node=%s attempt=%d",
            self.name, invocation.node_id, invocation.attempt,
        )
        start = time.monotonic()

        try:
            output = self.process(invocation)
        except WorkerCancelledError as e:
            result = self._failure(f"cancelled: {e}", FailureKind.WORKER_ERROR)
        except WorkerTimeoutError as e:
            result = self._failure(str(e), FailureKind.TIMEOUT)
        except Exception as e:
            self._metrics["total_errors"] += 1
            self.logger.error("[%s] Error: %s", self.name, e, exc_info=True)
            result = self._failure(str(e), FailureKind.WORKER_ERROR)
        else:
            if isinstance(output, WorkerResult):
                result = output
            else:
                result = WorkerResult(worker=self.name, status="success", output=output)
            self._metrics["total_processed"] += 1

        duration = time.monotonic() - start
        result.duration_seconds = duration
        self._metrics["last_duration_seconds"] = duration
        self.logger.info(
            "[%s] Complete: status=%s (%.2fs)", self.name, result.status, duration,
        )
        return result

    def get_metrics(self) -> dict[str, Any]:
        """Return a copy of the worker's runtime metrics."""
        return self._metrics.copy()

    def _failure(self, error: str, kind: FailureKind) -> WorkerResult:
        return WorkerResult(worker=self.name, status="failure", error=error, failure_kind=kind)


class FunctionWorker(BaseWorker):
    """Adapts a plain callable ``fn(invocation) -> value | WorkerResult``."""

    def __init__(self, name: str, fn: Callable[[WorkerInvocation], Any]):
        super().__init__(name=name)
        self._fn = fn

    def process(self, invocation: WorkerInvocation) -> Any:
        return self._fn(invocation)


class WorkerRegistry:
    """Resolves worker names from WorkerRef to worker instances."""

    def __init__(self, workers: Optional[list[BaseWorker]] = None):
        self._workers: dict[str, BaseWorker] = {}
        for worker in workers or []:
            self.register(worker)

    def register(self, worker: BaseWorker) -> "WorkerRegistry":
        self._workers[worker.name] = worker
        return self

    def get(self, name: str) -> BaseWorker:
        if name not in self._workers:
            raise WorkerNotFoundError(f"No worker registered as '{name}'")
        return self._workers[name]

    def __contains__(self, name: object) -> bool:
        return name in self._workers

    @property
    def names(self) -> list[str]:
        return sorted(self._workers)

    def invoke(self, invocation: WorkerInvocation) -> WorkerResult:
        """Run the worker named by the invocation's WorkerRef.

        An unknown worker is reported as a WORKER_ERROR failure rather than
        raised, so the Feedback Coordinator sees it like any other failure.
        """
        name = invocation.worker_ref.worker
        try:
            worker = self.get(name)
        except WorkerNotFoundError as e:
            return WorkerResult(
                worker=name,
                status="failure",
                error=str(e),
                failure_kind=FailureKind.WORKER_ERROR,
            )
        return worker.run(invocation)
