"""Control-Flow Executor for ReAcTree.

Drives a task tree to terminal states:

- Leaf: invoke the worker with the Working-Memory snapshot and a deadline,
  gate the result, write it to memory; on failure ask the Feedback
  Coordinator whether to retry.
- Sequence: children in order, stop at the first Failed child.
- Parallel: children on a thread pool; the first terminal failure cancels
  every sibling still in flight.
- Fallback: children in order, stop at the first success.
- Loop: run the body, then test the exit guard, up to max_iterations.
- Conditional: run the first branch whose guard holds.

Sequence, Fallback, Loop and Conditional never run children concurrently;
only siblings under a Parallel do. Siblings of a Parallel may not write
the same fact_type: the second writer fails with MEMORY_CONFLICT.

StorageFatalError and RunAbortedError are not node failures. They
propagate out of ``execute`` and the Orchestrator aborts the run.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed, wait
from typing import Any, Optional, assert_never

from reactree.core.config import OrchestratorConfig
from reactree.core.exceptions import MemoryConflictError, RunAbortedError
from reactree.core.models import (
    Decision,
    DecisionAction,
    FailureInfo,
    FailureKind,
    FeedbackSignal,
    MemoryRecord,
    NodeKind,
    NodeState,
    WorkerResult,
)
from reactree.gates.evaluator import QualityGateEvaluator
from reactree.memory.store import MemoryStore
from reactree.orchestrator.cancellation import CancellationToken
from reactree.orchestrator.feedback import FeedbackCoordinator
from reactree.tree.nodes import (
    ConditionalNode,
    FallbackNode,
    LeafNode,
    LoopNode,
    ParallelNode,
    SequenceNode,
    TaskNode,
    reset_subtree,
    skip_subtree,
    walk,
)
from reactree.workers.base import WorkerInvocation, WorkerRegistry

logger = logging.getLogger("reactree.orchestrator.executor")


class ParallelScope:
    """fact_type write claims made by the branches of one Parallel execution."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        self._claims: dict[str, tuple[int, str]] = {}
        self._lock = threading.Lock()

    def claim(self, branch: int, fact_type: str, node_id: str) -> None:
        with self._lock:
            owner = self._claims.get(fact_type)
            if owner is None:
                self._claims[fact_type] = (branch, node_id)
            elif owner[0] != branch:
                raise MemoryConflictError(fact_type, node_id, owner[1])


# Enclosing Parallel scopes, outermost first, with the branch taken in each.
ScopeChain = tuple[tuple[ParallelScope, int], ...]


class ControlFlowExecutor:
    """Walks one run's task tree.

    Usage:
        executor = ControlFlowExecutor(run_id, store, workers, coordinator)
        state = executor.execute(root)
    """

    def __init__(
        self,
        run_id: str,
        store: MemoryStore,
        workers: WorkerRegistry,
        coordinator: FeedbackCoordinator,
        evaluator: Optional[QualityGateEvaluator] = None,
        config: Optional[OrchestratorConfig] = None,
    ):
        self.run_id = run_id
        self.store = store
        self.workers = workers
        self.coordinator = coordinator
        self.evaluator = evaluator or QualityGateEvaluator()
        self.config = config or OrchestratorConfig()
        self.token = CancellationToken()

    def cancel(self, reason: str = "run cancelled") -> None:
        """Withdraw the whole run; in-flight leaves end Skipped."""
        self.token.cancel(reason)

    def execute(
        self,
        node: TaskNode,
        token: Optional[CancellationToken] = None,
        scope: ScopeChain = (),
    ) -> NodeState:
        """Drive ``node`` to a terminal state and return it.

        Re-executing a Succeeded node is a no-op. A Failed or Skipped node
        is reset and run again.
        """
        if node.state == NodeState.SUCCEEDED:
            logger.debug("Node '%s' already succeeded, not re-running", node.id)
            return node.state
        token = token or self.token
        if token.cancelled:
            skip_subtree(node, cancelled=True)
            return node.state
        if node.state.terminal:
            reset_subtree(node)

        node.state = NodeState.RUNNING
        logger.debug("Node '%s' (%s) running", node.id, node.kind)
        start = time.monotonic()
        try:
            match node:
                case LeafNode():
                    self._execute_leaf(node, token, scope)
                case SequenceNode():
                    node.attempt_count += 1
                    self._execute_sequence(node, token, scope)
                case ParallelNode():
                    node.attempt_count += 1
                    self._execute_parallel(node, token, scope)
                case FallbackNode():
                    node.attempt_count += 1
                    self._execute_fallback(node, token, scope)
                case LoopNode():
                    node.attempt_count += 1
                    self._execute_loop(node, token, scope)
                case ConditionalNode():
                    node.attempt_count += 1
                    self._execute_conditional(node, token, scope)
                case _:
                    assert_never(node)
        finally:
            node.duration_seconds = time.monotonic() - start

        logger.info(
            "Node '%s' (%s) -> %s%s",
            node.id, node.kind, node.state.value,
            " (cancelled)" if node.cancelled else "",
        )
        return node.state

    # -------------------------------------------------------------------
    # Leaf
    # -------------------------------------------------------------------

    def _execute_leaf(self, node: LeafNode, token: CancellationToken, scope: ScopeChain) -> None:
        while True:
            if token.cancelled:
                self._mark_cancelled(node)
                return
            node.state = NodeState.RUNNING
            node.attempt_count += 1
            result = self._invoke(node, token)
            if token.cancelled and not result.succeeded:
                self._mark_cancelled(node)
                return

            failure = self._accept(node, result, scope)
            if failure is None:
                node.result = result.output
                node.failure = None
                node.state = NodeState.SUCCEEDED
                return

            node.failure = failure
            try:
                decision = self._report(node, failure)
            except RunAbortedError:
                node.state = NodeState.FAILED
                raise
            if decision.action == DecisionAction.RETRY:
                node.state = NodeState.PENDING
                logger.debug("Leaf '%s' back to Pending for attempt %d", node.id, node.attempt_count + 1)
                continue
            if decision.action == DecisionAction.SUBSTITUTE:
                logger.info(
                    "Leaf '%s' handed over to fallback sibling '%s'",
                    node.id, decision.alternate_node_id,
                )
            node.state = NodeState.FAILED
            return

    def _invoke(self, node: LeafNode, token: CancellationToken) -> WorkerResult:
        """Run one worker attempt, enforcing the deadline and cancellation."""
        timeout = node.timeout_seconds or self.config.leaf_timeout_seconds
        deadline = time.monotonic() + timeout
        invocation = WorkerInvocation(
            worker_ref=node.worker_ref,
            run_id=self.run_id,
            node_id=node.id,
            attempt=node.attempt_count,
            deadline=deadline,
            memory=self.store.snapshot(self.run_id),
            token=token.child(),
        )

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"leaf-{node.id}")
        try:
            future = pool.submit(self.workers.invoke, invocation)
            while True:
                remaining = deadline - time.monotonic()
                done, _ = wait([future], timeout=max(0.0, min(self.config.cancellation_poll_seconds, remaining)))
                if done:
                    return future.result()
                if token.cancelled:
                    return self._failed_result(
                        node, f"cancelled: {token.reason}", FailureKind.WORKER_ERROR,
                    )
                if time.monotonic() >= deadline:
                    invocation.token.cancel("deadline exceeded")
                    logger.warning("Leaf '%s' exceeded its %.1fs deadline", node.id, timeout)
                    return self._failed_result(
                        node, f"deadline of {timeout:g}s exceeded", FailureKind.TIMEOUT,
                    )
        finally:
            # A worker that ignores cancellation must not block the tree.
            pool.shutdown(wait=False)

    def _accept(self, node: LeafNode, result: WorkerResult, scope: ScopeChain) -> Optional[FailureInfo]:
        """Gate and persist a worker result. Returns the failure, if any."""
        if not result.succeeded:
            return FailureInfo(
                failure_kind=result.failure_kind or FailureKind.WORKER_ERROR,
                diagnostic=result.error or "worker reported failure",
            )

        if self.config.quality_gates_enabled and node.quality_gate:
            outcome = self.evaluator.evaluate(node.quality_gate, result.output)
            if not outcome.passed:
                return FailureInfo(
                    failure_kind=FailureKind.QUALITY_GATE_FAILED,
                    diagnostic=f"gate '{node.quality_gate}': {outcome.reason}",
                )

        writes: dict[str, Any] = {node.fact_type: result.output, **result.facts}
        try:
            for fact_type in writes:
                for parallel, branch in scope:
                    parallel.claim(branch, fact_type, node.id)
        except MemoryConflictError as e:
            logger.error("Memory conflict: %s", e)
            return FailureInfo(failure_kind=FailureKind.MEMORY_CONFLICT, diagnostic=str(e))

        for fact_type, payload in writes.items():
            self.store.write(MemoryRecord(
                run_id=self.run_id,
                producer_node_id=node.id,
                fact_type=fact_type,
                payload=payload,
            ))
        return None

    # -------------------------------------------------------------------
    # Control nodes
    # -------------------------------------------------------------------

    def _execute_sequence(self, node: SequenceNode, token: CancellationToken, scope: ScopeChain) -> None:
        for position, child in enumerate(node.children):
            state = self.execute(child, token, scope)
            if state == NodeState.FAILED:
                self._skip(node.children[position + 1:])
                self._fail_from_child(node, child)
                return
            if state == NodeState.SKIPPED and child.cancelled:
                self._mark_cancelled(node)
                return
        self._complete(node, node.children)

    def _execute_parallel(self, node: ParallelNode, token: CancellationToken, scope: ScopeChain) -> None:
        if not node.children:
            self._complete(node, [])
            return

        branch_token = token.child()
        parallel = ParallelScope(node.id)
        failed: Optional[TaskNode] = None
        fatal: Optional[BaseException] = None

        if not self.config.parallel_execution_enabled:
            for branch, child in enumerate(node.children):
                state = self.execute(child, branch_token, scope + ((parallel, branch),))
                if state == NodeState.FAILED:
                    failed = child
                    branch_token.cancel(f"sibling '{child.id}' failed")
                    break
        else:
            workers = min(len(node.children), self.config.max_parallel_workers)
            pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"parallel-{node.id}")
            try:
                futures = {
                    pool.submit(self.execute, child, branch_token, scope + ((parallel, branch),)): child
                    for branch, child in enumerate(node.children)
                }
                for future in as_completed(futures):
                    child = futures[future]
                    try:
                        state = future.result()
                    except Exception as e:
                        # Storage failure or abort: drain the pool, then re-raise.
                        if fatal is None:
                            fatal = e
                        branch_token.cancel(f"run aborted in '{child.id}'")
                        continue
                    if state == NodeState.FAILED and failed is None:
                        failed = child
                        branch_token.cancel(f"sibling '{child.id}' failed")
                        logger.info("Parallel '%s': '%s' failed, cancelling siblings", node.id, child.id)
            finally:
                pool.shutdown(wait=True)

        if fatal is not None:
            raise fatal
        if failed is not None:
            for child in node.children:
                skip_subtree(child, cancelled=True)
            self._fail_from_child(node, failed)
            return
        if token.cancelled:
            self._mark_cancelled(node)
            return
        self._complete(node, node.children)

    def _execute_fallback(self, node: FallbackNode, token: CancellationToken, scope: ScopeChain) -> None:
        last_failed: Optional[TaskNode] = None
        for position, child in enumerate(node.children):
            state = self.execute(child, token, scope)
            if state == NodeState.SUCCEEDED:
                self._skip(node.children[position + 1:])
                if position:
                    logger.info("Fallback '%s' recovered via '%s'", node.id, child.id)
                self._complete(node, [child])
                return
            if state == NodeState.SKIPPED and child.cancelled:
                self._mark_cancelled(node)
                return
            if state == NodeState.FAILED:
                last_failed = child
                logger.info("Fallback '%s': '%s' failed, trying next strategy", node.id, child.id)

        if last_failed is None:
            self._complete(node, [])
            return
        self._fail(node, FailureInfo(
            failure_kind=last_failed.failure.failure_kind if last_failed.failure else FailureKind.WORKER_ERROR,
            diagnostic=f"all {len(node.children)} strategies failed; last: '{last_failed.id}'",
        ))

    def _execute_loop(self, node: LoopNode, token: CancellationToken, scope: ScopeChain) -> None:
        bound = node.max_iterations or self.config.default_max_iterations
        body = node.body
        while True:
            if token.cancelled:
                self._mark_cancelled(node)
                return
            if node.iterations >= bound:
                self._fail(node, FailureInfo(
                    failure_kind=FailureKind.LOOP_BOUND_EXCEEDED,
                    diagnostic=f"exit condition on '{node.until.fact_type}' not met after {bound} iteration(s)",
                ))
                return

            node.iterations += 1
            if node.iterations > 1:
                reset_subtree(body)
            logger.debug("Loop '%s' iteration %d/%d", node.id, node.iterations, bound)
            state = self.execute(body, token, scope)

            if state == NodeState.SKIPPED and body.cancelled:
                self._mark_cancelled(node)
                return
            if state == NodeState.FAILED and body.failure and not body.failure.failure_kind.retryable:
                self._fail_from_child(node, body)
                return
            if node.until.holds(self.store, self.run_id, self.evaluator):
                self._complete(node, [body])
                return

    def _execute_conditional(self, node: ConditionalNode, token: CancellationToken, scope: ScopeChain) -> None:
        selected = None
        for branch in node.branches:
            if branch.when is None or branch.when.holds(self.store, self.run_id, self.evaluator):
                selected = branch
                break

        if selected is None:
            self._skip(node.children)
            self._fail(node, FailureInfo(
                failure_kind=FailureKind.NO_BRANCH_MATCHED,
                diagnostic=f"none of {len(node.branches)} guard(s) held",
            ))
            return

        node.selected = selected.node.id
        self._skip([b.node for b in node.branches if b is not selected])
        logger.debug("Conditional '%s' selected '%s'", node.id, node.selected)

        state = self.execute(selected.node, token, scope)
        if state == NodeState.SUCCEEDED:
            self._complete(node, [selected.node])
        elif state == NodeState.SKIPPED and selected.node.cancelled:
            self._mark_cancelled(node)
        else:
            self._fail_from_child(node, selected.node)

    # -------------------------------------------------------------------
    # State transitions
    # -------------------------------------------------------------------

    def _complete(self, node: TaskNode, children: list[TaskNode]) -> None:
        """Apply the aggregate quality gate, then mark Succeeded."""
        combined = {c.id: c.result for c in children if c.state == NodeState.SUCCEEDED}
        if self.config.quality_gates_enabled and node.quality_gate:
            outcome = self.evaluator.evaluate(node.quality_gate, combined)
            if not outcome.passed:
                self._fail(node, FailureInfo(
                    failure_kind=FailureKind.QUALITY_GATE_FAILED,
                    diagnostic=f"gate '{node.quality_gate}': {outcome.reason}",
                ))
                return
        node.result = combined
        node.state = NodeState.SUCCEEDED

    def _fail_from_child(self, node: TaskNode, child: TaskNode) -> None:
        kind = child.failure.failure_kind if child.failure else FailureKind.WORKER_ERROR
        reason = child.failure.diagnostic if child.failure else "failed"
        self._fail(node, FailureInfo(failure_kind=kind, diagnostic=f"child '{child.id}': {reason}"))

    def _fail(self, node: TaskNode, failure: FailureInfo) -> None:
        node.failure = failure
        node.state = NodeState.FAILED
        self._report(node, failure)

    def _report(self, node: TaskNode, failure: FailureInfo) -> Decision:
        return self.coordinator.report_failure(FeedbackSignal(
            node_id=node.id,
            node_kind=NodeKind(node.kind),
            failure_kind=failure.failure_kind,
            attempt_count=max(node.attempt_count, 1),
            diagnostic=failure.diagnostic,
        ))

    def _mark_cancelled(self, node: TaskNode) -> None:
        skip_subtree(node, cancelled=True)
        node.state = NodeState.SKIPPED
        node.cancelled = True

    @staticmethod
    def _skip(nodes: list[TaskNode]) -> None:
        for n in nodes:
            skip_subtree(n)

    @staticmethod
    def _failed_result(node: LeafNode, error: str, kind: FailureKind) -> WorkerResult:
        return WorkerResult(
            worker=node.worker_ref.worker,
            status="failure",
            error=error,
            failure_kind=kind,
        )


def finalize_tree(root: TaskNode, failure: FailureInfo) -> None:
    """Force every node of an interrupted run into a terminal state.

    Running nodes become Failed with ``failure``; Pending nodes are Skipped.
    """
    for node in walk(root):
        if node.state == NodeState.RUNNING:
            node.state = NodeState.FAILED
            if node.failure is None:
                node.failure = failure
        elif node.state == NodeState.PENDING:
            node.state = NodeState.SKIPPED
