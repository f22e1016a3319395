"""Orchestrator: the top-level run driver for ReAcTree.

    request -> fingerprint -> episodic lookup -> build tree -> execute
            -> exactly one Episode Record -> RunSummary

Episodic lookup is an optimization only: if it fails the run proceeds
without hints. Storage failures during execution abort the run; an
Aborted episode carrying the diagnostic is still attempted.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import Any, Mapping, Optional, Sequence, Union

from reactree.core.config import OrchestratorConfig
from reactree.core.exceptions import (
    PolicyError,
    RunAbortedError,
    StorageError,
    StorageFatalError,
)
from reactree.core.models import (
    EpisodeRecord,
    FailureInfo,
    FailureKind,
    FeedbackSignal,
    NodeFailure,
    NodeState,
    RunConfiguration,
    RunOutcome,
    RunRequest,
    RunSummary,
)
from reactree.gates.evaluator import QualityGateEvaluator, policy_refs
from reactree.memory.episodes import EpisodicMemory, PlanHints, fingerprint_request
from reactree.memory.store import MemoryStore
from reactree.orchestrator.executor import ControlFlowExecutor, finalize_tree
from reactree.orchestrator.feedback import FeedbackCoordinator
from reactree.orchestrator.metrics import WorkflowMetrics
from reactree.tree.builder import PlanTreeBuilder, TreeBuilder
from reactree.tree.nodes import ConditionalNode, LoopNode, TaskNode, index_nodes, summarize_tree, walk
from reactree.workers.base import WorkerRegistry

logger = logging.getLogger("reactree.orchestrator.run")


class Orchestrator:
    """Runs requests end to end.

    Usage:
        orchestrator = Orchestrator(store, workers, evaluator)
        summary = orchestrator.run(RunRequest(request="...", plan={...}))
    """

    def __init__(
        self,
        store: MemoryStore,
        workers: WorkerRegistry,
        evaluator: Optional[QualityGateEvaluator] = None,
        config: Optional[OrchestratorConfig] = None,
        tree_builder: Optional[TreeBuilder] = None,
        episodic: Optional[EpisodicMemory] = None,
        metrics: Optional[WorkflowMetrics] = None,
    ):
        self.store = store
        self.workers = workers
        self.evaluator = evaluator or QualityGateEvaluator()
        self.config = config or OrchestratorConfig()
        self.tree_builder = tree_builder or PlanTreeBuilder()
        self.episodic = episodic
        self.metrics = metrics
        self._active: dict[str, ControlFlowExecutor] = {}
        self._active_lock = threading.Lock()

    def run(
        self,
        request: Union[RunRequest, str],
        configuration: Optional[Mapping[str, Any]] = None,
        plan: Optional[dict[str, Any]] = None,
        run_id: Optional[str] = None,
    ) -> RunSummary:
        """Execute one request to a terminal Episode Record.

        Raises:
            ConfigError: Invalid configuration, plan or gate reference.
                Raised before anything is executed or recorded.
        """
        if isinstance(request, str):
            request = RunRequest(
                request=request,
                configuration=RunConfiguration.from_mapping(configuration),
                plan=plan,
            )
        config = self.config.with_overrides(request.configuration)
        run_id = run_id or str(uuid.uuid4())
        start = time.monotonic()

        fingerprint = fingerprint_request(request.request)
        hints = self._lookup_hints(fingerprint)
        root = self.tree_builder.build(request, hints)
        self._check_gates(root, config)

        coordinator = FeedbackCoordinator.for_run(root, config)
        executor = ControlFlowExecutor(
            run_id=run_id,
            store=self.store,
            workers=self.workers,
            coordinator=coordinator,
            evaluator=self.evaluator,
            config=config,
        )
        logger.info("Run %s started (fingerprint='%s')", run_id, fingerprint[:80])

        abort_reason: Optional[str] = None
        with self._active_lock:
            self._active[run_id] = executor
        try:
            executor.execute(root)
        except StorageFatalError as e:
            abort_reason = f"{FailureKind.STORAGE_FATAL.value}: {e}"
            logger.error("Run %s aborted by storage failure: %s", run_id, e)
            finalize_tree(root, FailureInfo(failure_kind=FailureKind.STORAGE_FATAL, diagnostic=str(e)))
        except RunAbortedError as e:
            abort_reason = str(e)
            logger.warning("Run %s aborted: %s", run_id, e)
            finalize_tree(root, _abort_failure(root, e))
        finally:
            with self._active_lock:
                self._active.pop(run_id, None)

        outcome = (
            RunOutcome.COMPLETED
            if abort_reason is None and root.state == NodeState.SUCCEEDED
            else RunOutcome.ABORTED
        )
        duration = time.monotonic() - start

        episode = EpisodeRecord(
            run_id=run_id,
            request_fingerprint=fingerprint,
            request=request.request,
            tree_shape_summary=summarize_tree(root),
            outcome=outcome,
            duration_seconds=round(duration, 4),
            total_retries=coordinator.total_retries,
            diagnostic=abort_reason or (root.failure.diagnostic if root.failure else None),
        )
        episode_id: Optional[str] = episode.episode_id
        try:
            self.store.write_episode(episode)
        except StorageError as e:
            logger.error("Run %s: episode could not be recorded: %s", run_id, e)
            episode_id = None

        self._record_metrics(run_id, root, coordinator.retry_counts)

        summary = RunSummary(
            run_id=run_id,
            outcome=outcome,
            duration_seconds=round(duration, 4),
            node_states={node.id: node.state for node in walk(root)},
            episode_id=episode_id,
            failures=_collect_failures(root, coordinator.signals),
            retry_counts=coordinator.retry_counts,
            total_retries=coordinator.total_retries,
            seeded_from_episode=hints.episode_id if hints else None,
            abort_reason=abort_reason,
        )
        log = logger.info if summary.completed else logger.warning
        log(
            "Run %s %s in %.2fs (%d failed node(s), %d retries)",
            run_id, outcome.value, duration, len(summary.failures), summary.total_retries,
        )
        return summary

    def cancel(self, run_id: str, reason: str = "run cancelled") -> bool:
        """Cancel an in-flight run. Returns False if no such run is active."""
        with self._active_lock:
            executor = self._active.get(run_id)
        if executor is None:
            return False
        executor.cancel(reason)
        return True

    def _lookup_hints(self, fingerprint: str) -> Optional[PlanHints]:
        if self.episodic is None:
            return None
        try:
            return self.episodic.hints_for(fingerprint)
        except StorageError as e:
            logger.warning("Episodic lookup failed, planning without hints: %s", e)
            return None

    def _check_gates(self, root: TaskNode, config: OrchestratorConfig) -> None:
        """Reject trees naming quality gates the evaluator does not know."""
        names: list[str] = []
        for node in walk(root):
            if config.quality_gates_enabled and node.quality_gate:
                names.append(node.quality_gate)
            guards = []
            if isinstance(node, LoopNode):
                guards.append(node.until)
            elif isinstance(node, ConditionalNode):
                guards.extend(b.when for b in node.branches if b.when is not None)
            for guard in guards:
                if guard.gate:
                    names.append(guard.gate)
                if guard.policy is not None:
                    names.extend(policy_refs(guard.policy))
        unknown = sorted({n for n in names if not self.evaluator.has_policy(n)})
        if unknown:
            raise PolicyError(f"Plan references unknown quality gate(s): {', '.join(unknown)}")

    def _record_metrics(self, run_id: str, root: TaskNode, retry_counts: dict[str, int]) -> None:
        if self.metrics is None:
            return
        try:
            self.metrics.record_run(run_id, root, retry_counts)
        except OSError as e:
            logger.warning("Failed to record workflow metrics for run %s: %s", run_id, e)


def _abort_failure(root: TaskNode, error: RunAbortedError) -> FailureInfo:
    """Failure recorded on the nodes still Running when ``error`` stopped the run.

    They inherit the failure kind of the node that triggered the abort; the
    diagnostic names the abort itself.
    """
    trigger = index_nodes(root).get(error.node_id) if error.node_id else None
    if trigger is None or trigger.failure is None:
        return FailureInfo(failure_kind=FailureKind.WORKER_ERROR, diagnostic=f"run aborted: {error}")
    return FailureInfo(
        failure_kind=trigger.failure.failure_kind,
        diagnostic=f"run aborted after '{trigger.id}' failed: {error}",
    )


def _collect_failures(root: TaskNode, signals: Sequence[FeedbackSignal]) -> list[NodeFailure]:
    """Every node that failed during the run, in tree order.

    Terminal failures come from node state. A node that failed and later
    recovered (a granted retry, or a fresh Loop iteration that reset it) is
    reported from its last feedback signal.
    """
    last_signal = {signal.node_id: signal for signal in signals}
    failures: list[NodeFailure] = []
    for node in walk(root):
        if node.state == NodeState.FAILED and node.failure is not None:
            failures.append(NodeFailure(
                node_id=node.id,
                failure_kind=node.failure.failure_kind,
                diagnostic=node.failure.diagnostic,
                attempt_count=node.attempt_count,
            ))
        elif node.id in last_signal:
            signal = last_signal[node.id]
            failures.append(NodeFailure(
                node_id=node.id,
                failure_kind=signal.failure_kind,
                diagnostic=signal.diagnostic,
                attempt_count=signal.attempt_count,
            ))
    return failures
