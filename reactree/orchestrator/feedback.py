"""Feedback Coordinator for ReAcTree.

Central authority for the fate of a failed node. Per failing Leaf:

    Failed(attempt_count) -> attempt_count <= retry_budget ? Retry : Escalate

with two refinements: a Leaf that is not the last child of a Fallback may
be answered with Substitute (advance to the next sibling, no retry spent),
and a run-wide retry ceiling guarantees the feedback loop terminates.

One coordinator serves one run. Parallel branches report concurrently, so
all counters live behind a lock.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from reactree.core.config import OrchestratorConfig
from reactree.core.exceptions import RetryCeilingExceededError
from reactree.core.models import Decision, DecisionAction, FeedbackSignal, NodeKind
from reactree.tree.nodes import FallbackNode, LeafNode, TaskNode, parent_map

logger = logging.getLogger("reactree.orchestrator.feedback")


class FeedbackCoordinator:
    """Bounded retry / substitute / escalate state machine."""

    def __init__(
        self,
        root: Optional[TaskNode] = None,
        retry_budget: int = 2,
        run_wide_retry_ceiling: int = 10,
        prefer_substitution: bool = True,
    ):
        if retry_budget < 0 or run_wide_retry_ceiling < 0:
            raise ValueError("retry_budget and run_wide_retry_ceiling must be >= 0")
        self.retry_budget = retry_budget
        self.run_wide_retry_ceiling = run_wide_retry_ceiling
        self.prefer_substitution = prefer_substitution
        self._parents = parent_map(root) if root is not None else {}
        self._lock = threading.Lock()
        self._total_retries = 0
        self._retries: dict[str, int] = {}
        self._signals: list[FeedbackSignal] = []

    @classmethod
    def for_run(cls, root: TaskNode, config: OrchestratorConfig) -> "FeedbackCoordinator":
        return cls(
            root=root,
            retry_budget=config.retry_budget,
            run_wide_retry_ceiling=config.run_wide_retry_ceiling,
            prefer_substitution=config.prefer_fallback_substitution,
        )

    @property
    def total_retries(self) -> int:
        with self._lock:
            return self._total_retries

    @property
    def retry_counts(self) -> dict[str, int]:
        with self._lock:
            return dict(self._retries)

    @property
    def signals(self) -> list[FeedbackSignal]:
        with self._lock:
            return list(self._signals)

    def report_failure(self, signal: FeedbackSignal) -> Decision:
        """Decide what happens to a failed node.

        Raises:
            RetryCeilingExceededError: If granting a retry would push the
                run past its run-wide ceiling. The whole run must abort.
        """
        with self._lock:
            self._signals.append(signal)
            decision = self._decide(signal)

        log = logger.warning if decision.action == DecisionAction.ESCALATE else logger.info
        log(
            "Node '%s' failed (%s, attempt %d): %s%s",
            signal.node_id,
            signal.failure_kind.value,
            signal.attempt_count,
            decision.action.value,
            f" -> {decision.alternate_node_id}" if decision.alternate_node_id else "",
        )
        return decision

    def _decide(self, signal: FeedbackSignal) -> Decision:
        if signal.node_kind != NodeKind.LEAF:
            return Decision.escalate("control node applies its own semantics")

        if not signal.failure_kind.retryable:
            return Decision.escalate(f"{signal.failure_kind.value} is not retryable")

        if self.prefer_substitution:
            alternate = self._next_fallback_sibling(signal.node_id)
            if alternate is not None:
                worker_ref = alternate.worker_ref if isinstance(alternate, LeafNode) else None
                return Decision.substitute(
                    alternate.id,
                    alternate_worker_ref=worker_ref,
                    reason="enclosing fallback has another strategy",
                )

        # attempt_count includes the initial attempt.
        if signal.attempt_count - 1 < self.retry_budget:
            if self._total_retries + 1 > self.run_wide_retry_ceiling:
                logger.error(
                    "Run-wide retry ceiling reached (%d); aborting run",
                    self.run_wide_retry_ceiling,
                )
                raise RetryCeilingExceededError(
                    self._total_retries + 1, self.run_wide_retry_ceiling, node_id=signal.node_id,
                )
            self._total_retries += 1
            self._retries[signal.node_id] = self._retries.get(signal.node_id, 0) + 1
            return Decision.retry(
                f"retry {signal.attempt_count}/{self.retry_budget}"
            )

        return Decision.escalate(f"retry budget of {self.retry_budget} exhausted")

    def _next_fallback_sibling(self, node_id: str) -> Optional[TaskNode]:
        parent = self._parents.get(node_id)
        if not isinstance(parent, FallbackNode):
            return None
        ids = [child.id for child in parent.children]
        position = ids.index(node_id)
        if position + 1 >= len(ids):
            return None
        return parent.children[position + 1]
