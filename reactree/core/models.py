"""Pydantic data models for ReAcTree.

Defines the data contracts shared by the executor, the Feedback
Coordinator, the Memory Store and the Orchestrator. Task nodes live in
reactree.tree.nodes because they carry behavior.
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from reactree.core.exceptions import ConfigError


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class NodeKind(str, enum.Enum):
    LEAF = "Leaf"
    SEQUENCE = "Sequence"
    PARALLEL = "Parallel"
    FALLBACK = "Fallback"
    LOOP = "Loop"
    CONDITIONAL = "Conditional"


class NodeState(str, enum.Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"

    @property
    def terminal(self) -> bool:
        return self in (NodeState.SUCCEEDED, NodeState.FAILED, NodeState.SKIPPED)


class FailureKind(str, enum.Enum):
    WORKER_ERROR = "WORKER_ERROR"
    TIMEOUT = "TIMEOUT"
    QUALITY_GATE_FAILED = "QUALITY_GATE_FAILED"
    LOOP_BOUND_EXCEEDED = "LOOP_BOUND_EXCEEDED"
    NO_BRANCH_MATCHED = "NO_BRANCH_MATCHED"
    MEMORY_CONFLICT = "MEMORY_CONFLICT"
    STORAGE_FATAL = "STORAGE_FATAL"

    @property
    def retryable(self) -> bool:
        """Whether the Feedback Coordinator may recover this locally."""
        return self in _RETRYABLE


_RETRYABLE = frozenset({
    FailureKind.WORKER_ERROR,
    FailureKind.TIMEOUT,
    FailureKind.QUALITY_GATE_FAILED,
})


class RunOutcome(str, enum.Enum):
    COMPLETED = "Completed"
    ABORTED = "Aborted"


class DecisionAction(str, enum.Enum):
    RETRY = "Retry"
    SUBSTITUTE = "Substitute"
    ESCALATE = "Escalate"


# ---------------------------------------------------------------------------
# Worker contracts
# ---------------------------------------------------------------------------

class WorkerRef(BaseModel):
    """Opaque reference to an external executor capability and its input."""
    model_config = ConfigDict(frozen=True)

    worker: str
    payload: dict[str, Any] = Field(default_factory=dict)


class WorkerResult(BaseModel):
    """Standardized output from any worker."""
    worker: str
    status: str  # "success", "failure"
    output: Any = None
    facts: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


# ---------------------------------------------------------------------------
# Memory records
# ---------------------------------------------------------------------------

class MemoryRecord(BaseModel):
    """A verified fact in Working Memory. Immutable once written."""
    model_config = ConfigDict(frozen=True)

    record_id: str = Field(default_factory=_new_id)
    run_id: str
    producer_node_id: str
    fact_type: str
    payload: Any = None
    timestamp: datetime = Field(default_factory=_now)


class EpisodeRecord(BaseModel):
    """Summary of a run that reached a terminal state."""
    model_config = ConfigDict(frozen=True)

    episode_id: str = Field(default_factory=_new_id)
    run_id: str
    request_fingerprint: str
    request: str = ""
    tree_shape_summary: dict[str, Any] = Field(default_factory=dict)
    outcome: RunOutcome
    duration_seconds: float = 0.0
    total_retries: int = 0
    diagnostic: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------

class FailureInfo(BaseModel):
    """Error descriptor stored on a Failed node."""
    failure_kind: FailureKind
    diagnostic: str = ""


class FeedbackSignal(BaseModel):
    """Failure notification routed to the Feedback Coordinator."""
    node_id: str
    node_kind: NodeKind = NodeKind.LEAF
    failure_kind: FailureKind
    attempt_count: int
    diagnostic: str = ""
    created_at: datetime = Field(default_factory=_now)


class Decision(BaseModel):
    """Coordinator verdict for a failed node."""
    action: DecisionAction
    alternate_node_id: Optional[str] = None
    alternate_worker_ref: Optional[WorkerRef] = None
    reason: str = ""

    @classmethod
    def retry(cls, reason: str = "") -> "Decision":
        return cls(action=DecisionAction.RETRY, reason=reason)

    @classmethod
    def escalate(cls, reason: str = "") -> "Decision":
        return cls(action=DecisionAction.ESCALATE, reason=reason)

    @classmethod
    def substitute(
        cls,
        alternate_node_id: str,
        alternate_worker_ref: Optional[WorkerRef] = None,
        reason: str = "",
    ) -> "Decision":
        return cls(
            action=DecisionAction.SUBSTITUTE,
            alternate_node_id=alternate_node_id,
            alternate_worker_ref=alternate_worker_ref,
            reason=reason,
        )


# ---------------------------------------------------------------------------
# Run request / summary
# ---------------------------------------------------------------------------

class RunConfiguration(BaseModel):
    """Per-run options recognized in a run request."""
    model_config = ConfigDict(extra="forbid")

    retry_budget: Optional[int] = Field(default=None, ge=0)
    run_wide_retry_ceiling: Optional[int] = Field(default=None, ge=0)
    quality_gates_enabled: Optional[bool] = None
    parallel_execution_enabled: Optional[bool] = None

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "RunConfiguration":
        """Validate a free-form configuration map, raising ConfigError."""
        try:
            return cls.model_validate(dict(data or {}))
        except ValidationError as e:
            raise ConfigError(f"Invalid run configuration: {e}") from e


class RunRequest(BaseModel):
    """A single opaque request plus optional configuration and plan."""
    request: str
    configuration: RunConfiguration = Field(default_factory=RunConfiguration)
    plan: Optional[dict[str, Any]] = None


class NodeFailure(BaseModel):
    node_id: str
    failure_kind: FailureKind
    diagnostic: str = ""
    attempt_count: int = 0


class RunSummary(BaseModel):
    """Final report of a run. Always lists failures, even on success."""
    run_id: str
    outcome: RunOutcome
    duration_seconds: float
    node_states: dict[str, NodeState] = Field(default_factory=dict)
    episode_id: Optional[str] = None
    failures: list[NodeFailure] = Field(default_factory=list)
    retry_counts: dict[str, int] = Field(default_factory=dict)
    total_retries: int = 0
    seeded_from_episode: Optional[str] = None
    abort_reason: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.outcome == RunOutcome.COMPLETED

    def failed_node_ids(self) -> list[str]:
        return [f.node_id for f in self.failures]
