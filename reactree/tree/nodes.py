"""Task Node variants for ReAcTree.

The execution tree is a closed tagged variant over ``kind``:

    Leaf | Sequence | Parallel | Fallback | Loop | Conditional

``TaskNode`` is the pydantic discriminated union of the six models, so a
plan validated through it always yields exactly one of them and the
executor can match on the concrete class exhaustively.

Runtime fields (``state``, ``attempt_count``, ``result``, ``failure``) are
owned by the executor for the duration of a run.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated, Any, Iterator, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from reactree.core.exceptions import TreeDefinitionError
from reactree.core.models import FailureInfo, NodeKind, NodeState, WorkerRef
from reactree.gates.policies import Policy

if TYPE_CHECKING:
    from reactree.gates.evaluator import QualityGateEvaluator
    from reactree.memory.store import MemoryStore


class Guard(BaseModel):
    """A predicate over Working Memory.

    Holds iff the latest record for ``fact_type`` exists in the run and its
    payload passes ``policy`` (inline) and ``gate`` (named), when given.
    """
    fact_type: str
    policy: Optional[Policy] = None
    gate: Optional[str] = None

    def holds(
        self,
        store: "MemoryStore",
        run_id: str,
        evaluator: Optional["QualityGateEvaluator"] = None,
    ) -> bool:
        record = store.read_latest(run_id, self.fact_type)
        if record is None:
            return False
        if self.policy is not None or self.gate is not None:
            if evaluator is None:
                raise TreeDefinitionError(
                    f"Guard on '{self.fact_type}' needs a quality gate evaluator"
                )
            if self.policy is not None and not evaluator.check_policy(self.policy, record.payload).passed:
                return False
            if self.gate is not None and not evaluator.evaluate(self.gate, record.payload).passed:
                return False
        return True


class _NodeBase(BaseModel):
    id: str = Field(min_length=1)
    quality_gate: Optional[str] = None
    description: str = ""

    # Runtime state
    state: NodeState = NodeState.PENDING
    attempt_count: int = 0
    result: Any = None
    failure: Optional[FailureInfo] = None
    cancelled: bool = False
    duration_seconds: float = 0.0

    def reset(self) -> None:
        """Return this node (not its children) to Pending."""
        self.state = NodeState.PENDING
        self.attempt_count = 0
        self.result = None
        self.failure = None
        self.cancelled = False
        self.duration_seconds = 0.0


class LeafNode(_NodeBase):
    kind: Literal["Leaf"] = "Leaf"
    worker_ref: WorkerRef
    writes: Optional[str] = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    @property
    def children(self) -> list["TaskNode"]:
        return []

    @property
    def fact_type(self) -> str:
        """Working-memory tag the Leaf's result is written under."""
        return self.writes or self.id


class SequenceNode(_NodeBase):
    kind: Literal["Sequence"] = "Sequence"
    children: list["TaskNode"] = Field(default_factory=list)


class ParallelNode(_NodeBase):
    kind: Literal["Parallel"] = "Parallel"
    children: list["TaskNode"] = Field(default_factory=list)


class FallbackNode(_NodeBase):
    kind: Literal["Fallback"] = "Fallback"
    children: list["TaskNode"] = Field(min_length=1)


class LoopNode(_NodeBase):
    kind: Literal["Loop"] = "Loop"
    children: list["TaskNode"]
    until: Guard
    max_iterations: Optional[int] = Field(default=None, ge=1)
    iterations: int = 0

    @model_validator(mode="after")
    def _single_body(self) -> "LoopNode":
        if len(self.children) != 1:
            raise ValueError(f"Loop '{self.id}' needs exactly one child, got {len(self.children)}")
        return self

    @property
    def body(self) -> "TaskNode":
        return self.children[0]

    def reset(self) -> None:
        super().reset()
        self.iterations = 0


class Branch(BaseModel):
    """One guarded arm of a Conditional. ``when=None`` is the else arm."""
    when: Optional[Guard] = None
    node: "TaskNode"


class ConditionalNode(_NodeBase):
    kind: Literal["Conditional"] = "Conditional"
    branches: list[Branch] = Field(min_length=1)
    selected: Optional[str] = None

    @property
    def children(self) -> list["TaskNode"]:
        return [b.node for b in self.branches]

    def reset(self) -> None:
        super().reset()
        self.selected = None


TaskNode = Annotated[
    Union[LeafNode, SequenceNode, ParallelNode, FallbackNode, LoopNode, ConditionalNode],
    Field(discriminator="kind"),
]

ControlNode = Union[SequenceNode, ParallelNode, FallbackNode, LoopNode, ConditionalNode]

for _model in (SequenceNode, ParallelNode, FallbackNode, LoopNode, Branch, ConditionalNode):
    _model.model_rebuild()


# ---------------------------------------------------------------------------
# Tree helpers
# ---------------------------------------------------------------------------

def walk(node: TaskNode) -> Iterator[TaskNode]:
    """Pre-order traversal."""
    yield node
    for child in node.children:
        yield from walk(child)


def index_nodes(root: TaskNode) -> dict[str, TaskNode]:
    """Map node id -> node, rejecting duplicate ids."""
    index: dict[str, TaskNode] = {}
    for node in walk(root):
        if node.id in index:
            raise TreeDefinitionError(f"Duplicate node id '{node.id}'")
        index[node.id] = node
    return index


def parent_map(root: TaskNode) -> dict[str, TaskNode]:
    """Map child id -> parent node."""
    parents: dict[str, TaskNode] = {}
    for node in walk(root):
        for child in node.children:
            parents[child.id] = node
    return parents


def reset_subtree(node: TaskNode) -> None:
    for n in walk(node):
        n.reset()


def skip_subtree(node: TaskNode, cancelled: bool = False) -> None:
    """Mark every non-terminal node under ``node`` (inclusive) Skipped."""
    for n in walk(node):
        if not n.state.terminal:
            n.state = NodeState.SKIPPED
            n.cancelled = cancelled


def summarize_tree(node: TaskNode) -> dict[str, Any]:
    """Nested shape summary stored on Episode Records."""
    summary: dict[str, Any] = {
        "id": node.id,
        "kind": node.kind,
        "state": node.state.value,
        "attempt_count": node.attempt_count,
    }
    if node.failure is not None:
        summary["failure_kind"] = node.failure.failure_kind.value
    if isinstance(node, LeafNode):
        summary["worker"] = node.worker_ref.worker
    if node.children:
        summary["children"] = [summarize_tree(child) for child in node.children]
    return summary
