"""Tree construction for ReAcTree.

How a request becomes a task tree is pluggable: anything with a
``build(request, hints)`` method can be handed to the Orchestrator. The
default policy, PlanTreeBuilder, validates a declarative plan (dict or
YAML) into TaskNode models and applies episodic hints.

Plan shorthand accepted on top of the model fields:

    {"id": "lint", "kind": "leaf", "worker": "linter", "payload": {...}}

is the same as ``{"kind": "Leaf", "worker_ref": {"worker": ..., "payload": ...}}``.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Optional, Protocol

import yaml
from pydantic import TypeAdapter, ValidationError

from reactree.core.exceptions import TreeDefinitionError
from reactree.core.models import NodeKind, RunRequest
from reactree.memory.episodes import PlanHints
from reactree.tree.nodes import FallbackNode, TaskNode, index_nodes, walk

logger = logging.getLogger("reactree.tree.builder")

_NODE_ADAPTER: TypeAdapter = TypeAdapter(TaskNode)
_KINDS = {kind.value.lower(): kind.value for kind in NodeKind}


class TreeBuilder(Protocol):
    def build(self, request: RunRequest, hints: Optional[PlanHints] = None) -> TaskNode:
        ...


def normalize_plan(plan: Any) -> dict[str, Any]:
    """Expand plan shorthand into the TaskNode model shape (returns a copy)."""
    if not isinstance(plan, dict):
        raise TreeDefinitionError(f"Plan node must be a mapping, got {type(plan).__name__}")
    node = copy.deepcopy(plan)

    kind = node.get("kind")
    if isinstance(kind, str):
        canonical = _KINDS.get(kind.lower())
        if canonical is None:
            raise TreeDefinitionError(f"Unknown node kind '{kind}' on node '{node.get('id')}'")
        node["kind"] = canonical
    elif kind is None and "worker" in node:
        node["kind"] = NodeKind.LEAF.value

    if node.get("kind") == NodeKind.LEAF.value and "worker_ref" not in node:
        if "worker" not in node:
            raise TreeDefinitionError(f"Leaf '{node.get('id')}' has no worker")
        node["worker_ref"] = {
            "worker": node.pop("worker"),
            "payload": node.pop("payload", None) or {},
        }

    if "children" in node:
        children = node["children"]
        if not isinstance(children, list):
            raise TreeDefinitionError(f"'children' of '{node.get('id')}' must be a list")
        node["children"] = [normalize_plan(child) for child in children]

    if "branches" in node:
        branches = node["branches"]
        if not isinstance(branches, list):
            raise TreeDefinitionError(f"'branches' of '{node.get('id')}' must be a list")
        normalized = []
        for branch in branches:
            if not isinstance(branch, dict) or "node" not in branch:
                raise TreeDefinitionError(f"Branch of '{node.get('id')}' needs a 'node'")
            normalized.append({**branch, "node": normalize_plan(branch["node"])})
        node["branches"] = normalized
    return node


def build_tree(plan: dict[str, Any]) -> TaskNode:
    """Validate a plan into a fresh TaskNode tree.

    Raises:
        TreeDefinitionError: On an invalid shape, missing fields, a Loop
            without exactly one child, or duplicate node ids.
    """
    try:
        root = _NODE_ADAPTER.validate_python(normalize_plan(plan))
    except ValidationError as e:
        raise TreeDefinitionError(f"Invalid plan: {e}") from e
    index_nodes(root)
    return root


def load_plan(path: Path) -> dict[str, Any]:
    """Read a YAML (or JSON) plan document."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise TreeDefinitionError(f"Cannot read plan {path}: {e}") from e
    except yaml.YAMLError as e:
        raise TreeDefinitionError(f"Malformed plan {path}: {e}") from e
    if not isinstance(data, dict):
        raise TreeDefinitionError(f"Plan {path} must be a mapping")
    return data


def apply_hints(root: TaskNode, hints: PlanHints) -> int:
    """Move each Fallback's previously winning child to the front.

    Returns the number of Fallback nodes reordered.
    """
    reordered = 0
    for node in walk(root):
        if not isinstance(node, FallbackNode):
            continue
        winner_id = hints.fallback_winners.get(node.id)
        if winner_id is None:
            continue
        position = next((i for i, c in enumerate(node.children) if c.id == winner_id), None)
        if not position:
            # Already first, or the winner is no longer in the plan
            continue
        winner = node.children.pop(position)
        node.children.insert(0, winner)
        reordered += 1
        logger.debug("Fallback '%s': trying '%s' first (previous winner)", node.id, winner_id)
    return reordered


class PlanTreeBuilder:
    """Builds trees from the request's plan, or a default plan."""

    def __init__(self, default_plan: Optional[dict[str, Any]] = None, use_hints: bool = True):
        self.default_plan = default_plan
        self.use_hints = use_hints

    def build(self, request: RunRequest, hints: Optional[PlanHints] = None) -> TaskNode:
        plan = request.plan if request.plan is not None else self.default_plan
        if plan is None:
            raise TreeDefinitionError("Run request carries no plan and no default plan is set")
        root = build_tree(plan)
        if hints is not None and self.use_hints and not hints.empty:
            count = apply_hints(root, hints)
            if count:
                logger.info("Applied episodic hints to %d fallback node(s)", count)
        return root
