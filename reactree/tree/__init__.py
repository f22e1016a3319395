"""Task tree model and construction."""

from reactree.tree.builder import PlanTreeBuilder, TreeBuilder, build_tree, load_plan
from reactree.tree.nodes import (
    Branch,
    ConditionalNode,
    FallbackNode,
    Guard,
    LeafNode,
    LoopNode,
    ParallelNode,
    SequenceNode,
    TaskNode,
)

__all__ = [
    "PlanTreeBuilder",
    "TreeBuilder",
    "build_tree",
    "load_plan",
    "TaskNode",
    "LeafNode",
    "SequenceNode",
    "ParallelNode",
    "FallbackNode",
    "LoopNode",
    "ConditionalNode",
    "Branch",
    "Guard",
]
