"""Tests for reactree/tree — node variants, guards and plan building."""

import pytest

from reactree.core.exceptions import TreeDefinitionError
from reactree.core.models import MemoryRecord, NodeState, RunRequest
from reactree.gates.evaluator import QualityGateEvaluator
from reactree.memory.episodes import PlanHints
from reactree.tree.builder import PlanTreeBuilder, apply_hints, build_tree, load_plan, normalize_plan
from reactree.tree.nodes import (
    ConditionalNode,
    FallbackNode,
    Guard,
    LeafNode,
    LoopNode,
    ParallelNode,
    SequenceNode,
    index_nodes,
    parent_map,
    skip_subtree,
    summarize_tree,
    walk,
)

from tests.conftest import leaf


def _feature_plan():
    return {
        "id": "feature",
        "kind": "sequence",
        "children": [
            leaf("plan", writes="plan"),
            {"id": "build", "kind": "parallel", "children": [leaf("models"), leaf("views")]},
            {"id": "impl", "kind": "fallback", "children": [leaf("fast"), leaf("careful")]},
            {
                "id": "polish",
                "kind": "loop",
                "max_iterations": 3,
                "until": {"fact_type": "review", "policy": {"type": "membership", "field": "verdict", "allowed": ["ok"]}},
                "children": [leaf("review", writes="review")],
            },
            {
                "id": "ship",
                "kind": "conditional",
                "branches": [
                    {"when": {"fact_type": "deploy_ok"}, "node": leaf("deploy")},
                    {"when": None, "node": leaf("notify")},
                ],
            },
        ],
    }


class TestBuildTree:
    def test_variants(self):
        root = build_tree(_feature_plan())
        assert isinstance(root, SequenceNode)
        plan, build, impl, polish, ship = root.children
        assert isinstance(plan, LeafNode)
        assert isinstance(build, ParallelNode)
        assert isinstance(impl, FallbackNode)
        assert isinstance(polish, LoopNode)
        assert isinstance(ship, ConditionalNode)
        assert polish.body.id == "review"
        assert [c.id for c in ship.children] == ["deploy", "notify"]
        assert all(n.state == NodeState.PENDING for n in walk(root))

    def test_leaf_shorthand(self):
        root = build_tree(leaf("lint", worker="linter", payload={"path": "src"}))
        assert root.worker_ref.worker == "linter"
        assert root.worker_ref.payload == {"path": "src"}
        assert root.fact_type == "lint"

    def test_writes_sets_fact_type(self):
        assert build_tree(leaf("a", writes="schema")).fact_type == "schema"

    def test_kind_inferred_from_worker(self):
        assert isinstance(build_tree({"id": "x", "worker": "w"}), LeafNode)

    def test_normalize_does_not_mutate_input(self):
        plan = leaf("a")
        normalize_plan(plan)
        assert plan == {"id": "a", "kind": "Leaf", "worker": "a"}

    def test_duplicate_ids_rejected(self):
        plan = {"id": "root", "kind": "Sequence", "children": [leaf("a"), leaf("a")]}
        with pytest.raises(TreeDefinitionError, match="Duplicate node id 'a'"):
            build_tree(plan)

    def test_loop_needs_exactly_one_child(self):
        plan = {"id": "l", "kind": "Loop", "until": {"fact_type": "x"}, "children": [leaf("a"), leaf("b")]}
        with pytest.raises(TreeDefinitionError):
            build_tree(plan)

    def test_unknown_kind(self):
        with pytest.raises(TreeDefinitionError, match="Unknown node kind"):
            build_tree({"id": "x", "kind": "race", "children": []})

    def test_leaf_without_worker(self):
        with pytest.raises(TreeDefinitionError, match="has no worker"):
            build_tree({"id": "x", "kind": "Leaf"})

    def test_missing_id(self):
        with pytest.raises(TreeDefinitionError):
            build_tree({"kind": "Leaf", "worker": "w"})

    def test_fallback_needs_children(self):
        with pytest.raises(TreeDefinitionError):
            build_tree({"id": "f", "kind": "Fallback", "children": []})

    def test_load_plan(self, tmp_path):
        path = tmp_path / "plan.yaml"
        path.write_text("id: a\nkind: leaf\nworker: w\n")
        assert build_tree(load_plan(path)).id == "a"

    def test_load_plan_errors(self, tmp_path):
        with pytest.raises(TreeDefinitionError):
            load_plan(tmp_path / "missing.yaml")
        bad = tmp_path / "bad.yaml"
        bad.write_text("- just\n- a list\n")
        with pytest.raises(TreeDefinitionError, match="must be a mapping"):
            load_plan(bad)


class TestTreeHelpers:
    def test_index_and_parents(self):
        root = build_tree(_feature_plan())
        index = index_nodes(root)
        assert set(index) >= {"feature", "models", "review", "notify"}
        parents = parent_map(root)
        assert parents["models"].id == "build"
        assert parents["notify"].id == "ship"
        assert "feature" not in parents

    def test_skip_subtree_leaves_terminal_nodes(self):
        root = build_tree({"id": "s", "kind": "Sequence", "children": [leaf("a"), leaf("b")]})
        root.children[0].state = NodeState.SUCCEEDED
        skip_subtree(root, cancelled=True)
        assert root.state == NodeState.SKIPPED
        assert root.children[0].state == NodeState.SUCCEEDED
        assert root.children[1].state == NodeState.SKIPPED
        assert root.children[1].cancelled

    def test_summarize_tree(self):
        root = build_tree({"id": "f", "kind": "Fallback", "children": [leaf("a", worker="wa")]})
        summary = summarize_tree(root)
        assert summary["kind"] == "Fallback"
        assert summary["children"][0] == {
            "id": "a", "kind": "Leaf", "state": "Pending", "attempt_count": 0, "worker": "wa",
        }


class TestGuard:
    def test_holds_on_latest_record(self, memory_store):
        guard = Guard(fact_type="review")
        assert not guard.holds(memory_store, "run-1")
        memory_store.write(MemoryRecord(run_id="run-1", producer_node_id="r", fact_type="review", payload={}))
        assert guard.holds(memory_store, "run-1")

    def test_policy_checked_against_payload(self, memory_store):
        guard = Guard.model_validate({
            "fact_type": "review",
            "policy": {"type": "membership", "field": "verdict", "allowed": ["ok"]},
        })
        evaluator = QualityGateEvaluator()
        memory_store.write(MemoryRecord(run_id="run-1", producer_node_id="r", fact_type="review",
                                        payload={"verdict": "changes"}))
        assert not guard.holds(memory_store, "run-1", evaluator)
        memory_store.write(MemoryRecord(run_id="run-1", producer_node_id="r", fact_type="review",
                                        payload={"verdict": "ok"}))
        assert guard.holds(memory_store, "run-1", evaluator)

    def test_named_gate(self, memory_store):
        evaluator = QualityGateEvaluator({"cov": {"type": "threshold", "field": "c", "minimum": 5}})
        memory_store.write(MemoryRecord(run_id="run-1", producer_node_id="t", fact_type="tests", payload={"c": 7}))
        assert Guard(fact_type="tests", gate="cov").holds(memory_store, "run-1", evaluator)

    def test_policy_without_evaluator(self, memory_store):
        memory_store.write(MemoryRecord(run_id="run-1", producer_node_id="t", fact_type="tests", payload={}))
        with pytest.raises(TreeDefinitionError):
            Guard(fact_type="tests", gate="cov").holds(memory_store, "run-1")


class TestHints:
    def test_previous_winner_moves_first(self):
        root = build_tree(_feature_plan())
        count = apply_hints(root, PlanHints(fallback_winners={"impl": "careful"}))
        assert count == 1
        impl = index_nodes(root)["impl"]
        assert [c.id for c in impl.children] == ["careful", "fast"]

    def test_winner_already_first_or_gone(self):
        root = build_tree(_feature_plan())
        assert apply_hints(root, PlanHints(fallback_winners={"impl": "fast", "build": "x"})) == 0
        assert apply_hints(root, PlanHints(fallback_winners={"impl": "removed"})) == 0

    def test_builder_uses_request_plan(self):
        builder = PlanTreeBuilder(default_plan=leaf("default"))
        assert builder.build(RunRequest(request="x")).id == "default"
        assert builder.build(RunRequest(request="x", plan=leaf("own"))).id == "own"

    def test_builder_without_plan(self):
        with pytest.raises(TreeDefinitionError, match="no plan"):
            PlanTreeBuilder().build(RunRequest(request="x"))

    def test_builder_hints_can_be_disabled(self):
        hints = PlanHints(fallback_winners={"impl": "careful"})
        request = RunRequest(request="x", plan=_feature_plan())
        root = PlanTreeBuilder(use_hints=False).build(request, hints)
        assert [c.id for c in index_nodes(root)["impl"].children] == ["fast", "careful"]
        root = PlanTreeBuilder().build(request, hints)
        assert [c.id for c in index_nodes(root)["impl"].children] == ["careful", "fast"]
