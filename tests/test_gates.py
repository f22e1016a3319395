"""Tests for reactree/gates — policy shapes and the Quality Gate Evaluator."""

import pytest

from reactree.core.exceptions import PolicyError
from reactree.gates.evaluator import QualityGateEvaluator, parse_policy, policy_refs
from reactree.gates.policies import (
    MISSING,
    AllOfPolicy,
    AnyOfPolicy,
    MembershipPolicy,
    NotPolicy,
    RequiredFieldsPolicy,
    ThresholdPolicy,
    lookup_field,
)


class TestLookupField:
    def test_dotted_dict_path(self):
        assert lookup_field({"a": {"b": 3}}, "a.b") == 3

    def test_list_index(self):
        assert lookup_field({"items": [10, 20]}, "items.1") == 20

    def test_missing_segment(self):
        assert lookup_field({"a": {}}, "a.b") is MISSING
        assert lookup_field({"items": [1]}, "items.5") is MISSING

    def test_empty_path_returns_value(self):
        assert lookup_field(7, "") == 7


class TestThresholdPolicy:
    def test_minimum(self):
        evaluator = QualityGateEvaluator()
        policy = ThresholdPolicy(field="coverage", minimum=85)
        assert evaluator.check_policy(policy, {"coverage": 90}).passed
        outcome = evaluator.check_policy(policy, {"coverage": 80})
        assert not outcome.passed
        assert "below minimum" in outcome.reason

    def test_maximum(self):
        policy = ThresholdPolicy(field="failures", maximum=0)
        evaluator = QualityGateEvaluator()
        assert evaluator.check_policy(policy, {"failures": 0}).passed
        assert not evaluator.check_policy(policy, {"failures": 2}).passed

    def test_non_numeric_fails(self):
        policy = ThresholdPolicy(field="coverage", minimum=1)
        outcome = QualityGateEvaluator().check_policy(policy, {"coverage": "high"})
        assert not outcome.passed
        assert "not numeric" in outcome.reason

    def test_bool_is_not_numeric(self):
        policy = ThresholdPolicy(field="ok", minimum=0)
        assert not QualityGateEvaluator().check_policy(policy, {"ok": True}).passed

    def test_needs_a_bound(self):
        with pytest.raises(PolicyError):
            parse_policy({"type": "threshold", "field": "x"})


class TestMembershipAndRequired:
    def test_required_fields(self):
        evaluator = QualityGateEvaluator()
        policy = RequiredFieldsPolicy(fields=["summary", "files"])
        assert evaluator.check_policy(policy, {"summary": "s", "files": []}).passed
        outcome = evaluator.check_policy(policy, {"summary": None})
        assert not outcome.passed
        assert "summary" in outcome.reason and "files" in outcome.reason

    def test_membership(self):
        evaluator = QualityGateEvaluator()
        policy = MembershipPolicy(field="verdict", allowed=["approve"])
        assert evaluator.check_policy(policy, {"verdict": "approve"}).passed
        assert not evaluator.check_policy(policy, {"verdict": "reject"}).passed
        assert not evaluator.check_policy(policy, {}).passed


class TestComposition:
    def test_all_reports_first_failure(self):
        policy = AllOfPolicy(policies=[
            RequiredFieldsPolicy(fields=["coverage"]),
            ThresholdPolicy(field="coverage", minimum=50),
        ])
        outcome = QualityGateEvaluator().check_policy(policy, {"coverage": 10})
        assert not outcome.passed
        assert "below minimum" in outcome.reason

    def test_any(self):
        policy = AnyOfPolicy(policies=[
            MembershipPolicy(field="verdict", allowed=["approve"]),
            ThresholdPolicy(field="score", minimum=9),
        ])
        evaluator = QualityGateEvaluator()
        assert evaluator.check_policy(policy, {"verdict": "reject", "score": 10}).passed
        outcome = evaluator.check_policy(policy, {"verdict": "reject", "score": 1})
        assert not outcome.passed
        assert outcome.reason.startswith("no alternative passed")

    def test_not(self):
        policy = NotPolicy(policy=MembershipPolicy(field="risk", allowed=["high"]))
        evaluator = QualityGateEvaluator()
        assert evaluator.check_policy(policy, {"risk": "low"}).passed
        assert not evaluator.check_policy(policy, {"risk": "high"}).passed

    def test_nested_refs_are_found(self):
        policy = parse_policy({"type": "all", "policies": [
            {"type": "ref", "name": "tests_pass"},
            {"type": "not", "policy": {"type": "ref", "name": "risky"}},
            {"type": "required", "fields": ["coverage"]},
        ]})
        assert list(policy_refs(policy)) == ["tests_pass", "risky"]


class TestEvaluator:
    def test_from_shipped_config(self, app_config):
        evaluator = QualityGateEvaluator.from_config(app_config.quality_gates)
        assert {"tests_pass", "review_approved", "shippable"} <= set(evaluator.names)
        assert evaluator.evaluate("tests_pass", {"coverage": 90, "failures": 0}).passed
        outcome = evaluator.evaluate("shippable", {"coverage": 90, "failures": 0, "risk": "high"})
        assert not outcome.passed
        assert outcome.policy == "shippable"

    def test_unknown_policy_raises(self):
        with pytest.raises(PolicyError, match="Unknown quality gate"):
            QualityGateEvaluator().evaluate("nope", {})

    def test_accepts_dict_declarations(self):
        evaluator = QualityGateEvaluator({"cov": {"type": "threshold", "field": "c", "minimum": 1}})
        assert evaluator.has_policy("cov")
        assert evaluator.evaluate("cov", {"c": 2}).passed

    def test_ref_resolves_through_registry(self):
        evaluator = QualityGateEvaluator.from_config({
            "base": {"type": "required", "fields": ["x"]},
            "wrapped": {"type": "ref", "name": "base"},
        })
        assert evaluator.evaluate("wrapped", {"x": 1}).passed
        assert not evaluator.evaluate("wrapped", {}).passed

    def test_unknown_ref_rejected(self):
        with pytest.raises(PolicyError, match="unknown policy"):
            QualityGateEvaluator.from_config({"a": {"type": "ref", "name": "ghost"}})

    def test_cyclic_ref_rejected(self):
        with pytest.raises(PolicyError, match="Cyclic"):
            QualityGateEvaluator.from_config({
                "a": {"type": "ref", "name": "b"},
                "b": {"type": "not", "policy": {"type": "ref", "name": "a"}},
            })

    def test_unknown_policy_type_rejected(self):
        with pytest.raises(PolicyError):
            parse_policy({"type": "regex", "pattern": ".*"})
