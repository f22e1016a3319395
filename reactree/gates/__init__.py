"""Quality gate policies and their evaluator."""

from reactree.gates.evaluator import QualityGateEvaluator, parse_policy, policy_refs
from reactree.gates.policies import (
    AllOfPolicy,
    AnyOfPolicy,
    GateOutcome,
    MembershipPolicy,
    NotPolicy,
    Policy,
    RefPolicy,
    RequiredFieldsPolicy,
    ThresholdPolicy,
)

__all__ = [
    "QualityGateEvaluator",
    "parse_policy",
    "policy_refs",
    "GateOutcome",
    "Policy",
    "ThresholdPolicy",
    "RequiredFieldsPolicy",
    "MembershipPolicy",
    "AllOfPolicy",
    "AnyOfPolicy",
    "NotPolicy",
    "RefPolicy",
]
