"""Quality gate policy shapes.

Policies are declared in YAML (``quality_gates:`` section) or built in
code. Three shapes are supported, mirroring what the workflow gates check:

- threshold: a numeric field compared against a minimum and/or maximum
- required / membership: a field must be present, or hold an allowed value
- all / any / not: boolean composition of sub-policies

Each policy's ``check`` returns a GateOutcome; ``ref`` points at another
named policy and is resolved through the evaluator.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

if TYPE_CHECKING:
    from reactree.gates.evaluator import QualityGateEvaluator


class _Missing:
    def __repr__(self) -> str:
        return "<missing>"


MISSING = _Missing()


def lookup_field(value: Any, path: str) -> Any:
    """Resolve a dotted path through dicts, lists and attributes.

    Returns MISSING when any segment is absent. An empty path returns the
    value itself.
    """
    if not path:
        return value
    current = value
    for part in path.split("."):
        if isinstance(current, BaseModel):
            current = current.model_dump()
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            idx = int(part)
            if idx >= len(current):
                return MISSING
            current = current[idx]
        elif hasattr(current, part):
            current = getattr(current, part)
        else:
            return MISSING
    return current


class GateOutcome(BaseModel):
    """Pass or Fail(reason) for a single policy evaluation."""
    passed: bool
    reason: str = ""
    policy: str = ""

    @classmethod
    def ok(cls, policy: str = "") -> "GateOutcome":
        return cls(passed=True, policy=policy)

    @classmethod
    def fail(cls, reason: str, policy: str = "") -> "GateOutcome":
        return cls(passed=False, reason=reason, policy=policy)


class ThresholdPolicy(BaseModel):
    type: Literal["threshold"] = "threshold"
    field: str
    minimum: Optional[float] = None
    maximum: Optional[float] = None

    @model_validator(mode="after")
    def _needs_bound(self) -> "ThresholdPolicy":
        if self.minimum is None and self.maximum is None:
            raise ValueError("threshold policy needs a minimum or a maximum")
        return self

    def check(self, value: Any, evaluator: "QualityGateEvaluator") -> GateOutcome:
        raw = lookup_field(value, self.field)
        if raw is MISSING:
            return GateOutcome.fail(f"field '{self.field}' missing")
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            return GateOutcome.fail(f"field '{self.field}' is not numeric ({raw!r})")
        if self.minimum is not None and raw < self.minimum:
            return GateOutcome.fail(f"{self.field}={raw} below minimum {self.minimum}")
        if self.maximum is not None and raw > self.maximum:
            return GateOutcome.fail(f"{self.field}={raw} above maximum {self.maximum}")
        return GateOutcome.ok()


class RequiredFieldsPolicy(BaseModel):
    type: Literal["required"] = "required"
    fields: list[str] = Field(min_length=1)

    def check(self, value: Any, evaluator: "QualityGateEvaluator") -> GateOutcome:
        missing = [f for f in self.fields if lookup_field(value, f) in (MISSING, None)]
        if missing:
            return GateOutcome.fail(f"required field(s) missing: {', '.join(missing)}")
        return GateOutcome.ok()


class MembershipPolicy(BaseModel):
    type: Literal["membership"] = "membership"
    field: str
    allowed: list[Any] = Field(min_length=1)

    def check(self, value: Any, evaluator: "QualityGateEvaluator") -> GateOutcome:
        raw = lookup_field(value, self.field)
        if raw is MISSING:
            return GateOutcome.fail(f"field '{self.field}' missing")
        if raw not in self.allowed:
            return GateOutcome.fail(f"{self.field}={raw!r} not in {self.allowed!r}")
        return GateOutcome.ok()


class AllOfPolicy(BaseModel):
    type: Literal["all"] = "all"
    policies: list["Policy"] = Field(min_length=1)

    def check(self, value: Any, evaluator: "QualityGateEvaluator") -> GateOutcome:
        for policy in self.policies:
            outcome = evaluator.check_policy(policy, value)
            if not outcome.passed:
                return outcome
        return GateOutcome.ok()


class AnyOfPolicy(BaseModel):
    type: Literal["any"] = "any"
    policies: list["Policy"] = Field(min_length=1)

    def check(self, value: Any, evaluator: "QualityGateEvaluator") -> GateOutcome:
        reasons = []
        for policy in self.policies:
            outcome = evaluator.check_policy(policy, value)
            if outcome.passed:
                return GateOutcome.ok()
            reasons.append(outcome.reason)
        return GateOutcome.fail("no alternative passed: " + "; ".join(reasons))


class NotPolicy(BaseModel):
    type: Literal["not"] = "not"
    policy: "Policy"

    def check(self, value: Any, evaluator: "QualityGateEvaluator") -> GateOutcome:
        outcome = evaluator.check_policy(self.policy, value)
        if outcome.passed:
            return GateOutcome.fail(f"negated policy '{self.policy.type}' passed")
        return GateOutcome.ok()


class RefPolicy(BaseModel):
    type: Literal["ref"] = "ref"
    name: str

    def check(self, value: Any, evaluator: "QualityGateEvaluator") -> GateOutcome:
        return evaluator.evaluate(self.name, value)


Policy = Annotated[
    Union[
        ThresholdPolicy,
        RequiredFieldsPolicy,
        MembershipPolicy,
        AllOfPolicy,
        AnyOfPolicy,
        NotPolicy,
        RefPolicy,
    ],
    Field(discriminator="type"),
]

AllOfPolicy.model_rebuild()
AnyOfPolicy.model_rebuild()
NotPolicy.model_rebuild()
