"""Quality Gate Evaluator for ReAcTree.

Stateless validation of a node's result against a named policy before the
node may transition to Succeeded. A failing gate is treated exactly like a
worker-reported failure (QUALITY_GATE_FAILED) by the executor.
"""

from __future__ import annotations

import logging
from typing import Any, Iterator, Mapping, Optional

from pydantic import TypeAdapter, ValidationError

from reactree.core.exceptions import PolicyError
from reactree.gates.policies import (
    AllOfPolicy,
    AnyOfPolicy,
    GateOutcome,
    NotPolicy,
    Policy,
    RefPolicy,
)

logger = logging.getLogger("reactree.gates.evaluator")

_POLICY_ADAPTER: TypeAdapter = TypeAdapter(Policy)


def parse_policy(data: Any) -> Policy:
    """Parse a YAML/dict policy declaration into a policy model."""
    try:
        return _POLICY_ADAPTER.validate_python(data)
    except ValidationError as e:
        raise PolicyError(f"Invalid quality gate policy: {e}") from e


class QualityGateEvaluator:
    """Named policy registry plus evaluation.

    The registry is fixed configuration; evaluation never mutates it, so a
    single evaluator is safely shared by concurrently running leaves.
    """

    def __init__(self, policies: Optional[Mapping[str, Any]] = None):
        self._policies: dict[str, Policy] = {}
        for name, policy in (policies or {}).items():
            self._policies[name] = policy if not isinstance(policy, dict) else parse_policy(policy)
        self._check_references()

    @classmethod
    def from_config(cls, gates: Mapping[str, Any]) -> "QualityGateEvaluator":
        return cls({name: parse_policy(declaration) for name, declaration in gates.items()})

    @property
    def names(self) -> list[str]:
        return sorted(self._policies)

    def has_policy(self, name: str) -> bool:
        return name in self._policies

    def evaluate(self, policy_name: str, result: Any) -> GateOutcome:
        """Evaluate ``result`` against the named policy.

        Raises:
            PolicyError: If no policy is registered under ``policy_name``.
        """
        policy = self._policies.get(policy_name)
        if policy is None:
            raise PolicyError(f"Unknown quality gate policy '{policy_name}'")
        outcome = self.check_policy(policy, result)
        outcome = outcome.model_copy(update={"policy": policy_name})
        logger.debug(
            "Gate '%s': %s%s",
            policy_name,
            "pass" if outcome.passed else "fail",
            f" ({outcome.reason})" if outcome.reason else "",
        )
        return outcome

    def check_policy(self, policy: Policy, value: Any) -> GateOutcome:
        """Evaluate an anonymous policy model."""
        return policy.check(value, self)

    def _check_references(self) -> None:
        """Reject unknown or cyclic ``ref`` policies at construction time."""
        for name in self._policies:
            self._walk_refs(name, [])

    def _walk_refs(self, name: str, stack: list[str]) -> None:
        if name in stack:
            raise PolicyError(f"Cyclic quality gate reference: {' -> '.join([*stack, name])}")
        policy = self._policies.get(name)
        if policy is None:
            raise PolicyError(f"Quality gate '{stack[-1]}' references unknown policy '{name}'")
        for ref in policy_refs(policy):
            self._walk_refs(ref, [*stack, name])


def policy_refs(policy: Policy) -> Iterator[str]:
    """Names of the registered policies that ``policy`` refers to."""
    if isinstance(policy, RefPolicy):
        yield policy.name
    elif isinstance(policy, (AllOfPolicy, AnyOfPolicy)):
        for child in policy.policies:
            yield from policy_refs(child)
    elif isinstance(policy, NotPolicy):
        yield from policy_refs(policy.policy)
