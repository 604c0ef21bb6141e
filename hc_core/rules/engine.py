# hc_core/rules/engine.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from hc_core.clinical.attributes import to_number
from hc_core.common.errors import EvaluationFault
from hc_core.rules.conditions import (
    DEFAULT_MAX_DEPTH,
    ConditionNode,
    Group,
    GroupOperator,
    Leaf,
    Operator,
)


@dataclass(frozen=True)
class LeafResult:
    path: str
    field: str
    operator: str
    expected: Any
    actual: Any
    passed: bool
    reason: Optional[str] = None  # "missing_field" | "type_mismatch" | None

    def to_dict(self) -> dict:
        actual = self.actual
        if isinstance(actual, frozenset):
            actual = sorted(actual)
        expected = list(self.expected) if isinstance(self.expected, tuple) else self.expected
        return {
            "path": self.path,
            "field": self.field,
            "operator": self.operator,
            "expected": expected,
            "actual": _jsonable(actual),
            "passed": self.passed,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class Evaluation:
    passed: bool
    trace: tuple[LeafResult, ...]


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str, list)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return str(value)


# -----------------------
# Leaf operators
# -----------------------
# Each returns (passed, reason). reason is set only when the comparison
# could not be performed; such leaves never pass.

def _numeric_pair(actual: Any, expected: Any):
    a, e = to_number(actual), to_number(expected)
    if a is None or e is None:
        return None
    return float(a), float(e)


def _op_gte(actual, expected):
    pair = _numeric_pair(actual, expected)
    if pair is None:
        return False, "type_mismatch"
    return pair[0] >= pair[1], None


def _op_lte(actual, expected):
    pair = _numeric_pair(actual, expected)
    if pair is None:
        return False, "type_mismatch"
    return pair[0] <= pair[1], None


def _op_eq(actual, expected):
    pair = _numeric_pair(actual, expected)
    if pair is not None:
        return pair[0] == pair[1], None
    if isinstance(actual, frozenset):
        return False, "type_mismatch"
    return actual == expected, None


def _op_neq(actual, expected):
    pair = _numeric_pair(actual, expected)
    if pair is not None:
        return pair[0] != pair[1], None
    if isinstance(actual, frozenset):
        return False, "type_mismatch"
    return actual != expected, None


def _op_contains(actual, expected):
    # Flag-array semantics: a scalar bag value is a one-element set.
    members = actual if isinstance(actual, frozenset) else frozenset([actual])
    if expected in members:
        return True, None
    if isinstance(expected, str):
        return False, None
    # numeric flag codes stored as strings upstream
    return str(expected) in {str(m) for m in members}, None


def _op_between(actual, expected):
    n = to_number(actual)
    if n is None:
        return False, "type_mismatch"
    low, high = to_number(expected[0]), to_number(expected[1])
    return float(low) <= float(n) <= float(high), None


OPERATORS: Dict[Operator, Callable[[Any, Any], tuple[bool, Optional[str]]]] = {
    Operator.GTE: _op_gte,
    Operator.LTE: _op_lte,
    Operator.EQ: _op_eq,
    Operator.NEQ: _op_neq,
    Operator.CONTAINS: _op_contains,
    Operator.BETWEEN: _op_between,
}


class RuleEvaluator:
    """
    Evaluates a parsed ConditionNode against an AttributeBag.

    - Missing attributes fail closed.
    - AND/OR short-circuit the verdict only; every leaf is still evaluated
      and recorded so the trace is complete for audit.
    - An empty group passes (vacuous truth).
    - Trees deeper than `max_depth` raise EvaluationFault.

    Pure: no I/O, no shared mutable state. One instance can be shared across
    threads.
    """

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH):
        self.max_depth = max_depth

    def evaluate(self, tree: ConditionNode, bag: Mapping[str, Any]) -> Evaluation:
        trace: list[LeafResult] = []
        passed = self._eval(tree, bag, trace, depth=1, path="$")
        return Evaluation(passed=passed, trace=tuple(trace))

    def _eval(self, node: ConditionNode, bag: Mapping[str, Any], trace: list, *, depth: int, path: str) -> bool:
        if depth > self.max_depth:
            raise EvaluationFault(
                f"Condition tree exceeds maximum depth of {self.max_depth}.",
                details={"path": path, "max_depth": self.max_depth},
            )

        if isinstance(node, Leaf):
            result = self._eval_leaf(node, bag, path=path)
            trace.append(result)
            return result.passed

        if not isinstance(node, Group):
            raise EvaluationFault(
                "Unsupported condition node.",
                details={"path": path, "type": type(node).__name__},
            )

        results = [
            self._eval(child, bag, trace, depth=depth + 1, path=f"{path}.conditions[{i}]")
            for i, child in enumerate(node.children)
        ]
        if not results:
            return True
        if node.operator is GroupOperator.AND:
            return all(results)
        return any(results)

    @staticmethod
    def _eval_leaf(leaf: Leaf, bag: Mapping[str, Any], *, path: str) -> LeafResult:
        actual = bag.get(leaf.field)
        if actual is None:
            return LeafResult(
                path=path,
                field=leaf.field,
                operator=leaf.operator.value,
                expected=leaf.value,
                actual=None,
                passed=False,
                reason="missing_field",
            )

        fn = OPERATORS[leaf.operator]
        passed, reason = fn(actual, leaf.value)
        return LeafResult(
            path=path,
            field=leaf.field,
            operator=leaf.operator.value,
            expected=leaf.value,
            actual=actual,
            passed=bool(passed),
            reason=reason,
        )


_default = RuleEvaluator()


def evaluate(tree: ConditionNode, bag: Mapping[str, Any]) -> Evaluation:
    return _default.evaluate(tree, bag)
