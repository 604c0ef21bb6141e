# hc_core/rules/conditions.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Iterator, Optional, Union

from hc_core.clinical.attributes import ATTRIBUTE_SCHEMA, AttributeType, to_number
from hc_core.common.errors import ConfigurationError

DEFAULT_MAX_DEPTH = 32


class Operator(str, Enum):
    GTE = ">="
    LTE = "<="
    EQ = "=="
    NEQ = "!="
    CONTAINS = "contains"
    BETWEEN = "between"


class GroupOperator(str, Enum):
    AND = "AND"
    OR = "OR"


@dataclass(frozen=True)
class Leaf:
    field: str
    operator: Operator
    value: Any  # scalar, or (low, high) for BETWEEN


@dataclass(frozen=True)
class Group:
    operator: GroupOperator
    children: tuple["ConditionNode", ...] = ()


ConditionNode = Union[Leaf, Group]

_NUMERIC_ONLY = {Operator.GTE, Operator.LTE, Operator.BETWEEN}
_SCALAR_TYPES = (str, int, float, bool)


# -----------------------
# Parse (wire -> tree)
# -----------------------
def parse_condition(
    data: Any,
    *,
    known_fields: Optional[Iterable[str]] = None,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> ConditionNode:
    """
    Parse and validate the stored/wire form of a condition tree.

    Groups:  {"operator": "AND"|"OR", "conditions": [...]}
    Leaves:  {"field": str, "operator": ">=", "value": ...}

    Validation happens here, once, at load/write time: unknown operators,
    unknown fields, malformed `between` pairs and trees deeper than
    `max_depth` all raise ConfigurationError.

    known_fields defaults to ATTRIBUTE_SCHEMA; pass an explicit iterable to
    validate against another schema.
    """
    fields = frozenset(ATTRIBUTE_SCHEMA if known_fields is None else known_fields)
    return _parse(data, fields=fields, depth=1, max_depth=max_depth, path="$")


def _parse(data: Any, *, fields: frozenset, depth: int, max_depth: int, path: str) -> ConditionNode:
    if depth > max_depth:
        raise ConfigurationError(
            f"Condition tree exceeds maximum depth of {max_depth}.",
            details={"path": path, "max_depth": max_depth},
        )
    if not isinstance(data, dict):
        raise ConfigurationError(
            "Condition node must be an object.",
            details={"path": path, "got": type(data).__name__},
        )

    if "conditions" in data:
        return _parse_group(data, fields=fields, depth=depth, max_depth=max_depth, path=path)
    return _parse_leaf(data, fields=fields, path=path)


def _parse_group(data: dict, *, fields: frozenset, depth: int, max_depth: int, path: str) -> Group:
    raw_op = data.get("operator")
    try:
        op = GroupOperator(raw_op)
    except ValueError:
        raise ConfigurationError(
            f"Unknown group operator {raw_op!r}.",
            details={"path": path, "operator": raw_op},
        )

    extra = set(data) - {"operator", "conditions"}
    if extra:
        raise ConfigurationError(
            "Unexpected keys on group node.",
            details={"path": path, "keys": sorted(extra)},
        )

    raw_children = data.get("conditions")
    if not isinstance(raw_children, list):
        raise ConfigurationError(
            "Group 'conditions' must be a list.",
            details={"path": path},
        )

    children = tuple(
        _parse(child, fields=fields, depth=depth + 1, max_depth=max_depth, path=f"{path}.conditions[{i}]")
        for i, child in enumerate(raw_children)
    )
    return Group(operator=op, children=children)


def _parse_leaf(data: dict, *, fields: frozenset, path: str) -> Leaf:
    extra = set(data) - {"field", "operator", "value"}
    if extra:
        raise ConfigurationError(
            "Unexpected keys on leaf node.",
            details={"path": path, "keys": sorted(extra)},
        )

    field = data.get("field")
    if not isinstance(field, str) or not field:
        raise ConfigurationError("Leaf 'field' is required.", details={"path": path})
    if field not in fields:
        raise ConfigurationError(
            f"Unknown attribute field {field!r}.",
            details={"path": path, "field": field},
        )

    raw_op = data.get("operator")
    try:
        op = Operator(raw_op)
    except ValueError:
        raise ConfigurationError(
            f"Unknown operator {raw_op!r}.",
            details={"path": path, "operator": raw_op, "allowed": [o.value for o in Operator]},
        )

    if "value" not in data:
        raise ConfigurationError("Leaf 'value' is required.", details={"path": path})
    value = data["value"]

    if op is Operator.BETWEEN:
        value = _parse_between(value, path=path)
    else:
        if not isinstance(value, _SCALAR_TYPES):
            raise ConfigurationError(
                f"Operator {op.value!r} expects a scalar value.",
                details={"path": path, "value": value},
            )
        if op in _NUMERIC_ONLY and to_number(value) is None:
            raise ConfigurationError(
                f"Operator {op.value!r} expects a numeric value.",
                details={"path": path, "value": value},
            )

    kind = ATTRIBUTE_SCHEMA.get(field)
    if kind is AttributeType.FLAGS and op not in (Operator.CONTAINS,):
        raise ConfigurationError(
            f"Flag collection {field!r} only supports 'contains'.",
            details={"path": path, "field": field, "operator": op.value},
        )

    return Leaf(field=field, operator=op, value=value)


def _parse_between(value: Any, *, path: str) -> tuple:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ConfigurationError(
            "'between' expects a [low, high] pair.",
            details={"path": path, "value": value},
        )
    low, high = value
    nlow, nhigh = to_number(low), to_number(high)
    if nlow is None or nhigh is None:
        raise ConfigurationError(
            "'between' bounds must be numeric.",
            details={"path": path, "value": list(value)},
        )
    if nlow > nhigh:
        raise ConfigurationError(
            "'between' low bound is greater than high bound.",
            details={"path": path, "value": list(value)},
        )
    return (low, high)


# -----------------------
# Dump (tree -> wire)
# -----------------------
def dump_condition(node: ConditionNode) -> dict:
    if isinstance(node, Group):
        return {
            "operator": node.operator.value,
            "conditions": [dump_condition(c) for c in node.children],
        }
    value = list(node.value) if node.operator is Operator.BETWEEN else node.value
    return {"field": node.field, "operator": node.operator.value, "value": value}


# -----------------------
# Tree helpers
# -----------------------
def tree_depth(node: ConditionNode) -> int:
    """Depth counted in nodes (a single leaf has depth 1). Iterative."""
    deepest = 0
    stack: list[tuple[ConditionNode, int]] = [(node, 1)]
    while stack:
        current, depth = stack.pop()
        deepest = max(deepest, depth)
        if isinstance(current, Group):
            stack.extend((c, depth + 1) for c in current.children)
    return deepest


def iter_leaves(node: ConditionNode) -> Iterator[Leaf]:
    stack: list[ConditionNode] = [node]
    while stack:
        current = stack.pop()
        if isinstance(current, Leaf):
            yield current
        else:
            stack.extend(reversed(current.children))


def referenced_fields(node: ConditionNode) -> frozenset[str]:
    return frozenset(leaf.field for leaf in iter_leaves(node))
