# hc_core/rules/tests/test_engine.py
import pytest

from hc_core.clinical.attributes import AttributeBag
from hc_core.common.errors import EvaluationFault
from hc_core.rules.conditions import Group, GroupOperator, Leaf, Operator, parse_condition
from hc_core.rules.engine import RuleEvaluator, evaluate


def leaf(field, op, value):
    return parse_condition({"field": field, "operator": op, "value": value})


def test_scenario_high_maple_and_adl_passes():
    tree = parse_condition(
        {
            "operator": "AND",
            "conditions": [
                {"field": "maple_score", "operator": ">=", "value": 4},
                {"field": "adl_hierarchy", "operator": ">=", "value": 3},
            ],
        }
    )
    result = evaluate(tree, AttributeBag({"maple_score": 4, "adl_hierarchy": 3}))
    assert result.passed is True
    assert [r.passed for r in result.trace] == [True, True]


def test_missing_field_fails_closed():
    result = evaluate(leaf("cps", "!=", 3), AttributeBag({}))
    assert result.passed is False
    assert result.trace[0].reason == "missing_field"
    assert result.trace[0].actual is None


@pytest.mark.parametrize(
    "field,op,value,bag",
    [
        ("cps", ">=", 2, {"cps": 3}),
        ("cps", "<=", 4, {"cps": 3}),
        ("cps", "==", 3, {"cps": 3}),
        ("cps", "!=", 5, {"cps": 3}),
        ("rug_group", "==", "CA1", {"rug_group": "CA1"}),
        ("diagnosis_flags", "contains", "stroke", {"diagnosis_flags": ["stroke"]}),
        ("adl_sum", "between", [4, 10], {"adl_sum": 7}),
    ],
)
def test_removing_a_field_never_helps(field, op, value, bag):
    tree = leaf(field, op, value)
    full = AttributeBag(bag)
    assert evaluate(tree, full).passed is True
    assert evaluate(tree, full.without(field)).passed is False


def test_numeric_like_values_compare_numerically():
    assert evaluate(leaf("maple_score", ">=", 4), AttributeBag({"maple_score": "4"})).passed is True
    assert evaluate(leaf("maple_score", "==", "4"), AttributeBag({"maple_score": 4.0})).passed is True


def test_type_mismatch_never_passes():
    result = evaluate(leaf("gender", ">=", 3), AttributeBag({"gender": "F"}))
    assert result.passed is False
    assert result.trace[0].reason == "type_mismatch"


def test_contains_treats_scalar_as_single_member():
    assert evaluate(leaf("rug_group", "contains", "CA1"), AttributeBag({"rug_group": "CA1"})).passed is True
    assert evaluate(leaf("rug_group", "contains", "CA"), AttributeBag({"rug_group": "CA1"})).passed is False


def test_between_is_inclusive_on_both_ends():
    tree = leaf("adl_sum", "between", [4, 10])
    assert evaluate(tree, AttributeBag({"adl_sum": 4})).passed is True
    assert evaluate(tree, AttributeBag({"adl_sum": 10})).passed is True
    assert evaluate(tree, AttributeBag({"adl_sum": 11})).passed is False


def test_trace_is_complete_after_short_circuit():
    tree = parse_condition(
        {
            "operator": "OR",
            "conditions": [
                {"field": "cps", "operator": ">=", "value": 3},
                {"field": "diagnosis_flags", "operator": "contains", "value": "dementia"},
                {"field": "maple_score", "operator": ">=", "value": 5},
            ],
        }
    )
    result = evaluate(tree, AttributeBag({"cps": 4}))
    assert result.passed is True
    assert [r.path for r in result.trace] == ["$.conditions[0]", "$.conditions[1]", "$.conditions[2]"]
    assert [r.passed for r in result.trace] == [True, False, False]


def test_and_fails_but_still_records_every_leaf():
    tree = parse_condition(
        {
            "operator": "AND",
            "conditions": [
                {"field": "cps", "operator": ">=", "value": 5},
                {"operator": "OR", "conditions": [{"field": "maple_score", "operator": ">=", "value": 1}]},
            ],
        }
    )
    result = evaluate(tree, AttributeBag({"cps": 1, "maple_score": 2}))
    assert result.passed is False
    assert len(result.trace) == 2
    assert result.trace[1].path == "$.conditions[1].conditions[0]"


def test_empty_group_passes():
    for op in GroupOperator:
        result = evaluate(Group(operator=op, children=()), AttributeBag({}))
        assert result.passed is True
        assert result.trace == ()


def test_depth_ceiling_raises_evaluation_fault():
    tree = Group(
        operator=GroupOperator.AND,
        children=(Group(operator=GroupOperator.AND, children=(Leaf("cps", Operator.GTE, 1),)),),
    )
    assert RuleEvaluator(max_depth=3).evaluate(tree, AttributeBag({"cps": 2})).passed is True
    with pytest.raises(EvaluationFault):
        RuleEvaluator(max_depth=2).evaluate(tree, AttributeBag({"cps": 2}))


def test_leaf_result_serializes_for_audit():
    result = evaluate(leaf("adl_sum", "between", [4, 10]), AttributeBag({"adl_sum": 7}))
    assert result.trace[0].to_dict() == {
        "path": "$",
        "field": "adl_sum",
        "operator": "between",
        "expected": [4, 10],
        "actual": 7,
        "passed": True,
        "reason": None,
    }

    flags = evaluate(leaf("flags", "contains", "falls"), AttributeBag({"flags": {"falls": True, "wander": True}}))
    assert flags.trace[0].to_dict()["actual"] == ["falls", "wander"]
