import pytest

from deployplan.conditions import (
    ALWAYS,
    NEVER,
    And,
    Equals,
    Flag,
    Included,
    Not,
    Or,
    all_of,
    any_of,
    find_counterexample,
    implies,
    parse_condition,
)
from deployplan.config import Configuration, TargetScope
from deployplan.errors import ConditionSyntaxError, PlanValidationError


def _eval(cond, values, included=()):
    return cond.evaluate(values.get, lambda s: s in included)


def test_parse_empty_is_always():
    assert parse_condition(None) == ALWAYS
    assert parse_condition("  ") == ALWAYS
    assert parse_condition(True) == ALWAYS
    assert parse_condition(False) == NEVER


def test_parse_comparison_and_flags():
    cond = parse_condition("scope == 'management-group' and deploy_ioa")
    assert cond == And((Equals("scope", "management-group"), Flag("deploy_ioa")))
    assert cond.fields() == {"scope", "deploy_ioa"}


def test_parse_literal_on_left_and_not_equals():
    assert parse_condition("'subscription' == scope") == Equals("scope", "subscription")
    assert parse_condition("scope != 'subscription'") == Not(Equals("scope", "subscription"))


def test_parse_or_not_included():
    cond = parse_condition("not a or (b and included('x-step'))")
    assert isinstance(cond, Or)
    assert cond.included_steps() == {"x-step"}
    assert _eval(cond, {"a": True, "b": True}, included={"x-step"})
    assert not _eval(cond, {"a": True, "b": True})
    assert _eval(cond, {"a": False, "b": False})


@pytest.mark.parametrize(
    "text",
    [
        "scope ==",
        "a < 3",
        "a == b",
        "1 < a < 3",
        "foo('x')",
        "included(step)",
        "a + 1",
        "x.y",
    ],
)
def test_parse_rejects_unsupported(text):
    with pytest.raises(ConditionSyntaxError) as exc:
        parse_condition(text, step="s1")
    assert isinstance(exc.value, PlanValidationError)
    assert exc.value.issues[0].step == "s1"
    assert exc.value.issues[0].details["condition"] == text


def test_str_is_reparseable():
    text = "scope == 'management-group' and (deploy_ioa or not assign_permissions) and included('a')"
    cond = parse_condition(text)
    assert parse_condition(str(cond)) == cond


def test_operators_flatten():
    a, b, c = Flag("a"), Flag("b"), Flag("c")
    assert (a & b) & c == And((a, b, c))
    assert (a | b) | c == Or((a, b, c))
    assert ~a == Not(a)
    assert all_of() == ALWAYS
    assert all_of(ALWAYS, a) == a
    assert all_of(a, NEVER) == NEVER
    assert any_of(a, ALWAYS) == ALWAYS
    assert any_of() == NEVER


def test_enum_values_compare_by_value():
    config = Configuration(scope=TargetScope.SUBSCRIPTION)
    cond = Equals("scope", "subscription")
    assert cond.evaluate(config.get, lambda s: False)
    assert Equals("scope", TargetScope.SUBSCRIPTION).evaluate(config.get, lambda s: False)


def test_implies_stronger_condition():
    a = parse_condition("scope == 'management-group' and deploy_ioa")
    b = parse_condition("scope == 'management-group'")
    domains = Configuration.field_domains()
    assert implies(a, b, domains)
    cex = find_counterexample(b, a, domains)
    assert cex == {"deploy_ioa": False, "scope": "management-group"}


def test_implies_uses_enum_exhaustiveness():
    domains = Configuration.field_domains()
    a = parse_condition("scope != 'management-group'")
    b = parse_condition("scope == 'subscription'")
    assert implies(a, b, domains)
    # without the domain, scope could hold a third value
    assert not implies(a, b)


def test_implies_unknown_fields_truthiness():
    assert implies(parse_condition("x and y"), parse_condition("x"))
    assert not implies(parse_condition("x"), parse_condition("x == 'on'"))
    assert implies(parse_condition("x == 'on'"), parse_condition("x"))


def test_inline_replaces_included():
    conds = {"a": parse_condition("flag_a")}
    cond = parse_condition("included('a') and flag_b").inline(lambda s: conds[s])
    assert cond == And((Flag("flag_a"), Flag("flag_b")))
    assert implies(cond, conds["a"])


def test_included_evaluates_lookup():
    assert Included("x").evaluate(lambda f: None, lambda s: s == "x")
    assert not Included("y").evaluate(lambda f: None, lambda s: s == "x")
