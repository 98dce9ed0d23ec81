import pytest

from deployplan.conditions import ALWAYS, And, Flag
from deployplan.dsl import build, config, output, step
from deployplan.errors import ConditionSyntaxError
from deployplan.model import ConfigRef, Literal, OutputRef, Scope


def test_step_wraps_plain_values_as_literals():
    s = step(
        "roles",
        "roles.bicep",
        scope="management-group",
        inputs={"principalId": output("app", "id"), "region": config("location"), "name": "reader"},
    )
    assert s.scope is Scope.MANAGEMENT_GROUP
    assert s.condition == ALWAYS
    assert s.inputs == {
        "principalId": OutputRef("app", "id"),
        "region": ConfigRef("location"),
        "name": Literal("reader"),
    }


def test_builder_ands_repeated_conditions():
    s = (
        build("remediation")
        .target("remediation.bicep")
        .at(Scope.MANAGEMENT_GROUP)
        .when("deploy_ioa")
        .when("assign_permissions")
        .without_tags()
        .build()
    )
    assert s.condition == And((Flag("deploy_ioa"), Flag("assign_permissions")))
    assert s.apply_tags is False


def test_condition_errors_name_the_step():
    with pytest.raises(ConditionSyntaxError) as exc:
        step("roles", "roles.bicep", when="assign_permissions >= 1")
    assert exc.value.issues[0].step == "roles"

    with pytest.raises(ConditionSyntaxError) as exc:
        build("hub").target("hub.bicep").when("deploy_ioa and")
    assert exc.value.issues[0].step == "hub"


def test_builder_without_target_fails():
    with pytest.raises(ValueError):
        build("orphan").build()
