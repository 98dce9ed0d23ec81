import itertools

import pytest

from deployplan.blueprints import registration
from deployplan.config import Configuration
from deployplan.model import SkipReason, StepState
from deployplan.planner import build_plan
from deployplan.provisioning import InMemoryProvisioner
from deployplan.runner import run_plan

FLAGS = [
    "assign_permissions",
    "deploy_ioa",
    "deploy_activity_log_diagnostics",
    "deploy_entra_log_diagnostics",
    "deploy_activity_log_policy",
    "deploy_realtime_visibility",
]


def _config(scope, **flags):
    return Configuration(
        scope=scope,
        management_group_id="mg-root",
        subscription_id="00000000-0000-0000-0000-000000000001",
        client_id="app",
        client_secret="s3cret",
        **flags,
    )


def test_management_group_defaults():
    plan = build_plan(registration.plan(), _config("management-group"), name=registration.PLAN_NAME)
    assert plan.excluded == [
        "role-assignments-sub",
        "activity-log-diagnostics-sub",
        "realtime-visibility",
    ]
    assert plan.levels[0] == ["app-registration", "ioa-infrastructure"]
    assert plan.dependencies("policy-remediation-roles") == ["activity-log-diagnostics-policy"]
    assert plan.dependencies("product-registration") == ["app-registration", "role-assignments-mg"]


def test_subscription_defaults():
    plan = build_plan(registration.plan(), _config("subscription"))
    assert plan.excluded == [
        "role-assignments-mg",
        "activity-log-diagnostics-policy",
        "policy-remediation-roles",
        "realtime-visibility",
    ]
    assert "activity-log-diagnostics-sub" in plan.dependencies("ioa-registration")


def test_without_ioa_only_registration_remains():
    plan = build_plan(registration.plan(), _config("management-group", deploy_ioa=False))
    assert plan.included == ["app-registration", "role-assignments-mg", "product-registration"]


@pytest.mark.parametrize("scope", ["management-group", "subscription"])
def test_valid_for_every_flag_combination(scope):
    for values in itertools.product([True, False], repeat=len(FLAGS)):
        cfg = _config(scope, **dict(zip(FLAGS, values)))
        plan = build_plan(registration.plan(), cfg)
        assert "app-registration" in plan.included
        assert "product-registration" in plan.included


@pytest.mark.parametrize(
    "scope, assign_permissions, deploy_ioa",
    list(itertools.product(["management-group", "subscription"], [True, False], [True, False])),
)
def test_dry_run(scope, assign_permissions, deploy_ioa):
    cfg = _config(scope, assign_permissions=assign_permissions, deploy_ioa=deploy_ioa)
    plan = build_plan(registration.plan(), cfg, name=registration.PLAN_NAME)
    prov = InMemoryProvisioner()
    result = run_plan(plan, prov)

    assert result.ok
    assert result.by_state(StepState.SUCCEEDED) == [n for n in result.steps if n in plan.included]
    for name in plan.excluded:
        assert result.steps[name].reason is SkipReason.CONDITION_FALSE

    registration_inputs = next(d for d in prov.deployments.values() if d["step"] == "product-registration")["inputs"]
    assert registration_inputs["clientSecret"] == "s3cret"
    assert registration_inputs["targetScope"] == scope
    assert registration_inputs["applicationId"] == result.outputs["app-registration"]["applicationId"]
