import json
import subprocess
from pathlib import Path

import pytest

from deployplan import provisioning
from deployplan.model import Scope
from deployplan.provisioning import (
    AZ_HINT,
    LOGIN_HINT,
    MAX_DEPLOYMENT_NAME,
    AzCliProvisioner,
    InMemoryProvisioner,
    ProvisionRequest,
    deployment_name,
)


def _request(scope=Scope.MANAGEMENT_GROUP, target_id="mg-root", **kw):
    values = dict(
        step="roles",
        deployment_name="registration-roles",
        target_path="modules/roles.bicep",
        scope=scope,
        inputs={"principalId": "p-1"},
        target_id=target_id,
        subscription_id="sub-1",
        location="westus",
    )
    values.update(kw)
    return ProvisionRequest(**values)


# ---- deployment names ----

def test_deployment_name_is_plain_join_when_valid():
    assert deployment_name("registration", "app-registration") == "registration-app-registration"


def test_deployment_name_sanitized_and_stable():
    name = deployment_name("my plan", "step 1")
    assert name == deployment_name("my plan", "step 1")
    assert name.startswith("my-plan-step-1-")
    assert len(name) == len("my-plan-step-1-") + 8
    # a sanitized name never collides with the literal name it was mapped to
    assert name != deployment_name("my-plan", "step-1")


def test_deployment_name_truncated():
    name = deployment_name("plan", "s" * 100)
    assert len(name) == MAX_DEPLOYMENT_NAME
    assert name != deployment_name("plan", "s" * 99)


# ---- az command line ----

def test_command_for_management_group():
    cmd = AzCliProvisioner(template_root="templates").command(_request(), "/tmp/p.json")
    assert cmd == [
        "az", "deployment", "mg", "create",
        "--management-group-id", "mg-root",
        "--location", "westus",
        "--name", "registration-roles",
        "--template-file", str(Path("templates") / "modules/roles.bicep"),
        "--parameters", "@/tmp/p.json",
        "--output", "json",
        "--only-show-errors",
    ]


def test_command_for_tenant_and_subscription():
    az = AzCliProvisioner()
    tenant = az.command(_request(scope=Scope.TENANT, target_id=None), "p.json")
    assert tenant[1:4] == ["deployment", "tenant", "create"]
    assert "--location" in tenant

    sub = az.command(_request(scope=Scope.SUBSCRIPTION, target_id="sub-1"), "p.json")
    assert sub[1:6] == ["deployment", "sub", "create", "--subscription", "sub-1"]


def test_command_for_resource_group_has_no_location():
    cmd = AzCliProvisioner().command(_request(scope=Scope.RESOURCE_GROUP, target_id="rg"), "p.json")
    assert cmd[1:8] == ["deployment", "group", "create", "--resource-group", "rg", "--subscription", "sub-1"]
    assert "--location" not in cmd


def test_command_requires_management_group_id():
    with pytest.raises(ValueError):
        AzCliProvisioner().command(_request(target_id=None), "p.json")


def test_extra_args_appended():
    cmd = AzCliProvisioner(az="/opt/az", extra_args=["--debug"]).command(_request(), "p.json")
    assert cmd[0] == "/opt/az"
    assert cmd[-1] == "--debug"


def test_parameters_file_format():
    params = AzCliProvisioner.parameters(_request())
    assert params["contentVersion"] == "1.0.0.0"
    assert params["parameters"] == {"principalId": {"value": "p-1"}}


def test_parse_outputs():
    stdout = json.dumps(
        {
            "properties": {
                "provisioningState": "Succeeded",
                "outputs": {"principalId": {"type": "String", "value": "abc"}},
            }
        }
    )
    assert AzCliProvisioner.parse_outputs(stdout) == ("Succeeded", {"principalId": "abc"})
    assert AzCliProvisioner.parse_outputs("") == ("Succeeded", {})


# ---- az execution ----

class _FakeRun:
    def __init__(self, returncode=0, stdout="", stderr="", raises=None):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.raises = raises
        self.cmd = None
        self.parameters = None
        self.parameters_path = None

    def __call__(self, cmd, **kwargs):
        self.cmd = cmd
        self.parameters_path = Path(cmd[cmd.index("--parameters") + 1][1:])
        self.parameters = json.loads(self.parameters_path.read_text(encoding="utf-8"))
        if self.raises:
            raise self.raises
        return subprocess.CompletedProcess(cmd, self.returncode, stdout=self.stdout, stderr=self.stderr)


def test_provision_success(monkeypatch):
    run = _FakeRun(stdout=json.dumps({"properties": {"outputs": {"id": {"value": "x"}}}}))
    monkeypatch.setattr(provisioning.subprocess, "run", run)

    result = AzCliProvisioner().provision(_request())
    assert result.ok
    assert result.outputs == {"id": "x"}
    assert run.parameters["parameters"]["principalId"] == {"value": "p-1"}
    assert not run.parameters_path.exists()


def test_provision_nonzero_exit(monkeypatch):
    monkeypatch.setattr(provisioning.subprocess, "run", _FakeRun(returncode=1, stderr="AuthorizationFailed\n"))
    result = AzCliProvisioner().provision(_request())
    assert not result.ok
    assert "az exited with 1" in result.error
    assert "AuthorizationFailed" in result.error
    assert result.hint is None


def test_provision_logged_out_gets_login_hint(monkeypatch):
    stderr = "ERROR: Please run 'az login' to setup account.\n"
    monkeypatch.setattr(provisioning.subprocess, "run", _FakeRun(returncode=1, stderr=stderr))
    result = AzCliProvisioner().provision(_request())
    assert result.hint == LOGIN_HINT


def test_provision_failed_state(monkeypatch):
    stdout = json.dumps({"properties": {"provisioningState": "Failed"}})
    monkeypatch.setattr(provisioning.subprocess, "run", _FakeRun(stdout=stdout))
    result = AzCliProvisioner().provision(_request())
    assert result.error == "Deployment ended in state Failed"


def test_provision_az_missing(monkeypatch):
    monkeypatch.setattr(provisioning.subprocess, "run", _FakeRun(raises=FileNotFoundError("az")))
    result = AzCliProvisioner().provision(_request())
    assert not result.ok
    assert "'az' not found" in result.error
    assert result.hint == AZ_HINT


def test_provision_invalid_request_is_a_failure(monkeypatch):
    run = _FakeRun()
    monkeypatch.setattr(provisioning.subprocess, "run", run)
    result = AzCliProvisioner().provision(_request(target_id=None))
    assert not result.ok
    assert "management_group_id" in result.error
    assert run.cmd is None


# ---- in-memory ----

def test_in_memory_tracks_actions(tmp_path):
    state = tmp_path / "state.json"
    prov = InMemoryProvisioner(state_file=state)
    request = _request(expected_outputs=("principalId",))

    first = prov.provision(request)
    second = prov.provision(request)
    prov.provision(_request(inputs={"principalId": "p-2"}, expected_outputs=("principalId",)))

    assert first.outputs == second.outputs
    assert first.outputs["deploymentName"] == "registration-roles"
    assert [action for _key, action in prov.actions] == ["created", "unchanged", "updated"]
    assert len(prov.deployments) == 1

    reloaded = InMemoryProvisioner(state_file=state)
    assert reloaded.deployments == prov.deployments


def test_in_memory_outputs_depend_on_target():
    prov = InMemoryProvisioner()
    a = prov.provision(_request(expected_outputs=("id",)))
    b = prov.provision(_request(target_id="mg-other", expected_outputs=("id",)))
    assert a.outputs["id"] != b.outputs["id"]
    assert len(prov.deployments) == 2
