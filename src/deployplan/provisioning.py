# provisioning.py
# The provisioning collaborator: the only place where a step touches the
# outside world. The planner and runner never talk to a cloud API directly.

from __future__ import annotations

import hashlib
import json
import os
import re
import subprocess
import tempfile
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .model import Scope


class ProvisionStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class ProvisionRequest:
    step: str
    deployment_name: str  # stable across runs; the provisioner's idempotence key
    target_path: str
    scope: Scope
    inputs: Dict[str, Any]
    target_id: Optional[str] = None
    subscription_id: Optional[str] = None
    location: Optional[str] = None
    expected_outputs: Tuple[str, ...] = ()


@dataclass
class ProvisionResult:
    status: ProvisionStatus
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    hint: Optional[str] = None  # what the operator can do about a failure

    @classmethod
    def succeeded(cls, outputs: Optional[Dict[str, Any]] = None) -> "ProvisionResult":
        return cls(status=ProvisionStatus.SUCCEEDED, outputs=dict(outputs or {}))

    @classmethod
    def failed(cls, error: str, hint: Optional[str] = None) -> "ProvisionResult":
        return cls(status=ProvisionStatus.FAILED, error=error, hint=hint)

    @property
    def ok(self) -> bool:
        return self.status is ProvisionStatus.SUCCEEDED


class Provisioner(ABC):
    """
    Creates or updates the resources of one step.

    Implementations must be idempotent per deployment_name: provisioning the
    same request twice converges to the same state and returns the same outputs.
    They may raise; the runner records any exception as a failed step.
    """

    @abstractmethod
    def provision(self, request: ProvisionRequest) -> ProvisionResult:
        raise NotImplementedError


# ----------------------------------------------------------------------
# Stable identity
# ----------------------------------------------------------------------

MAX_DEPLOYMENT_NAME = 64  # Azure deployment name limit
_INVALID_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.()-]+")


def deployment_name(plan_name: str, step_name: str) -> str:
    """
    Deterministic deployment name for a step of a plan.

    Only depends on the two names, so re-running a plan updates the same
    deployments instead of creating new ones.
    """
    raw = f"{plan_name}-{step_name}"
    name = _INVALID_NAME_CHARS.sub("-", raw).strip("-.") or "deployment"
    if len(name) <= MAX_DEPLOYMENT_NAME and name == raw:
        return name
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:8]
    return f"{name[: MAX_DEPLOYMENT_NAME - 9]}-{digest}"


# ----------------------------------------------------------------------
# In-memory provisioner (dry runs, tests)
# ----------------------------------------------------------------------

_OUTPUT_NAMESPACE = uuid.UUID("6f1c4a52-2d0e-4b1e-9a57-0c3f6d9e8b21")


def _stable_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


class InMemoryProvisioner(Provisioner):
    """
    Records deployments in a dict (optionally persisted to a JSON file).

    Outputs are derived from the deployment identity, so repeated runs return
    identical values. Each key holds exactly one deployment: a second request
    with the same identity updates it in place (or leaves it unchanged when the
    inputs did not change).
    """

    def __init__(self, state_file: str | Path | None = None):
        self.state_file = Path(state_file) if state_file else None
        self.deployments: Dict[str, Dict[str, Any]] = {}
        self.actions: List[Tuple[str, str]] = []  # (deployment key, created|updated|unchanged)
        self._lock = threading.Lock()
        if self.state_file and self.state_file.exists():
            self.deployments = json.loads(self.state_file.read_text(encoding="utf-8") or "{}")

    @staticmethod
    def key(request: ProvisionRequest) -> str:
        return f"{request.scope.value}/{request.target_id or '-'}/{request.deployment_name}"

    @staticmethod
    def outputs_for(request: ProvisionRequest) -> Dict[str, Any]:
        outputs: Dict[str, Any] = {"deploymentName": request.deployment_name}
        for name in request.expected_outputs:
            outputs[name] = str(uuid.uuid5(_OUTPUT_NAMESPACE, f"{InMemoryProvisioner.key(request)}/{name}"))
        return outputs

    def provision(self, request: ProvisionRequest) -> ProvisionResult:
        key = self.key(request)
        inputs = json.loads(_stable_json(request.inputs))

        with self._lock:
            existing = self.deployments.get(key)
            if existing is None:
                action = "created"
            elif existing["inputs"] == inputs:
                action = "unchanged"
            else:
                action = "updated"

            outputs = self.outputs_for(request)
            self.deployments[key] = {
                "step": request.step,
                "target_path": request.target_path,
                "scope": request.scope.value,
                "inputs": inputs,
                "outputs": outputs,
            }
            self.actions.append((key, action))
            self._save()

        return ProvisionResult.succeeded(outputs)

    def _save(self) -> None:
        if not self.state_file:
            return
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.state_file.with_suffix(self.state_file.suffix + ".tmp")
        tmp.write_text(json.dumps(self.deployments, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, self.state_file)


# ----------------------------------------------------------------------
# Azure CLI provisioner
# ----------------------------------------------------------------------

AZ_HINT = "Install the Azure CLI (https://aka.ms/azure-cli) and run `az login`."
LOGIN_HINT = "Run `az login` (or `az login --tenant <tenant-id>`) and retry."


class AzCliProvisioner(Provisioner):
    """
    Runs `az deployment <scope> create` for each step.

    The Azure Resource Manager deployment is itself create-or-update keyed by
    the deployment name, which is what makes re-runs converge.
    """

    def __init__(
        self,
        az: str = "az",
        template_root: str | Path = ".",
        timeout: Optional[float] = None,
        extra_args: Optional[List[str]] = None,
    ):
        self.az = az
        self.template_root = Path(template_root)
        self.timeout = timeout
        self.extra_args = list(extra_args or [])

    def command(self, request: ProvisionRequest, parameters_file: str) -> List[str]:
        scope = request.scope
        if scope is Scope.TENANT:
            cmd = ["deployment", "tenant", "create"]
        elif scope is Scope.MANAGEMENT_GROUP:
            if not request.target_id:
                raise ValueError("management_group_id is required for management-group steps")
            cmd = ["deployment", "mg", "create", "--management-group-id", request.target_id]
        elif scope is Scope.SUBSCRIPTION:
            cmd = ["deployment", "sub", "create"]
            if request.target_id:
                cmd += ["--subscription", request.target_id]
        elif scope is Scope.RESOURCE_GROUP:
            if not request.target_id:
                raise ValueError("resource_group_name is required for resource-group steps")
            cmd = ["deployment", "group", "create", "--resource-group", request.target_id]
            if request.subscription_id:
                cmd += ["--subscription", request.subscription_id]
        else:
            raise ValueError(f"Unsupported scope: {scope}")

        if scope is not Scope.RESOURCE_GROUP and request.location:
            cmd += ["--location", request.location]

        template = self.template_root / request.target_path
        cmd += [
            "--name", request.deployment_name,
            "--template-file", str(template),
            "--parameters", f"@{parameters_file}",
            "--output", "json",
            "--only-show-errors",
        ]
        return [self.az, *cmd, *self.extra_args]

    @staticmethod
    def parameters(request: ProvisionRequest) -> Dict[str, Any]:
        return {
            "$schema": "https://schema.management.azure.com/schemas/2019-04-01/deploymentParameters.json#",
            "contentVersion": "1.0.0.0",
            "parameters": {k: {"value": v} for k, v in request.inputs.items()},
        }

    @staticmethod
    def parse_outputs(stdout: str) -> Tuple[str, Dict[str, Any]]:
        """Return (provisioningState, outputs) from `az deployment ... create` JSON."""
        data = json.loads(stdout) if stdout.strip() else {}
        props = data.get("properties") or {}
        outputs = {k: (v or {}).get("value") for k, v in (props.get("outputs") or {}).items()}
        return props.get("provisioningState", "Succeeded"), outputs

    def provision(self, request: ProvisionRequest) -> ProvisionResult:
        # Parameters go through a file so secrets never show up in the process list
        fd, params_path = tempfile.mkstemp(prefix="deployplan-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self.parameters(request), f, default=str)

            try:
                cmd = self.command(request, params_path)
            except ValueError as e:
                return ProvisionResult.failed(str(e))

            try:
                proc = subprocess.run(
                    cmd,
                    text=True,
                    capture_output=True,
                    timeout=self.timeout,
                )
            except FileNotFoundError:
                return ProvisionResult.failed(f"'{self.az}' not found", hint=AZ_HINT)
            except subprocess.TimeoutExpired:
                return ProvisionResult.failed(f"Timed out after {self.timeout}s")
        finally:
            try:
                os.unlink(params_path)
            except FileNotFoundError:
                pass

        if proc.returncode != 0:
            stderr = proc.stderr.strip()
            return ProvisionResult.failed(
                f"az exited with {proc.returncode}: {stderr[-4000:]}",
                hint=LOGIN_HINT if "az login" in stderr else None,
            )

        try:
            state, outputs = self.parse_outputs(proc.stdout)
        except json.JSONDecodeError as e:
            return ProvisionResult.failed(f"Could not parse az output: {e}")

        if state != "Succeeded":
            return ProvisionResult.failed(f"Deployment ended in state {state}")
        return ProvisionResult.succeeded(outputs)
