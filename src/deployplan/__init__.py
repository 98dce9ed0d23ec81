from .config import Configuration, load_configuration
from .dsl import step, plan, output, when, StepBuilder, build
from .errors import PlanValidationError, StepFailure
from .model import Step, Scope, StepState, SkipReason, PlanResult
from .planner import Plan, build_plan
from .provisioning import Provisioner, ProvisionRequest, ProvisionResult, InMemoryProvisioner, AzCliProvisioner
from .runner import run_plan, deploy

__all__ = [
    "Configuration", "load_configuration",
    "step", "plan", "output", "when", "StepBuilder", "build",
    "PlanValidationError", "StepFailure",
    "Step", "Scope", "StepState", "SkipReason", "PlanResult",
    "Plan", "build_plan",
    "Provisioner", "ProvisionRequest", "ProvisionResult", "InMemoryProvisioner", "AzCliProvisioner",
    "run_plan", "deploy",
]
