# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .conditions import ALWAYS, Condition


class Scope(str, Enum):
    """Resource-hierarchy level a step deploys against."""
    TENANT = "tenant"
    MANAGEMENT_GROUP = "management-group"
    SUBSCRIPTION = "subscription"
    RESOURCE_GROUP = "resource-group"


# ----------------------------------------------------------------------
# Input values
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class ConfigRef:
    """Value of a Configuration field, read when the plan is built."""
    field: str


@dataclass(frozen=True)
class OutputRef:
    """Output `output` of step `step`; available once that step Succeeded."""
    step: str
    output: str

    def __str__(self) -> str:
        return f"{self.step}.{self.output}"


InputValue = Union[Literal, ConfigRef, OutputRef]


@dataclass(frozen=True)
class Step:
    """
    One unit of provisioning work.

    `target_path` is opaque to the planner (a template/module path handed to the
    provisioner). `name` doubles as the stable identity of the deployment, so it
    must not change between runs of the same plan.
    """
    name: str
    target_path: str
    scope: Scope
    condition: Condition = ALWAYS
    inputs: Mapping[str, InputValue] = field(default_factory=dict)
    depends_on: Tuple[str, ...] = ()
    outputs: Tuple[str, ...] = ()  # declared output names; empty means undeclared
    apply_tags: bool = True

    def output_refs(self) -> List[OutputRef]:
        return [v for v in self.inputs.values() if isinstance(v, OutputRef)]

    def referenced_steps(self) -> List[str]:
        """Steps whose outputs this step consumes (deduplicated, declaration order)."""
        seen: Dict[str, None] = {}
        for ref in self.output_refs():
            seen.setdefault(ref.step, None)
        return list(seen)


# ----------------------------------------------------------------------
# Runtime state
# ----------------------------------------------------------------------

class StepState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    CONDITION_FALSE = "condition-false"
    DEPENDENCY_FAILED = "cancelled-by-dependency-failure"
    FAIL_FAST = "cancelled-by-fail-fast"


@dataclass
class StepResult:
    name: str
    state: StepState = StepState.PENDING
    reason: Optional[SkipReason] = None
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    duration: Optional[float] = None

    @property
    def label(self) -> str:
        if self.state is StepState.SKIPPED and self.reason is not None:
            return f"skipped({self.reason.value})"
        return self.state.value


@dataclass
class PlanResult:
    plan_name: str
    steps: Dict[str, StepResult]
    trace: List[str] = field(default_factory=list)  # dispatch order

    @property
    def ok(self) -> bool:
        return not any(r.state is StepState.FAILED for r in self.steps.values())

    @property
    def outputs(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: dict(r.outputs)
            for name, r in self.steps.items()
            if r.state is StepState.SUCCEEDED
        }

    def by_state(self, state: StepState) -> List[str]:
        return [name for name, r in self.steps.items() if r.state is state]
