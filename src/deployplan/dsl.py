# dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .conditions import ALWAYS, Condition, Equals, Flag, Included, all_of, parse_condition
from .model import ConfigRef, InputValue, Literal, OutputRef, Scope, Step


# ---------------------------------------------------------------------
# Input / condition helpers
# ---------------------------------------------------------------------

def output(step: str, name: str) -> OutputRef:
    """Reference output `name` of `step`."""
    return OutputRef(step=step, output=name)


def config(field: str) -> ConfigRef:
    """Reference a Configuration field."""
    return ConfigRef(field=field)


def literal(value: Any) -> Literal:
    return Literal(value)


def when(text: str) -> Condition:
    """Parse a condition: when("scope == 'management-group' and deploy_ioa")."""
    return parse_condition(text)


def flag(field: str) -> Condition:
    return Flag(field)


def scope_is(value: Union[str, Scope]) -> Condition:
    return Equals("scope", value)


def included(step: str) -> Condition:
    return Included(step)


def _as_input(value: Any) -> InputValue:
    if isinstance(value, (Literal, ConfigRef, OutputRef)):
        return value
    return Literal(value)


def _as_condition(value: Union[None, str, bool, Condition], step: Optional[str] = None) -> Condition:
    if value is None:
        return ALWAYS
    if isinstance(value, Condition):
        return value
    return parse_condition(value, step=step)


# ---------------------------------------------------------------------
# Functional Step helper
# ---------------------------------------------------------------------

def step(
    name: str,
    target: str,
    *,
    scope: Union[str, Scope] = Scope.SUBSCRIPTION,
    when: Union[None, str, bool, Condition] = None,
    inputs: Optional[Mapping[str, Any]] = None,
    depends_on: Optional[Iterable[str]] = None,
    outputs: Optional[Iterable[str]] = None,
    apply_tags: bool = True,
) -> Step:
    """
    Declare a step.

    Plain values in `inputs` are literals; use output(...) and config(...) for
    references.
    """
    return Step(
        name=name,
        target_path=target,
        scope=Scope(scope),
        condition=_as_condition(when, name),
        inputs={k: _as_input(v) for k, v in (inputs or {}).items()},
        depends_on=tuple(depends_on or ()),
        outputs=tuple(outputs or ()),
        apply_tags=apply_tags,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class StepBuilder:
    def __init__(self, name: str, target: str = ""):
        self.name = name
        self._target = target
        self._scope: Scope = Scope.SUBSCRIPTION
        self._conditions: List[Condition] = []
        self._inputs: Dict[str, InputValue] = {}
        self._depends_on: List[str] = []
        self._outputs: List[str] = []
        self._apply_tags = True

    def target(self, path: str):
        self._target = path
        return self

    def at(self, scope: Union[str, Scope]):
        self._scope = Scope(scope)
        return self

    def when(self, condition: Union[str, Condition]):
        # repeated calls AND together
        self._conditions.append(_as_condition(condition, self.name))
        return self

    def with_input(self, name: str, value: Any):
        self._inputs[name] = _as_input(value)
        return self

    def with_inputs(self, **values: Any):
        for k, v in values.items():
            self.with_input(k, v)
        return self

    def depends_on(self, *step_names: str):
        self._depends_on.extend(step_names)
        return self

    def produces(self, *names: str):
        self._outputs.extend(names)
        return self

    def without_tags(self):
        self._apply_tags = False
        return self

    def build(self) -> Step:
        if not self._target:
            raise ValueError(f"Step '{self.name}' has no target")
        return Step(
            name=self.name,
            target_path=self._target,
            scope=self._scope,
            condition=all_of(*self._conditions),
            inputs=dict(self._inputs),
            depends_on=tuple(self._depends_on),
            outputs=tuple(self._outputs),
            apply_tags=self._apply_tags,
        )


def build(name: str) -> StepBuilder:
    """Convenience: build('rbac').target('rbac.bicep').when('assign_permissions').build()"""
    return StepBuilder(name)


# ---------------------------------------------------------------------
# Plan helper
# ---------------------------------------------------------------------

def plan(*steps: Union[Step, StepBuilder]) -> List[Step]:
    """
    Plan definition helper.

        from deployplan.dsl import plan, step, output

        def steps():
            return plan(
                step("identity", "identity.bicep", outputs=["principalId"]),
                step("rbac", "rbac.bicep",
                     when="assign_permissions",
                     inputs={"principalId": output("identity", "principalId")}),
            )
    """
    return [s.build() if isinstance(s, StepBuilder) else s for s in steps]
