# loader.py
from __future__ import annotations

import runpy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

import yaml

from .conditions import parse_condition
from .errors import PlanLoadError, PlanValidationError
from .model import ConfigRef, InputValue, Literal, OutputRef, Scope, Step

BUILTIN_PREFIX = "builtin:"


@dataclass
class LoadedPlan:
    name: str
    steps: List[Step]
    source: str


# ----------------------------------------------------------------------
# Python plan files
# ----------------------------------------------------------------------

def load_python_plan(path: str | Path) -> LoadedPlan:
    """
    Load a plan from a python file.

    The file must define either:
      - plan() -> List[Step]
      - STEPS = [Step, ...]
    and may define PLAN_NAME (defaults to the file stem).
    """
    plan_path = Path(path).expanduser().resolve()
    if not plan_path.exists():
        raise PlanLoadError(f"Plan file not found: {plan_path}")

    module_name = f"deployplan_plan_{plan_path.stem}"
    try:
        globals_dict = runpy.run_path(str(plan_path), run_name=module_name)
    except (PlanLoadError, PlanValidationError):
        raise
    except Exception as e:
        raise PlanLoadError(f"Error while executing {plan_path.name}: {type(e).__name__}: {e}") from e

    steps = None
    if "plan" in globals_dict and callable(globals_dict["plan"]):
        try:
            steps = globals_dict["plan"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise PlanLoadError(
                    "Your plan() is being called with arguments (name collision with the helper). "
                    "Import the helper under another name: `from deployplan.dsl import plan as steps`."
                ) from e
            raise PlanLoadError(f"plan() in {plan_path.name} failed: TypeError: {e}") from e
        except (PlanLoadError, PlanValidationError):
            raise
        except Exception as e:
            raise PlanLoadError(f"plan() in {plan_path.name} failed: {type(e).__name__}: {e}") from e
    elif "STEPS" in globals_dict:
        steps = globals_dict["STEPS"]

    if not isinstance(steps, list) or not all(isinstance(s, Step) for s in steps):
        raise PlanLoadError(
            "Plan file must return/define a List[Step]. "
            "Define plan() -> List[Step] or STEPS = [Step, ...]."
        )

    name = globals_dict.get("PLAN_NAME") or plan_path.stem
    return LoadedPlan(name=str(name), steps=steps, source=str(plan_path))


# ----------------------------------------------------------------------
# YAML plan files
# ----------------------------------------------------------------------

class YamlPlanLoader:
    """
    Load a plan from YAML:

        name: registration
        steps:
          - name: identity
            target: modules/identity.bicep
            scope: tenant
            outputs: [principalId]
          - name: rbac
            target: modules/rbac.bicep
            scope: management-group
            when: scope == 'management-group' and assign_permissions
            inputs:
              principalId: {output: identity.principalId}
              location: {config: location}
              roleName: Reader
    """

    def load_from_file(self, path: str | Path) -> LoadedPlan:
        p = Path(path).expanduser()
        if not p.exists():
            raise PlanLoadError(f"Plan file not found: {p}")

        with p.open("r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise PlanLoadError(f"Could not parse plan file {p}: {e}") from e

        if data is None:
            raise PlanLoadError(f"Plan file is empty: {p}")
        if not isinstance(data, dict):
            raise PlanLoadError(f"Plan file is invalid (expected a mapping): {p}")

        loaded = self.load_from_dict(data, default_name=p.stem)
        loaded.source = str(p.resolve())
        return loaded

    def load_from_dict(self, data: Dict[str, Any], default_name: str = "deployment") -> LoadedPlan:
        steps_data = data.get("steps")
        if not isinstance(steps_data, list):
            raise PlanLoadError("Plan must contain a 'steps' list")
        steps = [self._load_step(item, idx) for idx, item in enumerate(steps_data)]
        return LoadedPlan(name=str(data.get("name") or default_name), steps=steps, source="<dict>")

    def _load_step(self, data: Any, idx: int) -> Step:
        if not isinstance(data, dict):
            raise PlanLoadError(f"Step #{idx + 1} must be a mapping")
        name = data.get("name")
        if not name:
            raise PlanLoadError(f"Step #{idx + 1} has no name")
        target = data.get("target") or data.get("target_path")
        if not target:
            raise PlanLoadError(f"Step '{name}' has no target")

        try:
            scope = Scope(data.get("scope", Scope.SUBSCRIPTION.value))
        except ValueError:
            allowed = ", ".join(s.value for s in Scope)
            raise PlanLoadError(f"Step '{name}' has invalid scope {data.get('scope')!r}; expected one of: {allowed}") from None

        inputs_data = data.get("inputs") or {}
        if not isinstance(inputs_data, dict):
            raise PlanLoadError(f"Step '{name}': inputs must be a mapping")

        return Step(
            name=str(name),
            target_path=str(target),
            scope=scope,
            condition=parse_condition(data.get("when"), step=str(name)),
            inputs={str(k): self._load_input(name, k, v) for k, v in inputs_data.items()},
            depends_on=tuple(self._names(data.get("depends_on"))),
            outputs=tuple(self._names(data.get("outputs"))),
            apply_tags=bool(data.get("apply_tags", True)),
        )

    @staticmethod
    def _names(value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [str(v) for v in value]

    @staticmethod
    def _load_input(step: str, param: str, value: Any) -> InputValue:
        if isinstance(value, dict) and len(value) == 1:
            (kind, ref), = value.items()
            if kind == "config":
                return ConfigRef(field=str(ref))
            if kind == "output":
                text = str(ref)
                if "." not in text:
                    raise PlanLoadError(
                        f"Step '{step}' input '{param}': output reference must be 'step.output', got {text!r}"
                    )
                producer, out = text.rsplit(".", 1)
                return OutputRef(step=producer, output=out)
            if kind == "value":
                return Literal(ref)
        return Literal(value)


# ----------------------------------------------------------------------
# Dispatch
# ----------------------------------------------------------------------

def builtin_plans() -> Dict[str, Any]:
    from .blueprints import registration

    return {"registration": registration}


def load_plan(source: str | Path) -> LoadedPlan:
    """Load a plan from `builtin:<name>`, a .py file or a .yaml/.yml file."""
    text = str(source)
    if text.startswith(BUILTIN_PREFIX):
        key = text[len(BUILTIN_PREFIX):]
        plans = builtin_plans()
        if key not in plans:
            raise PlanLoadError(f"Unknown built-in plan {key!r}. Known: {sorted(plans)}")
        module = plans[key]
        return LoadedPlan(name=module.PLAN_NAME, steps=module.plan(), source=text)

    path = Path(text)
    if path.suffix == ".py":
        return load_python_plan(path)
    if path.suffix in (".yaml", ".yml"):
        return YamlPlanLoader().load_from_file(path)
    raise PlanLoadError(f"Plan must be a .py, .yaml or .yml file (or builtin:<name>), got: {path.name}")
