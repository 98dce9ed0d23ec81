# planner.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .conditions import Condition, find_counterexample
from .config import Configuration
from .dag import StepGraph, build_graph, index_steps, topo_levels, topo_order
from .errors import PlanIssue, PlanValidationError
from .model import ConfigRef, Literal, Step


@dataclass
class Plan:
    """
    A validated, configuration-specific plan.

    `graph` and `levels` cover the included steps only; `static_inputs` holds
    the literal and configuration inputs already resolved per included step.
    Output references are resolved by the runner once their producer Succeeded.
    """
    name: str
    config: Configuration
    steps: Dict[str, Step]
    included: List[str]
    excluded: List[str]
    graph: StepGraph
    levels: List[List[str]]
    static_inputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def step(self, name: str) -> Step:
        return self.steps[name]

    def dependencies(self, name: str) -> List[str]:
        i = self.graph.index[name]
        return self.graph.names(self.graph.predecessors(i))


# ----------------------------------------------------------------------
# Phase 1: structure
# ----------------------------------------------------------------------

def _execution_deps(step: Step) -> List[str]:
    deps = step.referenced_steps()
    for d in step.depends_on:
        if d not in deps:
            deps.append(d)
    return deps


def _check_fields(steps: Sequence[Step], config: Configuration) -> List[PlanIssue]:
    by_name = {s.name: s for s in steps}
    issues: List[PlanIssue] = []
    for s in steps:
        for ref in s.output_refs():
            producer = by_name.get(ref.step)
            if producer is not None and producer.outputs and ref.output not in producer.outputs:
                issues.append(
                    PlanIssue(
                        kind="unknown-output",
                        step=s.name,
                        message=f"Step '{s.name}' uses output '{ref}' which '{ref.step}' does not declare",
                        details={"declared": ", ".join(producer.outputs)},
                    )
                )
        for name in sorted(s.condition.fields()):
            if not config.has_field(name):
                issues.append(
                    PlanIssue(
                        kind="unknown-field",
                        step=s.name,
                        message=f"Condition of '{s.name}' reads unknown configuration field '{name}'",
                        details={"condition": str(s.condition)},
                    )
                )
        for param, value in s.inputs.items():
            if isinstance(value, ConfigRef) and not config.has_field(value.field):
                issues.append(
                    PlanIssue(
                        kind="unknown-field",
                        step=s.name,
                        message=f"Input '{param}' of '{s.name}' reads unknown configuration field '{value.field}'",
                    )
                )
    return issues


def _structure(steps: Sequence[Step], config: Configuration) -> Tuple[StepGraph, StepGraph]:
    index_steps(steps)

    issues: List[PlanIssue] = []
    graphs: List[StepGraph] = []
    for deps_of in (lambda s: sorted(s.condition.included_steps()), _execution_deps):
        try:
            graphs.append(build_graph(steps, deps_of))
        except PlanValidationError as e:
            issues.extend(e.issues)
    issues.extend(_check_fields(steps, config))
    if issues:
        raise PlanValidationError(issues)

    inclusion, execution = graphs
    for graph, kind in ((inclusion, "condition-cycle"), (execution, "dependency-cycle")):
        try:
            topo_levels(graph, cycle_kind=kind)
        except PlanValidationError as e:
            issues.extend(e.issues)
    if issues:
        raise PlanValidationError(issues)

    return inclusion, execution


# ----------------------------------------------------------------------
# Phase 2: conditions
# ----------------------------------------------------------------------

def evaluate_conditions(
    steps: Sequence[Step],
    config: Configuration,
    inclusion: Optional[StepGraph] = None,
) -> Dict[str, bool]:
    """
    Decide, for every step, whether it is part of the plan.

    Steps are evaluated in topological order of their included(...) references
    so a referenced step is always decided first.
    """
    if inclusion is None:
        inclusion = build_graph(steps, lambda s: sorted(s.condition.included_steps()))

    decided: Dict[str, bool] = {}
    for i in topo_order(inclusion, cycle_kind="condition-cycle"):
        s = inclusion.steps[i]
        decided[s.name] = s.condition.evaluate(config.get, decided.__getitem__)
    return decided


def inline_conditions(steps: Sequence[Step]) -> Dict[str, Condition]:
    """Conditions with every included(...) replaced by the referenced step's own condition."""
    by_name = {s.name: s for s in steps}
    memo: Dict[str, Condition] = {}

    def resolve(name: str) -> Condition:
        if name not in memo:
            memo[name] = by_name[name].condition.inline(resolve)
        return memo[name]

    for s in steps:
        resolve(s.name)
    return memo


# ----------------------------------------------------------------------
# Phase 3: references
# ----------------------------------------------------------------------

def _format_assignment(assignment: Mapping[str, Any]) -> str:
    return ", ".join(f"{k}={v!r}" for k, v in assignment.items()) or "(any configuration)"


def check_references(
    steps: Sequence[Step],
    config: Configuration,
    decided: Mapping[str, bool],
    strict: bool = True,
    domains: Optional[Mapping[str, Sequence[Any]]] = None,
) -> List[PlanIssue]:
    """
    A step may only consume outputs of steps that run whenever it runs.

    Always checked against `config`; with strict=True the implication is
    also proved for every configuration, so a plan that happens to pass for
    this configuration but not for another is rejected too.
    """
    by_name = {s.name: s for s in steps}
    issues: List[PlanIssue] = []
    reported: Set[Tuple[str, str]] = set()

    for s in steps:
        if not decided[s.name]:
            continue
        for dep in s.referenced_steps():
            if decided[dep]:
                continue
            reported.add((s.name, dep))
            issues.append(
                PlanIssue(
                    kind="unmet-reference",
                    step=s.name,
                    message=f"Step '{s.name}' uses outputs of '{dep}', which is excluded by its condition",
                    details={
                        "referenced": dep,
                        "unmet_condition": str(by_name[dep].condition),
                        "condition": str(s.condition),
                    },
                )
            )

    if not strict:
        return issues

    if domains is None:
        domains = Configuration.field_domains(config)
    inlined = inline_conditions(steps)
    for s in steps:
        for dep in s.referenced_steps():
            if (s.name, dep) in reported:
                continue
            try:
                cex = find_counterexample(inlined[s.name], inlined[dep], domains)
            except ValueError as e:
                issues.append(
                    PlanIssue(
                        kind="unproven-reference",
                        step=s.name,
                        message=f"Step '{s.name}' uses outputs of '{dep}' but the implication could not be checked",
                        details={
                            "referenced": dep,
                            "condition": str(s.condition),
                            "reason": str(e),
                        },
                    )
                )
                continue
            if cex is None:
                continue
            issues.append(
                PlanIssue(
                    kind="unproven-reference",
                    step=s.name,
                    message=(
                        f"Step '{s.name}' uses outputs of '{dep}' but its condition does not "
                        f"imply the condition of '{dep}'"
                    ),
                    details={
                        "referenced": dep,
                        "unmet_condition": str(by_name[dep].condition),
                        "condition": str(s.condition),
                        "counterexample": _format_assignment(cex),
                    },
                )
            )
    return issues


def _static_inputs(step: Step, config: Configuration) -> Dict[str, Any]:
    resolved: Dict[str, Any] = {}
    for param, value in step.inputs.items():
        if isinstance(value, Literal):
            resolved[param] = value.value
        elif isinstance(value, ConfigRef):
            resolved[param] = config.resolve(value.field)
    if step.apply_tags and config.tags and "tags" not in step.inputs:
        resolved["tags"] = dict(config.tags)
    return resolved


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def build_plan(
    steps: Sequence[Step],
    config: Configuration,
    *,
    name: str = "deployment",
    strict: bool = True,
    domains: Optional[Mapping[str, Sequence[Any]]] = None,
) -> Plan:
    """
    Validate `steps` against `config` and return the executable Plan.

    Raises PlanValidationError before anything runs when the plan has
    duplicate or unknown step names, unknown configuration fields, a cycle in
    conditions or in execution order, or a step that consumes outputs of a
    step that may not run.
    """
    steps = list(steps)
    inclusion, _execution = _structure(steps, config)

    decided = evaluate_conditions(steps, config, inclusion)
    issues = check_references(steps, config, decided, strict=strict, domains=domains)
    if issues:
        raise PlanValidationError(issues)

    included = [s for s in steps if decided[s.name]]
    included_names = {s.name for s in included}

    by_name = {s.name: s for s in steps}

    def deps_in_plan(s: Step) -> List[str]:
        # an edge to an excluded step is replaced by that step's own dependencies
        out: List[str] = []
        seen: Set[str] = set()
        pending = deque(_execution_deps(s))
        while pending:
            d = pending.popleft()
            if d in seen:
                continue
            seen.add(d)
            if d in included_names:
                out.append(d)
            else:
                pending.extend(_execution_deps(by_name[d]))
        return out

    graph = build_graph(included, deps_in_plan)
    levels = [graph.names(level) for level in topo_levels(graph)]

    return Plan(
        name=name,
        config=config,
        steps={s.name: s for s in steps},
        included=[n for level in levels for n in level],
        excluded=[s.name for s in steps if not decided[s.name]],
        graph=graph,
        levels=levels,
        static_inputs={s.name: _static_inputs(s, config) for s in included},
    )
