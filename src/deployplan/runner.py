# runner.py
from __future__ import annotations

import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .config import Configuration
from .errors import StepFailure
from .model import OutputRef, PlanResult, SkipReason, Step, StepResult, StepState
from .planner import Plan, build_plan
from .provisioning import ProvisionRequest, ProvisionResult, Provisioner, deployment_name
from .ui.console import get_console


# ----------------------------------------------------------------------
# Shared output map
# ----------------------------------------------------------------------

class OutputStore:
    """
    Outputs of succeeded steps, keyed by step name.

    Each step writes exactly once; readers get an immutable view.
    """

    def __init__(self) -> None:
        self._data: Dict[str, Mapping[str, Any]] = {}
        self._lock = threading.Lock()

    def put(self, step: str, outputs: Mapping[str, Any]) -> None:
        with self._lock:
            if step in self._data:
                raise RuntimeError(f"Outputs of step '{step}' were already recorded")
            self._data[step] = MappingProxyType(dict(outputs))

    def get(self, step: str, output: str) -> Any:
        with self._lock:
            return self._data[step][output]

    def __contains__(self, step: str) -> bool:
        with self._lock:
            return step in self._data


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def resolve_inputs(plan: Plan, step: Step, store: OutputStore) -> Dict[str, Any]:
    """Static inputs from the plan plus the outputs of already-succeeded producers."""
    resolved = dict(plan.static_inputs.get(step.name, {}))
    for param, value in step.inputs.items():
        if not isinstance(value, OutputRef):
            continue
        try:
            resolved[param] = store.get(value.step, value.output)
        except KeyError:
            raise StepFailure(
                step=step.name,
                message=f"input '{param}' needs output '{value}', which was not produced",
                details={"input": param, "reference": str(value)},
            ) from None
    return resolved


def build_request(plan: Plan, step: Step, store: OutputStore) -> ProvisionRequest:
    config = plan.config
    return ProvisionRequest(
        step=step.name,
        deployment_name=deployment_name(plan.name, step.name),
        target_path=step.target_path,
        scope=step.scope,
        inputs=resolve_inputs(plan, step, store),
        target_id=config.target_id(step.scope.value),
        subscription_id=config.subscription_id,
        location=config.location,
        expected_outputs=step.outputs,
    )


def _provision(provisioner: Provisioner, request: ProvisionRequest) -> ProvisionResult:
    result = provisioner.provision(request)
    if not isinstance(result, ProvisionResult):
        raise TypeError(
            f"{type(provisioner).__name__}.provision() returned {type(result).__name__}, "
            "expected ProvisionResult"
        )
    return result


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_plan(
    plan: Plan,
    provisioner: Provisioner,
    *,
    fail_fast: bool = True,
    max_workers: int | None = None,
) -> PlanResult:
    """
    Execute the included steps of `plan`, dependencies first.

    A step is dispatched once every step it depends on Succeeded. When a step
    fails, its transitive dependents are Skipped; with fail_fast, nothing new is
    started either and every remaining step is Skipped. Steps already running
    are allowed to finish.
    """
    console = get_console()
    graph = plan.graph
    store = OutputStore()

    results: Dict[str, StepResult] = {name: StepResult(name) for name in plan.steps}
    for name in plan.excluded:
        results[name].state = StepState.SKIPPED
        results[name].reason = SkipReason.CONDITION_FALSE

    trace: List[str] = []
    indeg = list(graph.indegree)
    by_name = lambda i: graph.steps[i].name  # noqa: E731
    ready: List[int] = sorted((i for i, d in enumerate(indeg) if d == 0), key=by_name)
    aborted = False

    if max_workers is None:
        c = os.cpu_count() or 2
        max_workers = max(1, c - 1)

    def fail(i: int, error: str, hint: Optional[str] = None) -> None:
        nonlocal aborted
        name = by_name(i)
        results[name].state = StepState.FAILED
        results[name].error = error
        console.print_failure(name, error, hint)
        for j in sorted(graph.descendants(i), key=by_name):
            dep = results[by_name(j)]
            if dep.state is StepState.PENDING:
                dep.state = StepState.SKIPPED
                dep.reason = SkipReason.DEPENDENCY_FAILED
                console.print_step_skipped(dep.name, dep.reason.value)
        if fail_fast:
            aborted = True

    in_flight: Dict[Future, tuple[int, float]] = {}

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        while ready or in_flight:
            # schedule all currently ready
            while ready and not aborted:
                i = ready.pop(0)
                step = graph.steps[i]
                if results[step.name].state is not StepState.PENDING:
                    continue
                try:
                    request = build_request(plan, step, store)
                except StepFailure as e:
                    fail(i, str(e), e.details.get("hint"))
                    continue

                results[step.name].state = StepState.RUNNING
                trace.append(step.name)
                console.print_step_start(step.name, step.scope.value, request.deployment_name)
                fut = pool.submit(_provision, provisioner, request)
                in_flight[fut] = (i, time.monotonic())

            if not in_flight:
                break

            # wait for one completion, then loop to schedule newly-ready steps
            fut = next(as_completed(list(in_flight.keys())))
            i, started = in_flight.pop(fut)
            name = by_name(i)
            results[name].duration = time.monotonic() - started

            try:
                outcome = fut.result()
            except Exception as e:
                outcome = ProvisionResult.failed(f"{type(e).__name__}: {e}")

            if not outcome.ok:
                fail(i, outcome.error or "provisioning failed", outcome.hint)
                continue

            store.put(name, outcome.outputs)
            results[name].state = StepState.SUCCEEDED
            results[name].outputs = dict(outcome.outputs)
            console.print_step_success(name, results[name].duration)

            # unlock dependents only on success
            for nxt in sorted(graph.edges[i], key=by_name):
                indeg[nxt] -= 1
                if indeg[nxt] == 0:
                    ready.append(nxt)

    for r in results.values():
        if r.state is StepState.PENDING:
            r.state = StepState.SKIPPED
            r.reason = SkipReason.FAIL_FAST
            console.print_step_skipped(r.name, r.reason.value)

    return PlanResult(plan_name=plan.name, steps=results, trace=trace)


def deploy(
    steps: Sequence[Step],
    config: Configuration,
    provisioner: Provisioner,
    *,
    name: str = "deployment",
    strict: bool = True,
    fail_fast: bool = True,
    max_workers: Optional[int] = None,
) -> PlanResult:
    """Build and validate a plan, then run it. Validation errors raise before any step runs."""
    plan = build_plan(steps, config, name=name, strict=strict)
    return run_plan(plan, provisioner, fail_fast=fail_fast, max_workers=max_workers)
