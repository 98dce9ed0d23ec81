# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Sequence, Set

from .errors import PlanIssue, PlanValidationError
from .model import Step


@dataclass
class StepGraph:
    """
    Arena of steps with index-based edges.

      steps[i]    - the Step record
      index[name] - position of a step in `steps`
      edges[i]    - indices of steps that must run AFTER steps[i]
      indegree[i] - number of steps that must run BEFORE steps[i]
    """
    steps: List[Step]
    index: Dict[str, int]
    edges: List[Set[int]] = field(default_factory=list)
    indegree: List[int] = field(default_factory=list)

    def names(self, ids: Iterable[int]) -> List[str]:
        return [self.steps[i].name for i in ids]

    def predecessors(self, i: int) -> List[int]:
        return [j for j, out in enumerate(self.edges) if i in out]

    def descendants(self, i: int) -> Set[int]:
        """Every step that transitively depends on steps[i]."""
        seen: Set[int] = set()
        q = deque(self.edges[i])
        while q:
            j = q.popleft()
            if j in seen:
                continue
            seen.add(j)
            q.extend(self.edges[j])
        return seen


def index_steps(steps: Sequence[Step]) -> Dict[str, int]:
    """Map step name -> position; duplicate names are a validation error."""
    names = [s.name for s in steps]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise PlanValidationError([
            PlanIssue(
                kind="duplicate-step",
                step=n,
                message=f"Step name '{n}' is declared {names.count(n)} times",
            )
            for n in dupes
        ])
    return {name: i for i, name in enumerate(names)}


def build_graph(
    steps: Sequence[Step],
    deps_of: Callable[[Step], Iterable[str]],
    kind: str = "unknown-step",
) -> StepGraph:
    """
    Build a graph where each step must run after every name in deps_of(step).

    deps_of decides which relation the graph encodes (execution order,
    inclusion order, ...). Names that are not steps of the plan are reported
    together in one PlanValidationError.
    """
    steps = list(steps)
    index = index_steps(steps)

    graph = StepGraph(
        steps=steps,
        index=index,
        edges=[set() for _ in steps],
        indegree=[0 for _ in steps],
    )

    issues: List[PlanIssue] = []
    for i, step in enumerate(steps):
        for dep in deps_of(step):
            if dep not in index:
                issues.append(
                    PlanIssue(
                        kind=kind,
                        step=step.name,
                        message=f"Step '{step.name}' refers to missing step '{dep}'",
                        details={"known": ", ".join(sorted(index))},
                    )
                )
                continue
            j = index[dep]
            # Edge dep -> step (dep must run before step)
            if i not in graph.edges[j]:
                graph.edges[j].add(i)
                graph.indegree[i] += 1

    if issues:
        raise PlanValidationError(issues)
    return graph


def topo_levels(graph: StepGraph, cycle_kind: str = "dependency-cycle") -> List[List[int]]:
    """
    Convert the graph into topological "levels" (stages).
    Steps within one stage have no ordering constraint between them.
    """
    indeg = list(graph.indegree)  # copy (we mutate it)
    by_name = lambda i: graph.steps[i].name  # noqa: E731
    q = deque(sorted((i for i, d in enumerate(indeg) if d == 0), key=by_name))

    levels: List[List[int]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[int] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(graph.edges[node], key=by_name):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        stuck = sorted(by_name(i) for i, d in enumerate(indeg) if d > 0)
        raise PlanValidationError([
            PlanIssue(
                kind=cycle_kind,
                step=stuck[0],
                message=f"Cycle detected; steps that can never be ordered: {stuck}",
                details={"steps": ", ".join(stuck)},
            )
        ])

    return levels


def topo_order(graph: StepGraph, cycle_kind: str = "dependency-cycle") -> List[int]:
    return [i for level in topo_levels(graph, cycle_kind) for i in level]
