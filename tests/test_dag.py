import pytest

from deployplan.dag import build_graph, index_steps, topo_levels, topo_order
from deployplan.dsl import output, step
from deployplan.errors import PlanValidationError


def _deps(s):
    return list(s.referenced_steps()) + list(s.depends_on)


def test_duplicate_names_rejected():
    steps = [step("a", "a.bicep"), step("b", "b.bicep"), step("a", "a2.bicep")]
    with pytest.raises(PlanValidationError) as exc:
        index_steps(steps)
    issue = exc.value.issues[0]
    assert issue.kind == "duplicate-step"
    assert issue.step == "a"


def test_unknown_dependency_reports_every_missing_name():
    steps = [
        step("a", "a.bicep", depends_on=["ghost"]),
        step("b", "b.bicep", inputs={"x": output("phantom", "id")}),
    ]
    with pytest.raises(PlanValidationError) as exc:
        build_graph(steps, _deps)
    assert [(i.kind, i.step) for i in exc.value.issues] == [
        ("unknown-step", "a"),
        ("unknown-step", "b"),
    ]
    assert "ghost" in exc.value.issues[0].message


def test_levels_group_independent_steps():
    steps = [
        step("identity", "identity.bicep", outputs=["principalId"]),
        step("hub", "hub.bicep"),
        step("rbac", "rbac.bicep", inputs={"p": output("identity", "principalId")}),
        step("diag", "diag.bicep", depends_on=["hub"]),
        step("register", "register.bicep", depends_on=["rbac", "diag"]),
    ]
    graph = build_graph(steps, _deps)
    levels = [graph.names(level) for level in topo_levels(graph)]
    assert levels == [["hub", "identity"], ["diag", "rbac"], ["register"]]


def test_edges_are_index_based():
    steps = [step("a", "a.bicep"), step("b", "b.bicep", depends_on=["a", "a"])]
    graph = build_graph(steps, lambda s: list(s.depends_on))
    assert graph.index == {"a": 0, "b": 1}
    assert graph.edges == [{1}, set()]
    assert graph.indegree == [0, 1]
    assert graph.predecessors(1) == [0]


def test_descendants_are_transitive():
    steps = [
        step("a", "a.bicep"),
        step("b", "b.bicep", depends_on=["a"]),
        step("c", "c.bicep", depends_on=["b"]),
        step("d", "d.bicep"),
    ]
    graph = build_graph(steps, _deps)
    assert set(graph.names(graph.descendants(0))) == {"b", "c"}
    assert graph.descendants(3) == set()


def test_cycle_detected():
    steps = [
        step("a", "a.bicep", depends_on=["c"]),
        step("b", "b.bicep", depends_on=["a"]),
        step("c", "c.bicep", depends_on=["b"]),
        step("free", "free.bicep"),
    ]
    graph = build_graph(steps, _deps)
    with pytest.raises(PlanValidationError) as exc:
        topo_order(graph)
    issue = exc.value.issues[0]
    assert issue.kind == "dependency-cycle"
    assert issue.details["steps"] == "a, b, c"
