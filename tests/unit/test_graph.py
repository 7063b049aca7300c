import pytest

from loomwork.graph import CallDefinition, DependencyGraph, ScatterDefinition, TaskDefinition

TASK = TaskDefinition(name="t", command="echo", inputs=["a"], outputs={"o": "stdout"})


def _call(name, upstream=(), scatter=None):
    return CallDefinition(
        fqn=f"wf.{name}",
        name=name,
        task=TASK,
        inputs={"a": "x"},
        scatter=scatter,
        upstream=frozenset(f"wf.{u}" for u in upstream),
    )


def _graph(*calls, **kwargs):
    return DependencyGraph(name="wf", calls={c.fqn: c for c in calls}, **kwargs)


def test_downstream_and_descendants():
    graph = _graph(_call("a"), _call("b", ["a"]), _call("c", ["b"]), _call("d"))
    assert graph.downstream("wf.a") == {"wf.b"}
    assert graph.descendants("wf.a") == {"wf.b", "wf.c"}
    assert graph.descendants("wf.d") == set()
    order = graph.topological_order()
    assert order.index("wf.a") < order.index("wf.b") < order.index("wf.c")


def test_topological_order_detects_cycles():
    graph = _graph(_call("a", ["b"]), _call("b", ["a"]))
    with pytest.raises(ValueError, match="Cycle"):
        graph.topological_order()


def test_scatter_membership():
    scatter = ScatterDefinition(name="s", items=[1, 2], variable="x")
    graph = _graph(
        _call("a", scatter="s"),
        _call("b", ["a"], scatter="s"),
        _call("c", ["b"]),
        scatters={"s": scatter},
    )
    assert graph.same_scatter("wf.a", "wf.b")
    assert not graph.same_scatter("wf.b", "wf.c")
    assert not graph.same_scatter("wf.c", "wf.c")
    assert graph.scattered_calls("s") == ["wf.a", "wf.b"]


def test_declared_outputs_default_to_every_call_output():
    graph = _graph(_call("a"), _call("b"))
    assert graph.declared_outputs() == ["wf.a.o", "wf.b.o"]
    assert graph.split_output_fqn("wf.a.o") == ("wf.a", "o")
