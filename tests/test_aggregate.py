from pipewright.aggregate import (
    ALL_SUCCEEDED,
    all_succeeded,
    combine_states,
    evaluate_gate,
    evaluate_run_condition,
    resolve_gate,
)
from pipewright.dag import build_graph
from pipewright.dsl import call, job, matrix
from pipewright.model import NodeState

S, F, T, C, K = (
    NodeState.SUCCEEDED,
    NodeState.FAILED,
    NodeState.TIMED_OUT,
    NodeState.CANCELLED,
    NodeState.SKIPPED,
)


def j(name, **kw):
    return job(name, call("noop", lambda ctx: True), **kw)


def finish(graph, node_id, state):
    node = graph.node(node_id)
    if state is NodeState.SKIPPED:
        graph.transition(node, state)
        return
    graph.transition(node, NodeState.READY)
    graph.transition(node, NodeState.RUNNING)
    graph.transition(node, state)


def test_combine_states():
    assert combine_states([S, S]) is S
    assert combine_states([S, F, C]) is F
    assert combine_states([S, T]) is T
    assert combine_states([S, C, K]) is C
    assert combine_states([K, K]) is K
    assert combine_states([]) is K
    assert combine_states([S, K]) is S


def test_timed_out_reads_as_failure():
    assert T.result == "failure"
    assert combine_states([S, T]).result == "failure"


def test_all_succeeded_and_resolve_gate():
    assert all_succeeded("a", "b") == "needs.a.result == 'success' && needs.b.result == 'success'"
    assert resolve_gate(j("g", needs=["x", "y"], gate=ALL_SUCCEEDED)) == all_succeeded("x", "y")
    assert resolve_gate(j("g", gate=ALL_SUCCEEDED)) == "true"
    assert resolve_gate(j("g")) is None


def test_default_condition_requires_every_dependency_to_succeed():
    graph = build_graph([j("a"), j("b"), j("c", needs=["a", "b"])])
    finish(graph, "a", S)
    finish(graph, "b", F)
    run, why = evaluate_run_condition(graph, graph.node("c"))
    assert run is False
    assert "did not succeed" in why


def test_condition_without_status_function_is_implicitly_success_guarded():
    graph = build_graph([j("a"), j("c", needs=["a"], if_="needs.a.result == 'failure'")])
    finish(graph, "a", F)
    run, _ = evaluate_run_condition(graph, graph.node("c"))
    assert run is False


def test_failure_and_always_conditions():
    graph = build_graph([
        j("a"),
        j("on-fail", needs=["a"], if_="${{ failure() }}"),
        j("cleanup", needs=["a"], if_="always()"),
        j("on-cancel", needs=["a"], if_="cancelled()"),
    ])
    finish(graph, "a", T)
    assert evaluate_run_condition(graph, graph.node("on-fail"))[0] is True
    assert evaluate_run_condition(graph, graph.node("cleanup"))[0] is True
    assert evaluate_run_condition(graph, graph.node("on-cancel"))[0] is False


def test_matrix_result_is_combined_for_dependents():
    graph = build_graph([
        j("test", matrix=matrix(py=["3.11", "3.12"])),
        j("gate", needs=["test"], if_="always()", gate=ALL_SUCCEEDED),
    ])
    finish(graph, "test[py=3.11]", S)
    finish(graph, "test[py=3.12]", C)
    assert evaluate_gate(graph, graph.node("gate")) is False

    graph = build_graph([
        j("test", matrix=matrix(py=["3.11", "3.12"])),
        j("gate", needs=["test"], if_="always()", gate=ALL_SUCCEEDED),
    ])
    finish(graph, "test[py=3.11]", S)
    finish(graph, "test[py=3.12]", S)
    assert evaluate_gate(graph, graph.node("gate")) is True


def test_skipped_dependency_fails_an_all_succeeded_gate():
    graph = build_graph([j("a"), j("g", needs=["a"], if_="always()", gate=ALL_SUCCEEDED)])
    finish(graph, "a", K)
    assert evaluate_gate(graph, graph.node("g")) is False


def test_custom_gate_can_tolerate_skips():
    gate = "needs.a.result == 'success' || needs.a.result == 'skipped'"
    graph = build_graph([j("a"), j("g", needs=["a"], if_="always()", gate=gate)])
    finish(graph, "a", K)
    assert evaluate_gate(graph, graph.node("g")) is True
