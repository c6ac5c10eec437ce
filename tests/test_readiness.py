import pytest
from app.core.errors import GraphCycleError
from app.core.readiness import ReadinessGraph, handshake_node, pipeline_graph
from app.core.workflow import HandshakeStatus, StageStatus


def test_pipeline_graph_chains_gate_and_stages():
    graph = pipeline_graph("abc", ["Source", "Build", "Deploy"])

    assert graph.dependencies("Source") == [handshake_node("abc")]
    assert graph.dependencies("Build") == ["Source"]
    assert graph.dependencies("Deploy") == ["Build"]
    assert graph.order() == [handshake_node("abc"), "Source", "Build", "Deploy"]


def test_handshake_success_satisfies_first_stage():
    graph = pipeline_graph("abc", ["Source", "Build"])
    statuses = {handshake_node("abc"): HandshakeStatus.SUCCESS, "Source": StageStatus.NOT_STARTED}

    assert graph.is_ready("Source", statuses)
    assert not graph.is_ready("Build", statuses)


@pytest.mark.parametrize("gate", [HandshakeStatus.FAILURE, HandshakeStatus.TIMED_OUT])
def test_unfavorable_gate_blocks(gate):
    graph = pipeline_graph("abc", ["Source"])
    statuses = {handshake_node("abc"): gate}

    assert not graph.is_ready("Source", statuses)
    assert graph.is_blocked("Source", statuses)


def test_pending_gate_is_neither_ready_nor_blocked():
    graph = pipeline_graph("abc", ["Source"])
    statuses = {handshake_node("abc"): HandshakeStatus.PENDING}

    assert not graph.is_ready("Source", statuses)
    assert not graph.is_blocked("Source", statuses)


def test_failed_stage_blocks_downstream():
    graph = pipeline_graph("abc", ["Source", "Build", "Deploy"])
    statuses = {handshake_node("abc"): "SUCCESS", "Source": "SUCCEEDED", "Build": "FAILED"}

    assert graph.is_blocked("Deploy", statuses)


def test_cycles_are_rejected():
    graph = ReadinessGraph()
    graph.add("a")
    graph.add("b", ["a"])
    graph.add("c", ["b"])

    with pytest.raises(GraphCycleError):
        graph.add("a", ["c"])
    with pytest.raises(GraphCycleError):
        graph.add("d", ["d"])
