# tests/unit/test_engine.py

import logging

import pytest
import numpy as np

from rastercube.cube.engine import ErrorPolicy, ExecutionConfig, evaluate, iter_chunks
from rastercube.cube.nodes import ApplyPixelNode, ReduceNode
from rastercube.cube.sink import ArraySink, ChunkSink
from rastercube.cube.view import ChunkCoord
from rastercube.exceptions import ChunkEvaluationError, ConfigurationError
from helpers import ArrayNode, FailingNode, assert_same_bytes, ramp

@pytest.fixture
def view(view_factory):
    return view_factory()

@pytest.fixture
def graph(view):
    source = ArrayNode(view, ramp(view, n_bands=2), ["a", "b"])
    return ApplyPixelNode(source, {"ratio": "(a - b) / (a + b)", "double": "2 * a"})

class RecordingSink(ChunkSink):
    def __init__(self):
        super().__init__()
        self.order = []
        self.close_args = []

    def _write(self, coord, buffer):
        self.order.append(coord)

    def _close(self, success):
        self.close_args.append(success)
        return "done" if success else None

# Configuration

def test_config_defaults():
    config = ExecutionConfig()
    assert config.threads == 1
    assert config.error_policy is ErrorPolicy.FAIL_FAST

@pytest.mark.parametrize("kwargs", [
    {"threads": 0},
    {"threads": "many"},
    {"error_policy": "retry"}
])
def test_config_rejects_invalid_values(kwargs):
    with pytest.raises(ConfigurationError):
        ExecutionConfig(**kwargs)

def test_config_from_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("RASTERCUBE_THREADS", "3")
    monkeypatch.setenv("RASTERCUBE_ERROR_POLICY", "skip")
    config = ExecutionConfig.from_env()
    assert config.threads == 3
    assert config.error_policy is ErrorPolicy.SKIP

    assert ExecutionConfig.from_env(threads=2).threads == 2

# Scheduling

def test_every_chunk_computed_once(view):
    source = ArrayNode(view, ramp(view), ["a"])
    sink = RecordingSink()
    report = evaluate(source, sink, ExecutionConfig(threads=4))
    assert report.ok
    assert report.computed == view.n_chunks == 8
    assert sorted(sink.order) == list(view.chunk_coords())
    assert source.reads == view.n_chunks
    assert sink.close_args == [True]
    assert report.result == "done"

@pytest.mark.parametrize("threads", [2, 3, 8])
def test_output_independent_of_thread_count(graph, threads):
    single = evaluate(graph, config=ExecutionConfig(threads=1)).result
    multi = evaluate(graph, config=ExecutionConfig(threads=threads)).result
    for name in ("ratio", "double"):
        assert_same_bytes(single[name].values, multi[name].values)

def test_iter_chunks_yields_coordinates(graph, view):
    coords = [ChunkCoord(*buf.coord) for buf in iter_chunks(graph, ExecutionConfig(threads=2))]
    assert sorted(coords) == list(view.chunk_coords())

def test_iter_chunks_can_stop_early(graph):
    chunks = iter_chunks(graph, ExecutionConfig(threads=2))
    first = next(chunks)
    chunks.close()
    assert first.count == 2

def test_reduce_graph_in_parallel(view):
    source = ArrayNode(view, ramp(view), ["v"])
    result = evaluate(ReduceNode(source, "max"), config=ExecutionConfig(threads=4)).result
    assert result["v_max"].shape == (1, 8, 8)
    np.testing.assert_array_equal(result["v_max"].values[0], ramp(view)[0, -1])

# Errors

@pytest.mark.parametrize("threads", [1, 4])
def test_fail_fast_reports_chunk_and_node(view, threads):
    source = ArrayNode(view, ramp(view), ["a"])
    failing = FailingNode(source, bad_coords=[(1, 0, 1)], error=ValueError("sensor glitch"))
    sink = RecordingSink()
    with pytest.raises(ChunkEvaluationError) as exc:
        evaluate(failing, sink, ExecutionConfig(threads=threads))
    assert exc.value.coord == (1, 0, 1)
    assert exc.value.node == "failing"
    assert isinstance(exc.value.error, ValueError)
    assert sink.close_args == [False]

def test_error_inside_nested_node_names_origin(view):
    source = ArrayNode(view, ramp(view), ["a"])
    failing = FailingNode(source, bad_coords=[(0, 0, 0)])
    root = ApplyPixelNode(failing, "a * 2")
    with pytest.raises(ChunkEvaluationError) as exc:
        evaluate(root)
    assert exc.value.node == "failing"

def test_fail_fast_array_sink_returns_nothing(view):
    failing = FailingNode(ArrayNode(view, ramp(view), ["a"]), bad_coords=[(0, 1, 1)])
    sink = ArraySink()
    with pytest.raises(ChunkEvaluationError):
        evaluate(failing, sink)
    assert sink.result is None

@pytest.mark.parametrize("threads", [1, 3])
def test_skip_policy_leaves_chunks_missing(view, threads, caplog):
    source = ArrayNode(view, ramp(view), ["a"])
    bad = [(0, 0, 0), (1, 1, 1)]
    failing = FailingNode(source, bad_coords=bad)
    config = ExecutionConfig(threads=threads, error_policy="skip")

    with caplog.at_level(logging.WARNING, logger="rastercube.cube.engine"):
        report = evaluate(failing, config=config)

    assert not report.ok
    assert sorted(report.failed) == [ChunkCoord(*c) for c in bad]
    assert report.computed == view.n_chunks - 2
    assert "Skipping chunk" in caplog.text

    values = report.result["a"].values
    assert np.isnan(values[0:2, 0:4, 0:4]).all()
    assert np.isnan(values[2:4, 4:8, 4:8]).all()
    np.testing.assert_array_equal(values[0:2, 4:8, 0:4], ramp(view)[0, 0:2, 4:8, 0:4])
    assert report.result.attrs["missing_chunks"] == "0,0,0;1,1,1"

class BrokenMarkerSink(RecordingSink):
    def mark_missing(self, coord, error):
        raise RuntimeError("cannot record missing chunk")

def test_skip_policy_stops_when_sink_fails(view_factory):
    view = view_factory(chunk_size=(1, 1, 1))
    source = ArrayNode(view, ramp(view), ["a"])
    failing = FailingNode(source, bad_coords=[(0, 0, 0)])
    sink = BrokenMarkerSink()

    with pytest.raises(RuntimeError, match="cannot record"):
        evaluate(failing, sink, ExecutionConfig(threads=2, error_policy="skip"))

    # Only the bounded backlog was computed, not the remaining chunks.
    assert view.n_chunks == 256
    assert source.reads < 32
    assert sink.close_args == [False]

def test_rejects_cyclic_graph(view):
    a = ArrayNode(view, ramp(view), ["a"])
    b = FailingNode(a, bad_coords=[])
    a._inputs = (b,)
    with pytest.raises(ConfigurationError, match="cycle"):
        evaluate(b)

def test_memory_warning(view, caplog, monkeypatch):
    from rastercube.cube import engine
    from rastercube.raster.resources import MemoryEstimate

    monkeypatch.setattr(engine, "estimate_chunk_memory", lambda *a, **k: MemoryEstimate(10, 1, False, "Req: lots"))
    with caplog.at_level(logging.WARNING, logger="rastercube.cube.engine"):
        evaluate(ArrayNode(view, ramp(view), ["a"]))
    assert "may exhaust memory" in caplog.text
