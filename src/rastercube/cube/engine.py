# src/rastercube/cube/engine.py

"""
This module schedules the evaluation of cube graphs.

The chunk coordinate space of the root node is dispatched over a fixed-size
thread pool. Each chunk is computed synchronously on one worker thread; the
calling thread alone hands finished chunks to the sink, so sinks need no
locking. Chunk results never depend on scheduling, hence the output is the
same for every thread count.
"""

import logging
import os
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from dotenv import find_dotenv, load_dotenv

from rastercube.cube.buffer import ChunkBuffer
from rastercube.cube.nodes.base import CubeNode
from rastercube.cube.sink import ArraySink, ChunkSink, CubeMetadata
from rastercube.cube.view import ChunkCoord
from rastercube.exceptions import ChunkEvaluationError, ConfigurationError
from rastercube.raster.resources import estimate_chunk_memory

log = logging.getLogger(__name__)

__all__ = [
    "ErrorPolicy",
    "ExecutionConfig",
    "EvaluationReport",
    "evaluate",
    "iter_chunks"
]

class ErrorPolicy(Enum):
    """What to do when a chunk cannot be computed.

    Options:
        FAIL_FAST: Abort the evaluation with the first error (default).
        SKIP: Leave the chunk as no-data in the output, record it and go on.
    """
    FAIL_FAST = "fail_fast"
    SKIP = "skip"

class ExecutionConfig:
    """Configuration object for the scheduler.

    Args:
        threads: Number of worker threads. Default=1.
        error_policy: ErrorPolicy (or its value) applied to failed chunks.
        memory_check: Warn when concurrent chunk buffers may not fit in RAM.
    """
    def __init__(
        self,
        threads: int = 1,
        error_policy: Union[ErrorPolicy, str] = ErrorPolicy.FAIL_FAST,
        memory_check: bool = True
    ):
        try:
            threads = int(threads)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Thread count must be an integer, got {threads!r}") from None
        if threads < 1:
            raise ConfigurationError(f"Thread count must be at least 1, got {threads}")
        try:
            error_policy = ErrorPolicy(error_policy)
        except ValueError:
            raise ConfigurationError(
                f"Unknown error policy '{error_policy}'. Valid: {[p.value for p in ErrorPolicy]}"
            ) from None

        self.threads = threads
        self.error_policy = error_policy
        self.memory_check = memory_check

    @classmethod
    def from_env(cls, **overrides) -> "ExecutionConfig":
        """
        Build a config from RASTERCUBE_THREADS and RASTERCUBE_ERROR_POLICY.

        A .env file found from the working directory is loaded first; values
        already present in the environment take precedence over it.
        """
        env_path = find_dotenv(usecwd=True)
        if env_path:
            load_dotenv(env_path)
        values = {
            "threads": os.getenv("RASTERCUBE_THREADS", "1"),
            "error_policy": os.getenv("RASTERCUBE_ERROR_POLICY", ErrorPolicy.FAIL_FAST.value)
        }
        values.update(overrides)
        return cls(**values)

    def __repr__(self) -> str:
        return f"ExecutionConfig(threads={self.threads}, error_policy={self.error_policy.value})"

@dataclass
class EvaluationReport:
    """Summary of one evaluation.

    Args:
        n_chunks: Number of chunks in the output view.
        computed: Number of chunks delivered to the sink.
        failed: Coordinates of chunks skipped under ErrorPolicy.SKIP, with their error.
        elapsed: Wall-clock seconds.
        result: Whatever the sink returned when closed.
    """
    n_chunks: int
    computed: int = 0
    failed: Dict[ChunkCoord, ChunkEvaluationError] = field(default_factory=dict)
    elapsed: float = 0.0
    result: object = None

    @property
    def ok(self) -> bool:
        return not self.failed

def _check_graph(root: CubeNode):
    """Reject graphs with cycles."""
    visiting, done = set(), set()
    stack: List[Tuple[CubeNode, bool]] = [(root, False)]
    while stack:
        node, leaving = stack.pop()
        if leaving:
            visiting.discard(id(node))
            done.add(id(node))
            continue
        if id(node) in done:
            continue
        if id(node) in visiting:
            raise ConfigurationError(f"Cube graph contains a cycle through {node.kind}")
        visiting.add(id(node))
        stack.append((node, True))
        for child in node.inputs:
            if id(child) in visiting:
                raise ConfigurationError(f"Cube graph contains a cycle through {child.kind}")
            stack.append((child, False))

def _check_memory(root: CubeNode, config: ExecutionConfig):
    widest = max(len(node.band_names) for node in root.walk())
    estimate = estimate_chunk_memory(
        root.view.chunk_size,
        n_bands=widest,
        threads=config.threads,
        depth=root.node_count()
    )
    if estimate.is_safe:
        log.debug(f"Memory check passed. {estimate.reason}")
    else:
        log.warning(f"Concurrent chunk evaluation may exhaust memory. {estimate.reason}")

def _compute(root: CubeNode, coord: ChunkCoord) -> ChunkBuffer:
    try:
        return root.read(coord)
    except Exception as e:
        raise ChunkEvaluationError(coord, getattr(e, "node_kind", None) or root.kind, e) from e

def _dispatch(task: Callable[[ChunkCoord], Any], coords: Iterator[ChunkCoord], threads: int) -> Iterator[Tuple[ChunkCoord, Any]]:
    """
    Run `task` for every coordinate on a thread pool, yielding (coord, result).

    At most twice `threads` coordinates are queued at a time. When the consumer
    stops iterating, or `task` raises, pending work is cancelled and running
    tasks are allowed to finish before the generator returns.
    """
    executor = ThreadPoolExecutor(max_workers=threads, thread_name_prefix="rastercube")
    pending: Dict[Future, ChunkCoord] = {}
    try:
        # Keep a bounded backlog so finished buffers do not pile up in memory.
        def submit_next() -> bool:
            coord = next(coords, None)
            if coord is None:
                return False
            pending[executor.submit(task, coord)] = coord
            return True

        for _ in range(2 * threads):
            if not submit_next():
                break

        while pending:
            finished, _ = wait(pending, return_when=FIRST_COMPLETED)
            for future in sorted(finished, key=lambda f: pending[f]):
                coord = pending.pop(future)
                yield coord, future.result()
                submit_next()
    finally:
        for future in pending:
            future.cancel()
        executor.shutdown(wait=True, cancel_futures=True)

def iter_chunks(root: CubeNode, config: Optional[ExecutionConfig] = None) -> Iterator[ChunkBuffer]:
    """
    Compute every chunk of `root` and yield them as they complete.

    At most twice `threads` chunks are queued at a time. When the consumer stops
    iterating, or a chunk fails, pending chunks are cancelled and running ones
    are allowed to finish before the generator returns.

    Raises:
        ChunkEvaluationError: For the first chunk that fails.
    """
    config = config or ExecutionConfig()
    _check_graph(root)
    coords = iter(root.view.chunk_coords())

    if config.threads == 1:
        for coord in coords:
            yield _compute(root, coord)
        return

    dispatched = _dispatch(lambda coord: _compute(root, coord), coords, config.threads)
    try:
        for _, buffer in dispatched:
            yield buffer
    finally:
        dispatched.close()

def evaluate(
    root: CubeNode,
    sink: Optional[ChunkSink] = None,
    config: Optional[ExecutionConfig] = None
) -> EvaluationReport:
    """
    Materialize a cube graph into a sink.

    Args:
        root: Node to evaluate.
        sink: Destination of the chunks. Defaults to an in-memory ArraySink.
        config: Scheduler configuration. Defaults to a single thread, fail-fast.

    Returns:
        EvaluationReport: Counts, skipped chunks and the sink's result.

    Raises:
        ChunkEvaluationError: Under ErrorPolicy.FAIL_FAST, for the first chunk
            that could not be computed. The sink is closed unsuccessfully.
    """
    config = config or ExecutionConfig()
    sink = sink if sink is not None else ArraySink()
    _check_graph(root)

    view = root.view
    report = EvaluationReport(n_chunks=view.n_chunks)
    log.info(
        f"Evaluating {root.kind} graph ({root.node_count()} nodes, {len(root.band_names)} bands) "
        f"over {view.n_chunks} chunk(s) of {view.chunk_size} with {config.threads} thread(s)"
    )
    if config.memory_check:
        _check_memory(root, config)

    start = time.perf_counter()
    # Shared resources stay open while any evaluation of the graph is running.
    root.acquire()
    try:
        sink.open(CubeMetadata.from_node(root))
        success = False
        try:
            if config.error_policy == ErrorPolicy.FAIL_FAST:
                chunks = iter_chunks(root, config)
                try:
                    for buffer in chunks:
                        _deliver(sink, buffer, root)
                        report.computed += 1
                finally:
                    chunks.close()
            else:
                _evaluate_skipping(root, sink, config, report)
            success = True
        finally:
            report.result = sink.close(success)
    finally:
        root.release()

    report.elapsed = time.perf_counter() - start
    if report.failed:
        log.warning(f"Evaluation finished with {len(report.failed)} skipped chunk(s) in {report.elapsed:.2f}s")
    else:
        log.info(f"Evaluation finished: {report.computed} chunk(s) in {report.elapsed:.2f}s")
    return report

def _deliver(sink: ChunkSink, buffer: ChunkBuffer, root: CubeNode):
    try:
        sink.write(buffer)
    except ChunkEvaluationError:
        raise
    except Exception as e:
        raise ChunkEvaluationError(ChunkCoord(*buffer.coord), root.kind, e) from e

def _evaluate_skipping(root: CubeNode, sink: ChunkSink, config: ExecutionConfig, report: EvaluationReport):
    """Evaluate chunk by chunk, recording failures instead of aborting."""

    def attempt(coord: ChunkCoord):
        try:
            return _compute(root, coord)
        except ChunkEvaluationError as e:
            return e

    def handle(coord: ChunkCoord, outcome):
        if isinstance(outcome, ChunkEvaluationError):
            log.warning(f"Skipping chunk {tuple(coord)}: {outcome}")
            report.failed[coord] = outcome
            sink.mark_missing(coord, outcome.error)
            return
        try:
            _deliver(sink, outcome, root)
            report.computed += 1
        except ChunkEvaluationError as e:
            log.warning(f"Skipping chunk {tuple(coord)}: {e}")
            report.failed[coord] = e
            sink.mark_missing(coord, e.error)

    coords = iter(root.view.chunk_coords())
    if config.threads == 1:
        for coord in coords:
            handle(coord, attempt(coord))
        return

    dispatched = _dispatch(attempt, coords, config.threads)
    try:
        for coord, outcome in dispatched:
            handle(coord, outcome)
    finally:
        dispatched.close()
