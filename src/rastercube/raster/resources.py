# src/rastercube/raster/resources.py

"""
This module manages native raster resources used during cube evaluation.

It covers two concerns:
- Dataset handles: GDAL dataset handles are not safe for concurrent use, so
  every worker thread keeps its own bounded cache of open rasterio datasets
  (HandlePool). A handle is only ever used by the thread that opened it.
- Memory safety: estimating whether the chunk working set of all threads fits
  in available RAM (Memory Estimation).
"""

import logging
import threading
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Set, Union

import numpy as np
import psutil
import rasterio

log = logging.getLogger(__name__)

__all__ = [
    "HandlePool",
    "MemoryEstimate",
    "estimate_chunk_memory"
]

DEFAULT_SAFETY_FACTOR = 3.0
MIN_FREE_GB = 0.5
DEFAULT_MAX_OPEN = 32

class HandlePool:
    """
    Per-thread LRU cache of open rasterio datasets keyed by path.

    `checkout()` hands out a dataset for exclusive use on the calling thread.
    Handles are never shared between threads; each thread opens its own.
    The least recently used handles of a thread are closed once more than
    `max_open` are cached.

    Evaluations bracket their use of the pool with `retain()` and `release()`.
    Cached handles are closed when the last user releases the pool, and a
    handle that is checked out is never closed from another thread.

    Args:
        max_open: Maximum number of datasets kept open per thread.
    """

    def __init__(self, max_open: int = DEFAULT_MAX_OPEN):
        if max_open < 1:
            raise ValueError(f"max_open must be >= 1, got {max_open}")
        self.max_open = max_open
        self._local = threading.local()
        self._lock = threading.Lock()
        self._open: Set[rasterio.DatasetReader] = set()
        self._busy: Set[rasterio.DatasetReader] = set()
        self._users = 0

    def _cache(self) -> "OrderedDict[str, rasterio.DatasetReader]":
        cache = getattr(self._local, "cache", None)
        if cache is None:
            cache = OrderedDict()
            self._local.cache = cache
        return cache

    def _close(self, dataset: rasterio.DatasetReader):
        with self._lock:
            self._open.discard(dataset)
            self._busy.discard(dataset)
            if not dataset.closed:
                dataset.close()

    @contextmanager
    def checkout(self, path: Union[str, Path]) -> Iterator[rasterio.DatasetReader]:
        """
        Borrow an open dataset for `path` on the current thread.

        The handle is evicted if the body raises, since a failed read may leave
        the underlying GDAL dataset in an unusable state.
        """
        key = str(path)
        cache = self._cache()

        with self._lock:
            dataset = cache.get(key)
            if dataset is not None and dataset.closed:
                dataset = None
            if dataset is not None:
                self._busy.add(dataset)

        if dataset is None:
            log.debug(f"Opening {key} on thread {threading.current_thread().name}")
            dataset = rasterio.open(key)
            with self._lock:
                self._open.add(dataset)
                self._busy.add(dataset)
            cache[key] = dataset
        cache.move_to_end(key)

        try:
            yield dataset
        except Exception:
            self.evict(key)
            raise
        finally:
            with self._lock:
                self._busy.discard(dataset)

        while len(cache) > self.max_open:
            _, oldest = cache.popitem(last=False)
            self._close(oldest)

    def evict(self, path: Union[str, Path]):
        """Close the current thread's handle for `path`, if any."""
        dataset = self._cache().pop(str(path), None)
        if dataset is not None:
            self._close(dataset)

    def close_thread(self):
        """Close every handle cached by the current thread."""
        cache = self._cache()
        while cache:
            _, dataset = cache.popitem()
            self._close(dataset)

    def close_all(self) -> int:
        """
        Close every handle opened through this pool that is not checked out.

        Handles borrowed by a thread at this moment stay open; their owner
        keeps using them and they are closed by a later call.

        Returns:
            int: Number of handles left open because they were in use.
        """
        with self._lock:
            idle = [ds for ds in self._open if ds not in self._busy]
            for dataset in idle:
                self._open.discard(dataset)
                if not dataset.closed:
                    dataset.close()
            in_use = len(self._open)
        log.debug(f"Closed {len(idle)} pooled raster handle(s), {in_use} still in use")
        return in_use

    def retain(self):
        """Register one more user (an evaluation) of the pool."""
        with self._lock:
            self._users += 1

    def release(self):
        """Drop one user; the last one closes the idle handles."""
        with self._lock:
            self._users = max(0, self._users - 1)
            last = self._users == 0
        if last:
            self.close_all()

    @property
    def users(self) -> int:
        with self._lock:
            return self._users

    @property
    def open_count(self) -> int:
        with self._lock:
            return len(self._open)

@dataclass(frozen=True)
class MemoryEstimate:
    """
    Estimation of memory requirements of a concurrent evaluation.

    Args:
        total_required_bytes: Bytes required by all threads' chunk buffers (with overhead)
        available_system_bytes: Currently available system memory in bytes
        is_safe: Boolean indicating if the evaluation is considered safe
        reason: Explanation for the safety assessment
    """
    total_required_bytes: int
    available_system_bytes: int
    is_safe: bool
    reason: str

def estimate_chunk_memory(
    chunk_size: tuple,
    n_bands: int,
    threads: int,
    depth: int = 1,
    itemsize: int = np.dtype(np.float64).itemsize,
    safety_factor: float = DEFAULT_SAFETY_FACTOR,
    min_free_gb: float = MIN_FREE_GB
) -> MemoryEstimate:
    """
    Checks whether `threads` concurrent chunk evaluations fit in RAM.

    Args:
        chunk_size: (t, y, x) chunk shape.
        n_bands: Widest band count along the graph.
        threads: Number of chunks evaluated concurrently.
        depth: Number of graph nodes, each holding one buffer at a time.
        itemsize: Bytes per sample.
        safety_factor: Multiplier to account for temporaries.
        min_free_gb: Minimum free GB to leave available.

    Returns:
        MemoryEstimate: Contains total required bytes, available bytes, safety boolean, and reason.
    """
    t, y, x = chunk_size
    raw_bytes = int(t) * int(y) * int(x) * max(1, n_bands) * itemsize
    total_required = int(raw_bytes * safety_factor * max(1, depth) * max(1, threads))

    mem = psutil.virtual_memory()
    min_free_bytes = int(min_free_gb * (1024**3))
    is_safe = (total_required + min_free_bytes) <= mem.available

    reason = f"Req: {total_required/1e9:.2f}GB for {threads} thread(s), Avail: {mem.available/1e9:.2f}GB"

    return MemoryEstimate(total_required, mem.available, is_safe, reason)
