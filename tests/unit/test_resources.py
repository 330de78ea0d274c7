# tests/unit/test_resources.py

import threading

import pytest
import numpy as np

from rastercube.raster.resources import HandlePool, estimate_chunk_memory

@pytest.fixture
def rasters(raster_factory):
    return [raster_factory(f"r{i}.tif", np.full((8, 8), float(i))) for i in range(3)]

def test_checkout_reuses_handle_on_same_thread(rasters):
    pool = HandlePool(max_open=4)
    with pool.checkout(rasters[0]) as first:
        pass
    with pool.checkout(rasters[0]) as second:
        assert second is first
        assert not second.closed
    assert pool.open_count == 1
    pool.close_all()
    assert first.closed

def test_least_recently_used_handle_is_closed(rasters):
    pool = HandlePool(max_open=2)
    with pool.checkout(rasters[0]) as a:
        pass
    with pool.checkout(rasters[1]):
        pass
    with pool.checkout(rasters[0]):
        pass
    with pool.checkout(rasters[2]):
        pass
    assert pool.open_count == 2
    assert not a.closed
    pool.close_all()
    assert pool.open_count == 0

def test_threads_get_their_own_handles(rasters):
    pool = HandlePool()
    handles = {}

    def worker(name):
        with pool.checkout(rasters[0]) as ds:
            handles[name] = ds

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert handles[0] is not handles[1]
    assert pool.open_count == 2
    pool.close_all()
    assert all(ds.closed for ds in handles.values())

def test_failed_read_evicts_handle(rasters):
    pool = HandlePool()
    with pytest.raises(RuntimeError):
        with pool.checkout(rasters[0]) as ds:
            raise RuntimeError("read failed")
    assert ds.closed
    assert pool.open_count == 0

def test_close_thread(rasters):
    pool = HandlePool()
    for path in rasters:
        with pool.checkout(path):
            pass
    pool.close_thread()
    assert pool.open_count == 0

def test_close_all_skips_borrowed_handles(rasters):
    pool = HandlePool()
    with pool.checkout(rasters[1]) as idle:
        pass
    with pool.checkout(rasters[0]) as ds:
        assert pool.close_all() == 1
        assert not ds.closed
        assert ds.read(1)[0, 0] == 0.0
    assert idle.closed
    assert pool.close_all() == 0
    assert ds.closed

def test_checkout_reopens_handle_closed_by_another_thread(rasters):
    pool = HandlePool()
    with pool.checkout(rasters[0]) as first:
        pass
    closer = threading.Thread(target=pool.close_all)
    closer.start()
    closer.join()
    assert first.closed
    with pool.checkout(rasters[0]) as second:
        assert second is not first
        assert not second.closed
    pool.close_all()

def test_last_user_closes_handles(rasters):
    pool = HandlePool()
    pool.retain()
    pool.retain()
    with pool.checkout(rasters[0]) as ds:
        pass
    pool.release()
    assert pool.users == 1
    assert not ds.closed
    pool.release()
    assert pool.users == 0
    assert ds.closed
    assert pool.open_count == 0

def test_invalid_pool_size():
    with pytest.raises(ValueError):
        HandlePool(max_open=0)

def test_estimate_scales_with_threads():
    one = estimate_chunk_memory((16, 256, 256), n_bands=2, threads=1)
    four = estimate_chunk_memory((16, 256, 256), n_bands=2, threads=4)
    assert four.total_required_bytes == 4 * one.total_required_bytes
    assert one.is_safe
    assert "4 thread(s)" in four.reason

def test_estimate_flags_oversized_chunks():
    estimate = estimate_chunk_memory((10000, 10000, 10000), n_bands=10, threads=8)
    assert not estimate.is_safe
