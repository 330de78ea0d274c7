# src/rastercube/cube/nodes/_aggregate.py

"""
NaN-aware reductions along the first axis.

Missing samples are NaN. A pixel whose samples are all missing yields NaN for
every function. These helpers avoid numpy's nan* functions that emit
RuntimeWarnings on all-NaN slices, since silencing warnings is not thread-safe.
"""

import numpy as np

def _valid_count(stack: np.ndarray) -> np.ndarray:
    return np.count_nonzero(~np.isnan(stack), axis=0)

def first(stack: np.ndarray) -> np.ndarray:
    out = np.full(stack.shape[1:], np.nan)
    for layer in stack:
        fill = np.isnan(out) & ~np.isnan(layer)
        out[fill] = layer[fill]
    return out

def last(stack: np.ndarray) -> np.ndarray:
    return first(stack[::-1])

def nanmin(stack: np.ndarray) -> np.ndarray:
    return np.fmin.reduce(stack, axis=0)

def nanmax(stack: np.ndarray) -> np.ndarray:
    return np.fmax.reduce(stack, axis=0)

def nansum(stack: np.ndarray) -> np.ndarray:
    n = _valid_count(stack)
    return np.where(n > 0, np.nansum(stack, axis=0), np.nan)

def nanprod(stack: np.ndarray) -> np.ndarray:
    n = _valid_count(stack)
    return np.where(n > 0, np.nanprod(stack, axis=0), np.nan)

def count(stack: np.ndarray) -> np.ndarray:
    n = _valid_count(stack)
    return np.where(n > 0, n.astype(np.float64), np.nan)

def nanmean(stack: np.ndarray) -> np.ndarray:
    n = _valid_count(stack)
    return np.where(n > 0, np.nansum(stack, axis=0) / np.maximum(n, 1), np.nan)

def nanmedian(stack: np.ndarray) -> np.ndarray:
    n = _valid_count(stack)
    ordered = np.sort(stack, axis=0)  # NaN sorts last
    lo = np.maximum((n - 1) // 2, 0)[np.newaxis]
    hi = (n // 2)[np.newaxis]
    a = np.take_along_axis(ordered, lo, axis=0)[0]
    b = np.take_along_axis(ordered, hi, axis=0)[0]
    return np.where(n > 0, (a + b) / 2.0, np.nan)

def nanvar(stack: np.ndarray) -> np.ndarray:
    """Sample variance (ddof=1); NaN where fewer than two samples are valid."""
    n = _valid_count(stack)
    mean = nanmean(stack)
    sq = np.where(np.isnan(stack), 0.0, (stack - mean) ** 2)
    return np.where(n > 1, sq.sum(axis=0) / np.maximum(n - 1, 1), np.nan)

def nansd(stack: np.ndarray) -> np.ndarray:
    return np.sqrt(nanvar(stack))

REDUCERS = {
    "min": nanmin,
    "max": nanmax,
    "mean": nanmean,
    "median": nanmedian,
    "sum": nansum,
    "count": count,
    "first": first,
    "last": last,
    "prod": nanprod,
    "var": nanvar,
    "sd": nansd
}
