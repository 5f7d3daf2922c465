"""Timing and diagnostic reporting for the AMGe restrictor setup.

This module provides:
  - A small timing collector (`RestrictorStats`) that supports labeled timers.
  - Helpers to compute min/median/max summaries of per-agglomerate quantities.
  - A compact, human-readable summary printer (rank 0 only).

Typical usage
-------------
Within the restrictor pipeline:

    stats = RestrictorStats(rank=comm_rank(comm), n_fine=n_dofs)
    with stats.timeit("agglomerate"):
        ... build agglomerates ...
    with stats.timeit("eigensolve"):
        ... solve local eigenproblems ...
    _amge_finalize_stats(stats=stats, agglomerates=aggs, eigs=eigs, ...)
    _amge_print_summary(stats, print_info=print_info)

The caller decides which timer keys are used; this module simply stores them.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any
import time

import numpy as np

from .types import Agglomerates, EigenInfo


@dataclass(slots=True)
class RestrictorStats:
    """Setup timings and summary statistics of one restrictor build.

    Attributes
    ----------
    rank
        Rank of the calling process; only rank 0 prints.
    n_fine
        Global number of fine DOFs.
    n_aggs
        Number of agglomerates on this rank (filled in finalize).
    n_coarse
        Global number of coarse basis vectors (filled in finalize).
    timings
        Dict mapping timer keys to elapsed seconds (local to this rank).
    extra
        Dict for derived metrics and summary scalars (min/med/max, PoU error, ...).
    """

    rank: int
    n_fine: int
    n_aggs: int | None = None
    n_coarse: int | None = None
    timings: dict[str, float] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @contextmanager
    def timeit(self, key: str):
        """Context manager that accumulates elapsed time under `timings[key]`."""
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self.timings[key] = self.timings.get(key, 0.0) + (time.perf_counter() - t0)


def _store_mmx(extra: dict[str, Any], base: str, arr) -> None:
    """Store min/median/max of an array-like into `extra` under `<base>_{min,med,max}`."""
    a = np.asarray(arr, dtype=float)
    if a.size == 0:
        return
    extra[f"{base}_min"] = float(np.min(a))
    extra[f"{base}_med"] = float(np.median(a))
    extra[f"{base}_max"] = float(np.max(a))


def _amge_finalize_stats(
    *,
    stats: RestrictorStats,
    agglomerates: Agglomerates,
    eigs: EigenInfo,
    multiplicity,
    pou_error: float | None,
    n_coarse: int,
) -> None:
    """Populate derived diagnostics of a completed restrictor build.

    Parameters
    ----------
    stats
        The stats object (mutated in-place).
    agglomerates
        Agglomerates of this rank.
    eigs
        Eigen-selection metadata of this rank.
    multiplicity
        Global claim count per fine DOF.
    pou_error
        Largest partition-of-unity deviation, or None if not checked.
    n_coarse
        Global number of coarse basis vectors.
    """
    stats.n_aggs = len(agglomerates)
    stats.n_coarse = int(n_coarse)
    stats.extra["cr"] = float(stats.n_fine / n_coarse) if n_coarse > 0 else float("inf")

    _store_mmx(stats.extra, "size", agglomerates.sizes)
    _store_mmx(stats.extra, "nev", eigs.nev)
    _store_mmx(stats.extra, "eig", eigs.eigenvalues)

    m = np.asarray(multiplicity)
    _store_mmx(stats.extra, "mult", m[m > 0])

    stats.extra["retries"] = int(np.sum(eigs.retries))
    stats.extra["truncated"] = int(np.count_nonzero(eigs.nev < eigs.n_requested))
    if pou_error is not None:
        stats.extra["pou_error"] = float(pou_error)


def _fmt(x) -> str:
    """Format a scalar for compact printing."""
    try:
        x = float(x)
    except (TypeError, ValueError):
        return str(x)
    ax = abs(x)
    if ax != 0.0 and (ax < 1e-2 or ax >= 1e4):
        return f"{x:.2e}"
    return f"{x:.3g}"


def _mmx(extra: dict[str, Any], base: str) -> str:
    """Return `min/med/max` string for `base` as stored in `extra`."""
    a = extra.get(f"{base}_min")
    b = extra.get(f"{base}_med")
    c = extra.get(f"{base}_max")
    if a is None or b is None or c is None:
        return "n/a"
    return f"{_fmt(a)}/{_fmt(b)}/{_fmt(c)}"


def _fmt_ms(t: float) -> str:
    """Format a duration in seconds as either milliseconds or seconds."""
    return f"{t*1e3:7.1f}ms" if t < 1.0 else f"{t:7.2f}s"


def _amge_print_summary(
    stats: RestrictorStats,
    *,
    print_info: bool,
    prefix: str = "AMGe",
    indent: str = "",
) -> None:
    """Print a compact summary of setup diagnostics and timings.

    Parameters
    ----------
    stats
        Stats object that has already been finalized.
    print_info
        If False, does nothing. Ranks other than 0 never print.
    prefix
        Short label prefix.
    indent
        Optional indentation string (useful if caller nests printing).
    """
    if not print_info or stats.rank != 0:
        return

    n_c = stats.n_coarse if stats.n_coarse is not None else "?"
    cr = _fmt(stats.extra.get("cr", "n/a"))
    print(f"{indent}{prefix:<4}  n={stats.n_fine:<7d} -> {n_c:<7}  cr={cr}  aggs(rank 0)={stats.n_aggs}")

    print(f"{indent}      agglomerates (min/med/max):")
    print(f"{indent}        size  : {_mmx(stats.extra, 'size')}")
    print(f"{indent}        mult  : {_mmx(stats.extra, 'mult')}")
    if "pou_error" in stats.extra:
        print(f"{indent}        PoU err: {_fmt(stats.extra['pou_error'])}")

    print(f"{indent}      coarse:")
    print(f"{indent}        nev   : {_mmx(stats.extra, 'nev')}")
    print(f"{indent}        eig   : {_mmx(stats.extra, 'eig')}")
    if stats.extra.get("retries"):
        print(
            f"{indent}        retry : {stats.extra['retries']} "
            f"({stats.extra.get('truncated', 0)} agglomerates truncated)"
        )

    order = ["agglomerate", "extract", "eigensolve", "maps", "weights", "sparsity", "assemble"]
    total = 0.0
    print(f"{indent}      timing:")
    for k in order:
        if k in stats.timings:
            v = stats.timings[k]
            total += v
            print(f"{indent}        {k:<11} {_fmt_ms(v)}")
    print(f"{indent}        {'total':<11} {_fmt_ms(total)}")
