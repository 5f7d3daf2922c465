"""Local eigenproblems producing the coarse basis of every agglomerate.

For each agglomerate i the `k` eigenpairs of its local operator A_i with the
*smallest* eigenvalues are computed; the eigenvectors span the local coarse
space. Solvers are selected by name or passed as callables with the contract

    solve(local_matrix, k, tolerance) -> (eigenvalues, eigenvectors)

returning eigenvalues in nondecreasing order and eigenvectors as columns of a
(n, k) array.

Built-in solvers
----------------
"dense"
    `scipy.linalg.eigh` restricted to the lowest `k` indices. The tolerance is
    not used (LAPACK works to machine precision).
"arpack"
    `scipy.sparse.linalg.eigsh` in shift-invert mode around a small negative
    shift (the Neumann local operator is singular). Falls back to "dense" when
    `k` is not smaller than the block size, where ARPACK cannot be used.

Failure handling
----------------
A solver failure (LAPACK/ARPACK non-convergence, or non-finite eigenpairs) is
reported as `EigensolverNonConvergence`. `_amge_solve_with_retry` re-solves a
bounded number of times with a relaxed request (tolerance x 10, one vector
fewer but never fewer than one), warning on every retry.
"""

from __future__ import annotations

from typing import Any, Callable
from warnings import warn

import numpy as np
from scipy.linalg import LinAlgError, eigh
from scipy.sparse.linalg import ArpackError, ArpackNoConvergence, eigsh

from ..errors import EigensolverNonConvergence
from .types import EigensolverSpec, _unpack_arg


def _amge_dense_eigensolver(local_matrix: np.ndarray, k: int, tolerance: float):
    """Lowest `k` eigenpairs of a dense symmetric block (LAPACK)."""
    try:
        E, V = eigh(local_matrix, subset_by_index=[0, k - 1])
    except LinAlgError as e:
        raise EigensolverNonConvergence(f"LAPACK eigh failed: {e}", n_requested=k) from e
    return E, V


def _amge_arpack_eigensolver(
    local_matrix: np.ndarray,
    k: int,
    tolerance: float,
    *,
    shift: float = 1e-8,
    maxiter: int | None = None,
):
    """Lowest `k` eigenpairs by ARPACK shift-invert around ``-shift * |A|``."""
    n = local_matrix.shape[0]
    if k >= n:
        return _amge_dense_eigensolver(local_matrix, k, tolerance)

    scale = float(np.max(np.abs(local_matrix))) if local_matrix.size else 1.0
    sigma = -shift * (scale if scale > 0.0 else 1.0)
    try:
        E, V = eigsh(local_matrix, k=k, sigma=sigma, which="LM", tol=tolerance, maxiter=maxiter)
    except ArpackNoConvergence as e:
        raise EigensolverNonConvergence(
            f"ARPACK converged {len(e.eigenvalues)} of {k} eigenpairs",
            n_requested=k,
            tolerance=tolerance,
        ) from e
    except ArpackError as e:
        raise EigensolverNonConvergence(f"ARPACK failed: {e}", n_requested=k, tolerance=tolerance) from e

    order = np.argsort(E)
    return E[order], V[:, order]


_EIGENSOLVERS = {
    "dense": _amge_dense_eigensolver,
    "arpack": _amge_arpack_eigensolver,
}


def _amge_resolve_eigensolver(spec: EigensolverSpec) -> Callable[[np.ndarray, int, float], Any]:
    """Turn an eigensolver spec into a callable ``solve(local_matrix, k, tolerance)``.

    Parameters
    ----------
    spec
        "dense", "arpack", (name, kwargs), or a callable.
    """
    if callable(spec):
        return spec

    name, kwargs = _unpack_arg(spec)
    try:
        fn = _EIGENSOLVERS[name]
    except KeyError:
        raise ValueError(f"Unrecognized eigensolver: {name!r}") from None

    if not kwargs:
        return fn

    def solve(local_matrix, k, tolerance):
        return fn(local_matrix, k, tolerance, **kwargs)

    return solve


def _amge_solve_once(*, solve, local_matrix: np.ndarray, k: int, tolerance: float):
    """Call `solve` and validate its output."""
    E, V = solve(local_matrix, k, tolerance)
    E = np.asarray(E)
    V = np.asarray(V)
    n = local_matrix.shape[0]
    if V.ndim == 1:
        V = V.reshape((n, 1))
    if E.shape != (V.shape[1],) or V.shape[0] != n or V.shape[1] < 1:
        raise ValueError(
            f"Eigensolver returned eigenvalues of shape {E.shape} and eigenvectors of "
            f"shape {V.shape} for a {n} x {n} block"
        )
    if not (np.all(np.isfinite(E)) and np.all(np.isfinite(V))):
        raise EigensolverNonConvergence("non-finite eigenpairs", n_requested=k, tolerance=tolerance)
    return E, V


def _amge_solve_with_retry(
    *,
    agglomerate: Any,
    local_matrix: np.ndarray,
    n_eigenvectors: int,
    tolerance: float,
    eigensolver: EigensolverSpec,
    max_retries: int,
) -> tuple[np.ndarray, np.ndarray, int]:
    """Solve the local eigenproblem of one agglomerate with bounded retries.

    Parameters
    ----------
    agglomerate
        Agglomerate id (for error reporting).
    local_matrix
        Dense symmetric local operator.
    n_eigenvectors
        Requested number of eigenpairs; capped by the block size.
    tolerance
        Initial eigensolver tolerance.
    eigensolver
        Eigensolver spec (see `_amge_resolve_eigensolver`).
    max_retries
        Number of relaxed re-solves allowed after a failure.

    Returns
    -------
    eigenvalues, eigenvectors, retries
        Kept eigenpairs (ascending) and the number of retries used.

    Raises
    ------
    EigensolverNonConvergence
        If every attempt failed. Carries the agglomerate id and the parameters
        of the last attempt.
    """
    n = local_matrix.shape[0]
    if n == 0:
        raise ValueError(f"Agglomerate {agglomerate} has no fine DOFs")

    solve = _amge_resolve_eigensolver(eigensolver)
    k = min(int(n_eigenvectors), n)
    tol = float(tolerance)

    for attempt in range(int(max_retries) + 1):
        try:
            E, V = _amge_solve_once(solve=solve, local_matrix=local_matrix, k=k, tolerance=tol)
            return E, V, attempt
        except EigensolverNonConvergence as e:
            if attempt == int(max_retries):
                raise EigensolverNonConvergence(
                    f"no convergence after {attempt} retries ({e.args[0]})",
                    agglomerate=agglomerate,
                    n_requested=k,
                    tolerance=tol,
                ) from e
            k_next = max(1, k - 1)
            warn(
                f"Eigensolver failed on agglomerate {agglomerate} ({e.args[0]}); "
                f"retrying with {k_next} eigenvectors and tolerance {tol * 10:.1e}",
                RuntimeWarning,
                stacklevel=2,
            )
            k = k_next
            tol *= 10.0

    raise AssertionError("unreachable")
