"""Partition-of-unity weights for overlapping agglomerates.

A fine DOF that lies on the boundary between agglomerates is claimed by every
one of them. Each claim receives the weight

    w = 1 / multiplicity(dof)

where the multiplicity counts the claims of that DOF over *all* patches on
*all* ranks. The weights of one DOF therefore sum to one, which makes the
restriction operator reproduce the constant per agglomerate.

The counter is an array scoped to one call (never a module-level table), so
independent restrictor builds cannot interfere.
"""

from __future__ import annotations

from typing import Any, Sequence

import numpy as np
from numpy.typing import ArrayLike

from ..errors import WeightInvariantViolation
from .partition import allreduce_sum


def _amge_count_claims(*, dof_indices_maps: Sequence[ArrayLike], n_dofs: int, comm: Any) -> np.ndarray:
    """Collective: number of patch claims per fine DOF, summed over ranks."""
    counts = np.zeros(n_dofs, dtype=np.int64)
    for idx in dof_indices_maps:
        idx = np.asarray(idx, dtype=np.int64)
        if idx.size:
            counts += np.bincount(idx, minlength=n_dofs)
    return allreduce_sum(comm, counts)


def compute_overlap_weights(
    dof_indices_maps: Sequence[ArrayLike],
    *,
    n_dofs: int,
    multiplicity: ArrayLike | None = None,
    comm: Any = None,
) -> tuple[list[np.ndarray], np.ndarray]:
    """Compute the overlap weights ``diag_elements`` of every patch entry.

    Parameters
    ----------
    dof_indices_maps
        Per patch, the global fine DOFs it claims.
    n_dofs
        Global number of fine DOFs.
    multiplicity
        Optional precomputed claim counts of length `n_dofs`. If None the counts
        are computed from `dof_indices_maps` (collective when `comm` is given).
    comm
        mpi4py-style communicator or None.

    Returns
    -------
    diag_elements, multiplicity
        ``diag_elements[i][j] = 1 / multiplicity[dof_indices_maps[i][j]]``.

    Raises
    ------
    WeightInvariantViolation
        If a referenced DOF has a zero count.

    Examples
    --------
    >>> w, m = compute_overlap_weights([[0, 1, 2], [2, 3]], n_dofs=4)
    >>> w[1]
    array([0.5, 1. ])
    """
    if multiplicity is None:
        multiplicity = _amge_count_claims(dof_indices_maps=dof_indices_maps, n_dofs=n_dofs, comm=comm)
    else:
        multiplicity = np.asarray(multiplicity)
        if multiplicity.shape != (n_dofs,):
            raise ValueError(f"multiplicity must have shape ({n_dofs},), got {multiplicity.shape}")

    diag_elements: list[np.ndarray] = []
    for i, idx in enumerate(dof_indices_maps):
        idx = np.asarray(idx, dtype=np.int64)
        count = multiplicity[idx]
        if np.any(count <= 0):
            dof = int(idx[np.flatnonzero(count <= 0)[0]])
            raise WeightInvariantViolation(
                f"Patch {i} claims fine DOF {dof}, whose multiplicity is zero"
            )
        diag_elements.append(1.0 / count.astype(float))
    return diag_elements, multiplicity


def check_partition_of_unity(
    dof_indices_maps: Sequence[ArrayLike],
    diag_elements: Sequence[ArrayLike],
    *,
    n_dofs: int,
    comm: Any = None,
    tol: float = 1e-14,
) -> float:
    """Collective: verify that the weights of every claimed fine DOF sum to one.

    Returns
    -------
    max_error
        Largest deviation ``|sum_of_weights - 1|`` over the claimed DOFs.

    Raises
    ------
    WeightInvariantViolation
        If the deviation exceeds `tol`, or weights and maps disagree in shape.
    ValueError
        If a patch on any rank references a fine DOF outside ``[0, n_dofs)``.
    """
    if len(dof_indices_maps) != len(diag_elements):
        raise WeightInvariantViolation(
            f"{len(dof_indices_maps)} patch maps but {len(diag_elements)} weight rows"
        )

    sums = np.zeros(n_dofs, dtype=float)
    claimed = np.zeros(n_dofs, dtype=np.int64)
    out_of_range = None
    for i, (idx, w) in enumerate(zip(dof_indices_maps, diag_elements)):
        idx = np.asarray(idx, dtype=np.int64)
        w = np.asarray(w, dtype=float)
        if idx.shape != w.shape:
            raise WeightInvariantViolation(
                f"Patch {i}: {idx.size} fine DOFs but {w.size} weights"
            )
        if idx.size and (idx.min() < 0 or idx.max() >= n_dofs):
            # keep going so the reductions below stay matched across ranks
            if out_of_range is None:
                out_of_range = f"Patch {i} references fine DOFs outside of [0, {n_dofs})"
            continue
        np.add.at(sums, idx, w)
        np.add.at(claimed, idx, 1)

    n_bad = allreduce_sum(comm, int(out_of_range is not None))
    if out_of_range is not None:
        raise ValueError(out_of_range)
    if n_bad:
        raise ValueError(f"Fine DOFs out of range on {n_bad} other rank(s)")

    sums = allreduce_sum(comm, sums)
    claimed = allreduce_sum(comm, claimed)

    dofs = np.flatnonzero(claimed > 0)
    if dofs.size == 0:
        return 0.0
    err = np.abs(sums[dofs] - 1.0)
    worst = int(np.argmax(err))
    max_error = float(err[worst])
    if max_error > tol:
        raise WeightInvariantViolation(
            f"Weights of fine DOF {int(dofs[worst])} sum to {sums[dofs[worst]]!r} "
            f"(deviation {max_error:.3e} > {tol:.1e})"
        )
    return max_error
