"""Assembly of the restriction operator from local patch data.

Given, per local patch i,
  - its fine DOFs       dof_indices_maps[i]   (global column indices),
  - its weights         diag_elements[i]      (aligned with the DOFs),
  - its kept count      n_local_eigenvectors[i],
and the kept eigenvectors (consecutive per patch), the restriction operator has
one row per kept eigenvector p of patch i with entries

    R[row_offset + p, dof_indices_maps[i][j]] = diag_elements[i][j] * eigenvectors[p][j].

Values are collected as triplets, inserted in one call (insert semantics), and
the matrix is finalized.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
from numpy.typing import ArrayLike

from .distributed import DistributedMatrix


def _amge_restriction_triplets(
    *,
    eigenvectors: Sequence[ArrayLike],
    diag_elements: Sequence[ArrayLike],
    dof_indices_maps: Sequence[ArrayLike],
    n_local_eigenvectors: Sequence[int],
    row_offset: int,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Collect the weighted restriction entries of the local patches.

    Returns
    -------
    rows, cols, vals
        Concatenated triplets, in patch then eigenvector order.

    Raises
    ------
    ValueError
        If the number of eigenvectors does not match ``sum(n_local_eigenvectors)``
        or an eigenvector/weight row does not match its patch size.
    """
    n_total = int(np.sum(n_local_eigenvectors, dtype=np.int64))
    if n_total != len(eigenvectors):
        raise ValueError(
            f"n_local_eigenvectors sums to {n_total} but {len(eigenvectors)} eigenvectors were given"
        )
    if len(diag_elements) != len(dof_indices_maps):
        raise ValueError(
            f"{len(dof_indices_maps)} patch maps but {len(diag_elements)} weight rows"
        )

    p_r: list[np.ndarray] = []
    p_c: list[np.ndarray] = []
    p_v: list[np.ndarray] = []

    pos = 0
    for i, nev in enumerate(n_local_eigenvectors):
        cols = np.asarray(dof_indices_maps[i], dtype=np.int64)
        weights = np.asarray(diag_elements[i], dtype=float)
        if weights.shape != cols.shape:
            raise ValueError(f"Patch {i}: {cols.size} fine DOFs but {weights.size} weights")
        for _ in range(int(nev)):
            vec = np.asarray(eigenvectors[pos])
            if vec.shape != cols.shape:
                raise ValueError(
                    f"Eigenvector {pos} of patch {i} has {vec.size} entries, expected {cols.size}"
                )
            p_r.append(np.full(cols.size, row_offset + pos, dtype=np.int64))
            p_c.append(cols)
            p_v.append(weights * vec)
            pos += 1

    if not p_r:
        return np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64), np.zeros(0)
    return np.concatenate(p_r), np.concatenate(p_c), np.concatenate(p_v)


def _amge_assemble_restriction(
    *,
    matrix: DistributedMatrix,
    eigenvectors: Sequence[ArrayLike],
    diag_elements: Sequence[ArrayLike],
    dof_indices_maps: Sequence[ArrayLike],
    n_local_eigenvectors: Sequence[int],
) -> None:
    """Fill the restriction operator and finalize it (collective).

    Parameters
    ----------
    matrix
        Freshly allocated matrix over the restriction sparsity pattern. Its row
        partition determines the global coarse index of the local eigenvectors.

    Side effects
    ------------
    `matrix` is populated and finalized.

    Raises
    ------
    StructuralViolation
        If an entry falls outside of the declared pattern.
    """
    rows, cols, vals = _amge_restriction_triplets(
        eigenvectors=eigenvectors,
        diag_elements=diag_elements,
        dof_indices_maps=dof_indices_maps,
        n_local_eigenvectors=n_local_eigenvectors,
        row_offset=matrix.row_partition.start,
    )
    matrix.set(rows, cols, vals)
    matrix.finalize()
