"""Local dense operator extraction for the agglomerates of one rank.

For each agglomerate i with fine DOFs D_i (global indices, sorted), we need the
dense principal block

    A_i = A[D_i, D_i]

of the global operator. Agglomerates may contain ghost DOFs, so the operator
rows of every *relevant* DOF (union of all D_i) are first made available
locally:

- scipy sparse operator : every row is local already.
- DistributedMatrix     : the relevant rows are fetched from their owners
                          with one collective `extract_rows`.

The rows are arranged in a CSR array of the global shape (rows that are not
relevant stay empty) and all A_i are extracted in one call to the compiled
kernel `pyamg.amg_core.extract_subblocks`.

Storage layout
--------------
Dense blocks are stored in the flattened arrays of `LocalBlocks`:

- `subdomain` / `subdomain_ptr`:
    concatenation of D_i (int32 indices) and CSR-style pointers.

- `submatrices` / `submatrices_ptr`:
    concatenation of A_i (flattened row-major) and BSR-style pointers.

Neumann compensation
--------------------
A principal block of a stiffness matrix carries the coupling to DOFs outside of
the agglomerate on its diagonal (an implicit Dirichlet condition). The Neumann
variant replaces the diagonal so that every row sums to zero; for a Laplacian
the constant vector then spans the kernel and is the lowest local mode.
"""

from __future__ import annotations

from typing import Any

import numpy as np
from numpy.typing import ArrayLike
from scipy.sparse import coo_array, csr_array, issparse

from pyamg import amg_core

from .types import Agglomerates, LocalBlocks


def _amge_relevant_operator(global_operator: Any, relevant_dofs: ArrayLike) -> csr_array:
    """Return a CSR array holding (at least) the operator rows of `relevant_dofs`.

    Collective when `global_operator` is a `DistributedMatrix`: every rank must
    call it, even with no relevant DOFs.

    Returns
    -------
    A
        csr_array of the global shape with sorted indices and int32 index
        arrays (as required by `amg_core`).
    """
    if issparse(global_operator):
        A = csr_array(global_operator)
    elif hasattr(global_operator, "extract_rows"):
        rows, cols, vals = global_operator.extract_rows(relevant_dofs)
        A = csr_array(coo_array((vals, (rows, cols)), shape=global_operator.shape))
    else:
        raise TypeError(
            "global_operator must be a scipy sparse matrix or a DistributedMatrix, "
            f"got {type(global_operator).__name__}"
        )

    if A.shape[0] != A.shape[1]:
        raise ValueError(f"global_operator must be square, got shape {A.shape}")

    A = A.copy()
    A.sum_duplicates()
    A.sort_indices()
    A.indptr = A.indptr.astype(np.int32, copy=False)
    A.indices = A.indices.astype(np.int32, copy=False)
    return A


def _amge_extract_local_blocks(*, agglomerates: Agglomerates, A: csr_array) -> LocalBlocks:
    """Extract dense principal blocks A[D_i, D_i] for all agglomerates.

    Parameters
    ----------
    agglomerates
        Agglomerates of this rank; ``agglomerates.dofs[i]`` must be sorted.
    A
        CSR operator from `_amge_relevant_operator` (rows of every agglomerate
        DOF present, sorted indices).

    Returns
    -------
    LocalBlocks
        Flattened blocks; ``blocks.block(i)`` is the dense A_i.
    """
    n_aggs = len(agglomerates)
    blocksize = agglomerates.sizes

    blocks = LocalBlocks()
    blocks.subdomain_ptr = np.zeros(n_aggs + 1, dtype=np.int32)
    blocks.subdomain_ptr[1:] = np.cumsum(blocksize)
    blocks.submatrices_ptr = np.zeros(n_aggs + 1, dtype=np.int32)
    blocks.submatrices_ptr[1:] = np.cumsum(blocksize * blocksize)

    if n_aggs:
        blocks.subdomain = np.concatenate(agglomerates.dofs).astype(np.int32)
    else:
        blocks.subdomain = np.zeros(0, dtype=np.int32)

    blocks.submatrices = np.zeros(int(blocks.submatrices_ptr[-1]), dtype=A.data.dtype)
    if n_aggs:
        amg_core.extract_subblocks(
            A.indptr,
            A.indices,
            A.data,
            blocks.submatrices,
            blocks.submatrices_ptr,
            blocks.subdomain,
            blocks.subdomain_ptr,
            int(n_aggs),
            A.shape[0],
        )
    return blocks


def _amge_neumann_compensate(block: np.ndarray) -> np.ndarray:
    """Return a copy of `block` whose diagonal makes every row sum to zero.

    Examples
    --------
    >>> _amge_neumann_compensate(np.array([[4.0, -1.0], [-1.0, 4.0]]))
    array([[ 1., -1.],
           [-1.,  1.]])
    """
    out = np.array(block, copy=True)
    np.fill_diagonal(out, 0.0)
    np.fill_diagonal(out, -out.sum(axis=1))
    return out


def _amge_local_operator(block: np.ndarray, *, local_operator: str) -> np.ndarray:
    """Local operator of one agglomerate ("neumann" or "dirichlet")."""
    if local_operator == "neumann":
        return _amge_neumann_compensate(block)
    if local_operator == "dirichlet":
        return np.array(block, copy=True)
    raise ValueError(f"Unrecognized local operator: {local_operator!r}")
