"""Mesh evaluators: producers of the global fine-grid operator.

A mesh evaluator turns a DoF handler into a sparsity pattern and a system
matrix. The variants differ only in the matrix backend and are selected by
name at configuration time:

- "scipy"       : serial `scipy.sparse.csr_array`
- "distributed" : `amge.core.distributed.DistributedMatrix` over the DoF
                  handler's ownership partition

Both default to the finite-difference Laplacian on the vertex grid
(`pyamg.gallery.poisson`) and can wrap a user-supplied operator instead.
"""

from __future__ import annotations

from typing import Any, Callable, Protocol
from warnings import warn

import numpy as np
from scipy.sparse import SparseEfficiencyWarning, csr_array, issparse

from pyamg.gallery import poisson

from .core.distributed import DistributedMatrix
from .core.partition import Partition
from .core.sparsity import SparsityPattern
from .core.types import SparseLike, _unpack_arg


class MeshEvaluator(Protocol):
    """Capability interface of a mesh evaluator."""

    backend: str

    def evaluate(self, dof_handler: Any) -> tuple[SparsityPattern, Any]:
        """Return the (sparsity pattern, system matrix) of `dof_handler`."""
        ...

    def get_global_operator(self, dof_handler: Any) -> Any:
        """Return the system matrix of `dof_handler`."""
        ...


def laplace_operator(dof_handler: Any) -> csr_array:
    """Finite-difference Laplacian on the vertex grid of a structured DoF handler."""
    A = poisson(dof_handler.grid_shape, format="csr")
    return csr_array(A)


def _as_csr(A: Any) -> csr_array:
    """Return `A` as a sorted CSR array, warning on implicit conversion."""
    if not issparse(A) or A.format != "csr":
        try:
            A = csr_array(A)
            warn("Implicit conversion of A to CSR", SparseEfficiencyWarning)
        except Exception as e:
            raise TypeError("Argument A must be a sparse matrix or convertible to csr_array") from e
    A = csr_array(A)
    A.sort_indices()
    return A


class ScipyMeshEvaluator:
    """Serial evaluator returning a `scipy.sparse.csr_array`.

    Parameters
    ----------
    matrix
        Operator to return. If None, `assemble` is called on the DoF handler.
    assemble
        Callable ``assemble(dof_handler) -> sparse matrix``.
    """

    backend = "scipy"

    def __init__(self, matrix: SparseLike | None = None, assemble: Callable[[Any], Any] = laplace_operator):
        self._matrix = None if matrix is None else _as_csr(matrix)
        self._assemble = assemble

    def _global_matrix(self, dof_handler: Any) -> csr_array:
        A = self._matrix if self._matrix is not None else _as_csr(self._assemble(dof_handler))
        n = dof_handler.n_dofs()
        if A.shape != (n, n):
            raise ValueError(f"Operator of shape {A.shape} does not match {n} DOFs")
        return A

    def evaluate(self, dof_handler: Any) -> tuple[SparsityPattern, csr_array]:
        """Return the serial sparsity pattern and CSR operator."""
        A = self._global_matrix(dof_handler)
        part = Partition.serial(A.shape[0])
        pattern = SparsityPattern(part, part)
        coo = A.tocoo()
        pattern.add_entries(coo.row, coo.col)
        pattern.compress()
        return pattern, A

    def get_global_operator(self, dof_handler: Any) -> csr_array:
        """Return the CSR operator."""
        return self._global_matrix(dof_handler)


class DistributedMeshEvaluator(ScipyMeshEvaluator):
    """Evaluator returning a `DistributedMatrix` over the DoF partition.

    Every rank writes only its locally owned rows of the operator.
    """

    backend = "distributed"

    def evaluate(self, dof_handler: Any) -> tuple[SparsityPattern, DistributedMatrix]:
        """Collective: return the distributed pattern and operator."""
        A = self._global_matrix(dof_handler)
        part = dof_handler.partition
        owned = A[part.start : part.stop, :].tocoo()
        rows = owned.row.astype(np.int64) + part.start
        cols = owned.col.astype(np.int64)

        pattern = SparsityPattern(part, part, dof_handler.comm)
        pattern.add_entries(rows, cols)
        pattern.compress()

        matrix = DistributedMatrix(pattern, dtype=A.dtype)
        matrix.set(rows, cols, owned.data)
        matrix.finalize()
        return pattern, matrix

    def get_global_operator(self, dof_handler: Any) -> DistributedMatrix:
        """Collective: return the distributed operator."""
        return self.evaluate(dof_handler)[1]


_EVALUATORS = {
    "scipy": ScipyMeshEvaluator,
    "distributed": DistributedMeshEvaluator,
}


def make_mesh_evaluator(spec: str | tuple[str, dict[str, Any]] = "scipy") -> MeshEvaluator:
    """Instantiate a mesh evaluator from a backend spec.

    Parameters
    ----------
    spec
        "scipy", "distributed", or (name, kwargs) where kwargs are passed to the
        evaluator constructor (``matrix=...`` or ``assemble=...``).

    Examples
    --------
    >>> make_mesh_evaluator("scipy").backend
    'scipy'
    """
    name, kwargs = _unpack_arg(spec)
    try:
        cls = _EVALUATORS[name]
    except KeyError:
        raise ValueError(f"Unrecognized mesh evaluator backend: {name!r}") from None
    return cls(**kwargs)
