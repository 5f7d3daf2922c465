"""Spectral AMGe restriction operator.

The restriction operator R maps fine DOFs to a coarse space spanned by the
lowest eigenvectors of local (agglomerate) operators:

    R[c, d] = w(d) * v_c(d)

where v_c is the c-th kept local eigenvector, supported on the fine DOFs d of
its agglomerate, and w(d) = 1 / multiplicity(d) is the partition-of-unity
weight of a DOF shared by `multiplicity(d)` overlapping agglomerates.

Entry points
------------
setup_restrictor
    Full build from agglomeration parameters, an evaluator and a DoF handler.
setup_restrictor_from_config
    Same, driven by a `RestrictorConfig`.
compute_restriction_sparse_matrix
    Low-level assembly from precomputed eigenvectors, weights and patch maps.

All three are collective when a communicator is given: every rank must call
them with its own local data.
"""

from __future__ import annotations

from typing import Any, Sequence
from warnings import warn

import numpy as np
from numpy.typing import ArrayLike
from scipy.sparse import SparseEfficiencyWarning, csr_array, issparse

from .core.distributed import DistributedMatrix
from .core.pipeline import _amge_build_restrictor, _amge_restriction_matrix
from .core.types import EigensolverSpec, RestrictorConfig


def compute_restriction_sparse_matrix(
    eigenvectors: Sequence[ArrayLike],
    diag_elements: Sequence[ArrayLike],
    dof_indices_maps: Sequence[ArrayLike],
    n_local_eigenvectors: Sequence[int],
    reference_matrix: Any,
    *,
    comm: Any = None,
    check_weights: bool = True,
) -> DistributedMatrix:
    """Assemble the restriction operator from local eigenvectors.

    Parameters
    ----------
    eigenvectors
        Local coarse basis vectors, consecutive per patch. Vector p of patch i
        has one coefficient per entry of ``dof_indices_maps[i]``.
    diag_elements
        Per patch, the weight of each of its fine DOFs.
    dof_indices_maps
        Per patch, its pairwise distinct global fine DOFs.
    n_local_eigenvectors
        Per patch, the number of eigenvectors it contributes;
        ``sum(n_local_eigenvectors) == len(eigenvectors)``.
    reference_matrix
        Fine operator whose columns define the fine space: a scipy sparse
        matrix (serial) or a `DistributedMatrix` (its column partition).
    comm
        mpi4py-style communicator. Defaults to the communicator of a
        distributed `reference_matrix`, otherwise serial.
    check_weights
        If True, verify that the weights of every claimed fine DOF sum to one.

    Returns
    -------
    R : DistributedMatrix
        Finalized matrix of shape (n_coarse, n_fine). Coarse row
        ``row_offset + p`` holds local eigenvector p, where `row_offset` is the
        number of eigenvectors on lower ranks.

    Raises
    ------
    StructuralViolation
        If a patch lists a fine DOF twice or an entry falls outside of the
        declared sparsity pattern.
    WeightInvariantViolation
        If `check_weights` is True and the weights are not a partition of unity.

    Examples
    --------
    >>> import numpy as np
    >>> from scipy.sparse import identity
    >>> from amge import compute_restriction_sparse_matrix
    >>> R = compute_restriction_sparse_matrix(
    ...     [np.array([1.0, 1.0]), np.array([1.0, 1.0])],
    ...     [np.array([1.0, 0.5]), np.array([0.5, 1.0])],
    ...     [np.array([0, 1]), np.array([1, 2])],
    ...     [1, 1],
    ...     identity(3, format="csr"),
    ... )
    >>> R.to_csr().toarray()
    array([[1. , 0.5, 0. ],
           [0. , 0.5, 1. ]])
    """
    if issparse(reference_matrix) and reference_matrix.format != "csr":
        warn("Implicit conversion of reference_matrix to CSR", SparseEfficiencyWarning)
        reference_matrix = csr_array(reference_matrix)
    if comm is None and isinstance(reference_matrix, DistributedMatrix):
        comm = reference_matrix.comm

    return _amge_restriction_matrix(
        eigenvectors=eigenvectors,
        diag_elements=diag_elements,
        dof_indices_maps=dof_indices_maps,
        n_local_eigenvectors=n_local_eigenvectors,
        reference_matrix=reference_matrix,
        comm=comm,
        check_weights=check_weights,
    )


def setup_restrictor(
    agglomeration_params: Any,
    n_eigenvectors: int,
    tolerance: float,
    evaluator: Any,
    global_operator: Any,
    dof_handler: Any,
    *,
    comm: Any = None,
    eigensolver: EigensolverSpec = "dense",
    local_operator: str = "neumann",
    max_retries: int = 2,
    check_weights: bool = True,
    print_info: bool = False,
) -> DistributedMatrix:
    """Build the spectral AMGe restriction operator.

    Parameters
    ----------
    agglomeration_params
        Either per-axis agglomerate extents ``(nx, ny[, nz])`` in cells
        (structured agglomeration of the DoF handler's owned cells), or a pyamg
        aggregation spec: "standard", "naive", "lloyd", or (name, kwargs) where
        kwargs may also hold ``strength`` and ``overlap``.
    n_eigenvectors : int
        Number of eigenvectors kept per agglomerate.
    tolerance : float
        Eigensolver tolerance.
    evaluator
        Mesh evaluator (see `amge.evaluators`).
    global_operator
        Fine operator (scipy sparse or DistributedMatrix). If None, it is
        obtained from ``evaluator.get_global_operator(dof_handler)``.
    dof_handler
        DoF handler, e.g. `amge.mesh.StructuredDoFHandler`.
    comm
        mpi4py-style communicator. Defaults to ``dof_handler.comm``.
    eigensolver
        "dense", "arpack", (name, kwargs), or a callable
        ``solve(local_matrix, k, tolerance) -> (eigenvalues, eigenvectors)``.
    local_operator : {"neumann", "dirichlet"}
        Local operator of an agglomerate: Neumann-compensated or plain
        principal block of the global operator.
    max_retries : int
        Relaxed re-solves after an eigensolver failure.
    check_weights : bool
        Verify the partition of unity before assembly.
    print_info : bool
        Print a setup summary on rank 0.

    Returns
    -------
    R : DistributedMatrix
        Finalized restriction operator with its diagnostics in ``R.stats``.

    Raises
    ------
    EigensolverNonConvergence
        If an agglomerate's eigenproblem fails after all retries.
    StructuralViolation, WeightInvariantViolation
        On inconsistent structure or weights.

    Examples
    --------
    >>> from amge import StructuredDoFHandler, make_mesh_evaluator, setup_restrictor
    >>> dh = StructuredDoFHandler(2)
    >>> R = setup_restrictor((2, 2), 1, 1e-14, make_mesh_evaluator("scipy"), None, dh)
    >>> R.shape
    (4, 25)
    """
    if issparse(global_operator) and global_operator.format != "csr":
        try:
            global_operator = csr_array(global_operator)
            warn("Implicit conversion of global_operator to CSR", SparseEfficiencyWarning)
        except Exception as e:
            raise TypeError("global_operator must be convertible to csr_array") from e

    if isinstance(agglomeration_params, (list, np.ndarray)):
        agglomeration_params = tuple(int(n) for n in agglomeration_params)
    structured = isinstance(agglomeration_params, tuple) and all(
        isinstance(n, (int, np.integer)) for n in agglomeration_params
    )

    config = RestrictorConfig(
        agglomerate_dim=agglomeration_params if structured else None,
        agglomerate=None if structured else agglomeration_params,
        n_eigenvectors=n_eigenvectors,
        tolerance=tolerance,
        eigensolver=eigensolver,
        local_operator=local_operator,
        max_retries=max_retries,
        check_weights=check_weights,
        print_info=print_info,
    )
    return _amge_build_restrictor(
        config=config,
        evaluator=evaluator,
        dof_handler=dof_handler,
        global_operator=global_operator,
        comm=comm,
    )


def setup_restrictor_from_config(
    config: RestrictorConfig,
    evaluator: Any,
    dof_handler: Any,
    global_operator: Any = None,
    *,
    comm: Any = None,
) -> DistributedMatrix:
    """Build the restriction operator described by `config`.

    See `setup_restrictor` for the meaning of the arguments.
    """
    return _amge_build_restrictor(
        config=config,
        evaluator=evaluator,
        dof_handler=dof_handler,
        global_operator=global_operator,
        comm=comm,
    )
