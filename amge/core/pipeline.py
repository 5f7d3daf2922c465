"""Orchestration of one AMGe restrictor build.

The build walks through a fixed sequence of states; no state survives the
call:

    PARTITION  -> agglomerates of the owned fine DOFs      (agglomeration.py)
    EXTRACT    -> dense local operator per agglomerate     (local_ops.py)
    SOLVE      -> lowest eigenpairs per agglomerate        (eigs.py)
    BUILD-MAPS -> global coarse index per kept eigenvector
    WEIGHT     -> partition-of-unity weights               (weights.py)
    ASSEMBLE   -> sparsity pattern + weighted insertion    (sparsity.py, assembly.py)

Every rank runs every state; the collective steps are the ghost-row
extraction, the coarse numbering, the weight count and check, the pattern
compression and the matrix finalization.
"""

from __future__ import annotations

from typing import Any, Sequence

import numpy as np
from numpy.typing import ArrayLike
from scipy.sparse import issparse

from .agglomeration import _amge_build_agglomerates
from .assembly import _amge_assemble_restriction
from .distributed import DistributedMatrix
from .eigs import _amge_solve_with_retry
from .local_ops import _amge_extract_local_blocks, _amge_local_operator, _amge_relevant_operator
from .partition import Partition, comm_rank
from .sparsity import _amge_build_restriction_sparsity, _amge_domain_partition
from .stats import RestrictorStats, _amge_finalize_stats, _amge_print_summary
from .types import Agglomerates, EigenInfo, LocalPatchData, RestrictorConfig, _flatten_patches
from .weights import check_partition_of_unity, compute_overlap_weights


def _amge_restriction_matrix(
    *,
    eigenvectors: Sequence[ArrayLike],
    diag_elements: Sequence[ArrayLike],
    dof_indices_maps: Sequence[ArrayLike],
    n_local_eigenvectors: Sequence[int],
    reference_matrix: Any,
    comm: Any,
    check_weights: bool,
    stats: RestrictorStats | None = None,
) -> DistributedMatrix:
    """ASSEMBLE: declare the restriction pattern, insert the weighted entries.

    Collective. See `amge.restrictor.compute_restriction_sparse_matrix`.
    """
    if stats is None:
        stats = RestrictorStats(rank=comm_rank(comm), n_fine=_amge_domain_partition(reference_matrix).size)

    if check_weights:
        with stats.timeit("weights"):
            err = check_partition_of_unity(
                dof_indices_maps, diag_elements, n_dofs=stats.n_fine, comm=comm
            )
        stats.extra["pou_error"] = err

    with stats.timeit("sparsity"):
        pattern = _amge_build_restriction_sparsity(
            dof_indices_maps=dof_indices_maps,
            n_local_eigenvectors=n_local_eigenvectors,
            reference_matrix=reference_matrix,
            comm=comm,
        )

    with stats.timeit("assemble"):
        R = DistributedMatrix(pattern)
        _amge_assemble_restriction(
            matrix=R,
            eigenvectors=eigenvectors,
            diag_elements=diag_elements,
            dof_indices_maps=dof_indices_maps,
            n_local_eigenvectors=n_local_eigenvectors,
        )

    stats.n_coarse = R.m()
    R.stats = stats
    return R


def _amge_solve_patches(
    *,
    config: RestrictorConfig,
    agglomerates: Agglomerates,
    global_operator: Any,
    stats: RestrictorStats,
) -> tuple[list[LocalPatchData], EigenInfo]:
    """EXTRACT and SOLVE for every agglomerate of this rank."""
    with stats.timeit("extract"):
        A = _amge_relevant_operator(global_operator, agglomerates.relevant_dofs())
        blocks = _amge_extract_local_blocks(agglomerates=agglomerates, A=A)

    eigs = EigenInfo.allocate(len(agglomerates))
    patches: list[LocalPatchData] = []
    with stats.timeit("eigensolve"):
        for i, (agg_id, dofs) in enumerate(zip(agglomerates.ids, agglomerates.dofs)):
            local = _amge_local_operator(blocks.block(i), local_operator=config.local_operator)
            E, V, retries = _amge_solve_with_retry(
                agglomerate=agg_id,
                local_matrix=local,
                n_eigenvectors=config.n_eigenvectors,
                tolerance=config.tolerance,
                eigensolver=config.eigensolver,
                max_retries=config.max_retries,
            )
            eigs.n_requested[i] = config.n_eigenvectors
            eigs.nev[i] = V.shape[1]
            eigs.retries[i] = retries
            eigs.eigenvalues.extend(float(x) for x in E)
            patches.append(LocalPatchData(agglomerate=agg_id, dofs=dofs, eigenvalues=E, eigenvectors=V))
    return patches, eigs


def _amge_assign_coarse_indices(*, patches: Sequence[LocalPatchData], comm: Any) -> Partition:
    """BUILD-MAPS: number the kept eigenvectors globally, in rank order (collective)."""
    n_local = sum(p.n_kept for p in patches)
    coarse = Partition.from_local_sizes(comm, n_local)
    offset = coarse.start
    for patch in patches:
        patch.coarse_indices = np.arange(offset, offset + patch.n_kept, dtype=np.int64)
        offset += patch.n_kept
    return coarse


def _amge_build_restrictor(
    *,
    config: RestrictorConfig,
    evaluator: Any,
    dof_handler: Any,
    global_operator: Any = None,
    comm: Any = None,
) -> DistributedMatrix:
    """Run the full restrictor pipeline.

    Parameters
    ----------
    config
        Build configuration.
    evaluator
        Mesh evaluator; asked for the operator when `global_operator` is None.
    dof_handler
        Provides `n_dofs()`, `partition` and (for structured agglomeration)
        the owned cell layout.
    global_operator
        Fine operator (scipy sparse or DistributedMatrix), or None.
    comm
        mpi4py-style communicator; defaults to ``dof_handler.comm``.

    Returns
    -------
    R
        Finalized restriction operator of shape (n_coarse, n_fine) with the
        build diagnostics attached as ``R.stats``.
    """
    if comm is None:
        comm = getattr(dof_handler, "comm", None)
    if global_operator is None:
        global_operator = evaluator.get_global_operator(dof_handler)

    n_fine = int(dof_handler.n_dofs())
    if tuple(global_operator.shape) != (n_fine, n_fine):
        raise ValueError(f"Operator of shape {global_operator.shape} does not match {n_fine} DOFs")

    stats = RestrictorStats(rank=comm_rank(comm), n_fine=n_fine)

    with stats.timeit("agglomerate"):
        agglomerates = _amge_build_agglomerates(
            agglomeration_params=config.agglomeration_params,
            dof_handler=dof_handler,
            global_operator=global_operator,
        )

    patches, eigs = _amge_solve_patches(
        config=config, agglomerates=agglomerates, global_operator=global_operator, stats=stats
    )

    with stats.timeit("maps"):
        _amge_assign_coarse_indices(patches=patches, comm=comm)

    with stats.timeit("weights"):
        weights, multiplicity = compute_overlap_weights(
            [p.dofs for p in patches], n_dofs=n_fine, comm=comm
        )
        for patch, w in zip(patches, weights):
            patch.weights = w

    eigenvectors, diag_elements, dof_indices_maps, n_local_eigenvectors = _flatten_patches(patches)
    R = _amge_restriction_matrix(
        eigenvectors=eigenvectors,
        diag_elements=diag_elements,
        dof_indices_maps=dof_indices_maps,
        n_local_eigenvectors=n_local_eigenvectors,
        reference_matrix=dof_handler.partition if issparse(global_operator) else global_operator,
        comm=comm,
        check_weights=config.check_weights,
        stats=stats,
    )

    _amge_finalize_stats(
        stats=stats,
        agglomerates=agglomerates,
        eigs=eigs,
        multiplicity=multiplicity,
        pou_error=stats.extra.get("pou_error"),
        n_coarse=R.m(),
    )
    _amge_print_summary(stats, print_info=config.print_info)
    return R
