"""Agglomeration of fine DOFs into overlapping patches.

Two strategies produce the `Agglomerates` of one rank:

1) Structured (geometric)
   Given per-axis extents ``(nx, ny[, nz])``, the owned cells of a
   `StructuredDoFHandler` are grouped into boxes of ``nx x ny [x nz]`` cells.
   An agglomerate holds every vertex DOF of its cells, so neighbouring
   agglomerates share their boundary vertices. Boxes cut by the rank's slab
   boundary are truncated.

2) Algebraic
   A pyamg aggregation (standard, naive, lloyd, or predefined) is applied to
   the strength graph of the owned block of the operator, producing
   nonoverlapping aggregates (AggOp). Unaggregated nodes are attached to
   neighbouring aggregates by a voting step, and each aggregate is optionally
   grown by one ring of operator neighbours (which may be ghost DOFs) so that
   aggregates overlap.
"""

from __future__ import annotations

import itertools
from typing import Any, Sequence

import numpy as np
from scipy.sparse import coo_array, csr_array, hstack, issparse

from pyamg.aggregation.aggregate import lloyd_aggregation, naive_aggregation, standard_aggregation
from pyamg.strength import classical_strength_of_connection, symmetric_strength_of_connection

from .types import Agglomerates, _unpack_arg


def _amge_structured_agglomerates(*, dof_handler: Any, agglomerate_dim: Sequence[int]) -> Agglomerates:
    """Group the owned cells of a structured DoF handler into boxes.

    Parameters
    ----------
    dof_handler
        Structured DoF handler; requires `dim`, `n_cells_per_axis`,
        `owned_cell_ranges()` and `box_dofs(lo, hi)`.
    agglomerate_dim
        Number of cells per agglomerate along each axis.

    Returns
    -------
    Agglomerates
        Ids are the lexicographic index of the box in the global box grid.
    """
    ext = [int(n) for n in agglomerate_dim]
    if len(ext) != dof_handler.dim:
        raise ValueError(f"Expected {dof_handler.dim} agglomerate extents, got {len(ext)}")
    if any(n < 1 for n in ext):
        raise ValueError(f"Agglomerate extents must be positive, got {tuple(ext)}")

    n_cells = dof_handler.n_cells_per_axis
    cell_ranges = dof_handler.owned_cell_ranges()
    n_boxes = [-(-n_cells // n) for n in ext]

    box_ranges = []
    for (c0, c1), n in zip(cell_ranges, ext):
        if c0 >= c1:
            return Agglomerates(ids=[], dofs=[])
        box_ranges.append(range(c0 // n, (c1 - 1) // n + 1))

    ids: list[int] = []
    dofs: list[np.ndarray] = []
    # last axis outermost, so agglomerates follow the DOF numbering
    for box in itertools.product(*reversed(box_ranges)):
        box = box[::-1]
        lo = [max(b * n, c0) for b, n, (c0, _) in zip(box, ext, cell_ranges)]
        hi = [min((b + 1) * n, c1) for b, n, (_, c1) in zip(box, ext, cell_ranges)]
        ids.append(int(np.ravel_multi_index(box, n_boxes, order="F")))
        dofs.append(dof_handler.box_dofs(lo, hi))

    return Agglomerates(ids=ids, dofs=dofs)


def _fill_unaggregated_by_neighbors(Adj, AggOp, *, make_singletons: bool = True):
    """Assign unaggregated nodes to neighbouring aggregates.

    A node is unaggregated if its row in AggOp has no nonzeros. Every such node
    joins the aggregate with the largest ``|Adj|``-weighted vote among its
    neighbours; nodes without aggregated neighbours become singleton aggregates
    when `make_singletons` is True.

    Parameters
    ----------
    Adj
        CSR adjacency of shape (n, n).
    AggOp
        CSR aggregation operator of shape (n, n_aggs).

    Returns
    -------
    AggOp_filled
        CSR aggregation operator; may have more columns than `AggOp`.
    """
    if (not issparse(Adj)) or Adj.format != "csr":
        raise TypeError("Adj must be CSR sparse")
    if (not issparse(AggOp)) or AggOp.format != "csr":
        raise TypeError("AggOp must be CSR sparse")

    n_fine, n_aggs = AggOp.shape

    W = csr_array(Adj, copy=True)
    W.setdiag(0)
    W.eliminate_zeros()
    W.data = np.abs(W.data)

    nnz_row = np.diff(AggOp.indptr)
    unassigned = np.flatnonzero(nnz_row == 0)
    if unassigned.size:
        V = csr_array(W @ AggOp)  # weighted votes per aggregate
        new_rows: list[int] = []
        new_cols: list[int] = []
        for i in unassigned:
            s, e = V.indptr[i], V.indptr[i + 1]
            if e <= s:
                continue
            new_rows.append(int(i))
            new_cols.append(int(V.indices[s + int(np.argmax(V.data[s:e]))]))
        if new_rows:
            add = coo_array(
                (np.ones(len(new_rows)), (np.asarray(new_rows), np.asarray(new_cols))),
                shape=AggOp.shape,
            )
            AggOp = csr_array(AggOp + add)

    nnz_row = np.diff(AggOp.indptr)
    still_unassigned = np.flatnonzero(nnz_row == 0)
    if make_singletons and still_unassigned.size > 0:
        k = int(still_unassigned.size)
        AggOp = csr_array(hstack([AggOp, csr_array((n_fine, k), dtype=AggOp.dtype)], format="csr"))
        add = coo_array(
            (np.ones(k, dtype=AggOp.dtype), (still_unassigned, np.arange(n_aggs, n_aggs + k))),
            shape=AggOp.shape,
        )
        AggOp = csr_array(AggOp + add)

    AggOp.eliminate_zeros()
    return AggOp


def _amge_build_strength(*, A, strength_spec: Any):
    """Compute the strength-of-connection graph of `A`.

    Parameters
    ----------
    strength_spec
        "symmetric", "classical", None (absolute adjacency of A), or
        ("predefined", {"C": C}); or a (name, kwargs) pair.
    """
    name, kwargs = _unpack_arg(strength_spec)

    if name == "symmetric":
        C = symmetric_strength_of_connection(A, **kwargs)
    elif name == "classical":
        C = classical_strength_of_connection(A, **kwargs)
    elif name == "predefined":
        C = kwargs["C"]
    elif name is None:
        C = abs(A.copy())
    else:
        raise ValueError(f"Unrecognized strength-of-connection method: {name!r}")

    C = csr_array(C)
    C.eliminate_zeros()
    return C


def _amge_build_aggop(*, A, C, aggregate_spec: Any):
    """Build the (nonoverlapping) aggregation operator of the owned block.

    Parameters
    ----------
    A
        Owned block of the operator (CSR, square, local numbering).
    C
        Strength graph of `A`.
    aggregate_spec
        "standard", "naive", "lloyd" or ("predefined", {"AggOp": AggOp}); or a
        (name, kwargs) pair forwarded to the pyamg routine.

    Returns
    -------
    AggOp
        CSR array of shape (n_owned, n_aggs) with exactly one nonzero per row.
    """
    name, kwargs = _unpack_arg(aggregate_spec)

    if name == "standard":
        AggOp, _ = standard_aggregation(C, **kwargs)
    elif name == "naive":
        AggOp, _ = naive_aggregation(C, **kwargs)
    elif name == "lloyd":
        AggOp, _ = lloyd_aggregation(C, **kwargs)
    elif name == "predefined":
        AggOp = kwargs["AggOp"]
    else:
        raise ValueError(f"Unrecognized aggregation method: {name!r}")

    AggOp = csr_array(AggOp)
    if AggOp.shape[0] != A.shape[0]:
        raise ValueError(f"AggOp has {AggOp.shape[0]} rows, expected {A.shape[0]}")

    # Assign any missing rows using adjacency voting and singleton padding if needed.
    return _fill_unaggregated_by_neighbors(csr_array(A), AggOp, make_singletons=True)


def _amge_owned_rows(*, global_operator, partition) -> csr_array:
    """CSR block of the locally owned operator rows, with global columns."""
    local = getattr(global_operator, "local_matrix", None)
    if local is not None:
        return csr_array(local)
    return csr_array(global_operator[partition.start : partition.stop, :])


def _amge_algebraic_agglomerates(
    *,
    global_operator,
    partition,
    aggregate_spec: Any,
) -> Agglomerates:
    """Aggregate the owned DOFs algebraically and grow one-ring overlaps.

    Parameters
    ----------
    global_operator
        scipy sparse operator or DistributedMatrix.
    partition
        Ownership partition of the fine DOFs.
    aggregate_spec
        Aggregation spec. The kwargs may additionally contain ``strength``
        (strength spec, default "symmetric") and ``overlap`` (bool, default
        True); the remaining kwargs go to the aggregation routine.

    Returns
    -------
    Agglomerates
        Ids are ``partition.start + aggregate index`` (unique over ranks).
    """
    name, kwargs = _unpack_arg(aggregate_spec)
    strength_spec = kwargs.pop("strength", "symmetric")
    overlap = bool(kwargs.pop("overlap", True))

    rows = _amge_owned_rows(global_operator=global_operator, partition=partition)
    if rows.shape[0] == 0:
        return Agglomerates(ids=[], dofs=[])

    A_loc = csr_array(rows[:, partition.start : partition.stop])
    A_loc.sort_indices()
    C = _amge_build_strength(A=A_loc, strength_spec=strength_spec)
    AggOp = _amge_build_aggop(A=A_loc, C=C, aggregate_spec=(name, kwargs))
    AggOpT = csr_array(AggOp.T)

    ids: list[int] = []
    dofs: list[np.ndarray] = []
    for i in range(AggOpT.shape[0]):
        omega = AggOpT.indices[AggOpT.indptr[i] : AggOpT.indptr[i + 1]].astype(np.int64) + partition.start
        if omega.size == 0:
            continue
        if overlap:
            neigh = [rows.indices[rows.indptr[j] : rows.indptr[j + 1]] for j in omega - partition.start]
            patch = np.unique(np.concatenate([omega, *neigh]).astype(np.int64))
        else:
            patch = np.sort(omega)
        ids.append(partition.start + i)
        dofs.append(patch)

    return Agglomerates(ids=ids, dofs=dofs)


def _amge_build_agglomerates(
    *,
    agglomeration_params: Any,
    dof_handler: Any,
    global_operator,
) -> Agglomerates:
    """PARTITION step: dispatch on the form of `agglomeration_params`.

    A sequence of integers selects structured agglomeration with those per-axis
    extents; a string or (name, kwargs) pair selects algebraic agglomeration.
    """
    if isinstance(agglomeration_params, (str, tuple)) and not (
        isinstance(agglomeration_params, tuple)
        and all(isinstance(n, (int, np.integer)) for n in agglomeration_params)
    ):
        return _amge_algebraic_agglomerates(
            global_operator=global_operator,
            partition=dof_handler.partition,
            aggregate_spec=agglomeration_params,
        )
    return _amge_structured_agglomerates(dof_handler=dof_handler, agglomerate_dim=agglomeration_params)
