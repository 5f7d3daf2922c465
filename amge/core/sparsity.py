"""Sparsity patterns and the restriction sparsity builder.

The restriction operator is stored over a structure that is fixed *before* any
value is inserted. A `SparsityPattern` has two phases:

1) open
   Each rank declares the (row, col) coordinates it will write with
   `add_entries`. Rows may be owned by any rank.

2) compressed
   `compress` (collective) ships every coordinate to the rank that owns its row,
   sorts and deduplicates it per row, and freezes the pattern as a CSR
   structure of the locally owned rows. Further declarations are rejected.

Coordinates of the locally owned rows are also kept as sorted int64 keys
``local_row * n_cols + col`` so that membership and value positions can be
looked up with one `np.searchsorted`.

For the restriction operator, rows are coarse basis vectors (one per kept
eigenvector, owned by the rank that computed it) and columns are fine DOFs.
"""

from __future__ import annotations

from typing import Any, Sequence

import numpy as np
from numpy.typing import ArrayLike
from scipy.sparse import issparse

from ..errors import StructuralViolation
from .partition import Partition, allreduce_sum, alltoall, comm_size


class SparsityPattern:
    """Distributed, two-phase (open / compressed) sparsity pattern.

    Parameters
    ----------
    row_partition, col_partition
        Ownership ranges of the row and column index spaces.
    comm
        mpi4py-style communicator, or None for a serial pattern.
    """

    def __init__(self, row_partition: Partition, col_partition: Partition, comm: Any = None):
        if row_partition.n_ranks != comm_size(comm) or col_partition.n_ranks != comm_size(comm):
            raise ValueError("Partitions do not match the communicator size")
        self.row_partition = row_partition
        self.col_partition = col_partition
        self.comm = comm
        self._rows: list[np.ndarray] = []
        self._cols: list[np.ndarray] = []
        self.indptr: np.ndarray | None = None
        self.indices: np.ndarray | None = None
        self._keys: np.ndarray | None = None

    @property
    def shape(self) -> tuple[int, int]:
        return (self.row_partition.size, self.col_partition.size)

    @property
    def is_compressed(self) -> bool:
        return self._keys is not None

    @property
    def n_nonzero_elements(self) -> int:
        """Number of declared entries in the locally owned rows."""
        self._require_compressed()
        return int(self._keys.size)

    def add_entries(self, rows: ArrayLike, cols: ArrayLike) -> None:
        """Declare the coordinates ``(rows[k], cols[k])``."""
        if self.is_compressed:
            raise StructuralViolation("Cannot add entries to a compressed sparsity pattern")
        r = np.asarray(rows, dtype=np.int64).ravel()
        c = np.asarray(cols, dtype=np.int64).ravel()
        if r.shape != c.shape:
            raise ValueError("rows and cols must have the same length")
        n_rows, n_cols = self.shape
        if r.size and (r.min() < 0 or r.max() >= n_rows or c.min() < 0 or c.max() >= n_cols):
            raise ValueError(f"Entries outside of a {n_rows} x {n_cols} pattern")
        self._rows.append(r)
        self._cols.append(c)

    def compress(self) -> None:
        """Collective: route declared coordinates to their row owners and freeze."""
        if self.is_compressed:
            raise StructuralViolation("Sparsity pattern is already compressed")

        rows = np.concatenate(self._rows) if self._rows else np.zeros(0, dtype=np.int64)
        cols = np.concatenate(self._cols) if self._cols else np.zeros(0, dtype=np.int64)
        self._rows = []
        self._cols = []

        owners = self.row_partition.owner(rows)
        buckets = []
        for p in range(self.row_partition.n_ranks):
            mask = owners == p
            buckets.append((rows[mask], cols[mask]))
        incoming = alltoall(self.comm, buckets)

        rows = np.concatenate([b[0] for b in incoming])
        cols = np.concatenate([b[1] for b in incoming])

        n_cols = self.shape[1]
        keys = np.unique((rows - self.row_partition.start) * n_cols + cols)
        local_rows = keys // n_cols

        self.indices = keys % n_cols
        counts = np.bincount(local_rows, minlength=self.row_partition.n_owned)
        self.indptr = np.concatenate([[0], np.cumsum(counts)]).astype(np.int64)
        self._keys = keys

    def positions(self, rows: ArrayLike, cols: ArrayLike) -> tuple[np.ndarray, np.ndarray]:
        """Locate locally owned coordinates in the compressed structure.

        Returns
        -------
        pos, found
            ``pos[k]`` is the storage position of ``(rows[k], cols[k])`` in
            `indices`; it is only meaningful where ``found[k]`` is True.
        """
        self._require_compressed()
        r = np.asarray(rows, dtype=np.int64).ravel()
        c = np.asarray(cols, dtype=np.int64).ravel()
        if not np.all(self.row_partition.is_owned(r)):
            raise ValueError("positions() only accepts locally owned rows")
        query = (r - self.row_partition.start) * self.shape[1] + c
        pos = np.searchsorted(self._keys, query)
        found = np.zeros(query.shape, dtype=bool)
        inside = pos < self._keys.size
        found[inside] = self._keys[pos[inside]] == query[inside]
        return pos, found

    def exists(self, row: int, col: int) -> bool:
        """True if the locally owned coordinate (row, col) is declared."""
        _, found = self.positions([row], [col])
        return bool(found[0])

    def row_length(self, row: int) -> int:
        """Number of declared entries in the locally owned row."""
        self._require_compressed()
        lr = int(row) - self.row_partition.start
        return int(self.indptr[lr + 1] - self.indptr[lr])

    def _require_compressed(self) -> None:
        if not self.is_compressed:
            raise StructuralViolation("Sparsity pattern must be compressed first")


def _amge_domain_partition(reference_matrix: Any) -> Partition:
    """Column (fine space) ownership described by the reference matrix.

    Parameters
    ----------
    reference_matrix
        A scipy sparse matrix/array (serial layout over its columns), an
        `amge.core.distributed.DistributedMatrix` (its column partition), or
        the fine-space `Partition` itself.
    """
    if isinstance(reference_matrix, Partition):
        return reference_matrix
    if issparse(reference_matrix):
        return Partition.serial(reference_matrix.shape[1])
    partition = getattr(reference_matrix, "col_partition", None)
    if partition is None:
        raise TypeError(
            "reference_matrix must be a scipy sparse matrix or a DistributedMatrix, "
            f"got {type(reference_matrix).__name__}"
        )
    return partition


def _amge_restriction_coordinates(
    *,
    dof_indices_maps: Sequence[ArrayLike],
    n_local_eigenvectors: Sequence[int],
    row_offset: int,
    n_cols: int,
) -> tuple[np.ndarray, np.ndarray]:
    """Return the (coarse row, fine column) coordinates of the local restriction rows.

    Patch i contributes ``n_local_eigenvectors[i]`` consecutive coarse rows,
    each with one entry per fine DOF of ``dof_indices_maps[i]``.

    Raises
    ------
    StructuralViolation
        If a patch lists the same fine DOF twice.
    ValueError
        If the counts and maps disagree in length or a fine DOF is out of range.
    """
    if len(dof_indices_maps) != len(n_local_eigenvectors):
        raise ValueError(
            f"{len(dof_indices_maps)} patch maps but {len(n_local_eigenvectors)} eigenvector counts"
        )

    p_r: list[np.ndarray] = []
    p_c: list[np.ndarray] = []
    counter = int(row_offset)
    for i, (cols, nev) in enumerate(zip(dof_indices_maps, n_local_eigenvectors)):
        cols = np.asarray(cols, dtype=np.int64)
        if int(nev) < 0:
            raise ValueError(f"Negative eigenvector count for patch {i}")
        if cols.size and (cols.min() < 0 or cols.max() >= n_cols):
            raise ValueError(f"Patch {i} references fine DOFs outside of [0, {n_cols})")
        if np.unique(cols).size != cols.size:
            raise StructuralViolation(f"Patch {i} lists a fine DOF more than once")
        for _ in range(int(nev)):
            p_r.append(np.full(cols.size, counter, dtype=np.int64))
            p_c.append(cols)
            counter += 1

    if not p_r:
        return np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64)
    return np.concatenate(p_r), np.concatenate(p_c)


def _amge_build_restriction_sparsity(
    *,
    dof_indices_maps: Sequence[ArrayLike],
    n_local_eigenvectors: Sequence[int],
    reference_matrix: Any,
    comm: Any,
) -> SparsityPattern:
    """Declare and compress the sparsity pattern of the restriction operator.

    Collective. Every rank owns the coarse rows of its own eigenvectors; the
    global coarse numbering follows the rank order.

    Returns
    -------
    pattern
        Compressed pattern of shape (n_coarse_global, n_fine_global).

    Raises
    ------
    StructuralViolation
        On every rank once any rank holds a duplicated or out-of-range patch
        entry (the failing rank re-raises its own error).
    """
    col_partition = _amge_domain_partition(reference_matrix)
    if col_partition.n_ranks != comm_size(comm):
        raise ValueError("reference_matrix is distributed over a different number of ranks")

    row_partition = Partition.from_local_sizes(comm, int(np.sum(n_local_eigenvectors, dtype=np.int64)))

    error = None
    try:
        rows, cols = _amge_restriction_coordinates(
            dof_indices_maps=dof_indices_maps,
            n_local_eigenvectors=n_local_eigenvectors,
            row_offset=row_partition.start,
            n_cols=col_partition.size,
        )
    except ValueError as e:
        error = e

    # every rank has to leave before compress() once any rank failed
    n_bad = allreduce_sum(comm, int(error is not None))
    if error is not None:
        raise error
    if n_bad:
        raise StructuralViolation(f"Invalid restriction patches on {n_bad} other rank(s)")

    pattern = SparsityPattern(row_partition, col_partition, comm)
    pattern.add_entries(rows, cols)
    pattern.compress()
    return pattern
