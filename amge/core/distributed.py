"""Row-distributed sparse matrix with explicit insert / finalize phases.

A `DistributedMatrix` stores values over a compressed `SparsityPattern`. Each
rank keeps the CSR block of the rows it owns, with global column indices.

Life cycle
----------
1) ``set(rows, cols, values)``
   Insert semantics (overwrite, never accumulate). Entries in locally owned rows
   are written immediately and must exist in the pattern. Entries in rows owned
   by another rank are stashed.

2) ``finalize()`` (collective)
   Ships stashed entries to their owners, writes them, and checks globally that
   no rank attempted an undeclared insertion. Only then is the matrix available
   for products, element queries and scaling.

Undeclared insertions are counted, not raised, by ``set``; ``finalize`` sums
the counts over all ranks and raises `StructuralViolation` on *every* rank, so
no rank is left waiting in a collective and a partially assembled matrix is
never handed out.
"""

from __future__ import annotations

from typing import Any

import numpy as np
from numpy.typing import ArrayLike
from scipy.sparse import csr_array, vstack

from ..errors import StructuralViolation
from .partition import allgather, allreduce_sum, alltoall
from .sparsity import SparsityPattern


class DistributedMatrix:
    """Sparse matrix distributed by rows over a fixed sparsity pattern.

    Parameters
    ----------
    pattern
        Compressed sparsity pattern. Shared, never modified.
    dtype
        Value type.
    """

    def __init__(self, pattern: SparsityPattern, dtype=float):
        if not pattern.is_compressed:
            raise StructuralViolation("DistributedMatrix requires a compressed sparsity pattern")
        self.pattern = pattern
        self.comm = pattern.comm
        self.row_partition = pattern.row_partition
        self.col_partition = pattern.col_partition
        self._data = np.zeros(pattern.indices.size, dtype=dtype)
        self._stash: list[tuple[np.ndarray, np.ndarray, np.ndarray]] = []
        self._local: csr_array | None = None
        self._first_bad: tuple[int, int] | None = None
        self._n_bad = 0
        self.stats = None

    # ------------------------------------------------------------------
    # layout
    # ------------------------------------------------------------------

    @property
    def shape(self) -> tuple[int, int]:
        return self.pattern.shape

    def m(self) -> int:
        """Global number of rows."""
        return self.shape[0]

    def n(self) -> int:
        """Global number of columns."""
        return self.shape[1]

    def locally_owned_range_indices(self) -> np.ndarray:
        """Global row indices owned by this rank."""
        return self.row_partition.owned()

    def locally_owned_domain_indices(self) -> np.ndarray:
        """Global column indices whose vector entries this rank owns."""
        return self.col_partition.owned()

    @property
    def is_finalized(self) -> bool:
        return self._local is not None

    @property
    def local_matrix(self) -> csr_array:
        """CSR block of the locally owned rows (global column indices)."""
        self._require_finalized()
        return self._local

    # ------------------------------------------------------------------
    # insertion
    # ------------------------------------------------------------------

    def set(self, rows: ArrayLike, cols: ArrayLike, values: ArrayLike) -> None:
        """Insert ``values[k]`` at ``(rows[k], cols[k])``.

        Coordinates missing from the pattern are not written; they are counted
        and reported by `finalize`.

        Raises
        ------
        StructuralViolation
            If the matrix is already finalized.
        """
        if self.is_finalized:
            raise StructuralViolation("Cannot insert into a finalized matrix")
        r = np.asarray(rows, dtype=np.int64).ravel()
        c = np.asarray(cols, dtype=np.int64).ravel()
        v = np.asarray(values, dtype=self._data.dtype).ravel()
        if not (r.shape == c.shape == v.shape):
            raise ValueError("rows, cols and values must have the same length")
        n_rows, n_cols = self.shape
        if r.size and (r.min() < 0 or r.max() >= n_rows or c.min() < 0 or c.max() >= n_cols):
            raise ValueError(f"Entries outside of a {n_rows} x {n_cols} matrix")

        owned = self.row_partition.is_owned(r)
        if not np.all(owned):
            self._stash.append((r[~owned], c[~owned], v[~owned]))

        self._n_bad += self._insert_owned(r[owned], c[owned], v[owned])

    def _insert_owned(self, r: np.ndarray, c: np.ndarray, v: np.ndarray) -> int:
        """Write owned entries; return the number of undeclared coordinates."""
        pos, found = self.pattern.positions(r, c)
        if not np.all(found) and self._first_bad is None:
            k = int(np.flatnonzero(~found)[0])
            self._first_bad = (int(r[k]), int(c[k]))
        self._data[pos[found]] = v[found]
        return int(np.count_nonzero(~found))

    def finalize(self) -> None:
        """Collective: settle off-process entries and freeze the matrix."""
        if self.is_finalized:
            return

        if self._stash:
            rows = np.concatenate([s[0] for s in self._stash])
            cols = np.concatenate([s[1] for s in self._stash])
            vals = np.concatenate([s[2] for s in self._stash])
        else:
            rows = np.zeros(0, dtype=np.int64)
            cols = np.zeros(0, dtype=np.int64)
            vals = np.zeros(0, dtype=self._data.dtype)
        self._stash = []

        owners = self.row_partition.owner(rows)
        buckets = []
        for p in range(self.row_partition.n_ranks):
            mask = owners == p
            buckets.append((rows[mask], cols[mask], vals[mask]))
        incoming = alltoall(self.comm, buckets)

        # Applied in rank order, so a coordinate set by several ranks keeps the
        # value of the highest rank.
        for r, c, v in incoming:
            self._n_bad += self._insert_owned(r, c, v)

        n_bad = allreduce_sum(self.comm, self._n_bad)
        if n_bad:
            where = f", first on this rank at {self._first_bad}" if self._first_bad else ""
            raise StructuralViolation(
                f"{n_bad} insertion(s) outside of the sparsity pattern{where}"
            )

        self._local = csr_array(
            (self._data, self.pattern.indices, self.pattern.indptr),
            shape=(self.row_partition.n_owned, self.shape[1]),
        )
        self._data = self._local.data

    # alias in the vocabulary of distributed linear algebra packages
    compress = finalize

    # ------------------------------------------------------------------
    # queries and products
    # ------------------------------------------------------------------

    def __call__(self, row: int, col: int) -> float:
        """Value at the locally owned coordinate (row, col); zero if not stored."""
        self._require_finalized()
        pos, found = self.pattern.positions([row], [col])
        return self._local.data[pos[0]] if found[0] else self._local.dtype.type(0)

    el = __call__

    def vmult(self, x: ArrayLike) -> np.ndarray:
        """Collective: return the owned part of ``self @ x``.

        Parameters
        ----------
        x
            Locally owned part of the domain vector (length
            ``col_partition.n_owned``).
        """
        self._require_finalized()
        x = np.asarray(x)
        if x.shape != (self.col_partition.n_owned,):
            raise ValueError(
                f"Expected the {self.col_partition.n_owned} locally owned entries, got shape {x.shape}"
            )
        x_full = np.concatenate(allgather(self.comm, x))
        return self._local @ x_full

    def __imul__(self, factor: float) -> "DistributedMatrix":
        self._require_finalized()
        self._local.data *= factor
        return self

    def extract_rows(self, rows: ArrayLike) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Collective: fetch the entries of arbitrary global rows.

        Every rank asks for its own set of `rows` (e.g. the ghost DOFs of its
        agglomerates); owners reply with their stored entries.

        Returns
        -------
        rows, cols, values
            Triplets of all stored entries in the requested rows.
        """
        self._require_finalized()
        wanted = np.unique(np.asarray(rows, dtype=np.int64))
        owners = self.row_partition.owner(wanted)
        requests = [wanted[owners == p] for p in range(self.row_partition.n_ranks)]
        incoming = alltoall(self.comm, requests)

        replies = []
        for req in incoming:
            if req.size == 0:
                replies.append((req, req, np.zeros(0, dtype=self._local.dtype)))
                continue
            block = self._local[req - self.row_partition.start, :].tocoo()
            replies.append((req[block.row], block.col.astype(np.int64), block.data))
        answers = alltoall(self.comm, replies)

        return (
            np.concatenate([a[0] for a in answers]),
            np.concatenate([a[1] for a in answers]),
            np.concatenate([a[2] for a in answers]),
        )

    def to_csr(self) -> csr_array:
        """Collective: the full matrix as a scipy CSR array on every rank."""
        self._require_finalized()
        blocks = allgather(self.comm, self._local)
        return csr_array(vstack(blocks, format="csr"))

    def _require_finalized(self) -> None:
        if not self.is_finalized:
            raise StructuralViolation("Matrix must be finalized before use")
