"""Structured Q1 degrees of freedom on the unit square / cube.

`StructuredDoFHandler` is the reference discretization layer used to drive the
restrictor: the unit hypercube is refined `n_refinements` times (``2**r`` cells
per axis) and one DOF sits on every vertex. DOFs are numbered
lexicographically with axis 0 running fastest.

Domain decomposition
--------------------
Cells are split into slabs along the last axis, one slab per rank (as in a
``(1, ..., n_ranks)`` Cartesian subdivision). A rank owns the vertices whose
last coordinate lies in its slab ``[c0, c1)``; the last rank also owns the
closing vertex layer. Vertex layers are contiguous in the numbering, so DOF
ownership is a contiguous `Partition`. DOFs touched by owned cells but owned
elsewhere are *locally relevant* (ghosts).
"""

from __future__ import annotations

from typing import Any

import numpy as np

from .core.partition import Partition, comm_rank, comm_size


class StructuredDoFHandler:
    """Vertex DOFs of a uniformly refined unit hypercube.

    Parameters
    ----------
    n_refinements : int
        Number of global refinements; the mesh has ``2**n_refinements`` cells per axis.
    dim : int
        Spatial dimension (1, 2 or 3).
    comm
        mpi4py-style communicator or None (serial).

    Examples
    --------
    >>> dh = StructuredDoFHandler(2)
    >>> dh.n_dofs()
    25
    """

    def __init__(self, n_refinements: int, dim: int = 2, comm: Any = None):
        if dim not in (1, 2, 3):
            raise ValueError(f"dim must be 1, 2 or 3, got {dim}")
        if n_refinements < 0:
            raise ValueError("n_refinements must be nonnegative")

        self.dim = int(dim)
        self.comm = comm
        self.n_cells_per_axis = 2 ** int(n_refinements)
        self.n_vertices_per_axis = self.n_cells_per_axis + 1

        rank = comm_rank(comm)
        n_ranks = comm_size(comm)
        slabs = Partition.uniform(self.n_cells_per_axis, n_ranks, rank)
        self._cell_slab = (slabs.start, slabs.stop)

        layer = self.n_vertices_per_axis ** (self.dim - 1)
        vertex_ranges = slabs.ranges * layer
        vertex_ranges[-1] = self.n_vertices_per_axis ** self.dim
        self.partition = Partition(vertex_ranges, rank)

    @property
    def grid_shape(self) -> tuple[int, ...]:
        """Number of vertices along each axis."""
        return (self.n_vertices_per_axis,) * self.dim

    def n_dofs(self) -> int:
        """Global number of DOFs."""
        return self.partition.size

    def locally_owned_dofs(self) -> np.ndarray:
        """Ordered global DOFs owned by this rank."""
        return self.partition.owned()

    def owned_cell_ranges(self) -> list[tuple[int, int]]:
        """Half-open range of owned cell indices along every axis."""
        n = self.n_cells_per_axis
        return [(0, n)] * (self.dim - 1) + [self._cell_slab]

    def box_dofs(self, lo, hi) -> np.ndarray:
        """Sorted DOFs of the vertex box ``lo[d] <= i_d <= hi[d]`` (inclusive)."""
        axes = [np.arange(int(a), int(b) + 1) for a, b in zip(lo, hi)]
        grids = np.meshgrid(*axes, indexing="ij")
        idx = np.ravel_multi_index(tuple(g.ravel() for g in grids), self.grid_shape, order="F")
        return np.sort(idx.astype(np.int64))

    def locally_relevant_dofs(self) -> np.ndarray:
        """Sorted DOFs of all owned cells, including ghosts owned by neighbours."""
        ranges = self.owned_cell_ranges()
        if any(c0 >= c1 for c0, c1 in ranges):
            return np.zeros(0, dtype=np.int64)
        return self.box_dofs([c0 for c0, _ in ranges], [c1 for _, c1 in ranges])
