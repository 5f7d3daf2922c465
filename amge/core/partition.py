"""Ownership ranges of distributed index spaces and communicator helpers.

Every distributed object in `amge` (DoF handlers, sparsity patterns, matrices)
splits its global index space into contiguous, per-rank ownership ranges,
PETSc-style:

    rank r owns [ranges[r], ranges[r+1])

Communicators follow the mpi4py object interface (lowercase, pickle-based
collectives): ``Get_rank``, ``Get_size``, ``allgather``, ``alltoall`` and
``allreduce``. ``comm=None`` denotes a serial run; the helpers below then skip
communication entirely.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

import numpy as np
from numpy.typing import ArrayLike


def comm_rank(comm: Any) -> int:
    """Rank of this process in `comm` (0 for a serial run)."""
    return 0 if comm is None else int(comm.Get_rank())


def comm_size(comm: Any) -> int:
    """Number of processes in `comm` (1 for a serial run)."""
    return 1 if comm is None else int(comm.Get_size())


def allgather(comm: Any, obj: Any) -> list[Any]:
    """Gather `obj` from every rank, in rank order."""
    if comm_size(comm) == 1:
        return [obj]
    return list(comm.allgather(obj))


def alltoall(comm: Any, buckets: Sequence[Any]) -> list[Any]:
    """Send ``buckets[p]`` to rank p; return what every rank sent to this one."""
    if len(buckets) != comm_size(comm):
        raise ValueError(f"Expected {comm_size(comm)} buckets, got {len(buckets)}")
    if comm_size(comm) == 1:
        return list(buckets)
    return list(comm.alltoall(list(buckets)))


def allreduce_sum(comm: Any, obj: Any) -> Any:
    """Sum `obj` (scalar or ndarray) over all ranks."""
    if comm_size(comm) == 1:
        return obj
    return comm.allreduce(obj)


@dataclass(frozen=True, eq=False)
class Partition:
    """Contiguous ownership ranges of a distributed index space.

    Attributes
    ----------
    ranges
        int64 array of length n_ranks + 1, nondecreasing, ``ranges[0] == 0``.
    rank
        Rank of the calling process.
    """

    ranges: np.ndarray
    rank: int = 0

    def __post_init__(self) -> None:
        ranges = np.asarray(self.ranges, dtype=np.int64)
        if ranges.ndim != 1 or ranges.size < 2 or ranges[0] != 0 or np.any(np.diff(ranges) < 0):
            raise ValueError(f"Invalid ownership ranges: {ranges}")
        if not 0 <= self.rank < ranges.size - 1:
            raise ValueError(f"Rank {self.rank} outside of {ranges.size - 1} ranks")
        object.__setattr__(self, "ranges", ranges)

    @classmethod
    def serial(cls, n: int) -> "Partition":
        """One rank owning the whole index space [0, n)."""
        return cls(np.array([0, int(n)], dtype=np.int64), 0)

    @classmethod
    def from_local_sizes(cls, comm: Any, n_local: int) -> "Partition":
        """Collective: every rank owns `n_local` consecutive indices, in rank order."""
        sizes = allgather(comm, int(n_local))
        ranges = np.concatenate([[0], np.cumsum(sizes)]).astype(np.int64)
        return cls(ranges, comm_rank(comm))

    @classmethod
    def uniform(cls, n: int, n_ranks: int, rank: int = 0) -> "Partition":
        """Split [0, n) into n_ranks nearly equal consecutive blocks."""
        counts = np.full(n_ranks, n // n_ranks, dtype=np.int64)
        counts[: n % n_ranks] += 1
        return cls(np.concatenate([[0], np.cumsum(counts)]), rank)

    @property
    def size(self) -> int:
        """Global number of indices."""
        return int(self.ranges[-1])

    @property
    def n_ranks(self) -> int:
        return int(self.ranges.size - 1)

    @property
    def start(self) -> int:
        return int(self.ranges[self.rank])

    @property
    def stop(self) -> int:
        return int(self.ranges[self.rank + 1])

    @property
    def n_owned(self) -> int:
        return self.stop - self.start

    def owned(self, rank: int | None = None) -> np.ndarray:
        """Ordered global indices owned by `rank` (default: this rank)."""
        r = self.rank if rank is None else rank
        return np.arange(self.ranges[r], self.ranges[r + 1], dtype=np.int64)

    def owner(self, indices: ArrayLike) -> np.ndarray:
        """Rank owning each of `indices`."""
        idx = np.asarray(indices, dtype=np.int64)
        if idx.size and (idx.min() < 0 or idx.max() >= self.size):
            raise ValueError(f"Indices outside of [0, {self.size})")
        return np.searchsorted(self.ranges, idx, side="right") - 1

    def is_owned(self, indices: ArrayLike) -> np.ndarray:
        """Boolean mask of `indices` owned by this rank."""
        idx = np.asarray(indices, dtype=np.int64)
        return (idx >= self.start) & (idx < self.stop)
