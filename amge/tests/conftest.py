"""Shared fixtures: an in-process, thread-backed communicator.

`ThreadComm` implements the lowercase (pickle-based) mpi4py collectives used by
`amge` (`Get_rank`, `Get_size`, `allgather`, `alltoall`, `allreduce`) on top of
a `threading.Barrier`. Every rank runs in its own thread, so multi-rank code
paths are exercised without an MPI launcher. Exchanged objects are deep-copied,
as they would be by pickling.
"""

from __future__ import annotations

import copy
import functools
import operator
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest


class _SharedState:
    def __init__(self, size: int, timeout: float):
        self.size = size
        self.barrier = threading.Barrier(size, timeout=timeout)
        self.slots = [None] * size


class ThreadComm:
    """Communicator of one rank in a group of threads."""

    def __init__(self, shared: _SharedState, rank: int):
        self._shared = shared
        self._rank = rank

    def Get_rank(self) -> int:
        return self._rank

    def Get_size(self) -> int:
        return self._shared.size

    def allgather(self, obj):
        shared = self._shared
        shared.slots[self._rank] = obj
        shared.barrier.wait()
        out = [copy.deepcopy(o) for o in shared.slots]
        shared.barrier.wait()
        return out

    def alltoall(self, objs):
        objs = list(objs)
        assert len(objs) == self._shared.size
        gathered = self.allgather(objs)
        return [gathered[p][self._rank] for p in range(self._shared.size)]

    def allreduce(self, obj, op=None):
        assert op is None, "only the default (sum) reduction is supported"
        return functools.reduce(operator.add, self.allgather(obj))


@pytest.fixture
def run_ranks():
    """Run ``fn(comm)`` on `size` thread-backed ranks; return the per-rank results.

    The first exception raised by any rank is re-raised (in rank order); a
    failing rank breaks the barrier so that no other rank blocks forever.
    """

    def run(size, fn, timeout=60.0):
        shared = _SharedState(size, timeout)

        def target(rank):
            try:
                return fn(ThreadComm(shared, rank))
            except BaseException:
                shared.barrier.abort()
                raise

        with ThreadPoolExecutor(max_workers=size) as pool:
            futures = [pool.submit(target, r) for r in range(size)]
            return [f.result() for f in futures]

    return run
