"""Insert / finalize life cycle of the row-distributed matrix."""

from __future__ import annotations

import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

from amge.core.distributed import DistributedMatrix
from amge.core.partition import Partition
from amge.core.sparsity import SparsityPattern
from amge.errors import StructuralViolation


def _serial_matrix():
    pattern = SparsityPattern(Partition.serial(2), Partition.serial(3))
    pattern.add_entries([0, 0, 1], [0, 2, 1])
    pattern.compress()
    return DistributedMatrix(pattern)


def test_requires_compressed_pattern():
    pattern = SparsityPattern(Partition.serial(2), Partition.serial(2))
    with pytest.raises(StructuralViolation):
        DistributedMatrix(pattern)


def test_set_finalize_and_query():
    M = _serial_matrix()
    with pytest.raises(StructuralViolation):
        M.vmult(np.ones(3))

    M.set([0, 0, 1], [0, 2, 1], [1.0, 2.0, 3.0])
    M.set([0], [2], [5.0])  # insert overwrites
    M.finalize()

    assert M.is_finalized
    assert (M.m(), M.n()) == (2, 3)
    assert M(0, 2) == 5.0
    assert M.el(1, 1) == 3.0
    assert M(1, 0) == 0.0
    assert_allclose(M.vmult(np.array([1.0, 1.0, 1.0])), [6.0, 3.0])
    assert_array_equal(M.locally_owned_range_indices(), [0, 1])
    assert_array_equal(M.locally_owned_domain_indices(), [0, 1, 2])

    M *= 2.0
    assert M(0, 0) == 2.0
    assert_allclose(M.to_csr().toarray(), [[2.0, 0.0, 10.0], [0.0, 6.0, 0.0]])

    with pytest.raises(StructuralViolation):
        M.set([0], [0], [1.0])


def test_undeclared_insertion_fails_at_finalize():
    M = _serial_matrix()
    M.set([1], [2], [1.0])
    with pytest.raises(StructuralViolation, match="outside of the sparsity pattern"):
        M.finalize()
    assert not M.is_finalized


def test_vmult_checks_length():
    M = _serial_matrix()
    M.finalize()
    with pytest.raises(ValueError):
        M.vmult(np.ones(2))


def _two_rank_matrix(comm):
    """4 x 4 diagonal (1, 2, 3, 4) plus a (0, 3) entry written by rank 1."""
    rank, size = comm.Get_rank(), comm.Get_size()
    rows = Partition.from_local_sizes(comm, 2)
    cols = Partition.uniform(4, size, rank)

    owned = rows.owned()
    pattern = SparsityPattern(rows, cols, comm)
    pattern.add_entries(owned, owned)
    if rank == 1:
        pattern.add_entries([0], [3])
    pattern.compress()

    M = DistributedMatrix(pattern)
    M.set(owned, owned, owned + 1.0)
    if rank == 1:
        M.set([0], [3], [7.0])
    M.finalize()
    return M


def test_off_process_entries(run_ranks):
    def body(comm):
        M = _two_rank_matrix(comm)
        y = M.vmult(np.ones(2))
        return M.to_csr().toarray(), y

    (A0, y0), (A1, y1) = run_ranks(2, body)
    expected = np.diag([1.0, 2.0, 3.0, 4.0])
    expected[0, 3] = 7.0
    assert_allclose(A0, expected)
    assert_allclose(A1, expected)
    assert_allclose(y0, [8.0, 2.0])
    assert_allclose(y1, [3.0, 4.0])


def test_extract_rows(run_ranks):
    def body(comm):
        M = _two_rank_matrix(comm)
        wanted = [3] if comm.Get_rank() == 0 else [0, 1]
        return M.extract_rows(wanted)

    (r0, c0, v0), (r1, c1, v1) = run_ranks(2, body)
    assert_array_equal(r0, [3])
    assert_array_equal(c0, [3])
    assert_allclose(v0, [4.0])

    order = np.lexsort((c1, r1))
    assert_array_equal(r1[order], [0, 0, 1])
    assert_array_equal(c1[order], [0, 3, 1])
    assert_allclose(v1[order], [1.0, 7.0, 2.0])


def test_undeclared_insertion_aborts_every_rank(run_ranks):
    def body(comm):
        rows = Partition.from_local_sizes(comm, 1)
        cols = Partition.uniform(2, comm.Get_size(), comm.Get_rank())
        pattern = SparsityPattern(rows, cols, comm)
        pattern.add_entries(rows.owned(), rows.owned())
        pattern.compress()
        M = DistributedMatrix(pattern)
        if comm.Get_rank() == 1:
            M.set([0], [1], [1.0])  # off-process and undeclared
        try:
            M.finalize()
        except StructuralViolation:
            return "raised"
        return "finalized"

    assert run_ranks(2, body) == ["raised", "raised"]
