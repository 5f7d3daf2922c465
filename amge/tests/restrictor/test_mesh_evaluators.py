"""Structured DoF handler and mesh evaluators."""

from __future__ import annotations

import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal
from scipy.sparse import SparseEfficiencyWarning

from pyamg.gallery import poisson

from amge import (
    DistributedMatrix,
    DistributedMeshEvaluator,
    ScipyMeshEvaluator,
    StructuredDoFHandler,
    make_mesh_evaluator,
)


def test_dof_counts():
    assert StructuredDoFHandler(2).n_dofs() == 25
    assert StructuredDoFHandler(4).n_dofs() == 289
    assert StructuredDoFHandler(1, dim=3).n_dofs() == 27
    assert StructuredDoFHandler(3, dim=1).n_dofs() == 9


def test_invalid_handler():
    with pytest.raises(ValueError):
        StructuredDoFHandler(2, dim=4)
    with pytest.raises(ValueError):
        StructuredDoFHandler(-1)


def test_serial_ownership():
    dh = StructuredDoFHandler(2)
    assert_array_equal(dh.locally_owned_dofs(), np.arange(25))
    assert_array_equal(dh.locally_relevant_dofs(), np.arange(25))
    assert_array_equal(dh.box_dofs([0, 0], [1, 1]), [0, 1, 5, 6])
    assert dh.owned_cell_ranges() == [(0, 4), (0, 4)]


def test_slab_ownership(run_ranks):
    def body(comm):
        dh = StructuredDoFHandler(2, comm=comm)
        return dh.partition.ranges, dh.locally_owned_dofs(), dh.locally_relevant_dofs()

    (ranges, own0, rel0), (_, own1, rel1) = run_ranks(2, body)
    assert_array_equal(ranges, [0, 10, 25])
    assert_array_equal(own0, np.arange(10))
    assert_array_equal(own1, np.arange(10, 25))
    assert_array_equal(rel0, np.arange(15))
    assert_array_equal(rel1, np.arange(10, 25))


def test_more_ranks_than_cells(run_ranks):
    def body(comm):
        dh = StructuredDoFHandler(1, comm=comm)
        return dh.partition.n_owned, dh.locally_relevant_dofs().size

    # the last rank owns the closing vertex layer even without cells
    assert run_ranks(3, body) == [(3, 6), (3, 6), (3, 0)]


def test_scipy_evaluator():
    dh = StructuredDoFHandler(2)
    pattern, A = ScipyMeshEvaluator().evaluate(dh)
    expected = poisson((5, 5), format="csr")
    assert_allclose(A.toarray(), expected.toarray())
    assert pattern.n_nonzero_elements == expected.nnz
    assert ScipyMeshEvaluator().get_global_operator(dh).shape == (25, 25)


def test_wrapped_matrix_is_converted_with_warning():
    dh = StructuredDoFHandler(2)
    with pytest.warns(SparseEfficiencyWarning):
        ev = ScipyMeshEvaluator(matrix=poisson((5, 5), format="coo"))
    assert ev.get_global_operator(dh).format == "csr"

    with pytest.raises(ValueError):
        ScipyMeshEvaluator(matrix=poisson((4, 4), format="csr")).get_global_operator(dh)


def test_make_mesh_evaluator():
    assert make_mesh_evaluator().backend == "scipy"
    assert isinstance(make_mesh_evaluator("distributed"), DistributedMeshEvaluator)
    ev = make_mesh_evaluator(("scipy", {"assemble": lambda dh: poisson(dh.grid_shape, format="csr") * 2.0}))
    assert ev.get_global_operator(StructuredDoFHandler(1)).diagonal()[0] == 8.0
    with pytest.raises(ValueError):
        make_mesh_evaluator("petsc")


def test_distributed_evaluator(run_ranks):
    def body(comm):
        dh = StructuredDoFHandler(2, comm=comm)
        pattern, A = DistributedMeshEvaluator().evaluate(dh)
        assert isinstance(A, DistributedMatrix)
        return A.to_csr().toarray(), A.row_partition.n_owned

    (A0, n0), (A1, n1) = run_ranks(2, body)
    expected = poisson((5, 5), format="csr").toarray()
    assert_allclose(A0, expected)
    assert_allclose(A1, expected)
    assert (n0, n1) == (10, 15)
