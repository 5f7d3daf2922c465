"""Structured and algebraic agglomeration."""

from __future__ import annotations

import numpy as np
import pytest
from numpy.testing import assert_array_equal
from scipy.sparse import csr_array

from pyamg.gallery import poisson

from amge.core.agglomeration import (
    _amge_algebraic_agglomerates,
    _amge_build_agglomerates,
    _amge_structured_agglomerates,
    _fill_unaggregated_by_neighbors,
)
from amge.core.partition import Partition
from amge.core.weights import compute_overlap_weights
from amge.mesh import StructuredDoFHandler


def test_structured_boxes_overlap_on_their_boundaries():
    dh = StructuredDoFHandler(2)
    aggs = _amge_structured_agglomerates(dof_handler=dh, agglomerate_dim=(2, 2))

    assert aggs.ids == [0, 1, 2, 3]
    assert_array_equal(aggs.sizes, [9, 9, 9, 9])
    assert_array_equal(aggs.dofs[0], [0, 1, 2, 5, 6, 7, 10, 11, 12])
    assert_array_equal(aggs.relevant_dofs(), np.arange(25))

    _, mult = compute_overlap_weights(aggs.dofs, n_dofs=25)
    assert mult[12] == 4  # center vertex
    assert mult[2] == 2  # shared edge vertex
    assert mult[0] == 1  # corner


def test_structured_boxes_are_truncated_at_the_boundary():
    dh = StructuredDoFHandler(2)
    aggs = _amge_structured_agglomerates(dof_handler=dh, agglomerate_dim=(3, 3))
    assert_array_equal(aggs.sizes, [16, 8, 8, 4])
    assert_array_equal(aggs.relevant_dofs(), np.arange(25))


def test_structured_three_dimensional():
    dh = StructuredDoFHandler(2, dim=3)
    aggs = _amge_structured_agglomerates(dof_handler=dh, agglomerate_dim=(2, 2, 4))
    assert len(aggs) == 4
    assert_array_equal(aggs.sizes, [45] * 4)


def test_structured_extents_must_match_dimension():
    dh = StructuredDoFHandler(2)
    with pytest.raises(ValueError):
        _amge_structured_agglomerates(dof_handler=dh, agglomerate_dim=(2, 2, 2))
    with pytest.raises(ValueError):
        _amge_structured_agglomerates(dof_handler=dh, agglomerate_dim=(2, 0))


def test_structured_agglomerates_follow_the_slabs(run_ranks):
    def body(comm):
        dh = StructuredDoFHandler(2, comm=comm)
        aggs = _amge_structured_agglomerates(dof_handler=dh, agglomerate_dim=(2, 2))
        return aggs.ids, aggs.relevant_dofs()

    (ids0, rel0), (ids1, rel1) = run_ranks(2, body)
    assert ids0 == [0, 1]
    assert ids1 == [2, 3]
    assert_array_equal(rel0, np.arange(15))  # includes the ghost layer y = 2
    assert_array_equal(rel1, np.arange(10, 25))


def test_fill_assigns_to_neighbor_aggregate():
    Adj = csr_array(np.array([[2.0, -1.0, 0.0], [-1.0, 2.0, -1.0], [0.0, -1.0, 2.0]]))
    AggOp = csr_array((np.ones(2), (np.array([0, 1]), np.array([0, 0]))), shape=(3, 1))
    filled = _fill_unaggregated_by_neighbors(Adj, AggOp)
    assert filled.shape == (3, 1)
    assert_array_equal(filled.toarray().ravel(), [1, 1, 1])


def test_fill_makes_singletons_for_isolated_nodes():
    Adj = csr_array(np.array([[2.0, -1.0, 0.0], [-1.0, 2.0, 0.0], [0.0, 0.0, 2.0]]))
    AggOp = csr_array((np.ones(2), (np.array([0, 1]), np.array([0, 0]))), shape=(3, 1))
    filled = _fill_unaggregated_by_neighbors(Adj, AggOp)
    assert filled.shape == (3, 2)
    assert filled[2, 1] == 1


def test_fill_requires_csr():
    with pytest.raises(TypeError):
        _fill_unaggregated_by_neighbors(np.eye(2), csr_array(np.eye(2)))


@pytest.mark.parametrize("method", ["standard", "naive", ("standard", {"strength": ("symmetric", {"theta": 0.0})})])
def test_algebraic_agglomerates_cover_all_dofs(method):
    A = csr_array(poisson((10, 10), format="csr"))
    aggs = _amge_algebraic_agglomerates(
        global_operator=A, partition=Partition.serial(100), aggregate_spec=method
    )
    assert_array_equal(aggs.relevant_dofs(), np.arange(100))
    assert np.sum(aggs.sizes) > 100  # one-ring overlap
    for dofs in aggs.dofs:
        assert_array_equal(dofs, np.unique(dofs))


def test_algebraic_agglomerates_without_overlap_partition_the_dofs():
    A = csr_array(poisson((10, 10), format="csr"))
    aggs = _amge_algebraic_agglomerates(
        global_operator=A, partition=Partition.serial(100), aggregate_spec=("standard", {"overlap": False})
    )
    assert np.sum(aggs.sizes) == 100
    assert_array_equal(np.sort(np.concatenate(aggs.dofs)), np.arange(100))


def test_unknown_aggregation_method():
    A = csr_array(poisson((4, 4), format="csr"))
    with pytest.raises(ValueError):
        _amge_algebraic_agglomerates(global_operator=A, partition=Partition.serial(16), aggregate_spec="metis")


def test_dispatch_on_parameter_form():
    dh = StructuredDoFHandler(2)
    A = csr_array(poisson(dh.grid_shape, format="csr"))
    structured = _amge_build_agglomerates(agglomeration_params=(2, 2), dof_handler=dh, global_operator=A)
    algebraic = _amge_build_agglomerates(agglomeration_params="standard", dof_handler=dh, global_operator=A)
    assert len(structured) == 4
    assert_array_equal(algebraic.relevant_dofs(), np.arange(25))
