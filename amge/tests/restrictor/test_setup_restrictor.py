"""End-to-end restrictor builds: agglomeration variants, solvers and reporting."""

from __future__ import annotations

import numpy as np
import pytest
from numpy.testing import assert_allclose
from scipy.sparse import SparseEfficiencyWarning

from pyamg.gallery import poisson

from amge import (
    DistributedMeshEvaluator,
    EigensolverNonConvergence,
    RestrictorConfig,
    ScipyMeshEvaluator,
    StructuredDoFHandler,
    setup_restrictor,
    setup_restrictor_from_config,
)


def test_structured_shape_and_stats():
    dh = StructuredDoFHandler(2)
    R = setup_restrictor([2, 2], 2, 1e-14, ScipyMeshEvaluator(), None, dh)
    assert R.shape == (8, 25)
    assert R.stats.n_aggs == 4
    assert R.stats.n_coarse == 8
    assert R.stats.extra["size_max"] == 9
    assert R.stats.extra["mult_max"] == 4
    assert set(R.stats.timings) >= {"agglomerate", "extract", "eigensolve", "weights", "sparsity", "assemble"}


def test_algebraic_agglomeration():
    dh = StructuredDoFHandler(3)
    R = setup_restrictor("standard", 2, 1e-14, ScipyMeshEvaluator(), None, dh)
    assert R.n() == 81
    assert R.m() == 2 * R.stats.n_aggs
    assert R.stats.extra["pou_error"] <= 1e-14


def test_arpack_matches_dense():
    dh = StructuredDoFHandler(3)
    A = poisson(dh.grid_shape, format="csr")
    R_dense = setup_restrictor((2, 2), 1, 1e-14, ScipyMeshEvaluator(), A, dh).to_csr()
    R_arpack = setup_restrictor((2, 2), 1, 1e-14, ScipyMeshEvaluator(), A, dh, eigensolver="arpack").to_csr()
    assert_allclose(abs(R_arpack).toarray(), abs(R_dense).toarray(), rtol=0, atol=1e-8)


def test_dirichlet_local_operator_gives_positive_modes():
    dh = StructuredDoFHandler(2)
    R = setup_restrictor((2, 2), 1, 1e-14, ScipyMeshEvaluator(), None, dh, local_operator="dirichlet")
    full = R.to_csr()
    for c in range(full.shape[0]):
        data = full.data[full.indptr[c] : full.indptr[c + 1]]
        assert np.all(data > 0) or np.all(data < 0)


def test_request_is_capped_by_agglomerate_size():
    dh = StructuredDoFHandler(1)
    R = setup_restrictor((1, 1), 10, 1e-14, ScipyMeshEvaluator(), None, dh)
    assert R.shape == (16, 9)
    assert R.stats.extra["truncated"] == 4


def test_non_csr_operator_warns():
    dh = StructuredDoFHandler(2)
    A = poisson(dh.grid_shape, format="coo")
    with pytest.warns(SparseEfficiencyWarning):
        R = setup_restrictor((2, 2), 1, 1e-14, ScipyMeshEvaluator(), A, dh)
    assert R.shape == (4, 25)


def test_operator_must_match_dofs():
    dh = StructuredDoFHandler(2)
    with pytest.raises(ValueError):
        setup_restrictor((2, 2), 1, 1e-14, ScipyMeshEvaluator(), poisson((4, 4), format="csr"), dh)


def test_eigensolver_failure_names_the_agglomerate():
    def broken(local_matrix, k, tolerance):
        raise EigensolverNonConvergence("stalled")

    dh = StructuredDoFHandler(2)
    with pytest.raises(EigensolverNonConvergence, match="agglomerate 0"):
        setup_restrictor((2, 2), 1, 1e-14, ScipyMeshEvaluator(), None, dh, eigensolver=broken, max_retries=0)


def test_print_info(capsys):
    dh = StructuredDoFHandler(2)
    setup_restrictor((2, 2), 1, 1e-14, ScipyMeshEvaluator(), None, dh, print_info=True)
    out = capsys.readouterr().out
    assert "AMGe" in out
    assert "timing:" in out

    setup_restrictor((2, 2), 1, 1e-14, ScipyMeshEvaluator(), None, dh)
    assert capsys.readouterr().out == ""


def test_from_config():
    params = {
        "agglomeration: nx": 2,
        "agglomeration: ny": 2,
        "eigensolver: number of eigenvectors": 2,
    }
    config = RestrictorConfig.from_params(params, dim=2)
    R = setup_restrictor_from_config(config, ScipyMeshEvaluator(), StructuredDoFHandler(2))
    assert R.shape == (8, 25)


def test_algebraic_agglomeration_two_ranks(run_ranks):
    def body(comm):
        dh = StructuredDoFHandler(3, comm=comm)
        R = setup_restrictor("standard", 1, 1e-14, DistributedMeshEvaluator(), None, dh)
        return R.shape, R.stats.n_aggs, R.row_partition.n_owned, R.stats.extra["pou_error"]

    (shape0, aggs0, own0, err0), (shape1, aggs1, own1, err1) = run_ranks(2, body)
    assert shape0 == shape1 == (aggs0 + aggs1, 81)
    assert (own0, own1) == (aggs0, aggs1)
    assert max(err0, err1) <= 1e-14
