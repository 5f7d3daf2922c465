"""Weight sum of the spectral restriction operator on the Laplacian.

On the unit square refined four times (17 x 17 vertex DOFs) with 2 x 2 cell
agglomerates, every Neumann-compensated local Laplacian has the constant vector
as its lowest eigenvector, i.e. all nine entries equal 1/3 in absolute value.
After scaling the restriction operator by 3, the absolute column sums are the
partition-of-unity weight sums, which equal one for every fine DOF.
"""

from __future__ import annotations

import numpy as np
from numpy.testing import assert_allclose

from amge import (
    DistributedMeshEvaluator,
    ScipyMeshEvaluator,
    StructuredDoFHandler,
    setup_restrictor,
)

N_DOFS = 17 * 17
N_AGGLOMERATES = 8 * 8


def test_weight_sum():
    dh = StructuredDoFHandler(4)
    R = setup_restrictor((2, 2), 1, 1e-14, ScipyMeshEvaluator(), None, dh)
    assert (R.m(), R.n()) == (N_AGGLOMERATES, N_DOFS)

    R *= 3.0
    for i in range(N_DOFS):
        e = np.zeros(N_DOFS)
        e[i] = 1.0
        assert abs(np.sum(np.abs(R.vmult(e))) - 1.0) < 1e-14

    assert R.stats.extra["pou_error"] <= 1e-14
    assert R.stats.extra["nev_max"] == 1
    assert abs(R.stats.extra["eig_max"]) < 1e-12


def test_weight_sum_two_ranks(run_ranks):
    def body(comm):
        dh = StructuredDoFHandler(4, comm=comm)
        R = setup_restrictor((2, 2), 1, 1e-14, DistributedMeshEvaluator(), None, dh)
        R *= 3.0

        col_sums = np.zeros(N_DOFS)
        owned = dh.partition
        for i in range(N_DOFS):
            e = np.zeros(owned.n_owned)
            if owned.is_owned([i])[0]:
                e[i - owned.start] = 1.0
            col_sums[i] = np.sum(np.abs(R.vmult(e)))
        return R.m(), R.row_partition.n_owned, col_sums, abs(R.to_csr()).sum(axis=0)

    results = run_ranks(2, body)
    assert [r[0] for r in results] == [N_AGGLOMERATES] * 2
    assert [r[1] for r in results] == [32, 32]

    col_sums = results[0][2] + results[1][2]
    assert_allclose(col_sums, 1.0, rtol=0, atol=1e-14)
    for r in results:
        assert_allclose(r[3], 1.0, rtol=0, atol=1e-14)
