"""Spectral AMGe restrictor internals.

This package contains the modularized building blocks of the restriction
operator setup (`amge.restrictor`).

Modules
-------
types
    Configuration and data containers passed between the setup steps.
partition
    Ownership ranges of distributed index spaces and communicator helpers.
sparsity
    Two-phase sparsity patterns and the restriction sparsity builder.
distributed
    Row-distributed sparse matrix with insert / finalize phases.
agglomeration
    Structured and algebraic (pyamg-based) agglomeration with overlap.
local_ops
    Extraction of dense local operators of the agglomerates.
eigs
    Local eigenproblems, eigensolver selection and bounded retries.
weights
    Partition-of-unity weights and their verification.
assembly
    Insertion of the weighted eigenvectors into the restriction operator.
pipeline
    Orchestration of one restrictor build.
stats
    Timing and diagnostic reporting.
"""

from __future__ import annotations

from . import (
    agglomeration,
    assembly,
    distributed,
    eigs,
    local_ops,
    partition,
    pipeline,
    sparsity,
    stats,
    types,
    weights,
)

__all__ = [
    "types",
    "partition",
    "sparsity",
    "distributed",
    "agglomeration",
    "local_ops",
    "eigs",
    "weights",
    "assembly",
    "pipeline",
    "stats",
]
