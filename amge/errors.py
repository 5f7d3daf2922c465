"""Exceptions raised while building an AMGe restriction operator."""

from __future__ import annotations


class RestrictorError(Exception):
    """Base class for restrictor construction failures."""


class StructuralViolation(RestrictorError, ValueError):
    """Structure of the restriction operator is inconsistent.

    Raised when a value is inserted at a coordinate that was not declared in the
    sparsity pattern, when a patch lists the same fine DOF twice, or when a
    pattern or matrix is used in the wrong phase (e.g. insertion after
    finalization). Always fatal for the build.
    """


class WeightInvariantViolation(RestrictorError, ValueError):
    """Overlap weights do not form a partition of unity."""


class EigensolverNonConvergence(RestrictorError, RuntimeError):
    """The local eigensolver failed on one agglomerate.

    Parameters
    ----------
    message
        Human readable description.
    agglomerate
        Id of the failing agglomerate, if known.
    n_requested
        Number of eigenpairs requested in the failing attempt.
    tolerance
        Tolerance of the failing attempt.
    """

    def __init__(self, message: str, *, agglomerate=None, n_requested=None, tolerance=None):
        super().__init__(message)
        self.agglomerate = agglomerate
        self.n_requested = n_requested
        self.tolerance = tolerance

    def __str__(self) -> str:
        msg = super().__str__()
        if self.agglomerate is not None:
            msg = f"agglomerate {self.agglomerate}: {msg}"
        return msg
