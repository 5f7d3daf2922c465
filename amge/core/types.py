"""Typed data containers used throughout the AMGe restrictor setup.

This module defines small dataclasses that group the state of one restrictor
build into coherent parcels, so that the pipeline steps pass a handful of
objects rather than many parallel lists.

Containers
----------
RestrictorConfig
    Frozen configuration of one restrictor build (agglomeration, eigensolver,
    weighting and reporting options).

Agglomerates
    Per-agglomerate index sets on this rank:
      - ids[i]  : opaque agglomerate id (unique on this rank)
      - dofs[i] : sorted global fine DOFs of agglomerate i (may overlap)

LocalBlocks
    Flattened dense blocks aligned with the agglomerate DOF ordering:
      - subdomain/subdomain_ptr     : concatenated agglomerate DOFs + pointers
      - submatrices/submatrices_ptr : concatenated A[dofs_i, dofs_i] blocks

LocalPatchData
    Per-agglomerate result of the local eigensolve: eigenvalues, eigenvectors,
    overlap weights and the coarse indices assigned to the eigenvectors.

EigenInfo
    Per-agglomerate eigen-selection metadata (requested vs kept counts,
    retries).

Invariants
----------
- All index arrays are stored as int64 numpy arrays.
- dofs[i] is unique-sorted (as constructed by np.unique).
- LocalPatchData.eigenvectors has shape (len(dofs), n_kept).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Sequence

import numpy as np
from numpy.typing import NDArray

from scipy.sparse import sparray, spmatrix

SparseLike = spmatrix | sparray
MethodSpec = str | tuple[str, dict[str, Any]] | None
EigensolverSpec = MethodSpec | Callable[..., tuple[np.ndarray, np.ndarray]]

IndexArray = NDArray[np.int64]

_LOCAL_OPERATORS = ("neumann", "dirichlet")


def _unpack_arg(v: Any) -> tuple[Any, dict[str, Any]]:
    """Normalize a pyamg-style method spec into (name, kwargs).

    Parameters
    ----------
    v
        Either a string name like "standard", a pair (name, kwargs) like
        ("standard", {"strength": "symmetric"}), or None.

    Returns
    -------
    name, kwargs
        `name` is the method identifier, `kwargs` is a (copied) dict of keyword
        arguments.
    """
    if isinstance(v, tuple):
        return v[0], dict(v[1])
    return v, {}


def _parse_bool(value: Any, key: str) -> bool:
    """Read a boolean parameter given as a bool, an int or a string like "false"."""
    if isinstance(value, (bool, np.bool_)):
        return bool(value)
    if isinstance(value, (int, np.integer)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        token = value.strip().lower()
        if token in ("true", "yes", "on", "1"):
            return True
        if token in ("false", "no", "off", "0"):
            return False
    raise ValueError(f"{key!r} must be a boolean, got {value!r}")


@dataclass(slots=True, frozen=True)
class RestrictorConfig:
    """Configuration parameters for one restrictor build.

    Attributes
    ----------
    agglomerate_dim : tuple[int, ...] | None
        Number of cells per agglomerate along each axis (structured
        agglomeration). Mutually exclusive with `agglomerate`.
    agglomerate : str | tuple[str, dict] | None
        pyamg aggregation spec used for algebraic agglomeration.
    n_eigenvectors : int
        Number of coarse basis vectors requested per agglomerate.
    tolerance : float
        Eigensolver convergence tolerance.
    eigensolver : str | tuple[str, dict] | callable
        "dense", "arpack", (name, kwargs) or a callable
        ``solve(local_matrix, k, tolerance) -> (eigenvalues, eigenvectors)``.
    local_operator : str
        "neumann" (diagonal-compensated principal block) or "dirichlet"
        (plain principal block).
    max_retries : int
        Bounded number of relaxed re-solves after a non-convergence.
    check_weights : bool
        Verify the partition of unity before assembly.
    print_info : bool
        Print a setup summary on rank 0 via `amge.core.stats`.
    """

    agglomerate_dim: tuple[int, ...] | None = None
    agglomerate: MethodSpec = None
    n_eigenvectors: int = 1
    tolerance: float = 1e-14
    eigensolver: EigensolverSpec = "dense"
    local_operator: str = "neumann"
    max_retries: int = 2
    check_weights: bool = True
    print_info: bool = False

    def __post_init__(self) -> None:
        if (self.agglomerate_dim is None) == (self.agglomerate is None):
            raise ValueError("Exactly one of agglomerate_dim and agglomerate must be given")
        if self.agglomerate_dim is not None and any(int(n) < 1 for n in self.agglomerate_dim):
            raise ValueError(f"Agglomerate extents must be positive, got {self.agglomerate_dim}")
        if int(self.n_eigenvectors) < 1:
            raise ValueError("n_eigenvectors must be at least 1")
        if not self.tolerance > 0.0:
            raise ValueError("tolerance must be positive")
        if self.local_operator not in _LOCAL_OPERATORS:
            raise ValueError(f"Unrecognized local operator: {self.local_operator!r}")
        if int(self.max_retries) < 0:
            raise ValueError("max_retries must be nonnegative")

    @property
    def agglomeration_params(self) -> Any:
        """The PARTITION argument: per-axis extents or an aggregation spec."""
        if self.agglomerate_dim is not None:
            return self.agglomerate_dim
        return self.agglomerate

    @classmethod
    def from_params(cls, params: Mapping[str, Any], dim: int) -> "RestrictorConfig":
        """Build a configuration from flat ``"section: key"`` parameters.

        Recognized keys are ``agglomeration: nx|ny|nz`` (structured extents),
        ``agglomeration: method`` (algebraic spec, used when no extents are
        given), ``eigensolver: number of eigenvectors``,
        ``eigensolver: tolerance``, ``eigensolver: type``,
        ``eigensolver: max retries``, ``restrictor: local operator``,
        ``restrictor: check weights`` and ``restrictor: print info``.
        """
        axes = ("nx", "ny", "nz")[:dim]
        extents = [params.get(f"agglomeration: {a}") for a in axes]
        if all(e is None for e in extents):
            agglomerate_dim = None
            agglomerate = params.get("agglomeration: method", "standard")
        elif any(e is None for e in extents):
            missing = [a for a, e in zip(axes, extents) if e is None]
            raise ValueError(f"Missing agglomeration extents: {missing}")
        else:
            agglomerate_dim = tuple(int(e) for e in extents)
            agglomerate = None

        return cls(
            agglomerate_dim=agglomerate_dim,
            agglomerate=agglomerate,
            n_eigenvectors=int(params.get("eigensolver: number of eigenvectors", 1)),
            tolerance=float(params.get("eigensolver: tolerance", 1e-14)),
            eigensolver=params.get("eigensolver: type", "dense"),
            local_operator=str(params.get("restrictor: local operator", "neumann")),
            max_retries=int(params.get("eigensolver: max retries", 2)),
            check_weights=_parse_bool(params.get("restrictor: check weights", True), "restrictor: check weights"),
            print_info=_parse_bool(params.get("restrictor: print info", False), "restrictor: print info"),
        )


@dataclass(slots=True)
class Agglomerates:
    """Agglomerate ids and (possibly overlapping) DOF sets owned by this rank."""

    ids: list[int]
    dofs: list[IndexArray]

    def __len__(self) -> int:
        return len(self.dofs)

    @property
    def sizes(self) -> IndexArray:
        """Number of fine DOFs per agglomerate."""
        return np.array([d.size for d in self.dofs], dtype=np.int64)

    def relevant_dofs(self) -> IndexArray:
        """Sorted union of all agglomerate DOFs (owned and ghost)."""
        if not self.dofs:
            return np.zeros(0, dtype=np.int64)
        return np.unique(np.concatenate(self.dofs))


@dataclass(slots=True)
class LocalBlocks:
    """Flattened storage for per-agglomerate dense blocks.

    The i-th agglomerate occupies a segment in each flattened array. Segment
    bounds are given by the pointer arrays:

      - subdomain[ subdomain_ptr[i] : subdomain_ptr[i+1] ]       = dofs_i
      - submatrices[ submatrices_ptr[i] : submatrices_ptr[i+1] ] = vec(A_i)

    where vec(.) is the row-major flattening of a square dense block.
    """

    subdomain: Optional[NDArray[np.int32]] = None
    subdomain_ptr: Optional[NDArray[np.int32]] = None
    submatrices: Optional[np.ndarray] = None
    submatrices_ptr: Optional[NDArray[np.int32]] = None

    def block(self, i: int) -> np.ndarray:
        """Return the dense block of agglomerate i as a square array (a view)."""
        p0 = self.submatrices_ptr[i]
        p1 = self.submatrices_ptr[i + 1]
        n = int(self.subdomain_ptr[i + 1] - self.subdomain_ptr[i])
        return self.submatrices[p0:p1].reshape((n, n))


@dataclass(slots=True)
class LocalPatchData:
    """Local coarse-basis data of one agglomerate.

    Attributes
    ----------
    agglomerate
        Opaque agglomerate id.
    dofs
        Global fine DOFs of the agglomerate (the patch row of dof_indices_maps).
    eigenvalues
        Kept eigenvalues, shape (n_kept,).
    eigenvectors
        Kept eigenvectors, shape (len(dofs), n_kept).
    weights
        Partition-of-unity weights aligned with `dofs` (filled in the WEIGHT step).
    coarse_indices
        Global coarse row index of every kept eigenvector (filled in BUILD-MAPS).
    """

    agglomerate: int
    dofs: IndexArray
    eigenvalues: np.ndarray
    eigenvectors: np.ndarray
    weights: Optional[np.ndarray] = None
    coarse_indices: Optional[IndexArray] = None

    @property
    def n_kept(self) -> int:
        return int(self.eigenvectors.shape[1])


@dataclass(slots=True)
class EigenInfo:
    """Eigen-selection metadata for one restrictor build.

    Attributes
    ----------
    n_requested
        int array, number of eigenvectors requested per agglomerate.
    nev
        int array, number of eigenvectors actually kept per agglomerate.
    retries
        int array, number of relaxed re-solves per agglomerate.
    eigenvalues
        All kept eigenvalues (for reporting).
    """

    n_requested: IndexArray
    nev: IndexArray
    retries: IndexArray
    eigenvalues: list[float] = field(default_factory=list)

    @classmethod
    def allocate(cls, n_aggs: int) -> "EigenInfo":
        """Allocate an EigenInfo container for n_aggs agglomerates with zeroed counts."""
        return cls(
            n_requested=np.zeros(n_aggs, dtype=np.int64),
            nev=np.zeros(n_aggs, dtype=np.int64),
            retries=np.zeros(n_aggs, dtype=np.int64),
        )


def _flatten_patches(
    patches: Sequence[LocalPatchData],
) -> tuple[list[np.ndarray], list[np.ndarray], list[IndexArray], list[int]]:
    """Convert patch records into the flat restriction inputs.

    Returns
    -------
    eigenvectors, diag_elements, dof_indices_maps, n_local_eigenvectors
        The arguments of `compute_restriction_sparse_matrix`: one eigenvector per
        kept basis vector (consecutive per patch), and per patch its weights, its
        fine DOFs and its kept count.
    """
    eigenvectors: list[np.ndarray] = []
    diag_elements: list[np.ndarray] = []
    dof_indices_maps: list[IndexArray] = []
    n_local_eigenvectors: list[int] = []
    for patch in patches:
        eigenvectors.extend(patch.eigenvectors[:, j] for j in range(patch.n_kept))
        diag_elements.append(patch.weights)
        dof_indices_maps.append(patch.dofs)
        n_local_eigenvectors.append(patch.n_kept)
    return eigenvectors, diag_elements, dof_indices_maps, n_local_eigenvectors
