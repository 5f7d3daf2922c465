"""Spectral AMGe coarse spaces: distributed restriction operators."""
from . import core, errors, evaluators, mesh, restrictor
from .core.distributed import DistributedMatrix
from .core.partition import Partition
from .core.sparsity import SparsityPattern
from .core.types import RestrictorConfig
from .core.weights import check_partition_of_unity, compute_overlap_weights
from .errors import (EigensolverNonConvergence, RestrictorError,
                     StructuralViolation, WeightInvariantViolation)
from .evaluators import (DistributedMeshEvaluator, MeshEvaluator,
                         ScipyMeshEvaluator, make_mesh_evaluator)
from .mesh import StructuredDoFHandler
from .restrictor import (compute_restriction_sparse_matrix, setup_restrictor,
                         setup_restrictor_from_config)

__all__ = [
    'core',
    'errors',
    'evaluators',
    'mesh',
    'restrictor',
    'DistributedMatrix',
    'Partition',
    'SparsityPattern',
    'RestrictorConfig',
    'check_partition_of_unity',
    'compute_overlap_weights',
    'EigensolverNonConvergence',
    'RestrictorError',
    'StructuralViolation',
    'WeightInvariantViolation',
    'DistributedMeshEvaluator',
    'MeshEvaluator',
    'ScipyMeshEvaluator',
    'make_mesh_evaluator',
    'StructuredDoFHandler',
    'compute_restriction_sparse_matrix',
    'setup_restrictor',
    'setup_restrictor_from_config',
]
