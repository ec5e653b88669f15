"""Constraints between optimizer dof vectors and atomistic configurations."""

from torch_cellrelax import cell, constraints, errors, indices, io
from torch_cellrelax.constraints import (
    CellConstraint,
    ConstraintConfig,
    DofConstraint,
    FixedCell,
    VariableCell,
    build_constraint,
)
from torch_cellrelax.errors import (
    ConfigurationError,
    ConflictingOptionWarning,
    DimensionMismatchError,
    SingularCellError,
)
from torch_cellrelax.indices import resolve_free_indices
from torch_cellrelax.state import ParticleSystem, RelaxState


__version__ = "0.1.0"
