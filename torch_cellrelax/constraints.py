"""Constraints mapping a particle system to an optimizer's dof vector.

An optimizer only ever sees a flat vector of degrees of freedom (dofs), its
gradient, and an energy. A constraint translates between that vector and the
positions (and, for ``VariableCell``, the cell deformation) of a particle
system, and turns forces and stress into the gradient.

Two constraints are provided:

* ``FixedCell``: a subset of atomic coordinates is free, the cell is fixed.
* ``VariableCell``: the free coordinates plus the nine entries of the cell
  deformation, with positions coupled affinely to a reference configuration.
"""

from __future__ import annotations

import inspect
import logging
import warnings
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Self

import torch

from torch_cellrelax.cell import cell_volume, cell_volume_derivative, checked_inverse
from torch_cellrelax.errors import (
    ConfigurationError,
    ConflictingOptionWarning,
    DimensionMismatchError,
)
from torch_cellrelax.indices import IndexSpec, check_exclusive, resolve_free_indices


if TYPE_CHECKING:
    from torch_cellrelax.state import ParticleSystem


logger = logging.getLogger(__name__)

N_CELL_DOFS = 9


def insert_free(
    flat: torch.Tensor, values: torch.Tensor, free_idx: torch.Tensor
) -> torch.Tensor:
    """Write ``values`` into the free slots of ``flat`` in-place and return it."""
    flat[free_idx] = values
    return flat


def zeros_free(n: int, values: torch.Tensor, free_idx: torch.Tensor) -> torch.Tensor:
    """Length ``n`` vector of zeros with ``values`` at the free slots."""
    flat = torch.zeros(n, dtype=values.dtype, device=values.device)
    return insert_free(flat, values, free_idx)


def split_dofs(dofs: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
    """Split a variable-cell dof vector into its position and cell blocks.

    Returns:
        (position block, 3x3 deformation)
    """
    return dofs[:-N_CELL_DOFS], dofs[-N_CELL_DOFS:].reshape(3, 3)


def _as_free_indices(free_idx: torch.Tensor | Sequence[int]) -> torch.Tensor:
    free_idx = torch.atleast_1d(torch.as_tensor(free_idx))
    if free_idx.numel() == 0:
        return torch.zeros(0, dtype=torch.long)
    if free_idx.ndim != 1:
        raise ConfigurationError(
            "free_idx has wrong number of dimensions. "
            f"Got {free_idx.ndim}, expected ndim <= 1"
        )
    if torch.is_floating_point(free_idx) or free_idx.dtype == torch.bool:
        raise ConfigurationError(
            f"free_idx must be integer coordinate indices, not dtype={free_idx.dtype}"
        )
    free_idx = free_idx.long()
    if len(free_idx) != len(torch.unique(free_idx)):
        raise ConfigurationError("Duplicate coordinate indices found in free_idx.")
    if free_idx.min() < 0:
        raise ConfigurationError("free_idx must not contain negative indices.")
    return free_idx


def _caller_stacklevel() -> int:
    """``stacklevel`` for a warning raised by the function calling this one.

    Points at the first frame outside this module, so the warning is reported
    at the user's call whether it came through ``__init__``, ``from_state``
    or ``build_constraint``.
    """
    frame = inspect.currentframe().f_back
    level = 1
    while frame is not None and frame.f_globals.get("__name__") == __name__:
        frame = frame.f_back
        level += 1
    return level


def _check_in_bounds(free_idx: torch.Tensor, n_atoms: int, name: str) -> None:
    if len(free_idx) > 0 and free_idx.max() >= 3 * n_atoms:
        raise DimensionMismatchError(
            f"{name} has coordinate indices up to {free_idx.max()}, "
            f"but the state only has {3 * n_atoms} coordinates"
        )


class DofConstraint(ABC):
    """Interface shared by ``FixedCell`` and ``VariableCell``.

    Constraints are created once per relaxation and not mutated afterwards.
    They hold no reference to the particle system; every operation takes the
    system as its first argument.
    """

    free_idx: torch.Tensor

    def get_indices(self) -> torch.Tensor:
        """Get the free coordinate indices.

        Returns:
            Copy of the free coordinate indices
        """
        return self.free_idx.clone()

    @property
    @abstractmethod
    def n_dofs(self) -> int:
        """Length of the dof vector."""

    @abstractmethod
    def dofs(self, state: ParticleSystem) -> torch.Tensor:
        """Extract the dof vector from the system.

        The returned tensor never shares memory with the system.

        Args:
            state: Particle system

        Returns:
            1-D dof vector of length ``n_dofs``
        """

    @abstractmethod
    def set_dofs(self, state: ParticleSystem, dofs: torch.Tensor) -> ParticleSystem:
        """Write a dof vector into the system.

        Args:
            state: Particle system, modified in-place
            dofs: 1-D dof vector of length ``n_dofs``

        Returns:
            The modified system
        """

    @abstractmethod
    def gradient(self, state: ParticleSystem) -> torch.Tensor:
        """Gradient of ``energy`` with respect to the dofs.

        Args:
            state: Particle system

        Returns:
            1-D gradient of length ``n_dofs``
        """

    @abstractmethod
    def energy(self, state: ParticleSystem) -> torch.Tensor:
        """Objective minimized by the optimizer.

        Args:
            state: Particle system

        Returns:
            Scalar energy tensor
        """

    @abstractmethod
    def project_preconditioner(self, matrix: torch.Tensor) -> torch.Tensor:
        """Restrict a full-coordinate preconditioner to the dof space."""

    def project(self, state: ParticleSystem) -> ParticleSystem:
        """Project the system onto the constraint manifold.

        Both constraints are satisfied by construction of the dofs, so this
        returns the system unchanged.
        """
        return state

    def _as_dofs(self, dofs: torch.Tensor, like: torch.Tensor) -> torch.Tensor:
        dofs = torch.as_tensor(dofs, dtype=like.dtype, device=like.device)
        if dofs.ndim != 1 or len(dofs) != self.n_dofs:
            raise DimensionMismatchError(
                f"{type(self).__name__} expects a dof vector of length {self.n_dofs}, "
                f"got shape {tuple(dofs.shape)}"
            )
        return dofs


class FixedCell(DofConstraint):
    """Only a subset of atomic coordinates is free; the cell is fixed.

    The dofs are the free entries of the flattened positions.

    Examples:
        Clamp the first atom of a system:
        >>> constraint = FixedCell.from_state(state, clamp=[0])

        Fix only the z coordinate of every atom:
        >>> mask = torch.ones(state.atom_count(), 3, dtype=torch.bool)
        >>> mask[:, 2] = False
        >>> constraint = FixedCell.from_state(state, mask=mask)
    """

    def __init__(self, free_idx: torch.Tensor | Sequence[int]) -> None:
        """Initialize from resolved free coordinate indices.

        Args:
            free_idx: Free coordinate indices into the flattened positions

        Raises:
            ConfigurationError: If the indices are duplicated, negative, or
                not integers
        """
        self.free_idx = _as_free_indices(free_idx)

    @classmethod
    def from_state(
        cls,
        state: ParticleSystem,
        *,
        free: IndexSpec | None = None,
        clamp: IndexSpec | None = None,
        mask: torch.Tensor | None = None,
    ) -> Self:
        """Create from a particle system and at most one index specification.

        Args:
            state: Particle system
            free: Free atom indices (not coordinate indices)
            clamp: Clamped atom indices (not coordinate indices)
            mask: Boolean mask of shape (n_atoms, 3), True for free coordinates
        """
        free_idx = resolve_free_indices(state.atom_count(), free, clamp, mask)
        logger.debug("FixedCell with %d free coordinates", len(free_idx))
        return cls(free_idx)

    @property
    def n_dofs(self) -> int:
        """Number of free coordinates."""
        return len(self.free_idx)

    def dofs(self, state: ParticleSystem) -> torch.Tensor:
        """Free entries of the flattened positions, as a new tensor."""
        positions = state.get_positions()
        _check_in_bounds(self.free_idx, len(positions), "FixedCell")
        free_idx = self.free_idx.to(positions.device)
        return positions.reshape(-1).index_select(0, free_idx)

    def positions_from_dofs(
        self, state: ParticleSystem, dofs: torch.Tensor
    ) -> torch.Tensor:
        """Positions ``set_dofs`` would commit, without modifying the system.

        Args:
            state: Particle system, used for the clamped coordinates
            dofs: Dof vector of length ``n_dofs``

        Returns:
            Positions, shape (n_atoms, 3)
        """
        positions = state.get_positions()
        _check_in_bounds(self.free_idx, len(positions), "FixedCell")
        dofs = self._as_dofs(dofs, positions)
        flat = insert_free(
            positions.reshape(-1).clone(), dofs, self.free_idx.to(positions.device)
        )
        return flat.reshape(positions.shape)

    def set_dofs(self, state: ParticleSystem, dofs: torch.Tensor) -> ParticleSystem:
        """Scatter the dofs into the free coordinates and commit the positions."""
        state.set_positions(self.positions_from_dofs(state, dofs))
        return state

    def gradient(self, state: ParticleSystem) -> torch.Tensor:
        """Negative forces at the free coordinates."""
        forces = state.get_forces()
        free_idx = self.free_idx.to(forces.device)
        return -forces.reshape(-1).index_select(0, free_idx)

    def energy(self, state: ParticleSystem) -> torch.Tensor:
        """Potential energy of the system, unchanged."""
        return state.get_potential_energy()

    def project_preconditioner(self, matrix: torch.Tensor) -> torch.Tensor:
        """Restrict rows and columns of a (3N, 3N) matrix to the free coordinates.

        Works for dense and sparse COO tensors.

        Args:
            matrix: Preconditioner in full coordinate space

        Returns:
            Matrix of shape (n_dofs, n_dofs)
        """
        if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
            raise DimensionMismatchError(
                f"preconditioner must be a square matrix, got {tuple(matrix.shape)}"
            )
        if matrix.shape[0] % 3 != 0:
            raise DimensionMismatchError(
                f"preconditioner size must be a multiple of 3, got {matrix.shape[0]}"
            )
        _check_in_bounds(self.free_idx, matrix.shape[0] // 3, "FixedCell")
        free_idx = self.free_idx.to(matrix.device)
        return matrix.index_select(0, free_idx).index_select(1, free_idx)

    def __repr__(self) -> str:
        """String representation of the constraint."""
        if len(self.free_idx) <= 10:
            indices_str = self.free_idx.tolist()
        else:
            indices_str = f"{self.free_idx[:5].tolist()}...{self.free_idx[-5:].tolist()}"
        return f"FixedCell(free_idx={indices_str})"


class VariableCell(DofConstraint):
    """Free coordinates plus the cell deformation, relative to a reference.

    The reference positions ``X0`` and deformation ``F0`` are stored on
    construction. A dof vector encodes a pair ``(U, F)``: the current
    deformation is ``F`` and the positions are

        X[i] = A @ X0[i] + U[i],    A = F @ inv(F0)

    with ``U[i]`` zero on clamped coordinates. Clamped atoms therefore still
    move with the cell.

    The dof vector is the free entries of the flattened ``U`` followed by the
    nine entries of ``F`` in row-major order.

    The energy is ``E - pressure * det(F)``. ``fix_volume`` is stored but not
    enforced; when it is set, the pressure is ignored.

    Examples:
        >>> constraint = VariableCell.from_state(state, clamp=[0], pressure=0.1)
        >>> x = constraint.dofs(state)
        >>> constraint.set_dofs(state, x - 0.01 * constraint.gradient(state))
    """

    def __init__(
        self,
        free_idx: torch.Tensor | Sequence[int],
        reference_positions: torch.Tensor,
        reference_deformation: torch.Tensor,
        *,
        pressure: float = 0.0,
        fix_volume: bool = False,
    ) -> None:
        """Initialize from resolved free indices and a reference configuration.

        Args:
            free_idx: Free coordinate indices into the flattened positions
            reference_positions: Reference positions X0, shape (n_atoms, 3)
            reference_deformation: Reference deformation F0, shape (3, 3)
            pressure: Applied hydrostatic pressure
            fix_volume: Store a fixed-volume request (not enforced)

        Raises:
            ConfigurationError: If the free indices are invalid
            DimensionMismatchError: If the reference shapes are wrong or the
                free indices exceed the number of coordinates
            SingularCellError: If F0 is not invertible

        Warns:
            ConflictingOptionWarning: If a nonzero pressure is given together
                with ``fix_volume``
        """
        free_idx = _as_free_indices(free_idx)
        reference_positions = torch.as_tensor(reference_positions)
        if reference_positions.ndim != 2 or reference_positions.shape[1] != 3:
            raise DimensionMismatchError(
                "reference_positions must have shape (n_atoms, 3), got "
                f"{tuple(reference_positions.shape)}"
            )
        _check_in_bounds(free_idx, len(reference_positions), "VariableCell")
        reference_deformation = torch.as_tensor(
            reference_deformation,
            dtype=reference_positions.dtype,
            device=reference_positions.device,
        )
        inverse = checked_inverse(reference_deformation, "reference deformation")

        if pressure != 0.0 and fix_volume:
            warnings.warn(
                f"pressure={pressure} is ignored when fix_volume=True",
                ConflictingOptionWarning,
                stacklevel=_caller_stacklevel(),
            )

        self.free_idx = free_idx.to(reference_positions.device)
        self.X0 = reference_positions.clone()
        self.F0 = reference_deformation.clone()
        self.F0_inv = inverse
        self.pressure = float(pressure)
        self.fix_volume = fix_volume
        self.volume = cell_volume(self.F0).item()

    @classmethod
    def from_state(
        cls,
        state: ParticleSystem,
        *,
        free: IndexSpec | None = None,
        clamp: IndexSpec | None = None,
        mask: torch.Tensor | None = None,
        pressure: float = 0.0,
        fix_volume: bool = False,
    ) -> Self:
        """Create from a particle system, using its configuration as reference.

        Args:
            state: Particle system whose positions and deformation become the
                reference
            free: Free atom indices (not coordinate indices)
            clamp: Clamped atom indices (not coordinate indices)
            mask: Boolean mask of shape (n_atoms, 3), True for free coordinates
            pressure: Applied hydrostatic pressure
            fix_volume: Store a fixed-volume request (not enforced)
        """
        free_idx = resolve_free_indices(state.atom_count(), free, clamp, mask)
        constraint = cls(
            free_idx,
            state.get_positions(),
            state.get_cell_deformation(),
            pressure=pressure,
            fix_volume=fix_volume,
        )
        logger.debug(
            "VariableCell with %d free coordinates, pressure=%s, fix_volume=%s",
            len(free_idx),
            pressure,
            fix_volume,
        )
        return constraint

    @property
    def n_dofs(self) -> int:
        """Number of free coordinates plus the nine cell dofs."""
        return len(self.free_idx) + N_CELL_DOFS

    @property
    def effective_pressure(self) -> float:
        """Pressure entering the energy; zero when ``fix_volume`` is set."""
        return 0.0 if self.fix_volume else self.pressure

    def _check_atom_count(self, positions: torch.Tensor) -> None:
        if positions.shape != self.X0.shape:
            raise DimensionMismatchError(
                f"VariableCell was built for positions of shape {tuple(self.X0.shape)}, "
                f"got {tuple(positions.shape)}"
            )

    def _affine_map(self, deformation: torch.Tensor) -> torch.Tensor:
        """``A = F @ inv(F0)``."""
        checked_inverse(deformation, "deformation")
        return deformation @ self.F0_inv

    def dofs(self, state: ParticleSystem) -> torch.Tensor:
        """Free displacements relative to the affinely mapped reference, then F."""
        positions = state.get_positions()
        self._check_atom_count(positions)
        deformation = state.get_cell_deformation()
        affine = deformation @ self.F0_inv
        # U[i] = X[i] - A @ X0[i], with row-vector positions
        displacements = positions - self.X0 @ affine.mT
        return torch.cat(
            [
                displacements.reshape(-1).index_select(0, self.free_idx),
                deformation.reshape(-1),
            ]
        )

    def configuration_from_dofs(
        self, dofs: torch.Tensor
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """Positions and deformation encoded by a dof vector.

        Args:
            dofs: Dof vector of length ``n_dofs``

        Returns:
            (positions of shape (n_atoms, 3), deformation of shape (3, 3))

        Raises:
            DimensionMismatchError: If the dof vector has the wrong length
            SingularCellError: If the encoded deformation is singular
        """
        dofs = self._as_dofs(dofs, self.X0)
        displacements, deformation = split_dofs(dofs)
        affine = self._affine_map(deformation)
        flat = (self.X0 @ affine.mT).reshape(-1)
        # additive: clamped coordinates keep the affinely mapped reference
        flat[self.free_idx] += displacements
        return flat.reshape(self.X0.shape), deformation.clone()

    def set_dofs(self, state: ParticleSystem, dofs: torch.Tensor) -> ParticleSystem:
        """Commit the positions and deformation encoded by the dofs."""
        positions, deformation = self.configuration_from_dofs(dofs)
        state.set_positions(positions)
        state.set_cell_deformation(deformation)
        return state

    # For a variation x_i(t) = (F + t U) F0^{-1} X0_i + u_i + t v_i,
    #   dE/dt |_{t=0} = U : (S F0^{-T}) - <forces, v>.
    # The position block gets no stress contribution.

    def gradient(self, state: ParticleSystem) -> torch.Tensor:
        """Negative free forces, then the pulled-back stress minus pressure term.

        The cell block is ``S @ inv(F0)^T - p * det(F) * inv(F)^T``.
        """
        forces = state.get_forces()
        self._check_atom_count(forces)
        stress = state.get_stress().to(dtype=self.F0.dtype, device=self.F0.device)
        cell_grad = stress @ self.F0_inv.mT
        cell_grad = cell_grad - self.effective_pressure * cell_volume_derivative(
            state.get_cell_deformation()
        )
        return torch.cat(
            [
                -forces.reshape(-1).index_select(0, self.free_idx),
                cell_grad.reshape(-1),
            ]
        )

    def energy(self, state: ParticleSystem) -> torch.Tensor:
        """Potential energy minus ``pressure * det(F)``."""
        return state.get_potential_energy() - self.effective_pressure * cell_volume(
            state.get_cell_deformation()
        )

    def project_preconditioner(self, matrix: torch.Tensor) -> torch.Tensor:
        """Not available for variable-cell constraints.

        Raises:
            NotImplementedError: Always
        """
        raise NotImplementedError(
            "Preconditioner projection is not defined for VariableCell"
        )

    def __repr__(self) -> str:
        """String representation of the constraint."""
        return (
            f"VariableCell(n_free={len(self.free_idx)}, n_atoms={len(self.X0)}, "
            f"pressure={self.pressure}, fix_volume={self.fix_volume})"
        )


CellConstraint = FixedCell | VariableCell


@dataclass(frozen=True, kw_only=True)
class ConstraintConfig:
    """Options for ``build_constraint``.

    Attributes:
        free: Free atom indices
        clamp: Clamped atom indices
        mask: Boolean mask of shape (n_atoms, 3), True for free coordinates
        variable_cell: Build a ``VariableCell`` instead of a ``FixedCell``
        pressure: Applied hydrostatic pressure (variable cell only)
        fix_volume: Fixed-volume request, stored but not enforced (variable
            cell only)

    Raises:
        ConfigurationError: If more than one of free, clamp, mask is given, or
            pressure/fix_volume is set without variable_cell
    """

    free: IndexSpec | None = None
    clamp: IndexSpec | None = None
    mask: torch.Tensor | None = None
    variable_cell: bool = False
    pressure: float = 0.0
    fix_volume: bool = False

    def __post_init__(self) -> None:
        """Reject ambiguous combinations."""
        check_exclusive(self.free, self.clamp, self.mask)
        if not self.variable_cell and (self.pressure != 0.0 or self.fix_volume):
            raise ConfigurationError(
                "pressure and fix_volume require variable_cell=True"
            )


def build_constraint(
    state: ParticleSystem, config: ConstraintConfig | None = None
) -> CellConstraint:
    """Build the constraint described by ``config`` for ``state``.

    Args:
        state: Particle system; for a variable cell its current configuration
            becomes the reference
        config: Constraint options, defaults to a fixed cell with all atoms free

    Returns:
        A ``FixedCell`` or ``VariableCell``
    """
    config = config or ConstraintConfig()
    if config.variable_cell:
        return VariableCell.from_state(
            state,
            free=config.free,
            clamp=config.clamp,
            mask=config.mask,
            pressure=config.pressure,
            fix_volume=config.fix_volume,
        )
    return FixedCell.from_state(
        state, free=config.free, clamp=config.clamp, mask=config.mask
    )
