"""Particle system interface used by the constraints.

Constraints only talk to a particle system through the ``ParticleSystem``
protocol. ``RelaxState`` is a tensor-backed implementation of it; other
containers (see ``torch_cellrelax.io``) can be adapted by implementing the same
methods.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import torch

from torch_cellrelax.errors import DimensionMismatchError


@runtime_checkable
class ParticleSystem(Protocol):
    """Capabilities a particle system must provide to be relaxed.

    Positions and forces have shape (n_atoms, 3). The cell deformation and the
    stress are 3x3; the stress is the derivative of the energy with respect to
    a homogeneous strain of the current configuration (energy units).
    """

    def get_positions(self) -> torch.Tensor: ...

    def set_positions(self, positions: torch.Tensor) -> None: ...

    def get_cell_deformation(self) -> torch.Tensor: ...

    def set_cell_deformation(self, deformation: torch.Tensor) -> None: ...

    def get_forces(self) -> torch.Tensor: ...

    def get_stress(self) -> torch.Tensor: ...

    def get_potential_energy(self) -> torch.Tensor: ...

    def atom_count(self) -> int: ...


ModelFn = Callable[["RelaxState"], dict[str, torch.Tensor]]


@dataclass
class RelaxState:
    """Tensor-backed particle system.

    Results (energy, forces, stress) are either given directly or computed by
    ``model``, which is called with the state and must return a dict with the
    keys ``"energy"``, ``"forces"`` and ``"stress"``. Results are cached until
    the positions or the deformation change.

    Attributes:
        positions: Atomic positions, shape (n_atoms, 3)
        deformation: Cell deformation matrix, shape (3, 3), lattice vectors as
            columns
        model: Optional callable computing energy, forces and stress
        forces: Forces, shape (n_atoms, 3)
        stress: Stress, shape (3, 3)
        energy: Potential energy, scalar tensor

    Examples:
        >>> state = RelaxState(
        ...     positions=torch.zeros(2, 3, dtype=torch.float64),
        ...     deformation=torch.eye(3, dtype=torch.float64),
        ...     forces=torch.zeros(2, 3, dtype=torch.float64),
        ...     stress=torch.zeros(3, 3, dtype=torch.float64),
        ...     energy=torch.tensor(0.0, dtype=torch.float64),
        ... )
        >>> state.atom_count()
        2
    """

    positions: torch.Tensor
    deformation: torch.Tensor
    model: ModelFn | None = field(default=None, repr=False)
    forces: torch.Tensor | None = None
    stress: torch.Tensor | None = None
    energy: torch.Tensor | None = None

    def __post_init__(self) -> None:
        """Validate shapes and convert scalar results to tensors."""
        self.positions = torch.as_tensor(self.positions)
        self.deformation = torch.as_tensor(
            self.deformation, dtype=self.positions.dtype, device=self.positions.device
        )
        if self.positions.ndim != 2 or self.positions.shape[1] != 3:
            raise DimensionMismatchError(
                f"positions must have shape (n_atoms, 3), got "
                f"{tuple(self.positions.shape)}"
            )
        if self.deformation.shape != (3, 3):
            raise DimensionMismatchError(
                f"deformation must have shape (3, 3), got "
                f"{tuple(self.deformation.shape)}"
            )
        if self.energy is not None:
            self.energy = torch.as_tensor(
                self.energy, dtype=self.dtype, device=self.device
            )

    @property
    def dtype(self) -> torch.dtype:
        """Floating point type of the positions."""
        return self.positions.dtype

    @property
    def device(self) -> torch.device:
        """Device the positions live on."""
        return self.positions.device

    @property
    def n_atoms(self) -> int:
        """Number of atoms."""
        return self.positions.shape[0]

    def atom_count(self) -> int:
        """Number of atoms."""
        return self.n_atoms

    def get_positions(self) -> torch.Tensor:
        """Copy of the positions."""
        return self.positions.clone()

    def set_positions(self, positions: torch.Tensor) -> None:
        """Set positions, shape (n_atoms, 3), and invalidate model results."""
        positions = torch.as_tensor(positions, dtype=self.dtype, device=self.device)
        if positions.shape != self.positions.shape:
            raise DimensionMismatchError(
                f"positions must have shape {tuple(self.positions.shape)}, "
                f"got {tuple(positions.shape)}"
            )
        self.positions = positions.clone()
        self._invalidate()

    def get_cell_deformation(self) -> torch.Tensor:
        """Copy of the cell deformation."""
        return self.deformation.clone()

    def set_cell_deformation(self, deformation: torch.Tensor) -> None:
        """Set the cell deformation, shape (3, 3), and invalidate model results."""
        deformation = torch.as_tensor(deformation, dtype=self.dtype, device=self.device)
        if deformation.shape != (3, 3):
            raise DimensionMismatchError(
                f"deformation must have shape (3, 3), got {tuple(deformation.shape)}"
            )
        self.deformation = deformation.clone()
        self._invalidate()

    def get_forces(self) -> torch.Tensor:
        """Forces on the atoms, shape (n_atoms, 3)."""
        return self._result("forces").clone()

    def get_stress(self) -> torch.Tensor:
        """Stress, shape (3, 3)."""
        return self._result("stress").clone()

    def get_potential_energy(self) -> torch.Tensor:
        """Potential energy as a scalar tensor."""
        return self._result("energy").clone()

    def _invalidate(self) -> None:
        # Stored results without a model describe a fixed snapshot and are kept.
        if self.model is not None:
            self.forces = self.stress = self.energy = None

    def _result(self, key: str) -> torch.Tensor:
        value = getattr(self, key)
        if value is None:
            if self.model is None:
                raise RuntimeError(
                    f"RelaxState has no {key} and no model attached to compute them"
                )
            results = self.model(self)
            self.energy = torch.as_tensor(
                results["energy"], dtype=self.dtype, device=self.device
            ).reshape(())
            self.forces = results["forces"]
            self.stress = results["stress"]
            value = getattr(self, key)
        return value
