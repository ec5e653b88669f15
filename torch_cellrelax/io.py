"""Adapters between ASE atoms and the ``ParticleSystem`` interface.

ASE is an optional dependency; it is only needed to create the ``ase.Atoms``
objects passed in here.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import torch

from torch_cellrelax.cell import cell_to_deformation, deformation_to_cell
from torch_cellrelax.errors import DimensionMismatchError
from torch_cellrelax.state import RelaxState


if TYPE_CHECKING:
    from ase import Atoms


class AseParticleSystem:
    """``ParticleSystem`` view of an ``ase.Atoms`` object with a calculator.

    The deformation is the transpose of the ASE cell (lattice vectors as
    columns). The stress is ``volume * atoms.get_stress(voigt=False)``, the
    derivative of the energy with respect to strain. Setting the deformation
    keeps the Cartesian positions unchanged.

    Values are returned as tensors of the given dtype; ASE itself computes in
    float64.
    """

    def __init__(self, atoms: Atoms, dtype: torch.dtype = torch.float64) -> None:
        """Wrap ``atoms``; the atoms object is modified in-place by setters."""
        if atoms.calc is None:
            raise ValueError("AseParticleSystem requires atoms with a calculator")
        self.atoms = atoms
        self.dtype = dtype

    def _to_tensor(self, array) -> torch.Tensor:
        return torch.tensor(array, dtype=self.dtype)

    def atom_count(self) -> int:
        """Number of atoms."""
        return len(self.atoms)

    def get_positions(self) -> torch.Tensor:
        """Cartesian positions, shape (n_atoms, 3)."""
        return self._to_tensor(self.atoms.get_positions())

    def set_positions(self, positions: torch.Tensor) -> None:
        """Set Cartesian positions, shape (n_atoms, 3)."""
        positions = torch.as_tensor(positions)
        if positions.shape != (len(self.atoms), 3):
            raise DimensionMismatchError(
                f"positions must have shape ({len(self.atoms)}, 3), "
                f"got {tuple(positions.shape)}"
            )
        self.atoms.set_positions(positions.detach().cpu().double().numpy())

    def get_cell_deformation(self) -> torch.Tensor:
        """Transpose of the ASE cell."""
        return cell_to_deformation(self._to_tensor(self.atoms.cell.array))

    def set_cell_deformation(self, deformation: torch.Tensor) -> None:
        """Set the ASE cell to the transpose of ``deformation``."""
        cell = deformation_to_cell(torch.as_tensor(deformation))
        self.atoms.set_cell(cell.detach().cpu().double().numpy(), scale_atoms=False)

    def get_forces(self) -> torch.Tensor:
        """Forces from the calculator, shape (n_atoms, 3)."""
        return self._to_tensor(self.atoms.get_forces())

    def get_stress(self) -> torch.Tensor:
        """Strain derivative of the energy, ``volume * stress``, shape (3, 3)."""
        stress = self.atoms.get_stress(voigt=False)
        return self._to_tensor(self.atoms.get_volume() * stress)

    def get_potential_energy(self) -> torch.Tensor:
        """Potential energy as a scalar tensor."""
        return torch.tensor(self.atoms.get_potential_energy(), dtype=self.dtype)


def atoms_to_state(
    atoms: Atoms,
    dtype: torch.dtype = torch.float64,
    device: torch.device | None = None,
) -> RelaxState:
    """Snapshot an ``ase.Atoms`` object into a ``RelaxState``.

    Positions and deformation are always copied. Energy, forces and stress
    are copied too when a calculator is attached; the resulting state holds
    them as fixed values.

    Args:
        atoms: ASE atoms
        dtype: Floating point type of the tensors
        device: Device of the tensors

    Returns:
        RelaxState with the atoms' configuration
    """
    kwargs = {"dtype": dtype, "device": device}
    state = RelaxState(
        positions=torch.tensor(atoms.get_positions(), **kwargs),
        deformation=torch.tensor(atoms.cell.array.T, **kwargs),
    )
    if atoms.calc is not None:
        stress = atoms.get_volume() * atoms.get_stress(voigt=False)
        state.energy = torch.tensor(atoms.get_potential_energy(), **kwargs)
        state.forces = torch.tensor(atoms.get_forces(), **kwargs)
        state.stress = torch.tensor(stress, **kwargs)
    return state
