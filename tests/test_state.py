import pytest
import torch

from tests.conftest import DTYPE, HarmonicModel
from torch_cellrelax.errors import DimensionMismatchError
from torch_cellrelax.state import ParticleSystem, RelaxState


def test_relax_state_is_particle_system(two_atom_state: RelaxState):
    assert isinstance(two_atom_state, ParticleSystem)
    assert two_atom_state.atom_count() == 2


def test_getters_return_copies(two_atom_state: RelaxState):
    positions = two_atom_state.get_positions()
    positions += 1.0
    deformation = two_atom_state.get_cell_deformation()
    deformation *= 2.0
    assert two_atom_state.positions[1, 0] == 0.5
    assert torch.equal(two_atom_state.deformation, torch.eye(3, dtype=DTYPE))


def test_setters_copy_input(two_atom_state: RelaxState):
    new_positions = torch.ones(2, 3, dtype=DTYPE)
    two_atom_state.set_positions(new_positions)
    new_positions[0, 0] = 7.0
    assert two_atom_state.positions[0, 0] == 1.0


def test_setters_validate_shape(two_atom_state: RelaxState):
    with pytest.raises(DimensionMismatchError, match="positions"):
        two_atom_state.set_positions(torch.zeros(3, 3, dtype=DTYPE))
    with pytest.raises(DimensionMismatchError, match="deformation"):
        two_atom_state.set_cell_deformation(torch.eye(2, dtype=DTYPE))


def test_constructor_validates_shape():
    with pytest.raises(DimensionMismatchError, match="n_atoms, 3"):
        RelaxState(positions=torch.zeros(2, 2), deformation=torch.eye(3))
    with pytest.raises(DimensionMismatchError, match=r"\(3, 3\)"):
        RelaxState(positions=torch.zeros(2, 3), deformation=torch.eye(2))


def test_model_results_are_cached(
    harmonic_state: RelaxState, harmonic_model: HarmonicModel
):
    energy = harmonic_state.get_potential_energy()
    harmonic_state.get_forces()
    harmonic_state.get_stress()
    assert harmonic_model.n_calls == 1
    assert energy.shape == ()

    harmonic_state.set_positions(harmonic_state.get_positions() * 0.5)
    assert torch.allclose(
        harmonic_state.get_forces(), -harmonic_model.k * harmonic_state.positions
    )
    assert harmonic_model.n_calls == 2

    harmonic_state.set_cell_deformation(torch.eye(3, dtype=DTYPE))
    harmonic_state.get_stress()
    assert harmonic_model.n_calls == 3


def test_missing_results_without_model():
    state = RelaxState(positions=torch.zeros(1, 3), deformation=torch.eye(3))
    with pytest.raises(RuntimeError, match="no forces"):
        state.get_forces()


def test_stored_results_survive_position_updates(two_atom_state: RelaxState):
    two_atom_state.set_positions(torch.zeros(2, 3, dtype=DTYPE))
    assert two_atom_state.get_potential_energy().item() == 10.0
