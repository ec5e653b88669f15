import pytest
import torch

from torch_cellrelax.constraints import DofConstraint
from torch_cellrelax.state import ParticleSystem, RelaxState


DTYPE = torch.float64


def finite_difference_gradient(
    constraint: DofConstraint,
    state: ParticleSystem,
    step: float = 1e-5,
) -> torch.Tensor:
    """Central differences of ``constraint.energy`` along each dof.

    The state is restored to its starting dofs afterwards.
    """
    x0 = constraint.dofs(state)
    grad = torch.zeros_like(x0)
    for idx in range(len(x0)):
        shift = torch.zeros_like(x0)
        shift[idx] = step
        constraint.set_dofs(state, x0 + shift)
        e_plus = constraint.energy(state)
        constraint.set_dofs(state, x0 - shift)
        e_minus = constraint.energy(state)
        grad[idx] = (e_plus - e_minus) / (2 * step)
    constraint.set_dofs(state, x0)
    return grad


class HarmonicModel:
    """Springs tying atoms to the origin and the cell to the identity.

    Energy ``k/2 sum |x|^2 + c/2 |F - I|^2`` with exact forces and strain
    derivative, counting how often it is evaluated.
    """

    def __init__(self, k: float = 1.5, c: float = 0.7) -> None:
        self.k = k
        self.c = c
        self.n_calls = 0

    def __call__(self, state: RelaxState) -> dict[str, torch.Tensor]:
        self.n_calls += 1
        pos, defm = state.positions, state.deformation
        strain = defm - torch.eye(3, dtype=defm.dtype)
        return {
            "energy": 0.5 * self.k * (pos**2).sum() + 0.5 * self.c * (strain**2).sum(),
            "forces": -self.k * pos,
            "stress": self.k * pos.mT @ pos + self.c * strain @ defm.mT,
        }


@pytest.fixture
def two_atom_state() -> RelaxState:
    """Two atoms in a unit cube with fixed results, energy 10."""
    return RelaxState(
        positions=torch.tensor([[0.0, 0.0, 0.0], [0.5, 0.5, 0.5]], dtype=DTYPE),
        deformation=torch.eye(3, dtype=DTYPE),
        forces=torch.tensor([[0.1, -0.2, 0.3], [-0.1, 0.2, -0.3]], dtype=DTYPE),
        stress=torch.tensor(
            [[0.4, 0.1, 0.0], [0.1, -0.2, 0.05], [0.0, 0.05, 0.3]], dtype=DTYPE
        ),
        energy=torch.tensor(10.0, dtype=DTYPE),
    )


@pytest.fixture
def three_atom_state() -> RelaxState:
    """Three atoms in a skewed cell with fixed results."""
    return RelaxState(
        positions=torch.tensor(
            [[0.1, 0.2, 0.3], [1.1, 0.9, 1.3], [0.4, 1.7, 0.8]], dtype=DTYPE
        ),
        deformation=torch.tensor(
            [[2.0, 0.1, 0.0], [0.0, 2.1, 0.2], [0.1, 0.0, 1.9]], dtype=DTYPE
        ),
        forces=torch.tensor(
            [[0.3, 0.1, -0.2], [-0.5, 0.4, 0.1], [0.2, -0.5, 0.1]], dtype=DTYPE
        ),
        stress=torch.tensor(
            [[1.0, 0.2, 0.1], [0.2, 0.5, -0.3], [0.1, -0.3, 0.8]], dtype=DTYPE
        ),
        energy=torch.tensor(-3.0, dtype=DTYPE),
    )


@pytest.fixture
def harmonic_model() -> HarmonicModel:
    return HarmonicModel()


@pytest.fixture
def harmonic_state(harmonic_model: HarmonicModel) -> RelaxState:
    """Three atoms in a skewed cell, results computed by a harmonic model."""
    return RelaxState(
        positions=torch.tensor(
            [[0.1, 0.2, 0.3], [1.1, 0.9, 1.3], [0.4, 1.7, 0.8]], dtype=DTYPE
        ),
        deformation=torch.tensor(
            [[2.0, 0.1, 0.0], [0.0, 2.1, 0.2], [0.1, 0.0, 1.9]], dtype=DTYPE
        ),
        model=harmonic_model,
    )
