"""Constant-pressure relaxation of a copper cell driven through a VariableCell."""

# %%
# /// script
# dependencies = [
#     "torch-cellrelax[ase]"
# ]
# ///

import numpy as np
import torch
from ase.build import bulk
from ase.calculators.emt import EMT

from torch_cellrelax import ConstraintConfig, build_constraint
from torch_cellrelax.io import AseParticleSystem


N_STEPS = 200
STEP_SIZE = 0.002
PRESSURE = 0.0


atoms = bulk("Cu", "fcc", a=3.7, cubic=True).repeat((2, 2, 2))
atoms.rattle(stdev=0.05, seed=0)
atoms.calc = EMT()
system = AseParticleSystem(atoms)

# keep the first atom in place relative to the cell
config = ConstraintConfig(variable_cell=True, clamp=[0], pressure=PRESSURE)
constraint = build_constraint(system, config)

x = constraint.dofs(system)
for step in range(N_STEPS):
    grad = constraint.gradient(system)
    # the cell block scales with the number of atoms, so precondition it
    grad[-9:] /= len(atoms)
    x = x - STEP_SIZE * grad
    constraint.set_dofs(system, x)
    if step % 20 == 0:
        max_force = torch.linalg.norm(system.get_forces(), dim=1).max().item()
        print(
            f"step {step:4d}  E={constraint.energy(system).item():.6f}  "
            f"fmax={max_force:.4f}  V={atoms.get_volume():.3f}"
        )

print(f"Final lattice constant: {np.cbrt(atoms.get_volume() / 8):.4f} Å")
