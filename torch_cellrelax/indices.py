"""Resolution of free/clamp/mask specifications into free coordinate indices.

Coordinates are indexed in the flattened (n_atoms, 3) position array, so
coordinate ``k`` of atom ``i`` has index ``3 * i + k``.
"""

from __future__ import annotations

from collections.abc import Sequence

import torch

from torch_cellrelax.errors import ConfigurationError, DimensionMismatchError


IndexSpec = torch.Tensor | Sequence[int] | Sequence[bool]


def check_exclusive(
    free: object | None = None,
    clamp: object | None = None,
    mask: object | None = None,
) -> None:
    """Raise ConfigurationError if more than one of free, clamp, mask is given."""
    given = [
        name
        for name, value in (("free", free), ("clamp", clamp), ("mask", mask))
        if value is not None
    ]
    if len(given) > 1:
        raise ConfigurationError(
            f"Only one of `free`, `clamp`, `mask` may be provided, got {given}"
        )


def as_atom_indices(idx: IndexSpec, n_atoms: int, name: str = "indices") -> torch.Tensor:
    """Convert an atom index list or per-atom boolean mask to a LongTensor.

    Args:
        idx: Atom indices, or a boolean mask of length n_atoms
        n_atoms: Number of atoms in the system
        name: Name used in error messages

    Returns:
        1-D tensor of atom indices

    Raises:
        ConfigurationError: If the indices are not integers, have the wrong
            number of dimensions, or are out of range
    """
    idx = torch.atleast_1d(torch.as_tensor(idx))
    if idx.numel() == 0:
        return torch.zeros(0, dtype=torch.long)
    if idx.ndim != 1:
        raise ConfigurationError(
            f"{name} has wrong number of dimensions. Got {idx.ndim}, expected ndim <= 1"
        )
    if idx.dtype == torch.bool:
        if len(idx) != n_atoms:
            raise ConfigurationError(
                f"{name} boolean mask has length {len(idx)}, expected {n_atoms}"
            )
        return torch.where(idx)[0]
    if torch.is_floating_point(idx) or torch.is_complex(idx):
        raise ConfigurationError(
            f"{name} must be integers or a boolean mask, not dtype={idx.dtype}"
        )
    idx = idx.long()
    if idx.min() < 0 or idx.max() >= n_atoms:
        raise ConfigurationError(
            f"{name} has indices in [{idx.min()}, {idx.max()}], "
            f"but the system only has {n_atoms} atoms"
        )
    return idx


def resolve_free_indices(
    n_atoms: int,
    free: IndexSpec | None = None,
    clamp: IndexSpec | None = None,
    mask: torch.Tensor | Sequence[Sequence[bool]] | None = None,
) -> torch.Tensor:
    """Resolve a free/clamp/mask specification into free coordinate indices.

    Set at most one of:

    * nothing: all atoms are free
    * ``free``: atoms whose three coordinates are free
    * ``clamp``: atoms whose three coordinates are fixed
    * ``mask``: boolean array of shape (n_atoms, 3), True for free coordinates

    Equivalent specifications give identical results, e.g. for three atoms
    ``free=[0, 1]``, ``clamp=[2]`` and the matching mask.

    Args:
        n_atoms: Number of atoms in the system
        free: Free atom indices (not coordinate indices)
        clamp: Clamped atom indices (not coordinate indices)
        mask: Per-coordinate mask, shape (n_atoms, 3)

    Returns:
        Sorted, unique LongTensor of free coordinate indices in [0, 3 * n_atoms)

    Raises:
        ConfigurationError: If more than one specification is given or an
            index specification is invalid
        DimensionMismatchError: If the mask does not have shape (n_atoms, 3)
    """
    check_exclusive(free, clamp, mask)
    if free is None and clamp is None and mask is None:
        return torch.arange(3 * n_atoms, dtype=torch.long)

    if clamp is not None:
        free_atoms = torch.ones(n_atoms, dtype=torch.bool)
        free_atoms[as_atom_indices(clamp, n_atoms, "clamp")] = False
        free = torch.where(free_atoms)[0]

    if free is not None:
        mask = torch.zeros((n_atoms, 3), dtype=torch.bool)
        mask[as_atom_indices(free, n_atoms, "free")] = True

    mask = torch.as_tensor(mask)
    if mask.dtype != torch.bool:
        raise ConfigurationError(f"mask must be boolean, not dtype={mask.dtype}")
    if mask.shape != (n_atoms, 3):
        raise DimensionMismatchError(
            f"mask must have shape ({n_atoms}, 3), got {tuple(mask.shape)}"
        )
    return torch.where(mask.cpu().reshape(-1))[0]
