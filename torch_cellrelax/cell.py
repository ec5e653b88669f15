"""Helpers for 3x3 cell deformation matrices.

The deformation ``F`` stores the lattice vectors as columns. Row-vector cells,
as used by ASE, are its transpose.
"""

from __future__ import annotations

import torch

from torch_cellrelax.errors import DimensionMismatchError, SingularCellError


def _check_3x3(matrix: torch.Tensor, name: str) -> None:
    if matrix.shape != (3, 3):
        raise DimensionMismatchError(
            f"{name} must have shape (3, 3), got {tuple(matrix.shape)}"
        )


def checked_inverse(matrix: torch.Tensor, name: str = "deformation") -> torch.Tensor:
    """Invert a 3x3 deformation matrix.

    Args:
        matrix: Matrix to invert, shape (3, 3)
        name: Name used in error messages

    Returns:
        The inverse matrix

    Raises:
        DimensionMismatchError: If the matrix is not 3x3
        SingularCellError: If the matrix is singular or numerically singular
            (condition number at least ``1 / eps``), or the inverse is not finite
    """
    _check_3x3(matrix, name)
    inverse, info = torch.linalg.inv_ex(matrix)
    # LU can miss a rank deficiency when a pivot rounds to a tiny nonzero value
    singular = (
        info.item() != 0
        or not torch.isfinite(inverse).all()
        or torch.linalg.det(matrix).item() == 0.0
        or not torch.linalg.cond(matrix).item() < 1.0 / torch.finfo(matrix.dtype).eps
    )
    if singular:
        raise SingularCellError(f"{name} matrix is singular:\n{matrix}")
    return inverse


def cell_volume(deformation: torch.Tensor) -> torch.Tensor:
    """Signed volume of the cell, ``det(F)``."""
    _check_3x3(deformation, "deformation")
    return torch.linalg.det(deformation)


def cell_volume_derivative(deformation: torch.Tensor) -> torch.Tensor:
    """Derivative of ``det(F)`` with respect to ``F``, i.e. ``det(F) * inv(F)^T``."""
    inverse = checked_inverse(deformation)
    return cell_volume(deformation) * inverse.mT


def cell_to_deformation(cell: torch.Tensor) -> torch.Tensor:
    """Convert a row-vector cell to a deformation matrix."""
    _check_3x3(cell, "cell")
    return cell.mT.clone()


def deformation_to_cell(deformation: torch.Tensor) -> torch.Tensor:
    """Convert a deformation matrix to a row-vector cell."""
    _check_3x3(deformation, "deformation")
    return deformation.mT.clone()
